"""Wiring of the service graph shared by the API and the scheduler process."""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.config import Settings, get_settings
from boxoffice.core.abandoned_cart import AbandonedCartService
from boxoffice.core.cash_sessions import CashSessionService
from boxoffice.core.payment_service import PaymentService
from boxoffice.core.pending_payments import PendingPaymentChecker
from boxoffice.core.temp_registrations import TempRegistrationStore
from boxoffice.database.connection import get_session_factory
from boxoffice.integrations.dispatcher import PaymentDispatcher, build_dispatcher
from boxoffice.integrations.email import EmailSender, LoggingEmailSender
from boxoffice.workers.jobs import build_scheduler
from boxoffice.workers.scheduler import Scheduler


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    dispatcher: PaymentDispatcher
    store: TempRegistrationStore
    payments: PaymentService
    abandoned_carts: AbandonedCartService
    pending_checker: PendingPaymentChecker
    cash_sessions: CashSessionService
    scheduler: Scheduler

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.dispatcher.close()


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    dispatcher: Optional[PaymentDispatcher] = None,
    email_sender: Optional[EmailSender] = None,
) -> ServiceContainer:
    """
    Build every service over one session factory and one dispatcher.

    Args:
        settings: Application settings
        session_factory: Database session factory (defaults to the global one)
        dispatcher: Gateway dispatcher (defaults to every supported gateway)
        email_sender: Email collaborator (defaults to logging only)

    Returns:
        ServiceContainer: The wired services
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    dispatcher = dispatcher or build_dispatcher(settings)
    email_sender = email_sender or LoggingEmailSender()
    store = TempRegistrationStore(settings)

    payments = PaymentService(
        dispatcher,
        session_factory=session_factory,
        store=store,
        email_sender=email_sender,
        settings=settings,
    )
    abandoned_carts = AbandonedCartService(
        session_factory=session_factory,
        store=store,
        email_sender=email_sender,
        settings=settings,
    )
    pending_checker = PendingPaymentChecker(
        payments, session_factory=session_factory, store=store, settings=settings
    )

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        dispatcher=dispatcher,
        store=store,
        payments=payments,
        abandoned_carts=abandoned_carts,
        pending_checker=pending_checker,
        cash_sessions=CashSessionService(session_factory),
        scheduler=build_scheduler(settings, abandoned_carts, pending_checker),
    )
