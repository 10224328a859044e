"""
Abandoned cart reminders and expired draft cleanup.

Runs from the scheduler:
- Reminders: drafts older than the reminder delay, never reminded, with a
  primary email, whose visitor has not bought for that event since
- Cleanup: drafts past their expiry, attendee back-references cleared first

Carts are processed in concurrent batches; one cart failing never stops
the others.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.config import Settings, get_settings
from boxoffice.core.temp_registrations import TempRegistrationStore
from boxoffice.database.connection import get_session_factory
from boxoffice.database.models import Event, EventVisitor, TempRegistration, utcnow
from boxoffice.integrations.email import EmailSender, LoggingEmailSender
from boxoffice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SENT = "sent"
SKIPPED = "skipped"
DRY_RUN = "dry_run"


class EventNotFoundError(LookupError):
    """Raised when a cart references an event that no longer exists."""

    pass


@dataclass
class CartBatchResult:
    """Per-run tally. ``processed`` counts carts handled without error."""

    processed: int = 0
    emails_sent: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CleanupResult:
    deleted: int = 0
    attendees_cleared: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AbandonedCartStats:
    pending_reminders: int
    reminders_sent: int
    expired_carts: int
    events_affected: int
    total_abandoned_value: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AbandonedCartService:
    """
    Reminder emails and expiry cleanup for draft checkout sessions.

    Each cart is handled on its own database session so a batch can run
    concurrently.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[TempRegistrationStore] = None,
        email_sender: Optional[EmailSender] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.store = store or TempRegistrationStore(self.settings)
        self.email_sender = email_sender or LoggingEmailSender()

    async def get_carts_for_reminder(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[TempRegistration]:
        """
        Select drafts eligible for a reminder, oldest first.

        Args:
            db: Database session
            now: Clock override
            limit: Optional maximum number of drafts

        Returns:
            List[TempRegistration]: Eligible drafts
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.abandoned_cart_delay_minutes)

        converted_visitor = (
            select(EventVisitor.id)
            .where(
                EventVisitor.event_id == TempRegistration.event_id,
                func.lower(EventVisitor.email) == func.lower(TempRegistration.primary_email),
                EventVisitor.converted.is_(True),
            )
            .exists()
        )
        query = (
            select(TempRegistration)
            .where(
                TempRegistration.created_at < cutoff,
                TempRegistration.reminder_email_sent_at.is_(None),
                TempRegistration.primary_email.is_not(None),
                TempRegistration.primary_email != "",
                ~converted_visitor,
            )
            .order_by(TempRegistration.created_at)
        )
        if limit:
            query = query.limit(limit)

        result = await db.execute(query)
        return list(result.scalars().all())

    async def process_abandoned_carts(
        self,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> CartBatchResult:
        """
        Send reminders for every eligible cart.

        Carts whose event disabled abandoned cart emails are skipped. A cart
        that fails is recorded in ``errors`` and the batch carries on; only
        a failure to load the candidates aborts the run.

        Args:
            batch_size: Carts handled concurrently
            dry_run: Log what would be sent without sending or stamping
            now: Clock override

        Returns:
            CartBatchResult: Counts and per-cart errors
        """
        now = now or utcnow()
        batch_size = batch_size or self.settings.abandoned_cart_batch_size
        results = CartBatchResult()

        async with self.session_factory() as db:
            carts = await self.get_carts_for_reminder(db, now)
            event_ids = {cart.event_id for cart in carts}
            events: Dict[int, Event] = {}
            if event_ids:
                rows = await db.execute(select(Event).where(Event.id.in_(event_ids)))
                events = {event.id: event for event in rows.scalars().all()}

        logger.info("abandoned_carts_found", count=len(carts), dry_run=dry_run)

        for start in range(0, len(carts), batch_size):
            batch = carts[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self._process_cart(cart, events.get(cart.event_id), now, dry_run) for cart in batch),
                return_exceptions=True,
            )
            for cart, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(
                        "abandoned_cart_failed",
                        session_id=cart.session_id,
                        error=str(outcome),
                    )
                    results.errors.append({"session_id": cart.session_id, "error": str(outcome)})
                    metrics.record_abandoned_cart("error")
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome

                results.processed += 1
                if outcome == SENT:
                    results.emails_sent += 1
                elif outcome == SKIPPED:
                    results.skipped += 1
                metrics.record_abandoned_cart(outcome)

        logger.info(
            "abandoned_carts_processed",
            processed=results.processed,
            emails_sent=results.emails_sent,
            skipped=results.skipped,
            errors=len(results.errors),
        )
        return results

    async def _process_cart(
        self,
        cart: TempRegistration,
        event: Optional[Event],
        now: datetime,
        dry_run: bool,
    ) -> str:
        if event is None:
            raise EventNotFoundError(f"Event {cart.event_id} not found")

        if not event.abandoned_cart_emails_enabled:
            logger.info(
                "abandoned_cart_emails_disabled",
                session_id=cart.session_id,
                event_id=cart.event_id,
            )
            return SKIPPED

        if dry_run:
            logger.info("abandoned_cart_dry_run", session_id=cart.session_id, to=cart.primary_email)
            return DRY_RUN

        await self.email_sender.send_abandoned_cart_reminder(
            to=cart.primary_email,
            session_id=cart.session_id,
            event={
                "id": event.id,
                "name": event.name,
                "slug": event.slug,
                "currency": event.currency,
            },
            cart={
                "attendees": cart.attendees,
                "selected_tickets": cart.selected_tickets,
                "selected_products": cart.selected_products,
                "total_amount": cart.total_amount,
                "currency": cart.currency,
            },
            resume_url=f"{self.settings.frontend_url}/{event.slug}/checkout?session_id={cart.session_id}",
        )

        expires_at = now + timedelta(days=self.settings.abandoned_cart_grace_days)
        async with self.session_factory() as db:
            await db.execute(
                update(TempRegistration)
                .where(
                    TempRegistration.session_id == cart.session_id,
                    TempRegistration.reminder_email_sent_at.is_(None),
                )
                .values(reminder_email_sent_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        logger.info(
            "abandoned_cart_reminder_sent",
            session_id=cart.session_id,
            expires_at=expires_at.isoformat(),
        )
        return SENT

    async def cleanup_expired_carts(self, now: Optional[datetime] = None) -> CleanupResult:
        """
        Delete drafts past their expiry.

        Attendee rows pointing at those drafts are detached first so the
        foreign key is never violated.
        """
        async with self.session_factory() as db:
            deleted, cleared = await self.store.delete_expired(db, now)
            await db.commit()

        metrics.record_expired_carts_deleted(deleted)
        logger.info("expired_carts_cleaned", deleted=deleted, attendees_cleared=cleared)
        return CleanupResult(deleted=deleted, attendees_cleared=cleared)

    async def get_abandoned_cart_stats(self, now: Optional[datetime] = None) -> AbandonedCartStats:
        """Counts for the admin dashboard."""
        now = now or utcnow()
        async with self.session_factory() as db:
            pending = len(await self.get_carts_for_reminder(db, now))
            row = (
                await db.execute(
                    select(
                        func.count(TempRegistration.reminder_email_sent_at).label("reminded"),
                        func.count(func.distinct(TempRegistration.event_id)).label("events"),
                    )
                )
            ).one()
            expired = await self.store.list_expired(db, now)

        return AbandonedCartStats(
            pending_reminders=pending,
            reminders_sent=row.reminded,
            expired_carts=len(expired),
            events_affected=row.events,
            total_abandoned_value=sum(draft.total_amount for draft in expired),
        )
