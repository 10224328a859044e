"""
Pytest configuration and fixtures.

Database tests run on a per-test SQLite file through aiosqlite with foreign
keys enforced. Every transaction starts with ``BEGIN IMMEDIATE`` so
concurrent sessions serialize their writes the way separate processes
would, and really contend on the unique indexes.
"""
import asyncio
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Mapping, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from boxoffice.config import Settings
from boxoffice.core.payment_service import PaymentService
from boxoffice.core.temp_registrations import TempRegistrationStore
from boxoffice.database.connection import create_session_factory, init_db
from boxoffice.database.models import (
    Event,
    Order,
    Product,
    PromoCode,
    TempRegistration,
    Ticket,
    utcnow,
)
from boxoffice.integrations.base import (
    GatewayDriver,
    NormalizedResult,
    PaymentAction,
    PaymentRequest,
    ResultStatus,
    VerificationContext,
    WebhookReference,
)
from boxoffice.integrations.dispatcher import PaymentDispatcher
from boxoffice.integrations.email import EmailSender


class FakeGateway(GatewayDriver):
    """
    In-memory polling gateway.

    Webhook bodies are JSON ``{"tx", "token", "status", "amount", "session_id"}``;
    the token must match the draft's notification token.
    """

    def __init__(self, name: str = "fakepay", requires_polling: bool = True) -> None:
        self.name = name
        self.requires_polling = requires_polling
        self.verify_results: Dict[str, ResultStatus] = {}
        self.verify_calls: List[Tuple[str, VerificationContext]] = []
        self.verify_error: Optional[Exception] = None
        self.verify_delay = 0.0
        self.initiated: List[PaymentRequest] = []

    async def initiate_payment(self, request: PaymentRequest) -> PaymentAction:
        self.initiated.append(request)
        return PaymentAction(
            gateway=self.name,
            transaction_id=f"tx_{request.session_id}",
            payment_url=f"https://pay.test/{request.session_id}",
            gateway_metadata={
                "pay_token": f"pt_{request.session_id}",
                "notification_token": f"nt_{request.session_id}",
            },
        )

    def inspect_webhook(self, raw_payload: bytes) -> WebhookReference:
        body = json.loads(raw_payload)
        return WebhookReference(transaction_id=body.get("tx"), notification_token=body.get("token"))

    async def handle_webhook(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secondary_token: Optional[str] = None,
    ) -> NormalizedResult:
        body = json.loads(raw_payload)
        if not secondary_token or body.get("token") != secondary_token:
            return NormalizedResult.failed("notification_token_mismatch")
        return NormalizedResult(
            status=ResultStatus(body["status"]),
            amount=body.get("amount"),
            gateway_transaction_id=body["tx"],
            metadata={"session_id": body.get("session_id")},
        )

    async def verify_payment(
        self, transaction_id: str, context: VerificationContext
    ) -> NormalizedResult:
        self.verify_calls.append((transaction_id, context))
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        if self.verify_error is not None:
            raise self.verify_error
        return NormalizedResult(
            status=self.verify_results.get(transaction_id, ResultStatus.PENDING),
            amount=context.amount,
            gateway_transaction_id=transaction_id,
            metadata={"pay_token": context.pay_token},
        )


class RecordingEmailSender(EmailSender):
    """Collects sent emails; fails for addresses listed in ``fail_for``."""

    def __init__(self) -> None:
        self.reminders: List[Dict[str, Any]] = []
        self.confirmations: List[Dict[str, Any]] = []
        self.fail_for: set = set()

    async def send_abandoned_cart_reminder(
        self,
        to: str,
        session_id: str,
        event: Dict[str, Any],
        cart: Dict[str, Any],
        resume_url: Optional[str] = None,
    ) -> None:
        if to in self.fail_for:
            raise RuntimeError(f"smtp refused {to}")
        self.reminders.append({"to": to, "session_id": session_id, "resume_url": resume_url})

    async def send_order_confirmation(
        self, to: str, order: Dict[str, Any], attendees: List[Dict[str, Any]]
    ) -> None:
        self.confirmations.append({"to": to, "order": order})


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        orange_money_client_id="om-client",
        orange_money_client_secret="om-secret",
        orange_money_merchant_key="om-merchant",
        orange_money_api_url="https://om.test",
        orange_money_country="dev",
        orange_money_environment="sandbox",
        gateway_timeout_seconds=0.5,
        webhook_session_lookup_attempts=2,
        webhook_session_lookup_delay=0,
        enable_cron_jobs=False,
        run_scheduler=False,
        app_name="boxoffice-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Per-test SQLite database with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'boxoffice.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def store(test_settings: Settings) -> TempRegistrationStore:
    return TempRegistrationStore(test_settings)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatcher(fake_gateway: FakeGateway, test_settings: Settings) -> PaymentDispatcher:
    return PaymentDispatcher([fake_gateway], settings=test_settings)


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def payment_service(
    dispatcher: PaymentDispatcher,
    session_factory: async_sessionmaker[AsyncSession],
    store: TempRegistrationStore,
    email_sender: RecordingEmailSender,
    test_settings: Settings,
) -> PaymentService:
    return PaymentService(
        dispatcher,
        session_factory=session_factory,
        store=store,
        email_sender=email_sender,
        settings=test_settings,
    )


@pytest.fixture
def create_draft(
    session_factory: async_sessionmaker[AsyncSession], store: TempRegistrationStore
) -> Any:
    """Factory storing a draft session with a started payment on ``fakepay``."""

    async def _create(
        session_id: str,
        event_id: int = 1,
        amount: int = 5000,
        email: str = "awa@example.com",
        gateway: str = "fakepay",
        now: Optional[datetime] = None,
        **orders: Any,
    ) -> TempRegistration:
        async with session_factory() as db:
            draft = await store.create(
                db,
                session_id=session_id,
                event_id=event_id,
                attendees=[
                    {"email": email, "first_name": "Awa", "last_name": "Diop"},
                    {"email": "moussa@example.com", "first_name": "Moussa"},
                ],
                selected_tickets=[{"ticket_id": 7, "name": "VIP", "quantity": 2, "price": 2500}],
                orders={
                    "order_number": f"ORD-{session_id}",
                    "total_amount": amount,
                    "currency": "XOF",
                    "payment_status": "pending",
                    "gateway": gateway,
                    "gateway_transaction_id": f"tx_{session_id}",
                    "gateway_metadata": {
                        "pay_token": f"pt_{session_id}",
                        "notification_token": f"nt_{session_id}",
                    },
                    **orders,
                },
                now=now,
            )
            await db.commit()
        return draft

    return _create


@pytest.fixture
def create_event(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    async def _create(
        event_id: int = 1,
        slug: str = "jazz-night",
        reminders: bool = True,
        tax_type: Optional[str] = None,
        tax_amount: Optional[float] = None,
        shipping_fee: int = 0,
    ) -> Event:
        async with session_factory() as db:
            row = Event(
                id=event_id,
                slug=slug,
                name=slug.replace("-", " ").title(),
                tax_type=tax_type,
                tax_amount=Decimal(str(tax_amount)) if tax_amount is not None else None,
                config={"enableAbandonedCartEmails": reminders, "shippingFee": shipping_fee},
            )
            db.add(row)
            await db.commit()
        return row

    return _create


@pytest.fixture
def create_catalogue(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Factory adding ticket, product and promo code rows to the catalogue."""

    async def _create(*rows: Any) -> None:
        async with session_factory() as db:
            db.add_all(rows)
            await db.commit()

    return _create


def ticket(ticket_id: int = 7, price: int = 5000, stock: int = 100, event_id: int = 1) -> Ticket:
    return Ticket(
        id=ticket_id,
        event_id=event_id,
        title=f"Ticket {ticket_id}",
        price=price,
        current_stock=stock,
    )


def product(product_id: int = 3, price: int = 2000, stock: int = 10, event_id: int = 1) -> Product:
    return Product(
        id=product_id, event_id=event_id, name=f"Product {product_id}", price=price, stock=stock
    )


def promo(code: str, discount_type: str, value: float, event_id: int = 1, **fields: Any) -> PromoCode:
    return PromoCode(
        event_id=event_id,
        code=code,
        discount_type=discount_type,
        discount_value=Decimal(str(value)),
        **fields,
    )


@pytest.fixture
def count_orders(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    async def _count(transaction_id: Optional[str] = None) -> int:
        query = select(func.count()).select_from(Order)
        if transaction_id is not None:
            query = query.where(Order.gateway_transaction_id == transaction_id)
        async with session_factory() as db:
            return (await db.execute(query)).scalar_one()

    return _count


def minutes_ago(minutes: int) -> datetime:
    return utcnow() - timedelta(minutes=minutes)


def paid_result(session_id: str, amount: int = 5000) -> NormalizedResult:
    return NormalizedResult(
        status=ResultStatus.PAID,
        amount=amount,
        gateway_transaction_id=f"tx_{session_id}",
        metadata={"session_id": session_id},
    )
