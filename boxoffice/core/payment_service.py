"""
Checkout payment reconciliation.

A checkout session can be confirmed by three independent paths that may
race each other:
1. The gateway webhook
2. The client coming back from the gateway and asking to verify
3. The pending payment poller

All of them converge on ``finalize_payment``, which promotes the draft
session into exactly one order per gateway transaction id. The guard is
the unique index on ``orders.gateway_transaction_id``: the insert either
wins, or fails with an integrity error and the existing order is returned.
"""
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from boxoffice.config import Settings, get_settings
from boxoffice.core.pricing import CartPricer
from boxoffice.core.temp_registrations import TempRegistrationStore
from boxoffice.database.connection import get_session_factory
from boxoffice.database.models import (
    Attendee,
    Event,
    EventVisitor,
    Order,
    PaymentStatus,
    SalesChannel,
    TempRegistration,
    utcnow,
)
from boxoffice.exceptions import (
    CheckoutValidationError,
    GatewayTimeoutError,
    SessionNotFoundError,
    UnsupportedGatewayError,
)
from boxoffice.integrations.base import (
    NormalizedResult,
    PaymentRequest,
    ResultStatus,
    VerificationContext,
    WebhookReference,
)
from boxoffice.integrations.dispatcher import PaymentDispatcher
from boxoffice.integrations.email import EmailSender, LoggingEmailSender
from boxoffice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FREE_GATEWAY = "free"
PAYMENT_METHODS = {
    "stripe": "card",
    "orange_money": "mobile_money",
    FREE_GATEWAY: "free",
}
TERMINAL_DRAFT_STATUSES = (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value)


def new_session_id() -> str:
    """Client-visible checkout session id (30 hex characters)."""
    return secrets.token_hex(15)


def new_order_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


@dataclass
class FinalizeResult:
    """Outcome of a finalization. ``created=False`` means the order already existed."""

    order: Order
    created: bool


@dataclass
class SessionStatus:
    """Read-only payment status of a checkout session."""

    status: str
    session_id: str
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    event_id: Optional[int] = None


@dataclass
class VerificationOutcome:
    """Result of a client- or poller-triggered verification."""

    status: str
    session_id: str
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    event_id: Optional[int] = None
    event_slug: Optional[str] = None
    already_finalized: bool = False
    retryable: bool = False
    message: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value


@dataclass
class WebhookAck:
    """What happened to a webhook. Always acknowledged to the gateway."""

    outcome: str
    session_id: Optional[str] = None
    order_id: Optional[str] = None


@dataclass
class CheckoutDraft:
    """
    Cart submitted at checkout start.

    ``total_amount`` is the total the client displayed, in minor units. It
    must match the total priced from the catalogue.
    """

    event_id: int
    gateway: str
    attendees: List[Dict[str, Any]]
    selected_tickets: List[Dict[str, Any]]
    total_amount: int
    currency: str = "XOF"
    selected_products: List[Dict[str, Any]] = field(default_factory=list)
    registration: Dict[str, Any] = field(default_factory=dict)
    promo_code: Optional[str] = None
    shipping_option: str = "pickup"
    shipping_address: Optional[Dict[str, Any]] = None
    event_slug: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class CheckoutSession:
    """What the client needs to complete a checkout."""

    session_id: str
    gateway: str
    status: str
    total_amount: int
    currency: str
    order_number: str
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    order_id: Optional[str] = None
    reused: bool = False


class PaymentService:
    """
    Idempotent finalization of checkout sessions into orders.

    Each public operation opens its own database session. Gateway calls are
    made with no transaction open.
    """

    def __init__(
        self,
        dispatcher: PaymentDispatcher,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[TempRegistrationStore] = None,
        email_sender: Optional[EmailSender] = None,
        settings: Optional[Settings] = None,
        pricer: Optional[CartPricer] = None,
    ) -> None:
        """
        Initialize payment service.

        Args:
            dispatcher: Gateway dispatcher
            session_factory: Database session factory
            store: Draft session store
            email_sender: Confirmation email collaborator
            settings: Application settings
            pricer: Catalogue pricing of checkout carts
        """
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher
        self.session_factory = session_factory or get_session_factory()
        self.store = store or TempRegistrationStore(self.settings)
        self.email_sender = email_sender or LoggingEmailSender()
        self.pricer = pricer or CartPricer()

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize_payment(
        self, result: NormalizedResult, gateway: str
    ) -> Optional[FinalizeResult]:
        """
        Promote the draft session behind a paid result into an order, exactly once.

        Steps:
        1. Ignore anything that is not paid
        2. Return the existing order for this transaction id, if any
        3. Resolve the draft session from the result's correlation ids
        4. Insert the order and attendees, detach and delete the draft, commit
        5. Mark the visitor converted and send the confirmation (best-effort)

        Args:
            result: Normalized gateway result
            gateway: Gateway that reported the payment

        Returns:
            Optional[FinalizeResult]: None for non-paid results

        Raises:
            SessionNotFoundError: If no order and no draft match the payment
            ValueError: If a paid result has no gateway transaction id
        """
        if not result.is_paid:
            logger.info(
                "finalize_skipped_not_paid",
                gateway=gateway,
                status=result.status.value,
                gateway_transaction_id=result.gateway_transaction_id,
            )
            return None

        transaction_id = result.gateway_transaction_id
        if not transaction_id:
            raise ValueError("A paid result must carry a gateway transaction id")

        log = logger.bind(gateway=gateway, gateway_transaction_id=transaction_id)

        async with self.session_factory() as db:
            existing = await self._order_by_transaction_id(db, transaction_id)
            if existing is not None:
                return self._duplicate(existing, gateway)

            draft = await self._resolve_draft(db, result)
            if draft is None:
                # Another path may have finalized and removed the draft meanwhile.
                existing = await self._order_by_transaction_id(db, transaction_id)
                if existing is not None:
                    return self._duplicate(existing, gateway)
                log.warning("finalize_session_not_found", session_id=result.session_id)
                raise SessionNotFoundError(
                    "No checkout session matches this payment",
                    session_id=result.session_id,
                    gateway_transaction_id=transaction_id,
                )

            order = self._build_order(draft, result, gateway)
            attendee_data = list(draft.attendees or [])
            try:
                db.add(order)
                await db.flush()
                db.add_all(self._build_attendees(draft, order))
                await db.flush()
                await self.store.delete(db, draft.session_id)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await self._order_by_transaction_id(db, transaction_id)
                if existing is None:
                    raise
                log.info("finalize_lost_race", session_id=draft.session_id)
                return self._duplicate(existing, gateway)

        metrics.record_finalization(gateway, created=True, amount=order.total_amount)
        log.info(
            "order_finalized",
            session_id=order.session_id,
            order_id=str(order.id),
            order_number=order.order_number,
            amount=order.total_amount,
            payment_status=order.payment_status,
        )
        await self._after_finalize(order, attendee_data)
        return FinalizeResult(order=order, created=True)

    def _duplicate(self, order: Order, gateway: str) -> FinalizeResult:
        metrics.record_finalization(gateway, created=False)
        logger.info(
            "finalize_duplicate_ignored",
            gateway=gateway,
            gateway_transaction_id=order.gateway_transaction_id,
            order_id=str(order.id),
        )
        return FinalizeResult(order=order, created=False)

    async def _resolve_draft(
        self, db: AsyncSession, result: NormalizedResult
    ) -> Optional[TempRegistration]:
        # Expired drafts still count: the payment went through.
        draft = None
        if result.session_id:
            draft = await self.store.get_by_session_id(db, result.session_id, include_expired=True)
        if draft is None and result.gateway_transaction_id:
            draft = await self.store.get_by_gateway_transaction_id(
                db, result.gateway_transaction_id, include_expired=True
            )
        token = result.metadata.get("notification_token")
        if draft is None and token:
            draft = await self.store.get_by_notification_token(db, token, include_expired=True)
        return draft

    def _build_order(
        self, draft: TempRegistration, result: NormalizedResult, gateway: str
    ) -> Order:
        orders = draft.orders or {}
        amount = result.amount if result.amount is not None else draft.total_amount
        if result.amount is not None and result.amount != draft.total_amount:
            logger.warning(
                "payment_amount_mismatch",
                session_id=draft.session_id,
                expected=draft.total_amount,
                received=result.amount,
            )

        is_free = gateway == FREE_GATEWAY or bool(result.metadata.get("is_free"))
        shipping_option = result.metadata.get("shipping_option") or orders.get("shipping_option")
        shipping_amount = result.metadata.get("shipping_amount", orders.get("shipping_amount"))
        needs_shipment = bool(draft.selected_products) and shipping_option not in (None, "pickup")

        return Order(
            order_number=orders.get("order_number") or new_order_number(),
            event_id=draft.event_id,
            session_id=draft.session_id,
            total_amount=amount,
            currency=orders.get("currency") or result.currency or draft.currency,
            payment_status=(PaymentStatus.FREE if is_free else PaymentStatus.PAID).value,
            payment_method=PAYMENT_METHODS.get(gateway, gateway),
            payment_gateway=gateway,
            gateway_transaction_id=result.gateway_transaction_id,
            gateway_metadata={**draft.gateway_metadata, **result.metadata},
            sales_channel=SalesChannel.ONLINE.value,
            items_ticket=list(draft.selected_tickets or []),
            items_product=list(draft.selected_products or []),
            shipping_address=result.metadata.get("shipping_address")
            or orders.get("shipping_address"),
            shipping_option=shipping_option,
            shipping_amount=int(shipping_amount or 0),
            shipment_status="pending" if needs_shipment else None,
        )

    @staticmethod
    def _build_attendees(draft: TempRegistration, order: Order) -> List[Attendee]:
        attendees = []
        for index, data in enumerate(draft.attendees or []):
            attendees.append(
                Attendee(
                    order_id=order.id,
                    registration_id=order.registration_id,
                    event_id=draft.event_id,
                    session_id=draft.session_id,
                    email=data.get("email"),
                    first_name=data.get("first_name"),
                    last_name=data.get("last_name"),
                    ticket_type=data.get("ticket_type"),
                    is_primary=index == 0,
                )
            )
        return attendees

    async def _after_finalize(self, order: Order, attendees: List[Dict[str, Any]]) -> None:
        primary_email = (attendees[0].get("email") if attendees else None) or None
        if not primary_email:
            return

        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(EventVisitor)
                    .where(
                        EventVisitor.event_id == order.event_id,
                        func.lower(EventVisitor.email) == primary_email.lower(),
                    )
                    .values(converted=True, converted_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception as e:
            logger.warning("visitor_conversion_failed", order_id=str(order.id), error=str(e))

        try:
            await self.email_sender.send_order_confirmation(
                to=primary_email,
                order={
                    "id": str(order.id),
                    "order_number": order.order_number,
                    "event_id": order.event_id,
                    "total_amount": order.total_amount,
                    "currency": order.currency,
                },
                attendees=attendees,
            )
        except Exception as e:
            logger.warning("order_confirmation_failed", order_id=str(order.id), error=str(e))

    # ------------------------------------------------------------------
    # Client status and verification
    # ------------------------------------------------------------------

    async def check_status_by_session(self, session_id: str) -> SessionStatus:
        """
        Report the payment status of a checkout session without side effects.

        Returns ``paid`` once an order exists, the draft's own status while a
        draft exists, and ``not_found`` otherwise.
        """
        async with self.session_factory() as db:
            order = await self._order_by_session_id(db, session_id)
            if order is not None and order.is_paid:
                return SessionStatus(
                    status=PaymentStatus.PAID.value,
                    session_id=session_id,
                    order_id=str(order.id),
                    order_number=order.order_number,
                    event_id=order.event_id,
                )

            draft = await self.store.get_by_session_id(db, session_id)
            if draft is not None:
                return SessionStatus(
                    status=draft.payment_status,
                    session_id=session_id,
                    event_id=draft.event_id,
                )

        return SessionStatus(status="not_found", session_id=session_id)

    async def touch_session(self, session_id: str, extend_hours: int = 24) -> TempRegistration:
        """
        Record client activity on a live draft and push its expiry out.

        Raises:
            SessionNotFoundError: If the draft is unknown or already expired
        """
        async with self.session_factory() as db:
            draft = await self.store.touch(db, session_id, extend_hours=extend_hours)
            if draft is None:
                raise SessionNotFoundError(
                    f"Checkout session {session_id} expired or invalid", session_id=session_id
                )
            await db.commit()
        logger.debug("checkout_session_touched", session_id=session_id, expires_at=draft.expires_at)
        return draft

    async def verify_and_finalize(self, session_id: str) -> VerificationOutcome:
        """
        Reconcile a session whose confirmation may be late.

        The order is the authority: the draft is only consulted when no
        order exists, and supplies the verification context (transaction id,
        amount, pay token) the gateway needs.

        Args:
            session_id: Checkout session id

        Returns:
            VerificationOutcome: ``paid``, ``pending`` (retryable on timeout),
            or the draft's terminal status

        Raises:
            SessionNotFoundError: If neither an order nor a draft exists
            GatewayVerificationError: If the gateway call fails
        """
        async with self.session_factory() as db:
            order = await self._order_by_session_id(db, session_id)
            if order is not None and order.is_paid:
                return await self._paid_outcome(db, order, already_finalized=True)

            draft = await self.store.get_by_session_id(db, session_id, include_expired=True)
            if draft is None:
                raise SessionNotFoundError(
                    f"Checkout session {session_id} expired or invalid", session_id=session_id
                )

            if draft.gateway_transaction_id:
                order = await self._order_by_transaction_id(db, draft.gateway_transaction_id)
                if order is not None:
                    return await self._paid_outcome(db, order, already_finalized=True)

            event_slug = await self._event_slug(db, draft.event_id)
            if draft.payment_status in TERMINAL_DRAFT_STATUSES:
                return VerificationOutcome(
                    status=draft.payment_status,
                    session_id=session_id,
                    event_id=draft.event_id,
                    event_slug=event_slug,
                )

            gateway = draft.gateway
            transaction_id = draft.gateway_transaction_id
            context = VerificationContext(
                amount=draft.total_amount,
                pay_token=draft.pay_token,
                currency=draft.currency,
            )
            event_id = draft.event_id

        if not gateway or not transaction_id:
            return VerificationOutcome(
                status=PaymentStatus.PENDING.value,
                session_id=session_id,
                event_id=event_id,
                event_slug=event_slug,
                message="Payment has not been initiated",
            )

        try:
            result = await self.dispatcher.verify_payment(gateway, transaction_id, context)
        except GatewayTimeoutError as e:
            return VerificationOutcome(
                status=PaymentStatus.PENDING.value,
                session_id=session_id,
                event_id=event_id,
                event_slug=event_slug,
                retryable=True,
                message=e.message,
            )

        if not result.is_paid:
            return VerificationOutcome(
                status=result.status.value,
                session_id=session_id,
                event_id=event_id,
                event_slug=event_slug,
            )

        result.metadata["session_id"] = session_id
        finalized = await self.finalize_payment(result, gateway)
        return VerificationOutcome(
            status=PaymentStatus.PAID.value,
            session_id=session_id,
            order_id=str(finalized.order.id),
            order_number=finalized.order.order_number,
            event_id=finalized.order.event_id,
            event_slug=event_slug,
            already_finalized=not finalized.created,
        )

    async def verify_transaction(self, gateway: str, transaction_id: str) -> VerificationOutcome:
        """
        Verify a payment identified by gateway and transaction id.

        Resolves the checkout session from an existing order or from the
        draft (by session id or stored transaction id), then reconciles it.

        Raises:
            UnsupportedGatewayError: If the gateway is unknown
            SessionNotFoundError: If no order or draft matches
        """
        self.dispatcher.get_driver(gateway)

        async with self.session_factory() as db:
            order = await self._order_by_transaction_id(db, transaction_id)
            if order is not None:
                return await self._paid_outcome(db, order, already_finalized=True)

            draft = await self.store.get_by_session_id(db, transaction_id, include_expired=True)
            if draft is None:
                draft = await self.store.get_by_gateway_transaction_id(
                    db, transaction_id, include_expired=True
                )
            if draft is None:
                raise SessionNotFoundError(
                    f"No checkout session for {gateway} transaction {transaction_id}",
                    gateway=gateway,
                    transaction_id=transaction_id,
                )
            session_id = draft.session_id

        return await self.verify_and_finalize(session_id)

    async def _paid_outcome(
        self, db: AsyncSession, order: Order, already_finalized: bool
    ) -> VerificationOutcome:
        return VerificationOutcome(
            status=PaymentStatus.PAID.value,
            session_id=order.session_id or "",
            order_id=str(order.id),
            order_number=order.order_number,
            event_id=order.event_id,
            event_slug=await self._event_slug(db, order.event_id),
            already_finalized=already_finalized,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(
        self, gateway: str, raw_payload: bytes, headers: Dict[str, str]
    ) -> WebhookAck:
        """
        Reconcile a gateway webhook. Never raises.

        Every failure is logged and acknowledged; duplicates are absorbed by
        the finalization idempotency rather than rejected.
        """
        start_time = time.perf_counter()
        metric_gateway = gateway if gateway in self.dispatcher.gateways else "unknown"
        ack = WebhookAck(outcome="error")
        try:
            ack = await self._process_webhook(gateway, raw_payload, headers)
        except UnsupportedGatewayError:
            logger.warning("webhook_unsupported_gateway", gateway=gateway)
            ack = WebhookAck(outcome="unsupported_gateway")
        except SessionNotFoundError as e:
            logger.warning(
                "webhook_session_not_found",
                gateway=gateway,
                session_id=e.context.get("session_id"),
            )
            ack = WebhookAck(outcome="session_not_found", session_id=e.context.get("session_id"))
        except Exception as e:
            logger.error("webhook_processing_failed", gateway=gateway, error=str(e), exc_info=True)
        finally:
            metrics.record_webhook_event(
                metric_gateway, ack.outcome, time.perf_counter() - start_time
            )
        return ack

    async def _process_webhook(
        self, gateway: str, raw_payload: bytes, headers: Dict[str, str]
    ) -> WebhookAck:
        reference = self.dispatcher.inspect_webhook(gateway, raw_payload)

        ack = await self._already_processed(gateway, reference.transaction_id)
        if ack is not None:
            return ack

        secondary_token = None
        draft = None
        if reference.transaction_id or reference.notification_token:
            try:
                draft = await self._retry_on_missing_session(self._find_webhook_draft, reference)
            except SessionNotFoundError:
                # The draft may have been finalized by another path meanwhile.
                ack = await self._already_processed(gateway, reference.transaction_id)
                if ack is not None:
                    return ack
                raise
            secondary_token = draft.notification_token

        result = await self.dispatcher.handle_webhook(
            gateway, raw_payload, headers, secondary_token
        )
        if draft is not None and "reason" not in result.metadata:
            # The driver authenticated the body against this draft: the order
            # is keyed on the draft's identifiers, whatever ids the body carries.
            result.metadata["session_id"] = draft.session_id
            if draft.gateway_transaction_id:
                result.gateway_transaction_id = draft.gateway_transaction_id

        if result.status == ResultStatus.FAILED:
            if "reason" in result.metadata:
                logger.warning(
                    "webhook_rejected", gateway=gateway, reason=result.metadata["reason"]
                )
                return WebhookAck(outcome="rejected", session_id=result.session_id)
            await self._mark_draft_failed(result.session_id)
            return WebhookAck(outcome="payment_failed", session_id=result.session_id)

        if not result.is_paid:
            return WebhookAck(outcome="ignored", session_id=result.session_id)

        finalized = await self._retry_on_missing_session(self.finalize_payment, result, gateway)
        return WebhookAck(
            outcome="finalized" if finalized.created else "duplicate",
            session_id=finalized.order.session_id,
            order_id=str(finalized.order.id),
        )

    async def _already_processed(
        self, gateway: str, transaction_id: Optional[str]
    ) -> Optional[WebhookAck]:
        if not transaction_id:
            return None
        async with self.session_factory() as db:
            existing = await self._order_by_transaction_id(db, transaction_id)
        if existing is None:
            return None
        logger.info(
            "webhook_already_processed",
            gateway=gateway,
            gateway_transaction_id=transaction_id,
        )
        return WebhookAck(
            outcome="already_processed",
            session_id=existing.session_id,
            order_id=str(existing.id),
        )

    async def _retry_on_missing_session(self, func: Any, *args: Any) -> Any:
        # A webhook can outrun the commit of its draft session; retry briefly
        # before leaving the session to the poller.
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(SessionNotFoundError),
            stop=stop_after_attempt(self.settings.webhook_session_lookup_attempts),
            wait=wait_exponential(multiplier=self.settings.webhook_session_lookup_delay),
            reraise=True,
        ):
            with attempt:
                return await func(*args)

    async def _find_webhook_draft(self, reference: WebhookReference) -> TempRegistration:
        async with self.session_factory() as db:
            draft = None
            if reference.notification_token:
                draft = await self.store.get_by_notification_token(
                    db, reference.notification_token, include_expired=True
                )
            if draft is None and reference.transaction_id:
                draft = await self.store.get_by_session_id(
                    db, reference.transaction_id, include_expired=True
                ) or await self.store.get_by_gateway_transaction_id(
                    db, reference.transaction_id, include_expired=True
                )
        if draft is None:
            raise SessionNotFoundError(
                "No checkout session for webhook", session_id=reference.transaction_id
            )
        return draft

    async def _mark_draft_failed(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        try:
            async with self.session_factory() as db:
                await self.store.update(
                    db, session_id, {"orders": {"payment_status": PaymentStatus.FAILED.value}}
                )
                await db.commit()
        except SessionNotFoundError:
            logger.info("failed_payment_for_unknown_session", session_id=session_id)

    # ------------------------------------------------------------------
    # Checkout start
    # ------------------------------------------------------------------

    async def initiate_checkout(self, draft: CheckoutDraft) -> CheckoutSession:
        """
        Price a cart, store it as a draft session and start its payment.

        The declared total must equal the total priced from the catalogue.
        A live session for the same gateway and amount is reused instead of
        starting a second payment. Zero-total carts are finalized at once as
        free orders.

        Raises:
            CheckoutValidationError: If the cart is incomplete or mispriced
            UnsupportedGatewayError: If the gateway is unknown
            PaymentInitiationError: If the gateway refuses the payment
        """
        self._validate_checkout(draft)
        if draft.total_amount > 0:
            self.dispatcher.get_driver(draft.gateway)

        session_id = draft.session_id or new_session_id()
        async with self.session_factory() as db:
            priced = await self.pricer.price(
                db,
                draft.event_id,
                draft.selected_tickets,
                draft.selected_products,
                promo_code=draft.promo_code,
                shipping_option=draft.shipping_option,
            )
            if priced.total_amount != draft.total_amount:
                logger.warning(
                    "checkout_total_mismatch",
                    event_id=draft.event_id,
                    declared=draft.total_amount,
                    priced=priced.total_amount,
                )
                raise CheckoutValidationError(
                    f"Cart total {draft.total_amount} does not match the priced total "
                    f"{priced.total_amount}"
                )
            is_free = priced.total_amount == 0
            gateway = FREE_GATEWAY if is_free else draft.gateway

            existing = await self.store.get_by_session_id(db, session_id)
            if (
                existing is not None
                and not is_free
                and existing.gateway == gateway
                and existing.total_amount == draft.total_amount
                and existing.gateway_transaction_id
                and existing.payment_status == PaymentStatus.PENDING.value
            ):
                logger.info("checkout_session_reused", session_id=session_id, gateway=gateway)
                return self._checkout_session(existing, reused=True)
            order_number = (existing.orders.get("order_number") if existing else None) or (
                new_order_number()
            )

        orders: Dict[str, Any] = {
            "order_number": order_number,
            "total_amount": draft.total_amount,
            "subtotal": priced.subtotal,
            "tax_amount": priced.tax_amount,
            "shipping_amount": priced.shipping_amount,
            "discount_amount": priced.discount_amount,
            "promo_code": priced.promo_code,
            "shipping_option": draft.shipping_option,
            "shipping_address": draft.shipping_address,
            "currency": draft.currency,
            "payment_status": PaymentStatus.PENDING.value,
            "gateway": gateway,
            "event_slug": draft.event_slug or priced.event_slug,
        }

        if is_free:
            orders["gateway_transaction_id"] = f"FREE_{order_number}"
            orders["gateway_metadata"] = {}
        else:
            action = await self.dispatcher.initiate_payment(
                gateway,
                PaymentRequest(
                    session_id=session_id,
                    order_number=order_number,
                    amount=draft.total_amount,
                    currency=draft.currency,
                    customer_email=draft.attendees[0].get("email"),
                    metadata={
                        "event_id": draft.event_id,
                        "event_slug": orders["event_slug"] or "",
                        "shipping_option": draft.shipping_option,
                        "shipping_amount": priced.shipping_amount,
                    },
                ),
            )
            orders["gateway_transaction_id"] = action.transaction_id
            orders["gateway_metadata"] = {
                **action.gateway_metadata,
                "client_secret": action.client_secret,
                "payment_url": action.payment_url,
            }

        async with self.session_factory() as db:
            stored = await self.store.create(
                db,
                session_id=session_id,
                event_id=draft.event_id,
                attendees=draft.attendees,
                selected_tickets=priced.tickets,
                selected_products=priced.products,
                registration=draft.registration,
                orders=orders,
            )
            await db.commit()

        logger.info(
            "checkout_started",
            session_id=session_id,
            gateway=gateway,
            amount=draft.total_amount,
            order_number=order_number,
        )

        if not is_free:
            return self._checkout_session(stored)

        finalized = await self.finalize_payment(
            NormalizedResult(
                status=ResultStatus.PAID,
                amount=0,
                gateway_transaction_id=orders["gateway_transaction_id"],
                metadata={"session_id": session_id, "is_free": True},
            ),
            FREE_GATEWAY,
        )
        session = self._checkout_session(stored)
        session.status = PaymentStatus.FREE.value
        session.order_id = str(finalized.order.id)
        return session

    @staticmethod
    def _validate_checkout(draft: CheckoutDraft) -> None:
        if not draft.attendees:
            raise CheckoutValidationError("At least one attendee is required")
        if not (draft.attendees[0].get("email") or "").strip():
            raise CheckoutValidationError("The primary attendee needs an email address")
        if not draft.selected_tickets:
            raise CheckoutValidationError("At least one ticket must be selected")
        if draft.total_amount < 0:
            raise CheckoutValidationError("Total amount cannot be negative")
        if len(draft.currency) != 3:
            raise CheckoutValidationError("Currency must be a 3-letter code")

    @staticmethod
    def _checkout_session(draft: TempRegistration, reused: bool = False) -> CheckoutSession:
        metadata = draft.gateway_metadata
        return CheckoutSession(
            session_id=draft.session_id,
            gateway=draft.gateway or "",
            status=draft.payment_status,
            total_amount=draft.total_amount,
            currency=draft.currency,
            order_number=draft.orders.get("order_number", ""),
            transaction_id=draft.gateway_transaction_id,
            payment_url=metadata.get("payment_url"),
            client_secret=metadata.get("client_secret"),
            reused=reused,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    async def _order_by_transaction_id(db: AsyncSession, transaction_id: str) -> Optional[Order]:
        result = await db.execute(
            select(Order).where(Order.gateway_transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _order_by_session_id(db: AsyncSession, session_id: str) -> Optional[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.session_id == session_id)
            .order_by(Order.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _event_slug(db: AsyncSession, event_id: int) -> Optional[str]:
        result = await db.execute(select(Event.slug).where(Event.id == event_id))
        return result.scalar_one_or_none()
