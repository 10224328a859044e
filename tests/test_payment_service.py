"""
Tests for checkout finalization, verification and webhook reconciliation.
"""
import json
from datetime import timedelta
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from boxoffice.core.payment_service import CheckoutDraft, PaymentService
from boxoffice.database.models import Attendee, EventVisitor, Order, TempRegistration, utcnow
from boxoffice.exceptions import (
    CheckoutValidationError,
    GatewayVerificationError,
    SessionNotFoundError,
    UnsupportedGatewayError,
)
from boxoffice.integrations.base import NormalizedResult, ResultStatus

from conftest import FakeGateway, RecordingEmailSender, minutes_ago, paid_result, ticket


def webhook_body(
    session_id: str, status: str = "paid", token: Optional[str] = None, **extra: Any
) -> bytes:
    body: Dict[str, Any] = {
        "tx": f"tx_{session_id}",
        "token": token or f"nt_{session_id}",
        "status": status,
        "amount": 5000,
        "session_id": session_id,
        **extra,
    }
    return json.dumps(body).encode()


def checkout_draft(**overrides: Any) -> CheckoutDraft:
    values: Dict[str, Any] = {
        "event_id": 1,
        "gateway": "fakepay",
        "attendees": [{"email": "awa@example.com", "first_name": "Awa"}],
        "selected_tickets": [{"ticket_id": 7, "quantity": 1, "price": 5000}],
        "total_amount": 5000,
        "event_slug": "jazz-night",
    }
    values.update(overrides)
    return CheckoutDraft(**values)


class TestFinalizePayment:
    """Test suite for PaymentService.finalize_payment."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_paid_results_are_ignored(
        self, payment_service: PaymentService, create_draft: Any, count_orders: Any
    ) -> None:
        await create_draft("s1")
        result = NormalizedResult(status=ResultStatus.PENDING, gateway_transaction_id="tx_s1")

        assert await payment_service.finalize_payment(result, "fakepay") is None
        assert await count_orders() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_result_without_transaction_id_raises(
        self, payment_service: PaymentService
    ) -> None:
        with pytest.raises(ValueError):
            await payment_service.finalize_payment(
                NormalizedResult(status=ResultStatus.PAID), "fakepay"
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_order_attendees_and_deletes_draft(
        self,
        payment_service: PaymentService,
        session_factory: Any,
        create_draft: Any,
        email_sender: RecordingEmailSender,
    ) -> None:
        await create_draft("s1")

        finalized = await payment_service.finalize_payment(paid_result("s1"), "fakepay")

        assert finalized.created is True
        order = finalized.order
        assert order.order_number == "ORD-s1"
        assert order.session_id == "s1"
        assert order.payment_status == "paid"
        assert order.total_amount == 5000
        assert order.gateway_transaction_id == "tx_s1"
        assert order.gateway_metadata["pay_token"] == "pt_s1"

        async with session_factory() as db:
            attendees = (await db.execute(select(Attendee))).scalars().all()
            draft = await db.get(TempRegistration, "s1")

        assert draft is None
        assert len(attendees) == 2
        assert all(a.order_id == order.id and a.session_id is None for a in attendees)
        assert [a.is_primary for a in attendees].count(True) == 1
        assert email_sender.confirmations[0]["to"] == "awa@example.com"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_finalization_returns_existing_order(
        self, payment_service: PaymentService, create_draft: Any, count_orders: Any
    ) -> None:
        await create_draft("s1")

        first = await payment_service.finalize_payment(paid_result("s1"), "fakepay")
        second = await payment_service.finalize_payment(paid_result("s1"), "fakepay")

        assert first.created is True
        assert second.created is False
        assert second.order.id == first.order.id
        assert await count_orders("tx_s1") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_draft_resolved_by_transaction_id(
        self, payment_service: PaymentService, create_draft: Any
    ) -> None:
        """Gateways that do not echo the session id are matched on the stored transaction id."""
        await create_draft("s1")
        result = NormalizedResult(
            status=ResultStatus.PAID, amount=5000, gateway_transaction_id="tx_s1"
        )

        finalized = await payment_service.finalize_payment(result, "fakepay")

        assert finalized.order.session_id == "s1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_draft_still_finalized(
        self, payment_service: PaymentService, create_draft: Any
    ) -> None:
        await create_draft("s1", now=minutes_ago(8 * 24 * 60))

        finalized = await payment_service.finalize_payment(paid_result("s1"), "fakepay")

        assert finalized.created is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_session_raises(self, payment_service: PaymentService) -> None:
        with pytest.raises(SessionNotFoundError):
            await payment_service.finalize_payment(paid_result("ghost"), "fakepay")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_integrity_error_returns_winning_order(
        self,
        payment_service: PaymentService,
        session_factory: Any,
        create_draft: Any,
        count_orders: Any,
        mocker: Any,
    ) -> None:
        """Losing the insert race on the unique transaction id yields the winner's order."""
        await create_draft("s1")
        winner = await payment_service.finalize_payment(paid_result("s1"), "fakepay")
        await create_draft("s2", gateway_transaction_id="tx_s1")

        mocker.patch.object(
            PaymentService,
            "_order_by_transaction_id",
            new=AsyncMock(side_effect=[None, winner.order]),
        )
        result = NormalizedResult(
            status=ResultStatus.PAID,
            amount=5000,
            gateway_transaction_id="tx_s1",
            metadata={"session_id": "s2"},
        )
        loser = await payment_service.finalize_payment(result, "fakepay")

        assert loser.created is False
        assert loser.order.id == winner.order.id
        assert await count_orders() == 1
        async with session_factory() as db:
            assert await db.get(TempRegistration, "s2") is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_marks_visitor_converted(
        self, payment_service: PaymentService, session_factory: Any, create_draft: Any
    ) -> None:
        async with session_factory() as db:
            db.add(EventVisitor(event_id=1, email="AWA@example.com"))
            await db.commit()
        await create_draft("s1")

        await payment_service.finalize_payment(paid_result("s1"), "fakepay")

        async with session_factory() as db:
            visitor = (await db.execute(select(EventVisitor))).scalar_one()
        assert visitor.converted is True
        assert visitor.converted_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_keeps_reported_amount(
        self, payment_service: PaymentService, create_draft: Any
    ) -> None:
        await create_draft("s1", amount=5000)

        finalized = await payment_service.finalize_payment(
            paid_result("s1", amount=4000), "fakepay"
        )

        assert finalized.order.total_amount == 4000


class TestCheckStatusBySession:
    """Test suite for PaymentService.check_status_by_session."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_transitions(
        self, payment_service: PaymentService, create_draft: Any
    ) -> None:
        assert (await payment_service.check_status_by_session("s1")).status == "not_found"

        await create_draft("s1")
        pending = await payment_service.check_status_by_session("s1")
        assert pending.status == "pending"
        assert pending.event_id == 1

        finalized = await payment_service.finalize_payment(paid_result("s1"), "fakepay")
        paid = await payment_service.check_status_by_session("s1")
        assert paid.status == "paid"
        assert paid.order_id == str(finalized.order.id)
        assert paid.order_number == "ORD-s1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_has_no_side_effects(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1")
        fake_gateway.verify_results["tx_s1"] = ResultStatus.PAID

        await payment_service.check_status_by_session("s1")

        assert fake_gateway.verify_calls == []


class TestVerifyAndFinalize:
    """Test suite for PaymentService.verify_and_finalize."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_then_already_finalized(
        self,
        payment_service: PaymentService,
        fake_gateway: FakeGateway,
        create_draft: Any,
        create_event: Any,
        count_orders: Any,
    ) -> None:
        await create_event()
        await create_draft("s1")
        fake_gateway.verify_results["tx_s1"] = ResultStatus.PAID

        first = await payment_service.verify_and_finalize("s1")
        second = await payment_service.verify_and_finalize("s1")

        assert first.paid and not first.already_finalized
        assert first.event_slug == "jazz-night"
        assert second.paid and second.already_finalized
        assert second.order_id == first.order_id
        assert await count_orders() == 1
        # The second call answers from the order without asking the gateway.
        assert len(fake_gateway.verify_calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_passes_verification_context(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1", amount=7500)

        outcome = await payment_service.verify_and_finalize("s1")

        assert outcome.status == "pending"
        transaction_id, context = fake_gateway.verify_calls[0]
        assert transaction_id == "tx_s1"
        assert context.amount == 7500
        assert context.pay_token == "pt_s1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payment_reported(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1")
        fake_gateway.verify_results["tx_s1"] = ResultStatus.FAILED

        outcome = await payment_service.verify_and_finalize("s1")

        assert outcome.status == "failed"
        assert not outcome.paid

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_draft_not_reverified(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1", payment_status="failed")

        outcome = await payment_service.verify_and_finalize("s1")

        assert outcome.status == "failed"
        assert fake_gateway.verify_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_timeout_is_retryable_pending(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1")
        fake_gateway.verify_delay = 5

        outcome = await payment_service.verify_and_finalize("s1")

        assert outcome.status == "pending"
        assert outcome.retryable is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_error_propagates(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1")
        fake_gateway.verify_error = RuntimeError("gateway exploded")

        with pytest.raises(GatewayVerificationError):
            await payment_service.verify_and_finalize("s1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_session_raises(self, payment_service: PaymentService) -> None:
        with pytest.raises(SessionNotFoundError):
            await payment_service.verify_and_finalize("ghost")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_uninitiated_payment_is_pending(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1", gateway_transaction_id=None)

        outcome = await payment_service.verify_and_finalize("s1")

        assert outcome.status == "pending"
        assert fake_gateway.verify_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_transaction_resolves_session(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, create_draft: Any
    ) -> None:
        await create_draft("s1")
        fake_gateway.verify_results["tx_s1"] = ResultStatus.PAID

        outcome = await payment_service.verify_transaction("fakepay", "tx_s1")

        assert outcome.paid
        assert outcome.session_id == "s1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_transaction_unknown_gateway(
        self, payment_service: PaymentService
    ) -> None:
        with pytest.raises(UnsupportedGatewayError):
            await payment_service.verify_transaction("paypal", "tx_1")


class TestHandleWebhook:
    """Test suite for PaymentService.handle_webhook."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_webhook_finalizes(
        self, payment_service: PaymentService, create_draft: Any, count_orders: Any
    ) -> None:
        await create_draft("s1")

        ack = await payment_service.handle_webhook("fakepay", webhook_body("s1"), {})

        assert ack.outcome == "finalized"
        assert ack.session_id == "s1"
        assert ack.order_id is not None
        assert await count_orders("tx_s1") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_webhook_is_absorbed(
        self, payment_service: PaymentService, create_draft: Any, count_orders: Any
    ) -> None:
        await create_draft("s1")

        first = await payment_service.handle_webhook("fakepay", webhook_body("s1"), {})
        replay = await payment_service.handle_webhook("fakepay", webhook_body("s1"), {})

        assert replay.outcome == "already_processed"
        assert replay.order_id == first.order_id
        assert await count_orders() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_mismatch_rejected(
        self, payment_service: PaymentService, create_draft: Any, count_orders: Any
    ) -> None:
        await create_draft("s1")
        body = json.dumps({"tx": "tx_s1", "token": "forged", "status": "paid"}).encode()

        ack = await payment_service.handle_webhook("fakepay", body, {})

        assert ack.outcome == "rejected"
        assert await count_orders() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payment_marks_draft(
        self, payment_service: PaymentService, create_draft: Any
    ) -> None:
        await create_draft("s1")

        ack = await payment_service.handle_webhook(
            "fakepay", webhook_body("s1", status="failed"), {}
        )

        assert ack.outcome == "payment_failed"
        status = await payment_service.check_status_by_session("s1")
        assert status.status == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_webhook_ignored(
        self, payment_service: PaymentService, create_draft: Any, count_orders: Any
    ) -> None:
        await create_draft("s1")

        ack = await payment_service.handle_webhook(
            "fakepay", webhook_body("s1", status="pending"), {}
        )

        assert ack.outcome == "ignored"
        assert await count_orders() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_session_acknowledged(
        self, payment_service: PaymentService, count_orders: Any
    ) -> None:
        ack = await payment_service.handle_webhook("fakepay", webhook_body("ghost"), {})

        assert ack.outcome == "session_not_found"
        assert await count_orders() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_gateway_acknowledged(self, payment_service: PaymentService) -> None:
        ack = await payment_service.handle_webhook("paypal", b"{}", {})
        assert ack.outcome == "unsupported_gateway"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_never_raises(
        self, payment_service: PaymentService, create_draft: Any, mocker: Any
    ) -> None:
        await create_draft("s1")
        mocker.patch.object(
            payment_service, "finalize_payment", side_effect=RuntimeError("db down")
        )

        ack = await payment_service.handle_webhook("fakepay", webhook_body("s1"), {})

        assert ack.outcome == "error"


@pytest_asyncio.fixture
async def jazz_night(create_event: Any, create_catalogue: Any) -> None:
    """Event 1 with a 5000 ticket (7) and a free ticket (8)."""
    await create_event()
    await create_catalogue(ticket(7, price=5000), ticket(8, price=0))


class TestInitiateCheckout:
    """Test suite for PaymentService.initiate_checkout."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_starts_gateway_payment(
        self,
        payment_service: PaymentService,
        fake_gateway: FakeGateway,
        session_factory: Any,
        store: Any,
        jazz_night: None,
    ) -> None:
        session = await payment_service.initiate_checkout(checkout_draft(session_id="s1"))

        assert session.status == "pending"
        assert session.transaction_id == "tx_s1"
        assert session.payment_url == "https://pay.test/s1"
        assert session.order_number.startswith("ORD-")
        assert fake_gateway.initiated[0].amount == 5000

        async with session_factory() as db:
            draft = await store.get_by_session_id(db, "s1")
        assert draft.notification_token == "nt_s1"
        assert draft.pay_token == "pt_s1"
        assert draft.orders["subtotal"] == 5000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_draft_stores_catalogue_prices(
        self,
        payment_service: PaymentService,
        session_factory: Any,
        store: Any,
        jazz_night: None,
    ) -> None:
        lines = [{"ticket_id": 7, "quantity": 2, "price": 1, "name": "VIP"}]

        await payment_service.initiate_checkout(
            checkout_draft(session_id="s1", selected_tickets=lines, total_amount=10000)
        )

        async with session_factory() as db:
            draft = await store.get_by_session_id(db, "s1")
        assert draft.selected_tickets == [
            {"ticket_id": 7, "quantity": 2, "price": 5000, "name": "VIP"}
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_live_session_is_reused(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, jazz_night: None
    ) -> None:
        first = await payment_service.initiate_checkout(checkout_draft(session_id="s1"))
        second = await payment_service.initiate_checkout(checkout_draft(session_id="s1"))

        assert second.reused is True
        assert second.order_number == first.order_number
        assert len(fake_gateway.initiated) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_free_checkout_finalized_immediately(
        self,
        payment_service: PaymentService,
        fake_gateway: FakeGateway,
        session_factory: Any,
        jazz_night: None,
    ) -> None:
        session = await payment_service.initiate_checkout(
            checkout_draft(
                session_id="s1",
                selected_tickets=[{"ticket_id": 8, "quantity": 2}],
                total_amount=0,
            )
        )

        assert session.status == "free"
        assert session.gateway == "free"
        assert session.order_id is not None
        assert fake_gateway.initiated == []

        async with session_factory() as db:
            order = (await db.execute(select(Order))).scalar_one()
        assert order.payment_status == "free"
        assert order.gateway_transaction_id == f"FREE_{order.order_number}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mispriced_zero_total_rejected(
        self,
        payment_service: PaymentService,
        fake_gateway: FakeGateway,
        count_orders: Any,
        jazz_night: None,
    ) -> None:
        with pytest.raises(CheckoutValidationError, match="does not match"):
            await payment_service.initiate_checkout(
                checkout_draft(session_id="s1", total_amount=0)
            )

        assert await count_orders() == 0
        assert fake_gateway.initiated == []
        status = await payment_service.check_status_by_session("s1")
        assert status.status == "not_found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_underpriced_total_rejected(
        self, payment_service: PaymentService, fake_gateway: FakeGateway, jazz_night: None
    ) -> None:
        with pytest.raises(CheckoutValidationError):
            await payment_service.initiate_checkout(checkout_draft(total_amount=100))

        assert fake_gateway.initiated == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_ticket_rejected(
        self, payment_service: PaymentService, jazz_night: None
    ) -> None:
        with pytest.raises(CheckoutValidationError, match="Ticket 99 not found"):
            await payment_service.initiate_checkout(
                checkout_draft(selected_tickets=[{"ticket_id": 99, "quantity": 1}])
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"attendees": []},
            {"attendees": [{"first_name": "No email"}]},
            {"selected_tickets": []},
            {"total_amount": -1},
            {"currency": "FRANCS"},
        ],
    )
    async def test_invalid_checkout_rejected(
        self, payment_service: PaymentService, overrides: Dict[str, Any]
    ) -> None:
        with pytest.raises(CheckoutValidationError):
            await payment_service.initiate_checkout(checkout_draft(**overrides))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_gateway_rejected(self, payment_service: PaymentService) -> None:
        with pytest.raises(UnsupportedGatewayError):
            await payment_service.initiate_checkout(checkout_draft(gateway="paypal"))


class TestTouchSession:
    """Test suite for PaymentService.touch_session."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_extends_live_draft(
        self, payment_service: PaymentService, create_draft: Any
    ) -> None:
        await create_draft("s1")

        draft = await payment_service.touch_session("s1", extend_hours=24 * 30)

        assert draft.expires_at > utcnow() + timedelta(days=29)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_session_raises(self, payment_service: PaymentService) -> None:
        with pytest.raises(SessionNotFoundError):
            await payment_service.touch_session("ghost")
