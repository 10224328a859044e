"""
Unit tests for the payment dispatcher.
"""
from typing import Any

import pytest

from boxoffice.exceptions import (
    GatewayTimeoutError,
    GatewayVerificationError,
    UnsupportedGatewayError,
)
from boxoffice.integrations.base import ResultStatus, VerificationContext
from boxoffice.integrations.dispatcher import PaymentDispatcher, build_dispatcher

from conftest import FakeGateway


class TestPaymentDispatcher:
    """Test suite for PaymentDispatcher."""

    @pytest.mark.unit
    def test_duplicate_gateway_names_rejected(self, test_settings: Any) -> None:
        with pytest.raises(ValueError, match="registered twice"):
            PaymentDispatcher([FakeGateway(), FakeGateway()], settings=test_settings)

    @pytest.mark.unit
    def test_unknown_gateway_fails_closed(self, dispatcher: PaymentDispatcher) -> None:
        with pytest.raises(UnsupportedGatewayError):
            dispatcher.get_driver("paypal")

    @pytest.mark.unit
    def test_polling_gateways(self, test_settings: Any) -> None:
        dispatcher = PaymentDispatcher(
            [FakeGateway("poller"), FakeGateway("pusher", requires_polling=False)],
            settings=test_settings,
        )
        assert dispatcher.gateways == ["poller", "pusher"]
        assert dispatcher.polling_gateways() == ["poller"]

    @pytest.mark.unit
    def test_build_dispatcher_registers_supported_gateways(self, test_settings: Any) -> None:
        dispatcher = build_dispatcher(test_settings)
        assert dispatcher.gateways == ["orange_money", "stripe"]
        assert dispatcher.polling_gateways() == ["orange_money"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handle_webhook_unknown_gateway_raises(self, dispatcher: PaymentDispatcher) -> None:
        with pytest.raises(UnsupportedGatewayError):
            await dispatcher.handle_webhook("paypal", b"{}", {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handle_webhook_driver_crash_becomes_failed(
        self, dispatcher: PaymentDispatcher
    ) -> None:
        """A payload the driver chokes on is reported failed, never raised."""
        result = await dispatcher.handle_webhook("fakepay", b"not json", {})
        assert result.status == ResultStatus.FAILED
        assert result.metadata["reason"] == "driver_error"

    @pytest.mark.unit
    def test_inspect_webhook_swallows_driver_errors(self, dispatcher: PaymentDispatcher) -> None:
        reference = dispatcher.inspect_webhook("fakepay", b"not json")
        assert reference.transaction_id is None
        assert reference.notification_token is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_payment_passes_context(
        self, dispatcher: PaymentDispatcher, fake_gateway: FakeGateway
    ) -> None:
        fake_gateway.verify_results["tx_1"] = ResultStatus.PAID
        result = await dispatcher.verify_payment(
            "fakepay", "tx_1", VerificationContext(amount=5000, pay_token="pt_1")
        )
        assert result.is_paid
        assert result.amount == 5000
        assert fake_gateway.verify_calls[0][1].pay_token == "pt_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_payment_timeout(
        self, dispatcher: PaymentDispatcher, fake_gateway: FakeGateway
    ) -> None:
        """A gateway slower than the configured timeout raises GatewayTimeoutError."""
        fake_gateway.verify_delay = 5
        with pytest.raises(GatewayTimeoutError):
            await dispatcher.verify_payment("fakepay", "tx_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_payment_wraps_driver_errors(
        self, dispatcher: PaymentDispatcher, fake_gateway: FakeGateway
    ) -> None:
        fake_gateway.verify_error = ConnectionResetError("peer reset")
        with pytest.raises(GatewayVerificationError, match="peer reset") as exc_info:
            await dispatcher.verify_payment("fakepay", "tx_1")
        assert exc_info.value.retryable
        assert not isinstance(exc_info.value, GatewayTimeoutError)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_closes_every_driver(self, test_settings: Any, mocker: Any) -> None:
        first, second = FakeGateway("a"), FakeGateway("b")
        first_close = mocker.patch.object(first, "close", new=mocker.AsyncMock())
        second_close = mocker.patch.object(second, "close", new=mocker.AsyncMock())
        await PaymentDispatcher([first, second], settings=test_settings).close()
        first_close.assert_awaited_once()
        second_close.assert_awaited_once()
