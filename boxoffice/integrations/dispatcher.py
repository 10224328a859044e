"""
Payment dispatcher: routes calls to the registered gateway drivers.

The registry is fixed at construction. Unknown gateway names fail closed
with UnsupportedGatewayError. No persistence happens at this layer.
"""
import asyncio
import time
from typing import Dict, Iterable, List, Mapping, Optional

import structlog

from boxoffice.config import Settings, get_settings
from boxoffice.exceptions import (
    GatewayTimeoutError,
    GatewayVerificationError,
    UnsupportedGatewayError,
)
from boxoffice.integrations.base import (
    GatewayDriver,
    NormalizedResult,
    PaymentAction,
    PaymentRequest,
    VerificationContext,
    WebhookReference,
)
from boxoffice.integrations.orange_money import OrangeMoneyGateway
from boxoffice.integrations.stripe_gateway import StripeGateway
from boxoffice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentDispatcher:
    """
    Uniform entry point over all payment gateways.

    Responsibilities:
    - Look up the driver for a gateway name
    - Never let a webhook payload crash the caller
    - Bound every verification call with a timeout
    """

    def __init__(
        self,
        drivers: Iterable[GatewayDriver],
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._drivers: Dict[str, GatewayDriver] = {}
        for driver in drivers:
            if driver.name in self._drivers:
                raise ValueError(f"Gateway {driver.name!r} registered twice")
            self._drivers[driver.name] = driver

    @property
    def gateways(self) -> List[str]:
        return sorted(self._drivers)

    def get_driver(self, gateway: str) -> GatewayDriver:
        """
        Return the driver registered for ``gateway``.

        Raises:
            UnsupportedGatewayError: If no driver is registered under that name
        """
        try:
            return self._drivers[gateway]
        except KeyError:
            raise UnsupportedGatewayError(
                f"Unsupported payment gateway: {gateway}", gateway=gateway
            ) from None

    def polling_gateways(self) -> List[str]:
        """Gateways whose payments must be re-verified by polling."""
        return [name for name, driver in self._drivers.items() if driver.requires_polling]

    async def initiate_payment(self, gateway: str, request: PaymentRequest) -> PaymentAction:
        """Start a payment on ``gateway``."""
        return await self.get_driver(gateway).initiate_payment(request)

    def inspect_webhook(self, gateway: str, raw_payload: bytes) -> WebhookReference:
        """Correlation hints from an unauthenticated webhook body."""
        driver = self.get_driver(gateway)
        try:
            return driver.inspect_webhook(raw_payload)
        except Exception as e:
            logger.warning("webhook_inspection_failed", gateway=gateway, error=str(e))
            return WebhookReference()

    async def handle_webhook(
        self,
        gateway: str,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secondary_token: Optional[str] = None,
    ) -> NormalizedResult:
        """
        Authenticate and normalize a webhook.

        Any driver failure is reported as a ``failed`` result so webhook
        handlers can always acknowledge the gateway.

        Raises:
            UnsupportedGatewayError: If the gateway is unknown
        """
        driver = self.get_driver(gateway)
        try:
            return await driver.handle_webhook(raw_payload, headers, secondary_token)
        except Exception as e:
            logger.error(
                "webhook_translation_failed",
                gateway=gateway,
                error=str(e),
                exc_info=True,
            )
            return NormalizedResult.failed("driver_error", error=str(e))

    async def verify_payment(
        self,
        gateway: str,
        transaction_id: str,
        context: Optional[VerificationContext] = None,
    ) -> NormalizedResult:
        """
        Ask the gateway for the current state of a payment.

        Raises:
            UnsupportedGatewayError: If the gateway is unknown
            GatewayTimeoutError: If the gateway does not answer in time
            GatewayVerificationError: If the driver call fails
        """
        driver = self.get_driver(gateway)
        context = context or VerificationContext()
        timeout = self.settings.gateway_timeout_seconds
        start_time = time.perf_counter()

        try:
            result = await asyncio.wait_for(
                driver.verify_payment(transaction_id, context), timeout=timeout
            )
        except asyncio.TimeoutError:
            metrics.record_gateway_verification(
                gateway, "timeout", time.perf_counter() - start_time
            )
            logger.warning(
                "gateway_verification_timeout",
                gateway=gateway,
                transaction_id=transaction_id,
                timeout_seconds=timeout,
            )
            raise GatewayTimeoutError(
                f"{gateway} did not answer within {timeout}s",
                gateway=gateway,
                transaction_id=transaction_id,
            ) from None
        except GatewayVerificationError:
            metrics.record_gateway_verification(
                gateway, "error", time.perf_counter() - start_time
            )
            raise
        except Exception as e:
            metrics.record_gateway_verification(
                gateway, "error", time.perf_counter() - start_time
            )
            raise GatewayVerificationError(
                f"{gateway} verification failed: {str(e)}",
                gateway=gateway,
                transaction_id=transaction_id,
            ) from e

        metrics.record_gateway_verification(
            gateway, result.status.value, time.perf_counter() - start_time
        )
        logger.info(
            "gateway_payment_verified",
            gateway=gateway,
            transaction_id=transaction_id,
            status=result.status.value,
        )
        return result

    async def close(self) -> None:
        for driver in self._drivers.values():
            await driver.close()


def build_dispatcher(settings: Optional[Settings] = None) -> PaymentDispatcher:
    """Dispatcher with every gateway this service supports."""
    settings = settings or get_settings()
    return PaymentDispatcher(
        [StripeGateway(settings), OrangeMoneyGateway(settings)],
        settings=settings,
    )
