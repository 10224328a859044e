"""
Orange Money mobile-money gateway.

Implements:
- OAuth client-credentials token, cached until five minutes before expiry
- Web payment initiation (returns the payment page URL and the tokens the
  draft session must retain)
- Webhook authentication by notification token comparison
- Transaction status polling

Webhook delivery is unreliable, so pending payments on this gateway are
re-verified by the pending payment checker. The gateway works in major
currency units; results are converted back to minor units.
"""
import hmac
import json
import time
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from boxoffice.config import Settings, get_settings
from boxoffice.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    GatewayVerificationError,
    PaymentInitiationError,
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
from boxoffice.integrations.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

TOKEN_PATHS = ("/oauth/v3/token", "/oauth/v2/token")
TOKEN_EXPIRY_BUFFER_SECONDS = 300

STATUS_MAP = {
    "SUCCESS": ResultStatus.PAID,
    "FAILED": ResultStatus.FAILED,
    "EXPIRED": ResultStatus.FAILED,
}


def to_major_units(amount: int) -> int:
    return amount // 100


def to_minor_units(amount: Any) -> Optional[int]:
    if amount in (None, ""):
        return None
    return int(round(float(amount) * 100))


class OrangeMoneyGateway(GatewayDriver):
    """Mobile-money payments confirmed by webhook or by polling."""

    name = "orange_money"
    requires_polling = True

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.orange_money_api_url,
            timeout=self.settings.gateway_timeout_seconds,
        )
        self.circuit_breaker = CircuitBreaker(self.name)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def _payment_base_path(self) -> str:
        return f"/orange-money-webpay/{self.settings.orange_money_country}/v1"

    @property
    def _currency(self) -> str:
        # The sandbox only accepts its test currency.
        return "OUV" if self.settings.orange_money_is_sandbox else self.settings.orange_money_currency

    async def get_access_token(self) -> str:
        """
        Return a cached OAuth token, fetching a new one when it is about to expire.

        Raises:
            GatewayError: If no token endpoint accepts the credentials
        """
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        last_error: Optional[Exception] = None
        for path in TOKEN_PATHS:
            try:
                payload = await self._request_token(path)
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning("orange_money_token_endpoint_failed", path=path, error=str(e))
                continue

            self._access_token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 3600))
            self._token_expires_at = time.monotonic() + max(
                expires_in - TOKEN_EXPIRY_BUFFER_SECONDS, 0
            )
            logger.info("orange_money_token_refreshed", path=path, expires_in=expires_in)
            return self._access_token

        raise GatewayError(f"Orange Money authentication failed: {last_error}")

    async def _request_token(self, path: str) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.2, max=2),
            reraise=True,
        ):
            with attempt:
                response = await self.http_client.post(
                    path,
                    data={"grant_type": "client_credentials"},
                    auth=(
                        self.settings.orange_money_client_id,
                        self.settings.orange_money_client_secret,
                    ),
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
        if "access_token" not in payload:
            raise ValueError("token response without access_token")
        return payload

    async def _post(self, path: str, body: Dict[str, Any]) -> httpx.Response:
        token = await self.get_access_token()
        return await self.circuit_breaker.call(
            self.http_client.post,
            path,
            json=body,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
        )

    async def initiate_payment(self, request: PaymentRequest) -> PaymentAction:
        """
        Create a web payment. The session id doubles as the Orange Money order id.

        Raises:
            PaymentInitiationError: If the payment cannot be created
        """
        order_id = request.session_id[:30]
        event_slug = request.metadata.get("event_slug") or "event"
        body = {
            "merchant_key": self.settings.orange_money_merchant_key,
            "currency": self._currency,
            "order_id": order_id,
            "amount": to_major_units(request.amount),
            "return_url": (
                f"{self.settings.frontend_url}/{event_slug}/success?session_id={order_id}"
            )[:120],
            "cancel_url": f"{self.settings.frontend_url}/{event_slug}/checkout"[:120],
            "notif_url": f"{self.settings.public_api_url}/api/v1/payments/webhook/{self.name}"[
                :120
            ],
            "lang": "fr" if self.settings.orange_money_is_sandbox else "en",
            "reference": order_id,
        }

        try:
            response = await self._post(f"{self._payment_base_path}/webpayment", body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError, GatewayError) as e:
            logger.error(
                "orange_money_initiation_failed",
                session_id=request.session_id,
                error=str(e),
            )
            raise PaymentInitiationError(
                f"Orange Money payment initiation failed: {e}",
                session_id=request.session_id,
            ) from e

        logger.info(
            "orange_money_payment_initiated",
            session_id=request.session_id,
            order_id=order_id,
        )
        return PaymentAction(
            gateway=self.name,
            transaction_id=order_id,
            payment_url=payload.get("payment_url"),
            gateway_metadata={
                "pay_token": payload.get("pay_token"),
                "notification_token": payload.get("notif_token"),
                "payment_url": payload.get("payment_url"),
            },
        )

    def inspect_webhook(self, raw_payload: bytes) -> WebhookReference:
        """Read the order id and notification token from a webhook body."""
        body = self._parse(raw_payload)
        if body is None:
            return WebhookReference()
        return WebhookReference(
            transaction_id=self._order_id(body),
            notification_token=body.get("notif_token"),
        )

    async def handle_webhook(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secondary_token: Optional[str] = None,
    ) -> NormalizedResult:
        """
        Authenticate a notification against the token stored at initiation.

        A missing or different token, or an unreadable body, is ``failed``.
        """
        body = self._parse(raw_payload)
        if body is None:
            logger.warning("orange_money_webhook_invalid_payload")
            return NormalizedResult.failed("invalid_payload")

        order_id = self._order_id(body)
        received_token = body.get("notif_token") or ""
        if not secondary_token or not hmac.compare_digest(
            str(received_token), str(secondary_token)
        ):
            logger.warning("orange_money_webhook_token_mismatch", order_id=order_id)
            return NormalizedResult.failed("notification_token_mismatch", order_id=order_id)

        gateway_status = str(body.get("status") or "").upper()
        status = STATUS_MAP.get(gateway_status, ResultStatus.PENDING)
        logger.info(
            "orange_money_webhook_verified",
            order_id=order_id,
            gateway_status=gateway_status,
        )
        # Production notifications carry only status, notif_token and txnid;
        # the caller maps them back to the draft authenticated by the token.
        named_order = body.get("order_id") or body.get("orderId")
        metadata: Dict[str, Any] = {
            "gateway_status": gateway_status,
            "txnid": body.get("txnid"),
            "notification_token": received_token,
        }
        if named_order:
            metadata["session_id"] = named_order
        return NormalizedResult(
            status=status,
            amount=to_minor_units(body.get("amount")),
            gateway_transaction_id=order_id,
            metadata=metadata,
        )

    async def verify_payment(
        self, transaction_id: str, context: VerificationContext
    ) -> NormalizedResult:
        """
        Poll the transaction status.

        Raises:
            GatewayVerificationError: If the pay token is missing or the call fails
        """
        if not context.pay_token:
            raise GatewayVerificationError(
                "Cannot verify Orange Money payment without a pay token",
                gateway=self.name,
                transaction_id=transaction_id,
            )

        body = {
            "order_id": transaction_id,
            "amount": to_major_units(context.amount or 0),
            "pay_token": context.pay_token,
        }
        try:
            response = await self._post(f"{self._payment_base_path}/transactionstatus", body)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(
                f"Orange Money did not answer: {e}",
                gateway=self.name,
                transaction_id=transaction_id,
            ) from e
        except (httpx.HTTPError, ValueError, GatewayError) as e:
            raise GatewayVerificationError(
                f"Orange Money verification failed: {e}",
                gateway=self.name,
                transaction_id=transaction_id,
            ) from e

        gateway_status = str(payload.get("status") or "").upper()
        status = STATUS_MAP.get(gateway_status, ResultStatus.PENDING)
        logger.info(
            "orange_money_payment_verified",
            order_id=transaction_id,
            gateway_status=gateway_status,
        )
        amount = to_minor_units(payload.get("amount"))
        return NormalizedResult(
            status=status,
            amount=amount if amount is not None else context.amount,
            gateway_transaction_id=transaction_id,
            metadata={
                "session_id": transaction_id,
                "gateway_status": gateway_status,
                "txnid": payload.get("txnid"),
                "pay_token": context.pay_token,
            },
            currency=payload.get("currency") or context.currency,
        )

    async def close(self) -> None:
        await self.http_client.aclose()

    @staticmethod
    def _parse(raw_payload: bytes) -> Optional[Dict[str, Any]]:
        try:
            body = json.loads(raw_payload or b"")
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _order_id(body: Dict[str, Any]) -> Optional[str]:
        return body.get("order_id") or body.get("orderId") or body.get("txnid")
