"""
Stripe card gateway.

Implements:
- PaymentIntent creation with the checkout session id in its metadata
- Webhook signature verification (bad signatures become ``failed`` results)
- PaymentIntent re-verification for the client verify paths
- Retry with exponential backoff and a circuit breaker around API calls

The Stripe SDK is synchronous; calls run in a worker thread so the event
loop is never blocked and callers can bound them with a timeout.
"""
import asyncio
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from boxoffice.config import Settings, get_settings
from boxoffice.exceptions import GatewayError, GatewayVerificationError, PaymentInitiationError
from boxoffice.integrations.base import (
    GatewayDriver,
    NormalizedResult,
    PaymentAction,
    PaymentRequest,
    ResultStatus,
    VerificationContext,
)
from boxoffice.integrations.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

SUCCEEDED_EVENTS = {"payment_intent.succeeded"}
FAILED_EVENTS = {"payment_intent.payment_failed", "payment_intent.canceled"}


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeAPIError(GatewayError):
    """Raised when a Stripe API call fails."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message, error_type=error_type.value)
        self.error_type = error_type
        self.original_error = original_error
        self.retryable = error_type != StripeErrorType.PERMANENT


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeAPIError) and error.retryable


def _to_dict(obj: Any) -> Dict[str, Any]:
    """Shallow plain-dict view of a Stripe object."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class StripeClient:
    """
    Thin async wrapper for the Stripe API.

    Features:
    - Automatic retry with exponential backoff for transient errors
    - Circuit breaker pattern
    - Idempotent payment creation
    - Error classification
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe client."""
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker("stripe")

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _wrap_error(self, error: stripe.StripeError) -> StripeAPIError:
        error_type = self._classify_error(error)
        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        return StripeAPIError(str(error), error_type=error_type, original_error=error)

    async def _call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await self.circuit_breaker.call(asyncio.to_thread, func, *args, **kwargs)
        except stripe.StripeError as e:
            raise self._wrap_error(e) from e

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        receipt_email: Optional[str] = None,
    ) -> Any:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            amount: Amount in minor units
            currency: Currency code (e.g., 'eur')
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata (string values only)
            receipt_email: Optional email for the Stripe receipt

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeAPIError: If payment creation fails
        """
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        return await self._call(stripe.PaymentIntent.create, **params)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        """
        Retrieve a PaymentIntent by ID.

        Raises:
            StripeAPIError: If retrieval fails
        """
        return await self._call(stripe.PaymentIntent.retrieve, payment_intent_id)

    def construct_event(self, payload: bytes, signature: str) -> Any:
        """
        Verify a webhook signature and parse the event.

        Raises:
            stripe.SignatureVerificationError: If the signature does not match
            ValueError: If the payload is not valid JSON
        """
        return stripe.Webhook.construct_event(
            payload, signature, self.settings.stripe_webhook_secret
        )


class StripeGateway(GatewayDriver):
    """Card payments confirmed by signed server-to-server webhooks."""

    name = "stripe"
    requires_polling = False

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[StripeClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or StripeClient(self.settings)

    async def initiate_payment(self, request: PaymentRequest) -> PaymentAction:
        """
        Create a PaymentIntent for a checkout session.

        Raises:
            PaymentInitiationError: If Stripe refuses the intent
        """
        metadata = {
            "session_id": request.session_id,
            "order_number": request.order_number,
            **{key: str(value) for key, value in request.metadata.items()},
        }
        try:
            intent = await self.client.create_payment_intent(
                amount=request.amount,
                currency=request.currency,
                idempotency_key=f"checkout-{request.session_id}-{request.amount}",
                metadata=metadata,
                receipt_email=request.customer_email,
            )
        except GatewayError as e:
            raise PaymentInitiationError(
                f"Stripe payment initiation failed: {e.message}",
                session_id=request.session_id,
            ) from e

        logger.info(
            "stripe_payment_intent_created",
            session_id=request.session_id,
            payment_intent_id=intent["id"],
        )
        return PaymentAction(
            gateway=self.name,
            transaction_id=intent["id"],
            client_secret=intent.get("client_secret"),
            gateway_metadata={"payment_intent_id": intent["id"]},
        )

    async def handle_webhook(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secondary_token: Optional[str] = None,
    ) -> NormalizedResult:
        """
        Verify the Stripe signature and translate the event.

        ``payment_intent.succeeded`` is ``paid``, failed or canceled intents
        are ``failed``, other event types are reported ``pending`` and left
        for the other reconciliation paths.
        """
        signature = _get_header(headers, "stripe-signature")
        if not signature:
            logger.warning("stripe_webhook_missing_signature")
            return NormalizedResult.failed("missing_signature")

        try:
            event = self.client.construct_event(raw_payload, signature)
        except stripe.SignatureVerificationError:
            logger.warning("stripe_webhook_invalid_signature")
            return NormalizedResult.failed("invalid_signature")
        except ValueError:
            logger.warning("stripe_webhook_invalid_payload")
            return NormalizedResult.failed("invalid_payload")

        event_type = event["type"]
        intent = _to_dict(event["data"]["object"])
        logger.info("stripe_webhook_verified", event_id=event["id"], event_type=event_type)

        if event_type in SUCCEEDED_EVENTS:
            return self._normalize_intent(intent, event_id=event["id"])
        if event_type in FAILED_EVENTS:
            result = self._normalize_intent(intent, event_id=event["id"])
            result.status = ResultStatus.FAILED
            return result
        return NormalizedResult(
            status=ResultStatus.PENDING,
            gateway_transaction_id=intent.get("id"),
            metadata={"event_type": event_type, "stripe_event_id": event["id"], "ignored": True},
        )

    async def verify_payment(
        self, transaction_id: str, context: VerificationContext
    ) -> NormalizedResult:
        """
        Retrieve the PaymentIntent and report its state.

        Raises:
            GatewayVerificationError: If Stripe cannot be reached or refuses
        """
        try:
            intent = await self.client.retrieve_payment_intent(transaction_id)
        except GatewayError as e:
            raise GatewayVerificationError(
                f"Stripe verification failed: {e.message}",
                gateway=self.name,
                transaction_id=transaction_id,
            ) from e
        return self._normalize_intent(_to_dict(intent))

    def _normalize_intent(
        self, intent: Dict[str, Any], event_id: Optional[str] = None
    ) -> NormalizedResult:
        status = intent.get("status")
        if status == "succeeded":
            normalized = ResultStatus.PAID
        elif status == "canceled":
            normalized = ResultStatus.FAILED
        else:
            normalized = ResultStatus.PENDING

        raw_metadata = _to_dict(intent.get("metadata"))
        metadata: Dict[str, Any] = dict(raw_metadata)
        if "session_id" not in metadata and raw_metadata.get("sessionId"):
            metadata["session_id"] = raw_metadata["sessionId"]
        metadata["shipping_option"] = raw_metadata.get("shipping_option") or "pickup"
        if raw_metadata.get("shipping_amount"):
            metadata["shipping_amount"] = int(raw_metadata["shipping_amount"])
        shipping = _to_dict(intent.get("shipping"))
        if shipping.get("address"):
            metadata["shipping_address"] = _to_dict(shipping["address"])
        metadata["intent_status"] = status
        if event_id:
            metadata["stripe_event_id"] = event_id

        amount = intent.get("amount_received") or intent.get("amount")
        currency = intent.get("currency")
        return NormalizedResult(
            status=normalized,
            amount=int(amount) if amount is not None else None,
            gateway_transaction_id=intent.get("id"),
            metadata=metadata,
            currency=currency.upper() if currency else None,
        )
