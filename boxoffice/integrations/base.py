"""
Gateway driver interface and the normalized shapes every driver produces.

A driver translates one payment gateway's native protocol into:
- ``PaymentAction`` when a payment is started
- ``NormalizedResult`` when a webhook arrives or a payment is re-verified

Drivers validate authenticity themselves. A payload that cannot be verified
is reported as ``failed``; drivers never raise on a bad webhook.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class ResultStatus(str, Enum):
    """Normalized payment state reported by a gateway."""

    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class NormalizedResult:
    """
    Gateway-agnostic payment result.

    ``amount`` is in minor currency units. ``metadata`` carries the
    correlation identifiers (``session_id``) and anything the gateway
    reported that is worth keeping on the order.
    """

    status: ResultStatus
    amount: Optional[int] = None
    gateway_transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    currency: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == ResultStatus.PAID

    @property
    def session_id(self) -> Optional[str]:
        return self.metadata.get("session_id")

    @classmethod
    def failed(cls, reason: str, **metadata: Any) -> "NormalizedResult":
        """Build a failed result carrying the reason in its metadata."""
        return cls(status=ResultStatus.FAILED, metadata={"reason": reason, **metadata})


@dataclass
class PaymentRequest:
    """Everything a driver needs to start a payment."""

    session_id: str
    order_number: str
    amount: int
    currency: str
    description: str = ""
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentAction:
    """
    What the client must do next to pay.

    ``gateway_metadata`` holds tokens that must be retained on the draft
    session for later verification (pay token, notification token).
    """

    gateway: str
    transaction_id: str
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    gateway_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationContext:
    """Context recovered from the draft session for a polling verification."""

    amount: Optional[int] = None
    pay_token: Optional[str] = None
    currency: Optional[str] = None


@dataclass
class WebhookReference:
    """Correlation hints readable from a webhook before it is authenticated."""

    transaction_id: Optional[str] = None
    notification_token: Optional[str] = None


class GatewayDriver(ABC):
    """
    One payment gateway behind a uniform interface.

    Attributes:
        name: Registry key of the gateway
        requires_polling: True when webhook delivery cannot be relied on and
            pending payments must be re-verified periodically
    """

    name: str = ""
    requires_polling: bool = False

    @abstractmethod
    async def initiate_payment(self, request: PaymentRequest) -> PaymentAction:
        """Start a payment with the gateway."""

    @abstractmethod
    async def handle_webhook(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        secondary_token: Optional[str] = None,
    ) -> NormalizedResult:
        """Authenticate and translate a webhook. Unverifiable payloads are ``failed``."""

    @abstractmethod
    async def verify_payment(
        self, transaction_id: str, context: VerificationContext
    ) -> NormalizedResult:
        """Ask the gateway for the current state of a payment."""

    def inspect_webhook(self, raw_payload: bytes) -> WebhookReference:
        """Read correlation hints from an unauthenticated payload."""
        return WebhookReference()

    async def close(self) -> None:
        """Release network resources held by the driver."""
