"""Payment gateway drivers, the dispatcher routing between them, and the email collaborator."""
from .base import (
    GatewayDriver,
    NormalizedResult,
    PaymentAction,
    PaymentRequest,
    ResultStatus,
    VerificationContext,
    WebhookReference,
)
from .dispatcher import PaymentDispatcher, build_dispatcher
from .email import EmailSender, LoggingEmailSender
from .orange_money import OrangeMoneyGateway
from .stripe_gateway import StripeGateway

__all__ = [
    "EmailSender",
    "GatewayDriver",
    "LoggingEmailSender",
    "NormalizedResult",
    "OrangeMoneyGateway",
    "PaymentAction",
    "PaymentDispatcher",
    "PaymentRequest",
    "ResultStatus",
    "StripeGateway",
    "VerificationContext",
    "WebhookReference",
    "build_dispatcher",
]
