"""Checkout reconciliation, draft sessions, reminders and counter cash drawers."""
from .abandoned_cart import AbandonedCartService, AbandonedCartStats, CartBatchResult, CleanupResult
from .cash_sessions import CashSessionReport, CashSessionService, CashSessionStats
from .payment_service import (
    CheckoutDraft,
    CheckoutSession,
    FinalizeResult,
    PaymentService,
    SessionStatus,
    VerificationOutcome,
    WebhookAck,
)
from .pending_payments import PendingCheckResult, PendingPaymentChecker
from .pricing import CartPricer, PricedCart
from .temp_registrations import TempRegistrationStore

__all__ = [
    "AbandonedCartService",
    "AbandonedCartStats",
    "CartBatchResult",
    "CartPricer",
    "CashSessionReport",
    "CashSessionService",
    "CashSessionStats",
    "CheckoutDraft",
    "CheckoutSession",
    "CleanupResult",
    "FinalizeResult",
    "PaymentService",
    "PendingCheckResult",
    "PendingPaymentChecker",
    "PricedCart",
    "SessionStatus",
    "TempRegistrationStore",
    "VerificationOutcome",
    "WebhookAck",
]
