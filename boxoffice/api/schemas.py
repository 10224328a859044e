"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class AttendeeIn(BaseModel):
    """Attendee captured at checkout. The first attendee is the primary contact."""

    email: Optional[str] = Field(default=None, description="Attendee email")
    first_name: Optional[str] = Field(default=None, description="First name")
    last_name: Optional[str] = Field(default=None, description="Last name")
    ticket_type: Optional[str] = Field(default=None, description="Ticket type name")

    model_config = {"extra": "allow"}


class CheckoutRequest(BaseModel):
    """Request schema for starting a checkout."""

    event_id: int = Field(..., description="Event identifier")
    gateway: str = Field(..., description="Payment gateway (stripe, orange_money)")
    attendees: List[AttendeeIn] = Field(..., min_length=1, description="Attendees")
    selected_tickets: List[Dict[str, Any]] = Field(..., min_length=1, description="Ticket lines")
    selected_products: List[Dict[str, Any]] = Field(default_factory=list, description="Product lines")
    registration: Dict[str, Any] = Field(default_factory=dict, description="Registration form data")
    total_amount: int = Field(..., ge=0, description="Displayed total in minor units; must match the priced cart")
    currency: str = Field(default="XOF", min_length=3, max_length=3, description="Currency code")
    promo_code: Optional[str] = Field(default=None, description="Applied promo code")
    shipping_option: str = Field(default="pickup", description="pickup or a delivery option")
    shipping_address: Optional[Dict[str, Any]] = Field(default=None, description="Delivery address")
    event_slug: Optional[str] = Field(default=None, description="Event slug for return URLs")
    session_id: Optional[str] = Field(default=None, description="Existing checkout session to resume")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": 42,
                    "gateway": "orange_money",
                    "attendees": [
                        {"email": "awa@example.com", "first_name": "Awa", "last_name": "Diop"}
                    ],
                    "selected_tickets": [{"ticket_id": 7, "name": "VIP", "quantity": 1, "price": 5000}],
                    "total_amount": 5000,
                    "currency": "XOF",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for checkout start."""

    session_id: str = Field(..., description="Checkout session id")
    gateway: str = Field(..., description="Gateway the payment was started on")
    status: str = Field(..., description="pending, or free for zero-total orders")
    total_amount: int = Field(..., description="Total in minor currency units")
    currency: str = Field(..., description="Currency code")
    order_number: str = Field(..., description="Order number reserved for the session")
    transaction_id: Optional[str] = Field(default=None, description="Gateway transaction id")
    payment_url: Optional[str] = Field(default=None, description="Redirect URL (mobile money)")
    client_secret: Optional[str] = Field(default=None, description="Client secret (card)")
    order_id: Optional[str] = Field(default=None, description="Order id (free orders)")
    reused: bool = Field(default=False, description="An existing session was reused")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing. Always returned with HTTP 200."""

    received: bool = Field(default=True, description="Webhook acknowledged")
    outcome: str = Field(..., description="Processing outcome")
    session_id: Optional[str] = Field(default=None, description="Checkout session id")
    order_id: Optional[str] = Field(default=None, description="Order id when finalized")


class PaymentStatusResponse(BaseModel):
    """Response schema for a session's payment status."""

    status: str = Field(..., description="paid, pending, failed, cancelled or not_found")
    session_id: str = Field(..., description="Checkout session id")
    order_id: Optional[str] = Field(default=None, description="Order id once paid")
    order_number: Optional[str] = Field(default=None, description="Order number once paid")
    event_id: Optional[int] = Field(default=None, description="Event identifier")


class SessionTouchResponse(BaseModel):
    """Response schema for a draft session activity update."""

    session_id: str = Field(..., description="Checkout session id")
    last_activity_at: str = Field(..., description="Last client activity (ISO 8601)")
    expires_at: str = Field(..., description="New expiry (ISO 8601)")


class VerificationResponse(BaseModel):
    """Response schema for payment verification."""

    status: str = Field(..., description="paid, pending or failed")
    session_id: str = Field(..., description="Checkout session id")
    order_id: Optional[str] = Field(default=None, description="Order id once paid")
    order_number: Optional[str] = Field(default=None, description="Order number once paid")
    event_id: Optional[int] = Field(default=None, description="Event identifier")
    event_slug: Optional[str] = Field(default=None, description="Event slug")
    already_finalized: bool = Field(default=False, description="Order existed before this call")
    retryable: bool = Field(default=False, description="Verification may be retried")
    message: Optional[str] = Field(default=None, description="Status message")


class SchedulerStatusResponse(BaseModel):
    """Response schema for the scheduler status."""

    enabled: bool = Field(..., description="Scheduler master switch")
    jobs: List[Dict[str, Any]] = Field(..., description="Per-job status")
    total_jobs: int = Field(..., description="Registered jobs")
    enabled_jobs: int = Field(..., description="Jobs scheduled to run")


class JobRunResponse(BaseModel):
    """Response schema for a manual job run."""

    job: Dict[str, Any] = Field(..., description="Job status after the run")
    success: bool = Field(..., description="Run finished without error")
    result: Optional[Any] = Field(default=None, description="Job result")


class ProcessAbandonedCartsRequest(BaseModel):
    """Request schema for a manual abandoned cart run."""

    batch_size: Optional[int] = Field(default=None, gt=0, le=500, description="Concurrent carts")
    dry_run: bool = Field(default=False, description="Log without sending or stamping")


class CartBatchResponse(BaseModel):
    processed: int
    emails_sent: int
    skipped: int
    errors: List[Dict[str, Any]]


class CleanupResponse(BaseModel):
    deleted: int
    attendees_cleared: int


class AbandonedCartStatsResponse(BaseModel):
    pending_reminders: int
    reminders_sent: int
    expired_carts: int
    events_affected: int
    total_abandoned_value: int


class StartCashSessionRequest(BaseModel):
    """Request schema for opening a cash drawer session."""

    cashier_id: str = Field(..., min_length=1, description="Cashier identifier")
    ticket_counter_id: str = Field(..., min_length=1, description="Ticket counter identifier")
    event_id: Optional[int] = Field(default=None, description="Event sold at the counter")
    organization_id: Optional[int] = Field(default=None, description="Organization identifier")
    opening_cash: int = Field(default=0, ge=0, description="Opening float in minor units")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "cashier_id": "cashier-12",
                    "ticket_counter_id": "counter-north",
                    "event_id": 42,
                    "opening_cash": 50000,
                }
            ]
        }
    }


class CloseCashSessionRequest(BaseModel):
    """Request schema for closing a cash drawer session."""

    closing_cash: int = Field(..., ge=0, description="Counted cash in minor units")
    notes: Optional[str] = Field(default=None, description="Closing notes")


class CounterSaleRequest(BaseModel):
    """Request schema for recording a counter sale."""

    total_amount: int = Field(..., ge=0, description="Sale total in minor units")
    payment_method: str = Field(..., description="cash, card or free")
    items_ticket: List[Dict[str, Any]] = Field(default_factory=list, description="Ticket lines")
    items_product: List[Dict[str, Any]] = Field(default_factory=list, description="Product lines")


class CashSessionResponse(BaseModel):
    """Response schema for a cash drawer session."""

    id: str = Field(..., description="Cash session id")
    cashier_id: str
    ticket_counter_id: str
    event_id: Optional[int] = None
    organization_id: Optional[int] = None
    status: str
    opening_cash: int
    closing_cash: Optional[int] = None
    opening_time: str
    closing_time: Optional[str] = None
    notes: Optional[str] = None


class CounterSaleResponse(BaseModel):
    order_id: str
    order_number: str
    total_amount: int
    payment_method: str
    payment_status: str


class CashSessionStatsResponse(BaseModel):
    opening_cash: int
    cash_sales: int
    card_sales: int
    free_sales: int
    total_sales: int
    expected_cash: int


class CashSessionReportResponse(CashSessionStatsResponse):
    session_id: str
    cashier_id: str
    ticket_counter_id: str
    status: str
    opening_time: str
    closing_time: Optional[str] = None
    closing_cash: Optional[int] = None
    discrepancy: Optional[int] = None
    total_orders: int
    tickets_sold: int
    products_sold: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
