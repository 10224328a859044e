"""
API routes for checkout payments, admin operations and counter cash drawers.

Services are read from ``request.app.state.container``. Domain errors
propagate to the application's ``BoxOfficeError`` handler, except on the
webhook route, which always acknowledges.
"""
import hmac
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from boxoffice.core.payment_service import CheckoutDraft
from boxoffice.database.models import CashSession, Order
from boxoffice.monitoring.health import HealthCheck
from boxoffice.services import ServiceContainer

from .schemas import (
    AbandonedCartStatsResponse,
    CartBatchResponse,
    CashSessionReportResponse,
    CashSessionResponse,
    CashSessionStatsResponse,
    CheckoutRequest,
    CheckoutResponse,
    CleanupResponse,
    CloseCashSessionRequest,
    CounterSaleRequest,
    CounterSaleResponse,
    HealthCheckResponse,
    JobRunResponse,
    PaymentStatusResponse,
    ProcessAbandonedCartsRequest,
    SchedulerStatusResponse,
    SessionTouchResponse,
    StartCashSessionRequest,
    VerificationResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def require_admin_key(
    request: Request, container: ServiceContainer = Depends(get_container)
) -> None:
    """Reject admin calls without the configured API key. Open when no key is configured."""
    expected = container.settings.admin_api_key
    if not expected:
        return
    provided = request.headers.get(container.settings.api_key_header, "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("admin_api_key_rejected", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


# Create routers
payment_router = APIRouter(prefix="/api/v1/payments", tags=["payments"])
admin_router = APIRouter(
    prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)
cash_session_router = APIRouter(prefix="/api/v1/cash-sessions", tags=["cash-sessions"])
monitoring_router = APIRouter(tags=["monitoring"])


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------


@payment_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a checkout",
    description="Price the cart, store it as a draft session and start its payment",
)
async def start_checkout(
    payload: CheckoutRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Start a checkout. Zero-total carts are finalized immediately as free orders."""
    logger.info(
        "api_checkout_request",
        event_id=payload.event_id,
        gateway=payload.gateway,
        amount=payload.total_amount,
    )
    data = payload.model_dump()
    data["attendees"] = [attendee.model_dump(exclude_none=True) for attendee in payload.attendees]
    session = await container.payments.initiate_checkout(CheckoutDraft(**data))
    return asdict(session)


@payment_router.post(
    "/webhook/{gateway}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Receive a gateway notification; always acknowledged with 200",
)
async def gateway_webhook(
    gateway: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Reconcile a gateway notification. Failures are logged, never returned to the gateway."""
    body = await request.body()
    ack = await container.payments.handle_webhook(gateway, body, dict(request.headers))
    return {"received": True, **asdict(ack)}


@payment_router.get(
    "/verify/{gateway}/{transaction_id}",
    response_model=VerificationResponse,
    summary="Verify a payment",
    description="Verify a payment by gateway transaction id (or session id) and finalize it if paid",
)
async def verify_payment(
    gateway: str,
    transaction_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    outcome = await container.payments.verify_transaction(gateway, transaction_id)
    return asdict(outcome)


@payment_router.get(
    "/status/{session_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Payment status of a checkout session, without side effects",
)
async def get_payment_status(
    session_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.payments.check_status_by_session(session_id)
    return asdict(result)


@payment_router.post(
    "/sessions/{session_id}/touch",
    response_model=SessionTouchResponse,
    summary="Keep a checkout session alive",
    description="Record client activity on a live draft session and extend its expiry",
)
async def touch_session(
    session_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    draft = await container.payments.touch_session(session_id)
    return {
        "session_id": draft.session_id,
        "last_activity_at": draft.last_activity_at.isoformat(),
        "expires_at": draft.expires_at.isoformat(),
    }


@payment_router.post(
    "/verify-session/{session_id}",
    response_model=VerificationResponse,
    summary="Verify a checkout session",
    description="Reconcile a session whose payment confirmation may be late",
)
async def verify_session(
    session_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Client-triggered reconciliation.

    Unknown or expired sessions answer 404 ``session_not_found``; gateway
    timeouts answer ``pending`` with ``retryable``.
    """
    outcome = await container.payments.verify_and_finalize(session_id)
    logger.info(
        "api_verify_session",
        session_id=session_id,
        status=outcome.status,
        already_finalized=outcome.already_finalized,
    )
    return asdict(outcome)


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@admin_router.get(
    "/scheduler/status",
    response_model=SchedulerStatusResponse,
    summary="Scheduler status",
)
async def scheduler_status(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    jobs = container.scheduler.get_status()
    return {
        "enabled": container.scheduler.enabled,
        "jobs": jobs,
        "total_jobs": len(jobs),
        "enabled_jobs": sum(1 for job in jobs if job["enabled"]),
    }


@admin_router.post(
    "/scheduler/jobs/{name}/run",
    response_model=JobRunResponse,
    summary="Run a job now",
)
async def run_job(name: str, container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    logger.info("api_manual_job_run", job=name)
    job = await container.scheduler.run_job(name)
    return {
        "job": job.to_dict(),
        "success": job.last_error is None,
        "result": job.last_result,
    }


@admin_router.post(
    "/abandoned-carts/process",
    response_model=CartBatchResponse,
    summary="Send abandoned cart reminders now",
)
async def process_abandoned_carts(
    payload: Optional[ProcessAbandonedCartsRequest] = None,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    payload = payload or ProcessAbandonedCartsRequest()
    result = await container.abandoned_carts.process_abandoned_carts(
        batch_size=payload.batch_size, dry_run=payload.dry_run
    )
    return result.to_dict()


@admin_router.get(
    "/abandoned-carts/stats",
    response_model=AbandonedCartStatsResponse,
    summary="Abandoned cart statistics",
)
async def abandoned_cart_stats(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    stats = await container.abandoned_carts.get_abandoned_cart_stats()
    return stats.to_dict()


@admin_router.post(
    "/abandoned-carts/cleanup",
    response_model=CleanupResponse,
    summary="Delete expired carts now",
)
async def cleanup_expired_carts(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.abandoned_carts.cleanup_expired_carts()
    return result.to_dict()


# ----------------------------------------------------------------------
# Cash sessions
# ----------------------------------------------------------------------


def _cash_session_dict(session: CashSession) -> Dict[str, Any]:
    return {
        "id": str(session.id),
        "cashier_id": session.cashier_id,
        "ticket_counter_id": session.ticket_counter_id,
        "event_id": session.event_id,
        "organization_id": session.organization_id,
        "status": session.status,
        "opening_cash": session.opening_cash,
        "closing_cash": session.closing_cash,
        "opening_time": session.opening_time.isoformat(),
        "closing_time": session.closing_time.isoformat() if session.closing_time else None,
        "notes": session.notes,
    }


def _counter_sale_dict(order: Order) -> Dict[str, Any]:
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "total_amount": order.total_amount,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
    }


@cash_session_router.post(
    "",
    response_model=CashSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a cash drawer session",
)
async def start_cash_session(
    payload: StartCashSessionRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    session = await container.cash_sessions.start_session(**payload.model_dump())
    return _cash_session_dict(session)


@cash_session_router.get(
    "",
    response_model=List[CashSessionResponse],
    summary="List cash drawer sessions",
)
async def list_cash_sessions(
    cashier_id: Optional[str] = None,
    ticket_counter_id: Optional[str] = None,
    event_id: Optional[int] = None,
    session_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
) -> List[Dict[str, Any]]:
    sessions = await container.cash_sessions.list_sessions(
        cashier_id=cashier_id,
        ticket_counter_id=ticket_counter_id,
        event_id=event_id,
        status=session_status,
        limit=limit,
    )
    return [_cash_session_dict(session) for session in sessions]


@cash_session_router.get(
    "/active/{cashier_id}",
    response_model=CashSessionResponse,
    summary="Open session of a cashier",
)
async def get_active_cash_session(
    cashier_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    session = await container.cash_sessions.get_active_session(cashier_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active session")
    return _cash_session_dict(session)


@cash_session_router.get(
    "/{session_id}",
    response_model=CashSessionResponse,
    summary="Get a cash drawer session",
)
async def get_cash_session(
    session_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    session = await container.cash_sessions.get_session(session_id)
    return _cash_session_dict(session)


@cash_session_router.post(
    "/{session_id}/close",
    response_model=CashSessionResponse,
    summary="Close a cash drawer session",
)
async def close_cash_session(
    session_id: uuid.UUID,
    payload: CloseCashSessionRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    session = await container.cash_sessions.close_session(
        session_id, payload.closing_cash, payload.notes
    )
    return _cash_session_dict(session)


@cash_session_router.post(
    "/{session_id}/sales",
    response_model=CounterSaleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a counter sale",
)
async def record_counter_sale(
    session_id: uuid.UUID,
    payload: CounterSaleRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    order = await container.cash_sessions.record_sale(session_id, **payload.model_dump())
    return _counter_sale_dict(order)


@cash_session_router.get(
    "/{session_id}/stats",
    response_model=CashSessionStatsResponse,
    summary="Cash session sales by payment method",
)
async def cash_session_stats(
    session_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    stats = await container.cash_sessions.get_session_stats(session_id)
    return stats.to_dict()


@cash_session_router.get(
    "/{session_id}/report",
    response_model=CashSessionReportResponse,
    summary="Cash session audit report",
)
async def cash_session_report(
    session_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    report = await container.cash_sessions.get_session_report(session_id)
    return report.to_dict()


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(
    response: Response, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    """Health check endpoint for monitoring. Answers 503 when the database is unreachable."""
    result = await HealthCheck(container.session_factory, container.settings).check_all()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await HealthCheck(container.session_factory, container.settings).liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
