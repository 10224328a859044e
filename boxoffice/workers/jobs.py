"""
Background jobs of the box office service.

- abandoned_cart_reminders: remind visitors of carts left behind
- cleanup_expired_carts: delete expired draft sessions
- pending_payment_check: re-verify pending mobile money payments
"""
from typing import Any, Dict, List

from boxoffice.config import Settings
from boxoffice.core.abandoned_cart import AbandonedCartService
from boxoffice.core.pending_payments import PendingPaymentChecker
from boxoffice.workers.scheduler import JobConfig, Scheduler

ABANDONED_CART_JOB = "abandoned_cart_reminders"
CLEANUP_EXPIRED_CARTS_JOB = "cleanup_expired_carts"
PENDING_PAYMENT_JOB = "pending_payment_check"


def build_jobs(
    settings: Settings,
    abandoned_carts: AbandonedCartService,
    pending_checker: PendingPaymentChecker,
) -> List[JobConfig]:
    """Job declarations wired to their services."""

    async def send_reminders() -> Dict[str, Any]:
        result = await abandoned_carts.process_abandoned_carts()
        return result.to_dict()

    async def cleanup_expired() -> Dict[str, Any]:
        result = await abandoned_carts.cleanup_expired_carts()
        return result.to_dict()

    async def check_pending() -> Dict[str, Any]:
        result = await pending_checker.run()
        return result.to_dict()

    return [
        JobConfig(
            name=ABANDONED_CART_JOB,
            schedule=settings.abandoned_cart_schedule,
            task=send_reminders,
            env_key="ENABLE_ABANDONED_CART_CRON",
        ),
        JobConfig(
            name=CLEANUP_EXPIRED_CARTS_JOB,
            schedule=settings.cleanup_expired_carts_schedule,
            task=cleanup_expired,
            env_key="ENABLE_CLEANUP_EXPIRED_CARTS_CRON",
        ),
        JobConfig(
            name=PENDING_PAYMENT_JOB,
            schedule=settings.pending_payment_schedule,
            task=check_pending,
            env_key="ENABLE_PENDING_PAYMENT_CHECK_CRON",
        ),
    ]


def build_scheduler(
    settings: Settings,
    abandoned_carts: AbandonedCartService,
    pending_checker: PendingPaymentChecker,
) -> Scheduler:
    """Scheduler with every background job registered."""
    scheduler = Scheduler(enabled=settings.enable_cron_jobs, timezone=settings.tz)
    for config in build_jobs(settings, abandoned_carts, pending_checker):
        scheduler.register_job(config)
    return scheduler
