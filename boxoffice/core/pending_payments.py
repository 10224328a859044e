"""
Pending payment poller.

Gateways whose webhooks cannot be relied on are re-verified periodically:
every live draft on such a gateway that is still pending after the
threshold goes through ``PaymentService.verify_and_finalize``. Paid
sessions become orders; failed ones are discarded.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.config import Settings, get_settings
from boxoffice.core.payment_service import PaymentService
from boxoffice.core.temp_registrations import TempRegistrationStore
from boxoffice.database.connection import get_session_factory
from boxoffice.database.models import PaymentStatus, utcnow
from boxoffice.exceptions import BoxOfficeError, SessionNotFoundError
from boxoffice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class PendingCheckResult:
    checked: int = 0
    paid: int = 0
    failed: int = 0
    pending: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PendingPaymentChecker:
    """Re-verifies stale pending sessions on polling gateways."""

    def __init__(
        self,
        payment_service: PaymentService,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[TempRegistrationStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.payment_service = payment_service
        self.session_factory = session_factory or get_session_factory()
        self.store = store or payment_service.store

    async def run(self, now: Optional[datetime] = None) -> PendingCheckResult:
        """
        Verify every stale pending session once.

        Errors on one session are collected and the run continues.

        Returns:
            PendingCheckResult: Tally of verdicts and per-session errors
        """
        now = now or utcnow()
        gateways = self.payment_service.dispatcher.polling_gateways()
        created_before = now - timedelta(minutes=self.settings.pending_payment_threshold_minutes)

        async with self.session_factory() as db:
            drafts = await self.store.list_pending_for_gateways(db, gateways, created_before, now)
            session_ids = [draft.session_id for draft in drafts]

        logger.info("pending_payments_found", count=len(session_ids), gateways=gateways)
        results = PendingCheckResult()

        for session_id in session_ids:
            results.checked += 1
            try:
                outcome = await self.payment_service.verify_and_finalize(session_id)
                if outcome.status == PaymentStatus.FAILED.value:
                    await self._discard(session_id)
            except SessionNotFoundError:
                # Finalized or cleaned up since the list was loaded.
                logger.info("pending_payment_session_gone", session_id=session_id)
                continue
            except BoxOfficeError as e:
                self._record_error(results, session_id, e)
                continue
            except Exception as e:
                logger.error(
                    "pending_payment_check_crashed",
                    session_id=session_id,
                    error=str(e),
                    exc_info=True,
                )
                self._record_error(results, session_id, e)
                continue

            if outcome.paid:
                results.paid += 1
                metrics.record_pending_check("paid")
            elif outcome.status == PaymentStatus.FAILED.value:
                results.failed += 1
                metrics.record_pending_check("failed")
            else:
                results.pending += 1
                metrics.record_pending_check("pending")

        logger.info(
            "pending_payments_checked",
            checked=results.checked,
            paid=results.paid,
            failed=results.failed,
            pending=results.pending,
            errors=len(results.errors),
        )
        return results

    async def _discard(self, session_id: str) -> None:
        async with self.session_factory() as db:
            await self.store.delete(db, session_id)
            await db.commit()
        logger.info("failed_payment_session_discarded", session_id=session_id)

    @staticmethod
    def _record_error(results: PendingCheckResult, session_id: str, error: Exception) -> None:
        logger.warning("pending_payment_check_failed", session_id=session_id, error=str(error))
        results.errors.append({"session_id": session_id, "error": str(error)})
        metrics.record_pending_check("error")
