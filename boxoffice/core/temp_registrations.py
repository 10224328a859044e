"""
Draft checkout session storage.

Drafts are keyed by session id and can also be found by the gateway
secondary identifiers stored at payment initiation (transaction id,
notification token). Writes merge into the existing draft, mirroring the
checkout UI saving its state step by step.

Deleting a draft always clears the attendee back-references first; the
attendees table holds a foreign key to the draft session id.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.config import Settings, get_settings
from boxoffice.database.models import Attendee, PaymentStatus, TempRegistration, utcnow
from boxoffice.exceptions import SessionNotFoundError

logger = structlog.get_logger(__name__)

REPLACEABLE_FIELDS = (
    "event_id",
    "attendees",
    "registration",
    "selected_tickets",
    "selected_products",
    "expires_at",
    "reminder_email_sent_at",
)


def _primary_email(attendees: Sequence[Dict[str, Any]]) -> Optional[str]:
    if not attendees:
        return None
    email = (attendees[0].get("email") or "").strip()
    return email or None


def _sync_lookup_columns(row: TempRegistration) -> None:
    orders = row.orders or {}
    gateway_metadata = orders.get("gateway_metadata") or {}
    row.gateway = orders.get("gateway")
    row.gateway_transaction_id = orders.get("gateway_transaction_id")
    row.notification_token = gateway_metadata.get("notification_token")
    row.payment_status = orders.get("payment_status") or PaymentStatus.PENDING.value
    row.primary_email = _primary_email(row.attendees or [])


def merge_orders(current: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial draft order into the stored one (gateway metadata merged key-wise)."""
    merged = {**current, **changes}
    if "gateway_metadata" in changes:
        merged["gateway_metadata"] = {
            **(current.get("gateway_metadata") or {}),
            **(changes["gateway_metadata"] or {}),
        }
    return merged


class TempRegistrationStore:
    """
    CRUD and lookups over draft checkout sessions.

    Methods take the caller's session and never commit: the caller owns
    the transaction.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.settings.temp_registration_ttl_days)

    async def create(
        self,
        db: AsyncSession,
        session_id: str,
        event_id: int,
        attendees: List[Dict[str, Any]],
        selected_tickets: List[Dict[str, Any]],
        selected_products: Optional[List[Dict[str, Any]]] = None,
        registration: Optional[Dict[str, Any]] = None,
        orders: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> TempRegistration:
        """
        Store a draft session, replacing any previous draft with the same id.

        Args:
            db: Database session
            session_id: Client-visible checkout session id
            event_id: Event the cart belongs to
            attendees: Attendee records; the first one is the primary contact
            selected_tickets: Ticket line items
            selected_products: Product line items
            registration: Registration form data
            orders: Embedded draft order (totals, gateway tokens, shipping)
            now: Clock override

        Returns:
            TempRegistration: The stored draft
        """
        now = now or utcnow()
        row = await db.get(TempRegistration, session_id)
        if row is None:
            row = TempRegistration(session_id=session_id, created_at=now)
            db.add(row)
        elif row.expires_at <= now:
            # An expired draft that cleanup has not reached yet starts over.
            row.created_at = now
            row.reminder_email_sent_at = None

        row.event_id = event_id
        row.attendees = list(attendees)
        row.selected_tickets = list(selected_tickets)
        row.selected_products = list(selected_products or [])
        row.registration = dict(registration or {})
        row.orders = dict(orders or {})
        row.last_activity_at = now
        row.expires_at = now + self.ttl
        _sync_lookup_columns(row)
        await db.flush()

        logger.info(
            "temp_registration_stored",
            session_id=session_id,
            event_id=event_id,
            gateway=row.gateway,
            expires_at=row.expires_at.isoformat(),
        )
        return row

    async def update(
        self,
        db: AsyncSession,
        session_id: str,
        changes: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> TempRegistration:
        """
        Merge ``changes`` into a live draft.

        Top-level fields are replaced; the embedded ``orders`` document is
        merged key by key.

        Raises:
            SessionNotFoundError: If no live draft has this session id
            ValueError: If ``changes`` names an unknown field
        """
        unknown = set(changes) - set(REPLACEABLE_FIELDS) - {"orders"}
        if unknown:
            raise ValueError(f"Unknown draft fields: {sorted(unknown)}")

        now = now or utcnow()
        row = await self.get_by_session_id(db, session_id, now=now)
        if row is None:
            raise SessionNotFoundError(
                f"Checkout session {session_id} expired or invalid", session_id=session_id
            )

        for field_name in REPLACEABLE_FIELDS:
            if field_name in changes:
                setattr(row, field_name, changes[field_name])
        if "orders" in changes:
            row.orders = merge_orders(row.orders or {}, changes["orders"] or {})
        row.last_activity_at = now
        _sync_lookup_columns(row)
        await db.flush()

        logger.debug("temp_registration_updated", session_id=session_id, fields=sorted(changes))
        return row

    async def get_by_session_id(
        self,
        db: AsyncSession,
        session_id: str,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[TempRegistration]:
        """Find a draft by its session id."""
        query = select(TempRegistration).where(TempRegistration.session_id == session_id)
        if not include_expired:
            query = query.where(TempRegistration.expires_at > (now or utcnow()))
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_notification_token(
        self,
        db: AsyncSession,
        token: str,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[TempRegistration]:
        """Find a draft by the gateway notification token stored at initiation."""
        query = select(TempRegistration).where(TempRegistration.notification_token == token)
        if not include_expired:
            query = query.where(TempRegistration.expires_at > (now or utcnow()))
        result = await db.execute(query.order_by(TempRegistration.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def get_by_gateway_transaction_id(
        self,
        db: AsyncSession,
        transaction_id: str,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[TempRegistration]:
        """Find a draft by the gateway transaction id stored at initiation."""
        query = select(TempRegistration).where(
            TempRegistration.gateway_transaction_id == transaction_id
        )
        if not include_expired:
            query = query.where(TempRegistration.expires_at > (now or utcnow()))
        result = await db.execute(query.order_by(TempRegistration.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def delete(self, db: AsyncSession, session_id: str) -> bool:
        """
        Delete a draft after detaching the attendees that reference it.

        Returns:
            bool: True if a draft was deleted
        """
        cleared = await db.execute(
            update(Attendee)
            .where(Attendee.session_id == session_id)
            .values(session_id=None)
            .execution_options(synchronize_session=False)
        )
        deleted = await db.execute(
            delete(TempRegistration)
            .where(TempRegistration.session_id == session_id)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "temp_registration_deleted",
            session_id=session_id,
            attendees_cleared=cleared.rowcount,
            deleted=deleted.rowcount,
        )
        return deleted.rowcount > 0

    async def touch(
        self,
        db: AsyncSession,
        session_id: str,
        extend_hours: int = 24,
        now: Optional[datetime] = None,
    ) -> Optional[TempRegistration]:
        """Record activity on a live draft and keep it alive at least ``extend_hours``."""
        now = now or utcnow()
        row = await self.get_by_session_id(db, session_id, now=now)
        if row is None:
            return None
        row.last_activity_at = now
        row.expires_at = max(row.expires_at, now + timedelta(hours=extend_hours))
        await db.flush()
        return row

    async def list_pending_for_gateways(
        self,
        db: AsyncSession,
        gateways: Sequence[str],
        created_before: datetime,
        now: Optional[datetime] = None,
    ) -> List[TempRegistration]:
        """Live drafts still awaiting payment on ``gateways``, older than ``created_before``."""
        if not gateways:
            return []
        result = await db.execute(
            select(TempRegistration)
            .where(
                TempRegistration.gateway.in_(list(gateways)),
                TempRegistration.payment_status == PaymentStatus.PENDING.value,
                TempRegistration.created_at < created_before,
                TempRegistration.expires_at > (now or utcnow()),
            )
            .order_by(TempRegistration.created_at)
        )
        return list(result.scalars().all())

    async def list_expired(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> List[TempRegistration]:
        """Drafts whose ``expires_at`` has passed, oldest expiry first."""
        result = await db.execute(
            select(TempRegistration)
            .where(TempRegistration.expires_at < (now or utcnow()))
            .order_by(TempRegistration.expires_at)
        )
        return list(result.scalars().all())

    async def delete_expired(self, db: AsyncSession, now: Optional[datetime] = None) -> Tuple[int, int]:
        """
        Delete every draft whose ``expires_at`` has passed.

        Attendee back-references are cleared before the drafts are deleted.
        Drafts extended in the meantime are left alone.

        Returns:
            Tuple[int, int]: (drafts deleted, attendee rows cleared)
        """
        now = now or utcnow()
        result = await db.execute(
            select(TempRegistration.session_id).where(TempRegistration.expires_at < now)
        )
        session_ids = list(result.scalars().all())
        if not session_ids:
            return 0, 0

        cleared = await db.execute(
            update(Attendee)
            .where(Attendee.session_id.in_(session_ids))
            .values(session_id=None)
            .execution_options(synchronize_session=False)
        )
        deleted = await db.execute(
            delete(TempRegistration)
            .where(
                TempRegistration.session_id.in_(session_ids),
                TempRegistration.expires_at < now,
            )
            .execution_options(synchronize_session=False)
        )
        return deleted.rowcount, cleared.rowcount
