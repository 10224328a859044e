"""
Cash drawer sessions for counter sales.

State machine: ``open`` -> ``closed`` (terminal). A cashier and a counter
can each have at most one open session. Closing a session compares the
counted cash against the opening float plus the cash taken:

    expected_cash = opening_cash + cash_sales
    discrepancy   = closing_cash - expected_cash
"""
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.core.payment_service import new_order_number
from boxoffice.database.connection import get_session_factory
from boxoffice.database.models import (
    CashSession,
    CashSessionStatus,
    Order,
    PaymentStatus,
    SalesChannel,
    utcnow,
)
from boxoffice.exceptions import (
    CashSessionConflictError,
    CashSessionError,
    CashSessionNotFoundError,
)
from boxoffice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

COUNTER_PAYMENT_METHODS = ("cash", "card", "free")


@dataclass
class CashSessionStats:
    opening_cash: int
    cash_sales: int
    card_sales: int
    free_sales: int
    total_sales: int
    expected_cash: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CashSessionReport:
    session_id: str
    cashier_id: str
    ticket_counter_id: str
    status: str
    opening_time: str
    closing_time: Optional[str]
    opening_cash: int
    closing_cash: Optional[int]
    cash_sales: int
    card_sales: int
    free_sales: int
    total_sales: int
    expected_cash: int
    discrepancy: Optional[int]
    total_orders: int
    tickets_sold: int
    products_sold: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CashSessionService:
    """Opens, closes and reconciles counter cash drawers."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self.session_factory = session_factory or get_session_factory()

    async def start_session(
        self,
        cashier_id: str,
        ticket_counter_id: str,
        event_id: Optional[int] = None,
        organization_id: Optional[int] = None,
        opening_cash: int = 0,
    ) -> CashSession:
        """
        Open a cash drawer session.

        Raises:
            CashSessionConflictError: If the cashier or the counter already has an open session
            CashSessionError: If the opening float is negative
        """
        if opening_cash < 0:
            raise CashSessionError("Opening cash cannot be negative")

        async with self.session_factory() as db:
            result = await db.execute(
                select(CashSession).where(
                    CashSession.status == CashSessionStatus.OPEN.value,
                    or_(
                        CashSession.cashier_id == cashier_id,
                        CashSession.ticket_counter_id == ticket_counter_id,
                    ),
                )
            )
            if result.scalars().first() is not None:
                raise CashSessionConflictError(
                    "An open session already exists for this cashier or counter",
                    cashier_id=cashier_id,
                    ticket_counter_id=ticket_counter_id,
                )

            session = CashSession(
                cashier_id=cashier_id,
                ticket_counter_id=ticket_counter_id,
                event_id=event_id,
                organization_id=organization_id,
                opening_cash=opening_cash,
                status=CashSessionStatus.OPEN.value,
                opening_time=utcnow(),
            )
            db.add(session)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise CashSessionConflictError(
                    "An open session already exists for this cashier or counter",
                    cashier_id=cashier_id,
                    ticket_counter_id=ticket_counter_id,
                ) from e

        metrics.record_cash_session(opened=True)
        logger.info(
            "cash_session_opened",
            cash_session_id=str(session.id),
            cashier_id=cashier_id,
            ticket_counter_id=ticket_counter_id,
            opening_cash=opening_cash,
        )
        return session

    async def close_session(
        self,
        session_id: uuid.UUID,
        closing_cash: int,
        notes: Optional[str] = None,
    ) -> CashSession:
        """
        Close an open session with the counted cash.

        Raises:
            CashSessionNotFoundError: If no open session has this id
        """
        if closing_cash < 0:
            raise CashSessionError("Closing cash cannot be negative")

        async with self.session_factory() as db:
            result = await db.execute(
                update(CashSession)
                .where(
                    CashSession.id == session_id,
                    CashSession.status == CashSessionStatus.OPEN.value,
                )
                .values(
                    status=CashSessionStatus.CLOSED.value,
                    closing_cash=closing_cash,
                    closing_time=utcnow(),
                    notes=notes,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                raise CashSessionNotFoundError(
                    "Active session not found", cash_session_id=str(session_id)
                )
            await db.commit()
            session = await db.get(CashSession, session_id)

        metrics.record_cash_session(opened=False)
        logger.info(
            "cash_session_closed",
            cash_session_id=str(session_id),
            closing_cash=closing_cash,
        )
        return session

    async def get_session(self, session_id: uuid.UUID) -> CashSession:
        async with self.session_factory() as db:
            session = await db.get(CashSession, session_id)
        if session is None:
            raise CashSessionNotFoundError(
                "Cash session not found", cash_session_id=str(session_id)
            )
        return session

    async def get_active_session(self, cashier_id: str) -> Optional[CashSession]:
        """The cashier's open session, if any."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CashSession).where(
                    CashSession.cashier_id == cashier_id,
                    CashSession.status == CashSessionStatus.OPEN.value,
                )
            )
            return result.scalars().first()

    async def list_sessions(
        self,
        cashier_id: Optional[str] = None,
        ticket_counter_id: Optional[str] = None,
        event_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[CashSession]:
        """Sessions matching the given filters, most recent first."""
        query = select(CashSession)
        if cashier_id:
            query = query.where(CashSession.cashier_id == cashier_id)
        if ticket_counter_id:
            query = query.where(CashSession.ticket_counter_id == ticket_counter_id)
        if event_id is not None:
            query = query.where(CashSession.event_id == event_id)
        if status:
            query = query.where(CashSession.status == status)
        query = query.order_by(CashSession.opening_time.desc()).limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def record_sale(
        self,
        session_id: uuid.UUID,
        total_amount: int,
        payment_method: str,
        items_ticket: Optional[List[Dict[str, Any]]] = None,
        items_product: Optional[List[Dict[str, Any]]] = None,
    ) -> Order:
        """
        Record a paid counter order against an open session.

        Raises:
            CashSessionNotFoundError: If the session is not open
            CashSessionError: If the payment method or amount is invalid
        """
        if payment_method not in COUNTER_PAYMENT_METHODS:
            raise CashSessionError(f"Unsupported counter payment method: {payment_method}")
        if total_amount < 0 or (payment_method == "free" and total_amount != 0):
            raise CashSessionError("Invalid amount for counter sale")

        async with self.session_factory() as db:
            session = await db.get(CashSession, session_id)
            if session is None or session.status != CashSessionStatus.OPEN.value:
                raise CashSessionNotFoundError(
                    "Active session not found", cash_session_id=str(session_id)
                )
            order = Order(
                order_number=new_order_number(),
                event_id=session.event_id or 0,
                total_amount=total_amount,
                payment_status=PaymentStatus.PAID.value,
                payment_method=payment_method,
                sales_channel=SalesChannel.COUNTER.value,
                cash_session_id=session.id,
                ticket_counter_id=session.ticket_counter_id,
                cashier_id=session.cashier_id,
                items_ticket=list(items_ticket or []),
                items_product=list(items_product or []),
            )
            db.add(order)
            await db.commit()

        logger.info(
            "counter_sale_recorded",
            cash_session_id=str(session_id),
            order_id=str(order.id),
            amount=total_amount,
            payment_method=payment_method,
        )
        return order

    async def get_session_stats(self, session_id: uuid.UUID) -> CashSessionStats:
        """Paid counter sales of a session split by payment method."""
        async with self.session_factory() as db:
            session = await db.get(CashSession, session_id)
            if session is None:
                raise CashSessionNotFoundError(
                    "Cash session not found", cash_session_id=str(session_id)
                )
            totals = await self._sales_by_method(db, session_id)
        return self._stats(session, totals)

    async def get_session_report(self, session_id: uuid.UUID) -> CashSessionReport:
        """Full audit report of a session, including the cash discrepancy once closed."""
        async with self.session_factory() as db:
            session = await db.get(CashSession, session_id)
            if session is None:
                raise CashSessionNotFoundError(
                    "Cash session not found", cash_session_id=str(session_id)
                )
            totals = await self._sales_by_method(db, session_id)
            result = await db.execute(
                select(Order).where(
                    Order.cash_session_id == session_id,
                    Order.payment_status == PaymentStatus.PAID.value,
                )
            )
            orders = list(result.scalars().all())

        stats = self._stats(session, totals)
        discrepancy = None
        if session.closing_cash is not None:
            discrepancy = session.closing_cash - stats.expected_cash

        return CashSessionReport(
            session_id=str(session.id),
            cashier_id=session.cashier_id,
            ticket_counter_id=session.ticket_counter_id,
            status=session.status,
            opening_time=session.opening_time.isoformat(),
            closing_time=session.closing_time.isoformat() if session.closing_time else None,
            opening_cash=session.opening_cash,
            closing_cash=session.closing_cash,
            cash_sales=stats.cash_sales,
            card_sales=stats.card_sales,
            free_sales=stats.free_sales,
            total_sales=stats.total_sales,
            expected_cash=stats.expected_cash,
            discrepancy=discrepancy,
            total_orders=len(orders),
            tickets_sold=sum(_quantity(item) for order in orders for item in order.items_ticket),
            products_sold=sum(_quantity(item) for order in orders for item in order.items_product),
        )

    @staticmethod
    async def _sales_by_method(db: AsyncSession, session_id: uuid.UUID) -> Dict[str, int]:
        result = await db.execute(
            select(Order.payment_method, func.coalesce(func.sum(Order.total_amount), 0))
            .where(
                Order.cash_session_id == session_id,
                Order.payment_status == PaymentStatus.PAID.value,
            )
            .group_by(Order.payment_method)
        )
        return {method: int(total) for method, total in result.all()}

    @staticmethod
    def _stats(session: CashSession, totals: Dict[str, int]) -> CashSessionStats:
        cash_sales = totals.get("cash", 0)
        card_sales = totals.get("card", 0)
        free_sales = totals.get("free", 0)
        return CashSessionStats(
            opening_cash=session.opening_cash,
            cash_sales=cash_sales,
            card_sales=card_sales,
            free_sales=free_sales,
            total_sales=cash_sales + card_sales + free_sales,
            expected_cash=session.opening_cash + cash_sales,
        )


def _quantity(item: Dict[str, Any]) -> int:
    return int(item.get("quantity") or 1)
