"""
Server-side cart pricing.

Client totals are never trusted: every line is re-priced from the
catalogue before a draft session is stored.

    subtotal = sum(ticket price * qty) + sum(product price * qty)
    discount = min(promo discount, subtotal)
    tax      = event tax on (subtotal - discount), only when positive
    shipping = event shipping fee, only for product deliveries
    total    = subtotal - discount + tax + shipping

Amounts are integer minor units. Percentages round half up.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.database.models import Event, Product, PromoCode, Ticket, utcnow
from boxoffice.exceptions import CheckoutValidationError

logger = structlog.get_logger(__name__)

DELIVERY = "delivery"


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _line_id(line: Dict[str, Any], *keys: str) -> Optional[int]:
    for key in keys:
        value = line.get(key)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                raise CheckoutValidationError(f"Invalid catalogue id: {value!r}") from None
    return None


def _line_quantity(line: Dict[str, Any]) -> int:
    try:
        quantity = int(line.get("quantity") or 1)
    except (TypeError, ValueError):
        raise CheckoutValidationError("Line quantity must be an integer") from None
    if quantity < 1:
        raise CheckoutValidationError("Line quantity must be at least 1")
    return quantity


@dataclass
class PricedCart:
    """Cart totals computed from catalogue prices."""

    subtotal: int
    discount_amount: int
    tax_amount: int
    shipping_amount: int
    total_amount: int
    tickets: List[Dict[str, Any]] = field(default_factory=list)
    products: List[Dict[str, Any]] = field(default_factory=list)
    promo_code: Optional[str] = None
    event_slug: Optional[str] = None


class CartPricer:
    """Prices ticket and product lines against the event catalogue."""

    async def price(
        self,
        db: AsyncSession,
        event_id: int,
        tickets: List[Dict[str, Any]],
        products: Optional[List[Dict[str, Any]]] = None,
        promo_code: Optional[str] = None,
        shipping_option: str = "pickup",
    ) -> PricedCart:
        """
        Price a cart.

        Returned lines keep the client's fields but carry the catalogue
        ``price``. An unknown or inactive promo code is ignored.

        Raises:
            CheckoutValidationError: If the event or a line is unknown, or out of stock
        """
        event = await db.get(Event, event_id)
        if event is None:
            raise CheckoutValidationError(f"Event {event_id} not found")

        subtotal = 0
        priced_tickets: List[Dict[str, Any]] = []
        for line in tickets:
            ticket_id = _line_id(line, "ticket_id", "ticketId", "id")
            quantity = _line_quantity(line)
            ticket = await db.get(Ticket, ticket_id) if ticket_id is not None else None
            if ticket is None or ticket.event_id != event_id:
                raise CheckoutValidationError(f"Ticket {ticket_id} not found")
            if ticket.current_stock < quantity:
                raise CheckoutValidationError(f"Insufficient stock for ticket {ticket.title}")
            subtotal += ticket.price * quantity
            priced_tickets.append(
                {**line, "ticket_id": ticket.id, "quantity": quantity, "price": ticket.price}
            )

        priced_products: List[Dict[str, Any]] = []
        for line in products or []:
            product_id = _line_id(line, "product_id", "productId", "id")
            quantity = _line_quantity(line)
            product = await db.get(Product, product_id) if product_id is not None else None
            if product is None or product.event_id != event_id:
                raise CheckoutValidationError(f"Product {product_id} not found")
            if product.stock < quantity:
                raise CheckoutValidationError(f"Insufficient stock for product {product.name}")
            subtotal += product.price * quantity
            priced_products.append(
                {**line, "product_id": product.id, "quantity": quantity, "price": product.price}
            )

        promo = await self._active_promo(db, event_id, promo_code) if promo_code else None
        discount = 0
        if promo is not None:
            value = Decimal(promo.discount_value)
            if promo.discount_type == "percentage":
                discount = _round(Decimal(subtotal) * value / 100)
            else:
                discount = _round(value)
            discount = min(discount, subtotal)
        elif promo_code:
            logger.info("promo_code_ignored", event_id=event_id, promo_code=promo_code)

        net = subtotal - discount
        tax = 0
        if net > 0 and event.tax_type and event.tax_amount:
            rate = Decimal(event.tax_amount)
            tax = _round(Decimal(net) * rate / 100) if event.tax_type == "percentage" else _round(rate)

        shipping = event.shipping_fee if priced_products and shipping_option == DELIVERY else 0

        return PricedCart(
            subtotal=subtotal,
            discount_amount=discount,
            tax_amount=tax,
            shipping_amount=shipping,
            total_amount=net + tax + shipping,
            tickets=priced_tickets,
            products=priced_products,
            promo_code=promo.code if promo is not None else None,
            event_slug=event.slug,
        )

    @staticmethod
    async def _active_promo(db: AsyncSession, event_id: int, code: str) -> Optional[PromoCode]:
        result = await db.execute(
            select(PromoCode).where(
                PromoCode.event_id == event_id,
                PromoCode.code == code.strip(),
                PromoCode.is_active.is_(True),
            )
        )
        promo = result.scalar_one_or_none()
        if promo is not None and promo.expires_at is not None and promo.expires_at <= utcnow():
            return None
        return promo
