"""Email collaborator interface used for reminders and order confirmations."""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class EmailSender(ABC):
    """Outbound email delivery. Implementations raise on delivery failure."""

    @abstractmethod
    async def send_abandoned_cart_reminder(
        self,
        to: str,
        session_id: str,
        event: Dict[str, Any],
        cart: Dict[str, Any],
        resume_url: Optional[str] = None,
    ) -> None:
        """Remind a visitor of the cart they left behind."""

    @abstractmethod
    async def send_order_confirmation(
        self,
        to: str,
        order: Dict[str, Any],
        attendees: list[Dict[str, Any]],
    ) -> None:
        """Send tickets and receipt after a successful payment."""


class LoggingEmailSender(EmailSender):
    """Default sender for environments without an email provider: logs instead of sending."""

    async def send_abandoned_cart_reminder(
        self,
        to: str,
        session_id: str,
        event: Dict[str, Any],
        cart: Dict[str, Any],
        resume_url: Optional[str] = None,
    ) -> None:
        logger.info(
            "abandoned_cart_reminder_logged",
            to=to,
            session_id=session_id,
            event_id=event.get("id"),
            resume_url=resume_url,
        )

    async def send_order_confirmation(
        self,
        to: str,
        order: Dict[str, Any],
        attendees: list[Dict[str, Any]],
    ) -> None:
        logger.info(
            "order_confirmation_logged",
            to=to,
            order_number=order.get("order_number"),
            attendee_count=len(attendees),
        )
