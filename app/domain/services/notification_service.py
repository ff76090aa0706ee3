"""
שירות התראות ללקוח על עדכוני משלוח.

dispatch() רץ כמשימת רקע אחרי שה-webhook כבר ענה, ופותח session משלו.
הוא לעולם לא זורק: כל כשלון נרשם ביומן ההתראות ובלוג, ולא מעבר לזה.
"""
import asyncio
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import AppException, NoRecipientEmailError, OrderNotFoundError
from app.core.logging import get_logger, mask_email
from app.db.models.notification import NotificationStatus
from app.db.models.order import Order
from app.db.repositories import NotificationRepository, OrderRepository
from app.domain.services.email.base_provider import BaseEmailProvider, EmailSendResult
from app.domain.services.email_templates import TemplateStore
from app.domain.services.template_engine import render

logger = get_logger(__name__)

UNKNOWN_RECIPIENT = "unknown"
TEST_SUBJECT_PREFIX = "[TEST] "

SAMPLE_VARIABLES: dict[str, str] = {
    "customer_name": "Test Customer",
    "order_number": "12345",
    "tracking_number": "1Z999AA10123456784",
    "tracking_url": "https://example.com/tracking",
    "carrier": "UPS",
    "order_total": "$123.45",
}


class NotificationOutcome(str, enum.Enum):
    SUPPRESSED = "suppressed"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class _DispatchContext:
    recipient: Optional[str] = None


def format_currency(amount: Any) -> str:
    """סכום → $X.XX; ריק או אפס → $0.00"""
    if not amount:
        return "$0.00"
    value = Decimal(str(amount)).quantize(Decimal("0.01"))
    return f"${value:,.2f}"


def resolve_recipient(order: Order) -> Optional[str]:
    """מייל אורח על ההזמנה קודם, אחרת מייל הפרופיל"""
    if order.customer_email:
        return order.customer_email
    if order.profile is not None and order.profile.email:
        return order.profile.email
    return None


def build_order_variables(order: Order) -> dict[str, str]:
    """משתני תבנית להזמנה"""
    profile = order.profile
    email = order.customer_email or (profile.email if profile is not None else None)
    if profile is not None and profile.full_name:
        customer_name = profile.full_name
    elif order.customer_name:
        customer_name = order.customer_name
    elif email:
        customer_name = email.split("@")[0]
    else:
        customer_name = "Customer"

    return {
        "customer_name": customer_name,
        "order_number": str(order.order_number if order.order_number is not None else order.id),
        "tracking_number": order.tracking_number or "Not available",
        "tracking_url": order.tracking_url or "#",
        "carrier": (order.carrier or "carrier").upper(),
        "order_total": format_currency(order.total),
    }


class NotificationDispatcher:
    """
    שליחת מייל ללקוח על אירוע משלוח.

    Args:
        session_factory: יוצר sessions (async_sessionmaker) — כל dispatch פותח session חדש.
        email_provider: ספק המייל.
        sleep: פונקציית המתנה להשהיית delay_minutes (asyncio.sleep כברירת מחדל).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_provider: BaseEmailProvider,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_delay_minutes: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.email_provider = email_provider
        self.sleep = sleep
        self.max_delay_minutes = (
            max_delay_minutes if max_delay_minutes is not None else settings.NOTIFICATION_MAX_DELAY_MINUTES
        )

    async def dispatch(self, event_type: str, order_id: int) -> NotificationOutcome:
        log_context: dict[str, Any] = {"event_type": event_type, "order_id": order_id}
        ctx = _DispatchContext()

        try:
            async with self.session_factory() as db:
                notifications = NotificationRepository(db)
                setting = await notifications.get_setting(event_type)
                if setting is None or not setting.is_enabled:
                    logger.info("Notification suppressed", extra_data=log_context)
                    return NotificationOutcome.SUPPRESSED
                template_id = setting.email_template_id
                delay_minutes = setting.delay_minutes or 0

            if delay_minutes > 0:
                delay_minutes = min(delay_minutes, self.max_delay_minutes)
                logger.info(
                    "Delaying notification",
                    extra_data={**log_context, "delay_minutes": delay_minutes},
                )
                await self.sleep(delay_minutes * 60)

            async with self.session_factory() as db:
                return await self._send_for_order(db, event_type, order_id, template_id, ctx, log_context)
        except Exception as exc:
            logger.error(
                "Notification dispatch failed",
                extra_data={**log_context, "error": str(exc)},
                exc_info=not isinstance(exc, AppException),
            )
            await self._log_failure(event_type, order_id, ctx.recipient, exc)
            return NotificationOutcome.FAILED

    async def _send_for_order(
        self,
        db: AsyncSession,
        event_type: str,
        order_id: int,
        template_id: int | None,
        ctx: _DispatchContext,
        log_context: dict[str, Any],
    ) -> NotificationOutcome:
        order = await OrderRepository(db).get_with_profile(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        recipient = resolve_recipient(order)
        if not recipient:
            raise NoRecipientEmailError(order_id)
        ctx.recipient = recipient

        template = await TemplateStore(db).get_template(event_type, template_id)
        variables = build_order_variables(order)
        subject = render(template.subject, variables)
        html = render(template.body, variables)

        result = await self.email_provider.send(to=recipient, subject=subject, html=html)

        await NotificationRepository(db).add_log_entry(
            order_id=order_id,
            recipient_email=recipient,
            notification_type=event_type,
            status=NotificationStatus.SENT if result.success else NotificationStatus.FAILED,
            provider_message_id=result.message_id if result.success else None,
            error_message=None if result.success else result.error,
        )
        await db.commit()

        if not result.success:
            logger.warning(
                "Notification email not sent",
                extra_data={**log_context, "to": mask_email(recipient), "error": result.error},
            )
            return NotificationOutcome.FAILED

        logger.info(
            "Notification sent",
            extra_data={
                **log_context,
                "to": mask_email(recipient),
                "template_source": template.source,
                "message_id": result.message_id,
            },
        )
        return NotificationOutcome.SENT

    async def _log_failure(
        self,
        event_type: str,
        order_id: int,
        recipient: Optional[str],
        exc: Exception,
    ) -> None:
        """רישום כשלון ביומן — best-effort, כשלון כאן נבלע ונרשם בלוג בלבד"""
        message = exc.message if isinstance(exc, AppException) else str(exc) or type(exc).__name__
        try:
            async with self.session_factory() as db:
                await NotificationRepository(db).add_log_entry(
                    order_id=order_id if not isinstance(exc, OrderNotFoundError) else None,
                    recipient_email=recipient or UNKNOWN_RECIPIENT,
                    notification_type=event_type,
                    status=NotificationStatus.FAILED,
                    error_message=message[:2000],
                )
                await db.commit()
        except Exception as log_exc:
            logger.error(
                "Failed to record notification failure",
                extra_data={"event_type": event_type, "order_id": order_id, "error": str(log_exc)},
            )

    async def send_test_notification(
        self,
        event_type: str,
        test_email: str,
        sample_data: Mapping[str, Any] | None = None,
    ) -> EmailSendResult:
        """
        שליחת מייל בדיקה של התבנית לסוג אירוע — לאדמין.

        משתני דוגמה ממולאים עבור כל משתנה שלא סופק; הנושא מקבל prefix "[TEST] ".
        """
        variables = {**SAMPLE_VARIABLES, **(sample_data or {})}
        async with self.session_factory() as db:
            template = await TemplateStore(db).get_template(event_type)
        subject = render(template.subject, variables)
        html = render(template.body, variables)
        result = await self.email_provider.send(
            to=test_email,
            subject=f"{TEST_SUBJECT_PREFIX}{subject}",
            html=html,
        )
        logger.info(
            "Test notification sent" if result.success else "Test notification failed",
            extra_data={
                "event_type": event_type,
                "to": mask_email(test_email),
                "template_source": template.source,
                "error": result.error,
            },
        )
        return result


def get_notification_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency — dispatcher עם session factory וספק המייל של האפליקציה"""
    from app.db.database import AsyncSessionLocal
    from app.domain.services.email import get_email_provider

    return NotificationDispatcher(
        session_factory=AsyncSessionLocal,
        email_provider=get_email_provider(),
    )
