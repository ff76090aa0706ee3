"""
Repositories — שכבת גישה לנתונים עם ממשק מצומצם לכל ישות.

כל repository מקבל AsyncSession ולא מבצע commit בעצמו (פרט למקומות
שמסומנים במפורש) — השירות הקורא שולט בגבולות הטרנזקציה.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.email_template import EmailTemplate
from app.db.models.notification import (
    NotificationLogEntry,
    NotificationSetting,
    NotificationStatus,
)
from app.db.models.order import Order, OrderItem
from app.db.models.product import Product
from app.db.models.shipment_event import ShipmentEvent, ShipmentEventType
from app.db.models.subscription import Subscription, SubscriptionItem, SubscriptionStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus

logger = get_logger(__name__)


# ============================================================================
# Webhook events
# ============================================================================

class WebhookEventRepository:
    """רישום webhooks נכנסים — המפתח הוא (source, provider_event_id)"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_provider_id(self, source: str, provider_event_id: str) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.source == source,
                WebhookEvent.provider_event_id == provider_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def try_insert(
        self,
        *,
        source: str,
        provider_event_id: str,
        event_type: str | None,
        raw_payload: Any,
        signature: str | None,
        status: WebhookEventStatus = WebhookEventStatus.PENDING,
        last_error: str | None = None,
    ) -> Optional[WebhookEvent]:
        """
        הוספה אופטימיסטית בתוך savepoint + commit מיידי.

        מחזיר None אם האילוץ הייחודי דחה את ההוספה — כלומר ה-webhook כבר
        נרשם (מסירה כפולה או מקבילה). ה-commit מבטיח שהרשומה נשמרת גם אם
        העיבוד שאחריה ייכשל.
        """
        event = WebhookEvent(
            source=source,
            provider_event_id=provider_event_id,
            event_type=event_type,
            raw_payload=raw_payload,
            signature=signature,
            status=status,
            last_error=last_error,
            attempts=1 if status == WebhookEventStatus.FAILED else 0,
            received_at=utcnow(),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
            await self.db.commit()
        except IntegrityError:
            logger.info(
                "Webhook event already recorded",
                extra_data={"source": source, "provider_event_id": provider_event_id},
            )
            return None
        return event

    async def mark_processed(self, event_id: int, note: str | None = None) -> None:
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookEventStatus.PROCESSED,
                processed_at=utcnow(),
                last_error=note,
            )
        )

    async def mark_failed(self, event_id: int, error: str) -> None:
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookEventStatus.FAILED,
                last_error=error[:2000],
                attempts=WebhookEvent.attempts + 1,
            )
        )

    async def list_recent(
        self,
        limit: int = 50,
        status: WebhookEventStatus | None = None,
    ) -> Sequence[WebhookEvent]:
        stmt = select(WebhookEvent).order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc())
        if status is not None:
            stmt = stmt.where(WebhookEvent.status == status)
        result = await self.db.execute(stmt.limit(limit))
        return result.scalars().all()


# ============================================================================
# Shipment events
# ============================================================================

class ShipmentEventRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(
        self,
        *,
        order_id: int,
        event_type: ShipmentEventType,
        carrier: str | None,
        tracking_code: str,
        occurred_at: datetime,
        description: str,
        location_city: str | None,
        location_state: str | None,
        provider_event_id: str,
        raw_data: Any,
    ) -> ShipmentEvent:
        event = ShipmentEvent(
            order_id=order_id,
            event_type=event_type,
            carrier=carrier,
            tracking_code=tracking_code,
            occurred_at=occurred_at,
            description=description,
            location_city=location_city,
            location_state=location_state,
            provider_event_id=provider_event_id,
            raw_data=raw_data,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def list_for_order(self, order_id: int) -> Sequence[ShipmentEvent]:
        result = await self.db.execute(
            select(ShipmentEvent)
            .where(ShipmentEvent.order_id == order_id)
            .order_by(ShipmentEvent.occurred_at.desc(), ShipmentEvent.id.desc())
        )
        return result.scalars().all()


# ============================================================================
# Orders
# ============================================================================

@dataclass
class NewOrderLine:
    product_id: int
    product_name: str
    quantity: int
    unit_price: Any
    total_price: Any
    variant_id: Optional[int] = None
    sku: Optional[str] = None


class OrderRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, order_id: int) -> Optional[Order]:
        return await self.db.get(Order, order_id)

    async def get_with_profile(self, order_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .options(selectinload(Order.profile))
            .where(Order.id == order_id)
        )
        return result.scalar_one_or_none()

    async def get_by_tracking_number(self, tracking_number: str) -> Optional[Order]:
        # מספר מעקב אמור להיות ייחודי; אם יש כפילות — ההזמנה הוותיקה
        result = await self.db.execute(
            select(Order)
            .where(Order.tracking_number == tracking_number)
            .order_by(Order.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(self, order: Order, lines: list[NewOrderLine]) -> Order:
        """הוספת הזמנה + שורות. order_number נגזר מה-id אחרי flush."""
        self.db.add(order)
        await self.db.flush()
        order.order_number = settings.ORDER_NUMBER_OFFSET + order.id
        for line in lines:
            self.db.add(OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                product_name=line.product_name,
                sku=line.sku,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
            ))
        await self.db.flush()
        return order

    async def list_for_subscription(self, subscription_id: int) -> Sequence[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.subscription_id == subscription_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        return result.scalars().all()

    async def count_items(self, order_id: int) -> int:
        result = await self.db.execute(
            select(func.count(OrderItem.id)).where(OrderItem.order_id == order_id)
        )
        return result.scalar_one()


# ============================================================================
# Products
# ============================================================================

class ProductRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def decrement_stock(self, product_id: int, quantity: int) -> bool:
        """הורדת מלאי אטומית — מחזיר False אם אין מספיק במלאי"""
        result = await self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0


# ============================================================================
# Notifications
# ============================================================================

class NotificationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_setting(self, event_type: str) -> Optional[NotificationSetting]:
        result = await self.db.execute(
            select(NotificationSetting).where(NotificationSetting.event_type == event_type)
        )
        return result.scalar_one_or_none()

    async def get_template(self, template_id: int) -> Optional[EmailTemplate]:
        result = await self.db.execute(
            select(EmailTemplate).where(
                EmailTemplate.id == template_id,
                EmailTemplate.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_template_by_name(self, name: str) -> Optional[EmailTemplate]:
        result = await self.db.execute(
            select(EmailTemplate).where(
                EmailTemplate.name == name,
                EmailTemplate.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def add_log_entry(
        self,
        *,
        order_id: int | None,
        recipient_email: str,
        notification_type: str,
        status: NotificationStatus,
        provider_message_id: str | None = None,
        error_message: str | None = None,
    ) -> NotificationLogEntry:
        entry = NotificationLogEntry(
            order_id=order_id,
            recipient_email=recipient_email,
            notification_type=notification_type,
            status=status,
            provider_message_id=provider_message_id,
            error_message=error_message,
            sent_at=utcnow() if status == NotificationStatus.SENT else None,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_for_order(self, order_id: int) -> Sequence[NotificationLogEntry]:
        result = await self.db.execute(
            select(NotificationLogEntry)
            .where(NotificationLogEntry.order_id == order_id)
            .order_by(NotificationLogEntry.created_at.desc(), NotificationLogEntry.id.desc())
        )
        return result.scalars().all()


# ============================================================================
# Subscriptions
# ============================================================================

class SubscriptionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _with_items(self):
        return select(Subscription).options(
            selectinload(Subscription.items).selectinload(SubscriptionItem.product),
            selectinload(Subscription.items).selectinload(SubscriptionItem.variant),
            selectinload(Subscription.profile),
        )

    async def get(self, subscription_id: int) -> Optional[Subscription]:
        return await self.db.get(Subscription, subscription_id)

    async def get_with_items(self, subscription_id: int) -> Optional[Subscription]:
        """טעינה מחדש של מנוי עם פריטיו — populate_existing דורס מצב ישן ב-identity map"""
        result = await self.db.execute(
            self._with_items()
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_due(self, today: date) -> Sequence[Subscription]:
        """מנויים פעילים שמועד ההזמנה שלהם הגיע (כולל באיחור)"""
        result = await self.db.execute(
            self._with_items()
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.next_order_date <= today,
            )
            .order_by(Subscription.id)
        )
        return result.scalars().all()

    async def list_due_on(self, day: date) -> Sequence[Subscription]:
        result = await self.db.execute(
            self._with_items()
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.next_order_date == day,
            )
            .order_by(Subscription.id)
        )
        return result.scalars().all()

    async def advance_schedule(
        self,
        subscription_id: int,
        *,
        expected_date: date,
        next_order_date: date,
        last_order_date: date,
    ) -> bool:
        """
        קידום next_order_date — רק אם הוא עדיין expected_date.

        מחזיר False אם ריצה מקבילה כבר קידמה את המנוי; הקורא מבטל
        את ההזמנה שנוצרה (rollback של ה-savepoint).
        """
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.next_order_date == expected_date,
            )
            .values(
                next_order_date=next_order_date,
                last_order_date=last_order_date,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0
