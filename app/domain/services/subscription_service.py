"""
יצירת הזמנות ממנויים ותזכורות לפני הזמנה.

process_all_due_subscriptions רץ פעם ביום (cron / Celery beat). כל מנוי
מעובד בנפרד בתוך savepoint: יצירת ההזמנה, הורדת המלאי וקידום
next_order_date נשמרים יחד או לא נשמרים בכלל.
"""
import calendar
import html
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    BatchAlreadyRunningError,
    ErrorCode,
    EmptySubscriptionError,
    InsufficientStockError,
    ProductUnavailableError,
    SubscriptionNotActiveError,
    SubscriptionNotFoundError,
)
from app.core.logging import get_logger, log_async_operation, mask_email
from app.core.redis_client import acquire_run_lock, release_run_lock
from app.db.database import utcnow
from app.db.models.order import Order, OrderSource, OrderStatus, PaymentStatus
from app.db.models.product import PricingType, Product, ProductVariant
from app.db.models.subscription import Subscription, SubscriptionFrequency, SubscriptionStatus
from app.db.repositories import (
    NewOrderLine,
    OrderRepository,
    ProductRepository,
    SubscriptionRepository,
)
from app.domain.services.email import BaseEmailProvider, get_email_provider
from app.domain.services.email_templates import SUBSCRIPTION_REMINDER_TEMPLATE
from app.domain.services.template_engine import render

logger = get_logger(__name__)

SUBSCRIPTION_BATCH_LOCK = "subscriptions:batch"
SUBSCRIPTION_REMINDER_LOCK = "subscriptions:reminders"

_CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _format_currency(value: Decimal) -> str:
    return f"${_money(value):,.2f}"


def _format_order_date(value: date) -> str:
    return f"{value:%A, %B} {value.day}"


def add_months(from_date: date, months: int) -> date:
    """הוספת חודשים קלנדריים — יום שלא קיים בחודש היעד נחתך לסוף החודש"""
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(from_date.day, last_day))


def calculate_next_order_date(frequency: Any, from_date: date) -> date:
    """
    מועד ההזמנה הבא לפי תדירות.

    weekly → +7 ימים, biweekly → +14, monthly → חודש קלנדרי אחד.
    תדירות לא מוכרת מטופלת כחודשית.
    """
    value = frequency.value if isinstance(frequency, SubscriptionFrequency) else str(frequency or "")
    if value == SubscriptionFrequency.WEEKLY.value:
        return from_date + timedelta(days=7)
    if value == SubscriptionFrequency.BIWEEKLY.value:
        return from_date + timedelta(days=14)
    return add_months(from_date, 1)


def unit_price_for(product: Product, variant: Optional[ProductVariant] = None) -> Decimal:
    """
    מחיר מבצע אם קיים, אחרת מחיר בסיס, ועוד price_modifier של הוריאנט.
    מוצר לפי משקל מוכפל במשקל המשוער אחרי התוספת.
    """
    price = product.sale_price if product.sale_price is not None else product.base_price
    unit = Decimal(str(price or 0))
    if variant is not None:
        unit += Decimal(str(variant.price_modifier or 0))
    if product.pricing_type == PricingType.WEIGHT:
        unit *= Decimal(str(product.estimated_weight or 1))
    return _money(unit)


@dataclass
class PricedLine:
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    track_inventory: bool
    variant_id: Optional[int] = None
    sku: Optional[str] = None


@dataclass
class SubscriptionPricing:
    lines: list[PricedLine]
    subtotal: Decimal


@dataclass
class SubscriptionRunDetail:
    subscription_id: int
    success: bool
    order_id: Optional[int] = None
    order_number: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"subscription_id": self.subscription_id, "success": self.success}
        if self.order_id is not None:
            data["order_id"] = self.order_id
        if self.order_number is not None:
            data["order_number"] = self.order_number
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class BatchResult:
    details: list[SubscriptionRunDetail] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.details)

    @property
    def success_count(self) -> int:
        return sum(1 for d in self.details if d.success)

    @property
    def error_count(self) -> int:
        return sum(1 for d in self.details if not d.success)


@dataclass
class ReminderResult:
    total_subscriptions: int = 0
    reminders_sent: int = 0
    errors: list[str] = field(default_factory=list)


class ScheduleConflictError(AppException):
    """next_order_date השתנה מאז שהמנוי נטען — ריצה אחרת כבר יצרה את ההזמנה"""

    def __init__(self, subscription_id: int):
        super().__init__(
            message="Subscription schedule changed during processing",
            error_code=ErrorCode.CONFLICT,
            status_code=409,
            details={"subscription_id": subscription_id},
        )


@asynccontextmanager
async def batch_run_lock(name: str = SUBSCRIPTION_BATCH_LOCK) -> AsyncIterator[str]:
    """
    נעילת Redis לריצת batch — מונעת שתי ריצות חופפות (cron + beat, או retry).

    Raises:
        BatchAlreadyRunningError: הנעילה מוחזקת ע"י ריצה אחרת.
    """
    token = await acquire_run_lock(name, settings.SUBSCRIPTION_BATCH_LOCK_SECONDS)
    if token is None:
        raise BatchAlreadyRunningError(name)
    try:
        yield token
    finally:
        await release_run_lock(name, token)


class SubscriptionOrderService:
    """Creates orders for due subscriptions and sends upcoming-order reminders"""

    def __init__(self, db: AsyncSession, email_provider: BaseEmailProvider | None = None):
        self.db = db
        self._email_provider = email_provider
        self.subscriptions = SubscriptionRepository(db)
        self.orders = OrderRepository(db)
        self.products = ProductRepository(db)

    @property
    def email_provider(self) -> BaseEmailProvider:
        if self._email_provider is None:
            self._email_provider = get_email_provider()
        return self._email_provider

    # ==================== Pricing ====================

    @staticmethod
    def price_subscription(subscription: Subscription, check_stock: bool = True) -> SubscriptionPricing:
        """
        תמחור פריטי המנוי.

        Raises:
            EmptySubscriptionError: אין פריטים.
            ProductUnavailableError: מוצר חסר או לא פעיל (רק כש-check_stock).
            InsufficientStockError: מלאי נמוך מהכמות (רק כש-check_stock).
        """
        items = [item for item in subscription.items if item.product is not None or check_stock]
        if not items:
            raise EmptySubscriptionError(subscription.id)

        lines: list[PricedLine] = []
        for item in items:
            product = item.product
            if check_stock:
                if product is None or not product.is_active:
                    raise ProductUnavailableError(subscription.id, item.product_id)
                if product.track_inventory and (product.stock_quantity or 0) < item.quantity:
                    raise InsufficientStockError(
                        subscription.id,
                        product.name,
                        available=product.stock_quantity or 0,
                        requested=item.quantity,
                    )
            variant = item.variant
            unit_price = unit_price_for(product, variant)
            lines.append(PricedLine(
                product_id=product.id,
                product_name=product.name,
                quantity=item.quantity,
                unit_price=unit_price,
                total_price=_money(unit_price * item.quantity),
                track_inventory=bool(product.track_inventory),
                variant_id=variant.id if variant is not None else None,
                sku=(variant.sku if variant is not None and variant.sku else product.sku),
            ))

        subtotal = _money(sum((line.total_price for line in lines), Decimal("0")))
        return SubscriptionPricing(lines=lines, subtotal=subtotal)

    # ==================== Order generation ====================

    async def _create_order(self, subscription: Subscription, today: date) -> Order:
        pricing = self.price_subscription(subscription)
        profile = subscription.profile
        due_date = subscription.next_order_date

        order = Order(
            user_id=subscription.user_id,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            source=OrderSource.SUBSCRIPTION,
            subscription_id=subscription.id,
            scheduled_date=due_date,
            customer_email=profile.email if profile is not None else None,
            customer_name=profile.full_name if profile is not None else None,
            subtotal=pricing.subtotal,
            total=pricing.subtotal,
        )
        await self.orders.create(order, [
            NewOrderLine(
                product_id=line.product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
                variant_id=line.variant_id,
                sku=line.sku,
            )
            for line in pricing.lines
        ])

        for line in pricing.lines:
            if not line.track_inventory:
                continue
            if not await self.products.decrement_stock(line.product_id, line.quantity):
                # המלאי ירד בין הבדיקה לעדכון
                raise InsufficientStockError(
                    subscription.id, line.product_name, available=0, requested=line.quantity
                )

        advanced = await self.subscriptions.advance_schedule(
            subscription.id,
            expected_date=due_date,
            next_order_date=calculate_next_order_date(subscription.frequency, due_date),
            last_order_date=today,
        )
        if not advanced:
            raise ScheduleConflictError(subscription.id)
        return order

    async def process_subscription(self, subscription_id: int, today: date) -> SubscriptionRunDetail:
        """מנוי בודד בתוך savepoint — כשלון מבטל את כל השינויים שלו בלבד"""
        try:
            async with self.db.begin_nested():
                subscription = await self.subscriptions.get_with_items(subscription_id)
                if subscription is None:
                    raise SubscriptionNotFoundError(subscription_id)
                if subscription.status != SubscriptionStatus.ACTIVE:
                    # הושהה או בוטל אחרי שנשלף ברשימת המנויים
                    raise SubscriptionNotActiveError(subscription_id, subscription.status.value)
                order = await self._create_order(subscription, today)
                detail = SubscriptionRunDetail(
                    subscription_id=subscription_id,
                    success=True,
                    order_id=order.id,
                    order_number=order.order_number,
                )
            await self.db.commit()
        except AppException as exc:
            logger.warning(
                "Subscription order not created",
                extra_data={"subscription_id": subscription_id, "error": exc.message},
            )
            return SubscriptionRunDetail(subscription_id=subscription_id, success=False, error=exc.message)
        except Exception as exc:
            logger.error(
                "Subscription processing failed",
                extra_data={"subscription_id": subscription_id, "error": str(exc)},
                exc_info=True,
            )
            return SubscriptionRunDetail(
                subscription_id=subscription_id,
                success=False,
                error=str(exc) or type(exc).__name__,
            )

        logger.info(
            "Subscription order created",
            extra_data={
                "subscription_id": subscription_id,
                "order_id": detail.order_id,
                "order_number": detail.order_number,
            },
        )
        return detail

    @log_async_operation("subscription_batch")
    async def process_all_due_subscriptions(self, today: date | None = None) -> BatchResult:
        """
        יצירת הזמנות לכל המנויים הפעילים שמועדם הגיע (next_order_date <= today).

        כשלון בשאילתת המנויים עצמה עולה לקורא; כשלון של מנוי בודד
        נרשם ב-details וה-batch ממשיך.
        """
        today = today or utcnow().date()
        due = await self.subscriptions.list_due(today)
        subscription_ids = [subscription.id for subscription in due]

        logger.info(
            "Processing due subscriptions",
            extra_data={"due_count": len(subscription_ids), "today": today.isoformat()},
        )

        result = BatchResult()
        for subscription_id in subscription_ids:
            result.details.append(await self.process_subscription(subscription_id, today))

        logger.info(
            "Subscription batch finished",
            extra_data={
                "processed": result.processed,
                "success_count": result.success_count,
                "error_count": result.error_count,
            },
        )
        return result

    # ==================== Reminders ====================

    @staticmethod
    def _reminder_items_html(pricing: SubscriptionPricing) -> str:
        rows = "".join(
            f"        <li>{html.escape(line.product_name)} &times; {line.quantity}</li>\n"
            for line in pricing.lines
        )
        return f"      <ul>\n{rows}      </ul>\n"

    def build_reminder(self, subscription: Subscription, recipient: str) -> tuple[str, str]:
        """(subject, html) לתזכורת — תמחור ללא בדיקת מלאי, רק תצוגה מקדימה"""
        pricing = self.price_subscription(subscription, check_stock=False)
        profile = subscription.profile
        first_name = (profile.first_name if profile is not None else None) or recipient.split("@")[0]
        variables = {
            "first_name": html.escape(first_name),
            "subscription_name": html.escape(subscription.name),
            "order_date": _format_order_date(subscription.next_order_date),
            "items_html": self._reminder_items_html(pricing),
            "estimated_total": _format_currency(pricing.subtotal),
            "manage_url": f"{settings.PUBLIC_BASE_URL}/account/subscriptions/{subscription.id}",
        }
        subject = render(SUBSCRIPTION_REMINDER_TEMPLATE.subject, {**variables, "subscription_name": subscription.name})
        body = render(SUBSCRIPTION_REMINDER_TEMPLATE.body, variables)
        return subject, body

    @log_async_operation("subscription_reminders")
    async def send_upcoming_reminders(self, today: date | None = None) -> ReminderResult:
        """תזכורת במייל למנויים שההזמנה הבאה שלהם בעוד SUBSCRIPTION_REMINDER_DAYS_AHEAD ימים"""
        today = today or utcnow().date()
        target = today + timedelta(days=settings.SUBSCRIPTION_REMINDER_DAYS_AHEAD)
        upcoming = await self.subscriptions.list_due_on(target)

        result = ReminderResult(total_subscriptions=len(upcoming))
        for subscription in upcoming:
            recipient = subscription.profile.email if subscription.profile is not None else None
            if not recipient:
                result.errors.append(f"Subscription {subscription.id}: no email address")
                continue
            try:
                subject, body = self.build_reminder(subscription, recipient)
                sent = await self.email_provider.send(to=recipient, subject=subject, html=body)
            except AppException as exc:
                result.errors.append(f"Subscription {subscription.id}: {exc.message}")
                continue
            except Exception as exc:
                logger.error(
                    "Reminder failed",
                    extra_data={"subscription_id": subscription.id, "error": str(exc)},
                    exc_info=True,
                )
                result.errors.append(f"Subscription {subscription.id}: {exc}")
                continue

            if not sent.success:
                result.errors.append(f"Subscription {subscription.id}: {sent.error}")
                continue
            result.reminders_sent += 1
            logger.info(
                "Subscription reminder sent",
                extra_data={"subscription_id": subscription.id, "to": mask_email(recipient)},
            )

        logger.info(
            "Subscription reminders finished",
            extra_data={
                "target_date": target.isoformat(),
                "total": result.total_subscriptions,
                "sent": result.reminders_sent,
                "errors": len(result.errors),
            },
        )
        return result
