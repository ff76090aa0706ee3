"""
Admin Endpoints — צפייה במצב צנרת המשלוחים וההתראות ללא גישה ישירה ל-DB.

1. אירועי משלוח והיסטוריית התראות של הזמנה; הזמנות שנוצרו ממנוי
2. רשומות webhook (סינון לפי סטטוס — כולל pending תקועים)
3. שליחת מייל בדיקה לתבנית
4. סטטוס circuit breakers
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import CircuitBreaker, get_resend_circuit_breaker
from app.core.exceptions import (
    OrderNotFoundError,
    SubscriptionNotFoundError,
    TemplateRenderError,
)
from app.core.logging import get_logger, mask_email
from app.db.database import get_db
from app.db.models.notification import NotificationStatus
from app.db.models.order import OrderStatus, PaymentStatus
from app.db.models.shipment_event import ShipmentEventType
from app.db.models.webhook_event import WebhookEventStatus
from app.db.repositories import (
    NotificationRepository,
    OrderRepository,
    ShipmentEventRepository,
    SubscriptionRepository,
    WebhookEventRepository,
)
from app.domain.services.notification_service import (
    NotificationDispatcher,
    get_notification_dispatcher,
)

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class ShipmentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: ShipmentEventType
    carrier: Optional[str]
    tracking_code: str
    occurred_at: datetime
    description: Optional[str]
    location_city: Optional[str]
    location_state: Optional[str]
    provider_event_id: Optional[str]


class NotificationLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: Optional[int]
    recipient_email: str
    notification_type: str
    status: NotificationStatus
    provider_message_id: Optional[str]
    error_message: Optional[str]
    sent_at: Optional[datetime]
    created_at: Optional[datetime]


class SubscriptionOrderResponse(BaseModel):
    """הזמנה שנוצרה ממנוי"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: Optional[int]
    status: OrderStatus
    payment_status: PaymentStatus
    total: Decimal
    scheduled_date: Optional[date]
    created_at: Optional[datetime]


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source: str
    provider_event_id: str
    event_type: Optional[str]
    status: WebhookEventStatus
    attempts: int
    last_error: Optional[str]
    received_at: Optional[datetime]
    processed_at: Optional[datetime]


class TestNotificationRequest(BaseModel):
    """בקשה לשליחת מייל בדיקה"""
    event_type: str
    test_email: str
    sample_data: dict[str, str] = Field(default_factory=dict)

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        allowed = {t.value for t in ShipmentEventType} | {"failed_attempt"}
        if v not in allowed:
            raise ValueError(f"event_type must be one of: {', '.join(sorted(allowed))}")
        return v

    @field_validator("test_email")
    @classmethod
    def validate_test_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("test_email is not a valid email address")
        return v


class TestNotificationResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class CircuitBreakerStatusResponse(BaseModel):
    """סטטוס של circuit breaker בודד"""
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    failure_threshold: int
    retry_after_seconds: float = Field(
        description="שניות עד שניסיון חוזר אפשרי (0 אם לא פתוח)"
    )


async def _require_order(db: AsyncSession, order_id: int) -> None:
    if await OrderRepository(db).get(order_id) is None:
        raise OrderNotFoundError(order_id)


# ─── 1. הזמנה ───────────────────────────────────────────────────────────────

@router.get(
    "/orders/{order_id}/shipment-events",
    response_model=list[ShipmentEventResponse],
    summary="היסטוריית מעקב של הזמנה",
    description="אירועי המשלוח של ההזמנה, מהחדש לישן.",
    responses={404: {"description": "הזמנה לא נמצאה"}, **_AUTH_RESPONSES},
)
async def list_order_shipment_events(
    order_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> list[ShipmentEventResponse]:
    await _require_order(db, order_id)
    events = await ShipmentEventRepository(db).list_for_order(order_id)
    return [
        ShipmentEventResponse.model_validate(event) for event in events
    ]


@router.get(
    "/orders/{order_id}/notifications",
    response_model=list[NotificationLogResponse],
    summary="התראות שנשלחו להזמנה",
    description="יומן ההתראות של ההזמנה (נשלחו וכושלות), מהחדש לישן.",
    responses={404: {"description": "הזמנה לא נמצאה"}, **_AUTH_RESPONSES},
)
async def list_order_notifications(
    order_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> list[NotificationLogResponse]:
    await _require_order(db, order_id)
    entries = await NotificationRepository(db).list_for_order(order_id)
    return [
        NotificationLogResponse.model_validate(entry) for entry in entries
    ]


@router.get(
    "/subscriptions/{subscription_id}/orders",
    response_model=list[SubscriptionOrderResponse],
    summary="היסטוריית הזמנות של מנוי",
    description="ההזמנות שנוצרו מהמנוי, מהחדשה לישנה.",
    responses={404: {"description": "מנוי לא נמצא"}, **_AUTH_RESPONSES},
)
async def list_subscription_orders(
    subscription_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> list[SubscriptionOrderResponse]:
    if await SubscriptionRepository(db).get(subscription_id) is None:
        raise SubscriptionNotFoundError(subscription_id)
    orders = await OrderRepository(db).list_for_subscription(subscription_id)
    return [
        SubscriptionOrderResponse.model_validate(order) for order in orders
    ]


# ─── 2. Webhook events ──────────────────────────────────────────────────────

@router.get(
    "/webhook-events",
    response_model=list[WebhookEventResponse],
    summary="רשומות webhook אחרונות",
    description=(
        "webhooks נכנסים מהחדש לישן, עם סינון אופציונלי לפי סטטוס. "
        "status=pending מציג אירועים שהעיבוד שלהם נקטע."
    ),
    responses={400: {"description": "סטטוס לא תקין"}, **_AUTH_RESPONSES},
)
async def list_webhook_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    event_status: Optional[str] = Query(
        default=None,
        alias="status",
        description="pending | processed | failed",
    ),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[WebhookEventResponse]:
    status_filter = None
    if event_status:
        valid_statuses = {s.value for s in WebhookEventStatus}
        if event_status not in valid_statuses:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status. Options: {', '.join(sorted(valid_statuses))}",
            )
        status_filter = WebhookEventStatus(event_status)

    events = await WebhookEventRepository(db).list_recent(limit=limit, status=status_filter)
    return [
        WebhookEventResponse.model_validate(event) for event in events
    ]


# ─── 3. מייל בדיקה ──────────────────────────────────────────────────────────

@router.post(
    "/notifications/test",
    response_model=TestNotificationResponse,
    summary="שליחת מייל בדיקה",
    description="מרנדר את התבנית של סוג האירוע עם נתוני דוגמה ושולח עם prefix [TEST].",
    responses={422: {"description": "משתנה חסר בתבנית"}, **_AUTH_RESPONSES},
)
async def send_test_notification(
    body: TestNotificationRequest,
    _: None = Depends(require_admin_api_key),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> TestNotificationResponse:
    try:
        result = await dispatcher.send_test_notification(
            body.event_type, body.test_email, body.sample_data
        )
    except TemplateRenderError:
        logger.warning(
            "Test notification template incomplete",
            extra_data={"event_type": body.event_type, "to": mask_email(body.test_email)},
        )
        raise
    return TestNotificationResponse(
        success=result.success,
        message_id=result.message_id,
        error=result.error,
    )


# ─── 4. Circuit Breakers ────────────────────────────────────────────────────

@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="סטטוס circuit breakers",
    description="המצב הנוכחי של כל circuit breaker רשום (Resend ועוד).",
    responses=_AUTH_RESPONSES,
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
) -> list[CircuitBreakerStatusResponse]:
    # אתחול ה-breaker של ספק המייל כדי שיופיע גם לפני השליחה הראשונה
    get_resend_circuit_breaker()
    return [
        CircuitBreakerStatusResponse(**cb.snapshot())
        for cb in sorted(CircuitBreaker.all_instances(), key=lambda cb: cb.service_name)
    ]
