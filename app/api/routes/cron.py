"""
Cron Endpoints — הפעלה מתוזמנת של יצירת הזמנות מנויים ותזכורות.

נקראים ע"י מתזמן חיצוני (X-Cron-Secret) או ידנית ע"י אדמין (X-Admin-API-Key).
אותה לוגיקה רצה גם ב-Celery beat (app.workers.tasks); נעילת Redis משותפת
מונעת ריצה כפולה.
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.cron_auth import require_cron_or_admin
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.subscription_service import (
    SUBSCRIPTION_BATCH_LOCK,
    SUBSCRIPTION_REMINDER_LOCK,
    SubscriptionOrderService,
    batch_run_lock,
)

logger = get_logger(__name__)

router = APIRouter()


# ─── Pydantic models ────────────────────────────────────────────────────────

class SubscriptionRunDetailResponse(BaseModel):
    """תוצאה למנוי בודד — שדות ריקים לא נשלחים"""
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: int = Field(serialization_alias="subscriptionId")
    success: bool
    order_id: Optional[int] = Field(default=None, serialization_alias="orderId")
    order_number: Optional[int] = Field(default=None, serialization_alias="orderNumber")
    error: Optional[str] = None


class SubscriptionBatchResponse(BaseModel):
    """תוצאת ריצת batch — שמות שדות camelCase כמו שהמתזמן מצפה"""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    processed: int
    success_count: int = Field(serialization_alias="successCount")
    error_count: int = Field(serialization_alias="errorCount")
    details: list[SubscriptionRunDetailResponse]


class ReminderBatchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    reminders_sent: int = Field(serialization_alias="remindersSent")
    total_subscriptions: int = Field(serialization_alias="totalSubscriptions")
    errors: Optional[list[str]] = None


def _batch_error(message: str, exc: Exception) -> JSONResponse:
    logger.error(message, extra_data={"error": str(exc)}, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc) or "Unknown error"},
    )


# ─── Endpoints ──────────────────────────────────────────────────────────────

@router.post(
    "/subscriptions",
    summary="יצירת הזמנות למנויים שמועדם הגיע",
    responses={
        200: {"description": "סיכום הריצה — כשלון של מנוי בודד מופיע ב-details"},
        401: {"description": "חסר X-Cron-Secret"},
        403: {"description": "סוד שגוי או לא מוגדר"},
        409: {"description": "ריצה אחרת כבר פעילה"},
        500: {"description": "כשלון ברמת ה-batch"},
    },
)
async def run_subscription_orders(
    caller: str = Depends(require_cron_or_admin),
    db: AsyncSession = Depends(get_db),
) -> Any:
    async with batch_run_lock(SUBSCRIPTION_BATCH_LOCK):
        logger.info("Subscription batch triggered", extra_data={"caller": caller})
        try:
            result = await SubscriptionOrderService(db).process_all_due_subscriptions()
        except Exception as exc:
            return _batch_error("Cron subscription processing failed", exc)

    response = SubscriptionBatchResponse(
        processed=result.processed,
        success_count=result.success_count,
        error_count=result.error_count,
        details=[SubscriptionRunDetailResponse(**d.to_dict()) for d in result.details],
    )
    return JSONResponse(
        content=response.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@router.post(
    "/subscriptions/reminders",
    summary="שליחת תזכורות להזמנות מנוי קרובות",
    responses={
        200: {"description": "מספר התזכורות שנשלחו ורשימת שגיאות (אם יש)"},
        401: {"description": "חסר X-Cron-Secret"},
        403: {"description": "סוד שגוי או לא מוגדר"},
        409: {"description": "ריצה אחרת כבר פעילה"},
        500: {"description": "כשלון ברמת ה-batch"},
    },
)
async def run_subscription_reminders(
    caller: str = Depends(require_cron_or_admin),
    db: AsyncSession = Depends(get_db),
) -> Any:
    async with batch_run_lock(SUBSCRIPTION_REMINDER_LOCK):
        logger.info("Subscription reminders triggered", extra_data={"caller": caller})
        try:
            result = await SubscriptionOrderService(db).send_upcoming_reminders()
        except Exception as exc:
            return _batch_error("Cron reminder processing failed", exc)

    response = ReminderBatchResponse(
        reminders_sent=result.reminders_sent,
        total_subscriptions=result.total_subscriptions,
        errors=result.errors or None,
    )
    return JSONResponse(
        content=response.model_dump(mode="json", by_alias=True, exclude_none=True),
    )
