"""
EasyPost Tracker Webhook — עדכוני מעקב משלוח.

EasyPost שולח POST עם אירוע tracker.updated וחתימת HMAC ב-X-Hmac-Signature.
העיבוד עצמו ב-ShipmentWebhookService; כאן רק מיפוי ל-HTTP ותזמון ההתראה
כמשימת רקע שרצה אחרי שהתשובה נשלחה.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.notification_service import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from app.domain.services.shipment_webhook_service import ShipmentWebhookService

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/easypost",
    summary="Webhook - EasyPost (עדכוני מעקב)",
    description=(
        "קבלת אירועי tracker מ-EasyPost. מאומת ב-HMAC-SHA256 על הגוף הגולמי; "
        "אירוע כפול מזוהה לפי id ומוחזר 200 ללא עיבוד נוסף."
    ),
    responses={
        200: {"description": "processed / duplicate / ignored / malformed"},
        401: {"description": "חתימה חסרה או שגויה"},
        500: {"description": "העיבוד נכשל — האירוע נשמר כ-failed"},
    },
)
async def easypost_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hmac_signature: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> JSONResponse:
    raw_body = await request.body()
    result = await ShipmentWebhookService(db).handle(raw_body, x_hmac_signature)

    if result.notification is not None:
        event_type, order_id = result.notification
        background_tasks.add_task(dispatcher.dispatch, event_type, order_id)

    return JSONResponse(status_code=result.status_code, content=result.body)
