"""
עיבוד webhook מעקב משלוח — אימות, dedup, רישום אירוע ועדכון הזמנה.

שלבים:
1. אימות חתימה (לא נשמר כלום אם נכשל)
2. פענוח JSON ומזהה אירוע
3. dedup לפי (source, provider_event_id) + רישום pending עם commit מיידי
4. נרמול נתוני tracker
5. איתור הזמנה לפי מספר מעקב
6. רישום ShipmentEvent ועדכון הזמנה שנמסרה
7. החזרת בקשת התראה — השליחה עצמה רצה ברקע אצל הקורא
8. סימון processed / failed
"""
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    NoTrackerDataError,
    NoTrackingDetailsError,
)
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.order import OrderStatus
from app.db.models.shipment_event import ShipmentEventType
from app.db.models.webhook_event import WebhookEventStatus
from app.db.repositories import (
    OrderRepository,
    ShipmentEventRepository,
    WebhookEventRepository,
)
from app.domain.services.tracking_service import extract_tracking_update, verify_signature

logger = get_logger(__name__)

WEBHOOK_SOURCE = "easypost"
ORDER_NOT_FOUND_NOTE = "Order not found"


@dataclass
class WebhookResult:
    """תוצאת עיבוד — הקורא ממפה ל-HTTP ומתזמן את ההתראה"""
    status_code: int
    body: dict[str, Any]
    notification: Optional[tuple[str, int]] = None
    shipment_event_id: Optional[int] = field(default=None, repr=False)


class ShipmentWebhookService:
    """Service for EasyPost tracker webhooks"""

    def __init__(self, db: AsyncSession, secret: str | None = None):
        self.db = db
        self.secret = secret if secret is not None else settings.EASYPOST_WEBHOOK_SECRET
        self.webhook_events = WebhookEventRepository(db)
        self.shipment_events = ShipmentEventRepository(db)
        self.orders = OrderRepository(db)

    @staticmethod
    def _parse(raw_body: bytes) -> dict:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedPayloadError(f"invalid JSON: {exc}")
        if not isinstance(payload, dict):
            raise MalformedPayloadError("payload is not an object")
        if not payload.get("id"):
            raise MalformedPayloadError("missing event id")
        return payload

    async def _record_malformed(
        self,
        raw_body: bytes,
        signature: str | None,
        error: MalformedPayloadError,
    ) -> WebhookResult:
        """
        רישום payload פגום כ-failed והחזרת 200.

        אין מזהה אירוע — המפתח נגזר מ-hash של הגוף, כך שמסירה חוזרת של אותו
        גוף נחסמת באילוץ הייחודי ולא יוצרת שורה נוספת.
        """
        digest = hashlib.sha256(raw_body).hexdigest()
        await self.webhook_events.try_insert(
            source=WEBHOOK_SOURCE,
            provider_event_id=f"malformed:{digest}",
            event_type=None,
            raw_payload={"raw": raw_body.decode("utf-8", errors="replace")[:10000]},
            signature=signature,
            status=WebhookEventStatus.FAILED,
            last_error=error.message,
        )
        logger.warning(
            "Malformed tracking webhook recorded",
            extra_data={"reason": error.details.get("reason"), "body_sha256": digest},
        )
        return WebhookResult(status_code=200, body={"status": "malformed", "message": error.message})

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        """
        עיבוד webhook אחד.

        Raises:
            InvalidSignatureError: חתימה חסרה או שגויה — לפני כל כתיבה.
        """
        if not verify_signature(raw_body, signature, self.secret):
            logger.warning(
                "Invalid tracking webhook signature",
                extra_data={"has_signature": bool(signature), "secret_configured": bool(self.secret)},
            )
            raise InvalidSignatureError()

        try:
            payload = self._parse(raw_body)
        except MalformedPayloadError as exc:
            return await self._record_malformed(raw_body, signature, exc)

        provider_event_id = str(payload["id"])
        log_context = {"provider_event_id": provider_event_id}

        existing = await self.webhook_events.get_by_provider_id(WEBHOOK_SOURCE, provider_event_id)
        if existing is not None:
            logger.info("Duplicate tracking webhook, skipping", extra_data=log_context)
            return WebhookResult(status_code=200, body={"status": "duplicate"})

        event = await self.webhook_events.try_insert(
            source=WEBHOOK_SOURCE,
            provider_event_id=provider_event_id,
            event_type=payload.get("description"),
            raw_payload=payload,
            signature=signature,
        )
        if event is None:
            # מסירה מקבילה הכניסה את אותו אירוע בין הבדיקה להוספה
            return WebhookResult(status_code=200, body={"status": "duplicate"})
        event_id = event.id

        # כל חריגה מכאן מסמנת failed; רשומה שנשארת pending חוסמת מסירות חוזרות
        try:
            update = extract_tracking_update(payload, provider_event_id)
            log_context["tracking_code"] = update.tracking_code

            order = await self.orders.get_by_tracking_number(update.tracking_code)
            if order is None:
                await self.webhook_events.mark_processed(event_id, note=ORDER_NOT_FOUND_NOTE)
                await self.db.commit()
                logger.info("No order for tracking code", extra_data=log_context)
                return WebhookResult(
                    status_code=200,
                    body={"status": "ignored", "message": "No matching order"},
                )

            order_id = order.id
            occurred_at = update.occurred_at or utcnow()
            shipment_event = await self.shipment_events.add(
                order_id=order_id,
                event_type=update.event_type,
                carrier=update.carrier,
                tracking_code=update.tracking_code,
                occurred_at=occurred_at,
                description=update.description,
                location_city=update.location_city,
                location_state=update.location_state,
                provider_event_id=provider_event_id,
                raw_data=update.raw_detail,
            )

            if not order.carrier and update.carrier:
                order.carrier = update.carrier
            if update.event_type == ShipmentEventType.DELIVERED:
                order.status = OrderStatus.DELIVERED
                order.delivered_at = occurred_at

            await self.webhook_events.mark_processed(event_id)
            await self.db.commit()
        except (NoTrackerDataError, NoTrackingDetailsError) as exc:
            await self.db.rollback()
            await self.webhook_events.mark_failed(event_id, exc.message)
            await self.db.commit()
            logger.warning(
                "Tracking webhook without usable tracker data",
                extra_data={**log_context, "error": exc.message},
            )
            return WebhookResult(status_code=500, body={"status": "failed", "error": exc.message})
        except Exception as exc:
            await self.db.rollback()
            await self.webhook_events.mark_failed(event_id, str(exc) or type(exc).__name__)
            await self.db.commit()
            logger.error(
                "Tracking webhook processing failed",
                extra_data={**log_context, "error": str(exc)},
                exc_info=True,
            )
            return WebhookResult(status_code=500, body={"status": "failed", "error": "Processing failed"})

        logger.info(
            "Tracking webhook processed",
            extra_data={
                **log_context,
                "order_id": order_id,
                "event_type": update.event_type.value,
            },
        )
        return WebhookResult(
            status_code=200,
            body={"status": "processed", "event_type": update.event_type.value},
            notification=(update.event_type.value, order_id),
            shipment_event_id=shipment_event.id,
        )
