"""
נרמול נתוני מעקב מ-EasyPost: אימות חתימה, מיפוי סטטוס, ושליפת העדכון האחרון.
"""
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.exceptions import NoTrackerDataError, NoTrackingDetailsError
from app.db.models.shipment_event import ShipmentEventType

# EasyPost שולח לפעמים את החתימה עם prefix
_SIGNATURE_PREFIX = "hmac-sha256-hex="

# סטטוס ספק → סוג קנוני. כל סטטוס שלא מופיע כאן → in_transit
STATUS_MAPPING: dict[str, ShipmentEventType] = {
    "pre_transit": ShipmentEventType.IN_TRANSIT,
    "in_transit": ShipmentEventType.IN_TRANSIT,
    "unknown": ShipmentEventType.IN_TRANSIT,
    "out_for_delivery": ShipmentEventType.OUT_FOR_DELIVERY,
    "available_for_pickup": ShipmentEventType.OUT_FOR_DELIVERY,
    "delivered": ShipmentEventType.DELIVERED,
    "return_to_sender": ShipmentEventType.EXCEPTION,
    "failure": ShipmentEventType.EXCEPTION,
    "cancelled": ShipmentEventType.EXCEPTION,
    "error": ShipmentEventType.EXCEPTION,
}


def map_tracking_status(status: Any) -> ShipmentEventType:
    """מיפוי case-insensitive של סטטוס ספק לסוג אירוע קנוני. ערך שאינו מחרוזת → in_transit"""
    if not status or not isinstance(status, str):
        return ShipmentEventType.IN_TRANSIT
    return STATUS_MAPPING.get(status.strip().lower(), ShipmentEventType.IN_TRANSIT)


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    אימות HMAC-SHA256 של גוף הבקשה הגולמי.

    hmac.compare_digest לא יוצא מוקדם על אי-התאמה, כך שזמן ההשוואה
    לא חושף כמה תווים תאמו. secret ריק או חתימה חסרה → False.
    """
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]
    expected = compute_signature(body, secret)
    return hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("utf-8"))


def parse_event_datetime(value: Any) -> Optional[datetime]:
    """ISO-8601 (כולל Z) → datetime UTC נאיבי. ערך לא תקין → None"""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class TrackingUpdate:
    """העדכון האחרון מתוך tracker של EasyPost"""
    tracking_code: str
    carrier: Optional[str]
    status: Optional[str]
    event_type: ShipmentEventType
    description: str
    occurred_at: Optional[datetime]
    location_city: Optional[str]
    location_state: Optional[str]
    raw_detail: dict


def extract_tracking_update(payload: dict, provider_event_id: str | None = None) -> TrackingUpdate:
    """
    שליפת העדכון האחרון מה-tracker.

    tracking_details[0] נחשב לעדכון החדש ביותר — EasyPost מחזיר
    את ההיסטוריה מהחדש לישן ולא מתבצע כאן מיון.

    Raises:
        NoTrackerDataError: אין result או אין tracking_code.
        NoTrackingDetailsError: רשימת ההיסטוריה ריקה.
    """
    tracker = payload.get("result")
    if not isinstance(tracker, dict) or not tracker.get("tracking_code"):
        raise NoTrackerDataError(provider_event_id)

    tracking_code = str(tracker["tracking_code"])
    details = tracker.get("tracking_details") or []
    if not isinstance(details, list) or not details:
        raise NoTrackingDetailsError(tracking_code, provider_event_id)

    latest = details[0] if isinstance(details[0], dict) else {}
    location = latest.get("tracking_location") or {}
    if not isinstance(location, dict):
        location = {}
    carrier = tracker.get("carrier")
    status = latest.get("status")
    description = latest.get("message") or latest.get("status_detail")

    return TrackingUpdate(
        tracking_code=tracking_code,
        carrier=str(carrier).lower() if carrier else None,
        status=status if isinstance(status, str) else None,
        event_type=map_tracking_status(status),
        description=str(description) if description else "Status update",
        occurred_at=parse_event_datetime(latest.get("datetime")),
        location_city=location.get("city"),
        location_state=location.get("state"),
        raw_detail=latest,
    )
