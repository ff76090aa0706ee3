"""
Webhook Event Model - טבלת idempotency ורישום של webhooks נכנסים.

כל webhook שעבר אימות נרשם לפי (source, provider_event_id) לפני העיבוד.
האילוץ הייחודי הוא מה שחוסם עיבוד כפול — גם תחת מרוץ בין שתי מסירות מקבילות.
רשומות לא נמחקות; pending שנתקע (קריסה באמצע) נשאר pending.
"""
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    JSON,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
)

from app.db.database import Base, utcnow


class WebhookEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """webhook שהתקבל מספק חיצוני"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(50), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=True)
    raw_payload = Column(JSON, nullable=True)
    signature = Column(String(255), nullable=True)
    status = Column(
        SQLEnum(WebhookEventStatus),
        nullable=False,
        default=WebhookEventStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "provider_event_id", name="uq_webhook_events_source_event"),
        Index("ix_webhook_events_status_received", "status", "received_at"),
    )
