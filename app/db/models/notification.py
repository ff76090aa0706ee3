"""
Notification Models - הגדרות התראה לכל סוג אירוע, ויומן שליחות.
"""
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow


class NotificationStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


class NotificationSetting(Base):
    """הגדרת התראה לסוג אירוע — מנוהל מהאדמין, קריאה בלבד כאן"""

    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), unique=True, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    delay_minutes = Column(Integer, nullable=False, default=0)
    email_template_id = Column(Integer, ForeignKey("email_templates.id"), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class NotificationLogEntry(Base):
    """ניסיון שליחה אחד — נרשם גם בהצלחה וגם בכשלון"""

    __tablename__ = "notification_log"

    id = Column(Integer, primary_key=True, index=True)
    # nullable — כשלון טעינת הזמנה עדיין נרשם
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=False)
    notification_type = Column(String(50), nullable=False)
    status = Column(SQLEnum(NotificationStatus), nullable=False)
    provider_message_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
