"""
Email Template Model - תבניות מייל הניתנות לעריכה מהאדמין.

name תואם לסוג האירוע (delivered, out_for_delivery וכו').
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text

from app.db.database import Base, utcnow


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
