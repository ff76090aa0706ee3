"""
Shipment Event Model - היסטוריית מעקב משלוח להזמנה (append-only)
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from app.db.database import Base, utcnow


class ShipmentEventType(str, enum.Enum):
    """סוג אירוע קנוני — לא תלוי בספק המשלוח"""
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"


class ShipmentEvent(Base):
    """Tracking update recorded for an order"""

    __tablename__ = "shipment_events"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(SQLEnum(ShipmentEventType), nullable=False)
    carrier = Column(String(50), nullable=True)
    tracking_code = Column(String(100), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    description = Column(Text, nullable=True)
    location_city = Column(String(100), nullable=True)
    location_state = Column(String(50), nullable=True)
    provider_event_id = Column(String(255), nullable=True)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="shipment_events")
