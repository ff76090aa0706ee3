"""
Order Model - הזמנות ושורות הזמנה
"""
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Numeric,
    ForeignKey,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from app.db.database import Base, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderSource(str, enum.Enum):
    STOREFRONT = "storefront"
    SUBSCRIPTION = "subscription"
    POS = "pos"


class Order(Base):
    """Customer order"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    # מספר הזמנה לתצוגה — ORDER_NUMBER_OFFSET + id, נקבע אחרי flush
    order_number = Column(Integer, unique=True, nullable=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=True, index=True)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    source = Column(SQLEnum(OrderSource), nullable=False, default=OrderSource.STOREFRONT)

    # הזמנת אורח — מייל ושם נשמרים על ההזמנה עצמה
    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(200), nullable=True)

    # משלוח
    tracking_number = Column(String(100), nullable=True, index=True)
    tracking_url = Column(String(500), nullable=True)
    carrier = Column(String(50), nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    scheduled_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    delivered_at = Column(DateTime, nullable=True)

    profile = relationship("Profile", foreign_keys=[user_id])
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    shipment_events = relationship("ShipmentEvent", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=True)
    product_name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
