"""
Product Model - פריטי קטלוג (רק השדות שנדרשים לתמחור ולמלאי)
"""
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow


class PricingType(str, enum.Enum):
    FIXED = "fixed"
    # מחיר לפאונד — המחיר בפועל = מחיר × משקל משוער
    WEIGHT = "weight"


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    base_price = Column(Numeric(10, 2), nullable=False)
    sale_price = Column(Numeric(10, 2), nullable=True)
    pricing_type = Column(SQLEnum(PricingType), nullable=False, default=PricingType.FIXED)
    estimated_weight = Column(Numeric(10, 3), nullable=True)
    track_inventory = Column(Boolean, nullable=False, default=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ProductVariant(Base):
    """וריאנט של מוצר (גודל / אריזה) — המחיר = מחיר המוצר + price_modifier"""

    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    price_modifier = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
