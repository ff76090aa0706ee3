"""
Database Models
"""
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.db.models.shipment_event import ShipmentEvent, ShipmentEventType
from app.db.models.email_template import EmailTemplate
from app.db.models.notification import NotificationSetting, NotificationLogEntry, NotificationStatus
from app.db.models.profile import Profile
from app.db.models.product import Product, ProductVariant, PricingType
from app.db.models.order import Order, OrderItem, OrderStatus, PaymentStatus, OrderSource
from app.db.models.subscription import (
    Subscription,
    SubscriptionItem,
    SubscriptionStatus,
    SubscriptionFrequency,
)

__all__ = [
    "WebhookEvent",
    "WebhookEventStatus",
    "ShipmentEvent",
    "ShipmentEventType",
    "EmailTemplate",
    "NotificationSetting",
    "NotificationLogEntry",
    "NotificationStatus",
    "Profile",
    "Product",
    "ProductVariant",
    "PricingType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "OrderSource",
    "Subscription",
    "SubscriptionItem",
    "SubscriptionStatus",
    "SubscriptionFrequency",
]
