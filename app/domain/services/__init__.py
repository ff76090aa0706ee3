"""
Domain Services
"""
from app.domain.services.notification_service import NotificationDispatcher
from app.domain.services.shipment_webhook_service import ShipmentWebhookService
from app.domain.services.subscription_service import SubscriptionOrderService

__all__ = [
    "NotificationDispatcher",
    "ShipmentWebhookService",
    "SubscriptionOrderService",
]
