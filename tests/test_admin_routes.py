"""
בדיקות ל-admin endpoints — /api/admin/*
"""
from datetime import date, datetime
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import get_resend_circuit_breaker
from app.core.config import settings
from app.db.models.notification import NotificationStatus
from app.db.models.order import Order, OrderSource
from app.db.models.shipment_event import ShipmentEventType
from app.db.models.webhook_event import WebhookEventStatus
from app.db.repositories import (
    NotificationRepository,
    ShipmentEventRepository,
    WebhookEventRepository,
)
from app.domain.services.email.base_provider import EmailSendResult

ADMIN_HEADERS = {"X-Admin-API-Key": settings.ADMIN_API_KEY}


class TestAdminAuth:

    @pytest.mark.unit
    async def test_missing_key_401(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/circuit-breakers")
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_wrong_key_403(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/circuit-breakers", headers={"X-Admin-API-Key": "nope"})
        assert response.status_code == 403

    @pytest.mark.unit
    async def test_cron_secret_not_enough(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get(
            "/api/admin/webhook-events", headers={"X-Cron-Secret": settings.CRON_SECRET}
        )
        assert response.status_code == 401


class TestOrderHistory:

    @pytest.mark.unit
    async def test_shipment_events_newest_first(
        self, test_client: httpx.AsyncClient, db_session: AsyncSession, order_factory
    ) -> None:
        order = await order_factory()
        repo = ShipmentEventRepository(db_session)
        for event_type, day in [(ShipmentEventType.IN_TRANSIT, 1), (ShipmentEventType.DELIVERED, 3)]:
            await repo.add(
                order_id=order.id,
                event_type=event_type,
                carrier="ups",
                tracking_code="1Z1",
                occurred_at=datetime(2024, 5, day, 12, 0),
                description=event_type.value,
                location_city=None,
                location_state=None,
                provider_event_id=f"evt_{day}",
                raw_data={},
            )
        await db_session.commit()

        response = await test_client.get(f"/api/admin/orders/{order.id}/shipment-events", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert [e["event_type"] for e in data] == ["delivered", "in_transit"]
        assert data[0]["provider_event_id"] == "evt_3"

    @pytest.mark.unit
    async def test_notifications_listed(
        self, test_client: httpx.AsyncClient, db_session: AsyncSession, order_factory
    ) -> None:
        order = await order_factory()
        await NotificationRepository(db_session).add_log_entry(
            order_id=order.id,
            recipient_email="guest@example.com",
            notification_type="delivered",
            status=NotificationStatus.FAILED,
            error_message="rate limited",
        )
        await db_session.commit()

        response = await test_client.get(f"/api/admin/orders/{order.id}/notifications", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        entry = response.json()[0]
        assert entry["status"] == "failed"
        assert entry["error_message"] == "rate limited"
        assert entry["notification_type"] == "delivered"

    @pytest.mark.unit
    @pytest.mark.parametrize("suffix", ["shipment-events", "notifications"])
    async def test_unknown_order_404(self, test_client: httpx.AsyncClient, suffix: str) -> None:
        response = await test_client.get(f"/api/admin/orders/424242/{suffix}", headers=ADMIN_HEADERS)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_3001"


class TestSubscriptionOrderHistory:

    @pytest.mark.unit
    async def test_orders_newest_first(
        self,
        test_client: httpx.AsyncClient,
        db_session: AsyncSession,
        profile_factory,
        product_factory,
        subscription_factory,
        order_factory,
    ) -> None:
        profile = await profile_factory()
        milk = await product_factory()
        subscription = await subscription_factory(profile.id, [(milk, 1)], next_order_date=date(2024, 5, 22))
        other = await subscription_factory(profile.id, [(milk, 1)], next_order_date=date(2024, 5, 22))
        for day, owner in [(1, subscription), (8, subscription), (8, other)]:
            db_session.add(Order(
                user_id=profile.id,
                subscription_id=owner.id,
                source=OrderSource.SUBSCRIPTION,
                scheduled_date=date(2024, 5, day),
                subtotal=Decimal("10.00"),
                total=Decimal("10.00"),
                created_at=datetime(2024, 5, day, 6, 0),
            ))
        await order_factory(tracking_number="1Z9")
        await db_session.commit()

        response = await test_client.get(
            f"/api/admin/subscriptions/{subscription.id}/orders", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert [o["scheduled_date"] for o in data] == ["2024-05-08", "2024-05-01"]
        assert data[0]["status"] == "pending"
        assert data[0]["payment_status"] == "pending"
        assert Decimal(data[0]["total"]) == Decimal("10.00")

    @pytest.mark.unit
    async def test_subscription_without_orders(
        self, test_client: httpx.AsyncClient, profile_factory, product_factory, subscription_factory
    ) -> None:
        profile = await profile_factory()
        milk = await product_factory()
        subscription = await subscription_factory(profile.id, [(milk, 1)], next_order_date=date(2024, 5, 22))

        response = await test_client.get(
            f"/api/admin/subscriptions/{subscription.id}/orders", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.unit
    async def test_unknown_subscription_404(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/subscriptions/424242/orders", headers=ADMIN_HEADERS)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_4005"

    @pytest.mark.unit
    async def test_requires_admin_key(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/subscriptions/1/orders")
        assert response.status_code == 401


class TestWebhookEvents:

    @staticmethod
    async def _seed(db: AsyncSession) -> None:
        repo = WebhookEventRepository(db)
        await repo.try_insert(
            source="easypost", provider_event_id="evt_ok", event_type="tracker.updated",
            raw_payload={}, signature=None,
        )
        await repo.try_insert(
            source="easypost", provider_event_id="evt_bad", event_type="tracker.updated",
            raw_payload={}, signature=None, status=WebhookEventStatus.FAILED, last_error="boom",
        )

    @pytest.mark.unit
    async def test_list_all(self, test_client: httpx.AsyncClient, db_session: AsyncSession) -> None:
        await self._seed(db_session)

        response = await test_client.get("/api/admin/webhook-events", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert {e["provider_event_id"] for e in response.json()} == {"evt_ok", "evt_bad"}

    @pytest.mark.unit
    async def test_filter_pending(self, test_client: httpx.AsyncClient, db_session: AsyncSession) -> None:
        """אירוע שהעיבוד שלו נקטע נשאר pending ונראה בסינון"""
        await self._seed(db_session)

        response = await test_client.get("/api/admin/webhook-events?status=pending", headers=ADMIN_HEADERS)

        data = response.json()
        assert [e["provider_event_id"] for e in data] == ["evt_ok"]
        assert data[0]["status"] == "pending"

    @pytest.mark.unit
    async def test_invalid_status_400(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/webhook-events?status=stuck", headers=ADMIN_HEADERS)
        assert response.status_code == 400

    @pytest.mark.unit
    async def test_limit_validated(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/webhook-events?limit=0", headers=ADMIN_HEADERS)
        assert response.status_code == 422


class TestTestNotification:

    @pytest.mark.unit
    async def test_sends_with_prefix(self, test_client: httpx.AsyncClient, email_provider) -> None:
        response = await test_client.post(
            "/api/admin/notifications/test",
            headers=ADMIN_HEADERS,
            json={"event_type": "out_for_delivery", "test_email": "admin@example.com"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "message_id": "msg_test_1", "error": None}
        assert email_provider.sent[0]["subject"] == "[TEST] Your order is out for delivery!"

    @pytest.mark.unit
    async def test_provider_failure_reported(self, test_client: httpx.AsyncClient, email_provider) -> None:
        email_provider.result = EmailSendResult(success=False, error="RESEND_API_KEY is not set")

        response = await test_client.post(
            "/api/admin/notifications/test",
            headers=ADMIN_HEADERS,
            json={"event_type": "delivered", "test_email": "admin@example.com"},
        )

        assert response.json() == {"success": False, "message_id": None, "error": "RESEND_API_KEY is not set"}

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body",
        [
            {"event_type": "teleported", "test_email": "admin@example.com"},
            {"event_type": "delivered", "test_email": "not-an-email"},
        ],
    )
    async def test_invalid_body_422(self, test_client: httpx.AsyncClient, body: dict) -> None:
        response = await test_client.post("/api/admin/notifications/test", headers=ADMIN_HEADERS, json=body)
        assert response.status_code == 422

    @pytest.mark.unit
    async def test_unresolved_variable_422(
        self, test_client: httpx.AsyncClient, email_template_factory, email_provider
    ) -> None:
        await email_template_factory("delivered", "Hi {{ nickname }}", "<p>x</p>")

        response = await test_client.post(
            "/api/admin/notifications/test",
            headers=ADMIN_HEADERS,
            json={"event_type": "delivered", "test_email": "admin@example.com"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["details"]["missing"] == ["nickname"]
        assert email_provider.sent == []


class TestCircuitBreakerStatus:

    @pytest.mark.unit
    async def test_resend_listed_closed(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/circuit-breakers", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json() == [{
            "service": "resend",
            "state": "closed",
            "failure_count": 0,
            "failure_threshold": 5,
            "retry_after_seconds": 0.0,
        }]

    @pytest.mark.unit
    async def test_open_breaker_reported(self, test_client: httpx.AsyncClient) -> None:
        breaker = get_resend_circuit_breaker()
        for _ in range(5):
            await breaker.record_failure(RuntimeError("down"))

        response = await test_client.get("/api/admin/circuit-breakers", headers=ADMIN_HEADERS)

        data = response.json()[0]
        assert data["state"] == "open"
        assert data["failure_count"] == 5
        assert 0 < data["retry_after_seconds"] <= 60
