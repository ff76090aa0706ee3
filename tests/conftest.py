"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fake email provider and fake Redis
- Test data factories (profiles, products, orders, subscriptions, notification settings)
"""
# סודות לפני ייבוא app — Settings נטען פעם אחת בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EASYPOST_WEBHOOK_SECRET", "test-easypost-webhook-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-api-key")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
os.environ.setdefault("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", "100000")

import json
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.database import Base, get_db
from app.db.models.email_template import EmailTemplate
from app.db.models.notification import NotificationSetting
from app.db.models.order import Order, OrderStatus
from app.db.models.product import PricingType, Product, ProductVariant
from app.db.models.profile import Profile
from app.db.models.subscription import (
    Subscription,
    SubscriptionFrequency,
    SubscriptionItem,
    SubscriptionStatus,
)
from app.domain.services.email.base_provider import BaseEmailProvider, EmailSendResult
from app.domain.services.notification_service import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from app.domain.services.tracking_service import compute_signature
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory על אותו engine — לשירותים שפותחים session משלהם"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake external services
# ============================================================================

class FakeEmailProvider(BaseEmailProvider):
    """ספק מייל בזיכרון — שומר כל שליחה ומחזיר תוצאה קבועה"""

    def __init__(self, result: EmailSendResult | None = None) -> None:
        self.result = result or EmailSendResult(success=True, message_id="msg_test_1")
        self.sent: list[dict] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        reply_to: Optional[str] = None,
    ) -> EmailSendResult:
        self.sent.append({"to": to, "subject": subject, "html": html, "reply_to": reply_to})
        return self.result


class RecordingSleep:
    """תחליף ל-asyncio.sleep — רושם את משך ההמתנה בלי להמתין"""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def email_provider() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def dispatcher(session_factory, email_provider, fake_sleep) -> NotificationDispatcher:
    return NotificationDispatcher(
        session_factory=session_factory,
        email_provider=email_provider,
        sleep=fake_sleep,
    )


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, dispatcher: NotificationDispatcher):
    """Create test client with database and dispatcher overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Webhook helpers
# ============================================================================

def tracker_payload(
    *,
    event_id: str = "evt_1",
    tracking_code: str = "1Z1",
    status: str = "in_transit",
    carrier: str = "UPS",
    occurred_at: str | None = "2024-05-01T12:00:00Z",
    message: str | None = "Departed facility",
    details: list | None = None,
) -> dict:
    """payload של tracker.updated בפורמט EasyPost"""
    if details is None:
        detail = {
            "status": status,
            "message": message,
            "datetime": occurred_at,
            "tracking_location": {"city": "Lancaster", "state": "PA"},
        }
        details = [detail]
    return {
        "id": event_id,
        "description": "tracker.updated",
        "result": {
            "tracking_code": tracking_code,
            "carrier": carrier,
            "status": status,
            "tracking_details": details,
        },
    }


def signed(payload: dict | bytes, secret: str | None = None) -> tuple[bytes, dict[str, str]]:
    """גוף + header חתום, כמו ש-EasyPost שולח"""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    signature = compute_signature(body, secret or settings.EASYPOST_WEBHOOK_SECRET)
    return body, {"X-Hmac-Signature": f"hmac-sha256-hex={signature}", "Content-Type": "application/json"}


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def profile_factory(db_session: AsyncSession):
    """Factory for creating customer profiles"""
    async def _create_profile(
        email: str | None = "jane@example.com",
        full_name: str | None = "Jane Miller",
    ) -> Profile:
        profile = Profile(email=email, full_name=full_name)
        db_session.add(profile)
        await db_session.commit()
        await db_session.refresh(profile)
        return profile

    return _create_profile


@pytest.fixture
def product_factory(db_session: AsyncSession):
    """Factory for creating catalog products"""
    async def _create_product(
        name: str = "Raw Milk (1 gal)",
        base_price: str = "10.00",
        sku: str | None = None,
        sale_price: str | None = None,
        pricing_type: PricingType = PricingType.FIXED,
        estimated_weight: str | None = None,
        track_inventory: bool = False,
        stock_quantity: int = 0,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            name=name,
            sku=sku,
            base_price=Decimal(base_price),
            sale_price=Decimal(sale_price) if sale_price is not None else None,
            pricing_type=pricing_type,
            estimated_weight=Decimal(estimated_weight) if estimated_weight is not None else None,
            track_inventory=track_inventory,
            stock_quantity=stock_quantity,
            is_active=is_active,
        )
        db_session.add(product)
        await db_session.commit()
        await db_session.refresh(product)
        return product

    return _create_product


@pytest.fixture
def variant_factory(db_session: AsyncSession):
    """Factory for creating product variants"""
    async def _create_variant(
        product: Product,
        name: str = "Half gallon",
        price_modifier: str = "2.50",
        sku: str | None = "MILK-HALF",
    ) -> ProductVariant:
        variant = ProductVariant(
            product_id=product.id,
            name=name,
            sku=sku,
            price_modifier=Decimal(price_modifier),
        )
        db_session.add(variant)
        await db_session.commit()
        await db_session.refresh(variant)
        return variant

    return _create_variant


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating orders"""
    async def _create_order(
        tracking_number: str | None = "1Z1",
        user_id: int | None = None,
        customer_email: str | None = None,
        customer_name: str | None = None,
        carrier: str | None = None,
        tracking_url: str | None = None,
        total: str = "42.50",
        status: OrderStatus = OrderStatus.SHIPPED,
    ) -> Order:
        order = Order(
            tracking_number=tracking_number,
            user_id=user_id,
            customer_email=customer_email,
            customer_name=customer_name,
            carrier=carrier,
            tracking_url=tracking_url,
            subtotal=Decimal(total),
            total=Decimal(total),
            status=status,
        )
        db_session.add(order)
        await db_session.flush()
        order.order_number = settings.ORDER_NUMBER_OFFSET + order.id
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating subscriptions with items"""
    async def _create_subscription(
        user_id: int,
        items: list[tuple],
        next_order_date: date,
        name: str = "Weekly Dairy Box",
        frequency: SubscriptionFrequency = SubscriptionFrequency.WEEKLY,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> Subscription:
        subscription = Subscription(
            name=name,
            user_id=user_id,
            frequency=frequency,
            status=status,
            next_order_date=next_order_date,
        )
        db_session.add(subscription)
        await db_session.flush()
        for product, quantity, *rest in items:
            variant = rest[0] if rest else None
            db_session.add(SubscriptionItem(
                subscription_id=subscription.id,
                product_id=product.id,
                variant_id=variant.id if variant is not None else None,
                quantity=quantity,
            ))
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create_subscription


@pytest.fixture
def notification_setting_factory(db_session: AsyncSession):
    """Factory for per-event notification settings"""
    async def _create_setting(
        event_type: str,
        is_enabled: bool = True,
        delay_minutes: int = 0,
        email_template_id: int | None = None,
    ) -> NotificationSetting:
        setting = NotificationSetting(
            event_type=event_type,
            is_enabled=is_enabled,
            delay_minutes=delay_minutes,
            email_template_id=email_template_id,
        )
        db_session.add(setting)
        await db_session.commit()
        await db_session.refresh(setting)
        return setting

    return _create_setting


@pytest.fixture
def email_template_factory(db_session: AsyncSession):
    async def _create_template(
        name: str,
        subject: str,
        body: str,
        is_active: bool = True,
    ) -> EmailTemplate:
        template = EmailTemplate(name=name, subject=subject, body=body, is_active=is_active)
        db_session.add(template)
        await db_session.commit()
        await db_session.refresh(template)
        return template

    return _create_template


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    from app.domain.services.email import reset_providers
    CircuitBreaker.reset_all()
    reset_providers()
    yield
    CircuitBreaker.reset_all()
    reset_providers()


class FakeRedis:
    """תחליף ל-Redis לבדיקות — in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# הערה: אין צורך בניקוי טבלאות בין בדיקות —
# כל בדיקה מקבלת DB in-memory חדש דרך async_engine (function-scoped).
