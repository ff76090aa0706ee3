"""
בדיקות ל-NotificationDispatcher — שליחת מייל ללקוח על אירוע משלוח.

מכסה:
- הגדרה חסרה / כבויה → אין שליחה ואין רשומה ביומן
- השהייה לפי delay_minutes (עם תקרה)
- בחירת נמען ותבנית, משתני תבנית
- כל כשלון נרשם ביומן כ-failed ולא נזרק
- מייל בדיקה לאדמין
"""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import TemplateRenderError
from app.db.models.notification import NotificationLogEntry, NotificationStatus
from app.db.models.order import Order
from app.db.models.profile import Profile
from app.domain.services.email.base_provider import EmailSendResult
from app.domain.services.notification_service import (
    NotificationDispatcher,
    NotificationOutcome,
    build_order_variables,
    format_currency,
    resolve_recipient,
)


async def _log_entries(db: AsyncSession) -> list[NotificationLogEntry]:
    result = await db.execute(select(NotificationLogEntry).order_by(NotificationLogEntry.id))
    return list(result.scalars().all())


# ============================================================================
# פונקציות עזר
# ============================================================================


class TestHelpers:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "amount,expected",
        [
            (None, "$0.00"),
            (0, "$0.00"),
            (Decimal("42.5"), "$42.50"),
            (Decimal("1234.567"), "$1,234.57"),
            ("19.99", "$19.99"),
        ],
    )
    def test_format_currency(self, amount, expected: str) -> None:
        assert format_currency(amount) == expected

    @pytest.mark.unit
    def test_recipient_prefers_order_email(self) -> None:
        order = Order(customer_email="guest@example.com", profile=Profile(email="account@example.com"))
        assert resolve_recipient(order) == "guest@example.com"

    @pytest.mark.unit
    def test_recipient_falls_back_to_profile(self) -> None:
        order = Order(profile=Profile(email="account@example.com"))
        assert resolve_recipient(order) == "account@example.com"

    @pytest.mark.unit
    def test_no_recipient(self) -> None:
        assert resolve_recipient(Order()) is None

    @pytest.mark.unit
    def test_variables_defaults(self) -> None:
        """שדות חסרים מקבלים ערכי ברירת מחדל ולא None"""
        order = Order(id=7, total=None)
        variables = build_order_variables(order)
        assert variables == {
            "customer_name": "Customer",
            "order_number": "7",
            "tracking_number": "Not available",
            "tracking_url": "#",
            "carrier": "CARRIER",
            "order_total": "$0.00",
        }

    @pytest.mark.unit
    def test_variables_name_priority(self) -> None:
        profile = Profile(email="jane@example.com", full_name="Jane Miller")
        order = Order(id=1, order_number=1001, customer_name="Guest Name", profile=profile, carrier="ups")
        variables = build_order_variables(order)
        assert variables["customer_name"] == "Jane Miller"
        assert variables["order_number"] == "1001"
        assert variables["carrier"] == "UPS"

        assert build_order_variables(Order(id=1, customer_name="Guest Name"))["customer_name"] == "Guest Name"
        assert build_order_variables(Order(id=1, customer_email="bob@example.com"))["customer_name"] == "bob"


# ============================================================================
# dispatch
# ============================================================================


class TestDispatch:

    @pytest.mark.unit
    async def test_no_setting_suppressed(
        self, dispatcher: NotificationDispatcher, db_session: AsyncSession, order_factory, email_provider
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")

        outcome = await dispatcher.dispatch("delivered", order.id)

        assert outcome == NotificationOutcome.SUPPRESSED
        assert email_provider.sent == []
        assert await _log_entries(db_session) == []

    @pytest.mark.unit
    async def test_disabled_setting_suppressed(
        self,
        dispatcher: NotificationDispatcher,
        db_session: AsyncSession,
        order_factory,
        notification_setting_factory,
        email_provider,
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")
        await notification_setting_factory("delivered", is_enabled=False)

        outcome = await dispatcher.dispatch("delivered", order.id)

        assert outcome == NotificationOutcome.SUPPRESSED
        assert email_provider.sent == []
        assert await _log_entries(db_session) == []

    @pytest.mark.unit
    async def test_sent_with_default_template(
        self,
        dispatcher: NotificationDispatcher,
        db_session: AsyncSession,
        order_factory,
        profile_factory,
        notification_setting_factory,
        email_provider,
    ) -> None:
        profile = await profile_factory(email="jane@example.com", full_name="Jane Miller")
        order = await order_factory(user_id=profile.id, carrier="ups", total="42.50")
        await notification_setting_factory("in_transit")

        outcome = await dispatcher.dispatch("in_transit", order.id)

        assert outcome == NotificationOutcome.SENT
        sent = email_provider.sent[0]
        assert sent["to"] == "jane@example.com"
        assert sent["subject"] == f"Your order #{order.order_number} is on its way"
        assert "Jane Miller" in sent["html"]
        assert "UPS" in sent["html"]
        assert "{{" not in sent["html"]

        entries = await _log_entries(db_session)
        assert len(entries) == 1
        assert entries[0].status == NotificationStatus.SENT
        assert entries[0].provider_message_id == "msg_test_1"
        assert entries[0].recipient_email == "jane@example.com"
        assert entries[0].notification_type == "in_transit"
        assert entries[0].sent_at is not None

    @pytest.mark.unit
    async def test_database_template_by_name(
        self,
        dispatcher: NotificationDispatcher,
        order_factory,
        notification_setting_factory,
        email_template_factory,
        email_provider,
    ) -> None:
        order = await order_factory(customer_email="guest@example.com", customer_name="Sam")
        await email_template_factory("delivered", "Delivered #{{ order_number }}", "<p>Hi {{customer_name}}</p>")
        await notification_setting_factory("delivered")

        await dispatcher.dispatch("delivered", order.id)

        assert email_provider.sent[0]["subject"] == f"Delivered #{order.order_number}"
        assert email_provider.sent[0]["html"] == "<p>Hi Sam</p>"

    @pytest.mark.unit
    async def test_setting_template_id_wins(
        self,
        dispatcher: NotificationDispatcher,
        order_factory,
        notification_setting_factory,
        email_template_factory,
        email_provider,
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")
        await email_template_factory("delivered", "By name", "<p>name</p>")
        chosen = await email_template_factory("holiday_delivered", "Chosen", "<p>chosen</p>")
        await notification_setting_factory("delivered", email_template_id=chosen.id)

        await dispatcher.dispatch("delivered", order.id)

        assert email_provider.sent[0]["subject"] == "Chosen"

    @pytest.mark.unit
    async def test_inactive_template_falls_back_to_default(
        self,
        dispatcher: NotificationDispatcher,
        order_factory,
        notification_setting_factory,
        email_template_factory,
        email_provider,
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")
        await email_template_factory("delivered", "Old subject", "<p>old</p>", is_active=False)
        await notification_setting_factory("delivered")

        await dispatcher.dispatch("delivered", order.id)

        assert email_provider.sent[0]["subject"] == "Your order has been delivered!"

    @pytest.mark.unit
    async def test_delay_applied(
        self,
        dispatcher: NotificationDispatcher,
        order_factory,
        notification_setting_factory,
        fake_sleep,
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")
        await notification_setting_factory("out_for_delivery", delay_minutes=5)

        await dispatcher.dispatch("out_for_delivery", order.id)

        assert fake_sleep.calls == [300]

    @pytest.mark.unit
    async def test_delay_capped(
        self,
        session_factory,
        email_provider,
        fake_sleep,
        order_factory,
        notification_setting_factory,
    ) -> None:
        capped = NotificationDispatcher(
            session_factory=session_factory,
            email_provider=email_provider,
            sleep=fake_sleep,
            max_delay_minutes=10,
        )
        order = await order_factory(customer_email="guest@example.com")
        await notification_setting_factory("out_for_delivery", delay_minutes=600)

        await capped.dispatch("out_for_delivery", order.id)

        assert fake_sleep.calls == [600]

    @pytest.mark.unit
    async def test_zero_delay_no_sleep(
        self, dispatcher: NotificationDispatcher, order_factory, notification_setting_factory, fake_sleep
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")
        await notification_setting_factory("delivered")

        await dispatcher.dispatch("delivered", order.id)

        assert fake_sleep.calls == []


# ============================================================================
# כשלונות — נרשמים ולא נזרקים
# ============================================================================


class TestDispatchFailures:

    @pytest.mark.unit
    async def test_provider_failure_logged(
        self,
        dispatcher: NotificationDispatcher,
        db_session: AsyncSession,
        order_factory,
        notification_setting_factory,
        email_provider,
    ) -> None:
        email_provider.result = EmailSendResult(success=False, error="Email provider error: invalid to")
        order = await order_factory(customer_email="guest@example.com")
        await notification_setting_factory("delivered")

        outcome = await dispatcher.dispatch("delivered", order.id)

        assert outcome == NotificationOutcome.FAILED
        entries = await _log_entries(db_session)
        assert len(entries) == 1
        assert entries[0].status == NotificationStatus.FAILED
        assert entries[0].error_message == "Email provider error: invalid to"
        assert entries[0].provider_message_id is None
        assert entries[0].sent_at is None

    @pytest.mark.unit
    async def test_missing_order_logged(
        self,
        dispatcher: NotificationDispatcher,
        db_session: AsyncSession,
        notification_setting_factory,
        email_provider,
    ) -> None:
        await notification_setting_factory("delivered")

        outcome = await dispatcher.dispatch("delivered", 9999)

        assert outcome == NotificationOutcome.FAILED
        assert email_provider.sent == []
        entries = await _log_entries(db_session)
        assert len(entries) == 1
        assert entries[0].order_id is None
        assert entries[0].recipient_email == "unknown"
        assert "Order not found" in entries[0].error_message

    @pytest.mark.unit
    async def test_no_recipient_logged(
        self,
        dispatcher: NotificationDispatcher,
        db_session: AsyncSession,
        order_factory,
        notification_setting_factory,
        email_provider,
    ) -> None:
        order = await order_factory(customer_email=None)
        await notification_setting_factory("delivered")

        outcome = await dispatcher.dispatch("delivered", order.id)

        assert outcome == NotificationOutcome.FAILED
        assert email_provider.sent == []
        entries = await _log_entries(db_session)
        assert entries[0].order_id == order.id
        assert entries[0].recipient_email == "unknown"
        assert "No recipient email" in entries[0].error_message

    @pytest.mark.unit
    async def test_template_render_error_logged(
        self,
        dispatcher: NotificationDispatcher,
        db_session: AsyncSession,
        order_factory,
        notification_setting_factory,
        email_template_factory,
        email_provider,
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")
        await email_template_factory("delivered", "Hi {{ nickname }}", "<p>x</p>")
        await notification_setting_factory("delivered")

        outcome = await dispatcher.dispatch("delivered", order.id)

        assert outcome == NotificationOutcome.FAILED
        assert email_provider.sent == []
        entries = await _log_entries(db_session)
        assert entries[0].recipient_email == "guest@example.com"
        assert "nickname" in entries[0].error_message

    @pytest.mark.unit
    async def test_provider_exception_does_not_escape(
        self,
        dispatcher: NotificationDispatcher,
        db_session: AsyncSession,
        order_factory,
        notification_setting_factory,
        email_provider,
    ) -> None:
        order = await order_factory(customer_email="guest@example.com")
        await notification_setting_factory("delivered")

        with patch.object(email_provider, "send", new_callable=AsyncMock, side_effect=RuntimeError("boom")):
            outcome = await dispatcher.dispatch("delivered", order.id)

        assert outcome == NotificationOutcome.FAILED
        entries = await _log_entries(db_session)
        assert entries[0].error_message == "boom"


# ============================================================================
# מייל בדיקה
# ============================================================================


class TestSendTestNotification:

    @pytest.mark.unit
    async def test_sample_data_and_prefix(
        self, dispatcher: NotificationDispatcher, db_session: AsyncSession, email_provider
    ) -> None:
        result = await dispatcher.send_test_notification("in_transit", "admin@example.com")

        assert result.success
        sent = email_provider.sent[0]
        assert sent["to"] == "admin@example.com"
        assert sent["subject"] == "[TEST] Your order #12345 is on its way"
        assert "Test Customer" in sent["html"]
        # מייל בדיקה לא נרשם ביומן
        assert await _log_entries(db_session) == []

    @pytest.mark.unit
    async def test_sample_data_override(
        self, dispatcher: NotificationDispatcher, email_provider
    ) -> None:
        await dispatcher.send_test_notification("in_transit", "admin@example.com", {"order_number": "777"})
        assert email_provider.sent[0]["subject"] == "[TEST] Your order #777 is on its way"

    @pytest.mark.unit
    async def test_unknown_variable_raises(
        self, dispatcher: NotificationDispatcher, email_template_factory, email_provider
    ) -> None:
        await email_template_factory("exception", "Heads up {{ coupon_code }}", "<p>x</p>")

        with pytest.raises(TemplateRenderError) as exc_info:
            await dispatcher.send_test_notification("exception", "admin@example.com")

        assert exc_info.value.missing == ["coupon_code"]
        assert email_provider.sent == []
