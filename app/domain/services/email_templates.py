"""
מאגר תבניות מייל — תבנית מה-DB (שנערכה ע"י אדמין) או ברירת מחדל מהקוד.

סדר החיפוש:
1. email_template_id מתוך NotificationSetting (אם הוגדר ופעיל)
2. תבנית פעילה ב-DB ששמה זהה לסוג האירוע
3. תבנית ברירת מחדל בקוד לסוג האירוע
4. תבנית כללית "Order Update"
"""
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.repositories import NotificationRepository

FOOTER_ADDRESS = "Amos Miller Farm<br>648 Mill Creek School Rd, Bird in Hand, PA 17505"


@dataclass(frozen=True)
class TemplateContent:
    subject: str
    body: str
    source: str  # "database" / "code"


def _layout(title: str, accent: str, content: str, footer: str = FOOTER_ADDRESS) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; color: #1a1a1a; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: {accent}; color: white; padding: 30px 20px; text-align: center; border-radius: 8px 8px 0 0; }}
    .content {{ background: white; padding: 30px 20px; border: 1px solid #e5e7eb; }}
    .button {{ display: inline-block; background: {accent}; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; margin: 20px 0; }}
    .footer {{ text-align: center; padding: 20px; color: #6b7280; font-size: 14px; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1 style="margin: 0;">{title}</h1></div>
    <div class="content">
{content}
    </div>
    <div class="footer"><p>{footer}</p></div>
  </div>
</body>
</html>
"""


_TRACKING_BLOCK = (
    "      <p><strong>Carrier:</strong> {{carrier}}<br>\n"
    "      <strong>Tracking Number:</strong> {{tracking_number}}</p>\n"
)

DEFAULT_TEMPLATES: dict[str, TemplateContent] = {
    "in_transit": TemplateContent(
        subject="Your order #{{order_number}} is on its way",
        body=_layout(
            "On Its Way",
            "#2563eb",
            "      <p>Hi {{customer_name}},</p>\n"
            "      <p>Your order <strong>#{{order_number}}</strong> is in transit.</p>\n"
            + _TRACKING_BLOCK
            + '      <a href="{{tracking_url}}" class="button">Track Your Package</a>\n',
        ),
        source="code",
    ),
    "out_for_delivery": TemplateContent(
        subject="Your order is out for delivery!",
        body=_layout(
            "Out for Delivery",
            "#f97316",
            "      <p>Hi {{customer_name}},</p>\n"
            "      <p>Good news! Your order <strong>#{{order_number}}</strong> is out for delivery today.</p>\n"
            + _TRACKING_BLOCK
            + '      <a href="{{tracking_url}}" class="button">Track Your Package</a>\n'
            "      <p>Please ensure someone is available to receive the delivery.</p>\n",
        ),
        source="code",
    ),
    "delivered": TemplateContent(
        subject="Your order has been delivered!",
        body=_layout(
            "Delivered",
            "#10b981",
            "      <p>Hi {{customer_name}},</p>\n"
            "      <p>Your order <strong>#{{order_number}}</strong> has been delivered!</p>\n"
            "      <p><strong>Tracking Number:</strong> {{tracking_number}}</p>\n"
            "      <p>We hope you enjoy your farm-fresh products. If you have any questions "
            "about your order, please reach out.</p>\n",
            footer="Thank you for supporting Amos Miller Farm!",
        ),
        source="code",
    ),
    "exception": TemplateContent(
        subject="Delivery update for your order",
        body=_layout(
            "Delivery Update",
            "#ef4444",
            "      <p>Hi {{customer_name}},</p>\n"
            "      <p>The carrier has reported an exception for your order "
            "<strong>#{{order_number}}</strong>. This could mean a delay or a delivery issue.</p>\n"
            + _TRACKING_BLOCK
            + '      <a href="{{tracking_url}}" class="button">Check Tracking Status</a>\n',
        ),
        source="code",
    ),
    "failed_attempt": TemplateContent(
        subject="Delivery attempt for your order",
        body=_layout(
            "Delivery Attempted",
            "#f59e0b",
            "      <p>Hi {{customer_name}},</p>\n"
            "      <p>The carrier attempted to deliver your order <strong>#{{order_number}}</strong> "
            "but was unable to complete the delivery.</p>\n"
            + _TRACKING_BLOCK
            + '      <a href="{{tracking_url}}" class="button">Manage Delivery</a>\n',
        ),
        source="code",
    ),
}

GENERIC_TEMPLATE = TemplateContent(
    subject="Order Update",
    body=(
        "<!DOCTYPE html>\n<html>\n<body style=\"font-family: system-ui, sans-serif; padding: 20px;\">\n"
        "  <p>Hi {{customer_name}},</p>\n"
        "  <p>There's an update for your order #{{order_number}}.</p>\n"
        "  <p>Tracking: {{tracking_number}}</p>\n"
        "</body>\n</html>\n"
    ),
    source="code",
)

SUBSCRIPTION_REMINDER_TEMPLATE = TemplateContent(
    subject="Upcoming Order Reminder - {{subscription_name}}",
    body=_layout(
        "Your Next Order Is Coming Up",
        "#16a34a",
        "      <p>Hi {{first_name}},</p>\n"
        "      <p>Your subscription <strong>{{subscription_name}}</strong> will place its next "
        "order on <strong>{{order_date}}</strong>.</p>\n"
        "{{items_html}}"
        "      <p><strong>Estimated total:</strong> {{estimated_total}}</p>\n"
        '      <a href="{{manage_url}}" class="button">Manage Subscription</a>\n'
        "      <p>Need to skip or change something? Update your subscription before the order date.</p>\n",
    ),
    source="code",
)


def get_default_template(event_type: str) -> TemplateContent:
    return DEFAULT_TEMPLATES.get(event_type, GENERIC_TEMPLATE)


class TemplateStore:
    """שליפת תבנית לסוג אירוע"""

    def __init__(self, db: AsyncSession):
        self.repo = NotificationRepository(db)

    async def get_template(self, event_type: str, template_id: int | None = None) -> TemplateContent:
        if template_id is not None:
            selected = await self.repo.get_template(template_id)
            if selected is not None:
                return TemplateContent(subject=selected.subject, body=selected.body, source="database")

        stored = await self.repo.get_template_by_name(event_type)
        if stored is not None:
            return TemplateContent(subject=stored.subject, body=stored.body, source="database")

        return get_default_template(event_type)
