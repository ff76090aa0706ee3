"""
אימות קריאות cron — מתזמן חיצוני שולח ``X-Cron-Secret``;
אדמין יכול להריץ ידנית עם ``X-Admin-API-Key``.
"""
from fastapi import Header, HTTPException, status

from app.api.dependencies.admin_auth import secret_matches
from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def require_cron_or_admin(
    x_cron_secret: str | None = Header(None),
    x_admin_api_key: str | None = Header(None),
) -> str:
    """
    מחזיר את סוג הקורא ("cron" / "admin").

    - אף סוד לא מוגדר בסביבה → 403
    - אין אף כותרת → 401
    - כותרת עם ערך שגוי → 403
    """
    if not settings.CRON_SECRET and not settings.ADMIN_API_KEY:
        logger.warning("Cron endpoint rejected — no CRON_SECRET or ADMIN_API_KEY configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cron authentication is not configured",
        )

    if not x_cron_secret and not x_admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Cron-Secret header",
        )

    if secret_matches(x_cron_secret, settings.CRON_SECRET):
        return "cron"
    if secret_matches(x_admin_api_key, settings.ADMIN_API_KEY):
        return "admin"

    logger.warning(
        "Cron endpoint rejected — wrong secret",
        extra_data={"has_cron_secret": bool(x_cron_secret), "has_admin_key": bool(x_admin_api_key)},
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Invalid cron secret",
    )
