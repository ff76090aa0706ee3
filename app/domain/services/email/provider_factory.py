"""
Provider Factory — ספק מייל יחיד לכל התהליך (lazy singleton).
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_resend_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.email.base_provider import BaseEmailProvider

logger = get_logger(__name__)

_provider: BaseEmailProvider | None = None
_lock = threading.Lock()


def get_email_provider() -> BaseEmailProvider:
    """ספק המייל הפעיל (Resend)."""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                from app.domain.services.email.resend_provider import ResendEmailProvider

                _provider = ResendEmailProvider(circuit_breaker=get_resend_circuit_breaker())
                logger.info(
                    "Email provider initialized",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def reset_providers() -> None:
    """איפוס ספק — לשימוש בבדיקות בלבד."""
    global _provider
    with _lock:
        _provider = None
