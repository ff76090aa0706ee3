"""
Email Provider Abstraction Layer

שכבת הפשטה לשליחת מיילים טרנזקציוניים.
"""
from app.domain.services.email.base_provider import BaseEmailProvider, EmailSendResult
from app.domain.services.email.provider_factory import get_email_provider, reset_providers

__all__ = [
    "BaseEmailProvider",
    "EmailSendResult",
    "get_email_provider",
    "reset_providers",
]
