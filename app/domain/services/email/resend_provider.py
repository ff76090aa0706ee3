"""
Resend Provider — שליחת מייל דרך Resend REST API.

POST {RESEND_API_URL} עם Bearer token; תשובה 200 מחזירה {"id": "..."}.
הקריאה עטופה ב-circuit breaker כך שתקלה ממושכת אצל Resend נכשלת מהר.
"""
from __future__ import annotations

from typing import Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    EmailProviderError,
    ServiceTimeoutError,
)
from app.core.logging import get_logger, mask_email
from app.domain.services.email.base_provider import BaseEmailProvider, EmailSendResult

logger = get_logger(__name__)


class ResendEmailProvider(BaseEmailProvider):

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        api_key: str | None = None,
        api_url: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self._api_url = api_url or settings.RESEND_API_URL
        self._timeout = timeout_seconds or settings.EMAIL_TIMEOUT_SECONDS

    @property
    def provider_name(self) -> str:
        return "resend"

    @property
    def sender(self) -> str:
        return f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>"

    async def _post(self, payload: dict) -> EmailSendResult:
        """בקשת HTTP בודדת.

        שגיאות זמניות (רשת, timeout, 5xx, 429) נזרקות ונספרות ב-circuit breaker.
        דחייה של הבקשה עצמה (4xx, למשל כתובת לא תקינה) חוזרת כתוצאה ולא נספרת.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TimeoutException:
            raise ServiceTimeoutError(self.provider_name, self._timeout)
        except httpx.RequestError as exc:
            raise EmailProviderError(
                f"network error: {exc}",
                details={"network_error": True},
            )

        if response.status_code >= 500 or response.status_code == 429:
            raise EmailProviderError.from_response(response)
        if response.status_code >= 300:
            return EmailSendResult(success=False, error=EmailProviderError.from_response(response).message)

        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        return EmailSendResult(success=True, message_id=message_id)

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        reply_to: Optional[str] = None,
    ) -> EmailSendResult:
        if not self._api_key:
            logger.warning("Resend API key not configured")
            return EmailSendResult(success=False, error="RESEND_API_KEY is not set")

        payload: dict = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            result = await self._circuit_breaker.execute(self._post, payload)
        except CircuitBreakerOpenError as exc:
            logger.warning(
                "Email not sent — circuit breaker open",
                extra_data={"to": mask_email(to), "retry_after": exc.details.get("retry_after_seconds")},
            )
            return EmailSendResult(success=False, error=exc.message)
        except (EmailProviderError, ServiceTimeoutError) as exc:
            logger.error(
                "Email send failed",
                extra_data={"to": mask_email(to), "error": exc.message, "details": exc.details},
            )
            return EmailSendResult(success=False, error=exc.message)

        if not result.success:
            logger.warning(
                "Email rejected by provider",
                extra_data={"to": mask_email(to), "error": result.error},
            )
            return result

        logger.info(
            "Email sent",
            extra_data={"to": mask_email(to), "message_id": result.message_id},
        )
        return result
