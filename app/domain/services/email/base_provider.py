"""
ממשק בסיסי לספק מייל טרנזקציוני — Dependency Inversion.

השירותים (התראות, תזכורות מנוי) תלויים רק בממשק הזה; המימוש בפועל
(Resend) מוזרק דרך provider_factory או ידנית בבדיקות.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class EmailSendResult:
    """תוצאת שליחה — ספק לא זורק על כשלון שליחה, מחזיר success=False"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class BaseEmailProvider(ABC):

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        reply_to: Optional[str] = None,
    ) -> EmailSendResult:
        """
        שליחת מייל HTML לנמען יחיד.

        Returns:
            EmailSendResult עם message_id מהספק בהצלחה, או error בכשלון.
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק ללוגים."""
