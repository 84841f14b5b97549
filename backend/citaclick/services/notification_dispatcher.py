"""
Notification dispatcher abstraction for subscription notices.

The reconciliation scheduler emits notice triggers through this interface;
rendering and delivery (email/WhatsApp/SMS provider clients) belong to the
notification subsystem that implements it.

Supports:
- Logging (default; the trigger is written to the application log)
- Memory (testing and local development)
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from citaclick.models.subscription_notice import NoticeKind

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionNoticeTrigger:
    """One notice to deliver to a negocio."""
    tenant_id: str
    kind: str
    notice_date: date
    to_email: str
    to_name: Optional[str]
    subject: str
    days_remaining: Optional[int] = None
    plan: Optional[str] = None


def notice_subject(kind: str, days_remaining: Optional[int]) -> str:
    if kind == NoticeKind.TRIAL_ENDING:
        if days_remaining == 0:
            return "Tu periodo de prueba termina hoy"
        if days_remaining == 1:
            return "Tu periodo de prueba termina mañana"
        return f"Tu periodo de prueba termina en {days_remaining} días"
    if kind == NoticeKind.RENEWAL_DUE:
        if days_remaining == 0:
            return "Tu suscripción vence hoy"
        if days_remaining == 1:
            return "Tu suscripción vence mañana"
        return f"Tu suscripción vence en {days_remaining} días"
    return "Tu suscripción ha vencido"


class NotificationDispatcher(ABC):
    """Abstract base class for notice delivery."""

    @abstractmethod
    def send(self, notice: SubscriptionNoticeTrigger) -> bool:
        """
        Deliver a notice.

        Returns:
            True if the notice was accepted for delivery
        """


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes each trigger to the log for a downstream consumer."""

    def send(self, notice: SubscriptionNoticeTrigger) -> bool:
        logger.info(
            "Subscription notice triggered",
            extra={
                "tenant_id": notice.tenant_id,
                "kind": notice.kind,
                "to_email": notice.to_email,
                "subject": notice.subject,
                "days_remaining": notice.days_remaining,
            },
        )
        return True


class MemoryNotificationDispatcher(NotificationDispatcher):
    """Keeps sent notices in memory."""

    def __init__(self):
        self.sent: List[SubscriptionNoticeTrigger] = []

    def send(self, notice: SubscriptionNoticeTrigger) -> bool:
        self.sent.append(notice)
        return True

    def clear(self) -> None:
        """Clear sent notices."""
        self.sent.clear()


def get_notification_dispatcher() -> NotificationDispatcher:
    """
    Get configured dispatcher based on environment.

    Returns:
        NotificationDispatcher selected by NOTIFICATION_DISPATCHER
    """
    kind = os.getenv("NOTIFICATION_DISPATCHER", "log").lower()

    if kind == "memory":
        return MemoryNotificationDispatcher()
    return LoggingNotificationDispatcher()
