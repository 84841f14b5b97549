"""
Database models for negocios, subscriptions and the billing audit trail.

Tenant-scoped models inherit from TenantScopedMixin.
"""

from citaclick.models.base import TimestampMixin, TenantScopedMixin
from citaclick.models.negocio import Negocio
from citaclick.models.subscription import Subscription, SubscriptionStatus, BillingInterval
from citaclick.models.webhook_event import WebhookEvent, WebhookOutcome
from citaclick.models.billing_event import BillingEvent, BillingEventType, ActorType
from citaclick.models.subscription_notice import SubscriptionNotice, NoticeKind

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "Negocio",
    "Subscription",
    "SubscriptionStatus",
    "BillingInterval",
    "WebhookEvent",
    "WebhookOutcome",
    "BillingEvent",
    "BillingEventType",
    "ActorType",
    "SubscriptionNotice",
    "NoticeKind",
]
