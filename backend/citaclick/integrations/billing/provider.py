"""
Billing provider capability.

BillingProvider is the contract the lifecycle engine depends on; concrete
implementations wrap a hosted billing API (see http_client.py). Provider
status strings are translated to local statuses in exactly one place,
PROVIDER_STATUS_MAP, which must cover every ProviderSubscriptionStatus.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from citaclick.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

_SECRET_PATTERN = re.compile(r"\b(sk|rk|whsec)_(live_|test_)?[A-Za-z0-9]+")


class ProviderSubscriptionStatus(str, Enum):
    """Subscription statuses reported by the hosted billing API."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class ProviderInvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


PROVIDER_STATUS_MAP: Dict[ProviderSubscriptionStatus, SubscriptionStatus] = {
    ProviderSubscriptionStatus.TRIALING: SubscriptionStatus.TRIALING,
    ProviderSubscriptionStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    ProviderSubscriptionStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    ProviderSubscriptionStatus.UNPAID: SubscriptionStatus.PAST_DUE,
    ProviderSubscriptionStatus.CANCELED: SubscriptionStatus.CANCELED,
    ProviderSubscriptionStatus.INCOMPLETE: SubscriptionStatus.INCOMPLETE,
    ProviderSubscriptionStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.CANCELED,
    ProviderSubscriptionStatus.PAUSED: SubscriptionStatus.PAST_DUE,
}

_unmapped = set(ProviderSubscriptionStatus) - set(PROVIDER_STATUS_MAP)
if _unmapped:
    raise RuntimeError(f"Provider statuses without local mapping: {sorted(s.value for s in _unmapped)}")


class BillingProviderError(Exception):
    """
    Provider-side failure.

    Attributes:
        code: Machine-readable error code (provider code or local classification)
        status_code: HTTP status from the provider, if any
        retryable: Whether the failure class is transient
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.retryable = retryable


class AlreadyExpiredError(BillingProviderError):
    """Reactivation requested after the subscription period elapsed."""

    def __init__(self, subscription_id: str):
        super().__init__(
            code="already_expired",
            message=f"Subscription {subscription_id} period has already ended",
        )
        self.subscription_id = subscription_id


def redact(text: str, secrets: Optional[List[str]] = None) -> str:
    """Strip API keys and signing secrets from text destined for logs or clients."""
    if not text:
        return text
    for secret in secrets or []:
        if secret:
            text = text.replace(secret, "[REDACTED]")
    return _SECRET_PATTERN.sub("[REDACTED]", text)


def map_provider_status(raw_status: str) -> SubscriptionStatus:
    """
    Translate a provider status string.

    Raises:
        BillingProviderError: For statuses this integration does not know
    """
    try:
        provider_status = ProviderSubscriptionStatus(str(raw_status).lower())
    except ValueError:
        logger.error("Unknown provider subscription status", extra={"status": raw_status})
        raise BillingProviderError(
            code="unknown_status",
            message=f"Unknown provider subscription status: {raw_status}",
        )
    return PROVIDER_STATUS_MAP[provider_status]


@dataclass
class CustomerRef:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class SubscriptionSnapshot:
    """Provider view of a subscription, already mapped to local status."""
    id: str
    customer_id: str
    status: SubscriptionStatus
    price_id: Optional[str] = None
    interval: str = "MONTHLY"
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    latest_invoice_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None


@dataclass
class InvoiceSnapshot:
    id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: str
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "mxn"
    number: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    created: Optional[datetime] = None
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    lines: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "amount_due": self.amount_due,
            "amount_paid": self.amount_paid,
            "currency": self.currency,
            "number": self.number,
            "hosted_invoice_url": self.hosted_invoice_url,
            "invoice_pdf": self.invoice_pdf,
            "created": self.created.isoformat() if self.created else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


class BillingProvider(ABC):
    """
    Abstract hosted-billing capability.

    Every method raises BillingProviderError on failure and has no local
    side effects; callers persist only after a call returns.
    """

    @abstractmethod
    def create_customer(self, tenant_id: str, email: str, name: str) -> CustomerRef:
        ...

    @abstractmethod
    def create_subscription(
        self,
        customer: CustomerRef,
        price_id: str,
        payment_method_ref: Optional[str] = None,
        trial_days: Optional[int] = None,
        trial_end_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
    ) -> SubscriptionSnapshot:
        ...

    @abstractmethod
    def update_subscription(
        self,
        subscription_id: str,
        price_id: Optional[str] = None,
        payment_method_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> SubscriptionSnapshot:
        ...

    @abstractmethod
    def cancel_subscription(self, subscription_id: str, immediate: bool) -> SubscriptionSnapshot:
        ...

    @abstractmethod
    def reactivate_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Undo a scheduled cancellation. Raises AlreadyExpiredError if the period ended."""

    @abstractmethod
    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    @abstractmethod
    def get_invoice(self, invoice_id: str) -> InvoiceSnapshot:
        ...

    @abstractmethod
    def get_upcoming_invoice(self, customer_id: str) -> Optional[InvoiceSnapshot]:
        ...

    @abstractmethod
    def list_customer_invoices(self, customer_id: str, limit: int = 10) -> List[InvoiceSnapshot]:
        ...
