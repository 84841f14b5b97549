"""Billing provider integration."""

from citaclick.integrations.billing.provider import (
    AlreadyExpiredError,
    BillingProvider,
    BillingProviderError,
    CustomerRef,
    InvoiceSnapshot,
    SubscriptionSnapshot,
)

__all__ = [
    "AlreadyExpiredError",
    "BillingProvider",
    "BillingProviderError",
    "CustomerRef",
    "InvoiceSnapshot",
    "SubscriptionSnapshot",
]
