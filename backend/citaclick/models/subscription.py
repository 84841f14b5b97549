"""
Subscription model: the local mirror of a negocio's provider subscription.

CRITICAL: One subscription record per negocio. Records are never deleted;
ending a subscription moves it to CANCELED. Status fields are written only
by the SubscriptionLifecycleEngine.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Boolean, Column, Enum, ForeignKey, Index, String, UniqueConstraint
)

from citaclick.models.base import (
    Base, TimestampMixin, TenantScopedMixin, UTCDateTime, generate_uuid
)


class SubscriptionStatus(str, PyEnum):
    """Local subscription status values."""
    TRIALING = "TRIALING"        # Provider trial running
    ACTIVE = "ACTIVE"            # Paid and current
    PAST_DUE = "PAST_DUE"        # Payment failed or trial lapsed without payment
    CANCELED = "CANCELED"        # Ended or scheduled to end
    INCOMPLETE = "INCOMPLETE"    # Created, first payment not confirmed


class BillingInterval(str, PyEnum):
    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"


class InvalidPeriodError(ValueError):
    """current_period_end precedes current_period_start."""


class Subscription(Base, TimestampMixin, TenantScopedMixin):
    """
    Local mirror of the provider subscription plus billing-cycle metadata.

    last_event_at holds the timestamp of the newest provider event applied,
    so events arriving out of order never overwrite newer state.
    """

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    negocio_id = Column(
        String(36),
        ForeignKey("negocios.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Owning negocio (same value as tenant_id)"
    )

    external_customer_id = Column(String(100), nullable=True, index=True)
    external_subscription_id = Column(
        String(100),
        nullable=True,
        unique=True,
        comment="Provider subscription id"
    )
    plan = Column(String(32), nullable=False)
    price_id = Column(String(100), nullable=True)

    status = Column(
        Enum(*[s.value for s in SubscriptionStatus], name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE.value,
        index=True,
    )
    billing_interval = Column(
        Enum(*[i.value for i in BillingInterval], name="billing_interval"),
        nullable=False,
        default=BillingInterval.MONTHLY.value,
    )

    current_period_start = Column(UTCDateTime(), nullable=True)
    current_period_end = Column(UTCDateTime(), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(UTCDateTime(), nullable=True)
    ended_at = Column(UTCDateTime(), nullable=True)
    trial_start = Column(UTCDateTime(), nullable=True)
    trial_end = Column(UTCDateTime(), nullable=True)

    latest_invoice_id = Column(String(100), nullable=True)
    default_payment_method_id = Column(String(100), nullable=True)
    last_event_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Timestamp of newest applied provider event"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_subscriptions_tenant"),
        Index("ix_subscriptions_period_end", "status", "current_period_end"),
    )

    def validate_period(self) -> None:
        if (
            self.current_period_start is not None
            and self.current_period_end is not None
            and self.current_period_end < self.current_period_start
        ):
            raise InvalidPeriodError(
                f"current_period_end {self.current_period_end} precedes "
                f"current_period_start {self.current_period_start}"
            )

    def is_newer_event(self, occurred_at: Optional[datetime]) -> bool:
        """
        True unless occurred_at predates the last applied event.

        Provider timestamps have whole-second resolution while local writes
        stamp the sub-second clock, so both sides are compared per second.
        """
        if occurred_at is None or self.last_event_at is None:
            return True
        return occurred_at.replace(microsecond=0) >= self.last_event_at.replace(microsecond=0)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, "
            f"status={self.status}, period_end={self.current_period_end})>"
        )
