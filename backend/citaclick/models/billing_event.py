"""
BillingEvent model for the subscription audit trail.

CRITICAL: This table is APPEND-ONLY. Never update or delete billing events.
"""

from sqlalchemy import Column, String, JSON, Index

from citaclick.models.base import Base, TenantScopedMixin, UTCDateTime, generate_uuid, utcnow


class BillingEventType:
    """Billing event type constants."""
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription_cancel_scheduled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_ENDED = "subscription_ended"
    SUBSCRIPTION_RESYNCED = "subscription_resynced"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_EXPIRED = "trial_expired"
    PERIOD_LAPSED = "period_lapsed"
    TRANSITION_REJECTED = "transition_rejected"


class ActorType:
    """Actor type constants."""
    USER = "user"
    SYSTEM = "system"
    WEBHOOK = "webhook"
    SCHEDULER = "scheduler"


class BillingEvent(Base, TenantScopedMixin):
    """Immutable record of one lifecycle transition or billing fact."""

    __tablename__ = "billing_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    event_type = Column(String(50), nullable=False)
    actor = Column(String(20), nullable=False, default=ActorType.SYSTEM)
    subscription_id = Column(String(36), nullable=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    provider_event_id = Column(String(255), nullable=True)
    extra_metadata = Column(JSON, nullable=True)
    occurred_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_billing_events_tenant_occurred", "tenant_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<BillingEvent(type={self.event_type}, {self.from_status}->{self.to_status})>"
