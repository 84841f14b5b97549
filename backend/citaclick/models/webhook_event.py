"""
WebhookEvent model for tracking received billing-provider webhooks.

Used for idempotency (each provider event id is applied at most once) and
as the manual-reconciliation queue for events that could not be resolved.
"""

from sqlalchemy import Column, String, Text, Index

from citaclick.db_base import Base
from citaclick.models.base import UTCDateTime, generate_uuid, utcnow


class WebhookOutcome:
    """Webhook outcome constants."""
    PROCESSED = "processed"
    STALE = "stale"              # Older than the newest applied event
    IGNORED = "ignored"          # Unhandled type or rejected transition
    UNRESOLVED = "unresolved"    # No matching local record, needs manual review
    FAILED = "failed"            # Unexpected error, provider will redeliver


class WebhookEvent(Base):
    """Received provider webhook, keyed by the provider event id."""

    __tablename__ = "billing_webhook_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Provider-assigned event id"
    )
    event_type = Column(String(100), nullable=False, index=True)
    external_subscription_id = Column(String(100), nullable=True)
    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )
    outcome = Column(String(20), nullable=False, default=WebhookOutcome.PROCESSED)
    detail = Column(Text, nullable=True)
    received_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_billing_webhook_events_outcome", "outcome"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(id={self.provider_event_id}, type={self.event_type}, outcome={self.outcome})>"
