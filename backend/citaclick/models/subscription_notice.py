"""
SubscriptionNotice model: ledger of notification triggers sent.

The unique (tenant_id, kind, notice_date) constraint makes each notice kind
go out at most once per negocio per local calendar day.
"""

from sqlalchemy import Column, Date, Integer, String, UniqueConstraint

from citaclick.models.base import Base, TenantScopedMixin, UTCDateTime, generate_uuid, utcnow


class NoticeKind:
    """Notice kind constants."""
    TRIAL_ENDING = "trial_ending"
    RENEWAL_DUE = "renewal_due"
    EXPIRED = "expired"


class SubscriptionNotice(Base, TenantScopedMixin):

    __tablename__ = "subscription_notices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    kind = Column(String(30), nullable=False)
    notice_date = Column(Date, nullable=False)
    days_remaining = Column(Integer, nullable=True)
    sent_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "kind", "notice_date", name="uq_subscription_notice_per_day"),
    )
