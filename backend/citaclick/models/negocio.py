"""
Negocio (tenant) model.

A negocio is a business account on the platform. It owns zero or one
subscription record; its registration trial lives here because a negocio
can be in trial before any provider subscription exists.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import Boolean, Column, Enum, String, Index

from citaclick.config.billing_settings import get_billing_settings
from citaclick.entitlements.catalog import PlanTier, normalize_plan
from citaclick.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid, utcnow


class Negocio(Base, TimestampMixin):
    """
    Business account.

    cuenta_activa is a cache of the last sweep decision used for reporting;
    access decisions are always recomputed from dates and subscription state.
    """

    __tablename__ = "negocios"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    nombre = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)

    plan = Column(
        Enum(*[tier.value for tier in PlanTier], name="plan_tier"),
        nullable=False,
        default=PlanTier.BASICO.value,
        comment="Current plan tier"
    )

    fecha_registro = Column(UTCDateTime(), nullable=False, default=utcnow)
    fecha_fin_prueba = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of the registration trial (null for paid-upfront plans)"
    )
    en_periodo_prueba = Column(Boolean, nullable=False, default=False)
    cuenta_activa = Column(Boolean, nullable=False, default=True)
    suspendido = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Administrative suspension, overrides billing state"
    )

    billing_customer_id = Column(
        String(100),
        nullable=True,
        unique=True,
        comment="Provider customer reference"
    )

    __table_args__ = (
        Index("ix_negocios_plan", "plan"),
    )

    @classmethod
    def register(
        cls,
        nombre: str,
        email: str,
        plan: str,
        trial_days: int,
        paid_upfront_plans: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
        negocio_id: Optional[str] = None,
    ) -> "Negocio":
        """
        Create a negocio with its registration trial applied.

        Plans listed in paid_upfront_plans (PAID_UPFRONT_PLANS when omitted)
        start without a trial and inactive until the first payment; all others
        get trial_days of free access.
        """
        if paid_upfront_plans is None:
            paid_upfront_plans = get_billing_settings().paid_upfront_plans
        now = now or utcnow()
        tier = normalize_plan(plan)
        negocio = cls(
            id=negocio_id or generate_uuid(),
            nombre=nombre,
            email=email,
            plan=tier.value,
            fecha_registro=now,
            suspendido=False,
        )
        if tier.value in set(paid_upfront_plans):
            negocio.en_periodo_prueba = False
            negocio.cuenta_activa = False
            negocio.fecha_fin_prueba = None
        else:
            negocio.en_periodo_prueba = True
            negocio.cuenta_activa = True
            negocio.fecha_fin_prueba = now + timedelta(days=trial_days)
        return negocio

    @property
    def plan_tier(self) -> PlanTier:
        return normalize_plan(self.plan)

    def __repr__(self) -> str:
        return f"<Negocio(id={self.id}, plan={self.plan}, activa={self.cuenta_activa})>"
