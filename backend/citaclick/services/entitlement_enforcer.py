"""
Entitlement enforcement for plan features and resource limits.

Combines the EntitlementCatalog (what the plan includes), the negocio's
AccountPaymentState (whether the plan is currently paid for) and live
usage counts (how much is already used).

Usage:
    enforcer = EntitlementEnforcer(engine, usage_counter)
    decision = enforcer.check_resource_limit(tenant_id, "clientes", current_count=40)
    decision.raise_if_denied()
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from citaclick.entitlements.catalog import (
    EntitlementCatalog,
    EntitlementLimits,
    ResourceKind,
    UNLIMITED,
    get_entitlement_catalog,
    normalize_feature,
    normalize_resource,
)
from citaclick.services.errors import EntitlementDeniedError
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine
from citaclick.services.payment_state import AccountPaymentState

logger = logging.getLogger(__name__)

ALERT_THRESHOLD_PERCENT = 80


def usage_percent(current_count: int, limit: int) -> int:
    """Integer percentage of limit used; 0 for unlimited or zero limits."""
    if limit == UNLIMITED or limit <= 0:
        return 0
    return (current_count * 100) // limit


def is_alert(current_count: int, limit: int) -> bool:
    return usage_percent(current_count, limit) >= ALERT_THRESHOLD_PERCENT


def limit_exceeded_message(resource: str, current: int, maximum: int) -> str:
    return f"Límite excedido para {resource}. Actual: {current}, Máximo permitido: {maximum}"


def feature_denied_message(feature: str) -> str:
    return (
        f"Esta funcionalidad ('{feature}') no está disponible en su plan actual. "
        "Actualice su plan para acceder."
    )


@dataclass(frozen=True)
class EntitlementDecision:
    """Allowed or denied, with enough detail to explain a denial."""
    allowed: bool
    reason: Optional[str] = None
    plan: Optional[str] = None
    feature: Optional[str] = None
    resource: Optional[str] = None
    current: Optional[int] = None
    maximum: Optional[int] = None
    error_code: Optional[str] = None

    def raise_if_denied(self, message: Optional[str] = None) -> None:
        if self.allowed:
            return
        raise EntitlementDeniedError(
            message or self.reason,
            feature=self.feature,
            resource=self.resource,
            current=self.current,
            maximum=self.maximum,
            plan=self.plan,
            error_code=self.error_code,
        )


@dataclass(frozen=True)
class UsageSnapshot:
    """Live usage counts of a negocio (computed, never stored)."""
    usuarios: int = 0
    clientes: int = 0
    citas_mes: int = 0
    servicios: int = 0

    def count_for(self, resource: Any) -> int:
        return getattr(self, normalize_resource(resource).value)


class UsageCounter(ABC):
    """Source of live usage counts, owned by the CRUD subsystems."""

    @abstractmethod
    def snapshot(self, tenant_id: str, now: datetime) -> UsageSnapshot:
        ...


class SqlUsageCounter(UsageCounter):
    """
    Counts rows in the CRUD tables of the booking platform.

    Table and column names default to the platform schema and can be
    overridden for deployments with a different layout.
    """

    DEFAULT_TABLES = {
        ResourceKind.USUARIOS: "tbl_usuarios",
        ResourceKind.CLIENTES: "tbl_clientes",
        ResourceKind.CITAS_MES: "tbl_citas",
        ResourceKind.SERVICIOS: "tbl_servicios",
    }

    def __init__(self, db_session: Session, tables: Optional[Dict[ResourceKind, str]] = None):
        self.db = db_session
        self.tables = dict(self.DEFAULT_TABLES)
        self.tables.update(tables or {})

    def _count(self, sql: str, **params) -> int:
        return int(self.db.execute(text(sql), params).scalar() or 0)

    def snapshot(self, tenant_id: str, now: datetime) -> UsageSnapshot:
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if month_start.month == 12:
            next_month = month_start.replace(year=month_start.year + 1, month=1)
        else:
            next_month = month_start.replace(month=month_start.month + 1)

        return UsageSnapshot(
            usuarios=self._count(
                f"SELECT COUNT(*) FROM {self.tables[ResourceKind.USUARIOS]} "
                "WHERE negocio_id = :negocio_id AND activo = :activo",
                negocio_id=tenant_id, activo=True,
            ),
            clientes=self._count(
                f"SELECT COUNT(*) FROM {self.tables[ResourceKind.CLIENTES]} "
                "WHERE negocio_id = :negocio_id",
                negocio_id=tenant_id,
            ),
            citas_mes=self._count(
                f"SELECT COUNT(*) FROM {self.tables[ResourceKind.CITAS_MES]} "
                "WHERE negocio_id = :negocio_id AND fecha_hora >= :desde AND fecha_hora < :hasta",
                negocio_id=tenant_id,
                desde=month_start.replace(tzinfo=None),
                hasta=next_month.replace(tzinfo=None),
            ),
            servicios=self._count(
                f"SELECT COUNT(*) FROM {self.tables[ResourceKind.SERVICIOS]} "
                "WHERE negocio_id = :negocio_id",
                negocio_id=tenant_id,
            ),
        )


class EntitlementEnforcer:
    """
    Allow/deny decisions for features and resource limits.

    Reads are snapshot reads; a subscription change racing with a request
    may yield one stale decision, corrected on the next request.
    """

    def __init__(
        self,
        engine: SubscriptionLifecycleEngine,
        usage_counter: Optional[UsageCounter] = None,
        catalog: Optional[EntitlementCatalog] = None,
    ):
        self.engine = engine
        self.usage_counter = usage_counter
        self.catalog = catalog or get_entitlement_catalog()

    def _plan_limits(self, tenant_id: str) -> EntitlementLimits:
        negocio = self.engine.get_negocio(tenant_id)
        return self.catalog.limits_for(negocio.plan)

    def check_feature(self, tenant_id: str, feature_key: str) -> EntitlementDecision:
        """
        Check whether the negocio's plan includes a feature and is in good standing.

        Raises:
            NotFoundError: Negocio does not exist
            UnknownFeatureError: feature_key is not a known feature or alias
        """
        feature = normalize_feature(feature_key)
        limits = self._plan_limits(tenant_id)

        if not limits.has_feature(feature):
            logger.info("Feature not in plan", extra={
                "tenant_id": tenant_id,
                "feature": feature.value,
                "plan": limits.plan.value,
            })
            return EntitlementDecision(
                allowed=False,
                reason=feature_denied_message(feature_key),
                plan=limits.plan.value,
                feature=feature.value,
                error_code="FEATURE_NOT_IN_PLAN",
            )

        state = self.engine.get_payment_state(tenant_id)
        if not state.allows_access:
            return self._inactive_denial(state, limits, feature=feature.value)

        return EntitlementDecision(allowed=True, plan=limits.plan.value, feature=feature.value)

    def check_resource_limit(
        self,
        tenant_id: str,
        resource_kind: str,
        current_count: int,
    ) -> EntitlementDecision:
        """
        Check whether one more unit of a resource may be created.

        Denied when current_count >= limit; the UNLIMITED sentinel always allows.

        Raises:
            NotFoundError: Negocio does not exist
            UnknownResourceError: resource_kind is not a limited resource
        """
        resource = normalize_resource(resource_kind)
        limits = self._plan_limits(tenant_id)
        limit = limits.limit_for(resource)

        if limit != UNLIMITED and current_count >= limit:
            logger.info("Resource limit reached", extra={
                "tenant_id": tenant_id,
                "resource": resource.value,
                "current": current_count,
                "limit": limit,
            })
            return EntitlementDecision(
                allowed=False,
                reason=limit_exceeded_message(resource.value, current_count, limit),
                plan=limits.plan.value,
                resource=resource.value,
                current=current_count,
                maximum=limit,
                error_code="LIMIT_EXCEEDED",
            )

        return EntitlementDecision(
            allowed=True,
            plan=limits.plan.value,
            resource=resource.value,
            current=current_count,
            maximum=limit,
        )

    def check_resource_usage(self, tenant_id: str, resource_kind: str) -> EntitlementDecision:
        """check_resource_limit using the live count from the usage counter."""
        usage = self._usage(tenant_id)
        return self.check_resource_limit(tenant_id, resource_kind, usage.count_for(resource_kind))

    def usage_report(self, tenant_id: str) -> Dict[str, Any]:
        """Per-resource count, limit, percentage and 80% alert flag."""
        limits = self._plan_limits(tenant_id)
        usage = self._usage(tenant_id)

        recursos = {}
        for resource in ResourceKind:
            count = usage.count_for(resource)
            limit = limits.limit_for(resource)
            recursos[resource.value] = {
                "actual": count,
                "limite": limit,
                "ilimitado": limit == UNLIMITED,
                "porcentaje": usage_percent(count, limit),
                "alerta": is_alert(count, limit),
            }
        return {"plan": limits.plan.value, "recursos": recursos}

    def _usage(self, tenant_id: str) -> UsageSnapshot:
        if self.usage_counter is None:
            raise RuntimeError("No usage counter configured")
        return self.usage_counter.snapshot(tenant_id, self.engine.clock().astimezone(self.engine.settings.tzinfo))

    @staticmethod
    def _inactive_denial(
        state: AccountPaymentState,
        limits: EntitlementLimits,
        feature: Optional[str] = None,
    ) -> EntitlementDecision:
        return EntitlementDecision(
            allowed=False,
            reason=state.mensaje,
            plan=limits.plan.value,
            feature=feature,
            error_code=f"SUBSCRIPTION_{state.estado.value.upper()}",
        )
