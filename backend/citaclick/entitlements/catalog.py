"""
Plan entitlement catalog.

Static, read-only mapping from plan tier to resource limits and feature
flags. The built-in table matches the published CitaClick pricing; an
optional YAML file (PLAN_CATALOG_PATH) may override it per deployment.

Usage:
    from citaclick.entitlements.catalog import get_entitlement_catalog

    limits = get_entitlement_catalog().limits_for("basico")
    limits.max_clientes  # 50
    limits.has_feature("sms")  # False
"""

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

logger = logging.getLogger(__name__)

UNLIMITED = -1


class PlanTier(str, Enum):
    """Plan tiers offered to negocios."""
    BASICO = "basico"
    PROFESIONAL = "profesional"
    PREMIUM = "premium"


class Feature(str, Enum):
    """Boolean plan features."""
    EMAIL_REMINDERS = "email_reminders"
    SMS_WHATSAPP = "sms_whatsapp"
    ADVANCED_REPORTS = "advanced_reports"
    CUSTOM_EMAIL_BRANDING = "custom_email_branding"
    PRIORITY_SUPPORT = "priority_support"


class ResourceKind(str, Enum):
    """Countable resources limited per plan."""
    USUARIOS = "usuarios"
    CLIENTES = "clientes"
    CITAS_MES = "citas_mes"
    SERVICIOS = "servicios"


PLAN_ALIASES = {
    "starter": PlanTier.BASICO,
    "professional": PlanTier.PROFESIONAL,
    "enterprise": PlanTier.PREMIUM,
}

FEATURE_ALIASES = {
    "sms": Feature.SMS_WHATSAPP,
    "whatsapp": Feature.SMS_WHATSAPP,
    "reportes_avanzados": Feature.ADVANCED_REPORTS,
    "soporte_prioritario": Feature.PRIORITY_SUPPORT,
    "recordatorios_email": Feature.EMAIL_REMINDERS,
    "email_personalizado": Feature.CUSTOM_EMAIL_BRANDING,
}

RESOURCE_ALIASES = {
    "users": ResourceKind.USUARIOS,
    "clients": ResourceKind.CLIENTES,
    "appointments": ResourceKind.CITAS_MES,
    "citas": ResourceKind.CITAS_MES,
    "services": ResourceKind.SERVICIOS,
}


class UnknownPlanError(KeyError):
    """Plan key does not match any tier or alias."""


class UnknownFeatureError(KeyError):
    """Feature key does not match any known feature or alias."""


class UnknownResourceError(KeyError):
    """Resource key does not match any limited resource."""


def normalize_plan(plan: Any) -> PlanTier:
    """Resolve a plan tier from an enum, canonical value or alias."""
    if isinstance(plan, PlanTier):
        return plan
    key = str(plan or "").strip().lower()
    if key in PLAN_ALIASES:
        return PLAN_ALIASES[key]
    try:
        return PlanTier(key)
    except ValueError:
        raise UnknownPlanError(plan)


def normalize_feature(feature: Any) -> Feature:
    if isinstance(feature, Feature):
        return feature
    key = str(feature or "").strip().lower()
    if key in FEATURE_ALIASES:
        return FEATURE_ALIASES[key]
    try:
        return Feature(key)
    except ValueError:
        raise UnknownFeatureError(feature)


def normalize_resource(resource: Any) -> ResourceKind:
    if isinstance(resource, ResourceKind):
        return resource
    key = str(resource or "").strip().lower()
    if key in RESOURCE_ALIASES:
        return RESOURCE_ALIASES[key]
    try:
        return ResourceKind(key)
    except ValueError:
        raise UnknownResourceError(resource)


@dataclass(frozen=True)
class EntitlementLimits:
    """
    Limits and feature flags for one plan tier.

    Each max_* value is a positive integer or UNLIMITED (-1).
    """
    plan: PlanTier
    display_name: str
    monthly_price: int
    max_usuarios: int
    max_clientes: int
    max_citas_mes: int
    max_servicios: int
    features: FrozenSet[Feature] = field(default_factory=frozenset)

    def limit_for(self, resource: Any) -> int:
        kind = normalize_resource(resource)
        return getattr(self, f"max_{kind.value}")

    def has_feature(self, feature: Any) -> bool:
        return normalize_feature(feature) in self.features

    @staticmethod
    def is_unlimited(limit: int) -> bool:
        return limit == UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.value,
            "nombre": self.display_name,
            "precio_mensual": self.monthly_price,
            "max_usuarios": self.max_usuarios,
            "max_clientes": self.max_clientes,
            "max_citas_mes": self.max_citas_mes,
            "max_servicios": self.max_servicios,
            "features": {f.value: (f in self.features) for f in Feature},
        }


DEFAULT_PLANS: Dict[PlanTier, EntitlementLimits] = {
    PlanTier.BASICO: EntitlementLimits(
        plan=PlanTier.BASICO,
        display_name="Básico",
        monthly_price=299,
        max_usuarios=2,
        max_clientes=50,
        max_citas_mes=100,
        max_servicios=10,
        features=frozenset({Feature.EMAIL_REMINDERS}),
    ),
    PlanTier.PROFESIONAL: EntitlementLimits(
        plan=PlanTier.PROFESIONAL,
        display_name="Profesional",
        monthly_price=699,
        max_usuarios=5,
        max_clientes=300,
        max_citas_mes=500,
        max_servicios=30,
        features=frozenset({
            Feature.EMAIL_REMINDERS,
            Feature.ADVANCED_REPORTS,
            Feature.CUSTOM_EMAIL_BRANDING,
        }),
    ),
    PlanTier.PREMIUM: EntitlementLimits(
        plan=PlanTier.PREMIUM,
        display_name="Premium",
        monthly_price=1299,
        max_usuarios=UNLIMITED,
        max_clientes=UNLIMITED,
        max_citas_mes=UNLIMITED,
        max_servicios=UNLIMITED,
        features=frozenset(Feature),
    ),
}


class EntitlementCatalog:
    """
    Thread-safe singleton catalog of plan limits.

    Loads DEFAULT_PLANS and applies the optional YAML override once.
    """

    _instance: Optional["EntitlementCatalog"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("PLAN_CATALOG_PATH")
        self._plans: Dict[PlanTier, EntitlementLimits] = dict(DEFAULT_PLANS)
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _load(self) -> None:
        with self._load_lock:
            plans = dict(DEFAULT_PLANS)
            if self._config_path:
                path = Path(self._config_path)
                logger.info("Loading plan catalog override from %s", path)
                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}
                plans.update(_parse_overrides(raw))
            self._plans = plans

    def reload(self) -> None:
        """Re-read the YAML override from disk."""
        self._load()

    def limits_for(self, plan: Any) -> EntitlementLimits:
        """
        Get limits for a plan tier.

        Args:
            plan: PlanTier, canonical key or alias (starter/professional/enterprise)

        Raises:
            UnknownPlanError: If the plan is not recognised
        """
        return self._plans[normalize_plan(plan)]

    def all_plans(self) -> List[EntitlementLimits]:
        return [self._plans[tier] for tier in PlanTier]


def _parse_overrides(raw: Dict[str, Any]) -> Dict[PlanTier, EntitlementLimits]:
    """Validate the `plans:` mapping of an override file."""
    overrides = {}
    for key, values in (raw.get("plans") or {}).items():
        tier = normalize_plan(key)
        values = values or {}
        base = DEFAULT_PLANS[tier]
        changes: Dict[str, Any] = {}
        for attr in ("max_usuarios", "max_clientes", "max_citas_mes", "max_servicios",
                     "monthly_price"):
            if attr in values:
                value = int(values[attr])
                if attr.startswith("max_") and value != UNLIMITED and value < 0:
                    raise ValueError(f"{tier.value}.{attr} must be >= 0 or {UNLIMITED}")
                changes[attr] = value
        if "display_name" in values:
            changes["display_name"] = str(values["display_name"])
        if "features" in values:
            changes["features"] = frozenset(
                normalize_feature(f) for f in (values["features"] or [])
            )
        overrides[tier] = replace(base, **changes)
    return overrides


def get_entitlement_catalog() -> EntitlementCatalog:
    """Get the entitlement catalog singleton."""
    return EntitlementCatalog()


def reset_entitlement_catalog() -> None:
    """Drop the singleton (for tests)."""
    with EntitlementCatalog._lock:
        EntitlementCatalog._instance = None
