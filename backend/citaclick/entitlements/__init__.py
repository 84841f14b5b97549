"""
Plan entitlements.

- catalog: plan tier -> resource limits and feature flags
"""

from citaclick.entitlements.catalog import (
    UNLIMITED,
    EntitlementCatalog,
    EntitlementLimits,
    Feature,
    PlanTier,
    ResourceKind,
    get_entitlement_catalog,
    normalize_feature,
    normalize_plan,
    normalize_resource,
)

__all__ = [
    "UNLIMITED",
    "EntitlementCatalog",
    "EntitlementLimits",
    "Feature",
    "PlanTier",
    "ResourceKind",
    "get_entitlement_catalog",
    "normalize_feature",
    "normalize_plan",
    "normalize_resource",
]
