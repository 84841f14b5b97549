"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies for gating routes on plan features
and resource limits.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request

from citaclick.api.dependencies.services import get_enforcer
from citaclick.entitlements.catalog import normalize_feature, normalize_resource
from citaclick.platform.request_context import get_request_context
from citaclick.services.entitlement_enforcer import EntitlementDecision, EntitlementEnforcer

logger = logging.getLogger(__name__)


def require_plan_feature(feature_key: str, message: Optional[str] = None) -> Callable:
    """
    Factory function to create a plan feature check dependency.

    Args:
        feature_key: Feature key or alias (e.g. "reportes_avanzados")
        message: Message for FEATURE_NOT_IN_PLAN denials (defaults to the
            standard upgrade message)

    Returns:
        A FastAPI dependency returning the EntitlementDecision; raises
        EntitlementDeniedError (403) when denied

    Raises:
        UnknownFeatureError: At registration, for an unknown feature key
    """
    feature = normalize_feature(feature_key)

    def check_plan_feature(
        request: Request,
        enforcer: EntitlementEnforcer = Depends(get_enforcer),
    ) -> EntitlementDecision:
        context = get_request_context(request)
        decision = enforcer.check_feature(context.tenant_id, feature_key)

        if not decision.allowed:
            logger.warning(
                "Feature access denied",
                extra={
                    "tenant_id": context.tenant_id,
                    "feature": feature.value,
                    "plan": decision.plan,
                    "error_code": decision.error_code,
                },
            )
            custom = message if decision.error_code == "FEATURE_NOT_IN_PLAN" else None
            decision.raise_if_denied(custom)

        return decision

    return check_plan_feature


def require_resource_capacity(resource_kind: str, message: Optional[str] = None) -> Callable:
    """
    Factory function for a dependency that allows creating one more resource.

    The current count comes from the configured UsageCounter.
    """
    resource = normalize_resource(resource_kind)

    def check_resource_capacity(
        request: Request,
        enforcer: EntitlementEnforcer = Depends(get_enforcer),
    ) -> EntitlementDecision:
        context = get_request_context(request)
        decision = enforcer.check_resource_usage(context.tenant_id, resource.value)

        if not decision.allowed:
            logger.warning(
                "Resource limit reached",
                extra={
                    "tenant_id": context.tenant_id,
                    "resource": resource.value,
                    "current": decision.current,
                    "limit": decision.maximum,
                },
            )
            decision.raise_if_denied(message)

        return decision

    return check_resource_capacity
