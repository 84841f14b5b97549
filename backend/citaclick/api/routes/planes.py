"""
Plan catalog and usage routes.

GET /api/planes lists the catalog; /limites and /uso describe the
negocio's current tier. /capacidad/<recurso> tells the CRUD screens whether
one more resource fits in the plan (403 LIMIT_EXCEEDED when it does not).
"""

import logging
from typing import Any, Callable, Dict, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from citaclick.api.dependencies import get_enforcer, get_lifecycle_engine, require_resource_capacity
from citaclick.entitlements.catalog import ResourceKind, get_entitlement_catalog
from citaclick.platform.request_context import get_request_context
from citaclick.services.entitlement_enforcer import EntitlementDecision, EntitlementEnforcer
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/planes", tags=["planes"])


class PlansListResponse(BaseModel):
    """List of available plans."""
    planes: List[Dict[str, Any]]


class UsageResponse(BaseModel):
    plan: str
    recursos: Dict[str, Dict[str, Any]]


class CapacityResponse(BaseModel):
    recurso: str
    plan: str
    actual: int
    maximo: int
    disponible: bool


@router.get("", response_model=PlansListResponse)
def list_plans():
    catalog = get_entitlement_catalog()
    return PlansListResponse(planes=[limits.to_dict() for limits in catalog.all_plans()])


@router.get("/limites")
def get_current_limits(
    request: Request,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
) -> Dict[str, Any]:
    """Limits and features of the negocio's current plan."""
    tenant_ctx = get_request_context(request)
    negocio = engine.get_negocio(tenant_ctx.tenant_id)
    return get_entitlement_catalog().limits_for(negocio.plan).to_dict()


@router.get("/uso", response_model=UsageResponse)
def get_usage(
    request: Request,
    enforcer: EntitlementEnforcer = Depends(get_enforcer),
):
    """Per-resource usage against the plan limits, with the 80% alert flag."""
    tenant_ctx = get_request_context(request)
    return UsageResponse(**enforcer.usage_report(tenant_ctx.tenant_id))


def _capacity_endpoint(resource: ResourceKind) -> Callable:
    def check_capacity(
        decision: EntitlementDecision = Depends(require_resource_capacity(resource.value)),
    ) -> CapacityResponse:
        return CapacityResponse(
            recurso=resource.value,
            plan=decision.plan,
            actual=decision.current,
            maximo=decision.maximum,
            disponible=True,
        )

    check_capacity.__name__ = f"check_capacity_{resource.value}"
    return check_capacity


for _resource in ResourceKind:
    router.add_api_route(
        f"/capacidad/{_resource.value}",
        _capacity_endpoint(_resource),
        methods=["GET"],
        response_model=CapacityResponse,
        summary=f"Room for one more {_resource.value}",
    )
