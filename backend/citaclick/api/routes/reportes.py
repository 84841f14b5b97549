"""
Advanced reports routes, available on plans with the advanced_reports feature.
"""

import logging

from fastapi import APIRouter, Depends, Request

from citaclick.api.dependencies import get_enforcer, require_plan_feature
from citaclick.platform.request_context import get_request_context
from citaclick.services.entitlement_enforcer import EntitlementDecision, EntitlementEnforcer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reportes", tags=["reportes"])


@router.get("/avanzados")
def get_advanced_reports(
    request: Request,
    decision: EntitlementDecision = Depends(require_plan_feature("reportes_avanzados")),
    enforcer: EntitlementEnforcer = Depends(get_enforcer),
):
    """Usage summary for the advanced reports dashboard."""
    tenant_ctx = get_request_context(request)
    report = enforcer.usage_report(tenant_ctx.tenant_id)
    return {
        "plan": decision.plan,
        "resumen": {
            resource: values["actual"] for resource, values in report["recursos"].items()
        },
    }
