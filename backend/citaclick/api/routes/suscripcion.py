"""
Subscription API routes.

All routes require JWT authentication with negocio context.
/info, /activar and the payment routes (subscribe, PATCH, /reactivar) stay
reachable whatever the payment state so that a blocked negocio can see why
and pay.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from citaclick.api.dependencies import get_lifecycle_engine
from citaclick.entitlements.catalog import get_entitlement_catalog
from citaclick.models.subscription import Subscription
from citaclick.platform.request_context import get_request_context
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/suscripcion", tags=["suscripcion"])


# Request/Response models
class CreateSubscriptionRequest(BaseModel):
    """Request to subscribe through the billing provider."""
    plan: str = Field(..., description="Plan tier or alias")
    payment_method_ref: Optional[str] = Field(None, description="Provider payment method reference")
    trial_days: Optional[int] = Field(None, ge=0, le=365, description="Explicit trial length")


class UpdateSubscriptionRequest(BaseModel):
    """Request to change plan and/or default payment method."""
    plan: Optional[str] = None
    payment_method_ref: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = Field(False, description="Cancel now instead of at period end")


class ActivateRequest(BaseModel):
    """Manual activation after an out-of-band payment."""
    transaccion_id: str = Field(..., min_length=1, max_length=255, description="Completed payment reference")
    metodo_pago: Optional[str] = Field(None, max_length=64, description="Payment method label")
    plan: Optional[str] = None


class SubscriptionDetail(BaseModel):
    """Local subscription record."""
    id: str
    status: str
    plan: Optional[str]
    billing_interval: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    ended_at: Optional[datetime]
    trial_end: Optional[datetime]
    gestionada_por_proveedor: bool


class SubscriptionInfoResponse(BaseModel):
    """Payment state of the negocio plus its subscription, if any."""
    negocio_id: str
    plan: str
    plan_nombre: str
    estado: str
    dias_restantes: Optional[int]
    fecha_limite: Optional[str]
    mensaje: str
    acceso_permitido: bool
    requiere_sincronizacion: bool
    cancelacion_programada: bool
    suscripcion: Optional[SubscriptionDetail] = None


class InvoicesResponse(BaseModel):
    facturas: List[Dict[str, Any]]


class UpcomingInvoiceResponse(BaseModel):
    factura: Optional[Dict[str, Any]] = None


def _detail(subscription: Optional[Subscription]) -> Optional[SubscriptionDetail]:
    if subscription is None:
        return None
    return SubscriptionDetail(
        id=subscription.id,
        status=subscription.status,
        plan=subscription.plan,
        billing_interval=subscription.billing_interval,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        canceled_at=subscription.canceled_at,
        ended_at=subscription.ended_at,
        trial_end=subscription.trial_end,
        gestionada_por_proveedor=bool(subscription.external_subscription_id),
    )


def _info(engine: SubscriptionLifecycleEngine, tenant_id: str, fresh: bool = False) -> SubscriptionInfoResponse:
    state = engine.get_fresh_payment_state(tenant_id) if fresh else engine.get_payment_state(tenant_id)
    negocio = engine.get_negocio(tenant_id)
    subscription = engine.subscriptions.get_by_tenant(tenant_id)
    limits = get_entitlement_catalog().limits_for(negocio.plan)
    state_dict = state.to_dict()

    return SubscriptionInfoResponse(
        negocio_id=tenant_id,
        plan=limits.plan.value,
        plan_nombre=limits.display_name,
        estado=state_dict["estado"],
        dias_restantes=state_dict["dias_restantes"],
        fecha_limite=state_dict["fecha_limite"],
        mensaje=state_dict["mensaje"],
        acceso_permitido=state_dict["acceso_permitido"],
        requiere_sincronizacion=state_dict["requiere_sincronizacion"],
        cancelacion_programada=state_dict["cancelacion_programada"],
        suscripcion=_detail(subscription),
    )


@router.get("/info", response_model=SubscriptionInfoResponse)
def get_subscription_info(
    request: Request,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    """
    Get current payment state and subscription.

    Re-reads the provider first when the local record is stale.
    """
    tenant_ctx = get_request_context(request)
    return _info(engine, tenant_ctx.tenant_id, fresh=True)


@router.post("/activar", response_model=SubscriptionInfoResponse)
def activate_subscription(
    request: Request,
    body: ActivateRequest,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    """Activate the negocio after a payment completed outside the provider."""
    tenant_ctx = get_request_context(request)
    if not body.transaccion_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="transaccion_id is required",
        )

    logger.info("Manual activation requested", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan": body.plan,
        "transaccion_id": body.transaccion_id,
        "metodo_pago": body.metodo_pago,
    })
    engine.activate_manual(
        tenant_ctx.tenant_id,
        body.transaccion_id,
        plan=body.plan,
        metodo_pago=body.metodo_pago,
    )
    return _info(engine, tenant_ctx.tenant_id)


@router.post("", response_model=SubscriptionInfoResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    request: Request,
    body: CreateSubscriptionRequest,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    """Subscribe the negocio to a plan through the billing provider."""
    tenant_ctx = get_request_context(request)

    logger.info("Creating subscription", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "plan": body.plan,
    })
    engine.create_subscription(
        tenant_ctx.tenant_id,
        body.plan,
        payment_method_ref=body.payment_method_ref,
        trial_days=body.trial_days,
    )
    return _info(engine, tenant_ctx.tenant_id)


@router.patch("", response_model=SubscriptionInfoResponse)
def update_subscription(
    request: Request,
    body: UpdateSubscriptionRequest,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    """Change plan and/or default payment method."""
    tenant_ctx = get_request_context(request)
    if body.plan is None and body.payment_method_ref is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Nothing to update",
        )

    engine.update_subscription(
        tenant_ctx.tenant_id,
        plan=body.plan,
        payment_method_ref=body.payment_method_ref,
    )
    return _info(engine, tenant_ctx.tenant_id)


@router.post("/cancelar", response_model=SubscriptionInfoResponse)
def cancel_subscription(
    request: Request,
    body: CancelSubscriptionRequest,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    """Cancel now or at the end of the current period."""
    tenant_ctx = get_request_context(request)

    logger.info("Cancel requested", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "immediate": body.immediate,
    })
    engine.cancel_subscription(tenant_ctx.tenant_id, immediate=body.immediate)
    return _info(engine, tenant_ctx.tenant_id)


@router.post("/reactivar", response_model=SubscriptionInfoResponse)
def reactivate_subscription(
    request: Request,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    """Undo a scheduled cancellation before the period ends."""
    tenant_ctx = get_request_context(request)
    engine.reactivate_subscription(tenant_ctx.tenant_id)
    return _info(engine, tenant_ctx.tenant_id)


@router.get("/facturas", response_model=InvoicesResponse)
def list_invoices(
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    tenant_ctx = get_request_context(request)
    invoices = engine.list_invoices(tenant_ctx.tenant_id, limit=limit)
    return InvoicesResponse(facturas=[invoice.to_dict() for invoice in invoices])


@router.get("/proxima-factura", response_model=UpcomingInvoiceResponse)
def get_upcoming_invoice(
    request: Request,
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
):
    tenant_ctx = get_request_context(request)
    invoice = engine.get_upcoming_invoice(tenant_ctx.tenant_id)
    return UpcomingInvoiceResponse(factura=invoice.to_dict() if invoice else None)
