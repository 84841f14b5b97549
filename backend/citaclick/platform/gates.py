"""
Access gate chain.

Every request passes through an explicit, ordered list of gates before it
reaches a route handler:

1. correlation_gate          - reads or assigns X-Correlation-ID
2. authentication_gate       - verifies the bearer JWT and fills in the tenant
3. subscription_access_gate  - blocks negocios whose subscription is not in
                               good standing (HTTP 402)

A gate is an async callable (request, context) -> Optional[Response];
returning a response short-circuits the chain. Gates share the
RequestContext explicitly, which is also stored on request.state.context.

Subscription state evaluation errors FAIL CLOSED with 503.
"""

import logging
from typing import Awaitable, Callable, FrozenSet, List, Optional, Sequence, Tuple

import jwt
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from citaclick.platform.request_context import CORRELATION_HEADER, RequestContext
from citaclick.services.errors import NotFoundError, SubscriptionExpiredError
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine
from citaclick.services.payment_state import (
    AccountPaymentState,
    EstadoPago,
    access_denied_message,
)

logger = logging.getLogger(__name__)

Gate = Callable[[Request, RequestContext], Awaitable[Optional[Response]]]

JWT_ALGORITHMS = ["HS256"]
MAX_CORRELATION_ID_LENGTH = 128
SAFE_METHODS = frozenset({"GET", "HEAD"})

# Paths reachable without a bearer token.
PUBLIC_PREFIXES: Tuple[str, ...] = (
    "/api/auth/",
    "/api/public/",
    "/api/webhooks/",
    "/api/health",
    "/api/status",
    "/docs",
    "/openapi.json",
)

# Paths an authenticated negocio can reach whatever its payment state.
SUBSCRIPTION_EXCLUDED_PREFIXES: Tuple[str, ...] = (
    "/api/auth/",
    "/api/public/",
    "/api/webhooks/",
    "/api/health",
    "/api/status",
    "/api/pagos/",
    "/api/suscripcion/info",
    "/api/suscripcion/activar",
    "/docs",
    "/openapi.json",
)

# Routes a blocked negocio needs in order to pay, matched on exact method and path.
PAYMENT_ROUTES: FrozenSet[Tuple[str, str]] = frozenset({
    ("POST", "/api/suscripcion"),
    ("PATCH", "/api/suscripcion"),
    ("POST", "/api/suscripcion/reactivar"),
})


def _matches(path: str, prefixes: Sequence[str]) -> bool:
    return any(path.startswith(prefix) for prefix in prefixes)


def _is_payment_route(method: str, path: str) -> bool:
    return (method, path.rstrip("/")) in PAYMENT_ROUTES


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error_code": "UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def correlation_gate(request: Request, context: RequestContext) -> Optional[Response]:
    incoming = request.headers.get(CORRELATION_HEADER)
    if incoming and len(incoming) <= MAX_CORRELATION_ID_LENGTH:
        context.correlation_id = incoming
    return None


async def authentication_gate(request: Request, context: RequestContext) -> Optional[Response]:
    """
    Verify the bearer token on protected API paths.

    Claims used: negocio_id (tenant), sub (user), role.
    """
    path = request.url.path
    if request.method == "OPTIONS" or not path.startswith("/api/") or _matches(path, PUBLIC_PREFIXES):
        return None

    secret = getattr(request.app.state, "jwt_secret", None)
    if not secret:
        logger.error("JWT_SECRET not configured", extra={"path": path})
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error_code": "AUTH_NOT_CONFIGURED", "message": "Authentication not configured"},
        )

    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return _unauthorized("Missing bearer token")

    try:
        claims = jwt.decode(token, secret, algorithms=JWT_ALGORITHMS)
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid bearer token", extra={
            "correlation_id": context.correlation_id,
            "path": path,
            "error": str(e),
        })
        return _unauthorized("Invalid token")

    tenant_id = claims.get("negocio_id")
    if not tenant_id:
        logger.warning("Token without negocio_id", extra={
            "correlation_id": context.correlation_id,
            "path": path,
            "user_id": claims.get("sub"),
        })
        return _unauthorized("Token has no negocio context")

    context.tenant_id = str(tenant_id)
    context.user_id = claims.get("sub")
    context.role = claims.get("role")
    return None


def _evaluate_payment_state(app_state, tenant_id: str) -> AccountPaymentState:
    db = app_state.session_factory()
    try:
        engine = SubscriptionLifecycleEngine(
            db,
            app_state.billing_provider,
            settings=app_state.billing_settings,
            clock=app_state.clock,
        )
        return engine.get_fresh_payment_state(tenant_id)
    finally:
        db.close()


async def subscription_access_gate(request: Request, context: RequestContext) -> Optional[Response]:
    """
    Block requests from negocios outside trial/activo with HTTP 402.

    pendiente_pago may be granted read-only access (GET/HEAD) through
    PENDING_PAYMENT_ACCESS=read_only.
    """
    path = request.url.path
    if (
        request.method == "OPTIONS"
        or not context.is_authenticated
        or _matches(path, SUBSCRIPTION_EXCLUDED_PREFIXES)
        or _is_payment_route(request.method, path)
    ):
        return None

    try:
        state = await run_in_threadpool(_evaluate_payment_state, request.app.state, context.tenant_id)
    except NotFoundError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    except Exception as e:
        logger.critical("Payment state evaluation failed - fail-closed", extra={
            **context.to_log_dict(),
            "path": path,
            "error": str(e),
        }, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error_code": "SUBSCRIPTION_STATE_UNAVAILABLE",
                "message": "No fue posible verificar el estado de tu suscripción. Intenta de nuevo.",
            },
        )

    if state.allows_access:
        return None

    settings = request.app.state.billing_settings
    if (
        state.estado == EstadoPago.PENDIENTE_PAGO
        and settings.pending_payment_access == "read_only"
        and request.method in SAFE_METHODS
    ):
        return None

    error = SubscriptionExpiredError(state.estado.value, access_denied_message(state))
    logger.info("Request blocked by subscription state", extra={
        **context.to_log_dict(),
        "path": path,
        "method": request.method,
        "estado": state.estado.value,
    })
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def default_gates() -> List[Gate]:
    return [correlation_gate, authentication_gate, subscription_access_gate]


class GateChainMiddleware(BaseHTTPMiddleware):
    """
    Runs the gate chain for every request.

    Usage:
        app = FastAPI()
        app.add_middleware(GateChainMiddleware, gates=default_gates())
    """

    def __init__(self, app: ASGIApp, gates: Optional[Sequence[Gate]] = None):
        super().__init__(app)
        self.gates = list(gates) if gates is not None else default_gates()

    async def dispatch(self, request: Request, call_next):
        context = RequestContext()
        request.state.context = context

        for gate in self.gates:
            response = await gate(request, context)
            if response is not None:
                response.headers[CORRELATION_HEADER] = context.correlation_id
                return response

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = context.correlation_id
        return response
