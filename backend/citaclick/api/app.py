"""
FastAPI application factory for the billing core.

Collaborators are injected so tests can run the full gate chain against an
in-memory database and a fake billing provider.
"""

import os
import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from fastapi import FastAPI
from sqlalchemy.orm import Session

from citaclick import __version__
from citaclick.api.error_handlers import register_error_handlers
from citaclick.api.routes import health, planes, reportes, suscripcion, webhooks_billing
from citaclick.config.billing_settings import BillingSettings, get_billing_settings
from citaclick.database.session import get_session_factory
from citaclick.integrations.billing.http_client import get_billing_provider
from citaclick.integrations.billing.provider import BillingProvider
from citaclick.platform.gates import Gate, GateChainMiddleware, default_gates
from citaclick.services.entitlement_enforcer import UsageCounter

logger = logging.getLogger(__name__)


def _default_session_factory() -> Session:
    return get_session_factory()()


def create_app(
    session_factory: Optional[Callable[[], Session]] = None,
    provider: Optional[BillingProvider] = None,
    settings: Optional[BillingSettings] = None,
    clock: Optional[Callable[[], datetime]] = None,
    usage_counter_factory: Optional[Callable[[Session], UsageCounter]] = None,
    jwt_secret: Optional[str] = None,
    gates: Optional[Sequence[Gate]] = None,
    lifespan=None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        session_factory: Callable returning a new Session (defaults to DATABASE_URL)
        provider: Billing provider (defaults to the configured hosted client)
        settings: Billing settings (defaults to environment settings)
        clock: Current-time source for the lifecycle engine
        usage_counter_factory: Builds the UsageCounter for a session
        jwt_secret: HS256 secret for bearer tokens (defaults to JWT_SECRET)
        gates: Access gate chain (defaults to correlation, auth, subscription)
    """
    app = FastAPI(
        title="CitaClick Billing Core",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.session_factory = session_factory or _default_session_factory
    app.state.billing_settings = settings or get_billing_settings()
    app.state.billing_provider = provider if provider is not None else get_billing_provider()
    app.state.clock = clock
    app.state.usage_counter_factory = usage_counter_factory
    app.state.jwt_secret = jwt_secret if jwt_secret is not None else os.getenv("JWT_SECRET", "")

    app.add_middleware(GateChainMiddleware, gates=gates if gates is not None else default_gates())
    register_error_handlers(app)

    # Health and webhooks bypass authentication
    app.include_router(health.router)
    app.include_router(webhooks_billing.router)

    app.include_router(suscripcion.router)
    app.include_router(planes.router)
    app.include_router(reportes.router)

    return app
