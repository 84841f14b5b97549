"""
Core service dependencies.

Collaborators (session factory, billing provider, settings, clock) are read
from app.state, where create_app() puts them.
"""

from typing import Iterator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from citaclick.config.billing_settings import BillingSettings
from citaclick.services.entitlement_enforcer import (
    EntitlementEnforcer,
    SqlUsageCounter,
    UsageCounter,
)
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine


def get_db(request: Request) -> Iterator[Session]:
    """Yield a session from the application's session factory."""
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_settings(request: Request) -> BillingSettings:
    return request.app.state.billing_settings


def get_lifecycle_engine(
    request: Request,
    db: Session = Depends(get_db),
) -> SubscriptionLifecycleEngine:
    state = request.app.state
    return SubscriptionLifecycleEngine(
        db,
        state.billing_provider,
        settings=state.billing_settings,
        clock=state.clock,
    )


def get_usage_counter(request: Request, db: Session = Depends(get_db)) -> UsageCounter:
    factory = getattr(request.app.state, "usage_counter_factory", None)
    if factory is not None:
        return factory(db)
    return SqlUsageCounter(db)


def get_enforcer(
    engine: SubscriptionLifecycleEngine = Depends(get_lifecycle_engine),
    usage_counter: UsageCounter = Depends(get_usage_counter),
) -> EntitlementEnforcer:
    return EntitlementEnforcer(engine, usage_counter)

