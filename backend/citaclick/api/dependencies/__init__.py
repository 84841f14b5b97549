"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from citaclick.api.dependencies.services import (
    get_db,
    get_settings,
    get_lifecycle_engine,
    get_usage_counter,
    get_enforcer,
)
from citaclick.api.dependencies.entitlements import (
    require_plan_feature,
    require_resource_capacity,
)

__all__ = [
    "get_db",
    "get_settings",
    "get_lifecycle_engine",
    "get_usage_counter",
    "get_enforcer",
    "require_plan_feature",
    "require_resource_capacity",
]
