"""
Exception handlers mapping billing core errors to JSON responses.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from citaclick.entitlements.catalog import (
    UnknownFeatureError,
    UnknownPlanError,
    UnknownResourceError,
)
from citaclick.services.errors import BillingCoreError

logger = logging.getLogger(__name__)

UNKNOWN_KEY_CODES = {
    UnknownPlanError: ("UNKNOWN_PLAN", "plan"),
    UnknownFeatureError: ("UNKNOWN_FEATURE", "feature"),
    UnknownResourceError: ("UNKNOWN_RESOURCE", "resource"),
}


def _correlation_id(request: Request):
    context = getattr(request.state, "context", None)
    return context.correlation_id if context else None


async def billing_core_error_handler(request: Request, exc: BillingCoreError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log("Request failed", extra={
        "path": request.url.path,
        "error_code": exc.error_code,
        "status_code": exc.status_code,
        "correlation_id": _correlation_id(request),
    })
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unknown_key_error_handler(request: Request, exc: KeyError) -> JSONResponse:
    error_code, kind = UNKNOWN_KEY_CODES[type(exc)]
    key = exc.args[0] if exc.args else None
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error_code": error_code, "message": f"Unknown {kind}: {key}"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingCoreError, billing_core_error_handler)
    for error_class in UNKNOWN_KEY_CODES:
        app.add_exception_handler(error_class, unknown_key_error_handler)
