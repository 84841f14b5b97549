"""
Billing provider webhook endpoint.

SECURITY: The signature is verified over the raw body before anything is
parsed or applied. Invalid signatures get 400 and are not processed.

Response codes drive provider redelivery:
- 200 for processed, duplicate, stale, ignored and unresolved events
- 500 for unexpected failures, so the provider retries
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from citaclick.integrations.billing.webhook_signature import SIGNATURE_HEADER, verify_signature
from citaclick.services.billing_webhook_handler import BillingWebhookHandler, WebhookProcessingResult
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    outcome: Optional[str] = None
    message: str = "Webhook processed"


def _process_event(app_state, event: Dict[str, Any]) -> WebhookProcessingResult:
    db = app_state.session_factory()
    try:
        engine = SubscriptionLifecycleEngine(
            db,
            app_state.billing_provider,
            settings=app_state.billing_settings,
            clock=app_state.clock,
        )
        return BillingWebhookHandler(db, engine).handle_event(event)
    finally:
        db.close()


@router.post("/billing", response_model=WebhookResponse)
async def billing_webhook(request: Request):
    """
    Receive a billing provider event.

    Header: Billing-Signature: t=<unix>,v1=<hex HMAC-SHA256 of "<t>.<body>">
    """
    settings = request.app.state.billing_settings
    if not settings.webhook_secret:
        logger.error("BILLING_WEBHOOK_SECRET not configured")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error_code": "WEBHOOK_NOT_CONFIGURED", "message": "Webhook verification not configured"},
        )

    body = await request.body()
    # SignatureInvalidError is rendered as 400 by the registered handler.
    verify_signature(
        body,
        request.headers.get(SIGNATURE_HEADER),
        settings.webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )

    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        logger.error("Invalid JSON in webhook body")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error_code": "INVALID_PAYLOAD", "message": "Invalid JSON body"},
        )
    if not isinstance(event, dict):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error_code": "INVALID_PAYLOAD", "message": "Event must be a JSON object"},
        )

    result = await run_in_threadpool(_process_event, request.app.state, event)

    if result.error == "invalid_event":
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error_code": "INVALID_PAYLOAD", "message": result.message},
        )
    if result.error == "processing_error":
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"received": False, "outcome": result.outcome, "message": result.message},
        )

    return WebhookResponse(
        received=True,
        outcome=result.outcome or result.skipped_reason,
        message=result.message,
    )
