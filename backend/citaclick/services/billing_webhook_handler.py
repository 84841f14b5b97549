"""
Billing webhook handler with idempotency support.

Processes verified provider events with:
- Event deduplication using the provider event id
- Out-of-order event handling (delegated to the lifecycle engine)
- A persisted outcome for every event, including unresolvable ones
  kept for manual reconciliation
- Rollback and a recorded failure on unexpected errors, so the provider's
  redelivery is processed again
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from citaclick.integrations.billing.http_client import parse_subscription
from citaclick.models.webhook_event import WebhookEvent, WebhookOutcome
from citaclick.repositories.subscription_repository import SubscriptionRepository
from citaclick.services.lifecycle_engine import EventResult, SubscriptionLifecycleEngine

logger = logging.getLogger(__name__)

EVENT_INVOICE_PAID = "invoice.paid"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"

HANDLED_EVENTS = frozenset({
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
})


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    event_id: Optional[str] = None
    outcome: Optional[str] = None
    tenant_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


def _id_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _subscription_ref(event_type: str, obj: Dict[str, Any]) -> Optional[str]:
    if event_type.startswith("customer.subscription."):
        return obj.get("id")
    return _id_of(obj.get("subscription"))


class BillingWebhookHandler:
    """
    Handler for billing provider webhooks with idempotency.

    Each provider event id is applied at most once; events that failed
    with an unexpected error are retried on redelivery.
    """

    def __init__(self, db_session: Session, engine: SubscriptionLifecycleEngine):
        """
        Initialize webhook handler.

        Args:
            db_session: Database session
            engine: Lifecycle engine bound to the same session
        """
        self.db = db_session
        self.engine = engine
        self.subscriptions = SubscriptionRepository(db_session)

    def _existing(self, event_id: str) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(
            WebhookEvent.provider_event_id == event_id
        ).first()

    def _is_duplicate(self, event_id: str) -> bool:
        """
        Check if webhook event has already been handled.

        Events whose previous attempt failed are not duplicates.
        """
        existing = self._existing(event_id)
        return existing is not None and existing.outcome != WebhookOutcome.FAILED

    def _record_event(
        self,
        event_id: str,
        event_type: str,
        external_subscription_id: Optional[str],
        payload: Dict[str, Any],
        outcome: str,
        detail: Optional[str] = None,
    ) -> None:
        """Insert or update the ledger row for an event."""
        payload_str = json.dumps(payload, sort_keys=True, default=str)
        payload_hash = hashlib.sha256(payload_str.encode()).hexdigest()

        event = self._existing(event_id)
        if event is None:
            event = WebhookEvent(provider_event_id=event_id)
            self.db.add(event)
        event.event_type = event_type
        event.external_subscription_id = external_subscription_id
        event.payload_hash = payload_hash
        event.outcome = outcome
        event.detail = detail
        event.received_at = datetime.now(timezone.utc)

    def _dispatch(
        self,
        event_id: str,
        event_type: str,
        occurred_at: Optional[datetime],
        obj: Dict[str, Any],
        subscription_ref: Optional[str],
    ) -> EventResult:
        if event_type == EVENT_INVOICE_PAID:
            return self.engine.apply_invoice_paid(event_id, occurred_at, obj.get("id"), subscription_ref)
        if event_type == EVENT_INVOICE_PAYMENT_FAILED:
            return self.engine.apply_invoice_payment_failed(
                event_id, occurred_at, obj.get("id"), subscription_ref
            )
        if event_type == EVENT_SUBSCRIPTION_DELETED:
            return self.engine.apply_subscription_deleted(event_id, occurred_at, subscription_ref)
        if event_type == EVENT_SUBSCRIPTION_UPDATED:
            return self.engine.apply_subscription_updated(event_id, occurred_at, parse_subscription(obj))
        return EventResult(outcome=WebhookOutcome.IGNORED, message=f"Unhandled event type {event_type}")

    def handle_event(self, event: Dict[str, Any]) -> WebhookProcessingResult:
        """
        Apply one verified provider event.

        Args:
            event: Parsed event payload ({id, type, created, data: {object}})

        Returns:
            WebhookProcessingResult; error == "processing_error" means the
            caller should answer with a 5xx so the provider redelivers
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            logger.warning("Webhook missing event id or type", extra={
                "payload_keys": list(event.keys()),
            })
            return WebhookProcessingResult(
                processed=False,
                message="Missing event id or type",
                error="invalid_event",
            )

        if self._is_duplicate(event_id):
            logger.info("Duplicate webhook skipped", extra={
                "event_id": event_id,
                "event_type": event_type,
            })
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                event_id=event_id,
                skipped_reason="duplicate",
            )

        subscription_ref = None
        try:
            obj = (event.get("data") or {}).get("object") or {}
            created = event.get("created")
            occurred_at = datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None
            if event_type in HANDLED_EVENTS:
                subscription_ref = _subscription_ref(event_type, obj)

            owner = self.subscriptions.get_by_external_id(subscription_ref)
            if owner is not None:
                with self.engine.locked(owner.tenant_id):
                    result = self._dispatch(event_id, event_type, occurred_at, obj, subscription_ref)
                    self._record_event(
                        event_id, event_type, subscription_ref, event, result.outcome, result.message
                    )
            else:
                result = self._dispatch(event_id, event_type, occurred_at, obj, subscription_ref)
                self._record_event(
                    event_id, event_type, subscription_ref, event, result.outcome, result.message
                )
                self.db.commit()

        except IntegrityError:
            # A concurrent delivery of the same event committed first.
            self.db.rollback()
            logger.info("Concurrent duplicate webhook skipped", extra={"event_id": event_id})
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                event_id=event_id,
                skipped_reason="duplicate",
            )

        except Exception as e:
            logger.error("Error processing webhook", extra={
                "event_id": event_id,
                "event_type": event_type,
                "error": str(e),
            }, exc_info=True)
            self.db.rollback()
            self._record_event(
                event_id, event_type, subscription_ref, event,
                WebhookOutcome.FAILED, f"{type(e).__name__}: {e}"[:1000],
            )
            self.db.commit()
            return WebhookProcessingResult(
                processed=False,
                message="Processing error",
                event_id=event_id,
                outcome=WebhookOutcome.FAILED,
                error="processing_error",
            )

        if result.outcome == WebhookOutcome.UNRESOLVED:
            logger.error("Webhook could not be matched, recorded for manual reconciliation", extra={
                "event_id": event_id,
                "event_type": event_type,
                "external_subscription_id": subscription_ref,
            })
        else:
            logger.info("Webhook handled", extra={
                "event_id": event_id,
                "event_type": event_type,
                "outcome": result.outcome,
                "tenant_id": result.tenant_id,
                "from_status": result.from_status,
                "to_status": result.to_status,
            })

        return WebhookProcessingResult(
            processed=result.outcome == WebhookOutcome.PROCESSED,
            message=result.message,
            event_id=event_id,
            outcome=result.outcome,
            tenant_id=result.tenant_id,
            skipped_reason=None if result.outcome == WebhookOutcome.PROCESSED else result.outcome,
        )
