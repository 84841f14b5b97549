"""
Subscription lifecycle engine.

The single writer of subscription status. Handles:
- Subscription creation, plan/payment-method updates, cancellation and
  reactivation (provider call first, local mirror second)
- Manual activation after an out-of-band payment
- Webhook-driven transitions (invoice paid/failed, subscription
  updated/deleted) with per-event idempotency and recency ordering
- Expiry of lapsed trials and periods for the reconciliation sweep
- Re-synchronisation with the provider when local state is stale

Writers for one negocio are serialised by an in-process lock plus a row
lock on the subscription record; every state change is written to the
billing_events audit table.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from citaclick.config.billing_settings import BillingSettings, get_billing_settings
from citaclick.entitlements.catalog import normalize_plan
from citaclick.integrations.billing.provider import (
    AlreadyExpiredError,
    BillingProvider,
    BillingProviderError,
    CustomerRef,
    InvoiceSnapshot,
    SubscriptionSnapshot,
)
from citaclick.models.billing_event import ActorType, BillingEvent, BillingEventType
from citaclick.models.negocio import Negocio
from citaclick.models.subscription import BillingInterval, Subscription, SubscriptionStatus
from citaclick.models.subscription_notice import SubscriptionNotice
from citaclick.models.webhook_event import WebhookOutcome
from citaclick.repositories.negocio_repository import NegocioRepository
from citaclick.repositories.subscription_repository import SubscriptionRepository
from citaclick.services.errors import InvalidTransitionError, NotFoundError, ProviderError
from citaclick.services.payment_state import (
    AccountPaymentState,
    EstadoPago,
    compute_payment_state,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

S = SubscriptionStatus

# Same-status writes (field refreshes) are always allowed. CANCELED has no
# outgoing edges here; leaving it goes through reactivate_subscription.
VALID_TRANSITIONS = {
    S.TRIALING: {S.ACTIVE, S.PAST_DUE, S.CANCELED},
    S.ACTIVE: {S.PAST_DUE, S.CANCELED},
    S.PAST_DUE: {S.ACTIVE, S.CANCELED},
    S.INCOMPLETE: {S.TRIALING, S.ACTIVE, S.PAST_DUE, S.CANCELED},
    S.CANCELED: set(),
}


def is_valid_transition(from_status: Any, to_status: Any) -> bool:
    current = SubscriptionStatus(from_status)
    target = SubscriptionStatus(to_status)
    return current == target or target in VALID_TRANSITIONS[current]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _TenantLocks:
    """
    Registry of re-entrant locks keyed by negocio id.

    Entries are weak: a lock disappears once no writer holds a reference to it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, tenant_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[tenant_id] = lock
            return lock


_tenant_locks = _TenantLocks()


@dataclass
class EventResult:
    """Outcome of applying one provider event."""
    outcome: str
    message: str
    tenant_id: Optional[str] = None
    subscription_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None


@dataclass
class ExpiryResult:
    """Outcome of one expiry check; was_active is the cuenta_activa flag before it ran."""
    tenant_id: str
    was_active: bool
    before: AccountPaymentState
    after: AccountPaymentState

    @property
    def deactivated(self) -> bool:
        return self.was_active and not self.after.allows_access


class SubscriptionLifecycleEngine:
    """
    State machine over Subscription.status.

    One engine instance is bound to one database session and is not shared
    across threads; the module-level lock registry is.
    """

    def __init__(
        self,
        db_session: Session,
        provider: Optional[BillingProvider],
        settings: Optional[BillingSettings] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize engine.

        Args:
            db_session: Database session
            provider: Billing provider (None disables provider-backed operations)
            settings: Billing settings (defaults to environment settings)
            clock: Current-time source returning aware UTC datetimes
        """
        self.db = db_session
        self.provider = provider
        self.settings = settings or get_billing_settings()
        self.clock = clock or _utcnow
        self.subscriptions = SubscriptionRepository(db_session)
        self.negocios = NegocioRepository(db_session)
        self._depth = 0

    # ------------------------------------------------------------------
    # Transaction and locking
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self, tenant_id: str) -> Iterator[None]:
        """
        Serialise writers for a negocio and commit on exit.

        Nested use only commits at the outermost level, so callers (the
        webhook handler) can add their own rows to the same transaction.
        """
        lock = _tenant_locks.get(tenant_id)
        with lock:
            self._depth += 1
            try:
                yield
                if self._depth == 1:
                    self.db.commit()
            except Exception:
                if self._depth == 1:
                    self.db.rollback()
                raise
            finally:
                self._depth -= 1

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_negocio(self, tenant_id: str) -> Negocio:
        negocio = self.negocios.get(tenant_id)
        if negocio is None:
            raise NotFoundError("Negocio", tenant_id)
        return negocio

    def compute_payment_state(
        self,
        negocio: Negocio,
        subscription: Optional[Subscription],
        now: Optional[datetime] = None,
    ) -> AccountPaymentState:
        return compute_payment_state(
            negocio,
            subscription,
            now or self.clock(),
            paid_upfront_plans=self.settings.paid_upfront_plans,
            lapsed_trial_state=self.settings.lapsed_trial_state,
        )

    def get_payment_state(self, tenant_id: str) -> AccountPaymentState:
        """
        Snapshot read of the current AccountPaymentState.

        Raises:
            NotFoundError: If the negocio does not exist
        """
        negocio = self.get_negocio(tenant_id)
        subscription = self.subscriptions.get_by_tenant(tenant_id)
        return self.compute_payment_state(negocio, subscription)

    def get_fresh_payment_state(self, tenant_id: str) -> AccountPaymentState:
        """
        Current state, re-reading the provider first if the local record is stale.

        A provider failure leaves the stale state in place; the expiry sweep
        retries the resync.
        """
        state = self.get_payment_state(tenant_id)
        if not state.requiere_sincronizacion:
            return state

        subscription = self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None or not subscription.external_subscription_id or self.provider is None:
            return state

        try:
            self.resync_from_provider(tenant_id)
        except ProviderError:
            logger.warning("Resync failed, serving stale payment state", extra={
                "tenant_id": tenant_id,
            })
            return state
        return self.get_payment_state(tenant_id)

    def list_invoices(self, tenant_id: str, limit: int = 10) -> List[InvoiceSnapshot]:
        """Recent provider invoices of the negocio, newest first (empty without a customer)."""
        negocio = self.get_negocio(tenant_id)
        if not negocio.billing_customer_id:
            return []
        provider = self._require_provider()
        return self._call_provider(
            "list_customer_invoices", tenant_id,
            provider.list_customer_invoices, negocio.billing_customer_id, limit=limit,
        )

    def get_upcoming_invoice(self, tenant_id: str) -> Optional[InvoiceSnapshot]:
        negocio = self.get_negocio(tenant_id)
        if not negocio.billing_customer_id:
            return None
        provider = self._require_provider()
        return self._call_provider(
            "get_upcoming_invoice", tenant_id,
            provider.get_upcoming_invoice, negocio.billing_customer_id,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise ProviderError("Billing provider is not configured")
        return self.provider

    def _call_provider(self, operation: str, tenant_id: str, fn, *args, **kwargs):
        """Run a provider call, translating failures to ProviderError."""
        try:
            return fn(*args, **kwargs)
        except AlreadyExpiredError:
            raise
        except BillingProviderError as e:
            logger.error("Billing provider call failed", extra={
                "operation": operation,
                "tenant_id": tenant_id,
                "code": e.code,
                "status_code": e.status_code,
            })
            raise ProviderError(e.message, provider_code=e.code)

    def _audit(
        self,
        tenant_id: str,
        event_type: str,
        actor: str,
        subscription: Optional[Subscription] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        provider_event_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.db.add(BillingEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            actor=actor,
            subscription_id=subscription.id if subscription else None,
            from_status=from_status,
            to_status=to_status,
            provider_event_id=provider_event_id,
            extra_metadata=metadata,
            occurred_at=self.clock(),
        ))

    def _transition(
        self,
        subscription: Subscription,
        to_status: SubscriptionStatus,
        event_type: str,
        actor: str,
        provider_event_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        from_status = subscription.status
        subscription.status = to_status.value
        self._audit(
            subscription.tenant_id,
            event_type,
            actor,
            subscription=subscription,
            from_status=from_status,
            to_status=to_status.value,
            provider_event_id=provider_event_id,
            metadata=metadata,
        )
        logger.info("Subscription transition", extra={
            "tenant_id": subscription.tenant_id,
            "subscription_id": subscription.id,
            "from_status": from_status,
            "to_status": to_status.value,
            "event_type": event_type,
            "actor": actor,
        })

    def _mirror_snapshot(self, subscription: Subscription, snapshot: SubscriptionSnapshot) -> None:
        """Copy provider fields onto the local record (status excluded)."""
        subscription.external_subscription_id = snapshot.id
        subscription.external_customer_id = snapshot.customer_id or subscription.external_customer_id
        if snapshot.price_id:
            subscription.price_id = snapshot.price_id
            plan = self.settings.plan_for_price(snapshot.price_id)
            if plan:
                subscription.plan = plan
        subscription.billing_interval = (
            BillingInterval.ANNUAL.value if snapshot.interval == "ANNUAL" else BillingInterval.MONTHLY.value
        )
        subscription.current_period_start = snapshot.current_period_start
        subscription.current_period_end = snapshot.current_period_end
        subscription.cancel_at_period_end = snapshot.cancel_at_period_end
        subscription.canceled_at = snapshot.canceled_at
        subscription.ended_at = snapshot.ended_at
        subscription.trial_start = snapshot.trial_start
        subscription.trial_end = snapshot.trial_end
        if snapshot.latest_invoice_id:
            subscription.latest_invoice_id = snapshot.latest_invoice_id
        if snapshot.default_payment_method_id:
            subscription.default_payment_method_id = snapshot.default_payment_method_id
        subscription.validate_period()

    def _sync_negocio_flags(self, negocio: Negocio, subscription: Optional[Subscription]) -> AccountPaymentState:
        state = self.compute_payment_state(negocio, subscription)
        negocio.cuenta_activa = state.allows_access
        negocio.en_periodo_prueba = state.estado == EstadoPago.TRIAL
        if subscription is not None and subscription.plan:
            negocio.plan = subscription.plan
        return state

    def _locked_subscription(self, tenant_id: str) -> Subscription:
        subscription = self.subscriptions.get_by_tenant_for_update(tenant_id)
        if subscription is None:
            raise NotFoundError("Subscription", tenant_id)
        return subscription

    # ------------------------------------------------------------------
    # User-initiated operations
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        tenant_id: str,
        plan: str,
        price_id: Optional[str] = None,
        payment_method_ref: Optional[str] = None,
        trial_days: Optional[int] = None,
        trial_end_at: Optional[datetime] = None,
    ) -> Subscription:
        """
        Subscribe a negocio to a plan through the provider.

        A negocio still inside its registration trial carries the remaining
        trial over to the provider subscription unless a trial is given.

        Raises:
            NotFoundError: Negocio does not exist
            InvalidTransitionError: Negocio already has a live subscription
            ProviderError: Provider rejected or failed the request
        """
        tier = normalize_plan(plan)
        price_id = price_id or self.settings.price_id_for(tier.value)
        provider = self._require_provider()

        with self.locked(tenant_id):
            negocio = self.get_negocio(tenant_id)
            existing = self.subscriptions.get_by_tenant_for_update(tenant_id)
            if existing is not None:
                live = self.compute_payment_state(negocio, existing).allows_access
                if existing.status != S.CANCELED.value or live:
                    raise InvalidTransitionError(
                        existing.status, S.ACTIVE.value,
                        reason="Negocio already has a subscription",
                    )

            now = self.clock()
            if (
                trial_days is None
                and trial_end_at is None
                and negocio.fecha_fin_prueba is not None
                and negocio.fecha_fin_prueba > now
            ):
                trial_end_at = negocio.fecha_fin_prueba

            if negocio.billing_customer_id:
                customer = CustomerRef(id=negocio.billing_customer_id, email=negocio.email)
            else:
                customer = self._call_provider(
                    "create_customer", tenant_id,
                    provider.create_customer, tenant_id, negocio.email, negocio.nombre,
                )
                negocio.billing_customer_id = customer.id

            generation = (
                int(existing.canceled_at.timestamp())
                if existing is not None and existing.canceled_at else "first"
            )
            snapshot = self._call_provider(
                "create_subscription", tenant_id,
                provider.create_subscription,
                customer,
                price_id,
                payment_method_ref=payment_method_ref,
                trial_days=trial_days,
                trial_end_at=trial_end_at,
                idempotency_key=f"subscription-{tenant_id}-{price_id}-{generation}",
            )

            subscription = existing or Subscription(
                tenant_id=tenant_id,
                negocio_id=tenant_id,
            )
            from_status = existing.status if existing is not None else None
            subscription.plan = tier.value
            subscription.latest_invoice_id = None
            self._mirror_snapshot(subscription, snapshot)
            subscription.status = snapshot.status.value
            # Provider events about this subscription may predate our response.
            subscription.last_event_at = None
            if existing is None:
                self.subscriptions.add(subscription)

            self._audit(
                tenant_id,
                BillingEventType.SUBSCRIPTION_CREATED,
                ActorType.USER,
                subscription=subscription,
                from_status=from_status,
                to_status=subscription.status,
                metadata={"plan": tier.value, "price_id": price_id},
            )
            self._sync_negocio_flags(negocio, subscription)

        logger.info("Subscription created", extra={
            "tenant_id": tenant_id,
            "plan": tier.value,
            "status": subscription.status,
            "external_subscription_id": subscription.external_subscription_id,
        })
        return subscription

    def update_subscription(
        self,
        tenant_id: str,
        plan: Optional[str] = None,
        payment_method_ref: Optional[str] = None,
    ) -> Subscription:
        """
        Change plan and/or default payment method.

        Local fields change only from the provider's returned snapshot.

        Raises:
            NotFoundError: No subscription record
            InvalidTransitionError: Subscription is canceled or not provider-managed
            ProviderError: Provider rejected or failed the request
        """
        price_id = self.settings.price_id_for(normalize_plan(plan).value) if plan else None
        provider = self._require_provider()

        with self.locked(tenant_id):
            negocio = self.get_negocio(tenant_id)
            subscription = self._locked_subscription(tenant_id)
            if subscription.status == S.CANCELED.value:
                raise InvalidTransitionError(
                    subscription.status, subscription.status,
                    reason="Canceled subscriptions cannot be updated",
                )
            if not subscription.external_subscription_id:
                raise InvalidTransitionError(
                    subscription.status, subscription.status,
                    reason="Subscription is not managed by the billing provider",
                )

            snapshot = self._call_provider(
                "update_subscription", tenant_id,
                provider.update_subscription,
                subscription.external_subscription_id,
                price_id=price_id,
                payment_method_ref=payment_method_ref,
            )
            previous_plan = subscription.plan
            self._mirror_snapshot(subscription, snapshot)
            if snapshot.status.value != subscription.status:
                if is_valid_transition(subscription.status, snapshot.status):
                    self._transition(
                        subscription, snapshot.status,
                        BillingEventType.SUBSCRIPTION_UPDATED, ActorType.USER,
                    )
            subscription.last_event_at = self.clock()
            self._audit(
                tenant_id,
                BillingEventType.SUBSCRIPTION_UPDATED,
                ActorType.USER,
                subscription=subscription,
                from_status=subscription.status,
                to_status=subscription.status,
                metadata={"from_plan": previous_plan, "to_plan": subscription.plan},
            )
            self._sync_negocio_flags(negocio, subscription)
        return subscription

    def cancel_subscription(self, tenant_id: str, immediate: bool) -> Subscription:
        """
        Cancel now (immediate=True) or at the end of the current period.

        Raises:
            NotFoundError: No subscription record
            InvalidTransitionError: Already canceled
            ProviderError: Provider rejected or failed the request
        """
        with self.locked(tenant_id):
            negocio = self.get_negocio(tenant_id)
            subscription = self._locked_subscription(tenant_id)
            if subscription.status == S.CANCELED.value:
                raise InvalidTransitionError(
                    subscription.status, S.CANCELED.value,
                    reason="Subscription is already canceled",
                )

            now = self.clock()
            if subscription.external_subscription_id:
                provider = self._require_provider()
                snapshot = self._call_provider(
                    "cancel_subscription", tenant_id,
                    provider.cancel_subscription,
                    subscription.external_subscription_id,
                    immediate,
                )
                self._mirror_snapshot(subscription, snapshot)

            if immediate:
                subscription.canceled_at = subscription.canceled_at or now
                subscription.ended_at = subscription.ended_at or now
                subscription.cancel_at_period_end = False
                self._transition(
                    subscription, S.CANCELED,
                    BillingEventType.SUBSCRIPTION_CANCELED, ActorType.USER,
                    metadata={"immediate": True},
                )
            else:
                subscription.cancel_at_period_end = True
                self._audit(
                    tenant_id,
                    BillingEventType.SUBSCRIPTION_CANCEL_SCHEDULED,
                    ActorType.USER,
                    subscription=subscription,
                    from_status=subscription.status,
                    to_status=subscription.status,
                    metadata={"period_end": subscription.current_period_end.isoformat()
                              if subscription.current_period_end else None},
                )
            subscription.last_event_at = now
            self._sync_negocio_flags(negocio, subscription)
        return subscription

    def reactivate_subscription(self, tenant_id: str) -> Subscription:
        """
        Undo a scheduled cancellation before the period ends.

        Raises:
            NotFoundError: No subscription record
            InvalidTransitionError: Nothing to reactivate, or period already ended
            ProviderError: Provider failed the request
        """
        with self.locked(tenant_id):
            negocio = self.get_negocio(tenant_id)
            subscription = self._locked_subscription(tenant_id)
            now = self.clock()
            period_end = subscription.current_period_end

            if not subscription.cancel_at_period_end:
                raise InvalidTransitionError(
                    subscription.status, S.ACTIVE.value,
                    reason="Subscription has no pending cancellation",
                )
            if subscription.ended_at is not None or period_end is None or period_end <= now:
                raise InvalidTransitionError(
                    subscription.status, S.ACTIVE.value,
                    reason="Subscription period has already ended",
                )

            from_status = subscription.status
            if subscription.external_subscription_id:
                provider = self._require_provider()
                try:
                    snapshot = self._call_provider(
                        "reactivate_subscription", tenant_id,
                        provider.reactivate_subscription,
                        subscription.external_subscription_id,
                    )
                except AlreadyExpiredError:
                    raise InvalidTransitionError(
                        from_status, S.ACTIVE.value,
                        reason="Subscription period has already ended",
                    )
                self._mirror_snapshot(subscription, snapshot)
                target = snapshot.status
            else:
                target = S.ACTIVE if from_status == S.CANCELED.value else S(from_status)

            subscription.cancel_at_period_end = False
            subscription.canceled_at = None
            subscription.status = target.value
            subscription.last_event_at = now
            self._audit(
                tenant_id,
                BillingEventType.SUBSCRIPTION_REACTIVATED,
                ActorType.USER,
                subscription=subscription,
                from_status=from_status,
                to_status=target.value,
            )
            self._sync_negocio_flags(negocio, subscription)
        return subscription

    def activate_manual(
        self,
        tenant_id: str,
        transaccion_id: str,
        plan: Optional[str] = None,
        metodo_pago: Optional[str] = None,
    ) -> Subscription:
        """
        Apply a completed out-of-band payment.

        Starts a locally managed paid period of manual_activation_days.
        Provider-managed subscriptions that are still live are activated by
        their invoice webhooks instead.

        Args:
            tenant_id: Negocio id
            transaccion_id: Reference of the completed payment (kept in the audit trail)
            plan: Plan to activate (defaults to the negocio's plan)
            metodo_pago: Payment method label, if known

        Raises:
            ValueError: Empty transaccion_id
            NotFoundError: Negocio does not exist
            InvalidTransitionError: A provider-managed subscription is still live
        """
        if not transaccion_id or not transaccion_id.strip():
            raise ValueError("transaccion_id is required")

        with self.locked(tenant_id):
            negocio = self.get_negocio(tenant_id)
            tier = normalize_plan(plan or negocio.plan)
            subscription = self.subscriptions.get_by_tenant_for_update(tenant_id)

            if (
                subscription is not None
                and subscription.external_subscription_id
                and subscription.status != S.CANCELED.value
            ):
                raise InvalidTransitionError(
                    subscription.status, S.ACTIVE.value,
                    reason="Subscription is managed by the billing provider",
                )

            now = self.clock()
            from_status = subscription.status if subscription is not None else None
            is_new = subscription is None
            if is_new:
                subscription = Subscription(tenant_id=tenant_id, negocio_id=tenant_id)

            subscription.plan = tier.value
            subscription.price_id = None
            subscription.external_subscription_id = None
            subscription.external_customer_id = negocio.billing_customer_id
            subscription.billing_interval = BillingInterval.MONTHLY.value
            subscription.current_period_start = now
            subscription.current_period_end = now + timedelta(days=self.settings.manual_activation_days)
            subscription.cancel_at_period_end = False
            subscription.canceled_at = None
            subscription.ended_at = None
            subscription.trial_start = None
            subscription.trial_end = None
            subscription.status = S.ACTIVE.value
            subscription.last_event_at = now
            subscription.validate_period()
            if is_new:
                self.subscriptions.add(subscription)

            self._audit(
                tenant_id,
                BillingEventType.SUBSCRIPTION_ACTIVATED,
                ActorType.USER,
                subscription=subscription,
                from_status=from_status,
                to_status=S.ACTIVE.value,
                metadata={
                    "plan": tier.value,
                    "manual": True,
                    "transaccion_id": transaccion_id,
                    "metodo_pago": metodo_pago,
                },
            )
            negocio.fecha_fin_prueba = None
            # A new paid period starts a fresh notice history.
            self.db.query(SubscriptionNotice).filter(
                SubscriptionNotice.tenant_id == tenant_id
            ).delete(synchronize_session=False)
            self._sync_negocio_flags(negocio, subscription)

        logger.info("Subscription manually activated", extra={
            "tenant_id": tenant_id,
            "plan": tier.value,
            "period_end": subscription.current_period_end.isoformat(),
        })
        return subscription

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    def _event_preamble(
        self,
        event_id: str,
        external_subscription_id: Optional[str],
        occurred_at: Optional[datetime],
    ) -> Tuple[Optional[Subscription], Optional[EventResult]]:
        """Resolve and lock the record; return an early result if the event must not apply."""
        found = self.subscriptions.get_by_external_id(external_subscription_id)
        if found is None:
            logger.warning("Webhook for unknown subscription", extra={
                "event_id": event_id,
                "external_subscription_id": external_subscription_id,
            })
            return None, EventResult(
                outcome=WebhookOutcome.UNRESOLVED,
                message="No local subscription for provider subscription id",
            )

        subscription = self.subscriptions.get_by_tenant_for_update(found.tenant_id)
        if not subscription.is_newer_event(occurred_at):
            logger.info("Stale webhook skipped", extra={
                "event_id": event_id,
                "tenant_id": subscription.tenant_id,
                "occurred_at": occurred_at.isoformat() if occurred_at else None,
                "last_event_at": subscription.last_event_at.isoformat(),
            })
            return subscription, EventResult(
                outcome=WebhookOutcome.STALE,
                message="Event is older than the last applied event",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
            )
        return subscription, None

    def _reject(self, subscription: Subscription, to_status: SubscriptionStatus, event_id: str) -> EventResult:
        logger.warning("Invalid state transition from webhook", extra={
            "event_id": event_id,
            "tenant_id": subscription.tenant_id,
            "from": subscription.status,
            "to": to_status.value,
        })
        self._audit(
            subscription.tenant_id,
            BillingEventType.TRANSITION_REJECTED,
            ActorType.WEBHOOK,
            subscription=subscription,
            from_status=subscription.status,
            to_status=to_status.value,
            provider_event_id=event_id,
        )
        return EventResult(
            outcome=WebhookOutcome.IGNORED,
            message=f"Transition {subscription.status} -> {to_status.value} not allowed",
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            from_status=subscription.status,
            to_status=to_status.value,
        )

    def _apply_event(self, external_subscription_id: Optional[str], apply) -> EventResult:
        """Lock the owning negocio (if resolvable) and run `apply` inside it."""
        found = self.subscriptions.get_by_external_id(external_subscription_id)
        if found is None:
            return apply()
        with self.locked(found.tenant_id):
            return apply()

    def apply_invoice_paid(
        self,
        event_id: str,
        occurred_at: Optional[datetime],
        invoice_id: str,
        external_subscription_id: Optional[str],
    ) -> EventResult:
        """invoice.paid: move to ACTIVE and record the invoice id."""
        def apply() -> EventResult:
            subscription, early = self._event_preamble(event_id, external_subscription_id, occurred_at)
            if early:
                return early
            if subscription.latest_invoice_id == invoice_id and subscription.status == S.ACTIVE.value:
                return EventResult(
                    outcome=WebhookOutcome.IGNORED,
                    message="Invoice already applied",
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                    from_status=subscription.status,
                    to_status=subscription.status,
                )
            if not is_valid_transition(subscription.status, S.ACTIVE):
                return self._reject(subscription, S.ACTIVE, event_id)

            if self.provider is not None:
                try:
                    snapshot = self.provider.get_subscription(external_subscription_id)
                    self._mirror_snapshot(subscription, snapshot)
                except BillingProviderError as e:
                    logger.warning("Could not refresh period after invoice.paid", extra={
                        "event_id": event_id,
                        "tenant_id": subscription.tenant_id,
                        "code": e.code,
                    })

            from_status = subscription.status
            subscription.latest_invoice_id = invoice_id
            subscription.last_event_at = occurred_at or self.clock()
            self._transition(
                subscription, S.ACTIVE,
                BillingEventType.PAYMENT_SUCCEEDED, ActorType.WEBHOOK,
                provider_event_id=event_id,
                metadata={"invoice_id": invoice_id},
            )
            negocio = self.get_negocio(subscription.tenant_id)
            self._sync_negocio_flags(negocio, subscription)
            return EventResult(
                outcome=WebhookOutcome.PROCESSED,
                message="Subscription active",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                from_status=from_status,
                to_status=S.ACTIVE.value,
            )

        return self._apply_event(external_subscription_id, apply)

    def apply_invoice_payment_failed(
        self,
        event_id: str,
        occurred_at: Optional[datetime],
        invoice_id: str,
        external_subscription_id: Optional[str],
    ) -> EventResult:
        """invoice.payment_failed: move to PAST_DUE."""
        def apply() -> EventResult:
            subscription, early = self._event_preamble(event_id, external_subscription_id, occurred_at)
            if early:
                return early
            if subscription.latest_invoice_id == invoice_id and subscription.status == S.ACTIVE.value:
                return EventResult(
                    outcome=WebhookOutcome.STALE,
                    message="Invoice was already paid",
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                )
            if not is_valid_transition(subscription.status, S.PAST_DUE):
                return self._reject(subscription, S.PAST_DUE, event_id)

            from_status = subscription.status
            subscription.last_event_at = occurred_at or self.clock()
            self._transition(
                subscription, S.PAST_DUE,
                BillingEventType.PAYMENT_FAILED, ActorType.WEBHOOK,
                provider_event_id=event_id,
                metadata={"invoice_id": invoice_id},
            )
            negocio = self.get_negocio(subscription.tenant_id)
            self._sync_negocio_flags(negocio, subscription)
            return EventResult(
                outcome=WebhookOutcome.PROCESSED,
                message="Subscription past due",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                from_status=from_status,
                to_status=S.PAST_DUE.value,
            )

        return self._apply_event(external_subscription_id, apply)

    def apply_subscription_deleted(
        self,
        event_id: str,
        occurred_at: Optional[datetime],
        external_subscription_id: Optional[str],
    ) -> EventResult:
        """customer.subscription.deleted: move to CANCELED and stamp ended_at."""
        def apply() -> EventResult:
            subscription, early = self._event_preamble(event_id, external_subscription_id, occurred_at)
            if early:
                return early

            now = self.clock()
            from_status = subscription.status
            subscription.ended_at = now
            subscription.canceled_at = subscription.canceled_at or now
            subscription.cancel_at_period_end = False
            subscription.last_event_at = occurred_at or now
            self._transition(
                subscription, S.CANCELED,
                BillingEventType.SUBSCRIPTION_ENDED, ActorType.WEBHOOK,
                provider_event_id=event_id,
            )
            negocio = self.get_negocio(subscription.tenant_id)
            self._sync_negocio_flags(negocio, subscription)
            return EventResult(
                outcome=WebhookOutcome.PROCESSED,
                message="Subscription canceled",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                from_status=from_status,
                to_status=S.CANCELED.value,
            )

        return self._apply_event(external_subscription_id, apply)

    def apply_subscription_updated(
        self,
        event_id: str,
        occurred_at: Optional[datetime],
        snapshot: SubscriptionSnapshot,
    ) -> EventResult:
        """customer.subscription.updated: mirror the provider snapshot."""
        def apply() -> EventResult:
            subscription, early = self._event_preamble(event_id, snapshot.id, occurred_at)
            if early:
                return early
            if not is_valid_transition(subscription.status, snapshot.status):
                return self._reject(subscription, snapshot.status, event_id)

            from_status = subscription.status
            self._mirror_snapshot(subscription, snapshot)
            subscription.last_event_at = occurred_at or self.clock()
            self._transition(
                subscription, snapshot.status,
                BillingEventType.SUBSCRIPTION_UPDATED, ActorType.WEBHOOK,
                provider_event_id=event_id,
            )
            negocio = self.get_negocio(subscription.tenant_id)
            self._sync_negocio_flags(negocio, subscription)
            return EventResult(
                outcome=WebhookOutcome.PROCESSED,
                message="Subscription updated",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                from_status=from_status,
                to_status=snapshot.status.value,
            )

        return self._apply_event(snapshot.id, apply)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def resync_from_provider(self, tenant_id: str) -> Subscription:
        """
        Mirror the provider's current view of the subscription.

        The provider is the source of truth here; transitions outside the
        table are applied but flagged in the audit trail.

        Raises:
            NotFoundError: No provider-managed subscription
            ProviderError: Provider call failed
        """
        provider = self._require_provider()
        with self.locked(tenant_id):
            negocio = self.get_negocio(tenant_id)
            subscription = self._locked_subscription(tenant_id)
            if not subscription.external_subscription_id:
                raise NotFoundError("Provider subscription", tenant_id)

            snapshot = self._call_provider(
                "get_subscription", tenant_id,
                provider.get_subscription, subscription.external_subscription_id,
            )
            from_status = subscription.status
            self._mirror_snapshot(subscription, snapshot)
            subscription.status = snapshot.status.value
            subscription.last_event_at = self.clock()
            self._audit(
                tenant_id,
                BillingEventType.SUBSCRIPTION_RESYNCED,
                ActorType.SYSTEM,
                subscription=subscription,
                from_status=from_status,
                to_status=subscription.status,
                metadata=None if is_valid_transition(from_status, snapshot.status)
                else {"warning": "invalid_transition"},
            )
            self._sync_negocio_flags(negocio, subscription)
        return subscription

    def expire_if_due(self, tenant_id: str) -> ExpiryResult:
        """
        Apply date-driven transitions for one negocio.

        - Lapsed trial without payment: TRIALING -> trial_expiry_status
        - ACTIVE past period end with a scheduled cancellation: -> CANCELED
        - ACTIVE past period end otherwise: resync with the provider, then
          PAST_DUE if the period is still over
        - cuenta_activa / en_periodo_prueba refreshed from the derived state

        Raises:
            NotFoundError: Negocio does not exist
            ProviderError: Resync failed (the sweep logs and moves on)
        """
        with self.locked(tenant_id):
            negocio = self.get_negocio(tenant_id)
            subscription = self.subscriptions.get_by_tenant_for_update(tenant_id)
            now = self.clock()
            was_active = bool(negocio.cuenta_activa)
            before = self.compute_payment_state(negocio, subscription, now)

            if subscription is not None:
                self._expire_subscription(subscription, now)

            after = self._sync_negocio_flags(negocio, subscription)
            result = ExpiryResult(tenant_id=tenant_id, was_active=was_active, before=before, after=after)
            if result.deactivated:
                if subscription is None:
                    self._audit(
                        tenant_id,
                        BillingEventType.TRIAL_EXPIRED,
                        ActorType.SCHEDULER,
                        metadata={"estado": after.estado.value},
                    )
                logger.info("Negocio deactivated", extra={
                    "tenant_id": tenant_id,
                    "from_estado": before.estado.value,
                    "to_estado": after.estado.value,
                })
        return result

    def _expire_subscription(self, subscription: Subscription, now: datetime) -> None:
        status = S(subscription.status)
        period_end = subscription.current_period_end

        if status == S.TRIALING:
            trial_end = subscription.trial_end or period_end
            if trial_end is None or now <= trial_end:
                return
            if subscription.external_subscription_id and self.provider is not None:
                self.resync_from_provider(subscription.tenant_id)
                if subscription.status != S.TRIALING.value:
                    return
            target = S.CANCELED if self.settings.trial_expiry_status == "canceled" else S.PAST_DUE
            if target == S.CANCELED:
                subscription.canceled_at = subscription.canceled_at or now
                subscription.ended_at = subscription.ended_at or trial_end
            self._transition(
                subscription, target,
                BillingEventType.TRIAL_EXPIRED, ActorType.SCHEDULER,
                metadata={"trial_end": trial_end.isoformat()},
            )
            return

        if status == S.ACTIVE and period_end is not None and period_end <= now:
            if subscription.cancel_at_period_end:
                subscription.ended_at = subscription.ended_at or period_end
                subscription.cancel_at_period_end = False
                self._transition(
                    subscription, S.CANCELED,
                    BillingEventType.SUBSCRIPTION_ENDED, ActorType.SCHEDULER,
                )
                return
            if subscription.external_subscription_id and self.provider is not None:
                self.resync_from_provider(subscription.tenant_id)
                refreshed_end = subscription.current_period_end
                if subscription.status != S.ACTIVE.value or (refreshed_end and refreshed_end > now):
                    return
            self._transition(
                subscription, S.PAST_DUE,
                BillingEventType.PERIOD_LAPSED, ActorType.SCHEDULER,
                metadata={"period_end": period_end.isoformat()},
            )
            return

        if (
            status == S.CANCELED
            and subscription.cancel_at_period_end
            and period_end is not None
            and period_end <= now
        ):
            subscription.ended_at = subscription.ended_at or period_end
            subscription.cancel_at_period_end = False
            self._audit(
                subscription.tenant_id,
                BillingEventType.SUBSCRIPTION_ENDED,
                ActorType.SCHEDULER,
                subscription=subscription,
                from_status=status.value,
                to_status=status.value,
            )


def build_lifecycle_engine(
    db_session: Session,
    provider: Optional[BillingProvider] = None,
    settings: Optional[BillingSettings] = None,
    clock: Optional[Clock] = None,
) -> SubscriptionLifecycleEngine:
    """Create an engine, using the configured hosted provider when none is given."""
    if provider is None:
        from citaclick.integrations.billing.http_client import get_billing_provider
        provider = get_billing_provider()
    return SubscriptionLifecycleEngine(db_session, provider, settings=settings, clock=clock)
