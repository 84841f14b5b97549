"""
Unit tests for SubscriptionLifecycleEngine.

Tests cover:
- Transition table
- Creation, update, cancellation, reactivation and manual activation
- Provider events: ordering by recency, rejected transitions, unresolved ids
- Date-driven expiry and provider resync
- Audit trail entries
"""

import gc
from datetime import date

import pytest

from citaclick.integrations.billing.provider import BillingProviderError, InvoiceSnapshot
from citaclick.models.billing_event import ActorType, BillingEvent, BillingEventType
from citaclick.models.subscription import Subscription, SubscriptionStatus
from citaclick.models.subscription_notice import NoticeKind, SubscriptionNotice
from citaclick.models.webhook_event import WebhookOutcome
from citaclick.services.errors import InvalidTransitionError, NotFoundError, ProviderError
from citaclick.services.lifecycle_engine import (
    VALID_TRANSITIONS,
    _TenantLocks,
    _tenant_locks,
    is_valid_transition,
)
from citaclick.services.payment_state import EstadoPago
from citaclick.tests.helpers.factories import (
    days,
    make_negocio,
    make_subscription,
    mirror_in_provider,
)

S = SubscriptionStatus


def _events(db, tenant_id, event_type=None):
    query = db.query(BillingEvent).filter(BillingEvent.tenant_id == tenant_id)
    if event_type:
        query = query.filter(BillingEvent.event_type == event_type)
    return query.all()


@pytest.fixture
def negocio(db_session, clock):
    return make_negocio(db_session, clock(), billing_customer_id="cus_local_1")


@pytest.fixture
def active_subscription(db_session, provider, clock, negocio):
    """ACTIVE provider-managed subscription with ten days left."""
    now = clock()
    subscription = make_subscription(
        db_session, negocio, S.ACTIVE, now - days(20), now + days(10)
    )
    mirror_in_provider(provider, subscription)
    return subscription


class TestTransitionTable:
    """Tests for is_valid_transition."""

    @pytest.mark.parametrize("from_status,to_status", [
        (S.TRIALING, S.ACTIVE),
        (S.TRIALING, S.PAST_DUE),
        (S.ACTIVE, S.PAST_DUE),
        (S.PAST_DUE, S.ACTIVE),
        (S.INCOMPLETE, S.ACTIVE),
        (S.ACTIVE, S.CANCELED),
    ])
    def test_allowed(self, from_status, to_status):
        assert is_valid_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (S.CANCELED, S.ACTIVE),
        (S.CANCELED, S.PAST_DUE),
        (S.ACTIVE, S.TRIALING),
        (S.PAST_DUE, S.TRIALING),
    ])
    def test_rejected(self, from_status, to_status):
        assert not is_valid_transition(from_status, to_status)

    def test_same_status_is_a_refresh(self):
        for status in S:
            assert is_valid_transition(status, status)

    def test_every_status_has_a_row(self):
        assert set(VALID_TRANSITIONS) == set(S)

    def test_accepts_raw_values(self):
        assert is_valid_transition("PAST_DUE", "ACTIVE")


class TestTenantLocks:
    """Tests for the per-negocio writer lock registry."""

    def test_same_lock_while_held(self):
        locks = _TenantLocks()
        first = locks.get("negocio-1")
        second = locks.get("negocio-2")

        assert locks.get("negocio-1") is first
        assert second is not first
        assert len(locks) == 2

    def test_released_locks_are_dropped(self):
        locks = _TenantLocks()
        lock = locks.get("negocio-1")
        with lock:
            assert len(locks) == 1

        del lock
        gc.collect()

        assert len(locks) == 0

    def test_engine_writes_do_not_accumulate_locks(self, engine, db_session, clock):
        before = len(_tenant_locks)
        for index in range(3):
            negocio = make_negocio(db_session, clock(), plan="premium", email=f"n{index}@example.mx")
            engine.activate_manual(negocio.id, f"txn_{index}")
        gc.collect()

        assert len(_tenant_locks) <= before


class TestCreateSubscription:
    """Tests for create_subscription."""

    def test_carries_registration_trial_to_provider(self, engine, db_session, provider, clock):
        negocio = make_negocio(db_session, clock())

        subscription = engine.create_subscription(negocio.id, "starter")

        assert subscription.status == S.TRIALING.value
        assert subscription.plan == "basico"
        assert subscription.trial_end == negocio.fecha_fin_prueba
        assert subscription.external_subscription_id.startswith("sub_")
        assert negocio.billing_customer_id.startswith("cus_")
        assert engine.get_payment_state(negocio.id).estado == EstadoPago.TRIAL

        created = _events(db_session, negocio.id, BillingEventType.SUBSCRIPTION_CREATED)
        assert len(created) == 1
        assert created[0].actor == ActorType.USER
        assert created[0].to_status == S.TRIALING.value

    def test_explicit_zero_trial_activates_immediately(self, engine, db_session, provider, clock):
        negocio = make_negocio(db_session, clock())

        subscription = engine.create_subscription(negocio.id, "profesional", trial_days=0)

        assert subscription.status == S.ACTIVE.value
        assert subscription.price_id == "price_profesional"
        assert subscription.latest_invoice_id is not None
        assert negocio.plan == "profesional"
        assert negocio.cuenta_activa

    def test_reuses_existing_customer(self, engine, negocio, provider):
        engine.create_subscription(negocio.id, "basico")

        assert provider.calls_to("create_customer") == []
        assert provider.calls_to("create_subscription")[0][1] == "cus_local_1"

    def test_idempotency_key_is_stable_per_tenant_and_price(self, engine, negocio, provider):
        engine.create_subscription(negocio.id, "basico")

        key = provider.calls_to("create_subscription")[0][3]
        assert key == f"subscription-{negocio.id}-price_basico-first"

    def test_rejects_second_live_subscription(self, engine, active_subscription, negocio):
        with pytest.raises(InvalidTransitionError):
            engine.create_subscription(negocio.id, "premium")

    def test_provider_failure_leaves_no_record(self, engine, db_session, negocio, provider):
        provider.fail_next(BillingProviderError("card_declined", "Your card was declined", 402))

        with pytest.raises(ProviderError) as exc_info:
            engine.create_subscription(negocio.id, "basico")

        assert exc_info.value.provider_code == "card_declined"
        assert db_session.query(Subscription).count() == 0

    def test_unknown_negocio(self, engine):
        with pytest.raises(NotFoundError):
            engine.create_subscription("missing", "basico")

    def test_without_provider(self, db_session, settings, clock, negocio):
        from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine

        engine = SubscriptionLifecycleEngine(db_session, None, settings=settings, clock=clock)
        with pytest.raises(ProviderError, match="not configured"):
            engine.create_subscription(negocio.id, "basico")


class TestCancelAndReactivate:
    """Tests for cancel_subscription and reactivate_subscription."""

    def test_cancel_at_period_end_scenario(self, engine, active_subscription, negocio, clock):
        """ACTIVE until the period ends, then vencido and finally CANCELED."""
        subscription = engine.cancel_subscription(negocio.id, immediate=False)

        assert subscription.status == S.ACTIVE.value
        assert subscription.cancel_at_period_end is True
        state = engine.get_payment_state(negocio.id)
        assert state.estado == EstadoPago.ACTIVO
        assert state.cancelacion_programada

        clock.advance(days=11)
        assert engine.get_payment_state(negocio.id).estado == EstadoPago.VENCIDO

        result = engine.expire_if_due(negocio.id)

        assert result.deactivated
        assert subscription.status == S.CANCELED.value
        assert subscription.ended_at == subscription.current_period_end
        assert negocio.cuenta_activa is False

    def test_cancel_immediately(self, engine, active_subscription, negocio, provider, db_session):
        subscription = engine.cancel_subscription(negocio.id, immediate=True)

        assert subscription.status == S.CANCELED.value
        assert subscription.ended_at is not None
        assert provider.calls_to("cancel_subscription") == [("cancel_subscription", "sub_local_1", True)]
        assert engine.get_payment_state(negocio.id).estado == EstadoPago.VENCIDO

        canceled = _events(db_session, negocio.id, BillingEventType.SUBSCRIPTION_CANCELED)
        assert [(e.from_status, e.to_status) for e in canceled] == [("ACTIVE", "CANCELED")]

    def test_cancel_twice(self, engine, active_subscription, negocio):
        engine.cancel_subscription(negocio.id, immediate=True)
        with pytest.raises(InvalidTransitionError):
            engine.cancel_subscription(negocio.id, immediate=True)

    def test_cancel_without_record(self, engine, negocio):
        with pytest.raises(NotFoundError):
            engine.cancel_subscription(negocio.id, immediate=False)

    def test_reactivate_before_period_end(self, engine, active_subscription, negocio):
        engine.cancel_subscription(negocio.id, immediate=False)

        subscription = engine.reactivate_subscription(negocio.id)

        assert subscription.status == S.ACTIVE.value
        assert subscription.cancel_at_period_end is False
        assert subscription.canceled_at is None

    def test_reactivate_after_period_end(self, engine, active_subscription, negocio, clock):
        engine.cancel_subscription(negocio.id, immediate=False)
        clock.advance(days=11)

        with pytest.raises(InvalidTransitionError, match="already ended"):
            engine.reactivate_subscription(negocio.id)

    def test_reactivate_without_pending_cancellation(self, engine, active_subscription, negocio):
        with pytest.raises(InvalidTransitionError, match="no pending cancellation"):
            engine.reactivate_subscription(negocio.id)


class TestUpdateSubscription:

    def test_plan_change_follows_provider_price(self, engine, active_subscription, negocio, provider):
        subscription = engine.update_subscription(negocio.id, plan="professional")

        assert subscription.price_id == "price_profesional"
        assert subscription.plan == "profesional"
        assert negocio.plan == "profesional"
        assert provider.calls_to("update_subscription")[0][2] == "price_profesional"

    def test_payment_method_change(self, engine, active_subscription, negocio):
        subscription = engine.update_subscription(negocio.id, payment_method_ref="pm_card_visa")
        assert subscription.default_payment_method_id == "pm_card_visa"

    def test_manual_subscription_cannot_be_updated(self, engine, db_session, negocio, clock):
        now = clock()
        make_subscription(
            db_session, negocio, S.ACTIVE, now, now + days(30), external_subscription_id=None
        )
        with pytest.raises(InvalidTransitionError, match="not managed"):
            engine.update_subscription(negocio.id, plan="premium")


class TestActivateManual:
    """Tests for activate_manual."""

    def test_activates_lapsed_trial(self, engine, db_session, clock, settings):
        negocio = make_negocio(db_session, clock())
        clock.advance(days=8)
        db_session.add(SubscriptionNotice(
            tenant_id=negocio.id, kind=NoticeKind.EXPIRED, notice_date=date(2024, 3, 9)
        ))
        db_session.commit()
        assert engine.get_payment_state(negocio.id).estado == EstadoPago.PENDIENTE_PAGO

        subscription = engine.activate_manual(negocio.id, "txn_123", plan="profesional")

        assert subscription.status == S.ACTIVE.value
        assert subscription.external_subscription_id is None
        assert subscription.current_period_end - subscription.current_period_start == days(
            settings.manual_activation_days
        )
        assert negocio.fecha_fin_prueba is None
        assert negocio.en_periodo_prueba is False
        assert negocio.plan == "profesional"
        assert engine.get_payment_state(negocio.id).dias_restantes == 30
        assert db_session.query(SubscriptionNotice).count() == 0

    def test_premium_without_trial(self, engine, db_session, clock):
        negocio = make_negocio(db_session, clock(), plan="premium")
        assert engine.get_payment_state(negocio.id).estado == EstadoPago.PENDIENTE_PAGO

        engine.activate_manual(negocio.id, "txn_124")

        assert engine.get_payment_state(negocio.id).estado == EstadoPago.ACTIVO
        assert negocio.cuenta_activa is True

    def test_refuses_live_provider_subscription(self, engine, active_subscription, negocio):
        with pytest.raises(InvalidTransitionError, match="managed by the billing provider"):
            engine.activate_manual(negocio.id, "txn_125")

    def test_records_payment_reference(self, engine, db_session, clock):
        negocio = make_negocio(db_session, clock(), plan="premium")

        engine.activate_manual(negocio.id, "txn_777", metodo_pago="transferencia")

        activated = _events(db_session, negocio.id, BillingEventType.SUBSCRIPTION_ACTIVATED)
        assert len(activated) == 1
        assert activated[0].actor == ActorType.USER
        assert activated[0].from_status is None
        assert activated[0].extra_metadata == {
            "plan": "premium",
            "manual": True,
            "transaccion_id": "txn_777",
            "metodo_pago": "transferencia",
        }
        assert db_session.query(Subscription).filter_by(tenant_id=negocio.id).one().plan == "premium"

    @pytest.mark.parametrize("transaccion_id", ["", "   "])
    def test_requires_payment_reference(self, engine, db_session, clock, transaccion_id):
        negocio = make_negocio(db_session, clock(), plan="premium")

        with pytest.raises(ValueError, match="transaccion_id"):
            engine.activate_manual(negocio.id, transaccion_id)

        assert db_session.query(Subscription).count() == 0


class TestProviderEvents:
    """Tests for webhook-driven transitions."""

    def test_invoice_paid_recovers_past_due(self, engine, db_session, negocio, clock):
        now = clock()
        subscription = make_subscription(db_session, negocio, S.PAST_DUE, now - days(30), now)

        result = engine.apply_invoice_paid("evt_1", now, "in_2", "sub_local_1")

        assert result.outcome == WebhookOutcome.PROCESSED
        assert subscription.status == S.ACTIVE.value
        assert subscription.latest_invoice_id == "in_2"
        assert subscription.last_event_at == now
        paid = _events(db_session, negocio.id, BillingEventType.PAYMENT_SUCCEEDED)
        assert paid[0].provider_event_id == "evt_1"

    def test_older_payment_failure_does_not_regress(self, engine, db_session, negocio, clock):
        """Events apply by recency, not arrival."""
        now = clock()
        subscription = make_subscription(db_session, negocio, S.PAST_DUE, now - days(30), now)
        engine.apply_invoice_paid("evt_2", now, "in_2", "sub_local_1")

        result = engine.apply_invoice_payment_failed("evt_1", now - days(1), "in_1", "sub_local_1")

        assert result.outcome == WebhookOutcome.STALE
        assert subscription.status == S.ACTIVE.value

    def test_provider_event_in_same_second_as_user_update(self, engine, db_session, provider, negocio, clock):
        """A whole-second provider timestamp is not older than a sub-second local write."""
        event_time = clock()
        subscription = make_subscription(db_session, negocio, S.PAST_DUE, event_time - days(30), event_time)
        mirror_in_provider(provider, subscription)
        clock.advance(seconds=0.5)
        engine.update_subscription(negocio.id, payment_method_ref="pm_new")
        assert subscription.last_event_at > event_time

        result = engine.apply_invoice_paid("evt_same_second", event_time, "in_3", "sub_local_1")

        assert result.outcome == WebhookOutcome.PROCESSED
        assert subscription.status == S.ACTIVE.value

    def test_event_from_an_earlier_second_is_stale(self, engine, db_session, provider, negocio, clock):
        event_time = clock()
        subscription = make_subscription(db_session, negocio, S.PAST_DUE, event_time - days(30), event_time)
        mirror_in_provider(provider, subscription)
        clock.advance(seconds=1.5)
        engine.update_subscription(negocio.id, payment_method_ref="pm_new")

        result = engine.apply_invoice_paid("evt_old", event_time, "in_3", "sub_local_1")

        assert result.outcome == WebhookOutcome.STALE
        assert subscription.status == S.PAST_DUE.value

    def test_failure_for_paid_invoice_is_stale(self, engine, db_session, negocio, clock):
        now = clock()
        subscription = make_subscription(
            db_session, negocio, S.ACTIVE, now - days(1), now + days(29), latest_invoice_id="in_9"
        )

        result = engine.apply_invoice_payment_failed("evt_3", now + days(1), "in_9", "sub_local_1")

        assert result.outcome == WebhookOutcome.STALE
        assert subscription.status == S.ACTIVE.value

    def test_payment_failed_moves_to_past_due(self, engine, active_subscription, negocio, clock):
        result = engine.apply_invoice_payment_failed("evt_4", clock(), "in_new", "sub_local_1")

        assert result.outcome == WebhookOutcome.PROCESSED
        assert active_subscription.status == S.PAST_DUE.value
        assert engine.get_payment_state(negocio.id).estado == EstadoPago.VENCIDO
        assert negocio.cuenta_activa is False

    def test_invoice_paid_refreshes_period(self, engine, active_subscription, provider, clock):
        now = clock()
        provider.update_remote("sub_local_1", current_period_start=now, current_period_end=now + days(30))

        engine.apply_invoice_paid("evt_5", now, "in_renewal", "sub_local_1")

        assert active_subscription.current_period_end == now + days(30)

    def test_invoice_paid_twice_is_ignored(self, engine, active_subscription, clock):
        now = clock()
        engine.apply_invoice_paid("evt_6", now, "in_x", "sub_local_1")

        result = engine.apply_invoice_paid("evt_7", now, "in_x", "sub_local_1")
        assert result.outcome == WebhookOutcome.IGNORED

    def test_rejected_transition_is_audited(self, engine, db_session, negocio, clock):
        now = clock()
        subscription = make_subscription(
            db_session, negocio, S.CANCELED, now - days(40), now - days(10), ended_at=now - days(10)
        )

        result = engine.apply_invoice_paid("evt_8", now, "in_late", "sub_local_1")

        assert result.outcome == WebhookOutcome.IGNORED
        assert subscription.status == S.CANCELED.value
        rejected = _events(db_session, negocio.id, BillingEventType.TRANSITION_REJECTED)
        assert [(e.from_status, e.to_status) for e in rejected] == [("CANCELED", "ACTIVE")]

    def test_unknown_subscription_is_unresolved(self, engine):
        result = engine.apply_invoice_paid("evt_9", None, "in_1", "sub_nobody")
        assert result.outcome == WebhookOutcome.UNRESOLVED

    def test_subscription_deleted(self, engine, active_subscription, negocio, clock):
        result = engine.apply_subscription_deleted("evt_10", clock(), "sub_local_1")

        assert result.outcome == WebhookOutcome.PROCESSED
        assert active_subscription.status == S.CANCELED.value
        assert active_subscription.ended_at == clock()
        assert engine.get_payment_state(negocio.id).estado == EstadoPago.VENCIDO

    def test_subscription_updated_mirrors_snapshot(self, engine, active_subscription, provider, clock):
        now = clock()
        snapshot = provider.update_remote(
            "sub_local_1", status=S.PAST_DUE, price_id="price_premium", cancel_at_period_end=True
        )

        result = engine.apply_subscription_updated("evt_11", now, snapshot)

        assert result.outcome == WebhookOutcome.PROCESSED
        assert active_subscription.status == S.PAST_DUE.value
        assert active_subscription.plan == "premium"
        assert active_subscription.cancel_at_period_end is True


class TestExpiry:
    """Tests for expire_if_due and resync."""

    def test_registration_trial_lapse_deactivates(self, engine, db_session, clock):
        negocio = make_negocio(db_session, clock())
        clock.advance(days=7, seconds=1)

        result = engine.expire_if_due(negocio.id)

        assert result.deactivated
        assert result.after.estado == EstadoPago.PENDIENTE_PAGO
        assert negocio.cuenta_activa is False
        assert negocio.en_periodo_prueba is False
        assert len(_events(db_session, negocio.id, BillingEventType.TRIAL_EXPIRED)) == 1

    def test_provider_trial_lapse_uses_configured_status(self, engine, db_session, negocio, provider, clock):
        now = clock()
        subscription = make_subscription(
            db_session, negocio, S.TRIALING, now - days(7), now + days(1), trial_end=now + days(1)
        )
        mirror_in_provider(provider, subscription)
        clock.advance(days=2)

        engine.expire_if_due(negocio.id)

        assert subscription.status == S.PAST_DUE.value

    def test_renewed_period_is_picked_up_from_provider(self, engine, active_subscription, provider, clock):
        clock.advance(days=11)
        now = clock()
        provider.update_remote("sub_local_1", current_period_start=now - days(1), current_period_end=now + days(29))

        result = engine.expire_if_due(active_subscription.tenant_id)

        assert not result.deactivated
        assert active_subscription.status == S.ACTIVE.value
        assert active_subscription.current_period_end == now + days(29)

    def test_unrenewed_period_becomes_past_due(self, engine, active_subscription, clock):
        clock.advance(days=11)

        result = engine.expire_if_due(active_subscription.tenant_id)

        assert result.deactivated
        assert active_subscription.status == S.PAST_DUE.value

    def test_provider_outage_propagates_and_keeps_state(self, engine, active_subscription, provider, clock):
        clock.advance(days=11)
        provider.fail_next()

        with pytest.raises(ProviderError):
            engine.expire_if_due(active_subscription.tenant_id)

        engine.db.expire_all()
        assert engine.subscriptions.get_by_tenant(active_subscription.tenant_id).status == S.ACTIVE.value

    def test_fresh_state_falls_back_to_stale_on_provider_error(self, engine, active_subscription, provider, clock):
        clock.advance(days=11)
        provider.fail_next()

        state = engine.get_fresh_payment_state(active_subscription.tenant_id)

        assert state.estado == EstadoPago.ACTIVO
        assert state.requiere_sincronizacion

    def test_resync_flags_out_of_table_transition(self, engine, db_session, negocio, provider, clock):
        now = clock()
        subscription = make_subscription(
            db_session, negocio, S.CANCELED, now - days(40), now - days(10), ended_at=now - days(10)
        )
        mirror_in_provider(
            provider, subscription, status=S.ACTIVE, ended_at=None, current_period_end=now + days(20)
        )

        engine.resync_from_provider(negocio.id)

        assert subscription.status == S.ACTIVE.value
        resynced = _events(db_session, negocio.id, BillingEventType.SUBSCRIPTION_RESYNCED)
        assert resynced[0].extra_metadata == {"warning": "invalid_transition"}


class TestInvoices:

    def test_lists_newest_first(self, engine, negocio, provider, clock):
        now = clock()
        for number, age in (("in_old", 60), ("in_new", 1), ("in_mid", 30)):
            provider.invoices[number] = InvoiceSnapshot(
                id=number,
                customer_id="cus_local_1",
                subscription_id="sub_local_1",
                status="paid",
                created=now - days(age),
            )

        invoices = engine.list_invoices(negocio.id, limit=2)

        assert [invoice.id for invoice in invoices] == ["in_new", "in_mid"]

    def test_no_customer_means_no_invoices(self, engine, db_session, clock):
        negocio = make_negocio(db_session, clock())

        assert engine.list_invoices(negocio.id) == []
        assert engine.get_upcoming_invoice(negocio.id) is None
