"""
Subscription notice sweep.

Runs daily and emits notice triggers through the NotificationDispatcher:
- trial_ending: registration or provider trial ends in trial_notice_days days
- renewal_due:  activo negocio whose period ends within renewal_notice_days
                days (skipped when the cancellation is already scheduled)
- expired:      once per lapse, the first run that finds the negocio lapsed

Each notice is claimed by inserting a SubscriptionNotice row unique per
(tenant, kind, local date) before dispatch, so a re-run on the same day
sends nothing twice. A failed dispatch rolls its claim back and a later
run may retry.

Usage:
    python -m citaclick.jobs.notification_sweep
"""

import sys
import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from citaclick.config.billing_settings import BillingSettings
from citaclick.models.negocio import Negocio
from citaclick.models.subscription import Subscription
from citaclick.models.subscription_notice import NoticeKind, SubscriptionNotice
from citaclick.repositories.negocio_repository import NegocioRepository
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine
from citaclick.services.notification_dispatcher import (
    NotificationDispatcher,
    SubscriptionNoticeTrigger,
    notice_subject,
)
from citaclick.services.payment_state import AccountPaymentState, EstadoPago

logger = logging.getLogger(__name__)

SENT = "sent"
ALREADY_SENT = "already_sent"
FAILED = "failed"


class NotificationSweepStats:
    """Track notice sweep run statistics."""

    def __init__(self, notice_date: date):
        self.notice_date = notice_date
        self.negocios_checked = 0
        self.sent = 0
        self.already_sent = 0
        self.failed = 0
        self.errors = 0

    def to_dict(self) -> dict:
        return {
            "notice_date": self.notice_date.isoformat(),
            "negocios_checked": self.negocios_checked,
            "sent": self.sent,
            "already_sent": self.already_sent,
            "failed": self.failed,
            "errors": self.errors,
        }


def _is_lapsed(state: AccountPaymentState) -> bool:
    return state.estado == EstadoPago.VENCIDO or state.prueba_vencida


def _expired_notice_due(
    db: Session,
    tenant_id: str,
    state: AccountPaymentState,
    settings: BillingSettings,
) -> bool:
    """True unless an expired notice already went out for the current lapse."""
    query = db.query(SubscriptionNotice.id).filter(
        SubscriptionNotice.tenant_id == tenant_id,
        SubscriptionNotice.kind == NoticeKind.EXPIRED,
    )
    if state.fecha_limite is not None:
        lapse_date = state.fecha_limite.astimezone(settings.tzinfo).date()
        query = query.filter(SubscriptionNotice.notice_date >= lapse_date)
    return query.first() is None


def select_notice(
    db: Session,
    negocio: Negocio,
    subscription: Optional[Subscription],
    state: AccountPaymentState,
    settings: BillingSettings,
) -> Optional[str]:
    """Notice kind due for a negocio today, if any."""
    dias = state.dias_restantes

    if state.estado == EstadoPago.TRIAL:
        if dias is not None and dias in settings.trial_notice_days:
            return NoticeKind.TRIAL_ENDING
        return None

    if state.estado == EstadoPago.ACTIVO:
        if state.cancelacion_programada or state.requiere_sincronizacion:
            return None
        if subscription is not None and subscription.cancel_at_period_end:
            return None
        if dias is not None and 0 <= dias <= settings.renewal_notice_days:
            return NoticeKind.RENEWAL_DUE
        return None

    if _is_lapsed(state) and _expired_notice_due(db, negocio.id, state, settings):
        return NoticeKind.EXPIRED
    return None


def _claim_and_send(
    db: Session,
    dispatcher: NotificationDispatcher,
    trigger: SubscriptionNoticeTrigger,
    now: datetime,
) -> str:
    claim = SubscriptionNotice(
        tenant_id=trigger.tenant_id,
        kind=trigger.kind,
        notice_date=trigger.notice_date,
        days_remaining=trigger.days_remaining,
        sent_at=now,
    )
    db.add(claim)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return ALREADY_SENT

    try:
        delivered = dispatcher.send(trigger)
    except Exception:
        db.rollback()
        logger.error("Notice dispatch failed", extra={
            "tenant_id": trigger.tenant_id,
            "kind": trigger.kind,
        }, exc_info=True)
        return FAILED

    if not delivered:
        db.rollback()
        logger.warning("Notice not accepted by dispatcher", extra={
            "tenant_id": trigger.tenant_id,
            "kind": trigger.kind,
        })
        return FAILED

    db.commit()
    return SENT


def run_notification_sweep(
    db: Session,
    engine: SubscriptionLifecycleEngine,
    dispatcher: NotificationDispatcher,
    now: Optional[datetime] = None,
) -> NotificationSweepStats:
    """
    Emit the notices due today for every negocio.

    Args:
        db: Database session (the engine's session)
        engine: Lifecycle engine (payment state derivation and settings)
        dispatcher: Notice delivery
        now: Aware run timestamp (defaults to the engine clock)

    Returns:
        NotificationSweepStats
    """
    settings = engine.settings
    now = now or engine.clock()
    notice_date = now.astimezone(settings.tzinfo).date()
    stats = NotificationSweepStats(notice_date)

    for negocio, subscription in NegocioRepository(db).list_with_subscription_state():
        stats.negocios_checked += 1
        tenant_id = negocio.id
        try:
            state = engine.compute_payment_state(negocio, subscription, now)
            kind = select_notice(db, negocio, subscription, state, settings)
            if kind is None:
                continue

            days_remaining = state.dias_restantes if kind != NoticeKind.EXPIRED else None
            trigger = SubscriptionNoticeTrigger(
                tenant_id=tenant_id,
                kind=kind,
                notice_date=notice_date,
                to_email=negocio.email,
                to_name=negocio.nombre,
                subject=notice_subject(kind, days_remaining),
                days_remaining=days_remaining,
                plan=negocio.plan,
            )
            outcome = _claim_and_send(db, dispatcher, trigger, now)
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.error("Notice evaluation failed for negocio", extra={
                "tenant_id": tenant_id,
            }, exc_info=True)
            continue

        if outcome == SENT:
            stats.sent += 1
        elif outcome == ALREADY_SENT:
            stats.already_sent += 1
        else:
            stats.failed += 1

    logger.info("Notification sweep completed", extra=stats.to_dict())
    return stats


def main():
    """Entry point for running the notice sweep from the command line."""
    from citaclick.database.session import session_scope
    from citaclick.services.lifecycle_engine import build_lifecycle_engine
    from citaclick.services.notification_dispatcher import get_notification_dispatcher

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        with session_scope() as db:
            stats = run_notification_sweep(db, build_lifecycle_engine(db), get_notification_dispatcher())
            print(f"Notification sweep completed: {stats.to_dict()}")
        sys.exit(0)
    except Exception as e:
        logger.error("Notification sweep failed", exc_info=True)
        print(f"Notification sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
