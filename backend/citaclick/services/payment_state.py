"""
AccountPaymentState: the user-facing subscription status of a negocio.

Derived on demand from the negocio's registration trial and its
subscription record; never stored. The access gate, the info endpoint and
the notification sweep all consume this one derivation.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from citaclick.models.negocio import Negocio
from citaclick.models.subscription import Subscription, SubscriptionStatus

SECONDS_PER_DAY = 86400
RENEWAL_WARNING_DAYS = 5


class EstadoPago(str, Enum):
    TRIAL = "trial"
    ACTIVO = "activo"
    VENCIDO = "vencido"
    SUSPENDIDO = "suspendido"
    PENDIENTE_PAGO = "pendiente_pago"


ACCESS_GRANTING_STATES = frozenset({EstadoPago.TRIAL, EstadoPago.ACTIVO})


def days_until(moment: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days from now until moment, rounded up and clamped at zero."""
    if moment is None:
        return None
    seconds = (moment - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


@dataclass(frozen=True)
class AccountPaymentState:
    """
    Derived payment state.

    dias_restantes counts days left in the trial (trial) or until renewal
    (activo). requiere_sincronizacion flags an ACTIVE record whose period
    has already ended locally, which must be re-read from the provider.
    """
    estado: EstadoPago
    dias_restantes: Optional[int] = None
    fecha_limite: Optional[datetime] = None
    requiere_sincronizacion: bool = False
    prueba_vencida: bool = False
    cancelacion_programada: bool = False

    @property
    def allows_access(self) -> bool:
        return self.estado in ACCESS_GRANTING_STATES

    @property
    def mensaje(self) -> str:
        return status_message(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado.value,
            "dias_restantes": self.dias_restantes,
            "fecha_limite": self.fecha_limite.isoformat() if self.fecha_limite else None,
            "requiere_sincronizacion": self.requiere_sincronizacion,
            "cancelacion_programada": self.cancelacion_programada,
            "acceso_permitido": self.allows_access,
            "mensaje": self.mensaje,
        }


def status_message(state: AccountPaymentState) -> str:
    """Informational message shown in the subscription banner."""
    dias = state.dias_restantes

    if state.estado == EstadoPago.VENCIDO:
        return "Tu suscripción ha vencido. Por favor, realiza el pago para continuar usando el servicio."
    if state.estado == EstadoPago.SUSPENDIDO:
        return "Tu cuenta está suspendida. Contacta con soporte para más información."
    if state.estado == EstadoPago.PENDIENTE_PAGO:
        if state.prueba_vencida:
            return "Tu período de prueba ha terminado. Realiza tu pago para activar tu suscripción."
        return "Tu cuenta requiere un pago inicial para activarse."

    if state.estado == EstadoPago.TRIAL:
        if dias is None:
            return "Estás en tu período de prueba gratuita."
        if dias == 0:
            return "Tu período de prueba termina hoy. ¡No olvides realizar tu pago!"
        if dias == 1:
            return "Tu período de prueba termina mañana. Realiza tu pago para continuar sin interrupciones."
        return f"Te quedan {dias} días de prueba gratuita."

    if dias is not None and dias <= RENEWAL_WARNING_DAYS:
        if dias == 0:
            return "Tu suscripción vence hoy. Por favor, realiza el pago para continuar."
        if dias == 1:
            return "Tu suscripción vence mañana. Realiza tu pago para evitar interrupciones."
        return f"Tu suscripción vence en {dias} días. Prepara tu pago."
    return "Tu suscripción está activa. ¡Todo está en orden!"


def access_denied_message(state: AccountPaymentState) -> str:
    """Message returned by the access gate when it blocks a request."""
    if state.prueba_vencida:
        return "Tu periodo de prueba ha vencido. Por favor, selecciona un plan para continuar."
    if state.estado == EstadoPago.VENCIDO:
        return "Tu suscripción ha vencido. Por favor, realiza el pago para reactivar tu cuenta."
    if state.estado == EstadoPago.SUSPENDIDO:
        return "Tu cuenta ha sido suspendida. Contacta soporte para más información."
    if state.estado == EstadoPago.PENDIENTE_PAGO:
        return "Debes completar el pago para activar tu cuenta Premium."
    return "Tu cuenta no está activa. Por favor, actualiza tu método de pago."


def compute_payment_state(
    negocio: Negocio,
    subscription: Optional[Subscription],
    now: datetime,
    paid_upfront_plans: Iterable[str] = ("premium",),
    lapsed_trial_state: str = EstadoPago.PENDIENTE_PAGO.value,
) -> AccountPaymentState:
    """
    Derive the AccountPaymentState of a negocio at `now`.

    Args:
        negocio: The negocio (registration trial, suspension flag)
        subscription: Its subscription record, if any
        now: Aware UTC timestamp
        paid_upfront_plans: Plans that require payment before any access
        lapsed_trial_state: Estado of a negocio whose registration trial ran
            out before any subscription existed

    Returns:
        AccountPaymentState
    """
    if negocio.suspendido:
        return AccountPaymentState(estado=EstadoPago.SUSPENDIDO)

    if subscription is None:
        return _registration_state(negocio, now, paid_upfront_plans, lapsed_trial_state)

    status = SubscriptionStatus(subscription.status)
    period_end = subscription.current_period_end

    if status == SubscriptionStatus.TRIALING:
        trial_end = subscription.trial_end or period_end
        if trial_end is None or now <= trial_end:
            return AccountPaymentState(
                estado=EstadoPago.TRIAL,
                dias_restantes=days_until(trial_end, now),
                fecha_limite=trial_end,
                cancelacion_programada=bool(subscription.cancel_at_period_end),
            )
        return AccountPaymentState(
            estado=EstadoPago.VENCIDO, fecha_limite=trial_end, prueba_vencida=True
        )

    if status == SubscriptionStatus.ACTIVE:
        if period_end is not None and period_end <= now:
            if subscription.cancel_at_period_end:
                return AccountPaymentState(estado=EstadoPago.VENCIDO, fecha_limite=period_end)
            return AccountPaymentState(
                estado=EstadoPago.ACTIVO,
                dias_restantes=0,
                fecha_limite=period_end,
                requiere_sincronizacion=True,
            )
        return AccountPaymentState(
            estado=EstadoPago.ACTIVO,
            dias_restantes=days_until(period_end, now),
            fecha_limite=period_end,
            requiere_sincronizacion=period_end is None,
            cancelacion_programada=bool(subscription.cancel_at_period_end),
        )

    if status == SubscriptionStatus.PAST_DUE:
        return AccountPaymentState(estado=EstadoPago.VENCIDO, fecha_limite=period_end)

    if status == SubscriptionStatus.INCOMPLETE:
        return AccountPaymentState(estado=EstadoPago.PENDIENTE_PAGO)

    # CANCELED: access continues only while a paid period is still running
    ended_at = subscription.ended_at
    if ended_at is not None and now < ended_at:
        return AccountPaymentState(
            estado=EstadoPago.ACTIVO,
            dias_restantes=days_until(ended_at, now),
            fecha_limite=ended_at,
            cancelacion_programada=True,
        )
    if (
        ended_at is None
        and subscription.cancel_at_period_end
        and period_end is not None
        and period_end > now
    ):
        return AccountPaymentState(
            estado=EstadoPago.ACTIVO,
            dias_restantes=days_until(period_end, now),
            fecha_limite=period_end,
            cancelacion_programada=True,
        )
    return AccountPaymentState(estado=EstadoPago.VENCIDO, fecha_limite=ended_at or period_end)


def _registration_state(
    negocio: Negocio,
    now: datetime,
    paid_upfront_plans: Iterable[str],
    lapsed_trial_state: str,
) -> AccountPaymentState:
    trial_end = negocio.fecha_fin_prueba

    if trial_end is None:
        # Paid-upfront plans never had a trial; anything else without a
        # trial end date has nothing granting access either.
        return AccountPaymentState(estado=EstadoPago.PENDIENTE_PAGO)

    if now <= trial_end:
        return AccountPaymentState(
            estado=EstadoPago.TRIAL,
            dias_restantes=days_until(trial_end, now),
            fecha_limite=trial_end,
        )

    if negocio.plan in set(paid_upfront_plans):
        return AccountPaymentState(estado=EstadoPago.PENDIENTE_PAGO, fecha_limite=trial_end)

    return AccountPaymentState(
        estado=EstadoPago(lapsed_trial_state),
        fecha_limite=trial_end,
        prueba_vencida=True,
    )
