"""
Billing configuration loaded from the environment.

All subscription, provider and scheduler knobs live here so that policy
(trial length, what happens after a trial expires, notice thresholds, sweep
times) is configuration rather than code.

Usage:
    from citaclick.config.billing_settings import get_billing_settings

    settings = get_billing_settings()
    settings.registration_trial_days  # 7
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import time
from threading import Lock
from typing import Dict, FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

TRIAL_EXPIRY_STATUSES = ("past_due", "canceled")
LAPSED_TRIAL_STATES = ("pendiente_pago", "vencido")
PENDING_PAYMENT_ACCESS_MODES = ("blocked", "read_only")


def _parse_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _parse_choice(name: str, default: str, choices: Tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {choices}, got {value!r}")
    return value


def _parse_time(name: str, default: str) -> time:
    raw = os.getenv(name, default).strip()
    try:
        hours, minutes = raw.split(":")
        return time(hour=int(hours), minute=int(minutes))
    except ValueError:
        raise ValueError(f"{name} must be HH:MM, got {raw!r}")


def _parse_int_set(name: str, default: str) -> FrozenSet[int]:
    raw = os.getenv(name, default)
    try:
        return frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ValueError(f"{name} must be a comma separated list of integers, got {raw!r}")


def _parse_str_set(name: str, default: str) -> FrozenSet[str]:
    raw = os.getenv(name, default)
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class BillingSettings:
    """Immutable billing configuration snapshot."""

    # Registration trial policy
    registration_trial_days: int = 7
    paid_upfront_plans: FrozenSet[str] = frozenset({"premium"})
    trial_expiry_status: str = "past_due"
    lapsed_trial_state: str = "pendiente_pago"
    pending_payment_access: str = "blocked"
    manual_activation_days: int = 30

    # Notifications
    trial_notice_days: FrozenSet[int] = frozenset({0, 1})
    renewal_notice_days: int = 5

    # Database
    database_url: str = field(default="", repr=False)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_recycle_seconds: int = 1800

    # Scheduler
    expiry_sweep_at: time = time(3, 0)
    notification_sweep_at: time = time(9, 0)
    sweep_timezone: str = "America/Mexico_City"
    sweep_max_seconds: int = 600

    # Billing provider
    provider_base_url: str = "https://api.stripe.com/v1"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 30.0
    provider_connect_timeout_seconds: float = 10.0
    provider_max_retries: int = 3
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    price_ids: Dict[str, str] = field(default_factory=lambda: {
        "basico": "price_basico",
        "profesional": "price_profesional",
        "premium": "price_premium",
    })

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.sweep_timezone)

    def price_id_for(self, plan: str) -> str:
        try:
            return self.price_ids[plan]
        except KeyError:
            raise ValueError(f"No price configured for plan {plan!r}")

    def plan_for_price(self, price_id: Optional[str]) -> Optional[str]:
        for plan, configured in self.price_ids.items():
            if configured == price_id:
                return plan
        return None


def load_billing_settings() -> BillingSettings:
    """
    Build settings from environment variables.

    Raises:
        ValueError: If any variable is present but malformed
    """
    settings = BillingSettings(
        registration_trial_days=_parse_int("REGISTRATION_TRIAL_DAYS", 7),
        paid_upfront_plans=_parse_str_set("PAID_UPFRONT_PLANS", "premium"),
        trial_expiry_status=_parse_choice(
            "TRIAL_EXPIRY_STATUS", "past_due", TRIAL_EXPIRY_STATUSES
        ),
        lapsed_trial_state=_parse_choice(
            "LAPSED_TRIAL_STATE", "pendiente_pago", LAPSED_TRIAL_STATES
        ),
        pending_payment_access=_parse_choice(
            "PENDING_PAYMENT_ACCESS", "blocked", PENDING_PAYMENT_ACCESS_MODES
        ),
        manual_activation_days=_parse_int("MANUAL_ACTIVATION_DAYS", 30, minimum=1),
        trial_notice_days=_parse_int_set("TRIAL_NOTICE_DAYS", "0,1"),
        renewal_notice_days=_parse_int("RENEWAL_NOTICE_DAYS", 5),
        database_url=os.getenv("DATABASE_URL", "").strip(),
        db_pool_size=_parse_int("DB_POOL_SIZE", 5, minimum=1),
        db_max_overflow=_parse_int("DB_MAX_OVERFLOW", 10),
        db_pool_recycle_seconds=_parse_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=1),
        expiry_sweep_at=_parse_time("EXPIRY_SWEEP_AT", "03:00"),
        notification_sweep_at=_parse_time("NOTIFICATION_SWEEP_AT", "09:00"),
        sweep_timezone=os.getenv("SWEEP_TIMEZONE", "America/Mexico_City"),
        sweep_max_seconds=_parse_int("SWEEP_MAX_SECONDS", 600, minimum=1),
        provider_base_url=os.getenv(
            "BILLING_PROVIDER_BASE_URL", "https://api.stripe.com/v1"
        ).rstrip("/"),
        provider_api_key=os.getenv("BILLING_PROVIDER_API_KEY", ""),
        provider_timeout_seconds=_parse_float("BILLING_PROVIDER_TIMEOUT", 30.0),
        provider_connect_timeout_seconds=_parse_float("BILLING_PROVIDER_CONNECT_TIMEOUT", 10.0),
        provider_max_retries=_parse_int("BILLING_PROVIDER_MAX_RETRIES", 3),
        webhook_secret=os.getenv("BILLING_WEBHOOK_SECRET", ""),
        webhook_tolerance_seconds=_parse_int("BILLING_WEBHOOK_TOLERANCE", 300),
        price_ids={
            "basico": os.getenv("PRICE_ID_BASICO", "price_basico"),
            "profesional": os.getenv("PRICE_ID_PROFESIONAL", "price_profesional"),
            "premium": os.getenv("PRICE_ID_PREMIUM", "price_premium"),
        },
    )

    try:
        settings.tzinfo
    except ZoneInfoNotFoundError:
        raise ValueError(f"SWEEP_TIMEZONE is not a known timezone: {settings.sweep_timezone!r}")

    return settings


_settings: Optional[BillingSettings] = None
_settings_lock = Lock()


def get_billing_settings() -> BillingSettings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = load_billing_settings()
                logger.info("Billing settings loaded", extra={
                    "registration_trial_days": _settings.registration_trial_days,
                    "trial_expiry_status": _settings.trial_expiry_status,
                    "lapsed_trial_state": _settings.lapsed_trial_state,
                    "pending_payment_access": _settings.pending_payment_access,
                    "provider_configured": bool(_settings.provider_api_key),
                })
    return _settings


def reset_billing_settings() -> None:
    """Drop the cached settings (for tests)."""
    global _settings
    with _settings_lock:
        _settings = None
