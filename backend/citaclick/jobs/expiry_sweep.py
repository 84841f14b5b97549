"""
Subscription expiry sweep.

Runs daily to apply date-driven transitions that no webhook announces:
lapsed trials, periods that ended without a renewal, scheduled
cancellations reaching period end. Stale ACTIVE records are re-read from
the billing provider before they are marked past due.

One negocio failing never stops the sweep; the run is bounded by
SWEEP_MAX_SECONDS and stops early (truncated) when the budget is spent.

Usage:
    python -m citaclick.jobs.expiry_sweep
"""

import sys
import time
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from citaclick.repositories.negocio_repository import NegocioRepository
from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine

logger = logging.getLogger(__name__)


class ExpirySweepStats:
    """Track expiry sweep run statistics."""

    def __init__(self, run_at: datetime):
        self.run_at = run_at
        self.negocios_checked = 0
        self.deactivated = 0
        self.errors = 0
        self.truncated = False
        self.deactivated_tenants: List[str] = []
        self.start_time = time.monotonic()

    def to_dict(self) -> dict:
        return {
            "run_at": self.run_at.isoformat(),
            "negocios_checked": self.negocios_checked,
            "deactivated": self.deactivated,
            "errors": self.errors,
            "truncated": self.truncated,
            "duration_seconds": round(time.monotonic() - self.start_time, 3),
        }


def run_expiry_sweep(
    db: Session,
    engine: SubscriptionLifecycleEngine,
    now: Optional[datetime] = None,
    max_seconds: Optional[float] = None,
    timer: Callable[[], float] = time.monotonic,
) -> ExpirySweepStats:
    """
    Run expire_if_due for every negocio.

    Args:
        db: Database session (the engine's session)
        engine: Lifecycle engine
        now: Run timestamp for the stats (defaults to the engine clock)
        max_seconds: Time budget (defaults to settings.sweep_max_seconds)
        timer: Monotonic time source

    Returns:
        ExpirySweepStats
    """
    stats = ExpirySweepStats(now or engine.clock())
    budget = engine.settings.sweep_max_seconds if max_seconds is None else max_seconds
    started = timer()

    tenant_ids = NegocioRepository(db).list_ids()
    logger.info("Starting expiry sweep", extra={"negocio_count": len(tenant_ids)})

    for index, tenant_id in enumerate(tenant_ids):
        if timer() - started > budget:
            stats.truncated = True
            logger.warning("Expiry sweep truncated", extra={
                "processed": index,
                "remaining": len(tenant_ids) - index,
                "max_seconds": budget,
            })
            break

        stats.negocios_checked += 1
        try:
            result = engine.expire_if_due(tenant_id)
            if result.deactivated:
                stats.deactivated += 1
                stats.deactivated_tenants.append(tenant_id)
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.error("Expiry check failed for negocio", extra={
                "tenant_id": tenant_id,
            }, exc_info=True)

    logger.info("Expiry sweep completed", extra=stats.to_dict())
    return stats


def main():
    """Entry point for running the expiry sweep from the command line."""
    from citaclick.database.session import session_scope
    from citaclick.services.lifecycle_engine import build_lifecycle_engine

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        with session_scope() as db:
            stats = run_expiry_sweep(db, build_lifecycle_engine(db))
            print(f"Expiry sweep completed: {stats.to_dict()}")
        sys.exit(0)
    except Exception as e:
        logger.error("Expiry sweep failed", exc_info=True)
        print(f"Expiry sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
