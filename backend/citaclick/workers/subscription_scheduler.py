"""
Subscription Scheduler Worker.

Runs the daily reconciliation sweeps at fixed local times:
- expiry sweep        (EXPIRY_SWEEP_AT, default 03:00)
- notification sweep  (NOTIFICATION_SWEEP_AT, default 09:00)

Times are in SWEEP_TIMEZONE (default America/Mexico_City). Each run
executes on a background thread with its own database session; a job
still running when its next slot comes up is not started twice.

Run as: python -m citaclick.workers.subscription_scheduler

Configuration:
- SCHEDULER_POLL_INTERVAL: Seconds between schedule checks (default: 30)
"""

import os
import signal
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from citaclick.config.billing_settings import BillingSettings
from citaclick.integrations.billing.provider import BillingProvider
from citaclick.jobs.expiry_sweep import run_expiry_sweep
from citaclick.jobs.notification_sweep import run_notification_sweep
from citaclick.services.lifecycle_engine import build_lifecycle_engine
from citaclick.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

POLL_INTERVAL = int(os.getenv("SCHEDULER_POLL_INTERVAL", "30"))

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Shutdown signal received", extra={"signal": signum})
    _shutdown = True


def next_run_at(at: dtime, tz: ZoneInfo, now: datetime) -> datetime:
    """Next occurrence of local time `at` strictly after `now`, in UTC."""
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), at, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), at, tzinfo=tz)
    return candidate.astimezone(timezone.utc)


@dataclass
class DailySchedule:
    name: str
    at: dtime
    run: Callable[[], dict]


class SubscriptionScheduler:
    """
    Fires daily jobs on a thread pool without overlapping runs of the same job.

    tick() is driven by the worker loop (or by tests with an explicit now).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: BillingSettings,
        dispatcher: NotificationDispatcher,
        provider: Optional[BillingProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_workers: int = 2,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.dispatcher = dispatcher
        self.provider = provider
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.schedules = [
            DailySchedule("expiry_sweep", settings.expiry_sweep_at, self.run_expiry_sweep),
            DailySchedule("notification_sweep", settings.notification_sweep_at, self.run_notification_sweep),
        ]
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="subscription-sweep")
        self._futures: Dict[str, Future] = {}
        now = self.clock()
        self.next_runs: Dict[str, datetime] = {
            schedule.name: next_run_at(schedule.at, settings.tzinfo, now)
            for schedule in self.schedules
        }

    def _engine(self, db: Session):
        return build_lifecycle_engine(db, provider=self.provider, settings=self.settings, clock=self.clock)

    def run_expiry_sweep(self) -> dict:
        db = self.session_factory()
        try:
            return run_expiry_sweep(db, self._engine(db)).to_dict()
        finally:
            db.close()

    def run_notification_sweep(self) -> dict:
        db = self.session_factory()
        try:
            return run_notification_sweep(db, self._engine(db), self.dispatcher).to_dict()
        finally:
            db.close()

    def _run_job(self, schedule: DailySchedule) -> Optional[dict]:
        logger.info("Scheduled job started", extra={"job": schedule.name})
        try:
            result = schedule.run()
        except Exception:
            logger.error("Scheduled job failed", extra={"job": schedule.name}, exc_info=True)
            return None
        logger.info("Scheduled job completed", extra={"job": schedule.name, "result": result})
        return result

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Submit every job whose slot has come.

        Returns:
            Names of the jobs submitted
        """
        now = now or self.clock()
        submitted = []
        for schedule in self.schedules:
            if now < self.next_runs[schedule.name]:
                continue

            running = self._futures.get(schedule.name)
            if running is not None and not running.done():
                logger.warning("Previous run still in progress, skipping slot", extra={
                    "job": schedule.name,
                })
            else:
                self._futures[schedule.name] = self._executor.submit(self._run_job, schedule)
                submitted.append(schedule.name)

            self.next_runs[schedule.name] = next_run_at(schedule.at, self.settings.tzinfo, now)
        return submitted

    def wait(self, name: str, timeout: Optional[float] = None) -> Optional[dict]:
        """Block until the latest run of a job finishes; returns its stats."""
        future = self._futures.get(name)
        return future.result(timeout=timeout) if future is not None else None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def main():
    from citaclick.config.billing_settings import get_billing_settings
    from citaclick.database.session import dispose_engine, get_session_factory
    from citaclick.services.notification_dispatcher import get_notification_dispatcher

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    settings = get_billing_settings()
    scheduler = SubscriptionScheduler(
        get_session_factory(),
        settings,
        get_notification_dispatcher(),
    )
    logger.info(
        "Subscription scheduler started",
        extra={
            "poll_interval": POLL_INTERVAL,
            "timezone": settings.sweep_timezone,
            "next_runs": {name: at.isoformat() for name, at in scheduler.next_runs.items()},
        },
    )

    while not _shutdown:
        scheduler.tick()
        for _ in range(POLL_INTERVAL):
            if _shutdown:
                break
            time.sleep(1)

    scheduler.shutdown(wait=True)
    dispose_engine()
    logger.info("Subscription scheduler stopped")


if __name__ == "__main__":
    main()
