"""
scheduler.py
Background jobs: membership sweep (hourly + midnight) and payment reminders (daily).

The handle is created once at process start and passed to whoever needs "run now";
each job runs under a lease so a slow run is never overlapped by the next trigger.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

import utils
from reminders import ReminderDispatcher, ReminderSummary
from sweeper import MembershipSweeper, SweepSummary

log = logging.getLogger(__name__)

INITIAL_SWEEP_DELAY_SECONDS = 5


class JobLease:
    """At most one holder at a time; a second caller is turned away instead of queued."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self.last_started_at: datetime | None = None
        self.last_result = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def run(self, fn: Callable, now: datetime | None = None):
        if not self._lock.acquire(blocking=False):
            log.warning("Job %s is still running; skipping this trigger", self.name)
            return None
        try:
            self.last_started_at = now or utils.utcnow()
            self.last_result = fn()
            return self.last_result
        finally:
            self._lock.release()


class SchedulerHandle:
    def __init__(
        self,
        sweeper: MembershipSweeper,
        dispatcher: ReminderDispatcher,
        *,
        timezone: str,
        reminder_hour: int = 9,
        reminder_minute: int = 0,
    ):
        self.sweeper = sweeper
        self.dispatcher = dispatcher
        self.timezone = timezone
        self.sweep_lease = JobLease("membership-sweep")
        self.reminder_lease = JobLease("payment-reminders")
        self._scheduler = BackgroundScheduler(timezone=timezone)

        job_defaults = {"max_instances": 1, "coalesce": True, "replace_existing": True}
        self._scheduler.add_job(
            self.run_sweep_now, CronTrigger(minute=0, timezone=timezone), id="sweep-hourly", **job_defaults
        )
        self._scheduler.add_job(
            self.run_sweep_now, CronTrigger(hour=0, minute=0, timezone=timezone), id="sweep-daily", **job_defaults
        )
        self._scheduler.add_job(
            self.run_reminders_now,
            CronTrigger(hour=reminder_hour, minute=reminder_minute, timezone=timezone),
            id="reminders-daily",
            **job_defaults,
        )

    @property
    def started(self) -> bool:
        return self._scheduler.running

    def start(self, *, sweep_on_startup: bool = True) -> None:
        if self._scheduler.running:
            log.warning("Scheduler already running")
            return
        if sweep_on_startup:
            self._scheduler.add_job(
                self.run_sweep_now,
                "date",
                run_date=utils.utcnow() + timedelta(seconds=INITIAL_SWEEP_DELAY_SECONDS),
                id="sweep-startup",
                replace_existing=True,
            )
        self._scheduler.start()
        log.info("Scheduler started (%s): sweep hourly + midnight, reminders daily", self.timezone)

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("Scheduler stopped")

    def run_sweep_now(self) -> SweepSummary | None:
        return self.sweep_lease.run(self.sweeper.sweep)

    def run_reminders_now(self) -> ReminderSummary | None:
        return self.reminder_lease.run(self.dispatcher.run_reminder_sweep)

    def next_run_times(self) -> dict[str, datetime | None]:
        return {job.id: getattr(job, "next_run_time", None) for job in self._scheduler.get_jobs()}
