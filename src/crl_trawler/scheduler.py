"""
Scheduler — periodic execution of the CRL sync cycle.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling on a fixed interval (poll_interval_minutes).

  - One cycle at a time: max_instances=1, missed runs coalesced.
  - Before every cycle the configuration file is re-read if it changed; a
    changed interval is applied by rescheduling after that cycle.
  - A cycle that raises is logged; the next one still runs.

Graceful shutdown: SIGINT/SIGTERM stop the scheduler from starting new
cycles and wait for the one in flight. A stop requested during the startup
cycle prevents the interval loop from starting at all.
"""

from __future__ import annotations

import signal
import threading
import time
from collections.abc import Callable

import structlog
from apscheduler.schedulers.base import STATE_STOPPED
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crl_trawler.config import SettingsReloader
from crl_trawler.domain.models import CycleReport

log = structlog.get_logger()

JOB_ID = "crl_trawler_sync"


def create_scheduler(
    sync_fn: Callable[[], CycleReport],
    poll_interval_minutes: int = 60,
    reloader: SettingsReloader | None = None,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that runs the sync cycle on an interval.

    Args:
        sync_fn: Zero-argument callable running one cycle (CrlSyncService.run_cycle).
        poll_interval_minutes: Minutes between cycle starts.
        reloader: Optional configuration reloader consulted before every cycle.

    Returns:
        A configured BlockingScheduler. Use run_scheduler() to start it.
    """
    scheduler = BlockingScheduler()
    interval = {"minutes": poll_interval_minutes}

    def _job() -> None:
        """Reload configuration if needed, run one cycle, log the outcome."""
        if reloader is not None:
            reloader.refresh()

        start = time.monotonic()
        try:
            report = sync_fn()
        except Exception:
            log.exception("scheduler.cycle_crashed", elapsed_s=round(time.monotonic() - start, 3))
        else:
            log.info(
                "scheduler.cycle_completed",
                elapsed_s=round(time.monotonic() - start, 3),
                **report.summary(),
            )

        if reloader is not None:
            wanted = reloader.settings.scheduler.poll_interval_minutes
            if wanted != interval["minutes"]:
                log.info(
                    "scheduler.interval_changed",
                    old_minutes=interval["minutes"],
                    new_minutes=wanted,
                )
                interval["minutes"] = wanted
                scheduler.reschedule_job(JOB_ID, trigger=IntervalTrigger(minutes=wanted))

    scheduler.add_job(
        _job,
        trigger=IntervalTrigger(minutes=poll_interval_minutes),
        id=JOB_ID,
        name="CRL sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


def run_scheduler(
    scheduler: BlockingScheduler,
    run_on_startup: bool = True,
    stop_event: threading.Event | None = None,
    install_signal_handlers: bool = True,
) -> None:
    """
    Run the startup cycle (optionally), then block in the interval loop.

    Returns once the scheduler has been shut down, or right after the startup
    cycle when a stop was requested while it ran.
    """
    stop_event = stop_event or threading.Event()

    if install_signal_handlers:
        _register_shutdown_signals(scheduler, stop_event)

    if run_on_startup:
        log.info("scheduler.startup_run", message="Running sync cycle immediately on startup")
        job = scheduler.get_job(JOB_ID)
        if job is not None:
            job.func()

    if stop_event.is_set():
        log.info("scheduler.not_started", reason="stop requested during startup cycle")
        return

    log.info("scheduler.loop_starting", job=JOB_ID)
    scheduler.start()
    log.info("scheduler.stopped")


def request_shutdown(scheduler: BlockingScheduler, stop_event: threading.Event) -> None:
    """Stop starting cycles and wait for the one in flight, if any."""
    stop_event.set()
    if scheduler.state != STATE_STOPPED:
        scheduler.shutdown(wait=True)


def _register_shutdown_signals(
    scheduler: BlockingScheduler, stop_event: threading.Event
) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        request_shutdown(scheduler, stop_event)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
