"""
FastAPI + Uvicorn ASGI application for Kubernetes deployment.

Runs crl-trawler as a web service with health check endpoints and a background
scheduler. Uvicorn serves this app with graceful shutdown (SIGTERM → drain + exit).

Architecture:
  - FastAPI: lightweight web framework
  - Uvicorn: production ASGI server (owns the process signals)
  - APScheduler: runs in a background thread while Uvicorn serves health checks
  - AlertDispatcher: its own thread, drains the Error Channel
  - K8s health checks: liveness (/live, /health) + readiness (/ready)

Health checks report process and scheduler health only; a CRL failing validation
never makes the service unhealthy.

Entry point for production: uvicorn crl_trawler.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from crl_trawler import __version__
from crl_trawler.alerting import AlertDispatcher, ErrorChannel
from crl_trawler.config import SettingsReloader, load_settings
from crl_trawler.main import configure_structlog, create_notifier, create_service
from crl_trawler.scheduler import create_scheduler, request_shutdown, run_scheduler
from crl_trawler.sync import CrlSyncService

# ─────────────────────── Global State ───────────────────────
# These are set during app startup and used for health checks.

_scheduler_thread: threading.Thread | None = None
_scheduler_started = False
_scheduler_ready = False
_error_message: str | None = None
_service: CrlSyncService | None = None
_dispatcher: AlertDispatcher | None = None
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager — runs on startup and shutdown.

    Startup: load settings, start the alert dispatcher, start the scheduler thread.
    Shutdown: stop the scheduler (waiting for a cycle in flight), then drain alerts.
    """
    global _scheduler_thread, _scheduler_ready, _error_message, _service, _dispatcher

    log.info("asgi.startup", event="lifespan_startup")

    try:
        settings = load_settings()
    except Exception as e:
        error_msg = f"Configuration error: {e}"
        _error_message = error_msg
        log.error("asgi.startup_error", error=error_msg)
        raise

    configure_structlog(settings.log_level, settings.log_format)

    log.info(
        "asgi.startup_config",
        version=__version__,
        log_level=settings.log_level,
        poll_interval_minutes=settings.scheduler.poll_interval_minutes,
        run_on_startup=settings.scheduler.run_on_startup,
    )

    channel = ErrorChannel(maxsize=settings.alerting.queue_size)
    dispatcher = AlertDispatcher(channel, create_notifier(settings.alerting))
    reloader = SettingsReloader(settings)

    try:
        service = create_service(settings, channel, sources_provider=reloader.sources)
        scheduler = create_scheduler(
            sync_fn=service.run_cycle,
            poll_interval_minutes=settings.scheduler.poll_interval_minutes,
            reloader=reloader,
        )
    except Exception as e:
        error_msg = f"Failed to initialize adapters/scheduler: {e}"
        _error_message = error_msg
        log.error("asgi.init_error", error=error_msg)
        raise

    _service = service
    _dispatcher = dispatcher
    dispatcher.start()

    stop_event = threading.Event()
    _scheduler_thread = threading.Thread(
        target=_run_scheduler_thread,
        args=(scheduler, settings.scheduler.run_on_startup, stop_event),
        name="crl-scheduler",
        daemon=True,
    )
    _scheduler_thread.start()

    # Mark ready once the thread runs (not after the first cycle, for faster startup)
    await asyncio.sleep(0.1)
    _scheduler_ready = True

    log.info("asgi.startup_complete")

    yield  # ← App is running here; Uvicorn handles requests

    # ──── Shutdown ────
    log.info("asgi.shutdown", reason="SIGTERM or server stop")

    try:
        await asyncio.to_thread(request_shutdown, scheduler, stop_event)
        log.info("asgi.scheduler_shutdown_complete")
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))

    if _scheduler_thread.is_alive():
        await asyncio.to_thread(_scheduler_thread.join, 30.0)
        if _scheduler_thread.is_alive():
            log.warning("asgi.scheduler_thread_timeout", timeout_seconds=30.0)

    await asyncio.to_thread(dispatcher.stop)
    log.info("asgi.shutdown_complete")


def _run_scheduler_thread(
    scheduler: BlockingScheduler, run_on_startup: bool, stop_event: threading.Event
) -> None:
    """Run scheduler in background thread (blocking)."""
    global _scheduler_started, _error_message
    try:
        _scheduler_started = True
        log.info("asgi.scheduler_thread_started")
        run_scheduler(
            scheduler,
            run_on_startup=run_on_startup,
            stop_event=stop_event,
            install_signal_handlers=False,
        )
    except Exception as e:
        error_msg = f"Scheduler error: {e}"
        _error_message = error_msg
        log.error("asgi.scheduler_error", error=error_msg)


def _scheduler_running() -> bool:
    return _scheduler_thread is not None and _scheduler_thread.is_alive()


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="crl-trawler",
    description="CRL retrieval, validation and synchronization — scheduled job as a web service",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/live")
async def live() -> dict[str, str]:
    """Kubernetes liveness check — the process answers HTTP."""
    return {"status": "alive"}


@app.get("/health")
async def health() -> JSONResponse:
    """
    Health check — scheduler thread alive and no fatal startup error.

    Returns 503 if configuration failed or the scheduler crashed.
    """
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": _error_message},
        )

    if not _scheduler_running():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "scheduler thread not running"},
        )

    return JSONResponse(
        status_code=200,
        content={"status": "healthy", "scheduler_running": True},
    )


@app.get("/ready")
async def ready() -> JSONResponse:
    """
    Kubernetes readiness check.

    Returns 202 while starting, 503 on a startup error, 200 once the
    scheduler thread has started.
    """
    if not _scheduler_ready or not _scheduler_started:
        return JSONResponse(
            status_code=202,
            content={"status": "starting", "scheduler_started": _scheduler_started},
        )

    if _error_message:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": _error_message},
        )

    return JSONResponse(
        status_code=200,
        content={"status": "ready", "scheduler_running": _scheduler_running()},
    )


@app.get("/info")
async def info() -> dict[str, Any]:
    """Application metadata and the summary of the last completed cycle."""
    last_report = _service.last_report if _service is not None else None
    return {
        "name": "crl-trawler",
        "version": __version__,
        "scheduler_running": _scheduler_running(),
        "scheduler_started": _scheduler_started,
        "scheduler_ready": _scheduler_ready,
        "has_error": _error_message is not None,
        "backends": [b.name for b in _service.backends] if _service is not None else [],
        "alert_dispatcher_running": _dispatcher is not None and _dispatcher.is_alive(),
        "last_cycle": last_report.summary() if last_report is not None else None,
        "last_cycle_finished_at": last_report.finished_at.isoformat()
        if last_report is not None and last_report.finished_at is not None
        else None,
    }


@app.post("/trigger")
async def trigger() -> JSONResponse:
    """
    Manually run one sync cycle.

    Runs in a worker thread so the event loop is not blocked; waits for a
    scheduled cycle in flight to finish first.

    Returns 200 with the cycle summary and per-source outcomes.
    Returns 500 if the cycle raised unexpectedly.
    Returns 503 if the service is not initialized yet.
    """
    if _service is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "reason": "Sync service not initialized"},
        )

    log.info("trigger.manual_start", source="REST")

    try:
        report = await asyncio.to_thread(_service.run_cycle)
    except Exception as e:
        log.error("trigger.exception", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": str(e)},
        )

    log.info("trigger.completed", **report.summary())
    return JSONResponse(
        status_code=200,
        content={
            "status": "completed",
            "summary": report.summary(),
            "outcomes": [
                {
                    "source": o.source_name,
                    "status": o.status.value,
                    "stored": list(o.stored_backends),
                    "failed_backends": list(o.failed_backends),
                    "stage": o.stage.value if o.stage else None,
                    "error_code": o.failure.code.value if o.failure else None,
                }
                for o in report.outcomes
            ],
        },
    )


if __name__ == "__main__":
    # For local testing: python -m uvicorn crl_trawler.asgi:app --reload
    import uvicorn

    uvicorn.run(
        "crl_trawler.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
