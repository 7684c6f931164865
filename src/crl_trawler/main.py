"""
Application entry point — wires dependencies and starts the scheduler.

Composition root: creates concrete adapters, injects them into the sync
service, and hands the service to the scheduler.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Load and validate configuration (YAML + environment)
  2. Configure structlog (console or JSON lines)
  3. Start the alert dispatcher draining the Error Channel
  4. Create concrete adapters (fetcher, decoder, certificate loader, backends)
  5. Wire the sync service and run the scheduler until SIGINT/SIGTERM
"""

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Callable, Sequence
from typing import TypeAlias

import structlog

from crl_trawler import __version__
from crl_trawler.adapters.certificate_loader import FileIssuerCertificateLoader
from crl_trawler.adapters.crl_decoder import X509CrlDecoder
from crl_trawler.adapters.http_client import HttpCrlFetcher
from crl_trawler.adapters.local_storage import LocalFileStorage
from crl_trawler.adapters.object_storage import S3ObjectStorage, create_s3_client
from crl_trawler.alerting import AlertDispatcher, ErrorChannel, WebhookAlertNotifier
from crl_trawler.config import AlertingSettings, AppSettings, SettingsReloader, load_settings
from crl_trawler.domain.models import CrlSource
from crl_trawler.domain.ports import ErrorSink, StorageBackend
from crl_trawler.domain.validation import CrlValidator
from crl_trawler.scheduler import create_scheduler, run_scheduler
from crl_trawler.sync import CrlSyncService


def configure_structlog(log_level: str = "INFO", log_format: str = "console") -> None:
    """
    Configure structlog for structured logging.

    In production: JSON lines to stdout (machine-readable), `log_format: json`.
    In development: colored, human-readable console output.
    """
    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            *([structlog.processors.format_exc_info] if log_format == "json" else []),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _create_backends(settings: AppSettings) -> list[StorageBackend]:
    """
    Instantiate the enabled storage backends, local first.

    Raises if the S3 client cannot be constructed; that is fatal at startup.
    """
    backends: list[StorageBackend] = []
    local = settings.storage.local
    if local.enabled:
        backends.append(LocalFileStorage(local.directory, file_mode=local.file_mode))
    s3 = settings.storage.s3
    if s3.enabled:
        client = create_s3_client(s3, timeout=settings.http_timeout_seconds)
        backends.append(S3ObjectStorage(client, bucket=s3.bucket or "", prefix=s3.prefix))
    return backends


_Adapters: TypeAlias = tuple[
    HttpCrlFetcher,
    X509CrlDecoder,
    FileIssuerCertificateLoader,
    list[StorageBackend],
]


def _create_adapters(settings: AppSettings) -> _Adapters:
    """
    Instantiate all concrete adapters from application settings.

    Creates the HTTP fetcher, the CRL decoder, the issuer certificate loader
    and every enabled storage backend.
    """
    fetcher = HttpCrlFetcher(timeout=settings.http_timeout_seconds)
    decoder = X509CrlDecoder()
    loader = FileIssuerCertificateLoader()
    backends = _create_backends(settings)
    return fetcher, decoder, loader, backends


def create_notifier(alerting: AlertingSettings) -> WebhookAlertNotifier | None:
    if not alerting.enabled or not alerting.webhook_url:
        return None
    return WebhookAlertNotifier(
        webhook_url=alerting.webhook_url,
        receiver=alerting.receiver,
        service_id=alerting.service_id,
        team=alerting.team,
        cluster=alerting.cluster,
        app=alerting.app,
        instance=alerting.instance,
        external_url=alerting.external_url,
        timeout=alerting.timeout_seconds,
    )


def create_service(
    settings: AppSettings,
    error_sink: ErrorSink,
    sources_provider: Callable[[], Sequence[CrlSource]] | None = None,
) -> CrlSyncService:
    """Wire the sync service. Sources come from `sources_provider` when given."""
    fetcher, decoder, loader, backends = _create_adapters(settings)
    return CrlSyncService(
        sources_provider=sources_provider or settings.crl_sources,
        fetcher=fetcher,
        decoder=decoder,
        loader=loader,
        validator=CrlValidator(),
        backends=backends,
        error_sink=error_sink,
    )


def main() -> None:
    """Wire dependencies and launch the scheduled sync."""
    try:
        settings = load_settings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level, settings.log_format)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        sources=len(settings.sources),
        poll_interval_minutes=settings.scheduler.poll_interval_minutes,
        run_on_startup=settings.scheduler.run_on_startup,
        local_storage=settings.storage.local.enabled,
        s3_storage=settings.storage.s3.enabled,
        alerting=settings.alerting.enabled,
    )

    channel = ErrorChannel(maxsize=settings.alerting.queue_size)
    dispatcher = AlertDispatcher(channel, create_notifier(settings.alerting))
    reloader = SettingsReloader(settings)

    try:
        service = create_service(settings, channel, sources_provider=reloader.sources)
    except Exception as e:
        log.error("app.fatal_error", stage="adapters", error=str(e))
        sys.exit(1)

    scheduler = create_scheduler(
        sync_fn=service.run_cycle,
        poll_interval_minutes=settings.scheduler.poll_interval_minutes,
        reloader=reloader,
    )

    dispatcher.start()
    stop_event = threading.Event()
    try:
        run_scheduler(
            scheduler,
            run_on_startup=settings.scheduler.run_on_startup,
            stop_event=stop_event,
        )
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="keyboard interrupt")
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        dispatcher.stop()
        sys.exit(1)

    dispatcher.stop()
    log.info("app.shutdown_complete")


if __name__ == "__main__":
    main()
