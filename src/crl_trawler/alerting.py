"""
Alerting — the Error Channel and the thread that drains it to a webhook.

  sync orchestrator ──report()──▶ ErrorChannel (bounded queue)
                                       │
                                       ▼
                               AlertDispatcher thread
                                       │
                                       ▼
                             WebhookAlertNotifier ──POST──▶ Alertmanager-style receiver

Producers block when the channel is full. close() enqueues a sentinel; the
dispatcher drains everything queued before it and exits. Delivery failures
are logged and never re-queued, so a dead receiver cannot wedge the channel.
"""

from __future__ import annotations

import hashlib
import queue
import threading
from collections.abc import Iterator
from datetime import UTC
from typing import Any, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from crl_trawler.domain.failures import ErrorCode
from crl_trawler.domain.models import ErrorReport
from crl_trawler.domain.result import Result

log = structlog.get_logger()

DEFAULT_QUEUE_SIZE = 100

_CLOSE = object()


# ─────────────────────── Error Channel ───────────────────────


class ErrorChannel:
    """
    Bounded multi-producer, single-consumer queue of ErrorReports.

    Implements the ErrorSink port.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def report(self, report: ErrorReport) -> None:
        with self._lock:
            if self._closed:
                log.warning(
                    "error_channel.report_after_close",
                    context=report.context,
                    code=report.failure.code.value,
                )
                return
            self._queue.put(report)

    def close(self) -> None:
        """Stop accepting reports. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_CLOSE)

    def drain(self) -> list[ErrorReport]:
        """Remove and return every report queued right now, without blocking."""
        reports: list[ErrorReport] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return reports
            if item is _CLOSE:
                self._queue.put(_CLOSE)
                return reports
            reports.append(item)

    def __iter__(self) -> Iterator[ErrorReport]:
        """Yield reports until the channel is closed and drained."""
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            yield item


# ─────────────────────── Webhook Notifier ───────────────────────


class AlertNotifier(Protocol):
    def notify(self, report: ErrorReport) -> Result[int]: ...


def alert_fingerprint(alertname: str, instance: str, severity: str) -> str:
    return hashlib.sha256(f"{alertname}:{instance}:{severity}".encode()).hexdigest()


class WebhookAlertNotifier:
    """
    Post each ErrorReport as an Alertmanager-style webhook payload.

    Transient network errors are retried in place (3 attempts); non-2xx
    responses are failures and are not retried.
    """

    def __init__(
        self,
        webhook_url: str,
        receiver: str = "crl-trawler",
        service_id: str = "",
        team: str = "",
        cluster: str = "",
        app: str = "crl-trawler",
        instance: str = "crl-trawler",
        external_url: str = "",
        timeout: float = 10,
    ) -> None:
        self._webhook_url = webhook_url
        self._receiver = receiver
        self._service_id = service_id
        self._team = team
        self._cluster = cluster
        self._app = app
        self._instance = instance
        self._external_url = external_url
        self._timeout = timeout

    def build_payload(self, report: ErrorReport) -> dict[str, Any]:
        alertname = report.context
        severity = report.severity.value
        labels = {
            "alertname": alertname,
            "instance": self._instance,
            "severity": severity,
            "criticality": report.criticality.value,
            "service_id": self._service_id,
            "team": self._team,
            "cluster": self._cluster,
            "app": self._app,
            "source": report.source_name or "",
        }
        return {
            "receiver": self._receiver,
            "status": "firing",
            "alerts": [
                {
                    "fingerprint": alert_fingerprint(alertname, self._instance, severity),
                    "status": "firing",
                    "labels": labels,
                    "annotations": {
                        "summary": f"{report.failure.code.value}: {report.failure.message}",
                        "description": report.failure.detail,
                    },
                    "startsAt": report.failure.timestamp.astimezone(UTC).isoformat(),
                }
            ],
            "groupLabels": {"alertname": alertname},
            "commonLabels": {"severity": severity},
            "externalURL": self._external_url,
            "version": "4",
            "groupKey": f'{{}}:{{alertname="{alertname}"}}',
            "truncatedAlerts": 0,
        }

    def notify(self, report: ErrorReport) -> Result[int]:
        return Result.from_computation(
            lambda: self._post(self.build_payload(report)),
            ErrorCode.ALERT_DELIVERY_ERROR,
            f"Alert delivery to {self._webhook_url} failed",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _post(self, payload: dict[str, Any]) -> int:
        """HTTP POST with retry — exceptions caught by from_computation."""
        with httpx.Client(timeout=self._timeout) as client:
            response = client.post(self._webhook_url, json=payload)
            response.raise_for_status()
            return response.status_code


# ─────────────────────── Dispatcher ───────────────────────


class AlertDispatcher:
    """
    Single consumer of the ErrorChannel, running on its own thread.

    With no notifier configured (alerting disabled) reports are only logged.
    """

    def __init__(self, channel: ErrorChannel, notifier: AlertNotifier | None = None) -> None:
        self._channel = channel
        self._notifier = notifier
        self._thread: threading.Thread | None = None
        self._dispatched = 0
        self._failed = 0

    @property
    def dispatched(self) -> int:
        return self._dispatched

    @property
    def failed(self) -> int:
        return self._failed

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_alive():
            return
        self._thread = threading.Thread(target=self.run, name="alert-dispatcher", daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def stop(self, timeout: float | None = None) -> None:
        """
        Close the channel and wait for queued reports to be handled.

        Without a timeout this blocks until the queue is drained. Each delivery
        is bounded by the webhook timeout and its retry budget.
        """
        self._channel.close()
        self.join(timeout)
        if self.is_alive():
            log.warning("alert.dispatcher_join_timeout", timeout_seconds=timeout)

    def run(self) -> None:
        log.info("alert.dispatcher_started", notifier=type(self._notifier).__name__)
        for report in self._channel:
            self.handle(report)
        log.info(
            "alert.dispatcher_stopped",
            dispatched=self._dispatched,
            failed=self._failed,
        )

    def handle(self, report: ErrorReport) -> None:
        log.error(
            "alert.received",
            context=report.context,
            source=report.source_name,
            code=report.failure.code.value,
            error=report.failure.detail,
            severity=report.severity.value,
            criticality=report.criticality.value,
        )
        if self._notifier is None:
            return

        try:
            result = self._notifier.notify(report)
        except Exception as e:
            result = Result.failure(ErrorCode.ALERT_DELIVERY_ERROR, "Notifier raised", e)

        if result.is_success():
            self._dispatched += 1
            log.info("alert.dispatched", context=report.context, status=result.value())
        else:
            self._failed += 1
            log.error(
                "alert.delivery_failed",
                context=report.context,
                error=result.error().detail,
            )