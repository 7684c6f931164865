"""
Unit tests for alerting: the Error Channel, the webhook notifier and the
dispatcher thread.

Webhook calls are mocked with respx; no real HTTP is made.
"""

from __future__ import annotations

import inspect
import json
import threading
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
import respx
from result_assertions import ResultAssertions

from crl_trawler.alerting import (
    AlertDispatcher,
    ErrorChannel,
    WebhookAlertNotifier,
    alert_fingerprint,
)
from crl_trawler.domain.failures import Criticality, ErrorCode, FailureDescription, Severity
from crl_trawler.domain.models import ErrorReport
from crl_trawler.domain.ports import ErrorSink
from crl_trawler.domain.result import Result

WEBHOOK_URL = "http://alertmanager.example.com/api/v1/alerts"


def _report(context: str = "Writing CRL 'root' to s3", source: str | None = "root") -> ErrorReport:
    return ErrorReport(
        context=context,
        failure=FailureDescription(
            ErrorCode.WRITE_ERROR,
            "s3 rejected root.crl",
            PermissionError("AccessDenied"),
            timestamp=datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC),
        ),
        severity=Severity.WARNING,
        criticality=Criticality.MEDIUM,
        source_name=source,
    )


@pytest.fixture()
def notifier() -> WebhookAlertNotifier:
    return WebhookAlertNotifier(
        WEBHOOK_URL,
        receiver="pki-team",
        service_id="svc-42",
        team="pki",
        cluster="prod-eu",
        instance="trawler-0",
        external_url="http://trawler.example.com",
        timeout=2,
    )


@pytest.fixture()
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(WebhookAlertNotifier._post.retry, "sleep", lambda _seconds: None)


# ─────────────────────── Error Channel ───────────────────────


class TestErrorChannel:
    def test_implements_sink(self) -> None:
        assert isinstance(ErrorChannel(), ErrorSink)

    def test_reports_are_drained_in_order(self) -> None:
        channel = ErrorChannel()
        first, second = _report("first"), _report("second")

        channel.report(first)
        channel.report(second)

        assert channel.qsize() == 2
        assert channel.drain() == [first, second]
        assert channel.drain() == []

    def test_iteration_ends_after_close(self) -> None:
        """
        GIVEN two queued reports and a closed channel
        WHEN the channel is iterated
        THEN both reports are yielded and iteration ends.
        """
        channel = ErrorChannel()
        channel.report(_report("a"))
        channel.report(_report("b"))
        channel.close()

        assert [r.context for r in channel] == ["a", "b"]

    def test_report_after_close_is_dropped(self) -> None:
        channel = ErrorChannel()
        channel.close()

        channel.report(_report())

        assert channel.closed
        assert channel.drain() == []

    def test_close_is_idempotent(self) -> None:
        channel = ErrorChannel()
        channel.close()
        channel.close()

        assert list(channel) == []

    def test_drain_keeps_close_marker(self) -> None:
        channel = ErrorChannel()
        channel.report(_report("queued"))
        channel.close()

        assert [r.context for r in channel.drain()] == ["queued"]
        assert list(channel) == []


# ─────────────────────── Webhook payload ───────────────────────


class TestPayload:
    def test_alertmanager_envelope(self, notifier: WebhookAlertNotifier) -> None:
        payload = notifier.build_payload(_report())

        assert payload["receiver"] == "pki-team"
        assert payload["status"] == "firing"
        assert payload["version"] == "4"
        assert payload["externalURL"] == "http://trawler.example.com"
        assert payload["groupLabels"] == {"alertname": "Writing CRL 'root' to s3"}
        assert payload["commonLabels"] == {"severity": "warning"}
        assert payload["groupKey"] == "{}:{alertname=\"Writing CRL 'root' to s3\"}"
        assert payload["truncatedAlerts"] == 0
        assert len(payload["alerts"]) == 1

    def test_alert_labels_and_annotations(self, notifier: WebhookAlertNotifier) -> None:
        """
        GIVEN a WRITE_ERROR report for source 'root'
        WHEN the payload is built
        THEN labels carry the deployment identity and the annotations the failure.
        """
        alert = notifier.build_payload(_report())["alerts"][0]

        assert alert["labels"] == {
            "alertname": "Writing CRL 'root' to s3",
            "instance": "trawler-0",
            "severity": "warning",
            "criticality": "medium",
            "service_id": "svc-42",
            "team": "pki",
            "cluster": "prod-eu",
            "app": "crl-trawler",
            "source": "root",
        }
        assert alert["annotations"]["summary"] == "WRITE_ERROR: s3 rejected root.crl"
        assert alert["annotations"]["description"] == "s3 rejected root.crl: AccessDenied"
        assert alert["startsAt"] == "2026-03-01T12:00:00+00:00"
        assert alert["status"] == "firing"

    def test_fingerprint_is_stable(self, notifier: WebhookAlertNotifier) -> None:
        alert = notifier.build_payload(_report())["alerts"][0]

        expected = alert_fingerprint("Writing CRL 'root' to s3", "trawler-0", "warning")
        assert alert["fingerprint"] == expected
        assert len(expected) == 64
        assert alert_fingerprint("x", "trawler-0", "warning") != expected

    def test_report_without_source(self, notifier: WebhookAlertNotifier) -> None:
        alert = notifier.build_payload(_report(source=None))["alerts"][0]

        assert alert["labels"]["source"] == ""


# ─────────────────────── Webhook delivery ───────────────────────


class TestNotify:
    @respx.mock
    def test_posts_payload(self, notifier: WebhookAlertNotifier) -> None:
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(200))

        status = ResultAssertions.assert_success(notifier.notify(_report()))

        assert status == 200
        body: dict[str, Any] = json.loads(route.calls.last.request.content)
        assert body["alerts"][0]["labels"]["source"] == "root"

    @respx.mock
    def test_server_error_is_delivery_failure_without_retry(
        self, notifier: WebhookAlertNotifier
    ) -> None:
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(500))

        ResultAssertions.assert_failure(notifier.notify(_report()), ErrorCode.ALERT_DELIVERY_ERROR)

        assert route.call_count == 1

    @respx.mock
    @pytest.mark.usefixtures("no_retry_wait")
    def test_network_errors_are_retried_three_times(self, notifier: WebhookAlertNotifier) -> None:
        """
        GIVEN the receiver refuses connections
        WHEN notify is called
        THEN the POST is attempted three times before failing.
        """
        route = respx.post(WEBHOOK_URL).mock(side_effect=httpx.ConnectError("refused"))

        ResultAssertions.assert_failure(notifier.notify(_report()), ErrorCode.ALERT_DELIVERY_ERROR)

        assert route.call_count == 3

    @respx.mock
    @pytest.mark.usefixtures("no_retry_wait")
    def test_transient_error_then_success(self, notifier: WebhookAlertNotifier) -> None:
        respx.post(WEBHOOK_URL).mock(
            side_effect=[httpx.ReadTimeout("slow"), httpx.Response(202)]
        )

        assert ResultAssertions.assert_success(notifier.notify(_report())) == 202


# ─────────────────────── Dispatcher ───────────────────────


class TestAlertDispatcher:
    def test_delivers_queued_reports_before_stopping(self) -> None:
        """
        GIVEN a running dispatcher and three queued reports
        WHEN stop is called
        THEN every report is delivered before the thread exits.
        """
        channel = ErrorChannel()
        notifier = MagicMock()
        notifier.notify.return_value = Result.success(200)
        dispatcher = AlertDispatcher(channel, notifier)

        dispatcher.start()
        for i in range(3):
            channel.report(_report(f"r{i}"))
        dispatcher.stop(timeout=5)

        assert not dispatcher.is_alive()
        assert dispatcher.dispatched == 3
        assert [c.args[0].context for c in notifier.notify.call_args_list] == ["r0", "r1", "r2"]

    def test_counts_delivery_failures(self) -> None:
        notifier = MagicMock()
        notifier.notify.side_effect = [
            Result.failure(ErrorCode.ALERT_DELIVERY_ERROR, "500"),
            RuntimeError("notifier bug"),
            Result.success(200),
        ]
        dispatcher = AlertDispatcher(ErrorChannel(), notifier)

        for i in range(3):
            dispatcher.handle(_report(f"r{i}"))

        assert dispatcher.failed == 2
        assert dispatcher.dispatched == 1

    def test_without_notifier_only_logs(self) -> None:
        channel = ErrorChannel()
        dispatcher = AlertDispatcher(channel)
        channel.report(_report())

        dispatcher.start()
        dispatcher.stop(timeout=5)

        assert dispatcher.dispatched == 0
        assert dispatcher.failed == 0
        assert channel.qsize() == 0

    def test_start_twice_keeps_one_thread(self) -> None:
        dispatcher = AlertDispatcher(ErrorChannel())

        dispatcher.start()
        thread = dispatcher._thread
        dispatcher.start()

        assert dispatcher._thread is thread
        dispatcher.stop(timeout=5)

    def test_stop_without_timeout_waits_for_slow_deliveries(self) -> None:
        """
        GIVEN a dispatcher whose notifier blocks until released
        WHEN stop is called with no timeout and the notifier is released later
        THEN stop returns only after every queued report was delivered.
        """
        channel = ErrorChannel()
        release = threading.Event()
        delivered: list[str] = []

        def slow_notify(report: ErrorReport) -> Result[int]:
            release.wait(5)
            delivered.append(report.context)
            return Result.success(200)

        notifier = MagicMock()
        notifier.notify.side_effect = slow_notify
        dispatcher = AlertDispatcher(channel, notifier)

        dispatcher.start()
        for i in range(3):
            channel.report(_report(f"r{i}"))
        timer = threading.Timer(0.3, release.set)
        timer.start()
        dispatcher.stop()
        timer.join()

        assert not dispatcher.is_alive()
        assert delivered == ["r0", "r1", "r2"]
        assert dispatcher.dispatched == 3

    def test_stop_waits_without_a_deadline_by_default(self) -> None:
        default = inspect.signature(AlertDispatcher.stop).parameters["timeout"].default

        assert default is None
