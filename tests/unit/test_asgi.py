"""
Unit tests for the FastAPI ASGI application — REST endpoints.

Tests the /trigger endpoint for manual sync cycles, as well as the
/live, /health, /ready and /info endpoints.

Uses FastAPI's TestClient with a mocked sync service and scheduler state.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from crl_trawler import asgi
from crl_trawler.domain.failures import ErrorCode, FailureDescription
from crl_trawler.domain.models import CycleReport, OutcomeStatus, SourceOutcome, Stage


@pytest.fixture(autouse=True)
def _reset_asgi_state() -> None:
    """Reset ASGI module-level state before each test."""
    asgi._scheduler_thread = None
    asgi._scheduler_started = False
    asgi._scheduler_ready = False
    asgi._error_message = None
    asgi._service = None
    asgi._dispatcher = None


@pytest.fixture()
def client() -> TestClient:
    """Create a TestClient without running the lifespan (no real startup)."""
    return TestClient(asgi.app, raise_server_exceptions=False)


@pytest.fixture()
def running_thread() -> Iterator[threading.Thread]:
    """A live thread standing in for the scheduler thread."""
    release = threading.Event()
    thread = threading.Thread(target=release.wait, daemon=True)
    thread.start()
    yield thread
    release.set()
    thread.join()


def _report() -> CycleReport:
    return CycleReport(
        outcomes=(
            SourceOutcome("root", OutcomeStatus.STORED, stored_backends=("local", "s3")),
            SourceOutcome("issuing", OutcomeStatus.SKIPPED_UNCHANGED, unchanged_backends=("local",)),
            SourceOutcome(
                "broken",
                OutcomeStatus.FAILED,
                stage=Stage.DECODE,
                failure=FailureDescription(ErrorCode.DECODE_ERROR, "CRL could not be decoded"),
            ),
        ),
        started_at=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
        finished_at=datetime(2026, 3, 1, 12, 0, 5, tzinfo=UTC),
    )


def _service(report: CycleReport | None = None) -> MagicMock:
    service = MagicMock()
    service.run_cycle.return_value = report or _report()
    service.last_report = report
    local, s3 = MagicMock(), MagicMock()
    local.name, s3.name = "local", "s3"
    service.backends = (local, s3)
    return service


# ─────────────────────── POST /trigger ───────────────────────


class TestTriggerEndpoint:
    """Tests for the POST /trigger endpoint — manual sync cycle."""

    def test_trigger_returns_503_when_service_not_initialized(self, client: TestClient) -> None:
        """
        GIVEN the application has not completed startup (_service is None)
        WHEN POST /trigger is called
        THEN it returns 503 with an unavailable status.
        """
        response = client.post("/trigger")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unavailable"
        assert "not initialized" in body["reason"]

    def test_trigger_returns_summary_and_outcomes(self, client: TestClient) -> None:
        """
        GIVEN an initialized service whose cycle stores one CRL and fails another
        WHEN POST /trigger is called
        THEN it returns 200 with the summary and one entry per source.
        """
        asgi._service = _service()

        response = client.post("/trigger")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["summary"]["sources"] == 3
        assert body["summary"]["writes"] == 2
        assert body["summary"]["failed"] == 1
        assert body["outcomes"][0] == {
            "source": "root",
            "status": "stored",
            "stored": ["local", "s3"],
            "failed_backends": [],
            "stage": None,
            "error_code": None,
        }
        assert body["outcomes"][2]["stage"] == "decode"
        assert body["outcomes"][2]["error_code"] == "DECODE_ERROR"

    def test_trigger_returns_500_when_cycle_raises(self, client: TestClient) -> None:
        service = _service()
        service.run_cycle.side_effect = RuntimeError("lock poisoned")
        asgi._service = service

        response = client.post("/trigger")

        assert response.status_code == 500
        assert response.json() == {"status": "error", "error": "lock poisoned"}


# ─────────────────────── Health checks ───────────────────────


class TestLive:
    def test_always_alive(self, client: TestClient) -> None:
        asgi._error_message = "Configuration error: boom"

        response = client.get("/live")

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}


class TestHealth:
    def test_healthy_with_running_scheduler(
        self, client: TestClient, running_thread: threading.Thread
    ) -> None:
        asgi._scheduler_thread = running_thread

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_unhealthy_without_scheduler_thread(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 503
        assert "scheduler" in response.json()["reason"]

    def test_unhealthy_on_startup_error(
        self, client: TestClient, running_thread: threading.Thread
    ) -> None:
        """
        GIVEN a recorded fatal error
        WHEN GET /health is called
        THEN it returns 503 carrying the error even with a live thread.
        """
        asgi._scheduler_thread = running_thread
        asgi._error_message = "Scheduler error: boom"

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["error"] == "Scheduler error: boom"


class TestReady:
    def test_starting(self, client: TestClient) -> None:
        response = client.get("/ready")

        assert response.status_code == 202
        assert response.json()["status"] == "starting"

    def test_ready(self, client: TestClient, running_thread: threading.Thread) -> None:
        asgi._scheduler_thread = running_thread
        asgi._scheduler_started = True
        asgi._scheduler_ready = True

        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "scheduler_running": True}

    def test_error_after_start(self, client: TestClient) -> None:
        asgi._scheduler_started = True
        asgi._scheduler_ready = True
        asgi._error_message = "Scheduler error: boom"

        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "error"


class TestInfo:
    def test_before_startup(self, client: TestClient) -> None:
        body = client.get("/info").json()

        assert body["name"] == "crl-trawler"
        assert body["backends"] == []
        assert body["last_cycle"] is None
        assert body["alert_dispatcher_running"] is False

    def test_reports_last_cycle(self, client: TestClient) -> None:
        """
        GIVEN a service that has completed a cycle
        WHEN GET /info is called
        THEN the backends and the last cycle summary are included.
        """
        asgi._service = _service(_report())
        dispatcher = MagicMock()
        dispatcher.is_alive.return_value = True
        asgi._dispatcher = dispatcher

        body = client.get("/info").json()

        assert body["backends"] == ["local", "s3"]
        assert body["alert_dispatcher_running"] is True
        assert body["last_cycle"]["stored"] == 1
        assert body["last_cycle_finished_at"] == "2026-03-01T12:00:05+00:00"
