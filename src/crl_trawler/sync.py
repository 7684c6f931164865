"""
Sync orchestrator — one processing cycle over every configured CRL source.

Per source, sequentially, with no in-cycle retries:

  fetch(url)
    → decode(raw)
      → load issuer certificate
        → validate (signature, expiry, next-publish)
          → for each backend: read → detect change → write if CHANGED / NOT_PRESENT

Every stage returns Result[T]; the first failure ends that source and the
cycle moves on. A failure in one source never affects another, and a failure
in one backend never affects another backend of the same source.

Operator-actionable failures (issuer certificate, backend read/write) are
escalated to the error sink; the rest are logged only.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import structlog
from cryptography import x509

from crl_trawler.domain.change_detection import detect_change, fingerprint
from crl_trawler.domain.failures import Criticality, ErrorCode, FailureDescription, Severity
from crl_trawler.domain.models import (
    CrlSource,
    CycleReport,
    DecodedCrl,
    ErrorReport,
    OutcomeStatus,
    SourceOutcome,
    Stage,
)
from crl_trawler.domain.ports import (
    CrlDecoder,
    CrlFetcher,
    ErrorSink,
    IssuerCertificateLoader,
    StorageBackend,
)
from crl_trawler.domain.result import Result
from crl_trawler.domain.validation import CrlValidator

log = structlog.get_logger()

# Severity / criticality for the failures that reach the error sink.
ESCALATED: dict[ErrorCode, tuple[Severity, Criticality]] = {
    ErrorCode.CERTIFICATE_LOAD_ERROR: (Severity.WARNING, Criticality.LOW),
    ErrorCode.WRITE_ERROR: (Severity.WARNING, Criticality.MEDIUM),
    ErrorCode.BACKEND_UNAVAILABLE_ERROR: (Severity.WARNING, Criticality.MEDIUM),
}


class _SourceRun:
    """State of one source while it moves through the pipeline."""

    def __init__(
        self,
        source: CrlSource,
        fetcher: CrlFetcher,
        decoder: CrlDecoder,
        loader: IssuerCertificateLoader,
        validator: CrlValidator,
        backends: Sequence[StorageBackend],
        error_sink: ErrorSink,
    ) -> None:
        self.source = source
        self._fetcher = fetcher
        self._decoder = decoder
        self._loader = loader
        self._validator = validator
        self._backends = backends
        self._error_sink = error_sink

    def run(self) -> SourceOutcome:
        raw = self._fetcher.fetch(self.source.url)
        if raw.is_failure():
            return self._failed(Stage.FETCH, raw.error())

        decoded = self._decoder.decode(raw.value())
        if decoded.is_failure():
            return self._failed(Stage.DECODE, decoded.error())

        issuer = self._loader.load(self.source.issuer_certificate_path)
        if issuer.is_failure():
            self._escalate(
                f"Loading issuer certificate for CRL '{self.source.name}'",
                issuer.error(),
            )
            return self._failed(Stage.LOAD_ISSUER_CERT, issuer.error())

        return self._validate_and_store(raw.value(), decoded.value(), issuer.value())

    def _validate_and_store(
        self, raw: bytes, crl: DecodedCrl, issuer: x509.Certificate
    ) -> SourceOutcome:
        verdict = self._validator.validate(crl, issuer)

        if verdict.expired:
            log.warning(
                "sync.crl_expired",
                next_update=crl.next_update.isoformat() if crl.next_update else None,
            )
            return SourceOutcome(
                source_name=self.source.name,
                status=OutcomeStatus.SKIPPED_INVALID,
                stage=Stage.VALIDATE,
                failure=verdict.signature_failure,
            )

        if not verdict.valid:
            return self._failed(Stage.VALIDATE, verdict.signature_failure)

        if not verdict.publish_ready:
            log.info(
                "sync.crl_not_ready",
                next_publish=verdict.next_publish_time.isoformat()
                if verdict.next_publish_time
                else None,
            )
            return SourceOutcome(
                source_name=self.source.name,
                status=OutcomeStatus.SKIPPED_NOT_READY,
            )

        return self._store(raw)

    def _store(self, raw: bytes) -> SourceOutcome:
        stored: list[str] = []
        unchanged: list[str] = []
        failed: list[str] = []
        last_failure: FailureDescription | None = None

        for backend in self._backends:
            try:
                result = self._sync_backend(backend, raw)
            except Exception as e:
                log.exception("sync.backend_unexpected_error", backend=backend.name)
                result = Result.failure(
                    ErrorCode.UNKNOWN_ERROR,
                    f"Unexpected error in backend {backend.name}",
                    e,
                )

            if result.is_failure():
                failed.append(backend.name)
                last_failure = result.error()
            elif result.value():
                stored.append(backend.name)
            else:
                unchanged.append(backend.name)

        if stored:
            status = OutcomeStatus.STORED
        elif failed:
            status = OutcomeStatus.FAILED
        else:
            status = OutcomeStatus.SKIPPED_UNCHANGED

        return SourceOutcome(
            source_name=self.source.name,
            status=status,
            stored_backends=tuple(stored),
            unchanged_backends=tuple(unchanged),
            failed_backends=tuple(failed),
            stage=Stage.STORE if failed else None,
            failure=last_failure if failed else None,
        )

    def _sync_backend(self, backend: StorageBackend, raw: bytes) -> Result[bool]:
        """Returns Success(True) when written, Success(False) when unchanged."""
        key = backend.key_for(self.source.name)
        existing = backend.read(key)

        if existing.is_failure() and not existing.has_code(ErrorCode.NOT_FOUND):
            self._escalate(
                f"Reading stored CRL '{self.source.name}' from {backend.name}",
                existing.error(),
            )
            log.warning("sync.backend_unavailable", backend=backend.name, error=existing.error().detail)
            return Result.failure_from(existing.error())

        change = detect_change(raw, existing.get_or_else(None))
        if not change.requires_write:
            log.info("sync.unchanged", backend=backend.name, key=key)
            return Result.success(False)

        log.info(
            "sync.writing",
            backend=backend.name,
            key=key,
            change=change.value,
            fingerprint=fingerprint(raw),
        )
        written = backend.write(key, raw)
        if written.is_failure():
            self._escalate(
                f"Writing CRL '{self.source.name}' to {backend.name}",
                written.error(),
            )
            log.error("sync.write_failed", backend=backend.name, error=written.error().detail)
            return Result.failure_from(written.error())
        return Result.success(True)

    def _failed(self, stage: Stage, failure: FailureDescription | None) -> SourceOutcome:
        log.warning(
            "sync.source_failed",
            stage=stage.value,
            code=failure.code.value if failure else None,
            error=failure.detail if failure else None,
        )
        return SourceOutcome(
            source_name=self.source.name,
            status=OutcomeStatus.FAILED,
            stage=stage,
            failure=failure,
        )

    def _escalate(self, context: str, failure: FailureDescription) -> None:
        severity, criticality = ESCALATED.get(
            failure.code, (Severity.WARNING, Criticality.MEDIUM)
        )
        self._error_sink.report(
            ErrorReport(
                context=context,
                failure=failure,
                severity=severity,
                criticality=criticality,
                source_name=self.source.name,
            )
        )


def process_crls(
    sources: Sequence[CrlSource],
    fetcher: CrlFetcher,
    decoder: CrlDecoder,
    loader: IssuerCertificateLoader,
    validator: CrlValidator,
    backends: Sequence[StorageBackend],
    error_sink: ErrorSink,
) -> CycleReport:
    """
    Run one processing cycle over `sources`, in order.

    Never raises for a per-source problem: unexpected exceptions are caught at
    the source boundary and recorded as UNKNOWN_ERROR.
    """
    started_at = datetime.now(UTC)
    outcomes: list[SourceOutcome] = []

    for source in sources:
        with structlog.contextvars.bound_contextvars(source=source.name):
            log.info("sync.source_started", url=source.url)
            run = _SourceRun(source, fetcher, decoder, loader, validator, backends, error_sink)
            try:
                outcome = run.run()
            except Exception as e:
                log.exception("sync.source_unexpected_error")
                outcome = SourceOutcome(
                    source_name=source.name,
                    status=OutcomeStatus.FAILED,
                    failure=FailureDescription(
                        code=ErrorCode.UNKNOWN_ERROR,
                        message=f"Unexpected error processing {source.name}",
                        exception=e,
                    ),
                )
            log.info(
                "sync.source_finished",
                status=outcome.status.value,
                stored=list(outcome.stored_backends),
            )
            outcomes.append(outcome)

    return CycleReport(
        outcomes=tuple(outcomes),
        started_at=started_at,
        finished_at=datetime.now(UTC),
    )


class CrlSyncService:
    """
    Wired sync pipeline: resolves the current sources and runs process_crls.

    `sources_provider` is called at the start of every cycle, so sources
    changed by a configuration reload apply from the next cycle on. Cycles
    are serialized: a manual trigger waits for a scheduled cycle in flight.
    """

    def __init__(
        self,
        sources_provider: Callable[[], Sequence[CrlSource]],
        fetcher: CrlFetcher,
        decoder: CrlDecoder,
        loader: IssuerCertificateLoader,
        validator: CrlValidator,
        backends: Sequence[StorageBackend],
        error_sink: ErrorSink,
    ) -> None:
        self._sources_provider = sources_provider
        self._fetcher = fetcher
        self._decoder = decoder
        self._loader = loader
        self._validator = validator
        self._backends = tuple(backends)
        self._error_sink = error_sink
        self._lock = threading.Lock()
        self._last_report: CycleReport | None = None

    @property
    def backends(self) -> tuple[StorageBackend, ...]:
        return self._backends

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    def run_cycle(self) -> CycleReport:
        with self._lock:
            sources = list(self._sources_provider())
            log.info(
                "sync.cycle_started",
                sources=len(sources),
                backends=[b.name for b in self._backends],
            )
            report = process_crls(
                sources,
                fetcher=self._fetcher,
                decoder=self._decoder,
                loader=self._loader,
                validator=self._validator,
                backends=self._backends,
                error_sink=self._error_sink,
            )
            self._last_report = report
            log.info("sync.cycle_completed", **report.summary())
            return report
