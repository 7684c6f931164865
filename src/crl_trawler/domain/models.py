"""
Domain models — immutable value objects for CRL sources, decoded lists and outcomes.

These are pure value objects with no behavior beyond small derived properties.
They flow through the sync pipeline:

    CrlSource → raw bytes → DecodedCrl → ValidationVerdict → SourceOutcome → CycleReport

All models are frozen dataclasses (immutable).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from pathlib import Path
from typing import Any

from crl_trawler.domain.failures import Criticality, FailureDescription, Severity

# Microsoft ADCS "Next CRL Publish" (szOID_CRL_NEXT_PUBLISH)
NEXT_PUBLISH_OID = "1.3.6.1.4.1.311.21.4"


@dataclass(frozen=True, slots=True)
class CrlSource:
    """
    One configured CRL distribution point.

    `issuer_certificate_path` points at the CA certificate expected to have
    signed the list; it is read fresh on every cycle.
    """

    name: str
    url: str
    issuer_certificate_path: Path


@dataclass(frozen=True, slots=True)
class CrlExtension:
    """A single CRL extension: dotted OID, criticality flag and raw extnValue bytes."""

    oid: str
    critical: bool
    value: bytes = field(repr=False)


@dataclass(frozen=True, slots=True)
class DecodedCrl:
    """
    Structured view of a revocation list.

    `native` keeps the parsed cryptography object for signature checks; it is
    excluded from equality and repr. `this_update <= next_update` is assumed,
    not re-validated.
    """

    this_update: datetime
    next_update: datetime | None
    extensions: tuple[CrlExtension, ...]
    signature_algorithm_oid: str
    issuer: str
    der: bytes = field(repr=False)
    crl_number: int | None = None
    revoked_count: int = 0
    native: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class ValidationVerdict:
    """
    Outcome of validating one decoded CRL against its issuer certificate.

    `valid` is False whenever the list is expired, independent of the
    signature. `extension_failure` records a next-publish extension that was
    present but corrupt; in that case `next_publish_time` is None.
    """

    valid: bool
    publish_ready: bool
    next_publish_time: datetime | None = None
    expired: bool = False
    signature_failure: FailureDescription | None = None
    extension_failure: FailureDescription | None = None

    @property
    def storable(self) -> bool:
        return self.valid and self.publish_ready


@unique
class ChangeStatus(Enum):
    """Comparison of freshly fetched bytes with a backend's stored artifact."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    NOT_PRESENT = "not_present"

    @property
    def requires_write(self) -> bool:
        return self is not ChangeStatus.UNCHANGED


@unique
class Stage(Enum):
    """Pipeline stage a source failed in."""

    FETCH = "fetch"
    DECODE = "decode"
    LOAD_ISSUER_CERT = "load_issuer_cert"
    VALIDATE = "validate"
    STORE = "store"


@unique
class OutcomeStatus(Enum):
    """Terminal state of one source in one cycle."""

    STORED = "stored"
    SKIPPED_UNCHANGED = "skipped_unchanged"
    SKIPPED_INVALID = "skipped_invalid"
    SKIPPED_NOT_READY = "skipped_not_ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ErrorReport:
    """
    A failure handed to the Error Channel for alerting.

    Owned by the orchestrator until it is put on the channel, then by the
    alert dispatcher.
    """

    context: str
    failure: FailureDescription
    severity: Severity
    criticality: Criticality
    source_name: str | None = None


@dataclass(frozen=True, slots=True)
class SourceOutcome:
    """What happened to one source during one cycle."""

    source_name: str
    status: OutcomeStatus
    stored_backends: tuple[str, ...] = ()
    unchanged_backends: tuple[str, ...] = ()
    failed_backends: tuple[str, ...] = ()
    stage: Stage | None = None
    failure: FailureDescription | None = None


@dataclass(frozen=True, slots=True)
class CycleReport:
    """Aggregate of all source outcomes of one processing cycle."""

    outcomes: tuple[SourceOutcome, ...] = ()
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def stored(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.STORED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.FAILED)

    @property
    def writes(self) -> int:
        """Total number of backend writes performed in the cycle."""
        return sum(len(o.stored_backends) for o in self.outcomes)

    def outcome_for(self, source_name: str) -> SourceOutcome | None:
        for outcome in self.outcomes:
            if outcome.source_name == source_name:
                return outcome
        return None

    def summary(self) -> dict[str, Any]:
        """Counts per status, for logs and the /trigger endpoint."""
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return {"sources": len(self.outcomes), "writes": self.writes, **counts}
