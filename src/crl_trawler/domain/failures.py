"""
Failure description — structured error information for the failure track.

Every adapter converts library exceptions into a FailureDescription tagged with
an ErrorCode from the taxonomy below, so the sync orchestrator can decide per
code whether a failure is only logged or also escalated to the alert channel.

Severity and Criticality are the two alert dimensions carried by an ErrorReport.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique


@unique
class ErrorCode(Enum):
    """
    Structured error codes for the failure track.

    The first group covers the retrieval → validation → storage pipeline.
    The second group covers the ambient concerns around it.
    """

    # --- Pipeline errors ---
    RETRIEVAL_ERROR = "RETRIEVAL_ERROR"
    """Transport failure, non-success HTTP status or body read failure."""

    DECODE_ERROR = "DECODE_ERROR"
    """Bytes are not a well-formed DER (or PEM) revocation list."""

    CERTIFICATE_LOAD_ERROR = "CERTIFICATE_LOAD_ERROR"
    """Issuer certificate missing, unreadable or malformed."""

    SIGNATURE_ERROR = "SIGNATURE_ERROR"
    """CRL was not signed by the configured issuer certificate."""

    EXTENSION_DECODE_ERROR = "EXTENSION_DECODE_ERROR"
    """Vendor next-publish extension present but malformed."""

    WRITE_ERROR = "WRITE_ERROR"
    """Backend-specific persistence failure."""

    BACKEND_UNAVAILABLE_ERROR = "BACKEND_UNAVAILABLE_ERROR"
    """Backend unreachable or refusing reads (transport/auth)."""

    NOT_FOUND = "NOT_FOUND"
    """No stored artifact under the key. A normal outcome of a backend read."""

    # --- Ambient errors ---
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Invalid or unreadable configuration."""

    ALERT_DELIVERY_ERROR = "ALERT_DELIVERY_ERROR"
    """Webhook alert could not be delivered."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unexpected/unclassified failures."""


@unique
class Severity(Enum):
    """How bad the condition is for the CRL distribution it affects."""

    LOW = "low"
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@unique
class Criticality(Enum):
    """How urgently an operator has to act."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.DECODE_ERROR, "Not a CRL")
    >>> desc.code
    <ErrorCode.DECODE_ERROR: 'DECODE_ERROR'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def detail(self) -> str:
        """Message plus the underlying exception text, for logs and alert descriptions."""
        if self.exception is None:
            return self.message
        return f"{self.message}: {self.exception}"

    def full_stack_trace(self) -> str:
        """Full stack trace string including the message and exception chain."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(
                type(self.exception), self.exception, self.exception.__traceback__
            )
        )
        return f"{self.message}\n{tb}"
