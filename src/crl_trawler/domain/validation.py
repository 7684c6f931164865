"""
CRL validation — extension inspection, signature and expiry checks.

Domain layer — pure decision logic over already-decoded data. The only input
from the outside world is the clock, which is injected so that expiry and
next-publish gating can be tested deterministically.

Verdict rules:
  - valid          = signature verifies AND NOT (now > nextUpdate)
                     a missing nextUpdate counts as expired
  - the issuer must be allowed to sign CRLs: a CA per BasicConstraints and,
    when KeyUsage is present, with cRLSign
  - publish_ready  = no next-publish marker → True
                     marker present        → now > marker
  - a next-publish extension that is present but corrupt is logged as its own
    condition and then treated like an absent marker
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime

import structlog
from asn1crypto import x509 as asn1_x509
from cryptography import x509

from crl_trawler.domain.failures import ErrorCode, FailureDescription
from crl_trawler.domain.models import (
    NEXT_PUBLISH_OID,
    CrlExtension,
    DecodedCrl,
    ValidationVerdict,
)
from crl_trawler.domain.result import Result

log = structlog.get_logger()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


# ─────────────────────── Extension Inspector ───────────────────────


def find_extension(extensions: Iterable[CrlExtension], oid: str) -> CrlExtension | None:
    """Return the first extension with the given dotted OID, or None when absent."""
    for extension in extensions:
        if extension.oid == oid:
            return extension
    return None


def _parse_asn1_time(value: bytes) -> datetime:
    parsed = asn1_x509.Time.load(value, strict=True).native
    if not isinstance(parsed, datetime):
        raise ValueError(f"Expected an ASN.1 time, got {type(parsed).__name__}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def decode_next_publish(value: bytes) -> Result[datetime]:
    """
    Decode the extnValue of a next-publish extension as an ASN.1 Time.

    ADCS encodes it as UTCTime; GeneralizedTime is accepted as well.
    """
    return Result.from_computation(
        lambda: _parse_asn1_time(value),
        ErrorCode.EXTENSION_DECODE_ERROR,
        "Malformed next-publish extension",
    )


# ─────────────────────── Signature ───────────────────────


def _check_crl_signer(issuer: x509.Certificate) -> None:
    """Raise ValueError unless `issuer` is a CA certificate permitted to sign CRLs."""
    try:
        constraints = issuer.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        if issuer.version is x509.Version.v3:
            raise ValueError("issuer certificate has no BasicConstraints") from None
    else:
        if not constraints.ca:
            raise ValueError("issuer certificate is not a CA")

    try:
        usage = issuer.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return
    if not usage.crl_sign:
        raise ValueError("issuer KeyUsage does not permit cRLSign")


def _signature_matches(crl: DecodedCrl, issuer: x509.Certificate) -> bool:
    _check_crl_signer(issuer)
    if crl.native is None:
        native = x509.load_der_x509_crl(crl.der)
    else:
        native = crl.native
    return bool(native.is_signature_valid(issuer.public_key()))


def verify_signature(crl: DecodedCrl, issuer: x509.Certificate) -> Result[bool]:
    """
    Check the CRL signature against the issuer public key.

    Uses the algorithm declared in the list. Unsupported key types and
    mismatching signatures both end as SIGNATURE_ERROR.
    """
    subject = issuer.subject.rfc4514_string()
    return Result.from_computation(
        lambda: _signature_matches(crl, issuer),
        ErrorCode.SIGNATURE_ERROR,
        f"Signature could not be verified with issuer {subject}",
    ).flat_map(
        lambda ok: Result.success(ok)
        if ok
        else Result.failure(
            ErrorCode.SIGNATURE_ERROR,
            f"CRL issued by {crl.issuer} is not signed by {subject}",
        )
    )


# ─────────────────────── Validator ───────────────────────


class CrlValidator:
    """Produce a ValidationVerdict for a decoded CRL and its issuer certificate."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock

    def validate(self, crl: DecodedCrl, issuer: x509.Certificate) -> ValidationVerdict:
        now = self._clock()
        # A list without nextUpdate has no freshness bound and is never accepted.
        expired = crl.next_update is None or now > crl.next_update

        next_publish_time, extension_failure = self._next_publish(crl)

        signature = verify_signature(crl, issuer)
        signature_failure = None if signature.is_success() else signature.error()

        valid = signature.is_success() and not expired

        if next_publish_time is None:
            publish_ready = True
        elif now > next_publish_time:
            publish_ready = True
        else:
            publish_ready = False

        log.debug(
            "validation.verdict",
            issuer=crl.issuer,
            valid=valid,
            expired=expired,
            signature_ok=signature_failure is None,
            publish_ready=publish_ready,
            next_update=crl.next_update.isoformat() if crl.next_update else None,
            next_publish=next_publish_time.isoformat() if next_publish_time else None,
        )
        return ValidationVerdict(
            valid=valid,
            publish_ready=publish_ready,
            next_publish_time=next_publish_time,
            expired=expired,
            signature_failure=signature_failure,
            extension_failure=extension_failure,
        )

    def _next_publish(
        self, crl: DecodedCrl
    ) -> tuple[datetime | None, FailureDescription | None]:
        extension = find_extension(crl.extensions, NEXT_PUBLISH_OID)
        if extension is None:
            log.debug("validation.next_publish_absent", issuer=crl.issuer)
            return None, None

        decoded = decode_next_publish(extension.value)
        if decoded.is_failure():
            failure = decoded.error()
            log.warning(
                "validation.next_publish_corrupt",
                issuer=crl.issuer,
                error=failure.detail,
                value_hex=extension.value.hex(),
            )
            return None, failure

        return decoded.value(), None
