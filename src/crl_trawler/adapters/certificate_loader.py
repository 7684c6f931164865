"""
Issuer certificate loader — reads the CA certificate a CRL must be signed by.

The file is read on every call: operators rotate CA certificates on disk and
expect the next cycle to pick them up. PEM and DER are both accepted.
"""

from __future__ import annotations

from pathlib import Path

import structlog
from cryptography import x509

from crl_trawler.domain.failures import ErrorCode
from crl_trawler.domain.result import Result

log = structlog.get_logger()


def _parse_certificate(data: bytes) -> x509.Certificate:
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


class FileIssuerCertificateLoader:
    """Implements the IssuerCertificateLoader port against the local filesystem."""

    def load(self, path: Path) -> Result[x509.Certificate]:
        return Result.from_computation(
            lambda: self._do_load(path),
            ErrorCode.CERTIFICATE_LOAD_ERROR,
            f"Issuer certificate could not be loaded from {path}",
        )

    def _do_load(self, path: Path) -> x509.Certificate:
        certificate = _parse_certificate(Path(path).read_bytes())
        log.debug(
            "issuer_certificate.loaded",
            path=str(path),
            subject=certificate.subject.rfc4514_string(),
        )
        return certificate
