"""
Ports — Protocol-based interfaces for infrastructure adapters.

These define WHAT the sync pipeline needs without specifying HOW it's done.
Following hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing) so adapters and test doubles
satisfy the contract simply by implementing the methods.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from cryptography import x509

from crl_trawler.domain.models import DecodedCrl, ErrorReport
from crl_trawler.domain.result import Result


@runtime_checkable
class CrlFetcher(Protocol):
    """
    Port: retrieve the raw bytes of one CRL.

    Returns Result[bytes]; RETRIEVAL_ERROR on transport failure, non-success
    status or read failure. No retries: the next scheduled cycle is the retry.
    """

    def fetch(self, url: str) -> Result[bytes]: ...


@runtime_checkable
class CrlDecoder(Protocol):
    """Port: parse raw CRL bytes into a DecodedCrl (DECODE_ERROR otherwise). Pure."""

    def decode(self, raw: bytes) -> Result[DecodedCrl]: ...


@runtime_checkable
class IssuerCertificateLoader(Protocol):
    """Port: load the issuer certificate for a source (CERTIFICATE_LOAD_ERROR otherwise)."""

    def load(self, path: Path) -> Result[x509.Certificate]: ...


@runtime_checkable
class StorageBackend(Protocol):
    """
    Port: one storage target for CRL artifacts.

    Each backend owns its copy of every artifact and is compared against
    independently. `read` returns Failure(NOT_FOUND) when nothing is stored
    under the key; any other failure code means the backend could not be
    asked (BACKEND_UNAVAILABLE_ERROR) and must not be mistaken for absence.
    """

    name: str

    def key_for(self, source_name: str) -> str: ...

    def read(self, key: str) -> Result[bytes]: ...

    def exists(self, key: str) -> Result[bool]: ...

    def write(self, key: str, data: bytes) -> Result[str]:
        """Overwrite the artifact under `key`. Returns the written location."""
        ...


@runtime_checkable
class ErrorSink(Protocol):
    """Port: the producer side of the Error Channel."""

    def report(self, report: ErrorReport) -> None: ...
