"""
CRL decoder adapter — raw bytes → DecodedCrl.

Adapter layer — implements the CrlDecoder port using:
  - cryptography (PyCA): CRL parsing, validity window, signature algorithm
  - asn1crypto: raw extension list (OID, critical flag, extnValue bytes)

cryptography only hands back typed values for the extensions it knows, so the
vendor extensions (e.g. the ADCS next-publish marker) are read from the
asn1crypto view of the same DER, where every extnValue is available verbatim.
"""

from __future__ import annotations

import structlog
from asn1crypto import core
from asn1crypto import crl as asn1_crl
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.extensions import ExtensionNotFound

from crl_trawler.domain.failures import ErrorCode
from crl_trawler.domain.models import CrlExtension, DecodedCrl
from crl_trawler.domain.result import Result

log = structlog.get_logger()

_PEM_MARKER = b"-----BEGIN X509 CRL-----"


def _load_crl(raw: bytes) -> x509.CertificateRevocationList:
    if _PEM_MARKER in raw[:1024]:
        return x509.load_pem_x509_crl(raw)
    return x509.load_der_x509_crl(raw)


def _raw_extensions(der: bytes) -> tuple[CrlExtension, ...]:
    extensions = asn1_crl.CertificateList.load(der)["tbs_cert_list"]["crl_extensions"]
    if isinstance(extensions, core.Void):
        return ()
    return tuple(
        CrlExtension(
            oid=ext["extn_id"].dotted,
            critical=bool(ext["critical"].native),
            value=ext["extn_value"].contents,
        )
        for ext in extensions
    )


def _crl_number(crl: x509.CertificateRevocationList) -> int | None:
    try:
        return crl.extensions.get_extension_for_class(x509.CRLNumber).value.crl_number
    except ExtensionNotFound:
        return None


class X509CrlDecoder:
    """
    Decode DER (or PEM-armoured) X.509 CRLs.

    Implements the CrlDecoder port. Pure — no I/O, no clock.
    """

    def decode(self, raw: bytes) -> Result[DecodedCrl]:
        """
        Parse `raw` into a DecodedCrl.

        Returns Result.failure(DECODE_ERROR, ...) for anything that is not a
        well-formed CRL, including malformed or duplicated standard extensions.
        """
        return Result.from_computation(
            lambda: self._do_decode(raw),
            ErrorCode.DECODE_ERROR,
            "CRL could not be decoded",
        )

    def _do_decode(self, raw: bytes) -> DecodedCrl:
        if not raw:
            raise ValueError("empty CRL payload")

        crl = _load_crl(raw)
        der = crl.public_bytes(Encoding.DER)

        # Forces parsing of every standard extension; malformed ones raise here.
        crl_number = _crl_number(crl)

        decoded = DecodedCrl(
            this_update=crl.last_update_utc,
            next_update=crl.next_update_utc,
            extensions=_raw_extensions(der),
            signature_algorithm_oid=crl.signature_algorithm_oid.dotted_string,
            issuer=crl.issuer.rfc4514_string(),
            der=der,
            crl_number=crl_number,
            revoked_count=len(crl),
            native=crl,
        )
        log.debug(
            "decode.complete",
            issuer=decoded.issuer,
            crl_number=crl_number,
            revoked=decoded.revoked_count,
            extensions=[e.oid for e in decoded.extensions],
        )
        return decoded
