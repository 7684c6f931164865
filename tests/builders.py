"""
Test data builders: key pairs, CA certificates and signed CRLs.

Everything is produced with cryptography's builders, so decoding and
signature checks run against genuine DER rather than canned bytes.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from asn1crypto import algos as asn1_algos
from asn1crypto import core
from asn1crypto import crl as asn1_crl
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from crl_trawler.domain.models import NEXT_PUBLISH_OID

# A fixed "now" for every time-dependent test. Whole seconds: UTCTime has no fractions.
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@dataclass(frozen=True)
class CertificateAuthority:
    """A signing key and its self-signed certificate."""

    key: ec.EllipticCurvePrivateKey
    certificate: x509.Certificate

    @property
    def pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    def write(self, directory: Path, file_name: str = "ca.pem") -> Path:
        path = directory / file_name
        path.write_bytes(self.pem)
        return path


def make_ca(
    common_name: str = "Test Issuing CA",
    *,
    ca: bool = True,
    key_usage: x509.KeyUsage | None = None,
) -> CertificateAuthority:
    """
    Create an EC P-256 key with a self-signed certificate.

    `ca=False` gives an end-entity certificate; `key_usage` adds a KeyUsage extension.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=365))
        .not_valid_after(NOW + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if key_usage is not None:
        builder = builder.add_extension(key_usage, critical=True)
    certificate = builder.sign(key, hashes.SHA256())
    return CertificateAuthority(key=key, certificate=certificate)


def encode_utc_time(moment: datetime) -> bytes:
    """DER UTCTime, the encoding ADCS uses for the next-publish extension."""
    return core.UTCTime(moment).dump()


def make_crl(
    ca: CertificateAuthority,
    *,
    this_update: datetime | None = None,
    next_update: datetime | None = None,
    next_publish: datetime | None = None,
    next_publish_raw: bytes | None = None,
    revoked_serials: Sequence[int] = (),
    crl_number: int = 1,
    signer: CertificateAuthority | None = None,
    pem: bool = False,
) -> bytes:
    """
    Build a CRL issued by `ca` and signed by `signer` (default: `ca`).

    `next_publish` adds the ADCS next-publish extension as UTCTime;
    `next_publish_raw` puts arbitrary bytes in its extnValue instead.
    """
    this_update = this_update or NOW - timedelta(days=1)
    next_update = next_update or NOW + timedelta(days=7)

    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(ca.certificate.subject)
        .last_update(this_update)
        .next_update(next_update)
        .add_extension(x509.CRLNumber(crl_number), critical=False)
    )

    value = next_publish_raw
    if next_publish is not None:
        value = encode_utc_time(next_publish)
    if value is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(x509.ObjectIdentifier(NEXT_PUBLISH_OID), value),
            critical=False,
        )

    for serial in revoked_serials:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder()
            .serial_number(serial)
            .revocation_date(this_update)
            .build()
        )

    crl = builder.sign((signer or ca).key, hashes.SHA256())
    encoding = serialization.Encoding.PEM if pem else serialization.Encoding.DER
    return crl.public_bytes(encoding)


def make_crl_without_next_update(
    ca: CertificateAuthority, this_update: datetime | None = None
) -> bytes:
    """
    DER CRL signed by `ca` whose TBSCertList omits nextUpdate.

    cryptography's builder always writes nextUpdate, so the structure is
    assembled with asn1crypto and signed with the CA key directly.
    """
    this_update = this_update or NOW - timedelta(days=1)
    algorithm = asn1_algos.SignedDigestAlgorithm({"algorithm": "sha256_ecdsa"})
    tbs = asn1_crl.TbsCertList(
        {
            "version": "v2",
            "signature": algorithm,
            "issuer": asn1_x509.Name.load(ca.certificate.subject.public_bytes()),
            "this_update": asn1_x509.Time(name="utc_time", value=this_update),
        }
    )
    signature = ca.key.sign(tbs.dump(), ec.ECDSA(hashes.SHA256()))
    return asn1_crl.CertificateList(
        {
            "tbs_cert_list": tbs,
            "signature_algorithm": algorithm,
            "signature": signature,
        }
    ).dump()


def fixed_clock(moment: datetime = NOW) -> Callable[[], datetime]:
    return lambda: moment
