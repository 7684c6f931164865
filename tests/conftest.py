"""
Shared test fixtures for the crl-trawler test suite.

Certificate authorities are session-scoped: EC key generation is cheap but
there is no reason to repeat it for every test.
"""

from __future__ import annotations

import pytest
from builders import CertificateAuthority, make_ca, make_crl


@pytest.fixture(scope="session")
def ca() -> CertificateAuthority:
    """The CA that issues and signs the CRLs under test."""
    return make_ca("Test Issuing CA")


@pytest.fixture(scope="session")
def other_ca() -> CertificateAuthority:
    """An unrelated CA, for signature mismatch tests."""
    return make_ca("Unrelated CA")


@pytest.fixture()
def crl_der(ca: CertificateAuthority) -> bytes:
    """A valid, current CRL with two revoked serials and no next-publish marker."""
    return make_crl(ca, revoked_serials=(1001, 1002), crl_number=7)
