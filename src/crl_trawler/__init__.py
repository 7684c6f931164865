"""
crl_trawler — CRL retrieval, validation and synchronization service.

Periodically downloads Certificate Revocation Lists from HTTP distribution
points, checks each against its issuing CA certificate, and stores changed
lists on the local filesystem and/or S3-compatible object storage.

Built on the Railway-Oriented Programming (Result) style for explicit,
composable error handling.
"""

__version__ = "0.1.0"
