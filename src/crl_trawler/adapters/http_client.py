"""
HTTP adapter — CRL download via httpx.

Adapter layer — implements the CrlFetcher port.

A failed fetch is not retried here: every source is polled again on the next
scheduled cycle, so a transient outage costs one interval at most. All HTTP
errors are captured into Result failures, no exception leaks to the sync
orchestrator.
"""

from __future__ import annotations

import httpx
import structlog

from crl_trawler.domain.failures import ErrorCode
from crl_trawler.domain.result import Result

log = structlog.get_logger()


class HttpCrlFetcher:
    """
    Download raw CRL bytes via HTTP GET.

    Implements the CrlFetcher port. Redirects are followed because CDPs are
    commonly fronted by load balancers that bounce http→https.
    """

    def __init__(self, timeout: float = 60, user_agent: str = "crl-trawler") -> None:
        self._timeout = timeout
        self._headers = {"User-Agent": user_agent}

    def fetch(self, url: str) -> Result[bytes]:
        """
        Fetch the CRL at `url`.

        Returns Result[bytes] with the full response body on success,
        or Result.failure(RETRIEVAL_ERROR, ...) on transport failure,
        non-2xx status, or body read failure.
        """
        return Result.from_computation(
            lambda: self._do_fetch(url),
            ErrorCode.RETRIEVAL_ERROR,
            f"CRL retrieval failed for {url}",
        )

    def _do_fetch(self, url: str) -> bytes:
        """HTTP GET — exceptions caught by from_computation."""
        with httpx.Client(
            timeout=self._timeout,
            follow_redirects=True,
            headers=self._headers,
        ) as client:
            response = client.get(url)
            response.raise_for_status()
            data = response.content
            log.info(
                "fetch.complete",
                url=url,
                status=response.status_code,
                size_bytes=len(data),
            )
            return data
