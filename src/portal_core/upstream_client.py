"""
Async HTTP client for third-party JSON APIs.

Every call passes the process-local rate limiter, maps non-2xx answers to
``UpstreamError`` (honouring ``Retry-After`` on 429) and runs under the retry
policy so transient 429/503 answers are retried with backoff.
"""

from typing import Any, Optional

import httpx

from .audit_logger import AuditLogger
from .exceptions import UpstreamError
from .rate_limiter import RateLimiter
from .retry_manager import RetryManager


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a delta-seconds Retry-After header; HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class UpstreamClient:
    """
    Rate-limited, retrying JSON GET client built on httpx.

    Use as an async context manager, or pass a shared ``httpx.AsyncClient``
    whose lifecycle the caller owns.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        retry_manager: RetryManager,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 8.0,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the upstream client.

        Args:
            rate_limiter: Shared per-process rate limiter
            retry_manager: Retry policy for transient failures
            client: Optional shared httpx client
            timeout: Per-request timeout in seconds when creating a client
            logger: Optional audit logger
        """
        self._rate_limiter = rate_limiter
        self._retry = retry_manager
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )
        self._logger = logger

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_json(
        self,
        url: str,
        endpoint: str,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        GET ``url`` and decode the JSON body, with rate limiting and retries.

        One logical call takes one slot in the endpoint's window; retries of
        that call are not gated again.

        Args:
            url: Absolute URL to fetch
            endpoint: Logical endpoint name used for rate limiting
            headers: Optional request headers
            params: Optional query parameters

        Raises:
            UpstreamError: When the final attempt fails or the call is denied
                by the local rate limiter
        """
        await self._admit(endpoint)
        throttled: Optional[UpstreamError] = None

        async def attempt() -> Any:
            nonlocal throttled
            try:
                return await self._get_once(url, endpoint, headers, params)
            except UpstreamError as e:
                if e.status_code == 429:
                    throttled = e
                raise

        try:
            return await self._retry.execute_with_retry(attempt)
        except UpstreamError:
            # Backoff starts once the retry budget is spent, so it cannot
            # block the retries themselves.
            if throttled is not None:
                self._rate_limiter.record_429(endpoint, throttled.retry_after)
            raise

    async def _admit(self, endpoint: str) -> None:
        async with self._rate_limiter.acquire(endpoint) as status:
            if not status.allowed:
                # Not retried: the local window will not clear within the backoff delays.
                raise UpstreamError(
                    code="rate_limited_locally",
                    message=status.reason or f"Rate limit reached for {endpoint}",
                    retry_after=status.retry_after_seconds,
                    details={"endpoint": endpoint},
                )
            self._rate_limiter.record_request(endpoint)

    async def _get_once(
        self,
        url: str,
        endpoint: str,
        headers: Optional[dict[str, str]],
        params: Optional[dict[str, Any]],
    ) -> Any:
        try:
            response = await self._client.get(url, headers=headers, params=params)
        except httpx.HTTPError as e:
            if self._logger:
                self._logger.log_error("upstream_client", "Upstream request failed", error=e, request_url=url)
            raise UpstreamError(
                code="network_error",
                message=f"Request to {endpoint} failed: {type(e).__name__}",
                details={"endpoint": endpoint},
            )

        if not response.is_success:
            if self._logger:
                self._logger.log_error(
                    "upstream_client",
                    f"{endpoint} returned {response.status_code}",
                    request_url=url,
                    response_status_code=response.status_code,
                )
            raise UpstreamError(
                code="upstream_status",
                message=f"{endpoint} returned {response.status_code}",
                status_code=response.status_code,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                details={"endpoint": endpoint},
            )

        try:
            return response.json()
        except ValueError:
            raise UpstreamError(
                code="invalid_json",
                message=f"{endpoint} returned a non-JSON body",
                status_code=response.status_code,
                details={"endpoint": endpoint},
            )
