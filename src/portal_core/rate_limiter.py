"""
Rate Limiter module for outbound third-party API calls.

This module provides client-side throttling with:
- A sliding window of request timestamps per logical endpoint
- An explicit backoff period set when the upstream answers 429
- Serial access control per endpoint for check-then-record sequences

State is held in process memory only. It is a courtesy layer in front of
the upstream's own limits, reset whenever the process restarts.
"""

import asyncio
import math
import time
import weakref
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from .config import RateLimitConfig, RateLimitRule


@dataclass
class RateLimitStatus:
    """Result of a rate limit check."""

    allowed: bool
    retry_after_seconds: int = 0
    reason: Optional[str] = None


@dataclass
class _EndpointState:
    requests: list[float] = field(default_factory=list)
    last_error: Optional[float] = None
    backoff_until: Optional[float] = None


class RateLimiter:
    """
    Sliding-window rate limiter with error-triggered backoff.

    One instance is constructed per process and shared by every upstream
    client; nothing is persisted.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        time_func: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            config: Per-endpoint rules plus the default endpoint name
            time_func: Monotonic clock in seconds (injectable for tests)
        """
        self._config = config
        self._now = time_func or time.monotonic
        self._states: dict[str, _EndpointState] = defaultdict(_EndpointState)
        # Locks are per event loop; a lock created under one loop cannot be
        # awaited from another.
        self._locks = weakref.WeakKeyDictionary()

    def _lock(self, endpoint: str) -> asyncio.Lock:
        locks = self._locks.setdefault(asyncio.get_running_loop(), {})
        if endpoint not in locks:
            locks[endpoint] = asyncio.Lock()
        return locks[endpoint]

    def _rule(self, endpoint: str) -> RateLimitRule:
        return self._config.rule_for(endpoint)

    def _prune(self, state: _EndpointState, rule: RateLimitRule, now: float) -> None:
        state.requests = [t for t in state.requests if now - t < rule.window_seconds]

    def can_make_request(self, endpoint: str) -> RateLimitStatus:
        """
        Check whether a request to ``endpoint`` may be made now.

        A pending backoff period wins over the window check. Otherwise
        timestamps older than the window are pruned and the request is
        denied while the window is at capacity.
        """
        rule = self._rule(endpoint)
        state = self._states[endpoint]
        now = self._now()

        if state.backoff_until is not None and now < state.backoff_until:
            return RateLimitStatus(
                allowed=False,
                retry_after_seconds=math.ceil(state.backoff_until - now),
                reason=f"Backing off {endpoint} after upstream throttling",
            )

        self._prune(state, rule, now)

        if len(state.requests) >= rule.max_requests:
            oldest = state.requests[0]
            retry_after = math.ceil(oldest + rule.window_seconds - now)
            return RateLimitStatus(
                allowed=False,
                retry_after_seconds=max(1, retry_after),
                reason=f"Rate limit reached for {endpoint}: {len(state.requests)}/{rule.max_requests}",
            )

        return RateLimitStatus(allowed=True)

    def record_request(self, endpoint: str) -> None:
        """Append the current time to the endpoint's window."""
        self._states[endpoint].requests.append(self._now())

    def record_429(self, endpoint: str, retry_after_seconds: Optional[float] = None) -> None:
        """
        Start a backoff period for ``endpoint``.

        Uses the upstream's Retry-After when given, otherwise the rule's
        configured backoff.
        """
        rule = self._rule(endpoint)
        state = self._states[endpoint]
        now = self._now()
        backoff = retry_after_seconds if retry_after_seconds else rule.backoff_seconds
        state.last_error = now
        state.backoff_until = now + backoff

    def clear_state(self, endpoint: str) -> None:
        """Forget all recorded requests and backoff for an endpoint."""
        self._states.pop(endpoint, None)

    def get_time_until_reset(self, endpoint: str) -> int:
        """Seconds until the endpoint would accept another request."""
        if endpoint not in self._states:
            return 0
        status = self.can_make_request(endpoint)
        return 0 if status.allowed else status.retry_after_seconds

    @asynccontextmanager
    async def acquire(self, endpoint: str) -> AsyncIterator[RateLimitStatus]:
        """
        Check the limit while holding the endpoint's lock.

        Usage:
            async with rate_limiter.acquire(endpoint) as status:
                if status.allowed:
                    rate_limiter.record_request(endpoint)
                    response = await make_request()

        The lock keeps concurrent callers in one process from both passing
        the check before either records its request.
        """
        async with self._lock(endpoint):
            yield self.can_make_request(endpoint)
