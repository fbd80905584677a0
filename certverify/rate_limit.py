"""
Rate limiting module for the certificate verification service.

Fixed-window counters kept in the shared key-value store, keyed by client,
endpoint and time bucket, so every worker process sees the same counts.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .kv_backends import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None


class FixedWindowRateLimiter:
    """
    Bounded request counter per (client, endpoint, window).

    The read-increment-write is not atomic across processes; a burst may
    slightly exceed the limit. Store failures fail open.
    """

    def __init__(
        self,
        store: KeyValueStore,
        limit: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time
    ):
        self._store = store
        self._limit = max(1, limit)
        self._window = window_seconds
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    def _key(self, client_id: str, endpoint: str, bucket: int) -> str:
        return f"ratelimit:{client_id}:{endpoint}:{bucket}"

    def check(self, client_id: str, endpoint: str) -> RateLimitResult:
        """
        Count this request and report whether it is allowed.

        Args:
            client_id: Identifier of the caller
            endpoint: Logical endpoint name

        Returns:
            RateLimitResult with allowed status and metadata
        """
        now = self._clock()
        bucket = int(now // self._window)
        reset_at = (bucket + 1) * self._window
        key = self._key(client_id, endpoint, bucket)

        try:
            raw = self._store.get(key)
            count = int(raw) if raw else 0

            if count >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    limit=self._limit,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0, math.ceil(reset_at - now))
                )

            self._store.put(key, str(count + 1), self._window)
        except Exception as e:
            logger.error("Rate limiting error: %s", e)
            return RateLimitResult(allowed=True, limit=self._limit, remaining=0, reset_at=reset_at)

        return RateLimitResult(
            allowed=True,
            limit=self._limit,
            remaining=self._limit - (count + 1),
            reset_at=reset_at
        )

    def allow(self, client_id: str, endpoint: str) -> bool:
        return self.check(client_id, endpoint).allowed
