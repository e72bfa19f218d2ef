"""In-memory rate limiting for the search summarization gateway.

Two independent limiters live here:

- ``QueryThrottle`` suppresses repeats of the same normalized query inside a
  short window, so a double-submitted search or a refresh does not trigger
  a second completion call.
- ``RateLimiter`` caps how many summary requests a single client may make
  per fixed window.

Both are process-local, guarded by a lock, and never persisted.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict

_logger = logging.getLogger("search_gateway.limiter")

RETENTION_SECONDS = 60.0


def normalize_query(query: str) -> str:
    """Return the throttle key for a query: trimmed and lower-cased."""
    return query.strip().lower()


class QueryThrottle:
    """Per-query duplicate suppression.

    The key space is the normalized query text only; result content plays
    no part, so two identical queries inside the window are throttled even
    when upstream returned different results.
    """

    def __init__(self, window_ms: int = 1000) -> None:
        self._window = window_ms / 1000.0
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def is_limited(self, query: str) -> bool:
        """Record an observation of ``query`` and report whether it is throttled.

        A throttled observation does not refresh the stored timestamp, so a
        query repeated continuously is let through again once per window.

        Args:
            query: The raw query text.

        Returns:
            True if the same normalized query was seen within the window.
        """
        if not query or not query.strip():
            return False

        key = normalize_query(query)
        now = time.time()

        with self._lock:
            self._evict(now)
            last = self._last_seen.get(key)
            if last is not None and now - last < self._window:
                _logger.info("Rate limited query: %s", query)
                return True
            self._last_seen[key] = now
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_seen)

    def _evict(self, now: float) -> None:
        cutoff = now - RETENTION_SECONDS
        stale = [k for k, seen in self._last_seen.items() if seen < cutoff]
        for k in stale:
            del self._last_seen[k]


class RateLimitExceeded(Exception):
    """Raised when a client exceeds their rate limit."""

    def __init__(self, client_id: str, detail: str) -> None:
        self.client_id = client_id
        self.detail = detail
        super().__init__(detail)


@dataclass
class _ClientBucket:
    """Fixed-window counter for a single client."""

    window_start: float = 0.0
    request_count: int = 0


@dataclass
class RateLimiter:
    """Per-client in-memory rate limiter using a fixed window."""

    requests: int = 30
    window_seconds: float = 900.0
    _buckets: Dict[str, _ClientBucket] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def check(self, client_id: str) -> None:
        """Check whether the client may make another request.

        Increments the client's request counter on success.

        Args:
            client_id: The caller's identifier (usually its address).

        Raises:
            RateLimitExceeded: If the client has exceeded their limit.
        """
        now = time.time()
        with self._lock:
            bucket = self._get_or_reset_bucket(client_id, now)

            if bucket.request_count >= self.requests:
                raise RateLimitExceeded(
                    client_id,
                    "Too many requests from {} ({} per {:g}s), try again later.".format(
                        client_id, self.requests, self.window_seconds
                    ),
                )

            bucket.request_count += 1

    def _get_or_reset_bucket(self, client_id: str, now: float) -> _ClientBucket:
        """Retrieve the bucket for client_id, resetting if the window expired."""
        bucket = self._buckets.get(client_id)

        if bucket is None or (now - bucket.window_start) >= self.window_seconds:
            bucket = _ClientBucket(window_start=now)
            self._buckets[client_id] = bucket

        return bucket
