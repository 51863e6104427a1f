import logging
import threading
from collections import defaultdict, deque
from time import monotonic

from fastapi import Request

from chatrelay.core.errors import RateLimitError, request_id_from_request

logger = logging.getLogger("relay.ratelimit")


class SlidingWindowLimiter:
    """In-process sliding-window request limiter keyed by caller.

    Each key may make at most ``max_requests`` requests within any ``window_seconds``
    span. Rejected requests do not count against the window.
    """

    def __init__(self, max_requests: int, window_seconds: float) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def allow(self, key: str) -> bool:
        now = monotonic()
        cutoff = now - self._window_seconds
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self._max_requests:
                return False
            hits.append(now)
            return True

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_chat_rate_limit(request: Request) -> None:
    """Route dependency; runs before body validation and the authorization gate."""
    limiter: SlidingWindowLimiter | None = getattr(request.app.state, "chat_rate_limiter", None)
    if limiter is None:
        return
    key = client_key(request)
    if not limiter.allow(key):
        logger.warning(
            "chat_rate_limited",
            extra={
                "request_id": request_id_from_request(request),
                "path": request.url.path,
                "error": f"more than {limiter.max_requests} requests "
                f"in {limiter.window_seconds}s",
            },
        )
        raise RateLimitError()
