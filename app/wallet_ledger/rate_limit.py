import logging
import time
from collections import deque
from typing import Deque, Dict, Optional

from redis.asyncio import Redis

from .exceptions import RateLimitError

logger = logging.getLogger(__name__)


class WebhookRateLimiter:
    """Per-source-IP request budget for the webhook endpoint.

    Uses a Redis fixed window when Redis is available so the budget is shared
    across workers, and a sliding window held in process memory otherwise.
    """

    _KEY_PREFIX = "ratelimit:webhook:"

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        redis: Optional[Redis] = None,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._redis = redis
        self._requests: Dict[str, Deque[float]] = {}
        self._last_sweep = time.monotonic()

    async def check(self, source_ip: str) -> None:
        """Record a request from ``source_ip``; raise ``RateLimitError`` when over budget."""
        if self._max_requests <= 0:
            return

        if self._redis is not None:
            try:
                count = await self._redis_hit(source_ip)
            except Exception as exc:  # pragma: no cover - redis failure
                logger.warning("Redis rate limit check failed for %s: %s", source_ip, exc)
            else:
                if count > self._max_requests:
                    self._reject(source_ip)
                return

        self._local_hit(source_ip)

    async def _redis_hit(self, source_ip: str) -> int:
        key = f"{self._KEY_PREFIX}{source_ip}"
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, self._window_seconds)
        return count

    def _local_hit(self, source_ip: str) -> None:
        now = time.monotonic()
        cutoff = now - self._window_seconds
        if now - self._last_sweep >= self._window_seconds:
            self._evict_idle(cutoff)
            self._last_sweep = now

        window = self._requests.setdefault(source_ip, deque())
        while window and window[0] <= cutoff:
            window.popleft()
        if len(window) >= self._max_requests:
            self._reject(source_ip)
        window.append(now)

    def _evict_idle(self, cutoff: float) -> None:
        """Drop sources whose newest request has left the window."""
        idle = [ip for ip, window in self._requests.items() if not window or window[-1] <= cutoff]
        for ip in idle:
            del self._requests[ip]

    def _reject(self, source_ip: str) -> None:
        logger.warning(
            "Webhook rate limit exceeded for %s (%d requests / %ds)",
            source_ip,
            self._max_requests,
            self._window_seconds,
        )
        raise RateLimitError(f"Too many webhook requests from {source_ip}")
