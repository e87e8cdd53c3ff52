"""
Layer 0 – Rate limit layer
Fixed wall-clock-minute call budgets per API class, with temporary limit reduction after repeated upstream throttling.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_LIMITS: Dict[str, int] = {
    "default": 100,
    "historical": 50,
    "option": 30,
    "market": 20,
}


@dataclass
class RateBucket:
    api_class: str
    window_start_minute: int
    count: int
    limit: int


class RateLimiter:
    """
    Per-class token budget reset at every wall-clock minute boundary.

    Denial is not an error: callers skip or defer the call. ``record_error``
    is the throttling signal from upstream; it never raises.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, int]] = None,
        error_threshold: int = 3,
        reduction: float = 0.2,
        floor: int = 5,
        recovery_seconds: float = 300.0,
        time_func: Callable[[], float] = time.time,
    ):
        self._defaults = dict(DEFAULT_LIMITS)
        if limits:
            self._defaults.update(limits)
        self._error_threshold = error_threshold
        self._reduction = reduction
        self._floor = floor
        self._recovery_seconds = recovery_seconds
        self._now = time_func

        self._lock = threading.Lock()
        self._buckets: Dict[str, RateBucket] = {}
        self._consecutive_errors: Dict[str, int] = {}
        # api_class -> (reduced limit, restore at epoch seconds)
        self._reduced: Dict[str, tuple] = {}

        logger.info(f"⚡ Rate limiter initialised with limits: {self._defaults}")

    # ── Limits ────────────────────────────────────────────

    def default_limit(self, api_class: str) -> int:
        return self._defaults.get(api_class, self._defaults["default"])

    def effective_limit(self, api_class: str) -> int:
        with self._lock:
            return self._effective_limit_locked(api_class, self._now())

    def _effective_limit_locked(self, api_class: str, now: float) -> int:
        reduced = self._reduced.get(api_class)
        if reduced is not None:
            limit, restore_at = reduced
            if now < restore_at:
                return limit
            del self._reduced[api_class]
            logger.info(
                f"✅ Restored rate limit for {api_class} to {self.default_limit(api_class)} calls per minute"
            )
        return self.default_limit(api_class)

    def _bucket_locked(self, api_class: str, now: float) -> RateBucket:
        minute = int(now // 60)
        limit = self._effective_limit_locked(api_class, now)
        bucket = self._buckets.get(api_class)
        if bucket is None or bucket.window_start_minute != minute:
            bucket = RateBucket(api_class, minute, 0, limit)
            self._buckets[api_class] = bucket
        else:
            bucket.limit = limit
        return bucket

    # ── Acquire ───────────────────────────────────────────

    def try_acquire(self, api_class: str = "default") -> bool:
        """Take one call from the current minute's budget; False once exhausted"""
        with self._lock:
            bucket = self._bucket_locked(api_class, self._now())
            if bucket.count >= bucket.limit:
                logger.debug(
                    f"Rate limit reached for {api_class}: {bucket.count}/{bucket.limit} calls this minute"
                )
                return False
            bucket.count += 1
            return True

    # ── Upstream feedback ─────────────────────────────────

    def record_success(self, api_class: str = "default") -> None:
        with self._lock:
            self._consecutive_errors[api_class] = 0

    def record_error(self, api_class: str = "default") -> None:
        """Upstream throttled us; three in a row cut the class limit by 20% for a while"""
        with self._lock:
            now = self._now()
            errors = self._consecutive_errors.get(api_class, 0) + 1
            self._consecutive_errors[api_class] = errors
            if errors < self._error_threshold:
                logger.warning(f"⚠️ Upstream throttled {api_class} ({errors} consecutive)")
                return

            base = self.default_limit(api_class)
            reduced = max(self._floor, int(base * (1 - self._reduction)))
            self._reduced[api_class] = (reduced, now + self._recovery_seconds)
            self._consecutive_errors[api_class] = 0
            bucket = self._buckets.get(api_class)
            if bucket is not None:
                bucket.limit = reduced
            logger.warning(
                f"⚠️ Repeated throttling for {api_class}, reducing limit to {reduced} calls per minute "
                f"for {int(self._recovery_seconds)}s"
            )

    # ── Stats ─────────────────────────────────────────────

    def seconds_until_reset(self) -> int:
        now = self._now()
        return int(60 - (now % 60)) or 60

    def usage_stats(self) -> Dict[str, dict]:
        with self._lock:
            now = self._now()
            stats = {}
            for api_class in sorted(set(self._defaults) | set(self._buckets)):
                bucket = self._bucket_locked(api_class, now)
                stats[api_class] = {
                    "used": bucket.count,
                    "limit": bucket.limit,
                    "remaining": max(0, bucket.limit - bucket.count),
                    "reduced": api_class in self._reduced,
                }
        reset_in = self.seconds_until_reset()
        for entry in stats.values():
            entry["reset_in"] = reset_in
        return stats
