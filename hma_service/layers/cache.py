"""
Cache layer
Owns the per-symbol IndicatorCache map (TTL + series-version invalidation) and optionally mirrors
the latest snapshot to Redis so other processes can read it.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from redis.asyncio import Redis

from hma_service.layers.analysis import IndicatorCache

logger = logging.getLogger(__name__)

NAMESPACE = "hma"


def _make_key(namespace: str, *parts: str) -> str:
    """Normalised Redis key"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


class IndicatorCacheLayer:
    """In-memory indicator cache; Redis is a best-effort mirror, never the source of truth"""

    def __init__(
        self,
        ttl_seconds: int = 300,
        redis_getter: Optional[Callable[[], Optional[Redis]]] = None,
        now_func: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, IndicatorCache] = {}
        self._redis_getter = redis_getter or (lambda: None)
        self._now = now_func or (lambda: datetime.now(tz=timezone.utc))

    # ── Freshness ─────────────────────────────────────────

    def is_expired(self, entry: IndicatorCache) -> bool:
        return entry.age_seconds(self._now()) >= self.ttl_seconds

    def is_fresh(self, entry: IndicatorCache, window_version: Optional[int] = None) -> bool:
        if self.is_expired(entry):
            return False
        return window_version is None or entry.window_version == window_version

    # ── Access ────────────────────────────────────────────

    def get(self, symbol: str, window_version: Optional[int] = None) -> Optional[IndicatorCache]:
        """Fresh entry only; None on miss, expiry or version change"""
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        if not self.is_fresh(entry, window_version):
            logger.debug(f"Indicator cache stale: {symbol} (v{entry.window_version})")
            return None
        logger.debug(f"Indicator cache hit: {symbol}")
        return entry

    def peek(self, symbol: str) -> Optional[IndicatorCache]:
        """Entry regardless of freshness (stale values are still served, flagged)"""
        return self._entries.get(symbol)

    def put(self, entry: IndicatorCache) -> None:
        self._entries[entry.symbol] = entry

    def delete(self, symbol: str) -> bool:
        return self._entries.pop(symbol, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def stats(self) -> dict:
        now = self._now()
        return {
            "entries": len(self._entries),
            "ttl_seconds": self.ttl_seconds,
            "redis": self._redis_getter() is not None,
            "symbols": [
                {
                    "symbol": entry.symbol,
                    "value": entry.current_value,
                    "candle_count": entry.candle_count,
                    "window_version": entry.window_version,
                    "age_seconds": round(entry.age_seconds(now), 1),
                    "expired": self.is_expired(entry),
                }
                for entry in self._entries.values()
            ],
        }

    # ── Redis mirror ──────────────────────────────────────

    async def mirror(self, entry: IndicatorCache) -> bool:
        redis = self._redis_getter()
        if redis is None:
            return False
        key = _make_key(NAMESPACE, entry.symbol, str(entry.period))
        try:
            await redis.setex(key, self.ttl_seconds, json.dumps(entry.to_dict(), default=str))
            logger.debug(f"Indicator mirrored to Redis: {key}")
            return True
        except Exception as exc:
            logger.warning(f"⚠️ Redis mirror write failed for {entry.symbol}: {exc}")
            return False

    async def read_mirror(self, symbol: str, period: int) -> Optional[dict]:
        redis = self._redis_getter()
        if redis is None:
            return None
        key = _make_key(NAMESPACE, symbol, str(period))
        try:
            raw = await redis.get(key)
        except Exception as exc:
            logger.warning(f"⚠️ Redis mirror read failed for {symbol}: {exc}")
            return None
        return json.loads(raw) if raw else None

    async def drop_mirror(self, symbol: str, period: int) -> None:
        redis = self._redis_getter()
        if redis is None:
            return
        try:
            await redis.delete(_make_key(NAMESPACE, symbol, str(period)))
        except Exception as exc:
            logger.warning(f"⚠️ Redis mirror delete failed for {symbol}: {exc}")
