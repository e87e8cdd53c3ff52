"""
Live monitoring service
One cancellable refresh task per monitored symbol; keeps that symbol's HMA cache current while the
session is open and serves it (flagged stale) when refreshes stop.
"""

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from hma_service.errors import HMAServiceError, InsufficientDataError, UpstreamUnavailableError
from hma_service.layers.analysis import IndicatorCache, IndicatorEngine
from hma_service.layers.backfill import HistoricalFetcher
from hma_service.layers.cache import IndicatorCacheLayer
from hma_service.layers.calendar import MarketClock
from hma_service.layers.storage import TimeSeriesStore
from hma_service.models.market import Candle, IndicatorSnapshot, MonitorState
from hma_service.symbols import parse_symbol

logger = logging.getLogger(__name__)


@dataclass
class MonitorResult:
    """Outcome of one start/refresh: a snapshot, or the typed error that prevented it"""

    symbol: str
    snapshot: Optional[IndicatorSnapshot] = None
    error: Optional[HMAServiceError] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.snapshot is not None and self.error is None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "success": self.success,
            "cancelled": self.cancelled,
            "data": self.snapshot.model_dump(mode="json") if self.snapshot else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class MonitorHandle:
    symbol: str
    state: MonitorState = MonitorState.IDLE
    generation: int = 0
    task: Optional[asyncio.Task] = None
    last_candle: Optional[Candle] = None
    last_refresh: Optional[datetime] = None
    errors: int = 0
    started_at: Optional[datetime] = field(default=None)

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()


class LiveMonitor:
    """Owns the symbol → MonitorHandle map and every refresh task"""

    def __init__(
        self,
        fetcher: HistoricalFetcher,
        store: TimeSeriesStore,
        engine: IndicatorEngine,
        cache: IndicatorCacheLayer,
        clock: MarketClock,
        required_candles: int = 60,
        resolution: int = 5,
        settle_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._fetcher = fetcher
        self._store = store
        self._engine = engine
        self._cache = cache
        self._clock = clock
        self.required_candles = max(required_candles, engine.warmup)
        self.resolution = resolution
        self._settle = settle_seconds
        self._sleep = sleep
        self._handles: Dict[str, MonitorHandle] = {}
        self._generations = itertools.count(1)

    # ── Lifecycle ─────────────────────────────────────────

    async def start_monitoring(self, symbol: str) -> MonitorResult:
        """
        IDLE → FETCHING → CACHED.

        Loads the last ``required_candles`` candles (walking back over trading
        days), computes the HMA and starts the refresh task while the session
        is open. Failures come back as a typed error and leave the symbol idle.
        """
        try:
            parse_symbol(symbol)
        except HMAServiceError as exc:
            logger.warning(f"❌ Refusing to monitor {symbol}: {exc}")
            return MonitorResult(symbol=symbol, error=exc)

        handle = self._handles.get(symbol)
        if handle is not None and handle.state == MonitorState.CACHED:
            entry = self._cache.get(symbol)
            if entry is not None:
                self._ensure_task(handle)
                return MonitorResult(symbol=symbol, snapshot=self._snapshot(entry))

        if handle is None:
            handle = self._handles[symbol] = MonitorHandle(symbol=symbol)
        generation = next(self._generations)
        handle.generation = generation
        # a refresh loop only serves the generation it was started for
        await self._cancel_task(handle)
        if handle.generation != generation:
            return MonitorResult(symbol=symbol, cancelled=True)
        handle.state = MonitorState.FETCHING
        handle.started_at = handle.started_at or self._clock.now()
        logger.info(f"📡 Start monitoring {symbol} (need {self.required_candles} candles)")

        try:
            entry = await self._load(symbol)
        except HMAServiceError as exc:
            self._discard(handle, generation)
            logger.warning(f"❌ Monitoring {symbol} failed: {exc}")
            return MonitorResult(symbol=symbol, error=exc)
        except Exception as exc:
            self._discard(handle, generation)
            logger.error(f"❌ Unexpected failure loading {symbol}: {exc}", exc_info=True)
            return MonitorResult(symbol=symbol, error=UpstreamUnavailableError(str(exc), symbol=symbol))

        if not self._is_current(handle, generation):
            logger.info(f"⏹️ {symbol} stopped while loading, result discarded")
            return MonitorResult(symbol=symbol, cancelled=True)

        if not await self._publish(handle, generation, entry):
            logger.info(f"⏹️ {symbol} stopped while publishing, result discarded")
            return MonitorResult(symbol=symbol, cancelled=True)
        handle.state = MonitorState.CACHED
        handle.last_refresh = self._clock.now()
        handle.last_candle = self._store.latest(symbol, 1, resolution=self.resolution).last
        self._ensure_task(handle)
        logger.info(f"✅ {symbol} HMA{self._engine.period} = {entry.current_value}")
        return MonitorResult(symbol=symbol, snapshot=self._snapshot(entry))

    def _discard(self, handle: MonitorHandle, generation: int) -> None:
        if self._is_current(handle, generation):
            handle.state = MonitorState.IDLE
            self._handles.pop(handle.symbol, None)
            self._cache.delete(handle.symbol)

    def _is_current(self, handle: MonitorHandle, generation: int) -> bool:
        return handle.generation == generation and self._handles.get(handle.symbol) is handle

    async def _publish(self, handle: MonitorHandle, generation: int, entry: IndicatorCache) -> bool:
        """Cache and mirror ``entry``; False when the handle was stopped or restarted meanwhile"""
        self._cache.put(entry)
        await self._cache.mirror(entry)
        if self._is_current(handle, generation):
            return True
        if self._handles.get(handle.symbol) is None:
            # stop ran during the mirror write; its drop may have landed first
            await self._cache.drop_mirror(handle.symbol, self._engine.period)
        return False

    @staticmethod
    async def _cancel_task(handle: MonitorHandle) -> None:
        task, handle.task = handle.task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def stop_monitoring(self, symbol: str) -> bool:
        """Cancel and await the refresh task; no cache writes for ``symbol`` after this returns"""
        handle = self._handles.pop(symbol, None)
        if handle is None:
            return False
        handle.generation = next(self._generations)
        await self._cancel_task(handle)
        handle.state = MonitorState.IDLE
        self._cache.delete(symbol)
        await self._cache.drop_mirror(symbol, self._engine.period)
        logger.info(f"⏹️ Stopped monitoring {symbol}")
        return True

    async def change_symbol(self, old_symbol: str, new_symbol: str) -> MonitorResult:
        """Tear down ``old_symbol`` (cache invalidated) and start ``new_symbol``"""
        if old_symbol and old_symbol != new_symbol:
            await self.stop_monitoring(old_symbol)
            logger.info(f"🔄 Symbol changed: {old_symbol} → {new_symbol}")
        return await self.start_monitoring(new_symbol)

    async def fetch_hma_for_symbols(self, ce_symbol: str, pe_symbol: str) -> Dict[str, MonitorResult]:
        """Start CE and PE concurrently; one side failing never affects the other"""
        results = await asyncio.gather(
            self.start_monitoring(ce_symbol),
            self.start_monitoring(pe_symbol),
            return_exceptions=True,
        )
        combined = {}
        for side, symbol, result in zip(("ce", "pe"), (ce_symbol, pe_symbol), results):
            if isinstance(result, BaseException):
                logger.error(f"❌ Unexpected failure loading {symbol}: {result}", exc_info=result)
                result = MonitorResult(
                    symbol=symbol, error=UpstreamUnavailableError(str(result), symbol=symbol)
                )
            combined[side] = result
        return combined

    async def shutdown(self) -> None:
        for symbol in list(self._handles):
            await self.stop_monitoring(symbol)
        logger.info("Live monitor stopped")

    # ── Loading ───────────────────────────────────────────

    async def _load(self, symbol: str) -> IndicatorCache:
        candles = await self._fetcher.fetch_recent_candles(
            symbol, self.required_candles, resolution=self.resolution
        )
        found = sum(1 for c in candles if c.close is not None)
        if found < self.required_candles:
            raise InsufficientDataError(symbol, found, self.required_candles)
        return self._engine.build_cache(
            symbol,
            [c.close for c in candles],
            window_version=self._store.version(symbol, self.resolution),
            as_of=candles[-1].timestamp,
        )

    def _rebuild(self, symbol: str) -> Optional[IndicatorCache]:
        window = self._store.latest(symbol, self.required_candles, resolution=self.resolution)
        candles = [c for c in window.candles if self._clock.in_session(c.timestamp)]
        if not candles:
            return None
        return self._engine.build_cache(
            symbol, [c.close for c in candles], window_version=window.version, as_of=candles[-1].timestamp
        )

    # ── Refresh ───────────────────────────────────────────

    def _ensure_task(self, handle: MonitorHandle) -> None:
        if handle.active or not self._clock.is_session_open():
            return
        handle.task = asyncio.create_task(
            self._refresh_loop(handle, handle.generation), name=f"hma-refresh-{handle.symbol}"
        )

    async def _refresh_loop(self, handle: MonitorHandle, generation: int) -> None:
        while handle.generation == generation:
            now = self._clock.now()
            if not self._clock.is_session_open(now):
                logger.info(f"🔔 Session closed, refresh for {handle.symbol} ends")
                return
            boundary = self._clock.next_boundary(now, self.resolution)
            await self._sleep(max(0.0, (boundary - now).total_seconds()) + self._settle)
            if handle.generation != generation:
                return
            try:
                await self.refresh(handle.symbol, generation)
            except HMAServiceError as exc:
                handle.errors += 1
                logger.warning(f"⚠️ Refresh for {handle.symbol} failed ({exc.kind}): {exc}")
            except Exception as exc:
                handle.errors += 1
                logger.error(f"❌ Unexpected refresh error for {handle.symbol}: {exc}", exc_info=True)
            self._mark_expiry(handle)

    async def refresh(self, symbol: str, generation: Optional[int] = None) -> Optional[IndicatorCache]:
        """Pull new candles and advance the HMA; stale generations write nothing"""
        handle = self._handles.get(symbol)
        if handle is None:
            return None
        generation = handle.generation if generation is None else generation
        version_before = self._store.version(symbol, self.resolution)

        new_candles = await self._fetcher.fetch_latest(symbol, self.resolution)
        if not self._is_current(handle, generation):
            return None

        entry = self._cache.peek(symbol)
        if not new_candles:
            return entry
        if entry is None or entry.window_version != version_before:
            entry = self._rebuild(symbol)
        else:
            version = self._store.version(symbol, self.resolution)
            for candle in sorted(new_candles, key=lambda c: c.timestamp):
                self._engine.incremental_update(entry, candle.close, as_of=candle.timestamp, window_version=version)
        if entry is None:
            return None

        if not await self._publish(handle, generation, entry):
            return None
        handle.state = MonitorState.CACHED
        handle.last_refresh = self._clock.now()
        handle.last_candle = new_candles[-1]
        logger.debug(f"🔁 {symbol} HMA{self._engine.period} → {entry.current_value}")
        return entry

    def _mark_expiry(self, handle: MonitorHandle) -> None:
        entry = self._cache.peek(handle.symbol)
        if handle.state == MonitorState.CACHED and (entry is None or self._cache.is_expired(entry)):
            handle.state = MonitorState.EXPIRED
            logger.warning(f"⚠️ {handle.symbol} indicator not refreshed for {self._cache.ttl_seconds}s, serving stale")

    # ── Queries ───────────────────────────────────────────

    def _snapshot(self, entry: IndicatorCache) -> IndicatorSnapshot:
        return IndicatorSnapshot(
            symbol=entry.symbol,
            period=entry.period,
            value=entry.current_value,
            as_of=entry.as_of,
            computed_at=entry.computed_at,
            stale=self._cache.is_expired(entry),
            last_close=entry.last_close,
            previous_close=entry.previous_close,
            previous_value=entry.previous_value,
            crossover=self._engine.crossover_for(entry),
            trend=self._engine.trend([entry.previous_value, entry.current_value]),
            candle_count=entry.candle_count,
        )

    def snapshot(self, symbol: str) -> Optional[IndicatorSnapshot]:
        entry = self._cache.peek(symbol)
        if entry is None:
            return None
        handle = self._handles.get(symbol)
        if handle is not None:
            self._mark_expiry(handle)
        return self._snapshot(entry)

    def is_monitoring(self, symbol: str) -> bool:
        return symbol in self._handles

    def handle(self, symbol: str) -> Optional[MonitorHandle]:
        return self._handles.get(symbol)

    def status(self) -> List[dict]:
        rows = []
        for symbol, handle in sorted(self._handles.items()):
            entry = self._cache.peek(symbol)
            rows.append({
                "symbol": symbol,
                "state": handle.state.value,
                "active": handle.active,
                "value": entry.current_value if entry else None,
                "last_refresh": handle.last_refresh.isoformat() if handle.last_refresh else None,
                "last_candle": handle.last_candle.timestamp.isoformat() if handle.last_candle else None,
                "errors": handle.errors,
            })
        return rows

    def cache_stats(self) -> List[dict]:
        """Per-symbol series stats joined with monitoring state"""
        rows = []
        for info in self._store.stats():
            symbol = info["symbol"]
            rows.append({
                "symbol": symbol,
                "resolution": info["resolution"],
                "candle_count": info["candles"],
                "last_update": info["last_timestamp"],
                "is_live_monitoring": self.is_monitoring(symbol) and info["resolution"] == self.resolution,
            })
        return rows

    def next_refresh_in(self) -> Optional[timedelta]:
        if not self._clock.is_session_open():
            return None
        now = self._clock.now()
        return self._clock.next_boundary(now, self.resolution) - now
