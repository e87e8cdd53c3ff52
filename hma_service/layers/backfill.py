"""
Backfill layer
Finds holes in a stored session against the expected candle grid and refills them from the broker
without exceeding the historical API budget.
"""

import asyncio
import bisect
import logging
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from hma_service.errors import (
    AuthExpiredError,
    InvalidSymbolError,
    NoDataError,
    UpstreamThrottledError,
    UpstreamUnavailableError,
)
from hma_service.layers.acquisition import MarketDataClient
from hma_service.layers.calendar import MarketClock
from hma_service.layers.rate_limit import RateLimiter
from hma_service.layers.storage import TimeSeriesStore
from hma_service.models.market import AppendResult, BackfillResult, Candle, MissingPeriod

logger = logging.getLogger(__name__)

HISTORICAL = "historical"


class HistoricalFetcher:
    """Gap detection + rate-limit-aware backfill across trading days"""

    def __init__(
        self,
        client: MarketDataClient,
        store: TimeSeriesStore,
        limiter: RateLimiter,
        clock: MarketClock,
        batch_size: int = 5,
        batch_cooldown: float = 10.0,
        request_delay: float = 1.0,
        tolerance_seconds: int = 30,
        fetch_timeout: float = 12.0,
        max_lookback_days: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._store = store
        self._limiter = limiter
        self._clock = clock
        self._batch_size = max(1, batch_size)
        self._batch_cooldown = batch_cooldown
        self._request_delay = request_delay
        self._tolerance = timedelta(seconds=tolerance_seconds)
        self._fetch_timeout = fetch_timeout
        self._max_lookback_days = max_lookback_days
        self._sleep = sleep

    # ── Upstream ──────────────────────────────────────────

    async def _fetch(self, symbol: str, resolution: int, start: datetime, end: datetime) -> List[Candle]:
        """One bounded history call; timeouts surface as UpstreamUnavailableError"""
        try:
            candles = await asyncio.wait_for(
                self._client.fetch_history(symbol, resolution, start, end),
                timeout=self._fetch_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailableError(
                f"History request for {symbol} timed out after {self._fetch_timeout}s", symbol=symbol
            ) from exc
        except UpstreamThrottledError:
            self._limiter.record_error(HISTORICAL)
            raise
        self._limiter.record_success(HISTORICAL)
        return [c for c in candles if start <= c.timestamp <= end and self._clock.in_session(c.timestamp)]

    # ── Gap detection ─────────────────────────────────────

    def _expected_grid(self, day: date, resolution: int, now: datetime) -> List[datetime]:
        """Grid points whose bucket has closed by ``now``"""
        span = timedelta(minutes=resolution)
        return [p for p in self._clock.trading_grid(day, resolution) if p + span <= now]

    def _missing_points(
        self, symbol: str, grid: List[datetime], day: date, resolution: int
    ) -> List[int]:
        stored = [c.timestamp for c in self._store.read_day(symbol, day, resolution).candles]
        missing = []
        for idx, point in enumerate(grid):
            pos = bisect.bisect_left(stored, point - self._tolerance)
            if pos < len(stored) and stored[pos] <= point + self._tolerance:
                continue
            missing.append(idx)
        return missing

    def find_missing_periods(
        self,
        symbol: str,
        day: date,
        resolution: int = 1,
        now: Optional[datetime] = None,
    ) -> List[MissingPeriod]:
        """
        Compare the session grid for ``day`` with stored candles.

        A grid point counts as present when a stored candle lies within the
        tolerance window; consecutive missing points collapse into one period.
        Buckets still forming at ``now`` are ignored.
        """
        if not self._clock.is_trading_day(day):
            return []
        grid = self._expected_grid(day, resolution, now or self._clock.now())
        if not grid:
            return []

        periods: List[MissingPeriod] = []
        run_start = prev = None
        for idx in self._missing_points(symbol, grid, day, resolution):
            if run_start is None:
                run_start = prev = idx
            elif idx == prev + 1:
                prev = idx
            else:
                periods.append(MissingPeriod(grid[run_start], grid[prev]))
                run_start = prev = idx
        if run_start is not None:
            periods.append(MissingPeriod(grid[run_start], grid[prev]))

        logger.debug(f"{symbol} {day}: {len(grid)} expected, {len(periods)} gaps")
        return periods

    def completion_percentage(self, symbol: str, day: date, resolution: int = 1) -> float:
        grid = self._expected_grid(day, resolution, self._clock.now())
        if not grid:
            return 100.0
        missing = len(self._missing_points(symbol, grid, day, resolution))
        return round((len(grid) - missing) / len(grid) * 100, 1)

    # ── Backfill ──────────────────────────────────────────

    def _residual_gaps(self, symbol: str, period: MissingPeriod, resolution: int) -> List[MissingPeriod]:
        day = self._clock.local_date(period.start)
        return [
            gap for gap in self.find_missing_periods(symbol, day, resolution)
            if gap.end >= period.start and gap.start <= period.end
        ]

    async def backfill(
        self, symbol: str, periods: List[MissingPeriod], resolution: int = 1
    ) -> BackfillResult:
        """
        Best-effort refill. Never raises for partial completion: failed or
        deferred periods come back in ``remaining``.
        """
        result = BackfillResult(symbol=symbol)
        if not periods:
            return result

        batches = [periods[i:i + self._batch_size] for i in range(0, len(periods), self._batch_size)]
        logger.info(f"📦 Backfilling {symbol}: {len(periods)} gaps in {len(batches)} batches")
        total_points = sum(_grid_points(p, resolution) for p in periods)

        pending = list(periods)
        for batch_index, batch in enumerate(batches):
            for position, period in enumerate(batch):
                if not self._limiter.try_acquire(HISTORICAL):
                    result.deferred = True
                    logger.warning(
                        f"⚠️ Historical budget exhausted, deferring {len(pending)} gaps for {symbol} "
                        f"(reset in {self._limiter.seconds_until_reset()}s)"
                    )
                    break
                pending.remove(period)
                try:
                    fetched = await self._fetch(symbol, resolution, period.start, period.end)
                    candles = _completed(fetched, resolution, self._clock.now())
                    counts = self._store.append_many(symbol, candles, resolution=resolution)
                    result.filled += counts["inserted"]
                    result.remaining.extend(self._residual_gaps(symbol, period, resolution))
                    logger.info(f"✅ Filled {counts['inserted']} candles for {symbol} {period.start:%H:%M}-{period.end:%H:%M}")
                except (InvalidSymbolError, AuthExpiredError, NoDataError,
                        UpstreamThrottledError, UpstreamUnavailableError) as exc:
                    result.failed += 1
                    result.remaining.append(period)
                    logger.warning(f"❌ Backfill failed for {symbol} {period.start.isoformat()}: {exc}")

                if position < len(batch) - 1:
                    await self._sleep(self._request_delay)
            if result.deferred:
                break
            if batch_index < len(batches) - 1:
                logger.info(f"⏳ Waiting {self._batch_cooldown}s before next batch...")
                await self._sleep(self._batch_cooldown)

        result.remaining.extend(pending)
        result.remaining.sort(key=lambda p: p.start)
        missing_points = sum(_grid_points(p, resolution) for p in result.remaining)
        result.completion_percentage = round(max(0, total_points - missing_points) / total_points * 100, 1)
        logger.info(
            f"🎉 Backfill for {symbol}: filled {result.filled} candles, "
            f"{len(result.remaining)} gaps remaining{' (deferred)' if result.deferred else ''}"
        )
        return result

    async def backfill_day(self, symbol: str, day: date, resolution: int = 1) -> BackfillResult:
        return await self.backfill(symbol, self.find_missing_periods(symbol, day, resolution), resolution)

    # ── Recent window ─────────────────────────────────────

    async def fetch_recent_candles(
        self,
        symbol: str,
        required: int,
        resolution: int = 5,
        max_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Candle]:
        """
        Walk back over trading days until ``required`` in-session candles are stored.

        Days whose grid is already complete are not re-fetched. Invalid symbols
        and expired auth are terminal and propagate; everything else costs one
        day of the budget.
        """
        now = now or self._clock.now()
        max_days = max_days or self._max_lookback_days
        day = self._clock.last_session_date(now)
        oldest = day
        attempts = 0

        while attempts < max_days:
            oldest = day
            if self._count_since(symbol, oldest, now, resolution) >= required:
                break
            start, end = self._clock.session_window(day)
            end = min(end, now)
            if self.find_missing_periods(symbol, day, resolution, now=now):
                if not self._limiter.try_acquire(HISTORICAL):
                    logger.warning(f"⚠️ Historical budget exhausted while loading {symbol}, using stored candles")
                    break
                try:
                    candles = _completed(await self._fetch(symbol, resolution, start, end), resolution, now)
                    counts = self._store.append_many(symbol, candles, resolution=resolution)
                    logger.info(f"📊 {symbol} {day}: {len(candles)} session candles ({counts['inserted']} new)")
                except NoDataError:
                    logger.info(f"📭 No data for {symbol} on {day} (not listed or holiday feed)")
                except (UpstreamThrottledError, UpstreamUnavailableError) as exc:
                    logger.warning(f"⚠️ Fetch for {symbol} on {day} failed: {exc}")
            day = self._clock.previous_trading_day(day)
            attempts += 1

        start_ts = self._clock.session_window(oldest)[0]
        window = self._store.read(symbol, start_ts, now, resolution=resolution)
        candles = [c for c in window.candles if self._clock.in_session(c.timestamp)]
        return candles[-required:] if required > 0 else candles

    def _count_since(self, symbol: str, day: date, now: datetime, resolution: int) -> int:
        start = self._clock.session_window(day)[0]
        window = self._store.read(symbol, start, now, resolution=resolution)
        return sum(1 for c in window.candles if self._clock.in_session(c.timestamp))

    async def fetch_latest(self, symbol: str, resolution: int = 5, now: Optional[datetime] = None) -> List[Candle]:
        """Pull today's newest candles for a live refresh; [] when deferred or unavailable"""
        now = now or self._clock.now()
        day = self._clock.last_session_date(now)
        start, end = self._clock.session_window(day)
        latest = self._store.latest(symbol, 1, resolution=resolution).last
        if latest is not None and latest.timestamp > start:
            start = latest.timestamp
        end = min(end, now)
        if not self._limiter.try_acquire(HISTORICAL):
            logger.info(f"⏭️ Refresh for {symbol} deferred to next tick (rate limit)")
            return []
        try:
            candles = await self._fetch(symbol, resolution, start, end)
        except NoDataError:
            return []
        return [
            c for c in _completed(candles, resolution, now)
            if self._store.append(symbol, c, resolution=resolution) == AppendResult.INSERTED
        ]


def _completed(candles: List[Candle], resolution: int, now: datetime) -> List[Candle]:
    """Drop the bucket still forming at ``now``; it would be frozen by first-write-wins"""
    span = timedelta(minutes=resolution)
    return [c for c in candles if c.timestamp + span <= now]


def _grid_points(period: MissingPeriod, resolution: int) -> int:
    step = timedelta(minutes=max(1, resolution))
    return int((period.end - period.start) // step) + 1
