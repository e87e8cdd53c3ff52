"""
Query service
Read-side facade used by the routers and by strategy callers: series windows, indicator values,
gap reports and maintenance operations.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from hma_service.errors import InsufficientDataError, NoDataError, UpstreamThrottledError
from hma_service.layers.acquisition import MarketDataClient
from hma_service.layers.analysis import IndicatorEngine
from hma_service.layers.backfill import HistoricalFetcher
from hma_service.layers.calendar import MarketClock
from hma_service.layers.processing import ProcessingLayer
from hma_service.layers.rate_limit import RateLimiter
from hma_service.layers.storage import TimeSeriesStore
from hma_service.models.market import BackfillResult, DataType
from hma_service.services.monitor_service import LiveMonitor
from hma_service.symbols import parse_symbol

logger = logging.getLogger(__name__)


class QueryService:
    def __init__(
        self,
        store: TimeSeriesStore,
        fetcher: HistoricalFetcher,
        engine: IndicatorEngine,
        monitor: LiveMonitor,
        clock: MarketClock,
        client: MarketDataClient,
        limiter: RateLimiter,
        retention_days: int = 3,
    ):
        self._store = store
        self._fetcher = fetcher
        self._engine = engine
        self._monitor = monitor
        self._clock = clock
        self._client = client
        self._limiter = limiter
        self._proc = ProcessingLayer()
        self._retention_days = retention_days

    # ── Series ────────────────────────────────────────────

    def get_series(
        self,
        symbol: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        resolution: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Stored ``resolution``-minute candles for ``symbol`` in [start, end]
        (1-minute by default). When no series is stored at that resolution the
        1-minute series is aggregated instead. Raises NoDataError when nothing
        is stored.
        """
        parse_symbol(symbol)
        resolution = resolution or 1
        source = resolution
        window = self._store.read(symbol, start, end, resolution=resolution)
        if not len(window) and resolution > 1:
            source = 1
            window = self._store.read(symbol, start, end, resolution=1)
        if not len(window):
            raise NoDataError(f"No stored candles for {symbol}", symbol=symbol)
        tz = str(self._clock.tz)
        session_open = self._clock.session_open.strftime("%H:%M")
        df = self._proc.candles_to_frame(symbol, window.candles)
        df = self._proc.filter_session(df, tz, session_open, self._clock.session_close.strftime("%H:%M"))
        if resolution > source:
            df = self._proc.resample(df, resolution, tz=tz, session_open=session_open)
        return self._proc.to_records(df)

    def get_hma_series(self, symbol: str, count: int = 120) -> List[Dict[str, Any]]:
        """Closes and HMA values for the latest ``count`` monitor-resolution candles (chart data)"""
        parse_symbol(symbol)
        window = self._store.latest(symbol, count + self._engine.warmup, resolution=self._monitor.resolution)
        if len(window) < self._engine.period:
            raise InsufficientDataError(symbol, len(window), self._engine.period)
        values = self._engine.compute_hma(window.closes)
        rows = [
            {"timestamp": c.timestamp.isoformat(), "close": c.close, "hma": v}
            for c, v in zip(window.candles, values)
        ]
        return rows[-count:]

    # ── Indicator ─────────────────────────────────────────

    def get_indicator(self, symbol: str) -> Dict[str, Any]:
        """Cached HMA for a monitored symbol: {value, as_of, stale}"""
        parse_symbol(symbol)
        snapshot = self._monitor.snapshot(symbol)
        if snapshot is None:
            raise NoDataError(f"{symbol} is not being monitored", symbol=symbol)
        return {
            "symbol": symbol,
            "value": snapshot.value,
            "as_of": snapshot.as_of.isoformat() if snapshot.as_of else None,
            "stale": snapshot.stale,
            "crossover": snapshot.crossover.value,
            "trend": snapshot.trend.value,
        }

    # ── Gaps / maintenance ────────────────────────────────

    def missing_periods(self, symbol: str, day: Optional[date] = None, resolution: int = 1) -> Dict[str, Any]:
        parse_symbol(symbol)
        day = day or self._clock.last_session_date()
        periods = self._fetcher.find_missing_periods(symbol, day, resolution)
        return {
            "symbol": symbol,
            "day": day.isoformat(),
            "resolution": resolution,
            "periods": [
                {"start": p.start.isoformat(), "end": p.end.isoformat(), "minutes": p.minutes}
                for p in periods
            ],
            "completion_percentage": self._fetcher.completion_percentage(symbol, day, resolution),
        }

    async def backfill(self, symbol: str, day: Optional[date] = None, resolution: int = 1) -> BackfillResult:
        parse_symbol(symbol)
        day = day or self._clock.last_session_date()
        return await self._fetcher.backfill_day(symbol, day, resolution)

    def prune(self, retention_days: Optional[int] = None) -> Dict[str, int]:
        return self._store.prune(retention_days or self._retention_days)

    # ── Live market data ──────────────────────────────────

    async def _market_call(self, symbol: str, call):
        parsed = parse_symbol(symbol)
        api_class = "option" if parsed.data_type == DataType.OPTION else "market"
        if not self._limiter.try_acquire(api_class):
            raise UpstreamThrottledError(
                f"{api_class} call budget exhausted, retry in {self._limiter.seconds_until_reset()}s",
                symbol=symbol,
            )
        try:
            result = await call(symbol)
        except UpstreamThrottledError:
            self._limiter.record_error(api_class)
            raise
        self._limiter.record_success(api_class)
        return result

    async def get_quote(self, symbol: str) -> Dict[str, Any]:
        quote = await self._market_call(symbol, self._client.fetch_quote)
        return quote.model_dump()

    async def get_depth(self, symbol: str) -> Dict[str, Any]:
        depth = await self._market_call(symbol, self._client.fetch_depth)
        return depth.model_dump()
