"""
Shared fixtures: a deterministic broker, a pinned market clock and store/fetcher builders.
"""

import math
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import pytest

# Make sure the project root is importable
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from hma_service.errors import InvalidSymbolError, NoDataError  # noqa: E402
from hma_service.layers.acquisition import MarketDataClient  # noqa: E402
from hma_service.layers.backfill import HistoricalFetcher  # noqa: E402
from hma_service.layers.calendar import MarketClock  # noqa: E402
from hma_service.layers.rate_limit import RateLimiter  # noqa: E402
from hma_service.layers.storage import MemorySeriesBackend, TimeSeriesStore  # noqa: E402
from hma_service.models.market import Candle, Depth, DepthLevel, Quote  # noqa: E402

HOLIDAYS = ["2025-01-26", "2025-02-26", "2025-03-14"]

# Wednesday 2025-01-15 16:30 IST, after the close
AFTER_CLOSE = datetime(2025, 1, 15, 11, 0, tzinfo=timezone.utc)
# Wednesday 2025-01-15 12:02 IST, mid-session
MID_SESSION = datetime(2025, 1, 15, 6, 32, tzinfo=timezone.utc)


def price_at(ts: datetime) -> float:
    minutes = ts.timestamp() / 60
    return round(22000 + 40 * math.sin(minutes / 45) + (minutes % 97) / 10, 2)


def make_candle(ts: datetime, close: Optional[float] = None) -> Candle:
    close = price_at(ts) if close is None else close
    return Candle(timestamp=ts, open=close - 1, high=close + 2, low=close - 2, close=close, volume=1000)


class FakeMarketData(MarketDataClient):
    """Serves a synthetic candle for every grid point of every trading session"""

    def __init__(self, clock: MarketClock, invalid: Iterable[str] = (), no_data_days: Iterable = ()):
        self.clock = clock
        self.invalid = set(invalid)
        self.no_data_days = set(no_data_days)
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None

    async def fetch_history(self, symbol, resolution, start, end):
        self.calls.append((symbol, resolution, start, end))
        if symbol in self.invalid:
            raise InvalidSymbolError(f"Invalid symbol {symbol}", symbol=symbol)
        if self.fail_with is not None:
            raise self.fail_with
        candles = []
        day = self.clock.local_date(start)
        while day <= self.clock.local_date(end):
            if self.clock.is_trading_day(day) and day not in self.no_data_days:
                for ts in self.clock.trading_grid(day, resolution):
                    if start <= ts <= end:
                        candles.append(make_candle(ts))
            day += timedelta(days=1)
        if not candles:
            raise NoDataError(f"No candles for {symbol}", symbol=symbol)
        return candles

    async def fetch_quote(self, symbol):
        self.calls.append((symbol, "quote"))
        if symbol in self.invalid:
            raise InvalidSymbolError(f"Invalid symbol {symbol}", symbol=symbol)
        return Quote(symbol=symbol, ltp=price_at(self.clock.now()), volume=1000)

    async def fetch_depth(self, symbol):
        self.calls.append((symbol, "depth"))
        ltp = price_at(self.clock.now())
        return Depth(
            symbol=symbol,
            bids=[DepthLevel(price=ltp - 0.05 * i, volume=100, orders=2) for i in range(1, 6)],
            asks=[DepthLevel(price=ltp + 0.05 * i, volume=100, orders=2) for i in range(1, 6)],
            total_buy_qty=500,
            total_sell_qty=500,
        )


def make_clock(now: datetime = AFTER_CLOSE) -> MarketClock:
    return MarketClock(holidays=HOLIDAYS, now_func=lambda: now)


async def no_sleep(_seconds: float) -> None:
    return None


def make_fetcher(clock: MarketClock, client: MarketDataClient, store: Optional[TimeSeriesStore] = None,
                 limiter: Optional[RateLimiter] = None, **kwargs) -> HistoricalFetcher:
    store = store or TimeSeriesStore(MemorySeriesBackend(), clock)
    limiter = limiter or RateLimiter(time_func=lambda: 6000.0)
    params = dict(batch_cooldown=0, request_delay=0, sleep=no_sleep)
    params.update(kwargs)
    return HistoricalFetcher(client, store, limiter, clock, **params)


@pytest.fixture
def clock():
    return make_clock()


@pytest.fixture
def store(clock):
    return TimeSeriesStore(MemorySeriesBackend(), clock)
