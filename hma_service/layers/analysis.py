"""
Analysis layer
Hull Moving Average on close prices: full recompute with pandas, O(period) incremental update,
crossover and trend detection.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, List, Optional, Sequence

import numpy as np
import pandas as pd

from hma_service.models.market import Crossover, Trend

logger = logging.getLogger(__name__)


def _weights(period: int) -> np.ndarray:
    # oldest sample weight 1, newest weight `period`
    return np.arange(1, period + 1, dtype=float)


def _is_missing(value: Optional[float]) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _wma_tail(values: Sequence[Optional[float]], period: int) -> Optional[float]:
    """WMA of the last ``period`` values; None when short or any value is missing"""
    if period <= 0 or len(values) < period:
        return None
    window = list(values)[-period:]
    if any(_is_missing(v) for v in window):
        return None
    return float(np.dot(window, _weights(period)) / (period * (period + 1) / 2))


@dataclass
class IndicatorCache:
    """
    Latest HMA state for one symbol.

    ``closes`` keeps the trailing ``period`` closes and ``raw`` the trailing
    ``sqrt(period)`` values of ``2*WMA(half) - WMA(period)``, which is all an
    incremental update needs.
    """

    symbol: str
    period: int
    window_version: int = 0
    current_value: Optional[float] = None
    previous_value: Optional[float] = None
    last_close: Optional[float] = None
    previous_close: Optional[float] = None
    as_of: Optional[datetime] = None
    computed_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    candle_count: int = 0
    closes: Deque[Optional[float]] = field(default_factory=deque)
    raw: Deque[Optional[float]] = field(default_factory=deque)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(tz=timezone.utc)
        return (now - self.computed_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "period": self.period,
            "window_version": self.window_version,
            "current_value": self.current_value,
            "previous_value": self.previous_value,
            "last_close": self.last_close,
            "previous_close": self.previous_close,
            "as_of": self.as_of.isoformat() if self.as_of else None,
            "computed_at": self.computed_at.isoformat(),
            "candle_count": self.candle_count,
        }


class IndicatorEngine:
    """Indicator engine: stateless math + IndicatorCache builders"""

    def __init__(self, period: int = 55):
        if period < 2:
            raise ValueError("HMA period must be at least 2")
        self.period = period
        self.half = period // 2
        self.sqrt_period = int(math.floor(math.sqrt(period)))

    @property
    def warmup(self) -> int:
        """Closes needed before the first non-null HMA value"""
        return self.period + self.sqrt_period - 1

    # ── WMA / HMA ─────────────────────────────────────────

    @staticmethod
    def wma(values: Sequence[Optional[float]], period: int) -> pd.Series:
        """Rolling weighted moving average; any missing value in a window yields NaN"""
        series = pd.Series(values, dtype=float)
        if period <= 0:
            return pd.Series([np.nan] * len(series), dtype=float)
        weights = _weights(period)
        denom = period * (period + 1) / 2
        return series.rolling(window=period, min_periods=period).apply(
            lambda window: np.dot(window, weights) / denom, raw=True
        )

    def _raw_series(self, closes: Sequence[Optional[float]]) -> pd.Series:
        return 2 * self.wma(closes, self.half) - self.wma(closes, self.period)

    def compute_hma(self, closes: Sequence[Optional[float]], period: Optional[int] = None) -> List[Optional[float]]:
        """
        HMA = WMA(2*WMA(x, p/2) - WMA(x, p), sqrt(p)), aligned with the input.

        Returns all None when the series is shorter than the period.
        """
        if period is not None and period != self.period:
            return IndicatorEngine(period).compute_hma(closes)
        n = len(closes)
        if n < self.period:
            return [None] * n
        hma = self.wma(self._raw_series(closes).tolist(), self.sqrt_period)
        return [None if pd.isna(v) else float(v) for v in hma]

    # ── Cache ─────────────────────────────────────────────

    def build_cache(
        self,
        symbol: str,
        closes: Sequence[Optional[float]],
        window_version: int = 0,
        as_of: Optional[datetime] = None,
    ) -> IndicatorCache:
        """Full recompute over a window; seeds the trailing state for incremental updates"""
        values = self.compute_hma(closes)
        raw = self._raw_series(closes).tolist() if len(closes) else []
        cache = IndicatorCache(
            symbol=symbol,
            period=self.period,
            window_version=window_version,
            current_value=values[-1] if values else None,
            previous_value=values[-2] if len(values) > 1 else None,
            last_close=closes[-1] if len(closes) else None,
            previous_close=closes[-2] if len(closes) > 1 else None,
            as_of=as_of,
            candle_count=len(closes),
            closes=deque(list(closes)[-self.period:], maxlen=self.period),
            raw=deque(
                [None if pd.isna(v) else float(v) for v in raw[-self.sqrt_period:]],
                maxlen=self.sqrt_period,
            ),
        )
        logger.debug(f"HMA{self.period} for {symbol}: {cache.current_value} over {len(closes)} candles")
        return cache

    def incremental_update(
        self,
        cache: IndicatorCache,
        new_close: Optional[float],
        as_of: Optional[datetime] = None,
        window_version: Optional[int] = None,
    ) -> Optional[float]:
        """Append one close and recompute only the windows ending at it"""
        cache.closes.append(new_close)
        cache.raw.append(self._next_raw(cache.closes))
        value = _wma_tail(cache.raw, self.sqrt_period)

        cache.previous_close, cache.last_close = cache.last_close, new_close
        cache.previous_value, cache.current_value = cache.current_value, value
        cache.candle_count += 1
        cache.computed_at = datetime.now(tz=timezone.utc)
        if as_of is not None:
            cache.as_of = as_of
        if window_version is not None:
            cache.window_version = window_version
        return value

    def _next_raw(self, closes: Sequence[Optional[float]]) -> Optional[float]:
        slow = _wma_tail(closes, self.period)
        fast = _wma_tail(closes, self.half)
        if slow is None or fast is None:
            return None
        return 2 * fast - slow

    # ── Signals ───────────────────────────────────────────

    @staticmethod
    def detect_crossover(
        prev_price: Optional[float],
        curr_price: Optional[float],
        prev_hma: Optional[float],
        curr_hma: Optional[float],
    ) -> Crossover:
        if any(_is_missing(v) for v in (prev_price, curr_price, prev_hma, curr_hma)):
            return Crossover.NONE
        if prev_price <= prev_hma and curr_price > curr_hma:
            return Crossover.ABOVE
        if prev_price >= prev_hma and curr_price < curr_hma:
            return Crossover.BELOW
        return Crossover.NONE

    @staticmethod
    def trend(values: Sequence[Optional[float]]) -> Trend:
        """Direction of the last two non-null HMA values"""
        present = [v for v in values if not _is_missing(v)]
        if len(present) < 2:
            return Trend.FLAT
        prev, curr = present[-2], present[-1]
        if curr > prev:
            return Trend.UP
        if curr < prev:
            return Trend.DOWN
        return Trend.FLAT

    def crossover_for(self, cache: IndicatorCache) -> Crossover:
        return self.detect_crossover(
            cache.previous_close, cache.last_close, cache.previous_value, cache.current_value
        )
