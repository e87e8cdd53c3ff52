"""Market data models shared by every layer"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator


class DataType(str, Enum):
    INDEX = "INDEX"
    FUTURES = "FUTURES"
    OPTION = "OPTION"


class Crossover(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"
    NONE = "NONE"


class Trend(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    FLAT = "FLAT"


class AppendResult(str, Enum):
    INSERTED = "inserted"
    DUPLICATE_IGNORED = "duplicate_ignored"
    OVERWRITTEN = "overwritten"


class MonitorState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CACHED = "cached"
    EXPIRED = "expired"


class Candle(BaseModel):
    """One OHLCV bucket; timestamps are UTC instants"""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: Optional[float]
    volume: float = 0.0
    open_interest: Optional[float] = None

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def from_epoch_row(cls, row: List[float]) -> "Candle":
        """Broker history row: [epoch_seconds, open, high, low, close, volume]"""
        ts, op, hi, lo, cl, vol = row[:6]
        return cls(
            timestamp=datetime.fromtimestamp(int(ts), tz=timezone.utc),
            open=float(op),
            high=float(hi),
            low=float(lo),
            close=None if cl is None else float(cl),
            volume=float(vol or 0),
        )


class Quote(BaseModel):
    symbol: str
    ltp: float
    change: float = 0.0
    change_percent: float = 0.0
    volume: float = 0.0
    open_interest: Optional[float] = None


class DepthLevel(BaseModel):
    price: float
    volume: float
    orders: int = 0


class Depth(BaseModel):
    symbol: str
    bids: List[DepthLevel] = []
    asks: List[DepthLevel] = []
    total_buy_qty: float = 0.0
    total_sell_qty: float = 0.0


@dataclass(frozen=True)
class SeriesWindow:
    """Ordered, bounded view of one symbol's series at a given version"""

    symbol: str
    candles: Tuple[Candle, ...]
    version: int = 0

    def __len__(self) -> int:
        return len(self.candles)

    @property
    def closes(self) -> List[Optional[float]]:
        return [c.close for c in self.candles]

    @property
    def last(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None


@dataclass(frozen=True)
class MissingPeriod:
    start: datetime
    end: datetime

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60) + 1


@dataclass
class BackfillResult:
    symbol: str
    filled: int = 0
    remaining: List[MissingPeriod] = field(default_factory=list)
    failed: int = 0
    deferred: bool = False
    completion_percentage: float = 100.0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "filled": self.filled,
            "remaining": [
                {"start": p.start.isoformat(), "end": p.end.isoformat()} for p in self.remaining
            ],
            "failed": self.failed,
            "deferred": self.deferred,
            "completion_percentage": self.completion_percentage,
        }


class IndicatorSnapshot(BaseModel):
    """What callers see for a monitored symbol; stale=True means degraded success"""

    symbol: str
    period: int
    value: Optional[float]
    as_of: Optional[datetime]
    computed_at: datetime
    stale: bool = False
    last_close: Optional[float] = None
    previous_close: Optional[float] = None
    previous_value: Optional[float] = None
    crossover: Crossover = Crossover.NONE
    trend: Trend = Trend.FLAT
    candle_count: int = 0
