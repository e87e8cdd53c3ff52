"""
Storage layer
Append-only, deduplicated candle series per symbol and candle resolution.

Two tiers per {symbol, data_type, resolution}:
  day shard     {SYMBOL}_{DATA_TYPE}_{N}m_{YYYY-MM-DD}.csv  ← every append lands here
  consolidated  {SYMBOL}_{DATA_TYPE}_{N}m.csv               ← sorted + deduplicated, used for reads
Shards are merged into the consolidated series on demand before reads, or by ``consolidate``.
Shard rows are newer than the consolidated file, so they win when both are loaded.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

import pandas as pd

from hma_service.errors import InvalidSymbolError
from hma_service.layers.calendar import MarketClock
from hma_service.layers.processing import CANDLE_COLUMNS, ProcessingLayer
from hma_service.models.market import AppendResult, Candle, DataType, SeriesWindow
from hma_service.symbols import data_type_for

logger = logging.getLogger(__name__)

_SHARD_RE = re.compile(
    r"^(?P<key>.+)_(?P<dtype>INDEX|FUTURES|OPTION)_(?P<res>\d+)m_(?P<day>\d{4}-\d{2}-\d{2})\.csv$"
)
_CONSOLIDATED_RE = re.compile(r"^(?P<key>.+)_(?P<dtype>INDEX|FUTURES|OPTION)_(?P<res>\d+)m\.csv$")


class SeriesKey(NamedTuple):
    """Identity of one stored series"""

    key: str
    data_type: DataType
    resolution: int

    @property
    def file_stem(self) -> str:
        return f"{self.key}_{self.data_type.value}_{self.resolution}m"


def _storage_key(symbol: str) -> str:
    """File-system safe key for a broker symbol (NSE:NIFTY50-INDEX → NSE-NIFTY50-INDEX)"""
    return re.sub(r"[^A-Za-z0-9&-]", "-", symbol)


def _columns_for(data_type: DataType) -> List[str]:
    if data_type == DataType.FUTURES:
        return CANDLE_COLUMNS + ["openInterest"]
    return list(CANDLE_COLUMNS)


# ── Backends ──────────────────────────────────────────────

class SeriesBackend:
    """Persistence contract for the two storage tiers"""

    def append_shard(self, series: SeriesKey, day: date, df: pd.DataFrame) -> None:
        raise NotImplementedError

    def load_shards(self, series: SeriesKey) -> pd.DataFrame:
        raise NotImplementedError

    def load_consolidated(self, series: SeriesKey) -> pd.DataFrame:
        raise NotImplementedError

    def save_consolidated(self, series: SeriesKey, df: pd.DataFrame) -> None:
        raise NotImplementedError

    def shard_index(self) -> List[Tuple[SeriesKey, date]]:
        raise NotImplementedError

    def consolidated_index(self) -> List[SeriesKey]:
        raise NotImplementedError

    def delete_shard(self, series: SeriesKey, day: date) -> None:
        raise NotImplementedError


class CsvSeriesBackend(SeriesBackend):
    """Flat CSV files in one directory"""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        os.makedirs(self.data_dir, exist_ok=True)

    def _shard_path(self, series: SeriesKey, day: date) -> str:
        return os.path.join(self.data_dir, f"{series.file_stem}_{day.isoformat()}.csv")

    def _consolidated_path(self, series: SeriesKey) -> str:
        return os.path.join(self.data_dir, f"{series.file_stem}.csv")

    @staticmethod
    def _read(path: str, data_type: DataType) -> pd.DataFrame:
        if not os.path.exists(path):
            return pd.DataFrame(columns=_columns_for(data_type))
        df = pd.read_csv(path)
        if df.empty:
            return pd.DataFrame(columns=_columns_for(data_type))
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        return df

    @staticmethod
    def _write_frame(df: pd.DataFrame, data_type: DataType) -> pd.DataFrame:
        out = df.reindex(columns=_columns_for(data_type)).copy()
        out["timestamp"] = out["timestamp"].map(lambda ts: pd.Timestamp(ts).isoformat())
        return out

    def append_shard(self, series: SeriesKey, day: date, df: pd.DataFrame) -> None:
        path = self._shard_path(series, day)
        write_header = not os.path.exists(path)
        self._write_frame(df, series.data_type).to_csv(path, mode="a", header=write_header, index=False)

    def load_shards(self, series: SeriesKey) -> pd.DataFrame:
        frames = [
            self._read(self._shard_path(s, day), s.data_type)
            for s, day in self.shard_index()
            if s == series
        ]
        frames = [f for f in frames if not f.empty]
        if not frames:
            return pd.DataFrame(columns=_columns_for(series.data_type))
        return pd.concat(frames, ignore_index=True)

    def load_consolidated(self, series: SeriesKey) -> pd.DataFrame:
        return self._read(self._consolidated_path(series), series.data_type)

    def save_consolidated(self, series: SeriesKey, df: pd.DataFrame) -> None:
        path = self._consolidated_path(series)
        tmp = f"{path}.tmp"
        self._write_frame(df, series.data_type).to_csv(tmp, index=False)
        os.replace(tmp, path)

    def shard_index(self) -> List[Tuple[SeriesKey, date]]:
        result = []
        for name in sorted(os.listdir(self.data_dir)):
            match = _SHARD_RE.match(name)
            if match:
                series = SeriesKey(match.group("key"), DataType(match.group("dtype")), int(match.group("res")))
                result.append((series, date.fromisoformat(match.group("day"))))
        return result

    def consolidated_index(self) -> List[SeriesKey]:
        result = []
        for name in sorted(os.listdir(self.data_dir)):
            if _SHARD_RE.match(name):
                continue
            match = _CONSOLIDATED_RE.match(name)
            if match:
                result.append(SeriesKey(match.group("key"), DataType(match.group("dtype")), int(match.group("res"))))
        return result

    def delete_shard(self, series: SeriesKey, day: date) -> None:
        path = self._shard_path(series, day)
        if os.path.exists(path):
            os.remove(path)


class MemorySeriesBackend(SeriesBackend):
    """Process-local backend for tests and ephemeral runs"""

    def __init__(self):
        self._shards: Dict[Tuple[SeriesKey, date], pd.DataFrame] = {}
        self._consolidated: Dict[SeriesKey, pd.DataFrame] = {}

    def append_shard(self, series: SeriesKey, day: date, df: pd.DataFrame) -> None:
        existing = self._shards.get((series, day))
        frame = df.reindex(columns=_columns_for(series.data_type))
        self._shards[(series, day)] = (
            frame.copy() if existing is None else pd.concat([existing, frame], ignore_index=True)
        )

    def load_shards(self, series: SeriesKey) -> pd.DataFrame:
        frames = [df for (s, _), df in sorted(self._shards.items(), key=lambda kv: kv[0][1])
                  if s == series]
        if not frames:
            return pd.DataFrame(columns=_columns_for(series.data_type))
        return pd.concat(frames, ignore_index=True)

    def load_consolidated(self, series: SeriesKey) -> pd.DataFrame:
        df = self._consolidated.get(series)
        return df.copy() if df is not None else pd.DataFrame(columns=_columns_for(series.data_type))

    def save_consolidated(self, series: SeriesKey, df: pd.DataFrame) -> None:
        self._consolidated[series] = df.reindex(columns=_columns_for(series.data_type)).copy()

    def shard_index(self) -> List[Tuple[SeriesKey, date]]:
        return sorted(self._shards.keys(), key=lambda k: (k[0].file_stem, k[1]))

    def consolidated_index(self) -> List[SeriesKey]:
        return sorted(self._consolidated.keys(), key=lambda s: s.file_stem)

    def delete_shard(self, series: SeriesKey, day: date) -> None:
        self._shards.pop((series, day), None)


# ── Store ─────────────────────────────────────────────────

@dataclass
class _SeriesState:
    symbol: str
    series: SeriesKey
    candles: Dict[datetime, Candle] = field(default_factory=dict)
    dirty_days: Set[date] = field(default_factory=set)
    version: int = 0

    @property
    def resolution(self) -> int:
        return self.series.resolution


class TimeSeriesStore:
    """
    Deduplicated candle series per (symbol, resolution)

    1-minute and 5-minute candles of one symbol are separate series. Appends
    for one symbol are serialised by that symbol's lock; different symbols
    never share a lock.
    """

    def __init__(
        self,
        backend: SeriesBackend,
        clock: MarketClock,
        max_candles: int = 2000,
    ):
        self._backend = backend
        self._clock = clock
        self._proc = ProcessingLayer()
        self._max_candles = max_candles
        self._states: Dict[Tuple[str, int], _SeriesState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ── Internal ──────────────────────────────────────────

    def _lock_for(self, symbol: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = self._locks[symbol] = threading.Lock()
            return lock

    @staticmethod
    def _resolve_type(symbol: str, data_type: Optional[DataType]) -> DataType:
        if data_type is not None:
            return data_type
        try:
            return data_type_for(symbol)
        except InvalidSymbolError:
            return DataType.INDEX

    def _state_locked(
        self, symbol: str, resolution: int, data_type: Optional[DataType] = None
    ) -> _SeriesState:
        state = self._states.get((symbol, resolution))
        if state is not None:
            return state
        series = SeriesKey(_storage_key(symbol), self._resolve_type(symbol, data_type), resolution)
        state = _SeriesState(symbol=symbol, series=series)
        consolidated = self._backend.load_consolidated(series)
        shards = self._backend.load_shards(series)
        frames = [f for f in (consolidated, shards) if not f.empty]
        if frames:
            merged = self._proc.normalize_candles(
                pd.concat(frames, ignore_index=True).to_dict(orient="records"), keep="last"
            )
            for candle in self._proc.frame_to_candles(merged):
                state.candles[candle.timestamp] = candle
            if not shards.empty:
                state.dirty_days = {self._clock.local_date(c.timestamp) for c in state.candles.values()}
            logger.debug(f"Loaded {len(state.candles)} stored {resolution}m candles for {symbol}")
        self._trim_locked(state)
        self._states[(symbol, resolution)] = state
        return state

    def _trim_locked(self, state: _SeriesState) -> None:
        excess = len(state.candles) - self._max_candles
        if excess > 0:
            for ts in sorted(state.candles)[:excess]:
                del state.candles[ts]

    def _consolidate_locked(self, state: _SeriesState) -> None:
        if not state.dirty_days:
            return
        df = self._proc.candles_to_frame(state.symbol, state.candles.values())
        self._backend.save_consolidated(state.series, df)
        logger.debug(
            f"Consolidated {len(df)} {state.resolution}m candles for {state.symbol} "
            f"({len(state.dirty_days)} day shards)"
        )
        state.dirty_days.clear()

    @staticmethod
    def _apply_locked(state: _SeriesState, candle: Candle, overwrite: bool) -> AppendResult:
        existing = state.candles.get(candle.timestamp)
        if existing is not None and (not overwrite or existing == candle):
            return AppendResult.DUPLICATE_IGNORED
        state.candles[candle.timestamp] = candle
        state.version += 1
        return AppendResult.INSERTED if existing is None else AppendResult.OVERWRITTEN

    def _flush_locked(self, state: _SeriesState, written: Iterable[datetime]) -> None:
        """One shard write per local day for the timestamps accepted in this call"""
        by_day: Dict[date, List[Candle]] = {}
        for ts in sorted(set(written)):
            by_day.setdefault(self._clock.local_date(ts), []).append(state.candles[ts])
        for day, candles in by_day.items():
            self._backend.append_shard(state.series, day, self._proc.candles_to_frame(state.symbol, candles))
            state.dirty_days.add(day)
        self._trim_locked(state)

    # ── Writes ────────────────────────────────────────────

    def append(
        self,
        symbol: str,
        candle: Candle,
        resolution: int = 1,
        data_type: Optional[DataType] = None,
        overwrite: bool = False,
    ) -> AppendResult:
        """
        Idempotent on timestamp: a candle whose timestamp is already stored is
        ignored (first write wins) unless ``overwrite`` is set for a
        same-session recompute.
        """
        with self._lock_for(symbol):
            state = self._state_locked(symbol, resolution, data_type)
            result = self._apply_locked(state, candle, overwrite)
            if result != AppendResult.DUPLICATE_IGNORED:
                self._flush_locked(state, [candle.timestamp])
            return result

    def append_many(
        self,
        symbol: str,
        candles: Iterable[Candle],
        resolution: int = 1,
        data_type: Optional[DataType] = None,
        overwrite: bool = False,
    ) -> Dict[str, int]:
        counts = {result.value: 0 for result in AppendResult}
        with self._lock_for(symbol):
            state = self._state_locked(symbol, resolution, data_type)
            written = []
            for candle in sorted(candles, key=lambda c: c.timestamp):
                result = self._apply_locked(state, candle, overwrite)
                counts[result.value] += 1
                if result != AppendResult.DUPLICATE_IGNORED:
                    written.append(candle.timestamp)
            if written:
                self._flush_locked(state, written)
        return counts

    def consolidate(self, symbol: Optional[str] = None) -> int:
        """Merge dirty day shards into consolidated series; returns series touched"""
        keys = [k for k in list(self._states) if symbol is None or k[0] == symbol]
        touched = 0
        for key in keys:
            with self._lock_for(key[0]):
                state = self._states.get(key)
                if state is not None and state.dirty_days:
                    self._consolidate_locked(state)
                    touched += 1
        return touched

    # ── Reads ─────────────────────────────────────────────

    def read(
        self,
        symbol: str,
        from_ts: Optional[datetime] = None,
        to_ts: Optional[datetime] = None,
        resolution: int = 1,
        fresh: bool = True,
    ) -> SeriesWindow:
        with self._lock_for(symbol):
            state = self._state_locked(symbol, resolution)
            if fresh:
                self._consolidate_locked(state)
            candles = [
                state.candles[ts] for ts in sorted(state.candles)
                if (from_ts is None or ts >= from_ts) and (to_ts is None or ts <= to_ts)
            ]
            return SeriesWindow(symbol=symbol, candles=tuple(candles), version=state.version)

    def latest(self, symbol: str, count: int, resolution: int = 1) -> SeriesWindow:
        window = self.read(symbol, resolution=resolution)
        if count <= 0:
            return SeriesWindow(symbol=symbol, candles=(), version=window.version)
        return SeriesWindow(symbol=symbol, candles=window.candles[-count:], version=window.version)

    def read_day(self, symbol: str, day: date, resolution: int = 1) -> SeriesWindow:
        start, end = self._clock.session_window(day)
        return self.read(symbol, start, end, resolution=resolution)

    def version(self, symbol: str, resolution: int = 1) -> int:
        with self._lock_for(symbol):
            return self._state_locked(symbol, resolution).version

    # ── Retention ─────────────────────────────────────────

    def prune(self, retention_days: int = 3) -> Dict[str, int]:
        """Drop data for trading days older than the last ``retention_days`` trading days"""
        keep_days = self._clock.last_n_trading_days(retention_days)
        if not keep_days:
            return {"shards_deleted": 0, "candles_removed": 0}
        oldest = keep_days[0]
        keep = set(keep_days)
        cutoff = self._clock.session_window(oldest)[0].replace(hour=0, minute=0)

        shards_deleted = 0
        for series, day in self._backend.shard_index():
            if day not in keep:
                self._backend.delete_shard(series, day)
                shards_deleted += 1

        candles_removed = 0
        loaded = {s.series: s for s in self._states.values()}
        for series in self._backend.consolidated_index():
            if series in loaded:
                continue
            df = self._backend.load_consolidated(series)
            if df.empty:
                continue
            kept = df[df["timestamp"] >= pd.Timestamp(cutoff)]
            if len(kept) != len(df):
                candles_removed += len(df) - len(kept)
                self._backend.save_consolidated(series, kept)

        for state in list(loaded.values()):
            with self._lock_for(state.symbol):
                stale = [ts for ts in state.candles if ts < cutoff]
                for ts in stale:
                    del state.candles[ts]
                state.dirty_days = {d for d in state.dirty_days if d in keep}
                if stale:
                    candles_removed += len(stale)
                    state.version += 1
                    df = self._proc.candles_to_frame(state.symbol, state.candles.values())
                    self._backend.save_consolidated(state.series, df)

        logger.info(
            f"🧹 Retention: kept {[d.isoformat() for d in keep_days]}, "
            f"deleted {shards_deleted} shards, removed {candles_removed} candles"
        )
        return {"shards_deleted": shards_deleted, "candles_removed": candles_removed}

    def stats(self) -> List[dict]:
        """Loaded series that hold candles, ordered by symbol then resolution"""
        rows = []
        for (symbol, resolution), state in sorted(self._states.items()):
            if not state.candles:
                continue
            rows.append({
                "symbol": symbol,
                "resolution": resolution,
                "data_type": state.series.data_type.value,
                "candles": len(state.candles),
                "version": state.version,
                "pending_days": sorted(d.isoformat() for d in state.dirty_days),
                "last_timestamp": max(state.candles).isoformat(),
            })
        return rows
