"""
Processing layer
Cleans and normalises candle data into the standard frame used by storage and analysis.
"""

import logging
from typing import Any, Dict, Iterable, List

import pandas as pd

from hma_service.models.market import Candle

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ["timestamp", "symbol", "open", "high", "low", "close", "volume"]
FUTURES_COLUMNS = CANDLE_COLUMNS + ["openInterest"]


class ProcessingLayer:
    """Processing layer: clean + normalise + resample"""

    def normalize_candles(self, records: List[Dict[str, Any]], keep: str = "first") -> pd.DataFrame:
        """
        Normalise raw candle records into a DataFrame

        Standard columns: timestamp (UTC), symbol, open, high, low, close, volume[, openInterest]
        Duplicate timestamps keep the first occurrence unless keep="last".
        """
        if not records:
            return pd.DataFrame(columns=CANDLE_COLUMNS)

        df = pd.DataFrame(records)
        if "open_interest" in df.columns and "openInterest" not in df.columns:
            df = df.rename(columns={"open_interest": "openInterest"})

        for col in CANDLE_COLUMNS:
            if col not in df.columns:
                df[col] = None if col in ("symbol", "close") else 0.0

        numeric_cols = ["open", "high", "low", "close", "volume", "openInterest"]
        for col in numeric_cols:
            if col in df.columns:
                df[col] = pd.to_numeric(df[col], errors="coerce")
        # Missing close stays NaN so the indicator can propagate the gap
        df[["open", "high", "low", "volume"]] = df[["open", "high", "low", "volume"]].fillna(0.0)

        df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
        df = df.dropna(subset=["timestamp"])

        df = df.drop_duplicates(subset=["timestamp"], keep=keep)
        df = df.sort_values("timestamp").reset_index(drop=True)
        return df

    def candles_to_frame(self, symbol: str, candles: Iterable[Candle]) -> pd.DataFrame:
        records = []
        for c in candles:
            row = {
                "timestamp": c.timestamp,
                "symbol": symbol,
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
            }
            if c.open_interest is not None:
                row["openInterest"] = c.open_interest
            records.append(row)
        return self.normalize_candles(records)

    def frame_to_candles(self, df: pd.DataFrame) -> List[Candle]:
        if df.empty:
            return []
        has_oi = "openInterest" in df.columns
        candles = []
        for row in df.itertuples(index=False):
            close = row.close
            oi = row.openInterest if has_oi else None
            candles.append(Candle(
                timestamp=row.timestamp.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=None if pd.isna(close) else float(close),
                volume=float(row.volume),
                open_interest=None if oi is None or pd.isna(oi) else float(oi),
            ))
        return candles

    def filter_session(
        self, df: pd.DataFrame, tz: str, session_open: str = "09:15", session_close: str = "15:30"
    ) -> pd.DataFrame:
        """Keep only candles stamped inside trading hours (exchange local time, inclusive)"""
        if df.empty:
            return df
        local = df["timestamp"].dt.tz_convert(tz)
        minutes = local.dt.hour * 60 + local.dt.minute
        open_h, open_m = (int(x) for x in session_open.split(":"))
        close_h, close_m = (int(x) for x in session_close.split(":"))
        mask = (minutes >= open_h * 60 + open_m) & (minutes <= close_h * 60 + close_m)
        return df[mask].reset_index(drop=True)

    def resample(
        self, df: pd.DataFrame, minutes: int, tz: str, session_open: str = "09:15"
    ) -> pd.DataFrame:
        """Aggregate 1-minute candles into N-minute buckets anchored at the session open"""
        if df.empty or minutes <= 1:
            return df
        open_h, open_m = (int(x) for x in session_open.split(":"))
        symbol = df["symbol"].iloc[0] if "symbol" in df.columns else None
        local = df.set_index(df["timestamp"].dt.tz_convert(tz))
        agg = {"open": "first", "high": "max", "low": "min", "close": "last", "volume": "sum"}
        if "openInterest" in local.columns:
            agg["openInterest"] = "last"
        out = local.resample(
            f"{minutes}min", offset=pd.Timedelta(hours=open_h, minutes=open_m) % pd.Timedelta(minutes=minutes)
        ).agg(agg)
        out = out.dropna(subset=["open"])
        out.index = out.index.tz_convert("UTC")
        out.index.name = "timestamp"
        out = out.reset_index()
        out["symbol"] = symbol
        return out.reset_index(drop=True)

    def to_records(self, df: pd.DataFrame) -> List[Dict[str, Any]]:
        """DataFrame → list of dicts with ISO timestamps"""
        if df.empty:
            return []
        out = df.copy()
        out["timestamp"] = out["timestamp"].map(lambda ts: ts.isoformat())
        out = out.astype(object).where(pd.notna(out), None)
        return out.to_dict(orient="records")

