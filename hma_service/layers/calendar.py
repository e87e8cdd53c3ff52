"""
Calendar layer
Exchange sessions and trading-day arithmetic. MarketClock is pure: the holiday set and timezone are
injected. ``exchange_holidays`` supplies the default set from the exchange calendar.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Callable, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

import pandas as pd
import pandas_market_calendars as mcal

logger = logging.getLogger(__name__)

# Safety bound when stepping over closures
_MAX_SCAN_DAYS = 30


@lru_cache(maxsize=None)
def exchange_holidays(calendar_name: str = "XNSE") -> Tuple[str, ...]:
    """Weekday closures of an exchange calendar as ISO dates (cached per calendar)"""
    calendar = mcal.get_calendar(calendar_name)
    days = pd.DatetimeIndex(calendar.holidays().holidays)
    holidays = tuple(sorted(d.date().isoformat() for d in days if d.weekday() < 5))
    logger.info(f"🗓️ Loaded {len(holidays)} {calendar_name} holidays")
    return holidays


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class MarketClock:
    """Session 09:15–15:30 exchange time, Mon–Fri, minus configured holidays"""

    def __init__(
        self,
        holidays: Iterable[str] = (),
        tz: str = "Asia/Kolkata",
        session_open: str = "09:15",
        session_close: str = "15:30",
        now_func: Optional[Callable[[], datetime]] = None,
    ):
        self.tz = ZoneInfo(tz)
        self.session_open = _parse_hhmm(session_open)
        self.session_close = _parse_hhmm(session_close)
        self.holidays = {date.fromisoformat(h) for h in holidays}
        self._now_func = now_func or (lambda: datetime.now(tz=timezone.utc))
        logger.info(f"🗓️ Market clock ready ({tz}, {len(self.holidays)} holidays)")

    # ── Time ──────────────────────────────────────────────

    def now(self) -> datetime:
        return self.to_local(self._now_func())

    def to_local(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz)

    def local_date(self, moment: Optional[datetime] = None) -> date:
        return self.to_local(moment or self._now_func()).date()

    # ── Trading days ──────────────────────────────────────

    def is_holiday(self, day: date) -> bool:
        return day in self.holidays

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() < 5 and not self.is_holiday(day)

    def previous_trading_day(self, day: date) -> date:
        candidate = day - timedelta(days=1)
        for _ in range(_MAX_SCAN_DAYS):
            if self.is_trading_day(candidate):
                return candidate
            candidate -= timedelta(days=1)
        logger.error(f"⚠️ No trading day found within {_MAX_SCAN_DAYS} days before {day}")
        return candidate

    def next_trading_day(self, day: date) -> date:
        candidate = day + timedelta(days=1)
        for _ in range(_MAX_SCAN_DAYS):
            if self.is_trading_day(candidate):
                return candidate
            candidate += timedelta(days=1)
        logger.error(f"⚠️ No trading day found within {_MAX_SCAN_DAYS} days after {day}")
        return candidate

    def last_n_trading_days(self, n: int, now: Optional[datetime] = None) -> List[date]:
        """N most recent trading dates up to and including today, oldest first"""
        if n <= 0:
            return []
        today = self.local_date(now)
        days: List[date] = []
        candidate = today if self.is_trading_day(today) else self.previous_trading_day(today)
        while len(days) < n:
            days.append(candidate)
            candidate = self.previous_trading_day(candidate)
        days.reverse()
        return days

    # ── Sessions ──────────────────────────────────────────

    def session_window(self, day: date) -> Tuple[datetime, datetime]:
        start = datetime.combine(day, self.session_open, tzinfo=self.tz)
        end = datetime.combine(day, self.session_close, tzinfo=self.tz)
        return start, end

    def is_session_open(self, now: Optional[datetime] = None) -> bool:
        local = self.to_local(now or self._now_func())
        if not self.is_trading_day(local.date()):
            return False
        start, end = self.session_window(local.date())
        return start <= local <= end

    def last_session_date(self, now: Optional[datetime] = None) -> date:
        """
        Session whose data counts as "current": today once the session has
        started on a trading day, otherwise the most recent earlier trading day.
        """
        local = self.to_local(now or self._now_func())
        today = local.date()
        if self.is_trading_day(today):
            start, _ = self.session_window(today)
            if local >= start:
                return today
        return self.previous_trading_day(today)

    def trading_grid(self, day: date, resolution_minutes: int = 1) -> List[datetime]:
        """Expected candle timestamps (UTC) for a session, open to close inclusive"""
        start, end = self.session_window(day)
        step = timedelta(minutes=resolution_minutes)
        grid = []
        current = start
        while current <= end:
            grid.append(current.astimezone(timezone.utc))
            current += step
        return grid

    def in_session(self, moment: datetime) -> bool:
        """Whether a timestamp falls inside its day's session (inclusive bounds)"""
        local = self.to_local(moment)
        start, end = self.session_window(local.date())
        return start <= local <= end

    def next_boundary(self, now: Optional[datetime] = None, resolution_minutes: int = 5) -> datetime:
        """Next candle boundary (UTC) aligned to the session open"""
        local = self.to_local(now or self._now_func())
        start, _ = self.session_window(local.date())
        step = timedelta(minutes=resolution_minutes)
        if local < start:
            return start.astimezone(timezone.utc)
        elapsed = local - start
        steps = int(elapsed // step) + 1
        return (start + steps * step).astimezone(timezone.utc)
