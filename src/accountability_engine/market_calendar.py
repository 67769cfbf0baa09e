"""Civil-time calendar for a single exchange.

Every "today", "midnight", "weekday" and "market close" in the engine is
resolved here, in one fixed timezone, independent of the host clock's offset.
"""

from __future__ import annotations

from datetime import date, datetime, time as clock_time, timedelta, timezone
from pathlib import Path
from typing import Callable, Mapping
from zoneinfo import ZoneInfo

import yaml
from loguru import logger

from .settings import settings


# NSE trading holidays, 'YYYY-MM-DD' -> name.
NSE_HOLIDAYS: dict[str, str] = {
    # 2025
    "2025-02-26": "Mahashivratri",
    "2025-03-14": "Holi",
    "2025-03-31": "Id-Ul-Fitr (Ramadan)",
    "2025-04-10": "Shri Mahavir Jayanti",
    "2025-04-14": "Dr. Baba Saheb Ambedkar Jayanti",
    "2025-04-18": "Good Friday",
    "2025-05-01": "Maharashtra Day",
    "2025-08-15": "Independence Day",
    "2025-08-27": "Ganesh Chaturthi",
    "2025-10-02": "Mahatma Gandhi Jayanti",
    "2025-10-21": "Diwali Laxmi Pujan",
    "2025-10-22": "Diwali Balipratipada",
    "2025-11-05": "Prakash Gurpurb Sri Guru Nanak Dev",
    "2025-11-26": "Constitution Day (tentative)",
    "2025-12-25": "Christmas",
    # 2026
    "2026-01-26": "Republic Day",
    "2026-02-17": "Mahashivratri",
    "2026-03-03": "Holi",
    "2026-03-20": "Id-Ul-Fitr (Ramadan)",
    "2026-03-30": "Shri Mahavir Jayanti",
    "2026-04-03": "Good Friday",
    "2026-04-14": "Dr. Baba Saheb Ambedkar Jayanti",
    "2026-05-01": "Maharashtra Day",
    "2026-05-27": "Id-Ul-Zuha (Bakri Id)",
    "2026-06-26": "Muharram",
    "2026-08-15": "Independence Day",
    "2026-08-16": "Ganesh Chaturthi",
    "2026-10-02": "Mahatma Gandhi Jayanti",
    "2026-10-09": "Dussehra",
    "2026-10-29": "Diwali Laxmi Pujan",
    "2026-10-30": "Diwali Balipratipada",
    "2026-11-16": "Prakash Gurpurb Sri Guru Nanak Dev",
    "2026-12-25": "Christmas",
}

# Longest run of consecutive non-trading days we are willing to walk across.
MAX_CALENDAR_SCAN_DAYS = 30


def _parse_hhmm(value: str) -> clock_time:
    hour, minute = value.strip().split(":", 1)
    return clock_time(int(hour), int(minute))


def load_holidays(file_path: Path | None = None) -> dict[date, str]:
    """Holiday set from YAML (``YYYY-MM-DD: name``), else the built-in NSE list."""
    path = Path(file_path or settings.holidays_path)
    raw: Mapping = NSE_HOLIDAYS
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if isinstance(loaded, dict):
            raw = loaded.get("holidays", loaded)
            logger.info("Loaded {} market holidays from {}", len(raw), path)

    holidays: dict[date, str] = {}
    for key, name in raw.items():
        day = key if isinstance(key, date) else date.fromisoformat(str(key))
        holidays[day] = str(name or "Holiday")
    return holidays


class MarketCalendar:
    def __init__(
        self,
        tz_name: str | None = None,
        holidays: Mapping[date, str] | None = None,
        market_open: str | None = None,
        market_close: str | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.tz = ZoneInfo(tz_name or settings.timezone)
        self.holidays = dict(holidays) if holidays is not None else load_holidays()
        self.open_time = _parse_hhmm(market_open or settings.market_open)
        self.close_time = _parse_hhmm(market_close or settings.market_close)
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        current = self._now_fn()
        if current.tzinfo is None:
            raise ValueError("clock returned a naive datetime")
        return current

    def civil_date(self, instant: datetime) -> date:
        if instant.tzinfo is None:
            raise ValueError("civil_date requires an aware datetime")
        return instant.astimezone(self.tz).date()

    def today(self) -> date:
        return self.civil_date(self.now())

    def holiday_name(self, day: date) -> str | None:
        return self.holidays.get(day)

    def is_trading_day(self, day: date) -> bool:
        if day.weekday() >= 5:
            return False
        return day not in self.holidays

    def day_start(self, day: date) -> datetime:
        return datetime.combine(day, clock_time(0, 0), tzinfo=self.tz)

    def market_open_at(self, day: date) -> datetime:
        return datetime.combine(day, self.open_time, tzinfo=self.tz)

    def market_close_at(self, day: date) -> datetime:
        return datetime.combine(day, self.close_time, tzinfo=self.tz)

    def is_trading_hours(self, instant: datetime) -> bool:
        day = self.civil_date(instant)
        if not self.is_trading_day(day):
            return False
        return self.market_open_at(day) <= instant <= self.market_close_at(day)

    def next_trading_day(self, day: date) -> date:
        cursor = day
        for _ in range(MAX_CALENDAR_SCAN_DAYS):
            cursor += timedelta(days=1)
            if self.is_trading_day(cursor):
                return cursor
        raise RuntimeError(f"No trading day within {MAX_CALENDAR_SCAN_DAYS} days after {day}")

    def previous_trading_days(self, day: date, count: int) -> list[date]:
        """Up to ``count`` trading days strictly before ``day``, newest first."""
        found: list[date] = []
        cursor = day
        for _ in range(count * 7 + MAX_CALENDAR_SCAN_DAYS):
            if len(found) >= count:
                break
            cursor -= timedelta(days=1)
            if self.is_trading_day(cursor):
                found.append(cursor)
        return found

    def next_market_close_after(self, instant: datetime) -> datetime:
        day = self.civil_date(instant)
        if self.is_trading_day(day):
            close_at = self.market_close_at(day)
            if close_at > instant:
                return close_at
        return self.market_close_at(self.next_trading_day(day))
