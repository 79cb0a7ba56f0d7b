"""US options market session calendar.

Regular session is 09:30-16:00 New York time, closing at 13:00 on the day
after Thanksgiving and on a weekday Christmas Eve. Weekends and NYSE holidays
are closed all day.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

NY_TZ = ZoneInfo("America/New_York")

MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)
EARLY_CLOSE = time(13, 0)

MONDAY, THURSDAY, FRIDAY, SATURDAY, SUNDAY = 0, 3, 4, 5, 6

MARKET_CLOSED_MESSAGE = (
    "Market is closed. Trades can only be created or settled between "
    "09:30-16:00 ET on trading days."
)


def to_new_york(moment: datetime) -> datetime:
    """Convert *moment* to New York time. Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(NY_TZ)


def _observed(day: date) -> date:
    if day.weekday() == SATURDAY:
        return day - timedelta(days=1)
    if day.weekday() == SUNDAY:
        return day + timedelta(days=1)
    return day


def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + (n - 1) * 7)


def _last_weekday(year: int, month: int, weekday: int) -> date:
    last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def easter_sunday(year: int) -> date:
    """Anonymous Gregorian computus."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    w = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * w) // 451
    month, day = divmod(h + w - 7 * m + 114, 31)
    return date(year, month, day + 1)


@lru_cache(maxsize=16)
def market_holidays(year: int) -> frozenset[date]:
    return frozenset(
        {
            _observed(date(year, 1, 1)),
            _nth_weekday(year, 1, MONDAY, 3),  # MLK
            _nth_weekday(year, 2, MONDAY, 3),  # Presidents
            easter_sunday(year) - timedelta(days=2),  # Good Friday
            _last_weekday(year, 5, MONDAY),  # Memorial
            _observed(date(year, 6, 19)),
            _observed(date(year, 7, 4)),
            _nth_weekday(year, 9, MONDAY, 1),  # Labor
            _nth_weekday(year, 11, THURSDAY, 4),  # Thanksgiving
            _observed(date(year, 12, 25)),
        }
    )


@lru_cache(maxsize=16)
def early_closes(year: int) -> frozenset[date]:
    days = {_nth_weekday(year, 11, THURSDAY, 4) + timedelta(days=1)}
    christmas_eve = date(year, 12, 24)
    if christmas_eve.weekday() < SATURDAY:
        days.add(christmas_eve)
    return frozenset(days)


def session_close(day: date) -> time:
    return EARLY_CLOSE if day in early_closes(day.year) else MARKET_CLOSE


def is_trading_day(day: date) -> bool:
    return day.weekday() < SATURDAY and day not in market_holidays(day.year)


def is_market_open(moment: datetime) -> bool:
    """True while the regular session is running at *moment*."""
    local = to_new_york(moment)
    day = local.date()
    if not is_trading_day(day):
        return False
    return MARKET_OPEN <= local.time() < session_close(day)
