import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidInputError

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    tz_name = get_settings().timezone
    if tz_name:
        return datetime.now(ZoneInfo(tz_name)).date()
    return date.today()


def parse_month_key(month: str) -> tuple[int, int]:
    match = _MONTH_KEY_RE.match((month or "").strip())
    if not match:
        raise InvalidInputError(f"Invalid month '{month}', expected YYYY-MM")
    year, mon = int(match.group(1)), int(match.group(2))
    if not 1 <= mon <= 12 or year < 1900:
        raise InvalidInputError(f"Invalid month '{month}', expected YYYY-MM")
    return year, mon


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_period(month: str) -> Period:
    year, mon = parse_month_key(month)
    first = date(year, mon, 1)
    if mon == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, mon + 1, 1)
    return Period(month_key(first), first, next_month - date.resolution)


def month_to_date(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return Period("month_to_date", today.replace(day=1), today)
