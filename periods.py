from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(day: date) -> Period:
    first = day.replace(day=1)
    end = add_months(first, 1) - date.resolution
    return Period("month", first, end)


def trailing_months(count: int, *, today: Optional[date] = None) -> list[Period]:
    """Calendar months ending with the current one, oldest first."""
    today = today or local_today()
    current = today.replace(day=1)
    return [
        month_period(add_months(current, -offset))
        for offset in range(count - 1, -1, -1)
    ]


def month_label(period: Period) -> str:
    return period.start.strftime("%b %Y")
