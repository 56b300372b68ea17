from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timezone

MIN_YEAR = 2000
MAX_YEAR = 2100


@dataclass(frozen=True)
class MonthlyPeriod:
    """A calendar month in UTC."""

    year: int
    month: int

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month, 1, tzinfo=timezone.utc)

    @property
    def end(self) -> datetime:
        """Exclusive upper bound: the first instant of the following month."""
        if self.month == 12:
            return datetime(self.year + 1, 1, 1, tzinfo=timezone.utc)
        return datetime(self.year, self.month + 1, 1, tzinfo=timezone.utc)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, monthrange(self.year, self.month)[1])

    def is_current(self, now: datetime | None = None) -> bool:
        current = to_utc(now or datetime.now(timezone.utc))
        return (current.year, current.month) == (self.year, self.month)


def resolve_period(
    year: int | None = None,
    month: int | None = None,
    now: datetime | None = None,
) -> MonthlyPeriod:
    """Build a period, defaulting missing parts to the current UTC month.

    ``0`` counts as missing, matching how clients omit the query values.
    """
    current = to_utc(now or datetime.now(timezone.utc))
    resolved_year = year or current.year
    resolved_month = month or current.month
    if not MIN_YEAR <= resolved_year <= MAX_YEAR:
        raise ValueError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}.")
    if not 1 <= resolved_month <= 12:
        raise ValueError("Month must be between 1 and 12.")
    return MonthlyPeriod(year=resolved_year, month=resolved_month)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
