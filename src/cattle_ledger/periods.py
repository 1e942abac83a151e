"""Calendar helpers used to bucket ledger activity by day and month."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Union

from .constants import RangeKey


@dataclass(frozen=True)
class DateRange:
    """Inclusive span of calendar days, ``start`` through ``end``."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is after range end {self.end}")

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end

    def __len__(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return day in self

    def days(self) -> Iterator[date]:
        return iter_days(self.start, self.end)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day from ``start`` to ``end``, both included."""

    current = start
    step = timedelta(days=1)
    while current <= end:
        yield current
        current += step


def month_key(day: date) -> str:
    return f"{day.year}-{day.month:02d}"


def _month_bounds(year: int, month: int) -> DateRange:
    last_day = calendar.monthrange(year, month)[1]
    return DateRange(date(year, month, 1), date(year, month, last_day))


def resolve_range(key: Union[RangeKey, str], today: date) -> DateRange:
    """Translate a named dashboard period into a concrete :class:`DateRange`.

    ``last7`` and ``last30`` end today and include it, ``thisMonth`` and
    ``lastMonth`` cover whole calendar months (so ``thisMonth`` may end in the
    future), and ``ytd`` runs from January 1st to today.

    Raises:
        ValueError: If ``key`` is not one of the known range names.
    """

    key = RangeKey(key)
    if key is RangeKey.LAST_7:
        return DateRange(today - timedelta(days=6), today)
    if key is RangeKey.LAST_30:
        return DateRange(today - timedelta(days=29), today)
    if key is RangeKey.THIS_MONTH:
        return _month_bounds(today.year, today.month)
    if key is RangeKey.LAST_MONTH:
        if today.month == 1:
            return _month_bounds(today.year - 1, 12)
        return _month_bounds(today.year, today.month - 1)
    return DateRange(date(today.year, 1, 1), today)
