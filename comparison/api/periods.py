from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from comparison.api.errors import ConfigurationError


class IntervalKind(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"

    @classmethod
    def parse(cls, value: IntervalKind | str) -> IntervalKind:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown interval kind: {value!r}")


@dataclass(frozen=True)
class DateRange:
    """Half-open ``[start, end)`` window. An empty range is represented by ``None``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValueError(f"DateRange start must be before end: {self.start} >= {self.end}")

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


UNBOUNDED = DateRange(datetime.min, datetime.max)


@dataclass(frozen=True)
class IntervalBoundary:
    range: DateRange
    kind: IntervalKind
    anchor_day: int

    @property
    def start(self) -> datetime:
        return self.range.start

    @property
    def end(self) -> datetime:
        return self.range.end

    def overlaps_with_data(self, min_date: datetime | None = None, max_date: datetime | None = None) -> bool:
        # [start, end) against the closed data window [min_date, max_date]
        if max_date is not None and self.start > max_date:
            return False
        if min_date is not None and self.end <= min_date:
            return False
        return True

    def is_after_data(self, max_date: datetime | None = None) -> bool:
        return max_date is not None and self.start > max_date


def validate_anchor_day(anchor_day: int) -> int:
    if isinstance(anchor_day, bool) or not isinstance(anchor_day, int):
        raise ConfigurationError(f"Billing day must be an integer, got {anchor_day!r}")
    if not 1 <= anchor_day <= 31:
        raise ConfigurationError(f"Billing day must be between 1 and 31, got {anchor_day}")
    return anchor_day


def add_months_clamped(dt: datetime, months: int) -> datetime:
    month_index = (dt.month - 1) + months
    year = dt.year + month_index // 12
    month = (month_index % 12) + 1
    day = min(dt.day, monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def anchored_day(year: int, month: int, anchor_day: int) -> datetime:
    # January has every day 1-31, so the anchor always exists before shifting.
    return add_months_clamped(datetime(year, 1, anchor_day), month - 1)


def _midnight(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def billing_period_start(dt: datetime, anchor_day: int) -> datetime:
    candidate = anchored_day(dt.year, dt.month, anchor_day)
    if dt.day < candidate.day:
        return anchored_day(dt.year, dt.month - 1, anchor_day)
    return candidate


def _daily(dt: datetime) -> tuple[datetime, datetime]:
    start = _midnight(dt)
    return start, start + timedelta(days=1)


def _weekly(dt: datetime) -> tuple[datetime, datetime]:
    start = _midnight(dt) - timedelta(days=dt.weekday())
    return start, start + timedelta(days=7)


def _monthly(dt: datetime, anchor_day: int) -> tuple[datetime, datetime]:
    start = billing_period_start(dt, anchor_day)
    return start, anchored_day(start.year, start.month + 1, anchor_day)


def _quarterly(dt: datetime, anchor_day: int) -> tuple[datetime, datetime]:
    period_start = billing_period_start(dt, anchor_day)
    quarter_month = ((period_start.month - 1) // 3) * 3 + 1
    start = anchored_day(period_start.year, quarter_month, anchor_day)
    return start, anchored_day(start.year, start.month + 3, anchor_day)


def compute_boundary(dt: datetime, kind: IntervalKind | str, anchor_day: int = 1) -> IntervalBoundary:
    """Return the canonical ``[start, end)`` window of ``kind`` containing ``dt``.

    Monthly and quarterly windows begin on ``anchor_day``, clamped to the length of
    short months. Quarters are aligned to January/April/July/October once anchored.
    """
    anchor_day = validate_anchor_day(anchor_day)
    kind = IntervalKind.parse(kind)

    if kind is IntervalKind.DAILY:
        start, end = _daily(dt)
    elif kind is IntervalKind.WEEKLY:
        start, end = _weekly(dt)
    elif kind is IntervalKind.MONTHLY:
        start, end = _monthly(dt, anchor_day)
    else:
        start, end = _quarterly(dt, anchor_day)

    return IntervalBoundary(range=DateRange(start, end), kind=kind, anchor_day=anchor_day)
