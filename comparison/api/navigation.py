from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta

from comparison.api.periods import IntervalBoundary, IntervalKind, compute_boundary

# Kinds whose first, partially covered period at the left edge of the data is reachable.
PARTIAL_LEFT_EDGE_KINDS = frozenset({IntervalKind.DAILY, IntervalKind.WEEKLY})


def _as_day(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _next_available_day(
    from_date: datetime,
    forward: bool,
    min_date: datetime | None,
    max_date: datetime | None,
    available_days: Iterable[date | datetime],
) -> datetime | None:
    current = from_date.date()
    lower = min_date.date() if min_date is not None else None
    upper = max_date.date() if max_date is not None else None

    candidates = []
    for value in available_days:
        day = _as_day(value)
        if lower is not None and day < lower:
            continue
        if upper is not None and day > upper:
            continue
        if (forward and day > current) or (not forward and day < current):
            candidates.append(day)

    if not candidates:
        return None
    chosen = min(candidates) if forward else max(candidates)
    return datetime.combine(chosen, datetime.min.time())


def _backward_allowed(boundary: IntervalBoundary, min_date: datetime | None, max_date: datetime | None) -> bool:
    if not boundary.overlaps_with_data(min_date, max_date):
        return False
    if boundary.kind in PARTIAL_LEFT_EDGE_KINDS or min_date is None:
        return True
    return boundary.start >= min_date


def step_boundary(from_date: datetime, forward: bool, kind: IntervalKind | str, anchor_day: int = 1) -> IntervalBoundary:
    """Return the boundary adjacent to the one containing ``from_date``."""
    current = compute_boundary(from_date, kind, anchor_day)
    if forward:
        return compute_boundary(current.end, current.kind, anchor_day)
    return compute_boundary(current.start - timedelta(days=1), current.kind, anchor_day)


def navigate(
    from_date: datetime,
    forward: bool,
    kind: IntervalKind | str,
    min_date: datetime | None = None,
    max_date: datetime | None = None,
    anchor_day: int = 1,
    available_days: Iterable[date | datetime] | None = None,
) -> datetime | None:
    """Return the start of the next (or previous) valid period, or ``None``.

    Daily navigation over ``available_days`` skips days without data. Every other
    case steps exactly one period; backward steps for monthly and quarterly periods
    must lie fully after ``min_date``, while daily and weekly ones only need to overlap.
    """
    kind = IntervalKind.parse(kind)

    if kind is IntervalKind.DAILY and available_days is not None:
        return _next_available_day(from_date, forward, min_date, max_date, available_days)

    candidate = step_boundary(from_date, forward, kind, anchor_day)
    if forward:
        valid = not candidate.is_after_data(max_date)
    else:
        valid = _backward_allowed(candidate, min_date, max_date)
    return candidate.start if valid else None


def is_at_minimum(
    current_date: datetime,
    kind: IntervalKind | str,
    min_date: datetime | None = None,
    anchor_day: int = 1,
    available_days: Iterable[date | datetime] | None = None,
) -> bool:
    return navigate(current_date, False, kind, min_date=min_date, anchor_day=anchor_day, available_days=available_days) is None


def is_at_maximum(
    current_date: datetime,
    kind: IntervalKind | str,
    max_date: datetime | None = None,
    anchor_day: int = 1,
    available_days: Iterable[date | datetime] | None = None,
) -> bool:
    return navigate(current_date, True, kind, max_date=max_date, anchor_day=anchor_day, available_days=available_days) is None


def clamp_to_allowed(current_date: datetime, min_date: datetime | None, max_date: datetime | None) -> datetime:
    if min_date is not None and current_date < min_date:
        return min_date
    if max_date is not None and current_date > max_date:
        return max_date
    return current_date
