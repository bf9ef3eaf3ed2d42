from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Protocol, Sequence

from comparison.api.periods import UNBOUNDED, DateRange, IntervalBoundary, compute_boundary

logger = logging.getLogger("comparison_api.overlap")


class Provenance(str, Enum):
    CONSUMPTION_DATA = "consumption"
    ACCOUNT_TARIFF_VALIDITY = "accountTariff"
    COMPARE_TARIFF_VALIDITY = "compareTariff"


@dataclass(frozen=True)
class AvailabilityRange:
    range: DateRange
    provenance: Provenance

    @property
    def start(self) -> datetime:
        return self.range.start

    @property
    def end(self) -> datetime:
        return self.range.end


@dataclass(frozen=True)
class OverlapResult:
    actual: DateRange
    requested: DateRange
    is_partial: bool
    anchor_shifted: bool = False


class _Bounded(Protocol):
    @property
    def start(self) -> datetime: ...

    @property
    def end(self) -> datetime: ...


def intersect_ranges(ranges: Iterable[_Bounded], default: DateRange | None = UNBOUNDED) -> DateRange | None:
    """Intersect half-open ranges; ``None`` means the intersection is empty.

    An empty input applies no constraint and returns ``default``.
    """
    items = list(ranges)
    if not items:
        return default

    start = max(item.start for item in items)
    end = min(item.end for item in items)
    if start < end:
        return DateRange(start, end)
    return None


def _intersect_with(boundary: IntervalBoundary, availability: Sequence[AvailabilityRange]) -> DateRange | None:
    return intersect_ranges([boundary.range, *availability])


def resolve_overlap(
    requested: IntervalBoundary,
    availability: Sequence[AvailabilityRange],
    anchor_date: datetime | None = None,
) -> OverlapResult | None:
    """Reconcile ``requested`` with every availability range.

    When nothing overlaps and ``anchor_date`` is given, the boundary is recomputed once
    around ``anchor_date`` (same kind and anchor day) and the intersection retried.
    Returns ``None`` when neither attempt overlaps.
    """
    boundary = requested
    actual = _intersect_with(boundary, availability)
    shifted = False

    if actual is None and anchor_date is not None:
        boundary = compute_boundary(anchor_date, requested.kind, requested.anchor_day)
        logger.debug(
            "No overlap for %s %s-%s; retrying around anchor %s (%s-%s)",
            requested.kind.value,
            requested.start,
            requested.end,
            anchor_date,
            boundary.start,
            boundary.end,
        )
        actual = _intersect_with(boundary, availability)
        shifted = True

    if actual is None:
        logger.debug(
            "No overlap for %s %s-%s against %s",
            requested.kind.value,
            requested.start,
            requested.end,
            [item.provenance.value for item in availability],
        )
        return None

    return OverlapResult(
        actual=actual,
        requested=boundary.range,
        is_partial=actual != boundary.range,
        anchor_shifted=shifted,
    )
