from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

import pyodbc

from comparison.api.clock import Clock, SystemClock
from comparison.api.errors import ValidityLookupFailure
from comparison.api.periods import DateRange
from comparison.api.settings import (
    get_consumption_interval_minutes,
    get_consumption_table,
    get_manual_plan_window_days,
    get_sql_connection_string,
    get_validity_lookup_timeout,
)

logger = logging.getLogger("comparison_api.sources")

MANUAL_PLAN_ID = "MANUAL"


@dataclass(frozen=True)
class ConsumptionRecord:
    start: datetime
    end: datetime
    kwh: float


@dataclass(frozen=True)
class TariffAgreement:
    tariff_id: str
    valid_from: datetime
    valid_to: datetime | None = None

    def validity(self) -> DateRange:
        return DateRange(self.valid_from, self.valid_to if self.valid_to is not None else datetime.max)


def consumption_availability(records: Iterable[ConsumptionRecord]) -> DateRange | None:
    items = list(records)
    if not items:
        return None
    return DateRange(min(r.start for r in items), max(r.end for r in items))


def available_days(records: Iterable[ConsumptionRecord]) -> set[date]:
    return {r.start.date() for r in records}


class ConsumptionSource(Protocol):
    def availability(self) -> DateRange | None: ...

    def available_days(self) -> set[date]: ...

    def records(self, window: DateRange) -> list[ConsumptionRecord]: ...


class InMemoryConsumptionSource:
    def __init__(self, records: Iterable[ConsumptionRecord]) -> None:
        self._records = sorted(records, key=lambda r: r.start)

    def availability(self) -> DateRange | None:
        return consumption_availability(self._records)

    def available_days(self) -> set[date]:
        return available_days(self._records)

    def records(self, window: DateRange) -> list[ConsumptionRecord]:
        return [r for r in self._records if window.start <= r.start < window.end]


def get_db_connection() -> pyodbc.Connection:
    return pyodbc.connect(get_sql_connection_string(), autocommit=True)


class SqlConsumptionSource:
    """Reads interval consumption rows keyed by ``IntervalEnd``."""

    def __init__(
        self,
        connect: Callable[[], Any] = get_db_connection,
        table: str | None = None,
        interval_minutes: int | None = None,
    ) -> None:
        self._connect = connect
        self.table = table or get_consumption_table()
        self.interval = timedelta(minutes=interval_minutes or get_consumption_interval_minutes())

    def availability(self) -> DateRange | None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT MIN(IntervalEnd) AS minIntervalEnd, MAX(IntervalEnd) AS maxIntervalEnd
                FROM {self.table}
                """
            )
            row = cursor.fetchone()

        if row is None or row.minIntervalEnd is None or row.maxIntervalEnd is None:
            return None
        return DateRange(row.minIntervalEnd - self.interval, row.maxIntervalEnd)

    def available_days(self) -> set[date]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT DISTINCT CAST(DATEADD(minute, -?, IntervalEnd) AS date) AS [day]
                FROM {self.table}
                """,
                int(self.interval.total_seconds() // 60),
            )
            rows = cursor.fetchall()
        return {row.day for row in rows}

    def records(self, window: DateRange) -> list[ConsumptionRecord]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT IntervalEnd, kWh
                FROM {self.table}
                WHERE IntervalEnd > ? AND IntervalEnd <= ?
                ORDER BY IntervalEnd ASC
                """,
                window.start,
                window.end,
            )
            rows = cursor.fetchall()
        return [
            ConsumptionRecord(start=row.IntervalEnd - self.interval, end=row.IntervalEnd, kwh=float(row.kWh or 0))
            for row in rows
        ]


AgreementFetcher = Callable[[str], Awaitable[TariffAgreement | None]]


def catalog_fetcher(catalog: Mapping[str, TariffAgreement]) -> AgreementFetcher:
    async def fetch(tariff_id: str) -> TariffAgreement | None:
        return catalog.get(tariff_id)

    return fetch


class TariffValidityService:
    """Resolves validity windows for tariff plans.

    Manual plans are treated as valid for a wide window around ``clock.now()``.
    Fetch failures, timeouts and unknown tariffs raise ``ValidityLookupFailure``;
    nothing is retried here.
    """

    def __init__(
        self,
        fetcher: AgreementFetcher,
        clock: Clock | None = None,
        timeout_seconds: float | None = None,
        manual_window_days: int | None = None,
    ) -> None:
        self._fetcher = fetcher
        self.clock = clock or SystemClock()
        self.timeout_seconds = timeout_seconds or get_validity_lookup_timeout()
        self.manual_window = timedelta(days=manual_window_days or get_manual_plan_window_days())

    async def tariff_validity(self, tariff_id: str) -> DateRange:
        if tariff_id == MANUAL_PLAN_ID:
            now = self.clock.now()
            return DateRange(now - self.manual_window, now + self.manual_window)

        try:
            agreement = await asyncio.wait_for(self._fetcher(tariff_id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("Validity lookup for %s timed out after %ss", tariff_id, self.timeout_seconds)
            raise ValidityLookupFailure(tariff_id, f"timed out after {self.timeout_seconds}s") from exc
        except ValidityLookupFailure:
            raise
        except Exception as exc:
            raise ValidityLookupFailure(tariff_id, str(exc) or type(exc).__name__) from exc

        if agreement is None:
            raise ValidityLookupFailure(tariff_id, "unknown tariff")
        try:
            return agreement.validity()
        except ValueError as exc:
            raise ValidityLookupFailure(tariff_id, str(exc)) from exc


def availability_bounds(availability: DateRange | None) -> tuple[datetime | None, datetime | None]:
    """Closed ``(min_date, max_date)`` bounds of a half-open availability range."""
    if availability is None:
        return None, None
    return availability.start, availability.end - timedelta(microseconds=1)
