from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from threading import Lock
from typing import Any, Callable

from comparison.api.analytics import TariffCalculation, TariffRates, compute_period_cost
from comparison.api.clock import Clock, SystemClock
from comparison.api.errors import ValidityLookupFailure
from comparison.api.navigation import clamp_to_allowed, is_at_maximum, is_at_minimum, navigate
from comparison.api.overlap import AvailabilityRange, OverlapResult, Provenance, resolve_overlap
from comparison.api.periods import DateRange, IntervalBoundary, IntervalKind, compute_boundary, validate_anchor_day
from comparison.api.sources import ConsumptionSource, TariffValidityService, availability_bounds

logger = logging.getLogger("comparison_api.session")


@dataclass(frozen=True)
class ComparisonSettings:
    billing_day: int = 1
    interval_kind: IntervalKind = IntervalKind.MONTHLY
    account_tariff_id: str | None = None
    compare_tariff_id: str | None = None
    account_rates: TariffRates | None = None
    compare_rates: TariffRates | None = None


SettingsListener = Callable[[ComparisonSettings, ComparisonSettings], None]


class SettingsStore:
    """Typed settings holder that notifies listeners only on real changes."""

    def __init__(self, initial: ComparisonSettings | None = None) -> None:
        self._settings = initial or ComparisonSettings()
        validate_anchor_day(self._settings.billing_day)
        self._listeners: list[SettingsListener] = []
        self._lock = Lock()

    @property
    def current(self) -> ComparisonSettings:
        return self._settings

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def update(self, **changes: Any) -> bool:
        if "billing_day" in changes:
            validate_anchor_day(changes["billing_day"])
        if "interval_kind" in changes:
            changes["interval_kind"] = IntervalKind.parse(changes["interval_kind"])

        with self._lock:
            old = self._settings
            new = replace(old, **changes)
            if new == old:
                return False
            self._settings = new
            listeners = list(self._listeners)

        for listener in listeners:
            listener(old, new)
        return True


class RequestSequencer:
    def __init__(self) -> None:
        self._latest = 0
        self._lock = Lock()

    def next_token(self) -> int:
        with self._lock:
            self._latest += 1
            return self._latest

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._latest


@dataclass
class NavigationState:
    current_date: datetime
    interval_kind: IntervalKind = IntervalKind.MONTHLY
    min_date: datetime | None = None
    max_date: datetime | None = None


@dataclass(frozen=True)
class PipelineOutcome:
    status: str
    overlap: OverlapResult | None = None
    calculation: TariffCalculation | None = None
    error: str | None = None


@dataclass(frozen=True)
class ComparisonSnapshot:
    token: int
    boundary: IntervalBoundary
    account: PipelineOutcome
    compare: PipelineOutcome
    computed_at: datetime = field(default_factory=datetime.now)


class ComparisonSession:
    """Holds navigation state and runs the account and comparison pipelines.

    Each ``refresh`` is tagged by ``RequestSequencer``; a refresh that finishes after
    a newer one was started is discarded.
    """

    def __init__(
        self,
        consumption: ConsumptionSource,
        validity: TariffValidityService,
        settings: SettingsStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.consumption = consumption
        self.validity = validity
        self.settings = settings or SettingsStore()
        self.clock = clock or SystemClock()
        self.sequencer = RequestSequencer()
        self.state = NavigationState(
            current_date=self.clock.now(),
            interval_kind=self.settings.current.interval_kind,
        )
        self.latest: ComparisonSnapshot | None = None
        self._availability: DateRange | None = None
        self._available_days: set[date] = set()
        self._last_tick_day: date | None = None
        self.settings.subscribe(self._on_settings_changed)
        self.reload_bounds()

    def _on_settings_changed(self, old: ComparisonSettings, new: ComparisonSettings) -> None:
        if old.interval_kind != new.interval_kind:
            self.state.interval_kind = new.interval_kind
        logger.info("Comparison settings changed: billing_day=%s interval=%s", new.billing_day, new.interval_kind.value)

    def reload_bounds(self) -> DateRange | None:
        self._availability = self.consumption.availability()
        self._available_days = self.consumption.available_days()
        self.state.min_date, self.state.max_date = availability_bounds(self._availability)
        if self._availability is not None:
            self.state.current_date = clamp_to_allowed(self.state.current_date, self.state.min_date, self.state.max_date)
        return self._availability

    def tick(self) -> bool:
        """Reload data bounds when the clock has crossed into a new day."""
        today = self.clock.now().date()
        if today == self._last_tick_day:
            return False
        self._last_tick_day = today
        self.reload_bounds()
        return True

    def set_date(self, value: datetime) -> None:
        self.state.current_date = clamp_to_allowed(value, self.state.min_date, self.state.max_date)

    def set_interval(self, kind: IntervalKind | str) -> None:
        self.settings.update(interval_kind=kind)

    def current_boundary(self) -> IntervalBoundary:
        return compute_boundary(self.state.current_date, self.state.interval_kind, self.settings.current.billing_day)

    def _daily_set(self) -> set[date] | None:
        if self.state.interval_kind is IntervalKind.DAILY and self._available_days:
            return self._available_days
        return None

    def step(self, forward: bool) -> bool:
        target = navigate(
            self.state.current_date,
            forward,
            self.state.interval_kind,
            min_date=self.state.min_date,
            max_date=self.state.max_date,
            anchor_day=self.settings.current.billing_day,
            available_days=self._daily_set(),
        )
        if target is None:
            return False
        self.state.current_date = target
        return True

    def navigation_flags(self) -> dict[str, bool]:
        anchor_day = self.settings.current.billing_day
        days = self._daily_set()
        return {
            "atMinimum": is_at_minimum(
                self.state.current_date, self.state.interval_kind, self.state.min_date, anchor_day, days
            ),
            "atMaximum": is_at_maximum(
                self.state.current_date, self.state.interval_kind, self.state.max_date, anchor_day, days
            ),
        }

    async def _run_pipeline(
        self,
        tariff_id: str | None,
        rates: TariffRates | None,
        provenance: Provenance,
        boundary: IntervalBoundary,
        consumption_range: DateRange | None,
    ) -> PipelineOutcome:
        if not tariff_id:
            return PipelineOutcome(status="unconfigured")
        if rates is None:
            logger.warning("No rates configured for tariff %s (%s pipeline)", tariff_id, provenance.value)
            return PipelineOutcome(status="error", error=f"No rates configured for tariff {tariff_id!r}")
        if consumption_range is None:
            return PipelineOutcome(status="noOverlap")

        try:
            validity = await self.validity.tariff_validity(tariff_id)
        except ValidityLookupFailure as exc:
            logger.exception("Validity lookup failed for %s pipeline", provenance.value)
            return PipelineOutcome(status="error", error=str(exc))

        availability = [
            AvailabilityRange(consumption_range, Provenance.CONSUMPTION_DATA),
            AvailabilityRange(validity, provenance),
        ]
        _, anchor_date = availability_bounds(consumption_range)
        overlap = resolve_overlap(boundary, availability, anchor_date=anchor_date)
        if overlap is None:
            return PipelineOutcome(status="noOverlap")

        records = await asyncio.to_thread(self.consumption.records, overlap.actual)
        calculation = compute_period_cost(records, overlap.actual, rates)
        return PipelineOutcome(status="ok", overlap=overlap, calculation=calculation)

    async def refresh(self) -> ComparisonSnapshot | None:
        token = self.sequencer.next_token()
        settings = self.settings.current
        boundary = self.current_boundary()
        consumption_range = self._availability

        account, compare = await asyncio.gather(
            self._run_pipeline(
                settings.account_tariff_id,
                settings.account_rates,
                Provenance.ACCOUNT_TARIFF_VALIDITY,
                boundary,
                consumption_range,
            ),
            self._run_pipeline(
                settings.compare_tariff_id,
                settings.compare_rates,
                Provenance.COMPARE_TARIFF_VALIDITY,
                boundary,
                consumption_range,
            ),
        )

        if not self.sequencer.is_current(token):
            logger.debug("Dropping superseded comparison result token=%s", token)
            return None

        snapshot = ComparisonSnapshot(token=token, boundary=boundary, account=account, compare=compare)
        self.latest = snapshot
        return snapshot
