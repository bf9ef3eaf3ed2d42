from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from comparison.api.periods import DateRange
from comparison.api.sources import ConsumptionRecord


@dataclass(frozen=True)
class TariffRates:
    unit_rate_exc_vat: float
    standing_charge_exc_vat: float
    vat_rate: float = 0.05


@dataclass(frozen=True)
class TariffCalculation:
    period_start: datetime
    period_end: datetime
    total_kwh: float
    cost_exc_vat: float
    cost_inc_vat: float
    average_unit_rate_exc_vat: float
    average_unit_rate_inc_vat: float
    standing_charge_exc_vat: float
    standing_charge_inc_vat: float


def compute_period_cost(records: Iterable[ConsumptionRecord], window: DateRange, rates: TariffRates) -> TariffCalculation:
    """Cost of the consumption that starts inside ``window`` (pence).

    The standing charge is pro-rated by the window length in days, so partial
    periods are charged only for the days they cover.
    """
    total_kwh = sum(r.kwh for r in records if window.start <= r.start < window.end)
    days = window.duration / timedelta(days=1)
    vat_multiplier = 1.0 + rates.vat_rate

    standing_exc = days * rates.standing_charge_exc_vat
    standing_inc = standing_exc * vat_multiplier
    cost_exc = total_kwh * rates.unit_rate_exc_vat + standing_exc
    cost_inc = cost_exc * vat_multiplier

    return TariffCalculation(
        period_start=window.start,
        period_end=window.end,
        total_kwh=total_kwh,
        cost_exc_vat=cost_exc,
        cost_inc_vat=cost_inc,
        average_unit_rate_exc_vat=(cost_exc - standing_exc) / total_kwh if total_kwh > 0 else 0.0,
        average_unit_rate_inc_vat=(cost_inc - standing_inc) / total_kwh if total_kwh > 0 else 0.0,
        standing_charge_exc_vat=standing_exc,
        standing_charge_inc_vat=standing_inc,
    )


def compare_costs(account: TariffCalculation, compare: TariffCalculation) -> float:
    """Positive when the comparison plan is cheaper than the account plan."""
    return account.cost_inc_vat - compare.cost_inc_vat
