import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import date, datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from comparison.api.analytics import TariffRates, compare_costs
from comparison.api.errors import ConfigurationError
from comparison.api.navigation import is_at_maximum, is_at_minimum, navigate
from comparison.api.overlap import OverlapResult
from comparison.api.periods import DateRange, IntervalBoundary, IntervalKind, compute_boundary
from comparison.api.session import ComparisonSession, ComparisonSettings, PipelineOutcome, SettingsStore
from comparison.api.settings import get_billing_day, get_env_float, resolve_sql_credentials
from comparison.api.sources import (
    MANUAL_PLAN_ID,
    ConsumptionRecord,
    SqlConsumptionSource,
    TariffAgreement,
    TariffValidityService,
    availability_bounds,
    catalog_fetcher,
)


@dataclass
class CacheEntry:
    expires_at: float
    payload: Any


class TTLCache:
    def __init__(self) -> None:
        self._store: dict[str, CacheEntry] = {}
        self._lock = Lock()

    def get_or_set(self, key: str, ttl_seconds: int, producer: Callable[[], Any]) -> Any:
        now = time.time()
        with self._lock:
            cached = self._store.get(key)
            if cached and cached.expires_at > now:
                return cached.payload
        payload = producer()
        with self._lock:
            self._store[key] = CacheEntry(expires_at=now + ttl_seconds, payload=payload)
        return payload


def configure_logging() -> logging.Logger:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(threadName)s] %(name)s - %(message)s")
    file_handler = TimedRotatingFileHandler(
        logs_dir / "comparison_api.log",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        named = logging.getLogger(logger_name)
        named.handlers.clear()
        named.propagate = True

    return logging.getLogger("comparison_api")


logger = configure_logging()
cache = TTLCache()


class CachedConsumptionSource:
    """Short-lived cache over the SQL source so each request does not re-scan bounds."""

    def __init__(self, source: SqlConsumptionSource, ttl_seconds: int = 30) -> None:
        self.source = source
        self.ttl_seconds = ttl_seconds

    def availability(self) -> DateRange | None:
        return cache.get_or_set("consumption:availability", self.ttl_seconds, self.source.availability)

    def available_days(self) -> set[date]:
        return cache.get_or_set("consumption:days", self.ttl_seconds, self.source.available_days)

    def records(self, window: DateRange) -> list[ConsumptionRecord]:
        return self.source.records(window)


def to_local_naive(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        local_tz = datetime.now().astimezone().tzinfo
        if local_tz is not None:
            parsed = parsed.astimezone(local_tz)
        parsed = parsed.replace(tzinfo=None)
    return parsed


def parse_iso(value: str) -> datetime:
    try:
        return to_local_naive(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid datetime: {value}") from exc


def parse_kind(value: str) -> IntervalKind:
    try:
        return IntervalKind.parse(value)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def resolve_billing_day(billing_day: int | None) -> int:
    try:
        if billing_day is None:
            return get_billing_day()
        return billing_day
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def load_tariff_catalog() -> tuple[dict[str, TariffAgreement], dict[str, TariffRates]]:
    """Read ``TARIFF_CATALOG_PATH`` (JSON object keyed by tariff id)."""
    raw_path = os.getenv("TARIFF_CATALOG_PATH", "").strip()
    agreements: dict[str, TariffAgreement] = {}
    rates: dict[str, TariffRates] = {}
    if raw_path:
        path = Path(raw_path)
        if not path.exists():
            raise ConfigurationError(f"TARIFF_CATALOG_PATH does not exist: {path}")
        try:
            for tariff_id, entry in json.loads(path.read_text(encoding="utf-8")).items():
                valid_to = entry.get("validTo")
                agreements[tariff_id] = TariffAgreement(
                    tariff_id=tariff_id,
                    valid_from=to_local_naive(entry["validFrom"]),
                    valid_to=to_local_naive(valid_to) if valid_to else None,
                )
                rates[tariff_id] = TariffRates(
                    unit_rate_exc_vat=float(entry["unitRate"]),
                    standing_charge_exc_vat=float(entry["standingCharge"]),
                    vat_rate=float(entry.get("vatRate", 0.05)),
                )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ConfigurationError(f"Invalid tariff catalog {path}: {exc!r}") from exc

    rates[MANUAL_PLAN_ID] = TariffRates(
        unit_rate_exc_vat=get_env_float("MANUAL_UNIT_RATE", default=24.5),
        standing_charge_exc_vat=get_env_float("MANUAL_STANDING_CHARGE", default=60.0),
    )
    return agreements, rates


def get_consumption_source() -> CachedConsumptionSource:
    return CachedConsumptionSource(SqlConsumptionSource())


def get_validity_service() -> TariffValidityService:
    agreements, _ = load_tariff_catalog()
    return TariffValidityService(catalog_fetcher(agreements))


def build_session(store: SettingsStore) -> ComparisonSession:
    # Loads consumption bounds, so callers on the event loop run it in a worker thread.
    return ComparisonSession(get_consumption_source(), get_validity_service(), store)


def range_to_dict(value: DateRange | None) -> dict[str, str | None] | None:
    if value is None:
        return None
    return {
        "start": value.start.isoformat() if value.start != datetime.min else None,
        "end": value.end.isoformat() if value.end != datetime.max else None,
    }


def boundary_to_dict(boundary: IntervalBoundary) -> dict[str, Any]:
    return {
        "kind": boundary.kind.value,
        "billingDay": boundary.anchor_day,
        "start": boundary.start.isoformat(),
        "end": boundary.end.isoformat(),
    }


def overlap_to_dict(overlap: OverlapResult | None) -> dict[str, Any] | None:
    if overlap is None:
        return None
    return {
        "actual": range_to_dict(overlap.actual),
        "requested": range_to_dict(overlap.requested),
        "isPartial": overlap.is_partial,
        "anchorShifted": overlap.anchor_shifted,
    }


def outcome_to_dict(outcome: PipelineOutcome) -> dict[str, Any]:
    calc = outcome.calculation
    return {
        "status": outcome.status,
        "error": outcome.error,
        "period": overlap_to_dict(outcome.overlap),
        "cost": None
        if calc is None
        else {
            "totalKWh": calc.total_kwh,
            "costExcVAT": calc.cost_exc_vat,
            "costIncVAT": calc.cost_inc_vat,
            "averageUnitRateExcVAT": calc.average_unit_rate_exc_vat,
            "averageUnitRateIncVAT": calc.average_unit_rate_inc_vat,
            "standingChargeExcVAT": calc.standing_charge_exc_vat,
            "standingChargeIncVAT": calc.standing_charge_inc_vat,
        },
    }


app = FastAPI(title="Tariff Comparison API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def auth_middleware(request: Request, call_next: Callable[..., Any]) -> JSONResponse:
    if request.url.path.startswith("/api"):
        auth_token = os.getenv("DASHBOARD_AUTH_TOKEN", "").strip()
        if auth_token:
            provided = request.headers.get("X-Auth-Token", "") or request.query_params.get("token", "")
            if provided != auth_token:
                return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
    return await call_next(request)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    # Request-level validation maps its own ConfigurationError to 400 before reaching here.
    logger.error("Server configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"Server configuration error: {exc}"})


@app.get("/api/health")
def get_health() -> dict[str, Any]:
    server_time = datetime.now()
    db_connected = False
    availability = None

    try:
        availability = get_consumption_source().availability()
        db_connected = True
    except Exception:
        logger.exception("Health check DB failure")

    _, _, credential_mode = resolve_sql_credentials()

    return {
        "serverTime": server_time.isoformat(),
        "dbConnected": db_connected,
        "consumption": range_to_dict(availability),
        "credentialMode": credential_mode,
    }


@app.get("/api/boundary")
def get_boundary(date: str, kind: str = "MONTHLY", billing_day: int | None = None) -> dict[str, Any]:
    anchor_day = resolve_billing_day(billing_day)
    try:
        boundary = compute_boundary(parse_iso(date), parse_kind(kind), anchor_day)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    min_date, max_date = availability_bounds(get_consumption_source().availability())
    payload = boundary_to_dict(boundary)
    payload.update(
        {
            "overlapsWithData": boundary.overlaps_with_data(min_date, max_date),
            "isAfterData": boundary.is_after_data(max_date),
        }
    )
    return payload


@app.get("/api/navigate")
def get_navigate(date: str, kind: str = "MONTHLY", forward: bool = True, billing_day: int | None = None) -> dict[str, Any]:
    anchor_day = resolve_billing_day(billing_day)
    interval_kind = parse_kind(kind)
    current = parse_iso(date)

    source = get_consumption_source()
    min_date, max_date = availability_bounds(source.availability())
    days = source.available_days() if interval_kind is IntervalKind.DAILY else None

    try:
        target = navigate(current, forward, interval_kind, min_date, max_date, anchor_day, days)
        at_min = is_at_minimum(current, interval_kind, min_date, anchor_day, days)
        at_max = is_at_maximum(current, interval_kind, max_date, anchor_day, days)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {
        "date": target.isoformat() if target else None,
        "atMinimum": at_min,
        "atMaximum": at_max,
    }


@app.get("/api/comparison")
async def get_comparison(
    date: str,
    kind: str = "MONTHLY",
    tariff: str = MANUAL_PLAN_ID,
    account: str | None = None,
    billing_day: int | None = None,
) -> dict[str, Any]:
    anchor_day = resolve_billing_day(billing_day)
    interval_kind = parse_kind(kind)
    current = parse_iso(date)

    _, rates = await asyncio.to_thread(load_tariff_catalog)
    account_id = account or os.getenv("ACCOUNT_TARIFF_ID", "").strip() or None
    try:
        store = SettingsStore(
            ComparisonSettings(
                billing_day=anchor_day,
                interval_kind=interval_kind,
                account_tariff_id=account_id,
                compare_tariff_id=tariff,
                account_rates=rates.get(account_id) if account_id else None,
                compare_rates=rates.get(tariff),
            )
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    session = await asyncio.to_thread(build_session, store)
    session.set_date(current)
    snapshot = await session.refresh()
    if snapshot is None:
        raise HTTPException(status_code=409, detail="Comparison superseded")

    configured = [o for o in (snapshot.account, snapshot.compare) if o.status != "unconfigured"]
    if configured and all(o.status == "error" for o in configured):
        raise HTTPException(status_code=502, detail=configured[-1].error or "Validity lookup failed")

    savings = None
    if snapshot.account.calculation and snapshot.compare.calculation:
        savings = compare_costs(snapshot.account.calculation, snapshot.compare.calculation)

    return {
        "boundary": boundary_to_dict(snapshot.boundary),
        "navigation": session.navigation_flags(),
        "account": outcome_to_dict(snapshot.account),
        "compare": outcome_to_dict(snapshot.compare),
        "savingsIncVAT": savings,
    }
