import asyncio
import json
import time
from datetime import date, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from comparison.api import app as app_module
from comparison.api.clock import FixedClock
from comparison.api.sources import (
    ConsumptionRecord,
    InMemoryConsumptionSource,
    TariffAgreement,
    TariffValidityService,
    catalog_fetcher,
)


def _records() -> list[ConsumptionRecord]:
    records = []
    day = date(2025, 1, 10)
    while day <= date(2025, 2, 28):
        start = datetime.combine(day, datetime.min.time())
        records.append(ConsumptionRecord(start=start, end=start + timedelta(days=1), kwh=2.0))
        day += timedelta(days=1)
    return records


@pytest.fixture
def client(monkeypatch, tmp_path) -> TestClient:
    catalog_path = tmp_path / "tariffs.json"
    catalog_path.write_text(
        json.dumps(
            {
                "ACC": {"validFrom": "2024-12-01T00:00:00", "validTo": None, "unitRate": 25.0, "standingCharge": 45.0},
                "FUTURE": {"validFrom": "2025-06-01T00:00:00", "unitRate": 15.0, "standingCharge": 40.0},
                "BROKEN": {"validFrom": "2024-01-01T00:00:00", "unitRate": 15.0, "standingCharge": 40.0},
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("TARIFF_CATALOG_PATH", str(catalog_path))
    monkeypatch.delenv("DASHBOARD_AUTH_TOKEN", raising=False)
    monkeypatch.delenv("BILLING_DAY", raising=False)
    monkeypatch.delenv("ACCOUNT_TARIFF_ID", raising=False)

    source = InMemoryConsumptionSource(_records())
    agreements = {
        "ACC": TariffAgreement("ACC", datetime(2024, 12, 1)),
        "FUTURE": TariffAgreement("FUTURE", datetime(2025, 6, 1)),
    }
    monkeypatch.setattr(app_module, "get_consumption_source", lambda: source)
    monkeypatch.setattr(
        app_module,
        "get_validity_service",
        lambda: TariffValidityService(
            catalog_fetcher(agreements),
            clock=FixedClock(datetime(2025, 2, 15)),
            timeout_seconds=5,
            manual_window_days=365,
        ),
    )
    return TestClient(app_module.app)


def test_boundary_clamps_anchor_into_february(client: TestClient) -> None:
    response = client.get("/api/boundary", params={"date": "2025-02-28T10:00:00", "kind": "monthly", "billing_day": 31})

    assert response.status_code == 200
    payload = response.json()
    assert payload["kind"] == "MONTHLY"
    assert payload["start"] == "2025-02-28T00:00:00"
    assert payload["end"] == "2025-03-31T00:00:00"
    assert payload["overlapsWithData"] is True
    assert payload["isAfterData"] is False


def test_boundary_uses_configured_billing_day(client: TestClient, monkeypatch) -> None:
    monkeypatch.setenv("BILLING_DAY", "15")

    payload = client.get("/api/boundary", params={"date": "2025-02-10T00:00:00"}).json()

    assert payload["billingDay"] == 15
    assert payload["start"] == "2025-01-15T00:00:00"


@pytest.mark.parametrize(
    "params",
    [
        {"date": "2025-02-10T00:00:00", "billing_day": 0},
        {"date": "2025-02-10T00:00:00", "kind": "yearly"},
        {"date": "not-a-date"},
    ],
)
def test_bad_input_is_rejected(client: TestClient, params: dict) -> None:
    assert client.get("/api/boundary", params=params).status_code == 400


def test_navigate_backward_from_first_partial_month_is_blocked(client: TestClient) -> None:
    payload = client.get("/api/navigate", params={"date": "2025-01-20T00:00:00", "forward": "false"}).json()

    assert payload == {"date": None, "atMinimum": True, "atMaximum": False}


def test_navigate_weekly_reaches_partial_first_week(client: TestClient) -> None:
    payload = client.get(
        "/api/navigate", params={"date": "2025-01-15T00:00:00", "kind": "WEEKLY", "forward": "false"}
    ).json()

    assert payload["date"] == "2025-01-06T00:00:00"


def test_comparison_returns_partial_periods_and_savings(client: TestClient) -> None:
    response = client.get(
        "/api/comparison",
        params={"date": "2025-01-20T00:00:00", "kind": "MONTHLY", "tariff": "MANUAL", "account": "ACC"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["boundary"]["start"] == "2025-01-01T00:00:00"
    assert payload["account"]["status"] == "ok"
    assert payload["account"]["period"]["actual"] == {"start": "2025-01-10T00:00:00", "end": "2025-02-01T00:00:00"}
    assert payload["account"]["period"]["isPartial"] is True
    assert payload["account"]["cost"]["totalKWh"] == 44.0
    assert payload["compare"]["status"] == "ok"
    assert payload["savingsIncVAT"] is not None
    assert payload["navigation"]["atMinimum"] is True


def test_comparison_without_overlap_is_not_an_error(client: TestClient) -> None:
    response = client.get("/api/comparison", params={"date": "2025-02-10T00:00:00", "tariff": "FUTURE"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["compare"]["status"] == "noOverlap"
    assert payload["compare"]["cost"] is None
    assert payload["account"]["status"] == "unconfigured"


def test_comparison_validity_failure_is_bad_gateway(client: TestClient) -> None:
    response = client.get("/api/comparison", params={"date": "2025-02-10T00:00:00", "tariff": "BROKEN"})

    assert response.status_code == 502
    assert "BROKEN" in response.json()["detail"]


def test_auth_token_guards_api(client: TestClient, monkeypatch) -> None:
    monkeypatch.setenv("DASHBOARD_AUTH_TOKEN", "secret")

    assert client.get("/api/boundary", params={"date": "2025-02-10T00:00:00"}).status_code == 401
    assert (
        client.get("/api/boundary", params={"date": "2025-02-10T00:00:00"}, headers={"X-Auth-Token": "secret"}).status_code
        == 200
    )


def test_comparison_with_unknown_tariff_is_bad_gateway(client: TestClient) -> None:
    response = client.get("/api/comparison", params={"date": "2025-02-10T00:00:00", "tariff": "TYPO"})

    assert response.status_code == 502
    assert "TYPO" in response.json()["detail"]


def test_unknown_compare_tariff_is_reported_next_to_working_account(client: TestClient) -> None:
    response = client.get(
        "/api/comparison", params={"date": "2025-02-10T00:00:00", "tariff": "TYPO", "account": "ACC"}
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["account"]["status"] == "ok"
    assert payload["compare"]["status"] == "error"
    assert "TYPO" in payload["compare"]["error"]
    assert payload["savingsIncVAT"] is None


@pytest.mark.parametrize(
    "catalog_text",
    [
        json.dumps({"ACC": {"validFrom": "first of december", "unitRate": 25.0, "standingCharge": 45.0}}),
        json.dumps({"ACC": {"validFrom": "2024-12-01T00:00:00", "standingCharge": 45.0}}),
        "{not json",
    ],
)
def test_broken_tariff_catalog_is_a_server_error(client: TestClient, tmp_path, monkeypatch, catalog_text: str) -> None:
    catalog_path = tmp_path / "broken.json"
    catalog_path.write_text(catalog_text, encoding="utf-8")
    monkeypatch.setenv("TARIFF_CATALOG_PATH", str(catalog_path))

    response = client.get("/api/comparison", params={"date": "2025-02-10T00:00:00", "account": "ACC"})

    assert response.status_code == 500
    assert "configuration" in response.json()["detail"]


class _SlowConsumptionSource(InMemoryConsumptionSource):
    def records(self, window):
        time.sleep(0.5)
        return super().records(window)


def test_comparison_keeps_event_loop_responsive_on_slow_source(client: TestClient, monkeypatch) -> None:
    source = _SlowConsumptionSource(_records())
    monkeypatch.setattr(app_module, "get_consumption_source", lambda: source)

    async def scenario():
        done = asyncio.Event()
        gaps: list[float] = []

        async def ticker() -> None:
            last = time.perf_counter()
            while not done.is_set():
                await asyncio.sleep(0.05)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        ticking = asyncio.create_task(ticker())
        payload = await app_module.get_comparison(
            date="2025-02-10T00:00:00", kind="MONTHLY", tariff="ACC", account=None, billing_day=None
        )
        done.set()
        await ticking
        return payload, max(gaps, default=0.0)

    payload, longest_gap = asyncio.run(scenario())

    assert payload["compare"]["status"] == "ok"
    assert longest_gap < 0.3
