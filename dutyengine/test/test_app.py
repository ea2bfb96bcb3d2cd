import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from fastapi.testclient import TestClient

from dutyengine import app as app_module
from dutyengine.errors import StoreError, StoreUnavailable


@pytest.fixture
def client(engine):
    app_module.configure_engine(engine)
    try:
        yield TestClient(app_module.app)
    finally:
        app_module.configure_engine(None)


def _set(client, scope, rate, service_id="customs_duty", **extra):
    response = client.post("/rates", json={"service_id": service_id, "scope": scope, "rate": rate, **extra})
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_resolve_follows_precedence(client):
    _set(client, "global", "0.10")
    _set(client, "country:IN", "0.15")

    india = client.get("/rates/resolve", params={"service_id": "customs_duty", "country_code": "IN"}).json()
    nepal = client.get("/rates/resolve", params={"service_id": "customs_duty", "country_code": "NP"}).json()

    assert (Decimal(india["rate"]), india["tier"]) == (Decimal("0.15"), "country")
    assert (Decimal(nepal["rate"]), nepal["tier"]) == (Decimal("0.10"), "global")


@pytest.mark.parametrize(
    "params, status",
    [
        ({"service_id": "customs_duty", "country_code": "IN"}, 404),
        ({"service_id": "teleport_fee", "country_code": "IN"}, 404),
        ({"service_id": "customs_duty", "country_code": "IND"}, 422),
    ],
)
def test_resolve_error_mapping(client, params, status):
    assert client.get("/rates/resolve", params=params).status_code == status


def test_invalid_writes_are_422(client):
    assert client.post("/rates", json={"service_id": "customs_duty", "scope": "country:IN", "rate": "-1"}).status_code == 422
    assert client.post("/rates", json={"service_id": "customs_duty", "scope": "region:atlantis", "rate": "0.1"}).status_code == 422
    assert client.post("/rates", json={"service_id": "customs_duty", "scope": "moon", "rate": "0.1"}).status_code == 422


def test_store_outage_is_503(client, store, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreUnavailable("timeout")

    monkeypatch.setattr(store, "active_overrides_for_country", unavailable)
    response = client.get("/rates/resolve", params={"service_id": "customs_duty", "country_code": "IN"})
    assert response.status_code == 503


def test_history_and_deactivate(client):
    _set(client, "country:IN", "0.10")
    _set(client, "country:IN", "0.12", reason="review")

    history = client.get("/rates/history", params={"service_id": "customs_duty", "scope": "country:IN"}).json()
    assert [row["is_active"] for row in history] == [True, False]

    retired = client.post("/rates/deactivate", json={"service_id": "customs_duty", "scope": "country:IN"})
    assert retired.status_code == 200
    assert retired.json()["is_active"] is False
    again = client.post("/rates/deactivate", json={"service_id": "customs_duty", "scope": "country:IN"})
    assert again.status_code == 404


def test_store_query_error_is_500(client, store, monkeypatch):
    def rejected(*args, **kwargs):
        raise StoreError("invalid input syntax")

    monkeypatch.setattr(store, "active_overrides_for_country", rejected)
    response = client.get("/rates/resolve", params={"service_id": "customs_duty", "country_code": "IN"})
    assert response.status_code == 500


def test_scope_listing(client):
    _set(client, "region:south_asia", "0.12")
    _set(client, "region:south_asia", "4", service_id="handling_fee")

    rows = client.get("/rates/scope", params={"scope": "region:south_asia"}).json()

    assert [(row["service_id"], Decimal(row["rate"])) for row in rows] == [
        ("customs_duty", Decimal("0.12")),
        ("handling_fee", Decimal("4")),
    ]
    assert client.get("/rates/scope", params={"scope": "region:atlantis"}).status_code == 422


def test_valuation_endpoint(client):
    body = client.post(
        "/valuation", json={"declared_value": "1000", "minimum_valuation": "1200", "policy": "minimum_valuation"}
    ).json()
    assert Decimal(body["base_value"]) == Decimal("1200")
    assert body["minimum_applied"] is True

    bad = client.post("/valuation", json={"declared_value": "1000", "policy": "cheapest"})
    assert bad.status_code == 422


def test_duty_endpoint(client):
    _set(client, "global", "0.10")

    body = client.post("/duty", json={"service_id": "customs_duty", "country_code": "IN", "declared_value": "250"}).json()

    assert Decimal(body["amount"]) == Decimal("25.00")
    assert body["tier"] == "global"


def test_bulk_and_preview(client):
    _set(client, "country:IN", "0.10")
    payload = {
        "service_id": "customs_duty",
        "operation_type": "increase_percent",
        "value": "10",
        "countries": ["IN", "US"],
    }

    preview = client.post("/bulk/preview", json=payload).json()
    assert Decimal(preview["max_change"]) == Decimal("0.01")

    job = client.post("/bulk", json=payload).json()
    assert (job["updated"], job["skipped"], job["failed"]) == (1, 1, 0)
    statuses = {row["country_code"]: row["status"] for row in job["results"]}
    assert statuses == {"IN": "updated", "US": "skipped"}

    bad = client.post("/bulk", json={**payload, "value": "-5"})
    assert bad.status_code == 422


def test_revenue_impact_endpoint(client):
    body = client.post(
        "/revenue-impact",
        json={
            "current_rate": "0.10",
            "new_rate": "0.12",
            "affected_countries": ["IN", "NP"],
            "historical_volume": "1000",
            "historical_avg_order_value": "150",
            "total_country_count": 10,
        },
    ).json()
    assert Decimal(body["estimated_revenue_change"]) == Decimal("6000.00")
    assert Decimal(body["impact_percentage"]) == Decimal("20.00")


def test_matrix_country_and_cache_endpoints(client):
    _set(client, "global", "0.10")

    matrix = client.get("/matrix/customs_duty", params={"countries": "IN,NP"}).json()
    assert Decimal(matrix["coverage_percentage"]) == Decimal("100.00")

    info = client.get("/countries/IN").json()
    assert info["continent"] == "Asia"

    assert client.post("/cache/invalidate", json={}).status_code == 200
    stats = client.get("/cache/stats").json()
    assert stats["misses"] >= 2
