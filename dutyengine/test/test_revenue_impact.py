import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from dutyengine.revenue_impact import (
    CONFIDENCE_CEILING,
    CountryVolume,
    HttpVolumeSource,
    StaticVolumeSource,
    confidence_for,
    estimate_from_history,
    estimate_revenue_impact,
)


def test_revenue_impact_formula():
    impact = estimate_revenue_impact("0.10", "0.12", ["IN", "NP"], 1000, 150, 10)

    assert impact.impact_percentage == Decimal("20.00")
    assert impact.estimated_revenue_change == Decimal("6000.00")
    assert impact.current_revenue == Decimal("3000.00")
    assert impact.projected_revenue == Decimal("3600.00")
    assert impact.affected_countries == ["IN", "NP"]


def test_rate_cut_gives_negative_change():
    impact = estimate_revenue_impact("0.20", "0.15", ["IN"], 200, 100, 4)

    assert impact.impact_percentage == Decimal("-25.00")
    assert impact.estimated_revenue_change == Decimal("-1250.00")


def test_zero_current_rate_has_no_percentage():
    impact = estimate_revenue_impact("0", "0.05", ["IN"], 100, 50, 10)

    assert impact.impact_percentage is None
    assert impact.estimated_revenue_change == Decimal("0")
    assert impact.notes


def test_total_country_count_must_be_positive():
    with pytest.raises(ValueError):
        estimate_revenue_impact("0.1", "0.2", ["IN"], 1, 1, 0)


def test_confidence_is_monotone_and_capped():
    scores = [confidence_for(count) for count in range(0, 40)]

    assert scores == sorted(scores)
    assert max(scores) == CONFIDENCE_CEILING == Decimal("0.95")
    assert confidence_for(1) == Decimal("0.55")


def test_estimate_from_history_weights_order_value():
    source = StaticVolumeSource(
        {
            "IN": CountryVolume("IN", 100, Decimal("100")),
            "NP": CountryVolume("NP", 300, Decimal("200")),
        }
    )

    impact = estimate_from_history(source, "0.10", "0.11", ["IN", "NP", "PK"])

    # 400 orders at a weighted 175 average
    assert impact.estimated_revenue_change == Decimal("7000.00")
    assert any("PK" in note for note in impact.notes)


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, payload):
        self.payload = payload
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        return FakeResponse(self.payload)


def test_http_volume_source_parses_rows_and_sends_timeout():
    session = FakeSession(
        {
            "countries": [
                {"country_code": "in", "order_count": 12, "avg_order_value": "80.5"},
                {"country_code": "NP", "order_count": "bad", "avg_order_value": 10},
                {"order_count": 3},
            ]
        }
    )
    source = HttpVolumeSource("https://analytics.internal/volumes", timeout=3, session=session)

    volumes = source.volumes(["IN", "NP"])

    assert volumes == {"IN": CountryVolume("IN", 12, Decimal("80.5"))}
    assert session.calls[0]["timeout"] == 3
    assert session.calls[0]["params"] == {"countries": "IN,NP"}


def test_engine_uses_configured_country_total(engine):
    impact = engine.estimate_revenue_impact("0.10", "0.20", ["IN"], 100, 100)

    share = Decimal(1) / Decimal(len(engine.reference.all_countries()))
    expected = (Decimal(100) * Decimal(100) * Decimal(1) * share).quantize(Decimal("0.01"))
    assert impact.estimated_revenue_change == expected
