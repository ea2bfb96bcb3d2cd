import sys
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from dutyengine.scopes import CountryScope, GlobalScope, RegionScope


def test_matrix_stats(engine):
    engine.set_rate("customs_duty", GlobalScope(), "0.10")
    engine.set_rate("customs_duty", RegionScope("south_asia"), "0.12")
    engine.set_rate("customs_duty", CountryScope("IN"), "0.15")

    matrix = engine.build_pricing_matrix("customs_duty", ["IN", "NP", "US"])

    rates = {row.country_code: row.rate for row in matrix.rows}
    assert rates == {"IN": Decimal("0.15"), "NP": Decimal("0.12"), "US": Decimal("0.10")}
    assert matrix.tier_distribution == {"country": 1, "region": 1, "global": 1}
    assert list(matrix.tier_distribution) == ["country", "region", "global"]
    assert (matrix.min_rate, matrix.max_rate) == (Decimal("0.10"), Decimal("0.15"))
    assert matrix.avg_rate == Decimal("0.123333")
    assert matrix.coverage_percentage == Decimal("100.00")


def test_matrix_coverage_counts_unpriced_countries(engine):
    engine.set_rate("customs_duty", RegionScope("south_asia"), "0.12")

    matrix = engine.build_pricing_matrix("customs_duty", ["IN", "NP", "US"])

    assert matrix.coverage_percentage == Decimal("66.67")
    assert [row.rate for row in matrix.rows if row.country_code == "US"] == [None]


def test_matrix_is_cached_until_a_write(engine):
    engine.set_rate("customs_duty", GlobalScope(), "0.10")

    first = engine.build_pricing_matrix("customs_duty", ["IN", "NP"])
    hits = engine.cache_stats().hits
    again = engine.build_pricing_matrix("customs_duty", ["NP", "IN"])
    assert engine.cache_stats().hits == hits + 1
    assert again.rows == first.rows

    engine.set_rate("customs_duty", CountryScope("DE"), "0.2")
    misses = engine.cache_stats().misses
    engine.build_pricing_matrix("customs_duty", ["IN", "NP"])
    assert engine.cache_stats().misses > misses

    engine.apply_bulk_operation("customs_duty", "set_rate", ["NP"], value="0.3")
    after_bulk = engine.build_pricing_matrix("customs_duty", ["IN", "NP"])
    assert {row.country_code: row.rate for row in after_bulk.rows}["NP"] == Decimal("0.3")


def test_cached_matrix_is_not_shared_with_callers(engine):
    engine.set_rate("customs_duty", GlobalScope(), "0.10")

    first = engine.build_pricing_matrix("customs_duty", ["IN", "NP"])
    first.rows.clear()
    first.tier_distribution["global"] = 99

    again = engine.build_pricing_matrix("customs_duty", ["IN", "NP"])
    assert [row.country_code for row in again.rows] == ["IN", "NP"]
    assert again.tier_distribution == {"global": 2}


def test_country_pricing_info(engine):
    engine.set_rate("customs_duty", CountryScope("IN"), "0.15")
    engine.set_rate("handling_fee", GlobalScope(), "5")

    info = engine.country_pricing_info("in")

    assert info.continent == "Asia"
    assert info.regions == ["south_asia"]
    assert info.services_with_country_overrides == ["customs_duty"]
    assert info.country_name == "India"
