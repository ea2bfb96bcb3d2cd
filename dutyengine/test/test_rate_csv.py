import csv
import io
import sys
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from dutyengine.engine import DutyEngine
from dutyengine.errors import StoreUnavailable
from dutyengine.override_store import InMemoryOverrideStore, Service
from dutyengine.rate_csv import ImportStatus
from dutyengine.scopes import CountryScope, GlobalScope, ProductScope, RegionScope, Tier


def _export(engine, service_ids=None, tiers=None):
    buffer = io.StringIO()
    written = engine.export_rates_csv(buffer, service_ids, tiers)
    return written, buffer.getvalue()


def _status_by_row(batch):
    return {row.row_number: row.status for row in batch.rows}


def test_export_writes_active_overrides_with_identifiers(engine):
    engine.set_rate("customs_duty", GlobalScope(), "0.10")
    engine.set_rate("customs_duty", RegionScope("south_asia"), "0.12", reason="Q3")
    engine.set_rate("customs_duty", ProductScope("8517", "IN"), "0.05", min_amount="1", max_amount="50")
    engine.set_rate("customs_duty", CountryScope("NP"), "0.2")
    engine.deactivate_rate("customs_duty", CountryScope("NP"))
    engine.set_rate("handling_fee", GlobalScope(), "5")

    written, text = _export(engine, ["customs_duty"])
    rows = list(csv.DictReader(io.StringIO(text)))

    assert written == 3
    assert [row["scope"] for row in rows] == ["global", "product:8517:IN", "region:south_asia"]
    product = rows[1]
    assert (product["country_code"], product["classification_code"]) == ("IN", "8517")
    assert (Decimal(product["rate"]), product["min_amount"], product["max_amount"]) == (
        Decimal("0.05"),
        "1",
        "50",
    )
    assert (rows[2]["region_key"], rows[2]["reason"]) == ("south_asia", "Q3")


def test_export_filters_by_tier_and_defaults_to_every_service(engine):
    engine.set_rate("customs_duty", GlobalScope(), "0.10")
    engine.set_rate("customs_duty", CountryScope("IN"), "0.15")
    engine.set_rate("handling_fee", CountryScope("IN"), "3")

    written, text = _export(engine, tiers=[Tier.COUNTRY])

    assert written == 2
    assert [row["service_key"] for row in csv.DictReader(io.StringIO(text))] == ["customs_duty", "handling_fee"]


def test_exported_file_imports_into_another_store(engine, reference):
    engine.set_rate("customs_duty", GlobalScope(), "0.10")
    engine.set_rate("customs_duty", RegionScope("south_asia"), "0.12")
    engine.set_rate("customs_duty", ProductScope("8517", "IN"), "0.05", max_amount="50")
    _, text = _export(engine)

    target = DutyEngine(
        InMemoryOverrideStore([Service("customs_duty", "customs_duty", "Customs Duty", "percentage")]),
        reference,
    )
    batch = target.import_rates_csv(io.StringIO(text))

    assert batch.updated_count == 3
    for country, classification in (("NP", None), ("US", None), ("IN", "8517")):
        assert (
            target.resolve_rate("customs_duty", country, classification).rate
            == engine.resolve_rate("customs_duty", country, classification).rate
        )


def test_validation_reports_row_errors_without_writing(engine):
    text = (
        "service_key,country_code,region_key,continent,rate,min_amount,max_amount,reason\n"
        "customs_duty,IN,,,0.15,,,\n"
        "customs_duty,,south_asia,,abc,,,\n"
        "customs_duty,,,,0.1,,,\n"
        "missing_service,NP,,,0.1,,,\n"
        "customs_duty,in,,,0.16,,,\n"
        "customs_duty,NP,,,0.1,-1,,\n"
        "customs_duty,,,Asia,0.08,10,5,\n"
    )

    batch = engine.validate_rates_csv(io.StringIO(text))

    assert batch.errors == []
    assert batch.is_valid is True
    assert _status_by_row(batch) == {
        2: ImportStatus.VALID,
        3: ImportStatus.INVALID,
        4: ImportStatus.INVALID,
        5: ImportStatus.INVALID,
        6: ImportStatus.INVALID,
        7: ImportStatus.INVALID,
        8: ImportStatus.INVALID,
    }
    errors = {row.row_number: row.errors for row in batch.rows}
    assert errors[3] == ["Invalid rate"]
    assert errors[4] == ["Missing continent, region_key, or country_code"]
    assert errors[5] == ["Unknown service: missing_service"]
    assert errors[6] == ["Duplicate entry (first seen on row 2)"]
    assert errors[7] == ["Invalid min_amount"]
    assert errors[8] == ["min_amount exceeds max_amount"]
    assert batch.applied is False
    assert engine.override_history("customs_duty", CountryScope("IN")) == []


def test_missing_required_headers_rejects_file(engine):
    batch = engine.import_rates_csv(io.StringIO("service_key,country_code\ncustoms_duty,IN\n"))

    assert batch.errors == ["Missing required headers: rate"]
    assert batch.rows == []
    assert batch.is_valid is False
    assert engine.override_history("customs_duty", CountryScope("IN")) == []


def test_empty_file_is_rejected(engine):
    assert engine.validate_rates_csv(io.StringIO("")).errors == ["CSV file is empty"]
    assert engine.validate_rates_csv(io.StringIO("service_key,rate\n")).errors == ["CSV file has no data rows"]


def test_headers_are_case_and_space_insensitive(engine):
    batch = engine.validate_rates_csv(io.StringIO(" Service_Key , Country_Code , Rate \ncustoms_duty,IN,0.1\n"))

    assert [row.status for row in batch.rows] == [ImportStatus.VALID]
    assert batch.rows[0].scope == CountryScope("IN")


def test_warnings_do_not_block_import(engine):
    text = (
        "service_key,region_key,country_codes,rate\n"
        'customs_duty,south_asia,"IN,NP",0.12\n'
        "customs_duty,gulf,,1.5\n"
    )

    batch = engine.import_rates_csv(io.StringIO(text))

    assert [row.status for row in batch.rows] == [ImportStatus.UPDATED, ImportStatus.UPDATED]
    assert "country_codes differ" in batch.rows[0].warnings[0]
    assert "above 100%" in batch.rows[1].warnings[0]


def test_import_writes_valid_rows_and_invalidates_cache(engine):
    engine.set_rate("customs_duty", GlobalScope(), "0.10")
    assert engine.resolve_rate("customs_duty", "NP").rate == Decimal("0.10")
    assert engine.resolve_rate("customs_duty", "NP").cached is True

    text = "service_key,region_key,country_code,rate\ncustoms_duty,south_asia,,0.12\ncustoms_duty,,IN,oops\n"
    batch = engine.import_rates_csv(io.StringIO(text))

    assert (batch.updated_count, batch.invalid_count) == (1, 1)
    assert batch.rows[0].override_id is not None
    resolved = engine.resolve_rate("customs_duty", "NP")
    assert (resolved.rate, resolved.tier, resolved.cached) == (Decimal("0.12"), Tier.REGION, False)
    assert engine.override_history("customs_duty", RegionScope("south_asia"))[0].reason == "CSV import"


def test_failed_write_is_isolated_to_its_row(engine, store, monkeypatch):
    original = store.supersede

    def flaky(service_id, scope, rate, **kwargs):
        if getattr(scope, "country_code", None) == "NP":
            raise StoreUnavailable("connection reset")
        return original(service_id, scope, rate, **kwargs)

    monkeypatch.setattr(store, "supersede", flaky)
    text = "service_key,country_code,rate\ncustoms_duty,IN,0.1\ncustoms_duty,NP,0.1\ncustoms_duty,US,0.1\n"
    batch = engine.import_rates_csv(io.StringIO(text))

    assert [row.status for row in batch.rows] == [
        ImportStatus.UPDATED,
        ImportStatus.FAILED,
        ImportStatus.UPDATED,
    ]
    assert "connection reset" in batch.rows[1].errors[0]
    assert engine.resolve_rate("customs_duty", "US").rate == Decimal("0.1")
