import os
import sys
import threading
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from dutyengine import override_store as override_store_module
from dutyengine.engine import DutyEngine
from dutyengine.errors import StoreError, StoreUnavailable
from dutyengine.override_store import PostgresOverrideStore, Service
from dutyengine.scopes import (
    ContinentScope,
    CountryScope,
    GlobalScope,
    ProductScope,
    RegionScope,
    Tier,
)


def test_supersede_keeps_one_active_row(store):
    first, previous = store.supersede("customs_duty", CountryScope("IN"), Decimal("0.10"))
    second, retired = store.supersede("customs_duty", CountryScope("IN"), Decimal("0.12"), reason="review")

    assert previous is None
    assert retired.override_id == first.override_id
    assert retired.is_active is False
    assert store.active_override("customs_duty", CountryScope("IN")) == second
    assert [row.rate for row in store.history("customs_duty", CountryScope("IN"))] == [
        Decimal("0.12"),
        Decimal("0.10"),
    ]


def test_default_labels_describe_scope(store):
    override, _ = store.supersede("customs_duty", RegionScope("south_asia"), Decimal("0.12"), reason="Q3")

    assert override.tier is Tier.REGION
    assert override.tier_label == "region"
    assert override.source_label == "Region override (region:south_asia): Q3"


def test_deactivate_retires_without_replacement(store):
    store.supersede("customs_duty", GlobalScope(), Decimal("0.10"))

    retired = store.deactivate("customs_duty", GlobalScope(), reason="sunset")

    assert retired.is_active is False
    assert retired.reason == "sunset"
    assert store.active_override("customs_duty", GlobalScope()) is None
    assert store.deactivate("customs_duty", GlobalScope()) is None
    assert len(store.history("customs_duty", GlobalScope())) == 1


def test_active_overrides_for_country_filters_by_membership(store):
    store.supersede("customs_duty", GlobalScope(), Decimal("0.10"))
    store.supersede("customs_duty", ContinentScope("Asia"), Decimal("0.11"))
    store.supersede("customs_duty", ContinentScope("Europe"), Decimal("0.20"))
    store.supersede("customs_duty", RegionScope("south_asia"), Decimal("0.12"))
    store.supersede("customs_duty", CountryScope("NP"), Decimal("0.30"))
    store.supersede("customs_duty", ProductScope("8517", "IN"), Decimal("0.05"))
    store.supersede("handling_fee", GlobalScope(), Decimal("5"))

    without_product = store.active_overrides_for_country(
        "customs_duty", "IN", continent="Asia", regions=["south_asia"]
    )
    with_product = store.active_overrides_for_country(
        "customs_duty", "IN", continent="Asia", regions=["south_asia"], classification_code="8517"
    )

    assert sorted(o.tier.value for o in without_product) == ["continent", "global", "region"]
    assert Tier.PRODUCT in {o.tier for o in with_product}


def test_rows_are_invisible_before_their_effective_time(store):
    override, _ = store.supersede("customs_duty", GlobalScope(), Decimal("0.10"))
    earlier = override.effective_from - timedelta(seconds=1)

    assert store.active_overrides_for_country(
        "customs_duty", "IN", continent="Asia", regions=[], as_of=earlier
    ) == []


def test_concurrent_supersede_leaves_single_active_row(store):
    barrier = threading.Barrier(8)

    def write(index):
        barrier.wait()
        store.supersede("customs_duty", CountryScope("IN"), Decimal(index) / 100)

    threads = [threading.Thread(target=write, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    history = store.history("customs_duty", CountryScope("IN"))
    assert len(history) == 8
    assert sum(1 for row in history if row.is_active) == 1
    assert store.active_override("customs_duty", CountryScope("IN")) == history[0]


def test_services_and_minimums(store):
    assert [s.service_key for s in store.list_services()] == ["customs_duty", "handling_fee"]
    with pytest.raises(ValueError):
        store.add_service(Service("bad", "bad", "Bad", "tiered"))

    store.set_minimum_valuation("8517", "in", "1200")
    assert store.minimum_valuation("8517", "IN") == Decimal("1200")
    store.set_minimum_valuation("8517", "IN", None)
    assert store.minimum_valuation("8517", "IN") is None


def test_countries_with_overrides(store):
    store.supersede("customs_duty", CountryScope("NP"), Decimal("0.1"))
    store.supersede("customs_duty", CountryScope("IN"), Decimal("0.1"))
    store.supersede("customs_duty", RegionScope("gulf"), Decimal("0.1"))
    store.supersede("handling_fee", CountryScope("US"), Decimal("3"))

    assert store.countries_with_overrides("customs_duty") == ["IN", "NP"]


def test_active_overrides_for_scope_lists_every_service(store):
    store.supersede("handling_fee", RegionScope("south_asia"), Decimal("4"))
    store.supersede("customs_duty", RegionScope("south_asia"), Decimal("0.12"))
    store.supersede("customs_duty", RegionScope("south_asia"), Decimal("0.13"))
    store.supersede("customs_duty", RegionScope("gulf"), Decimal("0.2"))

    rows = store.active_overrides_for_scope(RegionScope("south_asia"))

    assert [(row.service_id, row.rate) for row in rows] == [
        ("customs_duty", Decimal("0.13")),
        ("handling_fee", Decimal("4")),
    ]
    assert store.active_overrides_for_scope(ContinentScope("Asia")) == []


def test_active_overrides_for_service(store):
    store.supersede("customs_duty", GlobalScope(), Decimal("0.10"))
    store.supersede("customs_duty", CountryScope("IN"), Decimal("0.15"))
    store.supersede("customs_duty", CountryScope("NP"), Decimal("0.11"))
    store.deactivate("customs_duty", CountryScope("NP"))
    store.supersede("handling_fee", GlobalScope(), Decimal("5"))

    rows = store.active_overrides_for_service("customs_duty")

    assert [row.scope for row in rows] == [CountryScope("IN"), GlobalScope()]


def test_history_survives_many_supersedes(store):
    for scope in (CountryScope("IN"), CountryScope("NP")):
        for index in range(50):
            store.supersede("customs_duty", scope, Decimal(index))

    history = store.history("customs_duty", CountryScope("IN"))

    assert [row.rate for row in history] == [Decimal(index) for index in reversed(range(50))]
    assert [row.is_active for row in history] == [True] + [False] * 49
    assert store.active_override("customs_duty", CountryScope("NP")).rate == Decimal("49")


def test_postgres_store_requires_dsn():
    if override_store_module.psycopg2 is None:
        pytest.skip("psycopg2 not installed")
    with pytest.raises(RuntimeError):
        PostgresOverrideStore("")


@pytest.mark.skipif(
    override_store_module.psycopg2 is None or not os.getenv("DATABASE_DSN"),
    reason="requires psycopg2 and DATABASE_DSN",
)
def test_postgres_store_round_trip():
    pg = PostgresOverrideStore(os.environ["DATABASE_DSN"])
    pg.ensure_schema()
    service_id = f"test_{uuid.uuid4().hex[:12]}"
    pg.upsert_service(Service(service_id, service_id, "Integration Duty", "percentage"))

    first, _ = pg.supersede(service_id, CountryScope("IN"), Decimal("0.10"))
    second, previous = pg.supersede(service_id, CountryScope("IN"), Decimal("0.125"), reason="review")
    pg.supersede(service_id, RegionScope("south_asia"), Decimal("0.08"))

    assert previous.override_id == first.override_id
    assert previous.is_active is False
    assert [row.override_id for row in pg.history(service_id, CountryScope("IN"))] == [
        second.override_id,
        first.override_id,
    ]
    found = pg.active_overrides_for_country(
        service_id,
        "IN",
        continent="Asia",
        regions=["south_asia"],
        as_of=datetime.now(timezone.utc) + timedelta(seconds=5),
    )
    assert sorted(row.rate for row in found) == [Decimal("0.080000"), Decimal("0.125000")]
    assert pg.countries_with_overrides(service_id) == ["IN"]

    pg.deactivate(service_id, CountryScope("IN"))
    pg.deactivate(service_id, RegionScope("south_asia"))
    assert pg.active_override(service_id, CountryScope("IN")) is None


class FakeCursor:
    def __init__(self, error):
        self.error = error

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, sql, params=None):
        raise self.error

    def fetchone(self):
        return None

    def fetchall(self):
        return []


class FakeConnection:
    def __init__(self, error):
        self.error = error
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def cursor(self, cursor_factory=None):
        return FakeCursor(self.error)

    def close(self):
        self.closed = True


@pytest.fixture
def pg_driver():
    if override_store_module.psycopg2 is None:
        pytest.skip("psycopg2 not installed")
    return override_store_module.psycopg2


def test_postgres_unreachable_maps_to_store_unavailable(pg_driver, monkeypatch, reference):
    def refuse(*args, **kwargs):
        raise pg_driver.OperationalError("could not connect to server")

    monkeypatch.setattr(pg_driver, "connect", refuse)
    pg = PostgresOverrideStore("postgresql://duty@db/rates")

    with pytest.raises(StoreUnavailable):
        pg.supersede("customs_duty", CountryScope("IN"), Decimal("0.1"))
    with pytest.raises(StoreUnavailable):
        DutyEngine(pg, reference).set_rate("customs_duty", CountryScope("IN"), "0.1")


@pytest.mark.parametrize(
    "error_name, expected, not_expected",
    [
        ("OperationalError", StoreUnavailable, None),
        ("InterfaceError", StoreUnavailable, None),
        ("DataError", StoreError, StoreUnavailable),
        ("IntegrityError", StoreError, StoreUnavailable),
    ],
)
def test_postgres_query_errors_are_mapped(pg_driver, monkeypatch, error_name, expected, not_expected):
    connections = []

    def connect(*args, **kwargs):
        conn = FakeConnection(getattr(pg_driver, error_name)("statement failed"))
        connections.append(conn)
        return conn

    monkeypatch.setattr(pg_driver, "connect", connect)
    pg = PostgresOverrideStore("postgresql://duty@db/rates")

    with pytest.raises(expected) as excinfo:
        pg.supersede("customs_duty", CountryScope("IN"), Decimal("0.1"))
    if not_expected is not None:
        assert not isinstance(excinfo.value, not_expected)
    with pytest.raises(expected):
        pg.active_overrides_for_scope(RegionScope("south_asia"))
    assert connections and all(conn.closed for conn in connections)
