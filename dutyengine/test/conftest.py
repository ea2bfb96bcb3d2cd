import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from dutyengine.country_reference import CountryReference, load_country_reference  # noqa: E402
from dutyengine.engine import DutyEngine  # noqa: E402
from dutyengine.override_store import InMemoryOverrideStore, Service  # noqa: E402

CUSTOMS = Service("customs_duty", "customs_duty", "Customs Duty", "percentage")
HANDLING = Service("handling_fee", "handling_fee", "Handling Fee", "fixed")


@pytest.fixture
def reference() -> CountryReference:
    return load_country_reference()


@pytest.fixture
def store() -> InMemoryOverrideStore:
    return InMemoryOverrideStore([CUSTOMS, HANDLING])


@pytest.fixture
def engine(store, reference) -> DutyEngine:
    return DutyEngine(store, reference)


@pytest.fixture
def small_reference() -> CountryReference:
    """Two Asian countries sharing region ``R`` plus one North American country."""

    return CountryReference.from_mapping(
        {"IN": "Asia", "NP": "Asia", "US": "North America"},
        regions={"R": ["IN", "NP"]},
        continent_names=["Asia", "North America"],
    )


@pytest.fixture
def small_engine(store, small_reference) -> DutyEngine:
    return DutyEngine(store, small_reference)
