"""Country membership lookups: continent and pricing regions per country."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import InvalidScope
from .scopes import (
    ContinentScope,
    CountryScope,
    GlobalScope,
    ProductScope,
    RegionScope,
    Scope,
)

try:  # pragma: no cover - optional dependency for environments without psycopg2
    from psycopg2.extras import RealDictCursor
except ImportError:  # pragma: no cover - allow import without postgres libs
    RealDictCursor = None  # type: ignore[assignment]

DATA_DIR = Path(__file__).resolve().parent
COUNTRIES_PATH = DATA_DIR / "countries.json"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionDefinition:
    region_key: str
    region_name: str
    country_codes: frozenset[str]
    priority: int = 100


@dataclass
class CountryReference:
    """In-memory view of country → continent and region → countries membership."""

    continents_by_country: Dict[str, str]
    regions: Dict[str, RegionDefinition] = field(default_factory=dict)
    continent_names: frozenset[str] = frozenset()
    country_names: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.continents_by_country = {
            code.strip().upper(): continent
            for code, continent in self.continents_by_country.items()
            if code and continent
        }
        if not self.continent_names:
            self.continent_names = frozenset(self.continents_by_country.values())
        self._regions_by_country: Dict[str, List[str]] = {}
        ordered = sorted(self.regions.values(), key=lambda r: (-r.priority, r.region_key))
        for region in ordered:
            for code in region.country_codes:
                self._regions_by_country.setdefault(code, []).append(region.region_key)

    @classmethod
    def from_mapping(
        cls,
        continents_by_country: Mapping[str, str],
        regions: Optional[Mapping[str, Iterable[str]]] = None,
        priorities: Optional[Mapping[str, int]] = None,
        continent_names: Optional[Iterable[str]] = None,
    ) -> "CountryReference":
        priorities = priorities or {}
        region_defs = {
            key: RegionDefinition(
                region_key=key,
                region_name=key.replace("_", " ").title(),
                country_codes=frozenset(code.strip().upper() for code in codes),
                priority=int(priorities.get(key, 100)),
            )
            for key, codes in (regions or {}).items()
        }
        return cls(
            continents_by_country=dict(continents_by_country),
            regions=region_defs,
            continent_names=frozenset(continent_names or ()),
        )

    def is_known_country(self, country_code: str) -> bool:
        return country_code in self.continents_by_country

    def is_known_region(self, region_key: str) -> bool:
        return region_key in self.regions

    def is_known_continent(self, continent: str) -> bool:
        return continent in self.continent_names

    def continent_of(self, country_code: str) -> Optional[str]:
        return self.continents_by_country.get(country_code)

    def regions_of(self, country_code: str) -> List[str]:
        """Region keys containing the country, highest priority first."""

        return list(self._regions_by_country.get(country_code, []))

    def countries_in_region(self, region_key: str) -> frozenset[str]:
        region = self.regions.get(region_key)
        return region.country_codes if region else frozenset()

    def countries_in_continent(self, continent: str) -> frozenset[str]:
        return frozenset(
            code for code, name in self.continents_by_country.items() if name == continent
        )

    def all_countries(self) -> List[str]:
        return sorted(self.continents_by_country)

    def country_name(self, country_code: str) -> str:
        return self.country_names.get(country_code, country_code)

    def validate_scope(self, scope: Scope) -> None:
        """Raise ``InvalidScope`` when the scope names something this reference does not know."""

        if isinstance(scope, GlobalScope):
            return
        if isinstance(scope, ContinentScope):
            if not self.is_known_continent(scope.name):
                raise InvalidScope(f"Unknown continent: {scope.name}")
            return
        if isinstance(scope, RegionScope):
            if not self.is_known_region(scope.region_key):
                raise InvalidScope(f"Unknown region: {scope.region_key}")
            return
        if isinstance(scope, (CountryScope, ProductScope)):
            if not self.is_known_country(scope.country_code):
                raise InvalidScope(f"Unknown country: {scope.country_code}")
            return
        raise TypeError(f"Unsupported scope: {scope!r}")

    def countries_for_scope(self, scope: Scope) -> frozenset[str]:
        """Every country whose resolution the scope could influence."""

        if isinstance(scope, GlobalScope):
            return frozenset(self.continents_by_country)
        if isinstance(scope, ContinentScope):
            return self.countries_in_continent(scope.name)
        if isinstance(scope, RegionScope):
            return self.countries_in_region(scope.region_key)
        if isinstance(scope, (CountryScope, ProductScope)):
            return frozenset({scope.country_code})
        raise TypeError(f"Unsupported scope: {scope!r}")


def _parse_reference(payload: Mapping[str, object]) -> CountryReference:
    continents: Dict[str, str] = {}
    names: Dict[str, str] = {}
    for entry in payload.get("countries") or []:
        if not isinstance(entry, dict):
            continue
        code = str(entry.get("code") or "").strip().upper()
        continent = str(entry.get("continent") or "").strip()
        if not code or not continent:
            continue
        continents[code] = continent
        names[code] = str(entry.get("name") or code)

    regions: Dict[str, RegionDefinition] = {}
    for entry in payload.get("regions") or []:
        if not isinstance(entry, dict):
            continue
        key = str(entry.get("region_key") or "").strip()
        if not key:
            continue
        codes = frozenset(
            str(code).strip().upper() for code in entry.get("country_codes") or [] if str(code).strip()
        )
        regions[key] = RegionDefinition(
            region_key=key,
            region_name=str(entry.get("region_name") or key),
            country_codes=codes,
            priority=int(entry.get("priority") or 100),
        )

    declared_continents = payload.get("continents") or []
    return CountryReference(
        continents_by_country=continents,
        regions=regions,
        continent_names=frozenset(str(name) for name in declared_continents) or frozenset(continents.values()),
        country_names=names,
    )


@lru_cache(maxsize=1)
def load_country_reference(path: Optional[str] = None) -> CountryReference:
    """Load the bundled country/region reference data (cached per path)."""

    source = Path(path) if path else COUNTRIES_PATH
    with source.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    reference = _parse_reference(payload)
    logger.info(
        "Country reference loaded from %s countries=%s regions=%s",
        source,
        len(reference.continents_by_country),
        len(reference.regions),
    )
    return reference


def fetch_country_reference(conn, continent_names: Optional[Sequence[str]] = None) -> CountryReference:
    """Build a reference from the ``country_settings`` and ``pricing_regions`` tables."""

    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT code, name, continent
            FROM country_settings
            WHERE continent IS NOT NULL
            """
        )
        country_rows = cur.fetchall()
        cur.execute(
            """
            SELECT region_key, region_name, priority, country_codes
            FROM pricing_regions
            WHERE is_active
            """
        )
        region_rows = cur.fetchall()

    payload = {
        "countries": [dict(row) for row in country_rows],
        "regions": [dict(row) for row in region_rows],
        "continents": list(continent_names or []),
    }
    return _parse_reference(payload)
