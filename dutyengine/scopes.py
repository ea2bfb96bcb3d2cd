"""Scope variants for rate overrides and their precedence tiers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Union

from .errors import InvalidScope

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


class Tier(str, Enum):
    PRODUCT = "product"
    COUNTRY = "country"
    REGION = "region"
    CONTINENT = "continent"
    GLOBAL = "global"


# Higher value wins.
TIER_SPECIFICITY = {
    Tier.GLOBAL: 0,
    Tier.CONTINENT: 1,
    Tier.REGION: 2,
    Tier.COUNTRY: 3,
    Tier.PRODUCT: 4,
}


def normalize_country_code(value: object) -> str:
    """Return an upper-case ISO alpha-2 code or raise ``InvalidScope``."""

    cleaned = str(value or "").strip().upper()
    if not _COUNTRY_RE.match(cleaned):
        raise InvalidScope(f"Country code must be two letters: {value!r}")
    return cleaned


def normalize_classification_code(value: object) -> str:
    cleaned = "".join(ch for ch in str(value or "") if ch.isalnum()).upper()
    if not cleaned:
        raise InvalidScope(f"Classification code is empty: {value!r}")
    return cleaned


@dataclass(frozen=True)
class GlobalScope:
    @property
    def tier(self) -> Tier:
        return Tier.GLOBAL

    @property
    def key(self) -> str:
        return ""


@dataclass(frozen=True)
class ContinentScope:
    name: str

    @property
    def tier(self) -> Tier:
        return Tier.CONTINENT

    @property
    def key(self) -> str:
        return self.name


@dataclass(frozen=True)
class RegionScope:
    region_key: str

    @property
    def tier(self) -> Tier:
        return Tier.REGION

    @property
    def key(self) -> str:
        return self.region_key


@dataclass(frozen=True)
class CountryScope:
    country_code: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "country_code", normalize_country_code(self.country_code))

    @property
    def tier(self) -> Tier:
        return Tier.COUNTRY

    @property
    def key(self) -> str:
        return self.country_code


@dataclass(frozen=True)
class ProductScope:
    classification_code: str
    country_code: str

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "classification_code", normalize_classification_code(self.classification_code)
        )
        object.__setattr__(self, "country_code", normalize_country_code(self.country_code))

    @property
    def tier(self) -> Tier:
        return Tier.PRODUCT

    @property
    def key(self) -> str:
        return f"{self.classification_code}:{self.country_code}"


Scope = Union[GlobalScope, ContinentScope, RegionScope, CountryScope, ProductScope]


def scope_to_row(scope: Scope) -> Tuple[str, str]:
    """Encode a scope as the ``(scope_type, scope_key)`` storage pair."""

    if isinstance(scope, (GlobalScope, ContinentScope, RegionScope, CountryScope, ProductScope)):
        return scope.tier.value, scope.key
    raise TypeError(f"Unsupported scope: {scope!r}")


def scope_from_row(scope_type: str, scope_key: str) -> Scope:
    kind = str(scope_type or "").strip().lower()
    key = str(scope_key or "").strip()
    if kind == Tier.GLOBAL.value:
        return GlobalScope()
    if kind == Tier.CONTINENT.value:
        if not key:
            raise InvalidScope("Continent scope requires a continent name.")
        return ContinentScope(key)
    if kind == Tier.REGION.value:
        if not key:
            raise InvalidScope("Region scope requires a region key.")
        return RegionScope(key)
    if kind == Tier.COUNTRY.value:
        return CountryScope(key)
    if kind == Tier.PRODUCT.value:
        classification, sep, country = key.rpartition(":")
        if not sep:
            raise InvalidScope(f"Product scope key must be 'classification:country': {key!r}")
        return ProductScope(classification, country)
    raise InvalidScope(f"Unknown scope type: {scope_type!r}")


def parse_scope(text: str) -> Scope:
    """Parse ``global``, ``continent:Asia``, ``region:south_asia``, ``country:IN``
    or ``product:8517:IN``."""

    raw = str(text or "").strip()
    kind, _, rest = raw.partition(":")
    return scope_from_row(kind, rest)


def format_scope(scope: Scope) -> str:
    scope_type, scope_key = scope_to_row(scope)
    if not scope_key:
        return scope_type
    return f"{scope_type}:{scope_key}"
