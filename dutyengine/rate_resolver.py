"""Walk the override precedence chain for a service and destination."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from .cache import CalculationCache
from .country_reference import CountryReference
from .errors import InvalidRate, NoRateConfigured, UnknownService
from .override_store import OverrideStore, RateOverride, Service
from .scopes import (
    CountryScope,
    GlobalScope,
    Scope,
    Tier,
    format_scope,
    normalize_classification_code,
    normalize_country_code,
    scope_to_row,
)

logger = logging.getLogger(__name__)

RATE_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ResolvedRate:
    service_id: str
    country_code: str
    classification_code: Optional[str]
    rate: Decimal
    tier: Tier
    source: str
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    override_id: Optional[int] = None
    cached: bool = False


def quantize_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def coerce_amount(value: Optional[object], label: str) -> Optional[Decimal]:
    """Parse a rate or bound into a finite, non-negative ``Decimal``."""

    if value is None:
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRate(f"{label} is not numeric: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidRate(f"{label} must be finite: {value!r}")
    if amount < 0:
        raise InvalidRate(f"{label} must be >= 0, got {amount}")
    return amount


def _candidate_order(
    country_code: str,
    classification_code: Optional[str],
    regions: List[str],
    continent: Optional[str],
) -> List[Tuple[str, str]]:
    order: List[Tuple[str, str]] = []
    if classification_code:
        order.append((Tier.PRODUCT.value, f"{classification_code}:{country_code}"))
    order.append((Tier.COUNTRY.value, country_code))
    for region_key in regions:
        order.append((Tier.REGION.value, region_key))
    if continent:
        order.append((Tier.CONTINENT.value, continent))
    order.append((Tier.GLOBAL.value, ""))
    return order


class RateResolver:
    """Resolves rates through the cache and writes overrides through the store."""

    def __init__(
        self,
        store: OverrideStore,
        reference: CountryReference,
        cache: CalculationCache,
    ) -> None:
        self.store = store
        self.reference = reference
        self.cache = cache
        self._services: Dict[str, Service] = {}
        self._services_lock = threading.Lock()

    def get_service(self, service_id: str) -> Service:
        """Look up a service by id or key, raising ``UnknownService`` when absent."""

        key = str(service_id or "").strip()
        with self._services_lock:
            service = self._services.get(key)
        if service is not None:
            return service
        service = self.store.get_service(key) if key else None
        if service is None:
            raise UnknownService(key)
        with self._services_lock:
            self._services[service.service_id] = service
            self._services[service.service_key] = service
        return service

    def resolve_rate(
        self,
        service_id: str,
        country_code: str,
        classification_code: Optional[str] = None,
    ) -> ResolvedRate:
        service = self.get_service(service_id)
        country = normalize_country_code(country_code)
        classification = normalize_classification_code(classification_code) if classification_code else None

        cached = self.cache.get_rate(service.service_id, country, classification)
        if cached is not None:
            return replace(cached, cached=True)

        generation = self.cache.generation(service.service_id, country, classification)
        resolved = self._resolve_from_store(service.service_id, country, classification)
        self.cache.put_rate(service.service_id, country, classification, resolved, generation=generation)
        return resolved

    def _resolve_from_store(
        self,
        service_id: str,
        country_code: str,
        classification_code: Optional[str],
    ) -> ResolvedRate:
        lookup_start = time.perf_counter()
        continent = self.reference.continent_of(country_code)
        regions = self.reference.regions_of(country_code)
        candidates = self.store.active_overrides_for_country(
            service_id,
            country_code,
            continent=continent,
            regions=regions,
            classification_code=classification_code,
        )
        by_scope: Dict[Tuple[str, str], RateOverride] = {
            scope_to_row(override.scope): override for override in candidates
        }
        for row_key in _candidate_order(country_code, classification_code, regions, continent):
            override = by_scope.get(row_key)
            if override is None:
                continue
            logger.debug(
                "Resolved service=%s country=%s tier=%s rate=%s in %.3fs",
                service_id,
                country_code,
                override.tier.value,
                override.rate,
                time.perf_counter() - lookup_start,
            )
            return ResolvedRate(
                service_id=service_id,
                country_code=country_code,
                classification_code=classification_code,
                rate=override.rate,
                tier=override.tier,
                source=override.source_label,
                min_amount=override.min_amount,
                max_amount=override.max_amount,
                override_id=override.override_id,
            )
        raise NoRateConfigured(service_id, country_code, classification_code)

    def set_rate(
        self,
        service_id: str,
        scope: Scope,
        rate: object,
        min_amount: Optional[object] = None,
        max_amount: Optional[object] = None,
        reason: Optional[str] = None,
        tier_label: Optional[str] = None,
        source_label: Optional[str] = None,
        *,
        invalidate: bool = True,
    ) -> RateOverride:
        """Supersede the active override at ``scope`` and cascade cache invalidation.

        ``invalidate=False`` lets batch callers defer invalidation to a single
        pass once every write has landed.
        """

        service = self.get_service(service_id)
        new_rate = coerce_amount(rate, "rate")
        if new_rate is None:
            raise InvalidRate("rate is required")
        lower = coerce_amount(min_amount, "min_amount")
        upper = coerce_amount(max_amount, "max_amount")
        if lower is not None and upper is not None and lower > upper:
            raise InvalidRate(f"min_amount {lower} exceeds max_amount {upper}")
        self.reference.validate_scope(scope)

        write_start = time.perf_counter()
        override, previous = self.store.supersede(
            service.service_id,
            scope,
            quantize_rate(new_rate),
            min_amount=lower,
            max_amount=upper,
            reason=reason,
            tier_label=tier_label,
            source_label=source_label,
        )
        logger.info(
            "Rate set service=%s scope=%s rate=%s previous=%s in %.3fs",
            service.service_id,
            format_scope(scope),
            override.rate,
            previous.rate if previous else None,
            time.perf_counter() - write_start,
        )
        if invalidate:
            self.cache.invalidate_scope(service.service_id, scope)
        return override

    def deactivate_rate(self, service_id: str, scope: Scope, reason: Optional[str] = None) -> Optional[RateOverride]:
        service = self.get_service(service_id)
        self.reference.validate_scope(scope)
        retired = self.store.deactivate(service.service_id, scope, reason=reason)
        if retired is None:
            logger.info("No active override to deactivate service=%s scope=%s", service.service_id, format_scope(scope))
            return None
        logger.info("Rate deactivated service=%s scope=%s", service.service_id, format_scope(scope))
        self.cache.invalidate_scope(service.service_id, scope)
        return retired

    def override_history(self, service_id: str, scope: Scope) -> List[RateOverride]:
        service = self.get_service(service_id)
        return self.store.history(service.service_id, scope)

    def overrides_at_scope(self, scope: Scope) -> List[RateOverride]:
        """Active overrides of every service at exactly ``scope``."""

        self.reference.validate_scope(scope)
        return self.store.active_overrides_for_scope(scope)

    def invalidate_cache(self, service_id: Optional[str] = None, scope: Optional[Scope] = None) -> int:
        """Flush everything, one service, or whatever a write at ``scope`` would drop."""

        if service_id is None:
            if scope is not None:
                raise ValueError("invalidate_cache needs a service_id when a scope is given")
            return self.cache.flush()
        service = self.get_service(service_id)
        if scope is None or isinstance(scope, GlobalScope):
            return self.cache.invalidate_service(service.service_id)
        return self.cache.invalidate_scope(service.service_id, scope)

    def current_country_override(self, service_id: str, country_code: str) -> Optional[RateOverride]:
        service = self.get_service(service_id)
        return self.store.active_override(service.service_id, CountryScope(country_code))
