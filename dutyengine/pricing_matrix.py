"""Per-country rate overview for one service, plus per-country service info."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .cache import CalculationCache
from .country_reference import CountryReference
from .errors import NoRateConfigured
from .override_store import OverrideStore
from .rate_resolver import RateResolver, quantize_rate
from .scopes import TIER_SPECIFICITY, Tier, normalize_country_code

logger = logging.getLogger(__name__)


@dataclass
class MatrixRow:
    country_code: str
    country_name: str
    rate: Optional[Decimal]
    tier: Optional[Tier]
    source: Optional[str]


@dataclass
class PricingMatrix:
    service_id: str
    pricing_type: str
    rows: List[MatrixRow] = field(default_factory=list)
    min_rate: Optional[Decimal] = None
    max_rate: Optional[Decimal] = None
    avg_rate: Optional[Decimal] = None
    tier_distribution: Dict[str, int] = field(default_factory=dict)
    coverage_percentage: Decimal = Decimal("0")

    def copy(self) -> "PricingMatrix":
        return replace(
            self,
            rows=[replace(row) for row in self.rows],
            tier_distribution=dict(self.tier_distribution),
        )


@dataclass
class CountryPricingInfo:
    country_code: str
    country_name: str
    continent: Optional[str]
    regions: List[str]
    services_with_country_overrides: List[str]


class PricingMatrixBuilder:
    def __init__(
        self,
        resolver: RateResolver,
        store: OverrideStore,
        reference: CountryReference,
        cache: CalculationCache,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.reference = reference
        self.cache = cache

    def build_pricing_matrix(
        self,
        service_id: str,
        countries: Optional[Sequence[str]] = None,
    ) -> PricingMatrix:
        service = self.resolver.get_service(service_id)
        codes = sorted({normalize_country_code(code) for code in countries}) if countries else self.reference.all_countries()

        cached = self.cache.get_matrix(service.service_id, codes)
        if cached is not None:
            return cached.copy()

        generation = self.cache.matrix_generation(service.service_id)
        build_start = time.perf_counter()
        matrix = PricingMatrix(service_id=service.service_id, pricing_type=service.pricing_type)
        for code in codes:
            try:
                resolved = self.resolver.resolve_rate(service.service_id, code)
            except NoRateConfigured:
                matrix.rows.append(
                    MatrixRow(code, self.reference.country_name(code), rate=None, tier=None, source=None)
                )
                continue
            matrix.rows.append(
                MatrixRow(
                    code,
                    self.reference.country_name(code),
                    rate=resolved.rate,
                    tier=resolved.tier,
                    source=resolved.source,
                )
            )

        rates = [row.rate for row in matrix.rows if row.rate is not None]
        if rates:
            matrix.min_rate = min(rates)
            matrix.max_rate = max(rates)
            matrix.avg_rate = quantize_rate(sum(rates, Decimal("0")) / len(rates))
        counts = Counter(row.tier for row in matrix.rows if row.tier is not None)
        matrix.tier_distribution = {
            tier.value: counts[tier]
            for tier in sorted(counts, key=TIER_SPECIFICITY.__getitem__, reverse=True)
        }
        if codes:
            matrix.coverage_percentage = (Decimal(len(rates)) * 100 / Decimal(len(codes))).quantize(Decimal("0.01"))

        self.cache.put_matrix(service.service_id, codes, matrix.copy(), generation=generation)
        logger.info(
            "Pricing matrix built service=%s countries=%s covered=%s in %.3fs",
            service.service_id,
            len(codes),
            len(rates),
            time.perf_counter() - build_start,
        )
        return matrix

    def country_pricing_info(self, country_code: str) -> CountryPricingInfo:
        country = normalize_country_code(country_code)
        services = [
            service.service_id
            for service in self.store.list_services()
            if country in self.store.countries_with_overrides(service.service_id)
        ]
        return CountryPricingInfo(
            country_code=country,
            country_name=self.reference.country_name(country),
            continent=self.reference.continent_of(country),
            regions=self.reference.regions_of(country),
            services_with_country_overrides=services,
        )
