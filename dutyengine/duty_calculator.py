"""Apply resolved rates to a dutiable base and price add-on services."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from .cache import CalculationCache
from .errors import InvalidValuationInput, NoRateConfigured
from .override_store import OverrideStore
from .rate_resolver import RateResolver
from .scopes import Tier, normalize_classification_code, normalize_country_code
from .valuation import ValuationPolicy, evaluate_valuation, parse_policy

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class DutyComputation:
    service_id: str
    country_code: str
    classification_code: Optional[str]
    rate: Decimal
    tier: Tier
    source: str
    policy: ValuationPolicy
    dutiable_base: Decimal
    amount: Decimal
    pricing_type: str
    notes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cached: bool = False


@dataclass
class ServiceCharge:
    service_id: str
    service_name: str
    rate: Decimal
    tier: Tier
    source: str
    amount: Decimal
    cached: bool = False


@dataclass
class ServiceChargeSummary:
    country_code: str
    order_value: Decimal
    charges: List[ServiceCharge] = field(default_factory=list)
    unpriced: List[str] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def total(self) -> Decimal:
        return sum((charge.amount for charge in self.charges), Decimal("0")).quantize(CENT)

    @property
    def hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0


def _clamp(amount: Decimal, lower: Optional[Decimal], upper: Optional[Decimal], notes: List[str]) -> Decimal:
    if lower is not None and amount < lower:
        notes.append(f"Raised to minimum charge {lower}.")
        return lower
    if upper is not None and amount > upper:
        notes.append(f"Capped at maximum charge {upper}.")
        return upper
    return amount


class DutyCalculator:
    def __init__(self, resolver: RateResolver, store: OverrideStore, cache: CalculationCache) -> None:
        self.resolver = resolver
        self.store = store
        self.cache = cache

    def calculate_duty(
        self,
        service_id: str,
        country_code: str,
        declared_value: object,
        classification_code: Optional[str] = None,
        policy: object = ValuationPolicy.PRODUCT_VALUE,
    ) -> DutyComputation:
        """Rate x dutiable base for percentage services, the flat rate for fixed ones.

        The result is clamped to the winning override's min/max amounts and
        rounded to cents.
        """

        service = self.resolver.get_service(service_id)
        country = normalize_country_code(country_code)
        classification = normalize_classification_code(classification_code) if classification_code else None
        resolved_policy = parse_policy(policy)
        if declared_value is None:
            raise InvalidValuationInput("declared_value is required")

        cached = self.cache.get_duty(
            service.service_id, country, classification, resolved_policy.value, declared_value
        )
        if cached is not None:
            return replace(cached, cached=True, notes=list(cached.notes), warnings=list(cached.warnings))

        generation = self.cache.generation(service.service_id, country, classification)
        calc_start = time.perf_counter()
        resolved = self.resolver.resolve_rate(service.service_id, country, classification)
        minimum = self.store.minimum_valuation(classification, country) if classification else None
        valuation = evaluate_valuation(declared_value, minimum, resolved_policy)

        notes = list(valuation.notes)
        if service.pricing_type == "fixed":
            raw_amount = resolved.rate
            notes.append(f"Fixed charge of {resolved.rate} from {resolved.tier.value} tier.")
        else:
            raw_amount = valuation.base_value * resolved.rate
            notes.append(
                f"{valuation.base_value} x {resolved.rate} from {resolved.tier.value} tier."
            )
        amount = _clamp(raw_amount, resolved.min_amount, resolved.max_amount, notes)
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)

        computation = DutyComputation(
            service_id=service.service_id,
            country_code=country,
            classification_code=classification,
            rate=resolved.rate,
            tier=resolved.tier,
            source=resolved.source,
            policy=resolved_policy,
            dutiable_base=valuation.base_value,
            amount=amount,
            pricing_type=service.pricing_type,
            notes=notes,
            warnings=list(valuation.warnings),
        )
        self.cache.put_duty(
            service.service_id,
            country,
            classification,
            resolved_policy.value,
            declared_value,
            replace(computation, notes=list(notes), warnings=list(computation.warnings)),
            generation=generation,
        )
        logger.info(
            "Duty computed service=%s country=%s amount=%s in %.3fs",
            service.service_id,
            country,
            amount,
            time.perf_counter() - calc_start,
        )
        return computation

    def calculate_service_charges(
        self,
        service_keys: Sequence[str],
        country_code: str,
        order_value: object,
    ) -> ServiceChargeSummary:
        country = normalize_country_code(country_code)
        base = evaluate_valuation(order_value, None, ValuationPolicy.PRODUCT_VALUE).base_value
        summary = ServiceChargeSummary(country_code=country, order_value=base)
        for service_key in service_keys:
            service = self.resolver.get_service(service_key)
            try:
                duty = self.calculate_duty(service.service_id, country, order_value)
            except NoRateConfigured:
                summary.unpriced.append(service.service_id)
                summary.cache_misses += 1
                continue
            if duty.cached:
                summary.cache_hits += 1
            else:
                summary.cache_misses += 1
            summary.charges.append(
                ServiceCharge(
                    service_id=service.service_id,
                    service_name=service.service_name,
                    rate=duty.rate,
                    tier=duty.tier,
                    source=duty.source,
                    amount=duty.amount,
                    cached=duty.cached,
                )
            )
        logger.info(
            "Service charges country=%s services=%s total=%s hit_rate=%.2f",
            country,
            len(summary.charges),
            summary.total,
            summary.hit_rate,
        )
        return summary
