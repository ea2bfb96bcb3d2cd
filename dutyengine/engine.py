"""Facade wiring the store, cache, resolver and administrative helpers together."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, TextIO, Union

from .bulk_operations import BulkOperation, BulkOperationJob, BulkOperationProcessor, BulkPreview
from .cache import CacheStats, CacheStore, CalculationCache
from .config import EngineSettings
from .country_reference import CountryReference, load_country_reference
from .duty_calculator import DutyCalculator, DutyComputation, ServiceChargeSummary
from .override_store import (
    InMemoryOverrideStore,
    OverrideStore,
    PostgresOverrideStore,
    RateOverride,
    Service,
)
from .pricing_matrix import CountryPricingInfo, PricingMatrix, PricingMatrixBuilder
from .rate_csv import RateCsv, RateImport
from .rate_resolver import RateResolver, ResolvedRate
from .revenue_impact import (
    HistoricalVolumeSource,
    HttpVolumeSource,
    RevenueImpact,
    estimate_from_history,
    estimate_revenue_impact,
)
from .scopes import Scope, Tier
from .valuation import ValuationPolicy, ValuationResult, compute_dutiable_base, evaluate_valuation

logger = logging.getLogger(__name__)

DEFAULT_SERVICES = (
    Service("customs_duty", "customs_duty", "Customs Duty", "percentage"),
    Service("local_tax", "local_tax", "Local Sales Tax", "percentage"),
    Service("handling_fee", "handling_fee", "Handling Fee", "fixed"),
    Service("package_protection", "package_protection", "Package Protection", "percentage"),
)


class DutyEngine:
    def __init__(
        self,
        store: OverrideStore,
        reference: CountryReference,
        cache_store: Optional[CacheStore] = None,
        settings: Optional[EngineSettings] = None,
        volume_source: Optional[HistoricalVolumeSource] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.store = store
        self.reference = reference
        self.cache = CalculationCache(
            cache_store or CacheStore(self.settings.cache_size, self.settings.cache_ttl_seconds),
            reference,
        )
        self.resolver = RateResolver(store, reference, self.cache)
        self.calculator = DutyCalculator(self.resolver, store, self.cache)
        self.bulk = BulkOperationProcessor(
            self.resolver, reference, self.cache, max_workers=self.settings.bulk_max_workers
        )
        self.matrix = PricingMatrixBuilder(self.resolver, store, reference, self.cache)
        self.csv = RateCsv(self.resolver, store, reference, self.cache)
        self.volume_source = volume_source

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "DutyEngine":
        settings = settings or EngineSettings.from_env()
        reference = load_country_reference(settings.countries_path)
        store: OverrideStore
        if settings.database_dsn:
            store = PostgresOverrideStore(settings.database_dsn, timeout_seconds=settings.store_timeout_seconds)
            logger.info("Using Postgres override store")
            if settings.reference_from_store:
                fetched = store.load_country_reference(sorted(reference.continent_names))
                if fetched.continents_by_country:
                    reference = fetched
                else:
                    logger.warning("country_settings is empty; keeping bundled country reference")
        else:
            store = InMemoryOverrideStore(DEFAULT_SERVICES)
            logger.warning("No DATABASE_DSN configured; using in-memory override store")
        volume_source = HttpVolumeSource(settings.volume_endpoint) if settings.volume_endpoint else None
        return cls(store, reference, settings=settings, volume_source=volume_source)

    @property
    def total_country_count(self) -> int:
        return self.settings.total_country_count or len(self.reference.all_countries())

    def list_services(self) -> List[Service]:
        return self.store.list_services()

    def resolve_rate(
        self, service_id: str, country_code: str, classification_code: Optional[str] = None
    ) -> ResolvedRate:
        return self.resolver.resolve_rate(service_id, country_code, classification_code)

    def compute_dutiable_base(
        self, declared_value: object, minimum_valuation: Optional[object], policy: object
    ) -> Decimal:
        return compute_dutiable_base(declared_value, minimum_valuation, policy)

    def evaluate_valuation(
        self, declared_value: object, minimum_valuation: Optional[object], policy: object
    ) -> ValuationResult:
        return evaluate_valuation(declared_value, minimum_valuation, policy)

    def calculate_duty(
        self,
        service_id: str,
        country_code: str,
        declared_value: object,
        classification_code: Optional[str] = None,
        policy: object = ValuationPolicy.PRODUCT_VALUE,
    ) -> DutyComputation:
        return self.calculator.calculate_duty(
            service_id, country_code, declared_value, classification_code, policy
        )

    def calculate_service_charges(
        self, service_keys: Sequence[str], country_code: str, order_value: object
    ) -> ServiceChargeSummary:
        return self.calculator.calculate_service_charges(service_keys, country_code, order_value)

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
    ) -> RateOverride:
        return self.resolver.set_rate(
            service_id,
            scope,
            rate,
            min_amount=min_amount,
            max_amount=max_amount,
            reason=reason,
            tier_label=tier_label,
            source_label=source_label,
        )

    def deactivate_rate(self, service_id: str, scope: Scope, reason: Optional[str] = None) -> Optional[RateOverride]:
        return self.resolver.deactivate_rate(service_id, scope, reason)

    def override_history(self, service_id: str, scope: Scope) -> List[RateOverride]:
        return self.resolver.override_history(service_id, scope)

    def overrides_at_scope(self, scope: Scope) -> List[RateOverride]:
        return self.resolver.overrides_at_scope(scope)

    def apply_bulk_operation(
        self,
        service_id: str,
        operation: Union[BulkOperation, str],
        countries: Iterable[str],
        value: Optional[object] = None,
        reason: Optional[str] = None,
    ) -> BulkOperationJob:
        if not isinstance(operation, BulkOperation):
            operation = BulkOperation.parse(operation, value, reason)
        return self.bulk.apply_bulk_operation(service_id, operation, countries)

    def preview_bulk_operation(
        self,
        service_id: str,
        operation: Union[BulkOperation, str],
        countries: Iterable[str],
        value: Optional[object] = None,
    ) -> BulkPreview:
        if not isinstance(operation, BulkOperation):
            operation = BulkOperation.parse(operation, value)
        return self.bulk.preview_bulk_operation(service_id, operation, countries)

    def estimate_revenue_impact(
        self,
        current_rate: object,
        new_rate: object,
        affected_countries: Sequence[str],
        historical_volume: object,
        historical_avg_order_value: object,
        total_country_count: Optional[int] = None,
    ) -> RevenueImpact:
        return estimate_revenue_impact(
            current_rate,
            new_rate,
            affected_countries,
            historical_volume,
            historical_avg_order_value,
            total_country_count or self.total_country_count,
        )

    def estimate_from_history(
        self, current_rate: object, new_rate: object, affected_countries: Sequence[str]
    ) -> RevenueImpact:
        if self.volume_source is None:
            raise RuntimeError("No historical volume source configured (set DUTY_VOLUME_ENDPOINT).")
        return estimate_from_history(self.volume_source, current_rate, new_rate, affected_countries)

    def build_pricing_matrix(self, service_id: str, countries: Optional[Sequence[str]] = None) -> PricingMatrix:
        return self.matrix.build_pricing_matrix(service_id, countries)

    def country_pricing_info(self, country_code: str) -> CountryPricingInfo:
        return self.matrix.country_pricing_info(country_code)

    def export_rates_csv(
        self,
        stream: TextIO,
        service_ids: Optional[Sequence[str]] = None,
        tiers: Optional[Iterable[Tier]] = None,
    ) -> int:
        if not service_ids:
            service_ids = [service.service_id for service in self.store.list_services()]
        return self.csv.export_rates(stream, service_ids, tiers)

    def validate_rates_csv(self, stream: TextIO) -> RateImport:
        return self.csv.validate_import(stream)

    def import_rates_csv(self, stream: TextIO) -> RateImport:
        return self.csv.import_rates(stream)

    def invalidate_cache(self, service_id: Optional[str] = None, scope: Optional[Scope] = None) -> int:
        return self.resolver.invalidate_cache(service_id, scope)

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()
