"""Internal FastAPI surface for rate resolution and rate administration."""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=os.getenv("DUTY_LOG_LEVEL", "INFO").upper())
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .bulk_operations import BulkOperationJob, BulkPreview
from .config import EngineSettings
from .duty_calculator import DutyComputation
from .engine import DutyEngine
from .errors import (
    DutyEngineError,
    InvalidRate,
    InvalidScope,
    InvalidValuationInput,
    NoRateConfigured,
    StoreUnavailable,
    UnknownService,
)
from .override_store import RateOverride
from .rate_resolver import ResolvedRate
from .scopes import format_scope, parse_scope

logger = logging.getLogger(__name__)

_engine: Optional[DutyEngine] = None


def get_engine() -> DutyEngine:
    global _engine
    if _engine is None:
        _engine = DutyEngine.from_settings()
    return _engine


def configure_engine(engine: Optional[DutyEngine]) -> None:
    global _engine
    _engine = engine


def _to_http(exc: DutyEngineError) -> HTTPException:
    if isinstance(exc, (NoRateConfigured, UnknownService)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidScope, InvalidRate, InvalidValuationInput)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, StoreUnavailable):
        logger.error("Override store unavailable: %s", exc)
        return HTTPException(status_code=503, detail="Rate store temporarily unavailable.")
    logger.exception("Unhandled engine error")
    return HTTPException(status_code=500, detail=str(exc))


class ResolvedRatePayload(BaseModel):
    service_id: str
    country_code: str
    classification_code: Optional[str] = None
    rate: Decimal
    tier: str
    source: str
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    override_id: Optional[int] = None
    cached: bool = False

    @classmethod
    def from_dataclass(cls, resolved: ResolvedRate) -> "ResolvedRatePayload":
        return cls(
            service_id=resolved.service_id,
            country_code=resolved.country_code,
            classification_code=resolved.classification_code,
            rate=resolved.rate,
            tier=resolved.tier.value,
            source=resolved.source,
            min_amount=resolved.min_amount,
            max_amount=resolved.max_amount,
            override_id=resolved.override_id,
            cached=resolved.cached,
        )


class OverridePayload(BaseModel):
    override_id: int
    service_id: str
    scope: str
    tier: str
    rate: Decimal
    tier_label: str
    source_label: str
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    is_active: bool
    reason: Optional[str] = None

    @classmethod
    def from_dataclass(cls, override: RateOverride) -> "OverridePayload":
        return cls(
            override_id=override.override_id,
            service_id=override.service_id,
            scope=format_scope(override.scope),
            tier=override.tier.value,
            rate=override.rate,
            tier_label=override.tier_label,
            source_label=override.source_label,
            min_amount=override.min_amount,
            max_amount=override.max_amount,
            is_active=override.is_active,
            reason=override.reason,
        )


class SetRateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_id: str = Field(..., min_length=1, validation_alias=AliasChoices("service_id", "service_key"))
    scope: str = Field(..., description="global, continent:Asia, region:south_asia, country:IN or product:8517:IN")
    rate: Decimal
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    tier_label: Optional[str] = None
    source_label: Optional[str] = None


class DeactivateRequest(BaseModel):
    service_id: str = Field(..., min_length=1)
    scope: str
    reason: Optional[str] = None


class ValuationRequest(BaseModel):
    declared_value: Decimal
    minimum_valuation: Optional[Decimal] = None
    policy: str = "product_value"


class ValuationPayload(BaseModel):
    base_value: Decimal
    policy: str
    minimum_applied: bool
    notes: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class DutyRequest(BaseModel):
    service_id: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2)
    declared_value: Decimal
    classification_code: Optional[str] = None
    policy: str = "product_value"


class DutyPayload(BaseModel):
    service_id: str
    country_code: str
    classification_code: Optional[str] = None
    rate: Decimal
    tier: str
    source: str
    policy: str
    dutiable_base: Decimal
    amount: Decimal
    pricing_type: str
    notes: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    cached: bool = False

    @classmethod
    def from_dataclass(cls, computation: DutyComputation) -> "DutyPayload":
        return cls(
            service_id=computation.service_id,
            country_code=computation.country_code,
            classification_code=computation.classification_code,
            rate=computation.rate,
            tier=computation.tier.value,
            source=computation.source,
            policy=computation.policy.value,
            dutiable_base=computation.dutiable_base,
            amount=computation.amount,
            pricing_type=computation.pricing_type,
            notes=list(computation.notes),
            warnings=list(computation.warnings),
            cached=computation.cached,
        )


class ServiceChargesRequest(BaseModel):
    service_keys: List[str] = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2)
    order_value: Decimal


class ServiceChargeLine(BaseModel):
    service_id: str
    service_name: str
    rate: Decimal
    tier: str
    amount: Decimal
    cached: bool


class ServiceChargesPayload(BaseModel):
    country_code: str
    order_value: Decimal
    total: Decimal
    charges: List[ServiceChargeLine] = Field(default_factory=list)
    unpriced: List[str] = Field(default_factory=list)
    cache_hit_rate: float


class BulkRequest(BaseModel):
    service_id: str = Field(..., min_length=1)
    operation_type: str
    value: Decimal
    countries: List[str] = Field(..., min_length=1)
    reason: Optional[str] = None


class CountryResultPayload(BaseModel):
    country_code: str
    status: str
    previous_rate: Optional[Decimal] = None
    new_rate: Optional[Decimal] = None
    previous_tier: Optional[str] = None
    message: Optional[str] = None


class BulkJobPayload(BaseModel):
    job_id: str
    service_id: str
    operation_type: str
    value: Decimal
    updated: int
    skipped: int
    failed: int
    results: List[CountryResultPayload] = Field(default_factory=list)

    @classmethod
    def from_dataclass(cls, job: BulkOperationJob) -> "BulkJobPayload":
        return cls(
            job_id=job.job_id,
            service_id=job.service_id,
            operation_type=job.operation_type.value,
            value=job.value,
            updated=job.updated_count,
            skipped=job.skipped_count,
            failed=job.failed_count,
            results=[
                CountryResultPayload(
                    country_code=result.country_code,
                    status=result.status.value,
                    previous_rate=result.previous_rate,
                    new_rate=result.new_rate,
                    previous_tier=result.previous_tier.value if result.previous_tier else None,
                    message=result.message,
                )
                for result in job.results
            ],
        )


class PreviewRowPayload(BaseModel):
    country_code: str
    status: str
    current_rate: Optional[Decimal] = None
    new_rate: Optional[Decimal] = None
    change: Optional[Decimal] = None
    message: Optional[str] = None


class BulkPreviewPayload(BaseModel):
    service_id: str
    operation_type: str
    value: Decimal
    min_change: Optional[Decimal] = None
    max_change: Optional[Decimal] = None
    avg_change: Optional[Decimal] = None
    rows: List[PreviewRowPayload] = Field(default_factory=list)

    @classmethod
    def from_dataclass(cls, preview: BulkPreview) -> "BulkPreviewPayload":
        return cls(
            service_id=preview.service_id,
            operation_type=preview.operation_type.value,
            value=preview.value,
            min_change=preview.min_change,
            max_change=preview.max_change,
            avg_change=preview.avg_change,
            rows=[
                PreviewRowPayload(
                    country_code=row.country_code,
                    status=row.status.value,
                    current_rate=row.current_rate,
                    new_rate=row.new_rate,
                    change=row.change,
                    message=row.message,
                )
                for row in preview.rows
            ],
        )


class RevenueImpactRequest(BaseModel):
    current_rate: Decimal
    new_rate: Decimal
    affected_countries: List[str] = Field(default_factory=list)
    historical_volume: Optional[Decimal] = None
    historical_avg_order_value: Optional[Decimal] = None
    total_country_count: Optional[int] = Field(default=None, gt=0)


class RevenueImpactPayload(BaseModel):
    estimated_revenue_change: Decimal
    impact_percentage: Optional[Decimal] = None
    confidence_score: Decimal
    current_revenue: Decimal
    projected_revenue: Decimal
    affected_countries: List[str]
    notes: List[str] = Field(default_factory=list)


class MatrixRowPayload(BaseModel):
    country_code: str
    country_name: str
    rate: Optional[Decimal] = None
    tier: Optional[str] = None
    source: Optional[str] = None


class PricingMatrixPayload(BaseModel):
    service_id: str
    pricing_type: str
    min_rate: Optional[Decimal] = None
    max_rate: Optional[Decimal] = None
    avg_rate: Optional[Decimal] = None
    tier_distribution: Dict[str, int] = Field(default_factory=dict)
    coverage_percentage: Decimal
    rows: List[MatrixRowPayload] = Field(default_factory=list)


class CountryInfoPayload(BaseModel):
    country_code: str
    country_name: str
    continent: Optional[str] = None
    regions: List[str] = Field(default_factory=list)
    services_with_country_overrides: List[str] = Field(default_factory=list)


class InvalidateRequest(BaseModel):
    service_id: Optional[str] = None
    scope: Optional[str] = None


app = FastAPI(title="Duty Engine API", version="0.1.0")

allowed_origins: List[str] = []
runtime_origin = EngineSettings.from_env().frontend_origin
if runtime_origin:
    allowed_origins.append(runtime_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/services")
def list_services() -> List[Dict[str, Any]]:
    try:
        services = get_engine().list_services()
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return [
        {
            "service_id": service.service_id,
            "service_key": service.service_key,
            "service_name": service.service_name,
            "pricing_type": service.pricing_type,
            "is_active": service.is_active,
        }
        for service in services
    ]


@app.get("/rates/resolve", response_model=ResolvedRatePayload)
def resolve_rate(
    service_id: str = Query(..., min_length=1),
    country_code: str = Query(..., min_length=1),
    classification_code: Optional[str] = None,
) -> ResolvedRatePayload:
    request_start = time.perf_counter()
    try:
        resolved = get_engine().resolve_rate(service_id, country_code, classification_code)
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    logger.info(
        "resolve_rate service=%s country=%s tier=%s cached=%s in %.3fs",
        resolved.service_id,
        resolved.country_code,
        resolved.tier.value,
        resolved.cached,
        time.perf_counter() - request_start,
    )
    return ResolvedRatePayload.from_dataclass(resolved)


@app.post("/rates", response_model=OverridePayload)
def set_rate(payload: SetRateRequest) -> OverridePayload:
    try:
        override = get_engine().set_rate(
            payload.service_id,
            parse_scope(payload.scope),
            payload.rate,
            min_amount=payload.min_amount,
            max_amount=payload.max_amount,
            reason=payload.reason,
            tier_label=payload.tier_label,
            source_label=payload.source_label,
        )
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return OverridePayload.from_dataclass(override)


@app.post("/rates/deactivate", response_model=OverridePayload)
def deactivate_rate(payload: DeactivateRequest) -> OverridePayload:
    try:
        retired = get_engine().deactivate_rate(payload.service_id, parse_scope(payload.scope), payload.reason)
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    if retired is None:
        raise HTTPException(status_code=404, detail=f"No active override at {payload.scope}.")
    return OverridePayload.from_dataclass(retired)


@app.get("/rates/history", response_model=List[OverridePayload])
def override_history(service_id: str, scope: str) -> List[OverridePayload]:
    try:
        rows = get_engine().override_history(service_id, parse_scope(scope))
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return [OverridePayload.from_dataclass(row) for row in rows]


@app.get("/rates/scope", response_model=List[OverridePayload])
def overrides_at_scope(scope: str) -> List[OverridePayload]:
    try:
        rows = get_engine().overrides_at_scope(parse_scope(scope))
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return [OverridePayload.from_dataclass(row) for row in rows]


@app.post("/valuation", response_model=ValuationPayload)
def compute_valuation(payload: ValuationRequest) -> ValuationPayload:
    try:
        result = get_engine().evaluate_valuation(
            payload.declared_value, payload.minimum_valuation, payload.policy
        )
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return ValuationPayload(
        base_value=result.base_value,
        policy=result.policy.value,
        minimum_applied=result.minimum_applied,
        notes=list(result.notes),
        warnings=list(result.warnings),
    )


@app.post("/duty", response_model=DutyPayload)
def calculate_duty(payload: DutyRequest) -> DutyPayload:
    try:
        computation = get_engine().calculate_duty(
            payload.service_id,
            payload.country_code,
            payload.declared_value,
            payload.classification_code,
            payload.policy,
        )
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return DutyPayload.from_dataclass(computation)


@app.post("/service-charges", response_model=ServiceChargesPayload)
def service_charges(payload: ServiceChargesRequest) -> ServiceChargesPayload:
    try:
        summary = get_engine().calculate_service_charges(
            payload.service_keys, payload.country_code, payload.order_value
        )
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return ServiceChargesPayload(
        country_code=summary.country_code,
        order_value=summary.order_value,
        total=summary.total,
        charges=[
            ServiceChargeLine(
                service_id=charge.service_id,
                service_name=charge.service_name,
                rate=charge.rate,
                tier=charge.tier.value,
                amount=charge.amount,
                cached=charge.cached,
            )
            for charge in summary.charges
        ],
        unpriced=list(summary.unpriced),
        cache_hit_rate=summary.hit_rate,
    )


@app.post("/bulk", response_model=BulkJobPayload)
def apply_bulk_operation(payload: BulkRequest) -> BulkJobPayload:
    try:
        job = get_engine().apply_bulk_operation(
            payload.service_id,
            payload.operation_type,
            payload.countries,
            value=payload.value,
            reason=payload.reason,
        )
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return BulkJobPayload.from_dataclass(job)


@app.post("/bulk/preview", response_model=BulkPreviewPayload)
def preview_bulk_operation(payload: BulkRequest) -> BulkPreviewPayload:
    try:
        preview = get_engine().preview_bulk_operation(
            payload.service_id,
            payload.operation_type,
            payload.countries,
            value=payload.value,
        )
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return BulkPreviewPayload.from_dataclass(preview)


@app.post("/revenue-impact", response_model=RevenueImpactPayload)
def revenue_impact(payload: RevenueImpactRequest) -> RevenueImpactPayload:
    engine = get_engine()
    try:
        if payload.historical_volume is None or payload.historical_avg_order_value is None:
            impact = engine.estimate_from_history(
                payload.current_rate, payload.new_rate, payload.affected_countries
            )
        else:
            impact = engine.estimate_revenue_impact(
                payload.current_rate,
                payload.new_rate,
                payload.affected_countries,
                payload.historical_volume,
                payload.historical_avg_order_value,
                payload.total_country_count,
            )
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except requests.RequestException as exc:
        logger.exception("Historical volume source failed.")
        raise HTTPException(status_code=502, detail="Historical volume source unavailable.") from exc
    return RevenueImpactPayload(
        estimated_revenue_change=impact.estimated_revenue_change,
        impact_percentage=impact.impact_percentage,
        confidence_score=impact.confidence_score,
        current_revenue=impact.current_revenue,
        projected_revenue=impact.projected_revenue,
        affected_countries=list(impact.affected_countries),
        notes=list(impact.notes),
    )


@app.get("/matrix/{service_id}", response_model=PricingMatrixPayload)
def pricing_matrix(service_id: str, countries: Optional[str] = None) -> PricingMatrixPayload:
    codes = [code.strip() for code in countries.split(",") if code.strip()] if countries else None
    try:
        matrix = get_engine().build_pricing_matrix(service_id, codes)
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return PricingMatrixPayload(
        service_id=matrix.service_id,
        pricing_type=matrix.pricing_type,
        min_rate=matrix.min_rate,
        max_rate=matrix.max_rate,
        avg_rate=matrix.avg_rate,
        tier_distribution=dict(matrix.tier_distribution),
        coverage_percentage=matrix.coverage_percentage,
        rows=[
            MatrixRowPayload(
                country_code=row.country_code,
                country_name=row.country_name,
                rate=row.rate,
                tier=row.tier.value if row.tier else None,
                source=row.source,
            )
            for row in matrix.rows
        ],
    )


@app.get("/countries/{country_code}", response_model=CountryInfoPayload)
def country_info(country_code: str) -> CountryInfoPayload:
    try:
        info = get_engine().country_pricing_info(country_code)
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    return CountryInfoPayload(
        country_code=info.country_code,
        country_name=info.country_name,
        continent=info.continent,
        regions=list(info.regions),
        services_with_country_overrides=list(info.services_with_country_overrides),
    )


@app.post("/cache/invalidate")
def invalidate_cache(payload: InvalidateRequest) -> Dict[str, int]:
    try:
        scope = parse_scope(payload.scope) if payload.scope else None
        dropped = get_engine().invalidate_cache(payload.service_id, scope)
    except DutyEngineError as exc:
        raise _to_http(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"invalidated": dropped}


@app.get("/cache/stats")
def cache_stats() -> Dict[str, Any]:
    stats = get_engine().cache_stats()
    return {
        "hits": stats.hits,
        "misses": stats.misses,
        "hit_rate": stats.hit_rate,
        "invalidations": stats.invalidations,
        "errors": stats.errors,
    }
