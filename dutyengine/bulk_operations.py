"""Bulk rate edits across many countries with per-country failure isolation."""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .cache import CalculationCache
from .country_reference import CountryReference
from .errors import DutyEngineError, InvalidRate, InvalidScope, NoRateConfigured
from .rate_resolver import RateResolver, coerce_amount, quantize_rate
from .scopes import CountryScope, Tier, normalize_country_code

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
HUNDRED = Decimal("100")


class OperationType(str, Enum):
    SET_RATE = "set_rate"
    INCREASE_PERCENT = "increase_percent"
    DECREASE_PERCENT = "decrease_percent"
    INCREASE_AMOUNT = "increase_amount"
    DECREASE_AMOUNT = "decrease_amount"
    SET_MINIMUM = "set_minimum"
    SET_MAXIMUM = "set_maximum"


class CountryStatus(str, Enum):
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class BulkOperation:
    operation_type: OperationType
    value: Decimal
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.value < 0:
            raise InvalidRate(f"Bulk operation value must be >= 0, got {self.value}")

    @classmethod
    def parse(cls, operation_type: object, value: object, reason: Optional[str] = None) -> "BulkOperation":
        try:
            kind = OperationType(str(operation_type or "").strip().lower())
        except ValueError as exc:
            raise InvalidRate(f"Unknown bulk operation: {operation_type!r}") from exc
        amount = coerce_amount(value, "value")
        if amount is None:
            raise InvalidRate("Bulk operation value is required")
        return cls(operation_type=kind, value=amount, reason=reason)

    @property
    def needs_current_rate(self) -> bool:
        return self.operation_type is not OperationType.SET_RATE


@dataclass
class CountryResult:
    country_code: str
    status: CountryStatus
    previous_rate: Optional[Decimal] = None
    new_rate: Optional[Decimal] = None
    previous_tier: Optional[Tier] = None
    message: Optional[str] = None


@dataclass
class BulkOperationJob:
    job_id: str
    service_id: str
    operation_type: OperationType
    value: Decimal
    target_countries: List[str]
    results: List[CountryResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def _count(self, status: CountryStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def updated_count(self) -> int:
        return self._count(CountryStatus.UPDATED)

    @property
    def skipped_count(self) -> int:
        return self._count(CountryStatus.SKIPPED)

    @property
    def failed_count(self) -> int:
        return self._count(CountryStatus.FAILED)

    def result_for(self, country_code: str) -> Optional[CountryResult]:
        return next((r for r in self.results if r.country_code == country_code), None)


@dataclass
class PreviewRow:
    country_code: str
    status: CountryStatus
    current_rate: Optional[Decimal] = None
    new_rate: Optional[Decimal] = None
    current_tier: Optional[Tier] = None
    message: Optional[str] = None

    @property
    def change(self) -> Optional[Decimal]:
        if self.current_rate is None or self.new_rate is None:
            return None
        return self.new_rate - self.current_rate


@dataclass
class BulkPreview:
    service_id: str
    operation_type: OperationType
    value: Decimal
    rows: List[PreviewRow] = field(default_factory=list)

    def _changes(self) -> List[Decimal]:
        return [row.change for row in self.rows if row.change is not None]

    @property
    def min_change(self) -> Optional[Decimal]:
        changes = self._changes()
        return min(changes) if changes else None

    @property
    def max_change(self) -> Optional[Decimal]:
        changes = self._changes()
        return max(changes) if changes else None

    @property
    def avg_change(self) -> Optional[Decimal]:
        changes = self._changes()
        if not changes:
            return None
        return quantize_rate(sum(changes, Decimal("0")) / len(changes))


def compute_new_rate(operation: BulkOperation, current_rate: Optional[Decimal]) -> Decimal:
    """Apply ``operation`` to the current resolved rate.

    Percent operations scale the current rate, so consecutive increase and
    decrease by the same percent do not cancel out. Decreases clamp at zero.
    """

    kind = operation.operation_type
    if kind is OperationType.SET_RATE:
        return quantize_rate(operation.value)
    if current_rate is None:
        raise ValueError(f"{kind.value} needs a current rate")
    if kind is OperationType.INCREASE_PERCENT:
        new_rate = current_rate * (1 + operation.value / HUNDRED)
    elif kind is OperationType.DECREASE_PERCENT:
        new_rate = current_rate * (1 - operation.value / HUNDRED)
    elif kind is OperationType.INCREASE_AMOUNT:
        new_rate = current_rate + operation.value
    elif kind is OperationType.DECREASE_AMOUNT:
        new_rate = current_rate - operation.value
    else:
        new_rate = current_rate
    return quantize_rate(max(new_rate, Decimal("0")))


def _dedupe(countries: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for code in countries:
        seen.setdefault(str(code or "").strip().upper(), None)
    return list(seen)


class BulkOperationProcessor:
    def __init__(
        self,
        resolver: RateResolver,
        reference: CountryReference,
        cache: CalculationCache,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.resolver = resolver
        self.reference = reference
        self.cache = cache
        self.max_workers = max(1, int(max_workers))

    def _plan(self, service_id: str, operation: BulkOperation, country_code: str) -> PreviewRow:
        try:
            country = normalize_country_code(country_code)
        except InvalidScope as exc:
            return PreviewRow(country_code=country_code, status=CountryStatus.FAILED, message=str(exc))
        if not self.reference.is_known_country(country):
            return PreviewRow(country_code=country, status=CountryStatus.FAILED, message=f"Unknown country: {country}")
        try:
            current = self.resolver.resolve_rate(service_id, country)
        except NoRateConfigured:
            current = None
        if current is None and operation.needs_current_rate:
            return PreviewRow(
                country_code=country,
                status=CountryStatus.SKIPPED,
                message="No current rate to adjust",
            )
        new_rate = compute_new_rate(operation, current.rate if current else None)
        return PreviewRow(
            country_code=country,
            status=CountryStatus.UPDATED,
            current_rate=current.rate if current else None,
            new_rate=new_rate,
            current_tier=current.tier if current else None,
        )

    def _apply_one(self, service_id: str, operation: BulkOperation, country_code: str) -> CountryResult:
        try:
            plan = self._plan(service_id, operation, country_code)
        except DutyEngineError as exc:
            logger.warning("Bulk lookup failed service=%s country=%s: %s", service_id, country_code, exc)
            return CountryResult(country_code=country_code, status=CountryStatus.FAILED, message=str(exc))
        except Exception as exc:
            logger.exception("Unexpected bulk lookup failure service=%s country=%s", service_id, country_code)
            return CountryResult(
                country_code=country_code,
                status=CountryStatus.FAILED,
                message=f"Unexpected error: {exc}",
            )
        if plan.status is not CountryStatus.UPDATED:
            return CountryResult(
                country_code=plan.country_code,
                status=plan.status,
                previous_rate=plan.current_rate,
                previous_tier=plan.current_tier,
                message=plan.message,
            )

        country = plan.country_code
        try:
            existing = self.resolver.current_country_override(service_id, country)
            min_amount = existing.min_amount if existing else None
            max_amount = existing.max_amount if existing else None
            if operation.operation_type is OperationType.SET_MINIMUM:
                min_amount = operation.value
            elif operation.operation_type is OperationType.SET_MAXIMUM:
                max_amount = operation.value
            override = self.resolver.set_rate(
                service_id,
                CountryScope(country),
                plan.new_rate,
                min_amount=min_amount,
                max_amount=max_amount,
                reason=operation.reason or f"bulk {operation.operation_type.value} {operation.value}",
                invalidate=False,
            )
        except DutyEngineError as exc:
            logger.warning("Bulk write failed service=%s country=%s: %s", service_id, country, exc)
            return CountryResult(
                country_code=country,
                status=CountryStatus.FAILED,
                previous_rate=plan.current_rate,
                previous_tier=plan.current_tier,
                message=str(exc),
            )
        except Exception as exc:
            logger.exception("Unexpected bulk write failure service=%s country=%s", service_id, country)
            return CountryResult(
                country_code=country,
                status=CountryStatus.FAILED,
                previous_rate=plan.current_rate,
                previous_tier=plan.current_tier,
                message=f"Unexpected error: {exc}",
            )
        return CountryResult(
            country_code=country,
            status=CountryStatus.UPDATED,
            previous_rate=plan.current_rate,
            new_rate=override.rate,
            previous_tier=plan.current_tier,
        )

    def apply_bulk_operation(
        self,
        service_id: str,
        operation: BulkOperation,
        countries: Iterable[str],
    ) -> BulkOperationJob:
        """Apply ``operation`` to every country independently.

        There is no rollback: each country ends up ``updated``, ``skipped`` or
        ``failed`` on its own. Cache invalidation runs once after all writes,
        and still runs if the job is interrupted; in that case every target is
        invalidated because some writes may have landed without a result.
        """

        service = self.resolver.get_service(service_id)
        targets = _dedupe(countries)
        job = BulkOperationJob(
            job_id=uuid.uuid4().hex,
            service_id=service.service_id,
            operation_type=operation.operation_type,
            value=operation.value,
            target_countries=targets,
            started_at=datetime.now(timezone.utc),
        )
        job_start = time.perf_counter()
        results: List[CountryResult] = []
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                for result in executor.map(
                    lambda code: self._apply_one(service.service_id, operation, code), targets
                ):
                    results.append(result)
        finally:
            job.results = results
            job.completed_at = datetime.now(timezone.utc)
            if len(results) == len(targets):
                touched = [r.country_code for r in results if r.status is CountryStatus.UPDATED]
            else:
                logger.warning(
                    "Bulk job %s interrupted after %s of %s countries", job.job_id, len(results), len(targets)
                )
                touched = targets
            self.cache.invalidate_countries(service.service_id, touched)
        logger.info(
            "Bulk job %s service=%s op=%s updated=%s skipped=%s failed=%s in %.3fs",
            job.job_id,
            service.service_id,
            operation.operation_type.value,
            job.updated_count,
            job.skipped_count,
            job.failed_count,
            time.perf_counter() - job_start,
        )
        return job

    def preview_bulk_operation(
        self,
        service_id: str,
        operation: BulkOperation,
        countries: Iterable[str],
    ) -> BulkPreview:
        service = self.resolver.get_service(service_id)
        preview = BulkPreview(
            service_id=service.service_id,
            operation_type=operation.operation_type,
            value=operation.value,
        )
        for code in _dedupe(countries):
            try:
                preview.rows.append(self._plan(service.service_id, operation, code))
            except DutyEngineError as exc:
                preview.rows.append(PreviewRow(country_code=code, status=CountryStatus.FAILED, message=str(exc)))
            except Exception as exc:
                logger.exception("Unexpected bulk preview failure service=%s country=%s", service.service_id, code)
                preview.rows.append(
                    PreviewRow(country_code=code, status=CountryStatus.FAILED, message=f"Unexpected error: {exc}")
                )
        return preview
