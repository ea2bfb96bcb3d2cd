"""CSV import and export of active rate overrides.

Export writes one row per active override with a ``scope`` column plus the
identifier columns (``continent``, ``region_key``, ``country_code``,
``classification_code``) used by hand-written import files. Import validates
every row first and only writes rows without errors, each through
``RateResolver.set_rate`` so it supersedes the active override at its scope.
"""

from __future__ import annotations

import csv
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, TextIO, Tuple

from .cache import CalculationCache
from .country_reference import CountryReference
from .errors import DutyEngineError, InvalidRate, InvalidScope, UnknownService
from .override_store import OverrideStore, RateOverride
from .rate_resolver import RateResolver, coerce_amount
from .scopes import (
    ContinentScope,
    CountryScope,
    ProductScope,
    RegionScope,
    Scope,
    Tier,
    format_scope,
    parse_scope,
    scope_to_row,
)

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "service_key",
    "scope",
    "continent",
    "region_key",
    "country_code",
    "classification_code",
    "rate",
    "min_amount",
    "max_amount",
    "reason",
]
REQUIRED_COLUMNS = ("service_key", "rate")
DEFAULT_IMPORT_REASON = "CSV import"


class ImportStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass
class ImportRow:
    row_number: int
    service_key: str
    service_id: Optional[str] = None
    scope: Optional[Scope] = None
    rate: Optional[Decimal] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    status: ImportStatus = ImportStatus.VALID
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    override_id: Optional[int] = None


@dataclass
class RateImport:
    rows: List[ImportRow] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    applied: bool = False

    def _count(self, status: ImportStatus) -> int:
        return sum(1 for row in self.rows if row.status is status)

    @property
    def valid_count(self) -> int:
        return self._count(ImportStatus.VALID)

    @property
    def invalid_count(self) -> int:
        return self._count(ImportStatus.INVALID)

    @property
    def updated_count(self) -> int:
        return self._count(ImportStatus.UPDATED)

    @property
    def failed_count(self) -> int:
        return self._count(ImportStatus.FAILED)

    @property
    def is_valid(self) -> bool:
        return not self.errors and any(
            row.status in (ImportStatus.VALID, ImportStatus.UPDATED) for row in self.rows
        )


def _cell(record: Dict[str, Optional[str]], column: str) -> str:
    return str(record.get(column) or "").strip()


def export_row(service_key: str, override: RateOverride) -> Dict[str, str]:
    scope = override.scope
    row = {column: "" for column in EXPORT_COLUMNS}
    row.update(
        service_key=service_key,
        scope=format_scope(scope),
        rate=str(override.rate),
        min_amount="" if override.min_amount is None else str(override.min_amount),
        max_amount="" if override.max_amount is None else str(override.max_amount),
        reason=override.reason or "",
    )
    if isinstance(scope, ContinentScope):
        row["continent"] = scope.name
    elif isinstance(scope, RegionScope):
        row["region_key"] = scope.region_key
    elif isinstance(scope, CountryScope):
        row["country_code"] = scope.country_code
    elif isinstance(scope, ProductScope):
        row["country_code"] = scope.country_code
        row["classification_code"] = scope.classification_code
    return row


def scope_from_record(record: Dict[str, Optional[str]]) -> Scope:
    """Pick the scope a CSV row targets.

    An explicit ``scope`` column wins; otherwise the first of ``continent``,
    ``region_key`` and ``country_code`` that is filled in. A country row with
    a ``classification_code`` targets the product scope.
    """

    if _cell(record, "scope"):
        return parse_scope(_cell(record, "scope"))
    if _cell(record, "continent"):
        return ContinentScope(_cell(record, "continent"))
    if _cell(record, "region_key"):
        return RegionScope(_cell(record, "region_key"))
    if _cell(record, "country_code"):
        if _cell(record, "classification_code"):
            return ProductScope(_cell(record, "classification_code"), _cell(record, "country_code"))
        return CountryScope(_cell(record, "country_code"))
    raise InvalidScope("Missing continent, region_key, or country_code")


class RateCsv:
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

    def export_rates(
        self,
        stream: TextIO,
        service_ids: Sequence[str],
        tiers: Optional[Iterable[Tier]] = None,
    ) -> int:
        wanted = set(tiers) if tiers else None
        writer = csv.DictWriter(stream, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        written = 0
        export_start = time.perf_counter()
        for service_id in service_ids:
            service = self.resolver.get_service(service_id)
            for override in self.store.active_overrides_for_service(service.service_id):
                if wanted is not None and override.tier not in wanted:
                    continue
                writer.writerow(export_row(service.service_key, override))
                written += 1
        logger.info(
            "Exported %s overrides for %s services in %.3fs",
            written,
            len(service_ids),
            time.perf_counter() - export_start,
        )
        return written

    def _parse_row(self, row_number: int, record: Dict[str, Optional[str]]) -> ImportRow:
        row = ImportRow(row_number=row_number, service_key=_cell(record, "service_key"))
        row.reason = _cell(record, "reason") or None

        if not row.service_key:
            row.errors.append("Missing service_key")
        else:
            try:
                service = self.resolver.get_service(row.service_key)
            except UnknownService:
                row.errors.append(f"Unknown service: {row.service_key}")
                service = None
            if service is not None:
                row.service_id = service.service_id

        try:
            row.scope = scope_from_record(record)
            self.reference.validate_scope(row.scope)
        except InvalidScope as exc:
            row.errors.append(str(exc))

        try:
            row.rate = coerce_amount(_cell(record, "rate") or None, "rate")
        except InvalidRate:
            row.rate = None
        if row.rate is None:
            row.errors.append("Invalid rate")
        for column in ("min_amount", "max_amount"):
            try:
                setattr(row, column, coerce_amount(_cell(record, column) or None, column))
            except InvalidRate:
                row.errors.append(f"Invalid {column}")
        if row.min_amount is not None and row.max_amount is not None and row.min_amount > row.max_amount:
            row.errors.append("min_amount exceeds max_amount")

        if isinstance(row.scope, RegionScope) and _cell(record, "country_codes"):
            listed = {code.strip().upper() for code in _cell(record, "country_codes").split(",") if code.strip()}
            if listed != set(self.reference.countries_in_region(row.scope.region_key)):
                row.warnings.append("country_codes differ from the configured region; membership is not changed")
        if row.rate is not None and row.rate > 1 and row.service_id:
            if self.resolver.get_service(row.service_id).pricing_type == "percentage":
                row.warnings.append(f"Rate {row.rate} is above 100% for a percentage service")

        if row.errors:
            row.status = ImportStatus.INVALID
        return row

    def validate_import(self, stream: TextIO) -> RateImport:
        """Parse and check every row without writing anything."""

        result = RateImport()
        reader = csv.DictReader(stream)
        if not reader.fieldnames:
            result.errors.append("CSV file is empty")
            return result
        reader.fieldnames = [str(name or "").strip().lower() for name in reader.fieldnames]
        missing = [column for column in REQUIRED_COLUMNS if column not in reader.fieldnames]
        if missing:
            result.errors.append(f"Missing required headers: {', '.join(missing)}")
            return result

        seen: Dict[Tuple[str, Tuple[str, str]], int] = {}
        for row_number, record in enumerate(reader, start=2):
            if not any(_cell(record, column) for column in reader.fieldnames):
                continue
            row = self._parse_row(row_number, record)
            if row.service_id and row.scope is not None:
                key = (row.service_id, scope_to_row(row.scope))
                if key in seen:
                    row.errors.append(f"Duplicate entry (first seen on row {seen[key]})")
                    row.status = ImportStatus.INVALID
                else:
                    seen[key] = row_number
            result.rows.append(row)
        if not result.rows:
            result.errors.append("CSV file has no data rows")
        return result

    def import_rates(self, stream: TextIO) -> RateImport:
        """Validate, then write every valid row. Invalid rows are left untouched.

        Each row succeeds or fails on its own, as in a bulk job. Cache
        invalidation runs once per written scope after the loop.
        """

        result = self.validate_import(stream)
        if result.errors:
            logger.warning("CSV import rejected: %s", "; ".join(result.errors))
            return result

        import_start = time.perf_counter()
        touched: Dict[Tuple[str, Tuple[str, str]], Tuple[str, Scope]] = {}
        try:
            for row in result.rows:
                if row.status is not ImportStatus.VALID:
                    continue
                touched[(row.service_id, scope_to_row(row.scope))] = (row.service_id, row.scope)
                try:
                    override = self.resolver.set_rate(
                        row.service_id,
                        row.scope,
                        row.rate,
                        min_amount=row.min_amount,
                        max_amount=row.max_amount,
                        reason=row.reason or DEFAULT_IMPORT_REASON,
                        invalidate=False,
                    )
                except DutyEngineError as exc:
                    logger.warning("CSV import row %s failed: %s", row.row_number, exc)
                    row.status = ImportStatus.FAILED
                    row.errors.append(str(exc))
                    continue
                except Exception as exc:
                    logger.exception("Unexpected CSV import failure on row %s", row.row_number)
                    row.status = ImportStatus.FAILED
                    row.errors.append(f"Unexpected error: {exc}")
                    continue
                row.status = ImportStatus.UPDATED
                row.override_id = override.override_id
        finally:
            result.applied = True
            for service_id, scope in touched.values():
                self.cache.invalidate_scope(service_id, scope)
        logger.info(
            "CSV import updated=%s failed=%s invalid=%s in %.3fs",
            result.updated_count,
            result.failed_count,
            result.invalid_count,
            time.perf_counter() - import_start,
        )
        return result
