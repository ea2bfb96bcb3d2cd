"""Rate override repository: in-memory and Postgres-backed implementations."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

try:  # pragma: no cover - optional dependency for environments without psycopg2
    import psycopg2
    from psycopg2.extras import RealDictCursor
except ImportError:  # pragma: no cover - allow import without postgres libs
    psycopg2 = None  # type: ignore[assignment]
    RealDictCursor = None  # type: ignore[assignment]

from .country_reference import CountryReference, fetch_country_reference
from .errors import StoreError, StoreUnavailable
from .scopes import (
    CountryScope,
    ProductScope,
    Scope,
    Tier,
    format_scope,
    scope_from_row,
    scope_to_row,
)

logger = logging.getLogger(__name__)

PRICING_TYPES = ("percentage", "fixed")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS duty_services (
    service_id text PRIMARY KEY,
    service_key text NOT NULL UNIQUE,
    service_name text NOT NULL,
    pricing_type text NOT NULL CHECK (pricing_type IN ('percentage', 'fixed')),
    is_active boolean NOT NULL DEFAULT true
);

CREATE TABLE IF NOT EXISTS rate_overrides (
    id bigserial PRIMARY KEY,
    service_id text NOT NULL REFERENCES duty_services (service_id),
    scope_type text NOT NULL
        CHECK (scope_type IN ('global', 'continent', 'region', 'country', 'product')),
    scope_key text NOT NULL DEFAULT '',
    rate numeric(14, 6) NOT NULL CHECK (rate >= 0),
    tier_label text,
    source_label text,
    min_amount numeric(12, 2),
    max_amount numeric(12, 2),
    reason text,
    is_active boolean NOT NULL DEFAULT true,
    effective_from timestamptz NOT NULL DEFAULT now(),
    deactivated_at timestamptz,
    created_at timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT rate_overrides_bounds
        CHECK (min_amount IS NULL OR max_amount IS NULL OR min_amount <= max_amount)
);

CREATE UNIQUE INDEX IF NOT EXISTS rate_overrides_one_active
    ON rate_overrides (service_id, scope_type, scope_key)
    WHERE is_active;

CREATE TABLE IF NOT EXISTS product_classifications (
    classification_code text NOT NULL,
    country_code text NOT NULL,
    minimum_valuation numeric(12, 2),
    is_active boolean NOT NULL DEFAULT true,
    PRIMARY KEY (classification_code, country_code)
);

CREATE TABLE IF NOT EXISTS country_settings (
    code text PRIMARY KEY,
    name text NOT NULL,
    continent text
);

CREATE TABLE IF NOT EXISTS pricing_regions (
    region_key text PRIMARY KEY,
    region_name text NOT NULL,
    priority integer NOT NULL DEFAULT 100,
    country_codes text[] NOT NULL DEFAULT '{}',
    is_active boolean NOT NULL DEFAULT true
);
"""

_OVERRIDE_COLUMNS = """
    id,
    service_id,
    scope_type,
    scope_key,
    rate,
    tier_label,
    source_label,
    min_amount,
    max_amount,
    reason,
    is_active,
    effective_from
"""


@dataclass(frozen=True)
class Service:
    service_id: str
    service_key: str
    service_name: str
    pricing_type: str = "percentage"
    is_active: bool = True


@dataclass(frozen=True)
class RateOverride:
    override_id: int
    service_id: str
    scope: Scope
    rate: Decimal
    tier_label: str
    source_label: str
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    is_active: bool = True
    effective_from: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def tier(self) -> Tier:
        return self.scope.tier


def _coerce_decimal(value: Optional[object]) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_source_label(scope: Scope, reason: Optional[str] = None) -> str:
    label = f"{scope.tier.value.capitalize()} override ({format_scope(scope)})"
    if reason:
        label += f": {reason}"
    return label


class OverrideStore:
    """Repository contract used by the resolver and bulk processor.

    Implementations must make ``supersede`` atomic per (service_id, scope):
    readers see either the previous active row or the new one, never both.
    """

    def get_service(self, service_id: str) -> Optional[Service]:
        raise NotImplementedError

    def list_services(self) -> List[Service]:
        raise NotImplementedError

    def active_override(self, service_id: str, scope: Scope) -> Optional[RateOverride]:
        raise NotImplementedError

    def active_overrides_for_scope(self, scope: Scope) -> List[RateOverride]:
        raise NotImplementedError

    def active_overrides_for_service(self, service_id: str) -> List[RateOverride]:
        raise NotImplementedError

    def active_overrides_for_country(
        self,
        service_id: str,
        country_code: str,
        *,
        continent: Optional[str],
        regions: Sequence[str],
        classification_code: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> List[RateOverride]:
        raise NotImplementedError

    def supersede(
        self,
        service_id: str,
        scope: Scope,
        rate: Decimal,
        *,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        tier_label: Optional[str] = None,
        source_label: Optional[str] = None,
    ) -> Tuple[RateOverride, Optional[RateOverride]]:
        raise NotImplementedError

    def deactivate(self, service_id: str, scope: Scope, reason: Optional[str] = None) -> Optional[RateOverride]:
        raise NotImplementedError

    def history(self, service_id: str, scope: Scope) -> List[RateOverride]:
        raise NotImplementedError

    def countries_with_overrides(self, service_id: str) -> List[str]:
        raise NotImplementedError

    def minimum_valuation(self, classification_code: str, country_code: str) -> Optional[Decimal]:
        raise NotImplementedError


def _matches_country(
    override: RateOverride,
    country_code: str,
    continent: Optional[str],
    regions: Sequence[str],
    classification_code: Optional[str],
) -> bool:
    scope = override.scope
    tier = scope.tier
    if tier is Tier.GLOBAL:
        return True
    if tier is Tier.CONTINENT:
        return continent is not None and scope.key == continent
    if tier is Tier.REGION:
        return scope.key in regions
    if tier is Tier.COUNTRY:
        return scope.key == country_code
    if tier is Tier.PRODUCT:
        return (
            classification_code is not None
            and isinstance(scope, ProductScope)
            and scope.country_code == country_code
            and scope.classification_code == classification_code
        )
    return False


class InMemoryOverrideStore(OverrideStore):
    """Thread-safe store used for local runs and tests."""

    def __init__(self, services: Iterable[Service] = ()) -> None:
        self._services: Dict[str, Service] = {}
        self._rows: List[RateOverride] = []
        self._positions: Dict[int, int] = {}
        self._active: Dict[Tuple[str, Tuple[str, str]], RateOverride] = {}
        self._minimums: Dict[Tuple[str, str], Decimal] = {}
        self._ids = itertools.count(1)
        self._guard = threading.Lock()
        self._scope_locks: Dict[Tuple[str, Tuple[str, str]], threading.Lock] = {}
        for service in services:
            self.add_service(service)

    def add_service(self, service: Service) -> Service:
        if service.pricing_type not in PRICING_TYPES:
            raise ValueError(f"pricing_type must be one of {PRICING_TYPES}: {service.pricing_type!r}")
        with self._guard:
            self._services[service.service_id] = service
        return service

    def set_minimum_valuation(
        self, classification_code: str, country_code: str, amount: Optional[object]
    ) -> None:
        key = (classification_code.strip().upper(), country_code.strip().upper())
        with self._guard:
            if amount is None:
                self._minimums.pop(key, None)
            else:
                self._minimums[key] = Decimal(str(amount))

    def _lock_for(self, key: Tuple[str, Tuple[str, str]]) -> threading.Lock:
        with self._guard:
            lock = self._scope_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._scope_locks[key] = lock
            return lock

    def get_service(self, service_id: str) -> Optional[Service]:
        with self._guard:
            service = self._services.get(service_id)
            if service is not None:
                return service
            for candidate in self._services.values():
                if candidate.service_key == service_id:
                    return candidate
        return None

    def list_services(self) -> List[Service]:
        with self._guard:
            return sorted(self._services.values(), key=lambda s: s.service_key)

    def active_override(self, service_id: str, scope: Scope) -> Optional[RateOverride]:
        with self._guard:
            return self._active.get((service_id, scope_to_row(scope)))

    def active_overrides_for_scope(self, scope: Scope) -> List[RateOverride]:
        row_key = scope_to_row(scope)
        with self._guard:
            rows = [override for (_, key), override in self._active.items() if key == row_key]
        return sorted(rows, key=lambda row: row.service_id)

    def active_overrides_for_service(self, service_id: str) -> List[RateOverride]:
        with self._guard:
            rows = [override for (svc, _), override in self._active.items() if svc == service_id]
        return sorted(rows, key=lambda row: scope_to_row(row.scope))

    def active_overrides_for_country(
        self,
        service_id: str,
        country_code: str,
        *,
        continent: Optional[str],
        regions: Sequence[str],
        classification_code: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> List[RateOverride]:
        moment = as_of or _utcnow()
        with self._guard:
            candidates = [
                override
                for (svc, _), override in self._active.items()
                if svc == service_id
            ]
        return [
            override
            for override in candidates
            if (override.effective_from is None or override.effective_from <= moment)
            and _matches_country(override, country_code, continent, regions, classification_code)
        ]

    def supersede(
        self,
        service_id: str,
        scope: Scope,
        rate: Decimal,
        *,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        tier_label: Optional[str] = None,
        source_label: Optional[str] = None,
    ) -> Tuple[RateOverride, Optional[RateOverride]]:
        key = (service_id, scope_to_row(scope))
        with self._lock_for(key):
            new_override = RateOverride(
                override_id=next(self._ids),
                service_id=service_id,
                scope=scope,
                rate=rate,
                tier_label=tier_label or scope.tier.value,
                source_label=source_label or default_source_label(scope, reason),
                min_amount=min_amount,
                max_amount=max_amount,
                is_active=True,
                effective_from=_utcnow(),
                reason=reason,
            )
            with self._guard:
                previous = self._active.get(key)
                if previous is not None:
                    retired = replace(previous, is_active=False)
                    self._rows[self._positions[previous.override_id]] = retired
                    previous = retired
                self._positions[new_override.override_id] = len(self._rows)
                self._rows.append(new_override)
                self._active[key] = new_override
        return new_override, previous

    def deactivate(self, service_id: str, scope: Scope, reason: Optional[str] = None) -> Optional[RateOverride]:
        key = (service_id, scope_to_row(scope))
        with self._lock_for(key):
            with self._guard:
                previous = self._active.pop(key, None)
                if previous is None:
                    return None
                retired = replace(previous, is_active=False, reason=reason or previous.reason)
                self._rows[self._positions[previous.override_id]] = retired
        return retired

    def history(self, service_id: str, scope: Scope) -> List[RateOverride]:
        row_key = scope_to_row(scope)
        with self._guard:
            rows = [
                row
                for row in self._rows
                if row.service_id == service_id and scope_to_row(row.scope) == row_key
            ]
        return sorted(rows, key=lambda row: row.override_id, reverse=True)

    def countries_with_overrides(self, service_id: str) -> List[str]:
        with self._guard:
            codes = {
                override.scope.key
                for (svc, _), override in self._active.items()
                if svc == service_id and isinstance(override.scope, CountryScope)
            }
        return sorted(codes)

    def minimum_valuation(self, classification_code: str, country_code: str) -> Optional[Decimal]:
        with self._guard:
            return self._minimums.get((classification_code.upper(), country_code.upper()))


class PostgresOverrideStore(OverrideStore):
    """Override repository backed by the ``rate_overrides`` table."""

    def __init__(self, dsn: str, timeout_seconds: float = 5.0) -> None:
        if psycopg2 is None:  # pragma: no cover - runtime enforcement
            raise RuntimeError(
                "psycopg2 is required for the Postgres override store. "
                "Install psycopg2-binary or psycopg2 and ensure it is available."
            )
        if not dsn:
            raise RuntimeError("A database DSN is required for the Postgres override store.")
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds

    @contextmanager
    def _connection(self) -> Iterator["psycopg2.extensions.connection"]:
        timeout_ms = int(self.timeout_seconds * 1000)
        try:
            conn = psycopg2.connect(
                self.dsn,
                connect_timeout=max(1, int(self.timeout_seconds)),
                options=f"-c statement_timeout={timeout_ms}",
            )
        except psycopg2.OperationalError as exc:
            raise StoreUnavailable(f"Override store unreachable: {exc}") from exc
        try:
            yield conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            raise StoreUnavailable(f"Override store call failed: {exc}") from exc
        except psycopg2.Error as exc:
            logger.error("Override store query failed: %s", exc)
            raise StoreError(f"Override store query failed: {exc}") from exc
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._connection() as conn:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)
        logger.info("Override store schema ensured")

    def load_country_reference(self, continent_names: Optional[Sequence[str]] = None) -> CountryReference:
        with self._connection() as conn:
            reference = fetch_country_reference(conn, continent_names)
        logger.info(
            "Country reference fetched from store countries=%s regions=%s",
            len(reference.continents_by_country),
            len(reference.regions),
        )
        return reference

    @staticmethod
    def _row_to_override(row: Dict) -> RateOverride:
        scope = scope_from_row(row["scope_type"], row["scope_key"])
        return RateOverride(
            override_id=int(row["id"]),
            service_id=str(row["service_id"]),
            scope=scope,
            rate=_coerce_decimal(row["rate"]) or Decimal("0"),
            tier_label=row.get("tier_label") or scope.tier.value,
            source_label=row.get("source_label") or default_source_label(scope, row.get("reason")),
            min_amount=_coerce_decimal(row.get("min_amount")),
            max_amount=_coerce_decimal(row.get("max_amount")),
            is_active=bool(row.get("is_active")),
            effective_from=row.get("effective_from"),
            reason=row.get("reason"),
        )

    @staticmethod
    def _row_to_service(row: Dict) -> Service:
        return Service(
            service_id=str(row["service_id"]),
            service_key=str(row["service_key"]),
            service_name=str(row["service_name"]),
            pricing_type=str(row["pricing_type"]),
            is_active=bool(row["is_active"]),
        )

    def upsert_service(self, service: Service) -> Service:
        with self._connection() as conn:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO duty_services (service_id, service_key, service_name, pricing_type, is_active)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (service_id) DO UPDATE
                        SET service_name = EXCLUDED.service_name,
                            is_active = EXCLUDED.is_active
                        """,
                        (
                            service.service_id,
                            service.service_key,
                            service.service_name,
                            service.pricing_type,
                            service.is_active,
                        ),
                    )
        return service

    def get_service(self, service_id: str) -> Optional[Service]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT service_id, service_key, service_name, pricing_type, is_active
                    FROM duty_services
                    WHERE service_id = %s OR service_key = %s
                    ORDER BY (service_id = %s) DESC
                    LIMIT 1
                    """,
                    (service_id, service_id, service_id),
                )
                row = cur.fetchone()
        return self._row_to_service(row) if row else None

    def list_services(self) -> List[Service]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT service_id, service_key, service_name, pricing_type, is_active
                    FROM duty_services
                    ORDER BY service_key
                    """
                )
                rows = cur.fetchall()
        return [self._row_to_service(row) for row in rows]

    def active_override(self, service_id: str, scope: Scope) -> Optional[RateOverride]:
        scope_type, scope_key = scope_to_row(scope)
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_OVERRIDE_COLUMNS}
                    FROM rate_overrides
                    WHERE service_id = %s
                      AND scope_type = %s
                      AND scope_key = %s
                      AND is_active
                    LIMIT 1
                    """,
                    (service_id, scope_type, scope_key),
                )
                row = cur.fetchone()
        return self._row_to_override(row) if row else None

    def active_overrides_for_scope(self, scope: Scope) -> List[RateOverride]:
        scope_type, scope_key = scope_to_row(scope)
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_OVERRIDE_COLUMNS}
                    FROM rate_overrides
                    WHERE scope_type = %s
                      AND scope_key = %s
                      AND is_active
                    ORDER BY service_id
                    """,
                    (scope_type, scope_key),
                )
                rows = cur.fetchall()
        return [self._row_to_override(row) for row in rows]

    def active_overrides_for_service(self, service_id: str) -> List[RateOverride]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_OVERRIDE_COLUMNS}
                    FROM rate_overrides
                    WHERE service_id = %s
                      AND is_active
                    ORDER BY scope_type, scope_key
                    """,
                    (service_id,),
                )
                rows = cur.fetchall()
        return [self._row_to_override(row) for row in rows]

    def active_overrides_for_country(
        self,
        service_id: str,
        country_code: str,
        *,
        continent: Optional[str],
        regions: Sequence[str],
        classification_code: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> List[RateOverride]:
        product_key = f"{classification_code}:{country_code}" if classification_code else None
        query_start = time.perf_counter()
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_OVERRIDE_COLUMNS}
                    FROM rate_overrides
                    WHERE service_id = %s
                      AND is_active
                      AND effective_from <= %s
                      AND (
                            scope_type = 'global'
                         OR (scope_type = 'continent' AND scope_key = %s)
                         OR (scope_type = 'region' AND scope_key = ANY(%s))
                         OR (scope_type = 'country' AND scope_key = %s)
                         OR (scope_type = 'product' AND scope_key = %s)
                      )
                    """,
                    (
                        service_id,
                        as_of or _utcnow(),
                        continent,
                        list(regions),
                        country_code,
                        product_key,
                    ),
                )
                rows = cur.fetchall()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Override candidates service=%s country=%s rows=%s duration=%.3fs",
                service_id,
                country_code,
                len(rows),
                time.perf_counter() - query_start,
            )
        return [self._row_to_override(row) for row in rows]

    def supersede(
        self,
        service_id: str,
        scope: Scope,
        rate: Decimal,
        *,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        tier_label: Optional[str] = None,
        source_label: Optional[str] = None,
    ) -> Tuple[RateOverride, Optional[RateOverride]]:
        scope_type, scope_key = scope_to_row(scope)
        with self._connection() as conn:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"{service_id}|{scope_type}|{scope_key}",),
                    )
                    cur.execute(
                        f"""
                        UPDATE rate_overrides
                        SET is_active = false,
                            deactivated_at = now()
                        WHERE service_id = %s
                          AND scope_type = %s
                          AND scope_key = %s
                          AND is_active
                        RETURNING {_OVERRIDE_COLUMNS}
                        """,
                        (service_id, scope_type, scope_key),
                    )
                    previous_row = cur.fetchone()
                    cur.execute(
                        f"""
                        INSERT INTO rate_overrides (
                            service_id, scope_type, scope_key, rate, tier_label, source_label,
                            min_amount, max_amount, reason, is_active, effective_from
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, true, now())
                        RETURNING {_OVERRIDE_COLUMNS}
                        """,
                        (
                            service_id,
                            scope_type,
                            scope_key,
                            rate,
                            tier_label or scope.tier.value,
                            source_label or default_source_label(scope, reason),
                            min_amount,
                            max_amount,
                            reason,
                        ),
                    )
                    new_row = cur.fetchone()
        previous = self._row_to_override(previous_row) if previous_row else None
        return self._row_to_override(new_row), previous

    def deactivate(self, service_id: str, scope: Scope, reason: Optional[str] = None) -> Optional[RateOverride]:
        scope_type, scope_key = scope_to_row(scope)
        with self._connection() as conn:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"{service_id}|{scope_type}|{scope_key}",),
                    )
                    cur.execute(
                        f"""
                        UPDATE rate_overrides
                        SET is_active = false,
                            deactivated_at = now(),
                            reason = COALESCE(%s, reason)
                        WHERE service_id = %s
                          AND scope_type = %s
                          AND scope_key = %s
                          AND is_active
                        RETURNING {_OVERRIDE_COLUMNS}
                        """,
                        (reason, service_id, scope_type, scope_key),
                    )
                    row = cur.fetchone()
        return self._row_to_override(row) if row else None

    def history(self, service_id: str, scope: Scope) -> List[RateOverride]:
        scope_type, scope_key = scope_to_row(scope)
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_OVERRIDE_COLUMNS}
                    FROM rate_overrides
                    WHERE service_id = %s
                      AND scope_type = %s
                      AND scope_key = %s
                    ORDER BY id DESC
                    """,
                    (service_id, scope_type, scope_key),
                )
                rows = cur.fetchall()
        return [self._row_to_override(row) for row in rows]

    def countries_with_overrides(self, service_id: str) -> List[str]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT DISTINCT scope_key
                    FROM rate_overrides
                    WHERE service_id = %s
                      AND scope_type = 'country'
                      AND is_active
                    ORDER BY scope_key
                    """,
                    (service_id,),
                )
                rows = cur.fetchall()
        return [row[0] for row in rows]

    def minimum_valuation(self, classification_code: str, country_code: str) -> Optional[Decimal]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT minimum_valuation
                    FROM product_classifications
                    WHERE classification_code = %s
                      AND country_code = %s
                      AND is_active
                    LIMIT 1
                    """,
                    (classification_code, country_code),
                )
                row = cur.fetchone()
        return _coerce_decimal(row[0]) if row else None
