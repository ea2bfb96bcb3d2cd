"""Calculation cache over theine with tag-based cascading invalidation."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from theine import Cache as TheineCache

from .country_reference import CountryReference
from .scopes import (
    ContinentScope,
    CountryScope,
    GlobalScope,
    ProductScope,
    RegionScope,
    Scope,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 10_000
DEFAULT_CACHE_TTL_SECONDS = 60 * 60

_MISSING = object()


class CacheStore:
    """theine-backed key/value store that also tracks tag membership.

    theine has no notion of tags, so the tag -> keys index lives here. Entries
    that expire inside theine leave stale keys behind in the index; deleting a
    stale key is a no-op.
    """

    def __init__(self, size: int = DEFAULT_CACHE_SIZE, ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS) -> None:
        self._cache = TheineCache(size)
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._keys_by_tag: Dict[str, Set[str]] = {}
        self._tags_by_key: Dict[str, Set[str]] = {}

    def get(self, key: str) -> Any:
        value, ok = self._cache.get(key)  # type: ignore[call-arg]
        return value if ok else _MISSING

    def set(self, key: str, value: Any, tags: Iterable[str] = (), ttl_seconds: Optional[int] = None) -> None:
        ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else self.ttl_seconds)
        self._cache.set(key, value, ttl=ttl)  # type: ignore[call-arg]
        tag_set = set(tags)
        with self._lock:
            self._tags_by_key.setdefault(key, set()).update(tag_set)
            for tag in tag_set:
                self._keys_by_tag.setdefault(tag, set()).add(key)

    def delete(self, key: str) -> None:
        self._cache.delete(key)
        with self._lock:
            for tag in self._tags_by_key.pop(key, ()):
                keys = self._keys_by_tag.get(tag)
                if keys is not None:
                    keys.discard(key)
                    if not keys:
                        del self._keys_by_tag[tag]

    def delete_by_tag(self, tag: str) -> int:
        with self._lock:
            keys = list(self._keys_by_tag.get(tag, ()))
        for key in keys:
            self.delete(key)
        return len(keys)

    def clear(self) -> int:
        with self._lock:
            keys = list(self._tags_by_key)
        for key in keys:
            self.delete(key)
        return len(keys)


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    invalidations: int
    errors: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def make_cache_key(
    service_id: str,
    country_code: str,
    classification_code: Optional[str],
    policy: Optional[str],
    declared_value: Optional[object] = None,
    kind: str = "rate",
) -> str:
    parts = {
        "kind": kind,
        "service_id": service_id,
        "country_code": country_code,
        "classification_code": classification_code,
        "policy": policy,
    }
    if declared_value is not None:
        parts["declared_value"] = str(declared_value)
    raw = json.dumps(parts, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def service_tag(service_id: str) -> str:
    return f"service:{service_id}"


def country_tag(service_id: str, country_code: str) -> str:
    return f"service:{service_id}|country:{country_code}"


def region_tag(service_id: str, region_key: str) -> str:
    return f"service:{service_id}|region:{region_key}"


def continent_tag(service_id: str, continent: str) -> str:
    return f"service:{service_id}|continent:{continent}"


def product_tag(service_id: str, classification_code: str, country_code: str) -> str:
    return f"service:{service_id}|product:{classification_code}:{country_code}"


def matrix_tag(service_id: str) -> str:
    return f"service:{service_id}|matrix"


class CalculationCache:
    """Memoizes resolved rates and duty computations per service and country.

    Every lookup or invalidation failure is logged and treated as a miss so the
    caller falls back to the override store.

    Each tag carries a generation counter that invalidation bumps. Writers take
    a snapshot before reading the override store and pass it back on put; a put
    whose snapshot no longer matches is dropped, so a value read before a
    concurrent write cannot be cached after that write invalidated its tags.
    """

    def __init__(self, store: CacheStore, reference: CountryReference) -> None:
        self.store = store
        self.reference = reference
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0
        self._errors = 0
        self._gen_lock = threading.Lock()
        self._generations: Dict[str, int] = {}
        self._epoch = 0

    def tags_for(self, service_id: str, country_code: str, classification_code: Optional[str] = None) -> List[str]:
        tags = [service_tag(service_id), country_tag(service_id, country_code)]
        for region_key in self.reference.regions_of(country_code):
            tags.append(region_tag(service_id, region_key))
        continent = self.reference.continent_of(country_code)
        if continent:
            tags.append(continent_tag(service_id, continent))
        if classification_code:
            tags.append(product_tag(service_id, classification_code, country_code))
        return tags

    def _record(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def _lookup(self, key: str) -> Optional[Any]:
        try:
            value = self.store.get(key)
        except Exception as exc:
            with self._lock:
                self._errors += 1
            logger.warning("Cache lookup failed key=%s: %s", key[:12], exc)
            self._record(False)
            return None
        if value is _MISSING:
            self._record(False)
            return None
        self._record(True)
        return value

    def _snapshot(self, tags: List[str]) -> Tuple[int, ...]:
        return (self._epoch,) + tuple(self._generations.get(tag, 0) for tag in tags)

    def generation(
        self, service_id: str, country_code: str, classification_code: Optional[str] = None
    ) -> Tuple[int, ...]:
        """Snapshot of the tag generations guarding one rate or duty entry."""

        tags = self.tags_for(service_id, country_code, classification_code)
        with self._gen_lock:
            return self._snapshot(tags)

    def matrix_generation(self, service_id: str) -> Tuple[int, ...]:
        with self._gen_lock:
            return self._snapshot([service_tag(service_id), matrix_tag(service_id)])

    def _store(
        self,
        key: str,
        value: Any,
        tags: List[str],
        generation: Optional[Tuple[int, ...]] = None,
    ) -> None:
        with self._gen_lock:
            if generation is not None and generation != self._snapshot(tags):
                logger.debug("Cache write skipped key=%s: invalidated while computing", key[:12])
                return
            try:
                self.store.set(key, value, tags=tags)
            except Exception as exc:
                with self._lock:
                    self._errors += 1
                logger.warning("Cache write failed key=%s: %s", key[:12], exc)

    def get_rate(self, service_id: str, country_code: str, classification_code: Optional[str]) -> Optional[Any]:
        return self._lookup(make_cache_key(service_id, country_code, classification_code, None))

    def put_rate(
        self,
        service_id: str,
        country_code: str,
        classification_code: Optional[str],
        value: Any,
        generation: Optional[Tuple[int, ...]] = None,
    ) -> None:
        self._store(
            make_cache_key(service_id, country_code, classification_code, None),
            value,
            self.tags_for(service_id, country_code, classification_code),
            generation,
        )

    def get_duty(
        self,
        service_id: str,
        country_code: str,
        classification_code: Optional[str],
        policy: str,
        declared_value: object,
    ) -> Optional[Any]:
        key = make_cache_key(service_id, country_code, classification_code, policy, declared_value, kind="duty")
        return self._lookup(key)

    def put_duty(
        self,
        service_id: str,
        country_code: str,
        classification_code: Optional[str],
        policy: str,
        declared_value: object,
        value: Any,
        generation: Optional[Tuple[int, ...]] = None,
    ) -> None:
        key = make_cache_key(service_id, country_code, classification_code, policy, declared_value, kind="duty")
        self._store(key, value, self.tags_for(service_id, country_code, classification_code), generation)

    def _matrix_key(self, service_id: str, countries: Iterable[str]) -> str:
        raw = ",".join(sorted(countries))
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
        return f"matrix:{service_id}:{digest}"

    def get_matrix(self, service_id: str, countries: Iterable[str]) -> Optional[Any]:
        return self._lookup(self._matrix_key(service_id, countries))

    def put_matrix(
        self,
        service_id: str,
        countries: Iterable[str],
        value: Any,
        generation: Optional[Tuple[int, ...]] = None,
    ) -> None:
        self._store(
            self._matrix_key(service_id, countries),
            value,
            [service_tag(service_id), matrix_tag(service_id)],
            generation,
        )

    def _drop_tags(self, tags: Iterable[str]) -> int:
        tags = list(tags)
        with self._gen_lock:
            for tag in tags:
                self._generations[tag] = self._generations.get(tag, 0) + 1
        dropped = 0
        for tag in tags:
            try:
                dropped += self.store.delete_by_tag(tag)
            except Exception as exc:
                with self._lock:
                    self._errors += 1
                logger.warning("Cache invalidation failed tag=%s: %s", tag, exc)
        with self._lock:
            self._invalidations += dropped
        return dropped

    def tags_for_scope(self, service_id: str, scope: Scope) -> List[str]:
        """Tags a write at ``scope`` has to drop, including the matrix tag."""

        if isinstance(scope, GlobalScope):
            return [service_tag(service_id)]
        tags: List[str] = []
        if isinstance(scope, ProductScope):
            tags.append(product_tag(service_id, scope.classification_code, scope.country_code))
        elif isinstance(scope, RegionScope):
            tags.append(region_tag(service_id, scope.region_key))
        elif isinstance(scope, ContinentScope):
            tags.append(continent_tag(service_id, scope.name))
        elif not isinstance(scope, CountryScope):
            raise TypeError(f"Unsupported scope: {scope!r}")
        for code in sorted(self.reference.countries_for_scope(scope)):
            tags.append(country_tag(service_id, code))
        tags.append(matrix_tag(service_id))
        return tags

    def invalidate_scope(self, service_id: str, scope: Scope) -> int:
        dropped = self._drop_tags(self.tags_for_scope(service_id, scope))
        logger.debug("Cache invalidated service=%s scope=%r entries=%s", service_id, scope, dropped)
        return dropped

    def invalidate_countries(self, service_id: str, country_codes: Iterable[str]) -> int:
        tags = [country_tag(service_id, code) for code in sorted(set(country_codes))]
        tags.append(matrix_tag(service_id))
        return self._drop_tags(tags)

    def invalidate_service(self, service_id: str) -> int:
        return self._drop_tags([service_tag(service_id)])

    def flush(self) -> int:
        with self._gen_lock:
            self._epoch += 1
        try:
            dropped = self.store.clear()
        except Exception as exc:
            with self._lock:
                self._errors += 1
            logger.warning("Cache flush failed: %s", exc)
            return 0
        with self._lock:
            self._invalidations += dropped
        logger.info("Cache flushed entries=%s", dropped)
        return dropped

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                invalidations=self._invalidations,
                errors=self._errors,
            )
