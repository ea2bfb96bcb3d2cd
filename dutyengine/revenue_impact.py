"""Advisory revenue impact estimates for proposed rate changes."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Mapping, Optional, Sequence

import requests

from .rate_resolver import coerce_amount

logger = logging.getLogger(__name__)

CONFIDENCE_BASE = Decimal("0.50")
CONFIDENCE_STEP = Decimal("0.05")
CONFIDENCE_CEILING = Decimal("0.95")
DEFAULT_VOLUME_TIMEOUT_SECONDS = 10
CENT = Decimal("0.01")


@dataclass
class RevenueImpact:
    estimated_revenue_change: Decimal
    impact_percentage: Optional[Decimal]
    confidence_score: Decimal
    current_revenue: Decimal
    projected_revenue: Decimal
    affected_countries: List[str]
    notes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CountryVolume:
    country_code: str
    order_count: int
    avg_order_value: Decimal


def confidence_for(affected_count: int) -> Decimal:
    """More affected countries means more history behind the estimate, up to a ceiling."""

    score = CONFIDENCE_BASE + CONFIDENCE_STEP * max(0, affected_count)
    return min(score, CONFIDENCE_CEILING)


def estimate_revenue_impact(
    current_rate: object,
    new_rate: object,
    affected_countries: Sequence[str],
    historical_volume: object,
    historical_avg_order_value: object,
    total_country_count: int,
) -> RevenueImpact:
    if total_country_count <= 0:
        raise ValueError("total_country_count must be positive")
    current = coerce_amount(current_rate, "current_rate") or Decimal("0")
    proposed = coerce_amount(new_rate, "new_rate") or Decimal("0")
    volume = coerce_amount(historical_volume, "historical_volume") or Decimal("0")
    aov = coerce_amount(historical_avg_order_value, "historical_avg_order_value") or Decimal("0")

    countries = sorted({str(code).strip().upper() for code in affected_countries if str(code).strip()})
    share = Decimal(len(countries)) / Decimal(total_country_count)
    order_revenue = volume * aov * share
    current_revenue = (order_revenue * current).quantize(CENT, rounding=ROUND_HALF_UP)
    projected_revenue = (order_revenue * proposed).quantize(CENT, rounding=ROUND_HALF_UP)

    notes: List[str] = []
    if current == 0:
        impact_percentage = None
        change = Decimal("0.00")
        notes.append("Current rate is zero; percentage impact is undefined.")
    else:
        impact_percentage = ((proposed - current) / current * 100).quantize(CENT, rounding=ROUND_HALF_UP)
        change = (volume * aov * (proposed - current) / current * share).quantize(CENT, rounding=ROUND_HALF_UP)

    return RevenueImpact(
        estimated_revenue_change=change,
        impact_percentage=impact_percentage,
        confidence_score=confidence_for(len(countries)),
        current_revenue=current_revenue,
        projected_revenue=projected_revenue,
        affected_countries=countries,
        notes=notes,
    )


class HistoricalVolumeSource:
    """Order volume and average order value per destination country."""

    def volumes(self, country_codes: Sequence[str]) -> Dict[str, CountryVolume]:
        raise NotImplementedError


class StaticVolumeSource(HistoricalVolumeSource):
    def __init__(self, data: Mapping[str, CountryVolume]) -> None:
        self._data = {code.upper(): volume for code, volume in data.items()}

    def volumes(self, country_codes: Sequence[str]) -> Dict[str, CountryVolume]:
        return {
            code: self._data[code]
            for code in (c.upper() for c in country_codes)
            if code in self._data
        }


class HttpVolumeSource(HistoricalVolumeSource):
    """Reads ``{"countries": [{"country_code", "order_count", "avg_order_value"}]}``
    from an analytics endpoint."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = DEFAULT_VOLUME_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def volumes(self, country_codes: Sequence[str]) -> Dict[str, CountryVolume]:
        fetch_start = time.perf_counter()
        response = self.session.get(
            self.endpoint,
            params={"countries": ",".join(country_codes)},
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        result: Dict[str, CountryVolume] = {}
        for entry in payload.get("countries") or []:
            code = str(entry.get("country_code") or "").strip().upper()
            if not code:
                continue
            try:
                result[code] = CountryVolume(
                    country_code=code,
                    order_count=int(entry.get("order_count") or 0),
                    avg_order_value=Decimal(str(entry.get("avg_order_value") or 0)),
                )
            except (InvalidOperation, ValueError) as exc:
                logger.warning("Skipping malformed volume row for %s: %s", code, exc)
        logger.info(
            "Fetched volumes for %s countries in %.3fs", len(result), time.perf_counter() - fetch_start
        )
        return result


def estimate_from_history(
    source: HistoricalVolumeSource,
    current_rate: object,
    new_rate: object,
    affected_countries: Sequence[str],
) -> RevenueImpact:
    """Aggregate volume and order-weighted AOV across the affected countries.

    The fetched volume already covers only the affected countries, so the
    country share is 1.
    """

    countries = sorted({str(code).strip().upper() for code in affected_countries if str(code).strip()})
    volumes = source.volumes(countries)
    total_orders = sum(v.order_count for v in volumes.values())
    if total_orders:
        weighted = sum((v.avg_order_value * v.order_count for v in volumes.values()), Decimal("0"))
        avg_order_value = (weighted / total_orders).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        avg_order_value = Decimal("0")
    impact = estimate_revenue_impact(
        current_rate,
        new_rate,
        countries,
        total_orders,
        avg_order_value,
        max(1, len(countries)),
    )
    missing = [code for code in countries if code not in volumes]
    if missing:
        impact.notes.append(f"No historical volume for: {', '.join(missing)}")
    return impact
