"""Error taxonomy shared by the duty and fee resolution engine."""

from __future__ import annotations

from typing import Optional


class DutyEngineError(Exception):
    """Base error for rate resolution and administration."""


class NoRateConfigured(DutyEngineError):
    """Raised when resolution exhausted every tier without an active override."""

    def __init__(
        self,
        service_id: str,
        country_code: str,
        classification_code: Optional[str] = None,
    ) -> None:
        detail = f"No active rate configured for service '{service_id}' in {country_code}"
        if classification_code:
            detail += f" (classification {classification_code})"
        super().__init__(detail)
        self.service_id = service_id
        self.country_code = country_code
        self.classification_code = classification_code


class UnknownService(DutyEngineError):
    """Raised when a service id or key is not present in the store."""

    def __init__(self, service_id: str) -> None:
        super().__init__(f"Unknown service: {service_id}")
        self.service_id = service_id


class InvalidScope(DutyEngineError):
    """Raised when a scope references an unknown or malformed country, region or continent."""


class InvalidRate(DutyEngineError):
    """Raised for negative rates, negative bounds or inverted min/max amounts."""


class InvalidValuationInput(DutyEngineError):
    """Raised when valuation inputs are negative, non-numeric or name an unknown policy."""


class StoreError(DutyEngineError):
    """Raised when the override store rejects or fails a query."""


class StoreUnavailable(StoreError):
    """Raised when the override store or cache store cannot be reached in time."""


class MinimumValuationMissing(UserWarning):
    """Emitted when the minimum valuation policy had no configured minimum to apply."""
