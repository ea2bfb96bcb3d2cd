"""Dutiable base computation under the supported valuation policies."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional

from .errors import InvalidValuationInput, MinimumValuationMissing

logger = logging.getLogger(__name__)


class ValuationPolicy(str, Enum):
    PRODUCT_VALUE = "product_value"
    MINIMUM_VALUATION = "minimum_valuation"
    HIGHER_OF_BOTH = "higher_of_both"


@dataclass
class ValuationResult:
    base_value: Decimal
    policy: ValuationPolicy
    minimum_applied: bool = False
    notes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def parse_policy(value: object) -> ValuationPolicy:
    if isinstance(value, ValuationPolicy):
        return value
    cleaned = str(value or "").strip().lower()
    try:
        return ValuationPolicy(cleaned)
    except ValueError as exc:
        raise InvalidValuationInput(f"Unknown valuation policy: {value!r}") from exc


def _coerce_value(value: Optional[object], label: str) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidValuationInput(f"{label} must be numeric, got {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidValuationInput(f"{label} must be numeric, got {value!r}") from exc
    if not amount.is_finite():
        raise InvalidValuationInput(f"{label} must be finite, got {value!r}")
    if amount < 0:
        raise InvalidValuationInput(f"{label} must be >= 0, got {amount}")
    return amount


def evaluate_valuation(
    declared_value: object,
    minimum_valuation: Optional[object],
    policy: object,
) -> ValuationResult:
    """Return the dutiable base together with notes on how it was derived.

    Inputs are validated before any policy runs. The minimum valuation policy
    never fails: without a configured minimum it falls back to the declared
    value and emits ``MinimumValuationMissing``.
    """

    resolved_policy = parse_policy(policy)
    declared = _coerce_value(declared_value, "declared_value")
    if declared is None:
        raise InvalidValuationInput("declared_value is required")
    minimum = _coerce_value(minimum_valuation, "minimum_valuation")

    if resolved_policy is ValuationPolicy.PRODUCT_VALUE:
        return ValuationResult(
            base_value=declared,
            policy=resolved_policy,
            notes=["Dutiable base is the declared product value."],
        )

    if resolved_policy is ValuationPolicy.MINIMUM_VALUATION:
        if minimum is None:
            message = "No minimum valuation configured; falling back to declared product value."
            warnings.warn(message, MinimumValuationMissing, stacklevel=2)
            logger.warning("Minimum valuation missing, using declared value %s", declared)
            return ValuationResult(
                base_value=declared,
                policy=resolved_policy,
                notes=[message],
                warnings=[message],
            )
        return ValuationResult(
            base_value=minimum,
            policy=resolved_policy,
            minimum_applied=True,
            notes=[f"Dutiable base is the configured minimum valuation {minimum}."],
        )

    # higher_of_both
    if minimum is None or minimum <= declared:
        note = (
            "No minimum valuation configured; using declared value."
            if minimum is None
            else f"Declared value {declared} is at least the minimum valuation {minimum}."
        )
        return ValuationResult(base_value=declared, policy=resolved_policy, notes=[note])
    return ValuationResult(
        base_value=minimum,
        policy=resolved_policy,
        minimum_applied=True,
        notes=[f"Minimum valuation {minimum} exceeds declared value {declared}."],
    )


def compute_dutiable_base(
    declared_value: object,
    minimum_valuation: Optional[object],
    policy: object,
) -> Decimal:
    return evaluate_valuation(declared_value, minimum_valuation, policy).base_value
