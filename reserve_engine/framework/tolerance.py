"""Tolerance-bounded equivalence checks between independent computations.

All tolerances are percentages of the expected value.  Three shapes:

* scalar: ``|expected - actual| / |expected| * 100 <= tolerance``
  (when ``expected`` is zero the difference is 100% unless ``actual`` is
  zero too);
* elementwise: every element of a vector/matrix passes the scalar rule;
* aggregate: the share of elements failing an elementwise tolerance must be
  strictly below a separate matrix tolerance.  Monte Carlo outputs only
  agree statistically, so this is the check used for simulated matrices.

Usage::

    if not within_tolerance_vec(host_twap_7d, recomputed, 1e-5):
        ...
    ensure_within(ToleranceRule.elementwise(1e-5), host, recomputed, "twap_7d")
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np

from reserve_engine.errors import ToleranceExceeded

ArrayLike = Sequence[float] | np.ndarray


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------


class ToleranceKind(str, Enum):
    ELEMENTWISE = "elementwise"
    AGGREGATE = "aggregate"


@dataclass(frozen=True)
class ToleranceRule:
    """How two values are compared.

    Parameters
    ----------
    kind:
        ``elementwise`` (scalars are one-element vectors) or ``aggregate``.
    threshold_percent:
        Elementwise tolerance, percent.
    matrix_percent:
        Aggregate only: maximum share of failing elements, percent
        (strict ``<``).
    """

    kind: ToleranceKind
    threshold_percent: float
    matrix_percent: float = 0.0

    @classmethod
    def elementwise(cls, threshold_percent: float) -> "ToleranceRule":
        return cls(ToleranceKind.ELEMENTWISE, threshold_percent)

    @classmethod
    def aggregate(cls, threshold_percent: float, matrix_percent: float) -> "ToleranceRule":
        return cls(ToleranceKind.AGGREGATE, threshold_percent, matrix_percent)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def percentage_difference(expected: float, actual: float) -> float:
    if expected != 0.0:
        return abs(expected - actual) / abs(expected) * 100.0
    return 0.0 if actual == 0.0 else 100.0


def _percentage_differences(expected: ArrayLike, actual: ArrayLike) -> np.ndarray:
    e = np.asarray(expected, dtype=np.float64)
    a = np.asarray(actual, dtype=np.float64)
    if e.shape != a.shape:
        raise ToleranceExceeded(
            "shape", tolerance=None, detail=f"expected shape {e.shape}, got {a.shape}"
        )
    diff = np.abs(e - a)
    denom = np.abs(e)
    out = np.where(a == 0.0, 0.0, 100.0)
    nonzero = denom != 0.0
    out = np.where(nonzero, np.divide(diff, denom, out=np.zeros_like(diff), where=nonzero) * 100.0, out)
    # NaN on either side never passes.
    return np.where(np.isnan(e) | np.isnan(a), np.inf, out)


def within_tolerance(expected: float, actual: float, tolerance: float) -> bool:
    return percentage_difference(expected, actual) <= tolerance


def within_tolerance_vec(expected: ArrayLike, actual: ArrayLike, tolerance: float) -> bool:
    try:
        diffs = _percentage_differences(expected, actual)
    except ToleranceExceeded:
        return False
    return bool(np.all(diffs <= tolerance))


within_tolerance_matrix = within_tolerance_vec


def failing_fraction(expected: ArrayLike, actual: ArrayLike, tolerance: float) -> float:
    """Percent of elements whose difference exceeds ``tolerance``."""
    diffs = _percentage_differences(expected, actual)
    if diffs.size == 0:
        return 0.0
    return float(np.count_nonzero(diffs > tolerance)) / diffs.size * 100.0


def within_aggregate_tolerance(
    expected: ArrayLike,
    actual: ArrayLike,
    element_tolerance: float,
    matrix_tolerance: float,
) -> bool:
    try:
        share = failing_fraction(expected, actual, element_tolerance)
    except ToleranceExceeded:
        return False
    return share < matrix_tolerance


def ensure_within(
    rule: ToleranceRule,
    expected: float | ArrayLike,
    actual: float | ArrayLike,
    label: str,
) -> None:
    """Raise ``ToleranceExceeded`` unless ``actual`` matches ``expected`` under ``rule``."""
    if rule.kind is ToleranceKind.AGGREGATE:
        share = failing_fraction(expected, actual, rule.threshold_percent)
        if not share < rule.matrix_percent:
            raise ToleranceExceeded(
                label,
                tolerance=rule.matrix_percent,
                detail=f"{share:.4f}% of elements beyond {rule.threshold_percent}%",
            )
        return

    diffs = _percentage_differences(expected, actual)
    if diffs.size and not np.all(diffs <= rule.threshold_percent):
        worst = int(np.argmax(diffs))
        e = np.ravel(np.asarray(expected, dtype=np.float64))
        a = np.ravel(np.asarray(actual, dtype=np.float64))
        if diffs.ndim == 0:
            raise ToleranceExceeded(
                label, expected=float(e[0]), actual=float(a[0]),
                tolerance=rule.threshold_percent,
            )
        raise ToleranceExceeded(
            label,
            tolerance=rule.threshold_percent,
            detail=f"index {worst}: expected={e[worst]} actual={a[worst]}",
        )
