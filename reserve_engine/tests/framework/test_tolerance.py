"""Tests for scalar, elementwise and aggregate tolerance checks."""

from __future__ import annotations

import numpy as np
import pytest

from reserve_engine.errors import ToleranceExceeded
from reserve_engine.framework.tolerance import (
    ToleranceKind,
    ToleranceRule,
    ensure_within,
    failing_fraction,
    percentage_difference,
    within_aggregate_tolerance,
    within_tolerance,
    within_tolerance_matrix,
    within_tolerance_vec,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _matrix(rows: int, cols: int) -> np.ndarray:
    """0.25, 0.45, 0.65, ... filled row by row."""
    return 0.25 + 0.20 * np.arange(rows * cols, dtype=np.float64).reshape(rows, cols)


# ---------------------------------------------------------------------------
# Scalar
# ---------------------------------------------------------------------------


class TestScalar:
    def test_percentage_difference(self) -> None:
        assert percentage_difference(200.0, 190.0) == pytest.approx(5.0)

    def test_zero_expected(self) -> None:
        assert percentage_difference(0.0, 0.0) == 0.0
        assert percentage_difference(0.0, 1e-9) == 100.0

    def test_boundary_inclusive(self) -> None:
        assert within_tolerance(100.0, 101.0, 1.0)
        assert not within_tolerance(100.0, 101.5, 1.0)


# ---------------------------------------------------------------------------
# Elementwise
# ---------------------------------------------------------------------------


class TestElementwise:
    def test_vector_pass(self) -> None:
        assert within_tolerance_vec([1.0, 2.0, 3.0], [1.0001, 2.0, 3.0], 1.0)

    def test_vector_fail(self) -> None:
        assert not within_tolerance_vec([1.0, 2.0, 3.0], [1.1, 2.0, 3.0], 1.0)

    def test_shape_mismatch_fails(self) -> None:
        assert not within_tolerance_vec([1.0, 2.0], [1.0, 2.0, 3.0], 1.0)

    def test_nan_never_passes(self) -> None:
        assert not within_tolerance_vec([1.0, float("nan")], [1.0, float("nan")], 1.0)

    def test_zero_elements(self) -> None:
        assert within_tolerance_vec([0.0, 1.0], [0.0, 1.0], 0.0)
        assert not within_tolerance_vec([0.0, 1.0], [0.5, 1.0], 50.0)

    def test_matrix_just_inside(self) -> None:
        expected = _matrix(10, 20)
        actual = expected.copy()
        actual[5, 5] *= 0.951
        assert within_tolerance_matrix(expected, actual, 5.0)

    def test_matrix_just_outside(self) -> None:
        expected = _matrix(10, 20)
        actual = expected.copy()
        actual[5, 5] *= 0.949
        assert not within_tolerance_matrix(expected, actual, 5.0)


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


class TestAggregate:
    # 14 of 300 elements off by 11%: 4.67% failing, strictly below 5%.
    FOURTEEN = [(0, c) for c in range(6)] + [(1, c) for c in range(6)] + [(2, 0), (2, 1)]

    def _modified(self, cells: list) -> tuple:
        expected = _matrix(10, 30)
        actual = expected.copy()
        for r, c in cells:
            actual[r, c] = actual[r, c] * 111.0 / 100.0
        return expected, actual

    def test_fourteen_pass(self) -> None:
        expected, actual = self._modified(self.FOURTEEN)
        assert failing_fraction(expected, actual, 10.0) == pytest.approx(14 / 3)
        assert within_aggregate_tolerance(expected, actual, 10.0, 5.0)

    def test_fifteen_fail(self) -> None:
        expected, actual = self._modified(self.FOURTEEN + [(2, 2)])
        assert failing_fraction(expected, actual, 10.0) == pytest.approx(5.0)
        assert not within_aggregate_tolerance(expected, actual, 10.0, 5.0)

    def test_shape_mismatch_fails(self) -> None:
        assert not within_aggregate_tolerance(np.ones((2, 2)), np.ones((2, 3)), 10.0, 5.0)


# ---------------------------------------------------------------------------
# ensure_within
# ---------------------------------------------------------------------------


class TestEnsureWithin:
    def test_rule_constructors(self) -> None:
        assert ToleranceRule.elementwise(1.0).kind is ToleranceKind.ELEMENTWISE
        rule = ToleranceRule.aggregate(10.0, 5.0)
        assert rule.kind is ToleranceKind.AGGREGATE
        assert rule.matrix_percent == 5.0

    def test_scalar_pass(self) -> None:
        ensure_within(ToleranceRule.elementwise(1.0), 10.0, 10.05, "twap")

    def test_scalar_failure_carries_values(self) -> None:
        with pytest.raises(ToleranceExceeded) as info:
            ensure_within(ToleranceRule.elementwise(1.0), 10.0, 11.0, "twap")
        assert info.value.label == "twap"
        assert info.value.expected == 10.0
        assert info.value.actual == 11.0
        assert info.value.tolerance == 1.0

    def test_vector_failure_names_index(self) -> None:
        with pytest.raises(ToleranceExceeded, match="index 2"):
            ensure_within(ToleranceRule.elementwise(1e-5), [1.0, 2.0, 3.0], [1.0, 2.0, 3.5], "twap_7d")

    def test_aggregate(self) -> None:
        expected = _matrix(10, 30)
        actual = expected * 1.5
        with pytest.raises(ToleranceExceeded, match="100.0000%"):
            ensure_within(ToleranceRule.aggregate(10.0, 5.0), expected, actual, "simulated_log_prices")
        ensure_within(ToleranceRule.aggregate(60.0, 5.0), expected, actual, "simulated_log_prices")

    def test_shape_mismatch_raises(self) -> None:
        with pytest.raises(ToleranceExceeded):
            ensure_within(ToleranceRule.elementwise(1.0), [1.0], [1.0, 2.0], "pt")
