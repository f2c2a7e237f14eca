"""Tests for TWAP, 7-day TWAP and max-return."""

from __future__ import annotations

import numpy as np
import pytest

from reserve_engine.errors import EmptySeries, InsufficientData
from reserve_engine.model.statistics import (
    calculate_twap,
    max_return,
    period_returns,
    trailing_twap,
    twap_7d,
)


class TestCalculateTwap:
    def test_mean(self) -> None:
        assert calculate_twap(np.array([1.0, 2.0, 3.0, 6.0])) == pytest.approx(3.0)

    def test_empty(self) -> None:
        with pytest.raises(EmptySeries):
            calculate_twap(np.array([]))


class TestTwap7d:
    def test_same_length_as_input(self) -> None:
        values = np.arange(1.0, 721.0)
        assert twap_7d(values).shape == (720,)

    def test_backfills_warm_up(self) -> None:
        values = np.arange(1.0, 301.0)
        out = twap_7d(values, window=168)
        first_full = values[:168].mean()
        assert np.allclose(out[:168], first_full)
        assert out[168] == pytest.approx(values[1:169].mean())
        assert out[-1] == pytest.approx(values[-168:].mean())

    def test_window_equal_to_length(self) -> None:
        out = twap_7d(np.full(168, 4.0))
        assert np.allclose(out, 4.0)

    def test_too_short(self) -> None:
        with pytest.raises(InsufficientData):
            twap_7d(np.ones(167))


class TestTrailingTwap:
    def test_window_excludes_current_point(self) -> None:
        out = trailing_twap(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), 2)
        # means of [1,2], [2,3], [3,4]
        assert out.tolist() == [1.5, 2.5, 3.5]

    def test_period_returns(self) -> None:
        out = period_returns(np.array([1.0, 2.0, 4.0, 2.0]), 2)
        assert out.tolist() == [3.0, 0.0]


class TestMaxReturn:
    def test_counts_with_default_windows(self) -> None:
        values = np.linspace(10.0, 20.0, 1440)
        twap = trailing_twap(values, 240)
        assert twap.shape == (1200,)
        assert period_returns(twap, 240).shape == (960,)

    def test_rising_series(self) -> None:
        values = np.linspace(10.0, 20.0, 1440)
        twap = trailing_twap(values, 240)
        expected = float(np.max(twap[240:] / twap[:-240] - 1.0))
        assert max_return(values) == pytest.approx(expected)
        assert max_return(values) > 0.0

    def test_flat_series_is_zero(self) -> None:
        assert max_return(np.full(1440, 7.0)) == pytest.approx(0.0)

    def test_minimum_length(self) -> None:
        with pytest.raises(InsufficientData):
            max_return(np.ones(1439))

    def test_longer_input_allowed(self) -> None:
        assert max_return(np.ones(2000)) == pytest.approx(0.0)
