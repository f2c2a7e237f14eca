"""TWAP, rolling 7-day TWAP and max-return over hourly fee values.

All windows are trailing and counted in observations (hours).
"""

from __future__ import annotations

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from reserve_engine.errors import EmptySeries, InsufficientData

HOURS_PER_WEEK = 168


def calculate_twap(values: np.ndarray) -> float:
    """Plain mean over a window of hourly values."""
    v = np.asarray(values, dtype=np.float64)
    if v.size == 0:
        raise EmptySeries("cannot take the TWAP of an empty window")
    return float(np.sum(v) / v.size)


def twap_7d(values: np.ndarray, window: int = HOURS_PER_WEEK) -> np.ndarray:
    """Rolling mean over ``window`` observations, same length as the input.

    The first ``window - 1`` entries have no full window yet and are
    backfilled with the first full-window mean.
    """
    v = np.asarray(values, dtype=np.float64)
    n = v.shape[0]
    if n < window:
        raise InsufficientData(window, n, "7-day TWAP")
    means = sliding_window_view(v, window).mean(axis=1)
    return np.concatenate([np.full(window - 1, means[0]), means])


def trailing_twap(values: np.ndarray, window: int) -> np.ndarray:
    """Means of ``values[i - window:i]`` for ``i`` in ``[window, n)``.

    The window ends before ``i``, so the output has ``n - window`` entries.
    """
    v = np.asarray(values, dtype=np.float64)
    n = v.shape[0]
    if n <= window:
        raise InsufficientData(window + 1, n, "trailing TWAP")
    return sliding_window_view(v[:-1], window).mean(axis=1)


def period_returns(twap: np.ndarray, period: int) -> np.ndarray:
    """Simple returns ``twap[i] / twap[i - period] - 1``."""
    t = np.asarray(twap, dtype=np.float64)
    if t.shape[0] <= period:
        raise InsufficientData(period + 1, t.shape[0], "period returns")
    return t[period:] / t[:-period] - 1.0


def max_return(
    values: np.ndarray,
    min_length: int = 1440,
    twap_window: int = 240,
    period: int = 240,
) -> float:
    """Largest ``period``-hour return of the trailing ``twap_window`` TWAP.

    With 1440 hourly points and 240-hour windows: 1200 TWAP values and
    960 returns.
    """
    v = np.asarray(values, dtype=np.float64)
    if v.shape[0] < min_length:
        raise InsufficientData(min_length, v.shape[0], "max return")
    returns = period_returns(trailing_twap(v, twap_window), period)
    return float(np.max(returns))
