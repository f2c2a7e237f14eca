"""Trend and seasonality removal for log fee series.

    log(value_i) = slope·i + intercept + C(t_i)·season_params + residual_i

where ``i`` is the integer observation index, ``t_i`` the elapsed hours
since the first timestamp and ``C`` the 12-column season basis (daily
harmonics 2π/24, 4π/24, 8π/24 and weekly 2π/168, 4π/168, 8π/168, each as
a sin/cos pair).  Deterministic for a given input, which lets a verifier
recompute the decomposition and compare it elementwise.
"""

from __future__ import annotations

import numpy as np

from reserve_engine.errors import InsufficientData, SingularMatrix
from reserve_engine.models import DecompositionResult, FeeSeries

SECONDS_PER_HOUR = 3600.0
MIN_OBSERVATIONS = 168

# (period hours, harmonic) in column-pair order.
_HARMONICS = ((24.0, 1), (24.0, 2), (24.0, 4), (168.0, 1), (168.0, 2), (168.0, 4))

# Singular-value cutoff for the season solve; effectively keeps every mode.
_LSTSQ_RCOND = 1e-300


def elapsed_hours(timestamps: np.ndarray) -> np.ndarray:
    ts = np.asarray(timestamps, dtype=np.int64)
    return (ts - ts[0]).astype(np.float64) / SECONDS_PER_HOUR


def season_matrix(hours: np.ndarray) -> np.ndarray:
    """``len(hours) x 12`` basis: [sin, cos] per harmonic."""
    t = np.asarray(hours, dtype=np.float64)
    cols = []
    for period, k in _HARMONICS:
        w = 2.0 * np.pi * k * t / period
        cols.append(np.sin(w))
        cols.append(np.cos(w))
    return np.column_stack(cols)


def fit_trend(log_values: np.ndarray) -> tuple[float, float]:
    """OLS of ``log_values`` on index via the normal equations.

    Returns
    -------
    (slope, intercept)
    """
    y = np.asarray(log_values, dtype=np.float64)
    n = y.shape[0]
    x = np.column_stack([np.ones(n), np.arange(n, dtype=np.float64)])
    xtx = x.T @ x
    try:
        inv = np.linalg.inv(xtx)
    except np.linalg.LinAlgError as exc:
        raise SingularMatrix("normal-equation matrix X'X is singular") from exc
    if not np.all(np.isfinite(inv)):
        raise SingularMatrix("normal-equation matrix X'X is singular")
    intercept, slope = inv @ x.T @ y
    return float(slope), float(intercept)


def trend_line(slope: float, intercept: float, n: int) -> np.ndarray:
    return slope * np.arange(n, dtype=np.float64) + intercept


def decompose(series: FeeSeries) -> DecompositionResult:
    """Detrend and deseasonalize ``log(series.values)``."""
    n = len(series)
    if n < MIN_OBSERVATIONS:
        raise InsufficientData(MIN_OBSERVATIONS, n, "decomposition")

    log_values = np.log(series.values)
    slope, intercept = fit_trend(log_values)
    detrended = log_values - trend_line(slope, intercept, n)

    basis = season_matrix(elapsed_hours(series.timestamps))
    season_params, *_ = np.linalg.lstsq(basis, detrended, rcond=_LSTSQ_RCOND)
    residuals = detrended - basis @ season_params

    return DecompositionResult(
        slope=slope,
        intercept=intercept,
        season_params=np.asarray(season_params, dtype=np.float64),
        residuals=residuals,
    )


def reconstruct_log_values(result: DecompositionResult, timestamps: np.ndarray) -> np.ndarray:
    """Inverse of :func:`decompose`; reproduces ``log(values)`` up to rounding."""
    n = result.residuals.shape[0]
    basis = season_matrix(elapsed_hours(timestamps))
    return trend_line(result.slope, result.intercept, n) + basis @ result.season_params + result.residuals
