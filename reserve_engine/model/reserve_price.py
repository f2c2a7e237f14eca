"""Reserve price of a capped call on the terminal 7-day TWAP.

Simulated residual paths are lifted back to log-fee space (forward season
+ last trend value + a stochastic macro drift), exponentiated and averaged
over the final week of each path.  The payoff is

    max(min(terminal_twap, cap_ratio·strike) - strike, 0)

with ``strike`` the last 7-day TWAP, and the reserve price is the
discounted mean payoff ``exp(-discount_rate)·mean(payoff)``.

Usage::

    log_prices = simulated_log_prices(paths, decomposition, twap, start, end, n_history)
    price = reserve_price_from_log_prices(log_prices, twap)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from reserve_engine.errors import EmptySeries
from reserve_engine.model.decomposition import SECONDS_PER_HOUR, season_matrix
from reserve_engine.models import DecompositionResult

HOURS_PER_WEEK = 168
WEEKS_PER_YEAR = 52.0
MACRO_DT = 1.0 / 24.0


@dataclass(frozen=True)
class PricingConfig:
    """Option terms.

    Parameters
    ----------
    cap_ratio:
        Cap as a multiple of the strike. Default 1.3.
    discount_rate:
        Continuous discount applied once to the mean payoff. Default 0.05.
    annual_drift:
        Annual drift of the macro trend; the weekly mean is
        ``annual_drift / 52``. Default 0.05.
    terminal_window:
        Hours averaged at the end of each path. Default 168.
    seed:
        Seed for the macro drift shocks; None draws fresh entropy.
    """

    cap_ratio: float = 1.3
    discount_rate: float = 0.05
    annual_drift: float = 0.05
    terminal_window: int = HOURS_PER_WEEK
    seed: Optional[int] = None


def macro_volatility(twap_7d: np.ndarray) -> float:
    """Weekly volatility of log 7-day TWAP changes (population stdev·sqrt(168))."""
    log_returns = np.diff(np.log(np.asarray(twap_7d, dtype=np.float64)))
    if log_returns.size == 0:
        raise EmptySeries("need at least two 7-day TWAP values for macro volatility")
    return float(np.std(log_returns) * math.sqrt(HOURS_PER_WEEK))


def stochastic_drift(
    n_periods: int,
    num_paths: int,
    sigma: float,
    annual_drift: float = 0.05,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Cumulative GBM-style log drift, one column per path."""
    rng = rng or np.random.default_rng()
    mu = annual_drift / WEEKS_PER_YEAR
    shocks = rng.normal(0.0, sigma * math.sqrt(MACRO_DT), size=(n_periods, num_paths))
    return np.cumsum((mu - 0.5 * sigma ** 2) * MACRO_DT + shocks, axis=0)


def simulated_log_prices(
    residual_paths: np.ndarray,
    decomposition: DecompositionResult,
    twap_7d: np.ndarray,
    start_timestamp: int,
    end_timestamp: int,
    history_length: int,
    config: PricingConfig | None = None,
) -> np.ndarray:
    """Full log-fee paths from simulated residuals."""
    cfg = config or PricingConfig()
    paths = np.asarray(residual_paths, dtype=np.float64)
    n_periods, num_paths = paths.shape

    total_hours = (int(end_timestamp) - int(start_timestamp)) // int(SECONDS_PER_HOUR)
    forward_hours = total_hours + np.arange(n_periods, dtype=np.float64)
    season = season_matrix(forward_hours) @ decomposition.season_params

    sigma = macro_volatility(twap_7d)
    drift = stochastic_drift(
        n_periods, num_paths, sigma, cfg.annual_drift, np.random.default_rng(cfg.seed),
    )
    final_trend = decomposition.slope * (history_length - 1) + decomposition.intercept
    return paths + season[:, np.newaxis] + final_trend + drift


def terminal_twap(prices: np.ndarray, window: int = HOURS_PER_WEEK) -> np.ndarray:
    """Mean of the last ``min(n_periods, window)`` rows of each column."""
    p = np.asarray(prices, dtype=np.float64)
    start = max(p.shape[0] - window, 0)
    return p[start:].mean(axis=0)


def reserve_price_from_log_prices(
    log_prices: np.ndarray,
    twap_7d: np.ndarray,
    config: PricingConfig | None = None,
) -> float:
    """Payoff and discounting on an already complete log-price matrix."""
    cfg = config or PricingConfig()
    t = np.asarray(twap_7d, dtype=np.float64)
    if t.size == 0:
        raise EmptySeries("7-day TWAP series is empty; no strike")
    strike = float(t[-1])
    cap = cfg.cap_ratio * strike
    final = terminal_twap(np.exp(np.asarray(log_prices, dtype=np.float64)), cfg.terminal_window)
    payoffs = np.maximum(np.minimum(final, cap) - strike, 0.0)
    return float(math.exp(-cfg.discount_rate) * payoffs.mean())


def calculate_reserve_price(
    residual_paths: np.ndarray,
    decomposition: DecompositionResult,
    twap_7d: np.ndarray,
    start_timestamp: int,
    end_timestamp: int,
    history_length: int,
    config: PricingConfig | None = None,
) -> float:
    if np.asarray(twap_7d).size == 0:
        raise EmptySeries("7-day TWAP series is empty; no strike")
    log_prices = simulated_log_prices(
        residual_paths, decomposition, twap_7d,
        start_timestamp, end_timestamp, history_length, config,
    )
    return reserve_price_from_log_prices(log_prices, twap_7d, config)
