"""Monte Carlo paths of the fitted jump-diffusion residual.

Hourly parameters are annualized with dt = 1/(365·24):

    alpha = a/dt,  kappa = (1 - φ)/dt,  sigma = sqrt(σ²/dt),
    sigma_j = sqrt(σ_j²),  lambda_rate = λ/dt

and each path follows

    x[0] = last residual
    x[i] = alpha·dt + (1 - kappa·dt)·x[i-1] + sigma·sqrt(dt)·n1[i]
           + jump[i]·(μ_j + sigma_j·n2[i])

with jump[i] ~ Bernoulli(lambda_rate·dt) and n1, n2 iid N(0, 1).  The
pseudo-random sampler draws from a numpy Generator; the Sobol sampler maps
a scrambled low-discrepancy sequence through inverse CDFs, so a fixed seed
gives the same matrix on every machine.  Independent regenerations only
agree statistically; compare them with the aggregate tolerance.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.stats import norm, qmc

from reserve_engine.errors import InvalidModelParameters
from reserve_engine.models import FittedModelParameters

LOGGER = logging.getLogger(__name__)

DT_HOURLY = 1.0 / (365.0 * 24.0)

SAMPLERS = ("pseudo", "sobol")


@dataclass(frozen=True)
class SimulatorConfig:
    """Monte Carlo shape and randomness source.

    Parameters
    ----------
    num_paths:
        Columns of the output matrix. Default 4000.
    n_periods:
        Rows (hours) of the output matrix. Default 720.
    sampler:
        ``"pseudo"`` or ``"sobol"``. Default ``"pseudo"``.
    seed:
        Generator / scrambling seed. None means fresh entropy for the
        pseudo sampler and seed 0 for Sobol.
    """

    num_paths: int = 4000
    n_periods: int = 720
    sampler: str = "pseudo"
    seed: Optional[int] = None


def annualized_rates(params: FittedModelParameters, dt: float = DT_HOURLY) -> Tuple[float, float, float, float, float]:
    """(alpha, kappa, sigma, sigma_j, lambda_rate) from hourly parameters."""
    values = params.as_array()
    if not np.all(np.isfinite(values)):
        raise InvalidModelParameters(f"non-finite parameters {values.tolist()}")
    if params.sigma_sq < 0.0:
        raise InvalidModelParameters(f"diffusion variance must be non-negative, got {params.sigma_sq}")
    # Unconstrained descent can leave σ_j² < 0 or λ outside [0, 1].
    sigma_sq_j = max(params.sigma_sq_j, 0.0)
    lam = min(max(params.lambda_, 0.0), 1.0)
    if sigma_sq_j != params.sigma_sq_j or lam != params.lambda_:
        LOGGER.warning(
            "jump component clipped sigma_sq_j=%.3e->%.3e lambda=%.4f->%.4f",
            params.sigma_sq_j, sigma_sq_j, params.lambda_, lam,
        )
    alpha = params.a / dt
    kappa = (1.0 - params.phi) / dt
    sigma = math.sqrt(params.sigma_sq / dt)
    sigma_j = math.sqrt(sigma_sq_j)
    lambda_rate = lam / dt
    return alpha, kappa, sigma, sigma_j, lambda_rate


class PriceSimulator:
    """Generates ``n_periods x num_paths`` residual matrices."""

    def __init__(self, config: SimulatorConfig | None = None) -> None:
        self._config = config or SimulatorConfig()
        if self._config.sampler not in SAMPLERS:
            raise ValueError(f"unknown sampler {self._config.sampler!r}; expected one of {SAMPLERS}")

    @property
    def config(self) -> SimulatorConfig:
        return self._config

    # ── Public API ────────────────────────────────────────────────

    def simulate(self, params: FittedModelParameters, last_residual: float) -> np.ndarray:
        alpha, kappa, sigma, sigma_j, lambda_rate = annualized_rates(params)
        p_jump = lambda_rate * DT_HOURLY
        shape = (self._config.n_periods, self._config.num_paths)

        if self._config.sampler == "sobol":
            jumps, n1, n2 = self._draw_sobol(shape, p_jump)
        else:
            jumps, n1, n2 = self._draw_pseudo(shape, p_jump)

        prices = np.empty(shape, dtype=np.float64)
        prices[0, :] = last_residual
        drift = alpha * DT_HOURLY
        decay = 1.0 - kappa * DT_HOURLY
        diffusion = sigma * math.sqrt(DT_HOURLY)
        for i in range(1, shape[0]):
            prices[i] = (
                drift
                + decay * prices[i - 1]
                + diffusion * n1[i]
                + jumps[i] * (params.mu_j + sigma_j * n2[i])
            )

        LOGGER.debug(
            "simulated residual paths sampler=%s periods=%d paths=%d jump_rate=%.4f",
            self._config.sampler, shape[0], shape[1], float(jumps.mean()),
        )
        return prices

    # ── Samplers ──────────────────────────────────────────────────

    def _draw_pseudo(self, shape: Tuple[int, int], p_jump: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        rng = np.random.default_rng(self._config.seed)
        jumps = (rng.random(shape) < p_jump).astype(np.float64)
        n1 = rng.standard_normal(shape)
        n2 = rng.standard_normal(shape)
        return jumps, n1, n2

    def _draw_sobol(self, shape: Tuple[int, int], p_jump: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        count = shape[0] * shape[1]
        seed = 0 if self._config.seed is None else self._config.seed
        sampler = qmc.Sobol(d=3, scramble=True, seed=seed)
        points = sampler.random_base2(max(1, math.ceil(math.log2(count))))[:count]
        # Bernoulli inverse CDF: a jump whenever u lands in the top p of [0, 1).
        jumps = (points[:, 0] >= 1.0 - p_jump).astype(np.float64).reshape(shape)
        n1 = norm.ppf(points[:, 1]).reshape(shape)
        n2 = norm.ppf(points[:, 2]).reshape(shape)
        return jumps, n1, n2
