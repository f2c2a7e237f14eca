"""Mean-reverting jump-diffusion fit for deseasonalized log fees.

Transition density for consecutive residuals (pt_1 -> pt):

    f(pt | pt_1) = λ·N(pt; a + φ·pt_1 + μ_j, σ² + σ_j²)
                 + (1 - λ)·N(pt; a + φ·pt_1, σ²)

Parameters ``[a, φ, μ_j, σ², σ_j², λ]`` minimize the negative
log-likelihood with plain gradient descent: forward-difference gradient,
steepest-descent direction and Armijo backtracking.  The backtracking loop
is capped at ``line_search_max_halvings`` step halvings.

Usage::

    estimator = JumpDiffusionEstimator(EstimatorConfig(max_iterations=2400))
    result = estimator.fit(decomposition.residuals)
    if not result.converged:
        ...  # low-confidence parameters, still usable
    ok = verify_saddle_point(result.params.as_array(), pt, pt_1, 5e-2)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Tuple

import numpy as np

from reserve_engine.errors import (
    InsufficientData,
    LineSearchExhausted,
    NonConvergence,
    NonFiniteGradient,
)
from reserve_engine.models import FittedModelParameters, OptimizationResult

LOGGER = logging.getLogger(__name__)

_EPS = float(np.finfo(np.float64).eps)

# NLL floor keeps log() finite when a residual falls far outside both modes.
_PDF_FLOOR = 1e-10

# Armijo constants.
_CONTROL = 0.5
_INITIAL_STEP = 1.0
_DECAY = 0.5

# Empirical starting point for a, φ, μ_j; variances start at var(pt), λ at 0.2.
_SEED_A = -3.928e-2
_SEED_PHI = 2.873e-4
_SEED_MU_J = 4.617e-2
_SEED_LAMBDA = 0.2

Objective = Callable[[np.ndarray], float]


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EstimatorConfig:
    """Optimizer limits.

    Parameters
    ----------
    tolerance:
        Max |gradient_i| at which a position counts as a saddle point.
        Default 1e-4.
    max_iterations:
        Outer descent iterations before giving up without error.
        Default 2400.
    line_search_max_halvings:
        Step halvings per backtracking search; 0.5**60 is below machine
        epsilon relative to the unit start. Default 60.
    """

    tolerance: float = 1e-4
    max_iterations: int = 2400
    line_search_max_halvings: int = 60


# ---------------------------------------------------------------------------
# Likelihood
# ---------------------------------------------------------------------------


def transition_pairs(residuals: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Lag-1 pairs ``(pt, pt_1) = (r[1:], r[:-1])``."""
    r = np.asarray(residuals, dtype=np.float64)
    if r.shape[0] < 2:
        raise InsufficientData(2, r.shape[0], "transition pairs")
    return r[1:], r[:-1]


def _normal_pdf(diff: np.ndarray, var: float) -> np.ndarray:
    return np.exp(-(diff ** 2) / (2.0 * var)) / np.sqrt(2.0 * math.pi * var)


def mrjpdf(params: np.ndarray, pt: np.ndarray, pt_1: np.ndarray) -> np.ndarray:
    a, phi, mu_j, sigma_sq, sigma_sq_j, lam = params
    mean = a + phi * pt_1
    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        jump = lam * _normal_pdf(pt - (mean + mu_j), sigma_sq + sigma_sq_j)
        diffusion = (1.0 - lam) * _normal_pdf(pt - mean, sigma_sq)
    return jump + diffusion


def neg_log_likelihood(params: np.ndarray, pt: np.ndarray, pt_1: np.ndarray) -> float:
    with np.errstate(invalid="ignore", divide="ignore"):
        return float(-np.sum(np.log(mrjpdf(params, pt, pt_1) + _PDF_FLOOR)))


def initial_position(pt: np.ndarray) -> np.ndarray:
    """Fixed seed with both variances set to the mean square of ``pt``."""
    var_pt = float(np.mean(np.asarray(pt, dtype=np.float64) ** 2))
    return np.array([_SEED_A, _SEED_PHI, _SEED_MU_J, var_pt, var_pt, _SEED_LAMBDA])


# ---------------------------------------------------------------------------
# Optimizer primitives
# ---------------------------------------------------------------------------


def gradient(objective: Objective, position: np.ndarray, current: float | None = None) -> np.ndarray:
    """Forward-difference gradient with step ``sqrt(eps·|x_i|)``."""
    x = np.array(position, dtype=np.float64)
    if current is None:
        current = objective(x)
    grad = np.empty_like(x)
    for i, x_i in enumerate(position):
        h = _EPS * 1e10 if x_i == 0.0 else math.sqrt(_EPS * abs(x_i))
        if not math.isfinite(h):
            raise NonFiniteGradient(f"finite-difference step for parameter {i} is {h}")
        x[i] = x_i + h
        forward = objective(x)
        x[i] = x_i
        d_i = (forward - current) / h
        if not math.isfinite(d_i):
            raise NonFiniteGradient(f"gradient component {i} is {d_i} at {list(position)}")
        grad[i] = d_i
    return grad


def is_saddle_point(grad: np.ndarray, tolerance: float) -> bool:
    return bool(np.all(np.abs(grad) <= tolerance))


def line_search(
    objective: Objective,
    position: np.ndarray,
    direction: np.ndarray,
    value: float,
    grad: np.ndarray,
    max_halvings: int = 60,
) -> np.ndarray:
    """Armijo backtracking from a unit step.

    Accepts step ``s`` when ``f(x + s·d) <= f(x) - s·c·(-g·d)``.  Raises
    ``LineSearchExhausted`` once the step has been halved
    ``max_halvings`` times without meeting the condition.
    """
    slope = -_CONTROL * float(np.dot(grad, direction))
    if not slope > 0.0:
        raise NonConvergence(f"direction is not a descent direction (g·d = {-slope / _CONTROL})")

    step = _INITIAL_STEP
    for _ in range(max_halvings + 1):
        candidate = position + step * direction
        if objective(candidate) <= value - step * slope:
            return candidate
        step *= _DECAY
    raise LineSearchExhausted(max_halvings, position)


def minimize(
    objective: Objective,
    start: np.ndarray,
    config: EstimatorConfig | None = None,
) -> Tuple[np.ndarray, float, np.ndarray, int, str]:
    """Steepest descent until the gradient is within tolerance.

    Returns
    -------
    (position, value, gradient, iterations, stop_reason) where
    ``stop_reason`` is ``"saddle_point"``, ``"max_iterations"`` or
    ``"line_search_exhausted"``.
    """
    cfg = config or EstimatorConfig()
    position = np.array(start, dtype=np.float64)
    value = objective(position)
    iterations = 0
    while True:
        grad = gradient(objective, position, value)
        if is_saddle_point(grad, cfg.tolerance):
            return position, value, grad, iterations, "saddle_point"
        if iterations >= cfg.max_iterations:
            return position, value, grad, iterations, "max_iterations"
        try:
            position = line_search(
                objective, position, -grad, value, grad, cfg.line_search_max_halvings,
            )
        except LineSearchExhausted:
            return position, value, grad, iterations, "line_search_exhausted"
        value = objective(position)
        iterations += 1


def verify_saddle_point(
    position: np.ndarray,
    pt: np.ndarray,
    pt_1: np.ndarray,
    tolerance: float,
) -> bool:
    """Recompute the gradient at a claimed optimum and check it is flat."""
    objective = _nll_objective(pt, pt_1)
    return is_saddle_point(gradient(objective, np.asarray(position, dtype=np.float64)), tolerance)


def _nll_objective(pt: np.ndarray, pt_1: np.ndarray) -> Objective:
    pt = np.asarray(pt, dtype=np.float64)
    pt_1 = np.asarray(pt_1, dtype=np.float64)
    return lambda params: neg_log_likelihood(params, pt, pt_1)


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------


class JumpDiffusionEstimator:
    """Fits :class:`FittedModelParameters` to decomposition residuals."""

    def __init__(self, config: EstimatorConfig | None = None) -> None:
        self._config = config or EstimatorConfig()

    @property
    def config(self) -> EstimatorConfig:
        return self._config

    def fit(self, residuals: np.ndarray) -> OptimizationResult:
        pt, pt_1 = transition_pairs(residuals)
        return self.fit_pairs(pt, pt_1)

    def fit_pairs(self, pt: np.ndarray, pt_1: np.ndarray) -> OptimizationResult:
        objective = _nll_objective(pt, pt_1)
        position, value, grad, iterations, reason = minimize(
            objective, initial_position(pt), self._config,
        )
        converged = reason == "saddle_point"
        if converged:
            LOGGER.info(
                "jump-diffusion fit converged iterations=%d nll=%.6f", iterations, value,
            )
        else:
            LOGGER.warning(
                "jump-diffusion fit stopped reason=%s iterations=%d nll=%.6f max_grad=%.3e",
                reason, iterations, value, float(np.max(np.abs(grad))),
            )
        return OptimizationResult(
            params=FittedModelParameters.from_array(position),
            objective=value,
            gradient=grad,
            iterations=iterations,
            converged=converged,
            stop_reason=reason,
        )
