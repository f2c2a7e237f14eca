"""Tests for the Monte Carlo residual simulator."""

from __future__ import annotations

import numpy as np
import pytest

from reserve_engine.errors import InvalidModelParameters
from reserve_engine.model.simulation import (
    DT_HOURLY,
    PriceSimulator,
    SimulatorConfig,
    annualized_rates,
)
from reserve_engine.models import FittedModelParameters


def _params(**kw: float) -> FittedModelParameters:
    base = dict(a=0.0, phi=1.0, mu_j=0.0, sigma_sq=0.0, sigma_sq_j=0.0, lambda_=0.0)
    base.update(kw)
    return FittedModelParameters(**base)


class TestAnnualizedRates:
    def test_rates(self) -> None:
        alpha, kappa, sigma, sigma_j, lam = annualized_rates(
            _params(a=0.01, phi=0.9, sigma_sq=0.04, sigma_sq_j=0.09, lambda_=0.1)
        )
        assert alpha * DT_HOURLY == pytest.approx(0.01)
        assert 1.0 - kappa * DT_HOURLY == pytest.approx(0.9)
        assert sigma ** 2 * DT_HOURLY == pytest.approx(0.04)
        assert sigma_j == pytest.approx(0.3)
        assert lam * DT_HOURLY == pytest.approx(0.1)

    def test_negative_diffusion_variance(self) -> None:
        with pytest.raises(InvalidModelParameters):
            annualized_rates(_params(sigma_sq=-1e-3))

    def test_non_finite(self) -> None:
        with pytest.raises(InvalidModelParameters):
            annualized_rates(_params(a=float("nan")))

    def test_jump_component_clipped(self) -> None:
        _, _, _, sigma_j, lam = annualized_rates(_params(sigma_sq_j=-0.5, lambda_=1.5))
        assert sigma_j == 0.0
        assert lam * DT_HOURLY == pytest.approx(1.0)


class TestPriceSimulator:
    @pytest.mark.parametrize("sampler", ["pseudo", "sobol"])
    def test_shape_and_start(self, sampler: str) -> None:
        sim = PriceSimulator(SimulatorConfig(num_paths=16, n_periods=10, sampler=sampler, seed=1))
        out = sim.simulate(_params(phi=0.8, sigma_sq=1e-4), last_residual=0.3)
        assert out.shape == (10, 16)
        assert np.all(out[0] == 0.3)
        assert np.all(np.isfinite(out))

    def test_deterministic_recursion_without_noise(self) -> None:
        sim = PriceSimulator(SimulatorConfig(num_paths=3, n_periods=4, seed=0))
        out = sim.simulate(_params(a=0.1, phi=0.5), last_residual=1.0)
        expected = [1.0]
        for _ in range(3):
            expected.append(0.1 + 0.5 * expected[-1])
        assert np.allclose(out[:, 0], expected)
        assert np.allclose(out[:, 2], expected)

    @pytest.mark.parametrize("sampler", ["pseudo", "sobol"])
    def test_certain_jumps(self, sampler: str) -> None:
        sim = PriceSimulator(SimulatorConfig(num_paths=4, n_periods=5, sampler=sampler, seed=2))
        out = sim.simulate(_params(mu_j=1.0, lambda_=1.0), last_residual=0.0)
        assert np.allclose(out[:, 0], [0.0, 1.0, 2.0, 3.0, 4.0])

    @pytest.mark.parametrize("sampler", ["pseudo", "sobol"])
    def test_no_jumps(self, sampler: str) -> None:
        sim = PriceSimulator(SimulatorConfig(num_paths=8, n_periods=6, sampler=sampler, seed=2))
        out = sim.simulate(_params(mu_j=1.0, lambda_=0.0), last_residual=0.5)
        assert np.allclose(out, 0.5)

    @pytest.mark.parametrize("sampler", ["pseudo", "sobol"])
    def test_seeded_runs_repeat(self, sampler: str) -> None:
        cfg = SimulatorConfig(num_paths=32, n_periods=24, sampler=sampler, seed=11)
        params = _params(phi=0.7, sigma_sq=1e-3, mu_j=0.1, sigma_sq_j=1e-3, lambda_=0.1)
        a = PriceSimulator(cfg).simulate(params, 0.0)
        b = PriceSimulator(cfg).simulate(params, 0.0)
        assert np.array_equal(a, b)

    def test_unknown_sampler(self) -> None:
        with pytest.raises(ValueError, match="unknown sampler"):
            PriceSimulator(SimulatorConfig(sampler="halton"))
