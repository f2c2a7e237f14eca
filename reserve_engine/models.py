from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class StageId(str, Enum):
    """Independently certified units of the pipeline."""

    HASH_COMMIT = "hash_commit"
    MAX_RETURN = "max_return"
    TWAP = "twap"
    DECOMPOSITION = "decomposition"
    TWAP_7D = "twap_7d"
    TRANSITION_PAIRS = "transition_pairs"
    PRICE_SIMULATION = "price_simulation"
    SIMULATED_LOG_PRICES = "simulated_log_prices"
    COMPOSITION = "composition"


@dataclass(frozen=True, eq=False)
class FeeSeries:
    """Hourly fee observations, timestamps in epoch seconds.

    Arrays are flagged read-only on construction; build through
    :func:`reserve_engine.data_source.build_fee_series` to get the sort and
    positivity checks.
    """

    timestamps: np.ndarray  # int64 epoch seconds, non-decreasing
    values: np.ndarray      # float64, strictly positive

    def __post_init__(self) -> None:
        ts = np.array(self.timestamps, dtype=np.int64)
        vs = np.array(self.values, dtype=np.float64)
        ts.setflags(write=False)
        vs.setflags(write=False)
        object.__setattr__(self, "timestamps", ts)
        object.__setattr__(self, "values", vs)

    def __len__(self) -> int:
        return int(self.values.shape[0])

    @property
    def start(self) -> int:
        return int(self.timestamps[0])

    @property
    def end(self) -> int:
        return int(self.timestamps[-1])

    def tail(self, n: int) -> "FeeSeries":
        """Last ``n`` observations (the whole series when shorter)."""
        n = min(n, len(self))
        return FeeSeries(self.timestamps[len(self) - n:], self.values[len(self) - n:])


@dataclass(frozen=True, eq=False)
class DecompositionResult:
    """Trend line, 12 seasonal weights and the leftover residual."""

    slope: float
    intercept: float
    season_params: np.ndarray  # shape (12,)
    residuals: np.ndarray      # same length as the input series


@dataclass(frozen=True)
class FittedModelParameters:
    """Mean-reverting jump-diffusion parameters (hourly scale)."""

    a: float
    phi: float
    mu_j: float
    sigma_sq: float
    sigma_sq_j: float
    lambda_: float

    def as_array(self) -> np.ndarray:
        return np.array(
            [self.a, self.phi, self.mu_j, self.sigma_sq, self.sigma_sq_j, self.lambda_],
            dtype=np.float64,
        )

    @classmethod
    def from_array(cls, values: np.ndarray) -> "FittedModelParameters":
        v = [float(x) for x in np.asarray(values, dtype=np.float64).ravel()]
        if len(v) != 6:
            raise ValueError(f"expected 6 parameters, got {len(v)}")
        return cls(*v)


@dataclass(frozen=True, eq=False)
class OptimizationResult:
    """Outcome of a gradient-descent fit."""

    params: FittedModelParameters
    objective: float
    gradient: np.ndarray
    iterations: int
    converged: bool
    stop_reason: str  # "saddle_point", "max_iterations", "line_search_exhausted"


@dataclass(frozen=True)
class PublicOutput:
    """Composed public summary; floats are packed fixed-point hex strings."""

    data_hash: Tuple[int, ...]
    start_timestamp: int
    end_timestamp: int
    reserve_price_start_timestamp: int
    reserve_price_end_timestamp: int
    twap_start_timestamp: int
    twap_end_timestamp: int
    max_return_start_timestamp: int
    max_return_end_timestamp: int
    reserve_price: str
    twap_result: str
    max_return: str
    floating_point_tolerance: str
    reserve_price_tolerance: str
    twap_tolerance: str
    gradient_tolerance: str
    optimizer_tolerance: str
    # Only published when the simulated log-price cross-check ran.
    element_tolerance: Optional[str] = None
    matrix_tolerance: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "data_hash": list(self.data_hash),
            "start_timestamp": self.start_timestamp,
            "end_timestamp": self.end_timestamp,
            "reserve_price_start_timestamp": self.reserve_price_start_timestamp,
            "reserve_price_end_timestamp": self.reserve_price_end_timestamp,
            "twap_start_timestamp": self.twap_start_timestamp,
            "twap_end_timestamp": self.twap_end_timestamp,
            "max_return_start_timestamp": self.max_return_start_timestamp,
            "max_return_end_timestamp": self.max_return_end_timestamp,
            "reserve_price": self.reserve_price,
            "twap_result": self.twap_result,
            "max_return": self.max_return,
            "floating_point_tolerance": self.floating_point_tolerance,
            "reserve_price_tolerance": self.reserve_price_tolerance,
            "twap_tolerance": self.twap_tolerance,
            "gradient_tolerance": self.gradient_tolerance,
            "optimizer_tolerance": self.optimizer_tolerance,
        }
        if self.element_tolerance is not None:
            data["element_tolerance"] = self.element_tolerance
            data["matrix_tolerance"] = self.matrix_tolerance
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PublicOutput":
        fields = dict(data)
        fields["data_hash"] = tuple(int(w) for w in fields["data_hash"])
        return cls(**fields)
