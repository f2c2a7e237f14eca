"""Exception taxonomy for the reserve-price pipeline.

Data and math errors abort the stage that raised them and are never
retried.  ``ExternalProvingFailure`` is the only error the controller
retries, and only when ``retryable`` is set.
"""

from __future__ import annotations

from typing import Any


# ── Base ─────────────────────────────────────────────────────────────


class ReservePriceError(Exception):
    """Root of every error raised by reserve_engine."""


# ── Input / data errors ──────────────────────────────────────────────


class InvalidInput(ReservePriceError):
    """Raw series violates a structural precondition."""


class UnsortedInput(InvalidInput):
    """Timestamps are not non-decreasing."""

    def __init__(self, index: int, previous: int, current: int) -> None:
        super().__init__(
            f"timestamps not sorted at index {index}: {current} < {previous}"
        )
        self.index = index
        self.previous = previous
        self.current = current


class InsufficientData(ReservePriceError):
    """Series is shorter than the window an operation requires."""

    def __init__(self, required: int, actual: int, what: str = "series") -> None:
        super().__init__(f"insufficient data for {what}: need {required}, got {actual}")
        self.required = required
        self.actual = actual


class EmptySeries(ReservePriceError):
    """An operation needed at least one element."""


# ── Numerical errors ─────────────────────────────────────────────────


class SingularMatrix(ReservePriceError):
    """Normal-equation matrix could not be inverted."""


class NonFiniteGradient(ReservePriceError):
    """Finite-difference step or gradient component is NaN/inf."""


class InvalidModelParameters(ReservePriceError):
    """Fitted parameters cannot drive the simulator (negative variance, NaN...)."""


class NonConvergence(ReservePriceError):
    """Optimizer stopped before reaching the gradient tolerance."""


class LineSearchExhausted(NonConvergence):
    """Backtracking halved the step width past its cap."""

    def __init__(self, halvings: int, position: Any) -> None:
        super().__init__(f"line search did not find a descent step after {halvings} halvings")
        self.halvings = halvings
        self.position = position


# ── Verification errors ──────────────────────────────────────────────


class ToleranceExceeded(ReservePriceError):
    """Two independently computed values disagree beyond tolerance."""

    def __init__(
        self,
        label: str,
        expected: Any = None,
        actual: Any = None,
        tolerance: float | None = None,
        detail: str = "",
    ) -> None:
        msg = f"{label} outside tolerance"
        if tolerance is not None:
            msg += f" ({tolerance}%)"
        if detail:
            msg += f": {detail}"
        elif expected is not None and actual is not None and _is_scalar(expected):
            msg += f": expected={expected} actual={actual}"
        super().__init__(msg)
        self.label = label
        self.expected = expected
        self.actual = actual
        self.tolerance = tolerance


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (int, float))


# ── Proving / orchestration errors ───────────────────────────────────


class ExternalProvingFailure(ReservePriceError):
    """Proving collaborator failed to produce or verify a receipt."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class AssumptionNotFound(ReservePriceError):
    """A program asserted a receipt that was not supplied as an assumption."""


class StageFailed(ReservePriceError):
    """A stage exhausted its attempts or hit a fatal error."""

    def __init__(self, stage_id: str, last_error: BaseException) -> None:
        super().__init__(f"stage={stage_id} error={last_error}")
        self.stage_id = stage_id
        self.last_error = last_error
