"""Hourly fee series loading and validation.

Every timestamp inside the pipeline is epoch **seconds**.  Millisecond
inputs are converted here, once, and anything that still looks like
milliseconds afterwards is rejected.

Usage::

    series = load_fee_csv("fees.csv", unit="ms")
    series = build_fee_series([(1700000000, 31.2), (1700003600, 29.8)])
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Iterable, Sequence, Tuple

import numpy as np

from reserve_engine.errors import InvalidInput, UnsortedInput
from reserve_engine.models import FeeSeries

LOGGER = logging.getLogger(__name__)

# 10^11 seconds is year 5138; a larger value is a millisecond stamp.
_MAX_EPOCH_SECONDS = 10**11

_TIMESTAMP_COLUMNS = ("timestamp", "ts", "time")
_VALUE_COLUMNS = ("base_fee", "value", "fee")


def check_sorted(timestamps: Sequence[int] | np.ndarray) -> None:
    """Raise ``UnsortedInput`` at the first decreasing timestamp (single pass)."""
    ts = np.asarray(timestamps, dtype=np.int64)
    if ts.size < 2:
        return
    drops = np.flatnonzero(ts[1:] < ts[:-1])
    if drops.size:
        i = int(drops[0]) + 1
        raise UnsortedInput(i, int(ts[i - 1]), int(ts[i]))


def normalize_timestamps(timestamps: Sequence[int] | np.ndarray, unit: str = "s") -> np.ndarray:
    """Convert to epoch seconds and reject out-of-range stamps."""
    ts = np.asarray(timestamps, dtype=np.int64)
    if unit == "ms":
        ts = ts // 1000
    elif unit != "s":
        raise InvalidInput(f"unknown timestamp unit {unit!r} (expected 's' or 'ms')")
    if ts.size and int(ts.max()) >= _MAX_EPOCH_SECONDS:
        raise InvalidInput(
            f"timestamp {int(ts.max())} is not epoch seconds; pass unit='ms' for milliseconds"
        )
    return ts


def build_fee_series(
    rows: Iterable[Tuple[int, float]],
    unit: str = "s",
) -> FeeSeries:
    """Validate (timestamp, value) pairs and freeze them into a ``FeeSeries``.

    Ordering is checked before anything else so unsorted input never
    reaches a numeric stage.  The series is never re-sorted.
    """
    pairs = list(rows)
    if not pairs:
        raise InvalidInput("fee series is empty")
    raw_ts = np.array([int(t) for t, _ in pairs], dtype=np.int64)
    values = np.array([float(v) for _, v in pairs], dtype=np.float64)

    check_sorted(raw_ts)
    ts = normalize_timestamps(raw_ts, unit)

    bad = np.flatnonzero(~np.isfinite(values) | (values <= 0.0))
    if bad.size:
        i = int(bad[0])
        raise InvalidInput(f"fee value at index {i} must be positive and finite, got {values[i]}")

    return FeeSeries(timestamps=ts, values=values)


def _pick_column(fieldnames: Sequence[str], candidates: Sequence[str], path: Path) -> str:
    lowered = {name.strip().lower(): name for name in fieldnames}
    for candidate in candidates:
        if candidate in lowered:
            return lowered[candidate]
    raise InvalidInput(f"{path}: none of the columns {list(candidates)} found in {list(fieldnames)}")


def load_fee_csv(path: str | Path, unit: str = "s") -> FeeSeries:
    """Load an hourly fee CSV with a timestamp column and a fee column."""
    path = Path(path)
    rows: list[Tuple[int, float]] = []
    if not path.is_file():
        raise InvalidInput(f"{path}: no such file")
    with path.open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        if not reader.fieldnames:
            raise InvalidInput(f"{path}: missing header row")
        ts_col = _pick_column(reader.fieldnames, _TIMESTAMP_COLUMNS, path)
        value_col = _pick_column(reader.fieldnames, _VALUE_COLUMNS, path)
        for row in reader:
            raw_ts = (row.get(ts_col) or "").strip()
            raw_value = (row.get(value_col) or "").strip()
            if not raw_ts or not raw_value:
                continue
            try:
                rows.append((int(float(raw_ts)), float(raw_value)))
            except (ValueError, OverflowError) as exc:
                raise InvalidInput(f"{path}: line {reader.line_num}: {exc}") from exc

    series = build_fee_series(rows, unit=unit)
    LOGGER.info(
        "loaded fee series path=%s points=%d start=%d end=%d",
        path, len(series), series.start, series.end,
    )
    return series
