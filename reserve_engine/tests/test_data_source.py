"""Tests for fee series loading and validation."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from reserve_engine.data_source import (
    build_fee_series,
    check_sorted,
    load_fee_csv,
    normalize_timestamps,
)
from reserve_engine.errors import InvalidInput, UnsortedInput

T0 = 1_700_000_000


class TestCheckSorted:
    def test_sorted_passes(self) -> None:
        check_sorted([1, 2, 2, 3])

    def test_reports_first_drop(self) -> None:
        with pytest.raises(UnsortedInput) as info:
            check_sorted([10, 5, 20])
        assert info.value.index == 1
        assert info.value.previous == 10
        assert info.value.current == 5

    def test_single_element(self) -> None:
        check_sorted([42])

    def test_unsorted_is_invalid_input(self) -> None:
        with pytest.raises(InvalidInput):
            check_sorted([3, 2, 1])


class TestNormalizeTimestamps:
    def test_seconds_unchanged(self) -> None:
        ts = normalize_timestamps([T0, T0 + 3600], "s")
        assert ts.tolist() == [T0, T0 + 3600]

    def test_milliseconds_converted(self) -> None:
        ts = normalize_timestamps([T0 * 1000, (T0 + 3600) * 1000], "ms")
        assert ts.tolist() == [T0, T0 + 3600]

    def test_milliseconds_passed_as_seconds_rejected(self) -> None:
        with pytest.raises(InvalidInput, match="not epoch seconds"):
            normalize_timestamps([T0 * 1000], "s")

    def test_unknown_unit(self) -> None:
        with pytest.raises(InvalidInput, match="unknown timestamp unit"):
            normalize_timestamps([T0], "us")


class TestBuildFeeSeries:
    def test_builds_read_only_arrays(self) -> None:
        series = build_fee_series([(T0, 30.0), (T0 + 3600, 31.5)])
        assert len(series) == 2
        assert series.start == T0
        assert series.end == T0 + 3600
        assert series.values.dtype == np.float64
        with pytest.raises(ValueError):
            series.values[0] = 1.0

    def test_empty(self) -> None:
        with pytest.raises(InvalidInput, match="empty"):
            build_fee_series([])

    def test_unsorted_before_numeric_checks(self) -> None:
        with pytest.raises(UnsortedInput):
            build_fee_series([(T0 + 3600, 30.0), (T0, -1.0)])

    def test_non_positive_value(self) -> None:
        with pytest.raises(InvalidInput, match="index 1"):
            build_fee_series([(T0, 30.0), (T0 + 3600, 0.0)])

    def test_non_finite_value(self) -> None:
        with pytest.raises(InvalidInput):
            build_fee_series([(T0, float("nan"))])

    def test_tail(self) -> None:
        series = build_fee_series([(T0 + 3600 * i, 10.0 + i) for i in range(5)])
        tail = series.tail(2)
        assert tail.values.tolist() == [13.0, 14.0]
        assert series.tail(10).values.shape[0] == 5


class TestLoadFeeCsv:
    def test_reads_named_columns(self, tmp_path: Path) -> None:
        path = tmp_path / "fees.csv"
        path.write_text(
            "timestamp,base_fee\n"
            f"{T0 * 1000},30.5\n"
            f"{(T0 + 3600) * 1000},29.0\n"
            "\n",
            encoding="utf-8",
        )
        series = load_fee_csv(path, unit="ms")
        assert series.timestamps.tolist() == [T0, T0 + 3600]
        assert series.values.tolist() == [30.5, 29.0]

    def test_alternative_column_names(self, tmp_path: Path) -> None:
        path = tmp_path / "fees.csv"
        path.write_text(f"TS,Value\n{T0},12.0\n", encoding="utf-8")
        series = load_fee_csv(path)
        assert series.values.tolist() == [12.0]

    def test_missing_column(self, tmp_path: Path) -> None:
        path = tmp_path / "fees.csv"
        path.write_text(f"timestamp,price\n{T0},12.0\n", encoding="utf-8")
        with pytest.raises(InvalidInput, match="none of the columns"):
            load_fee_csv(path)

    def test_malformed_cell_names_line(self, tmp_path: Path) -> None:
        path = tmp_path / "fees.csv"
        path.write_text(f"timestamp,base_fee\n{T0},12.0\n{T0 + 3600},abc\n", encoding="utf-8")
        with pytest.raises(InvalidInput, match="line 3"):
            load_fee_csv(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidInput, match="no such file"):
            load_fee_csv(tmp_path / "absent.csv")
