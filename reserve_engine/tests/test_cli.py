"""Tests for the command-line entry point."""

from __future__ import annotations

import json
import math
import os
import sys
from pathlib import Path
from unittest import mock

import numpy as np
import pytest

from reserve_engine.__main__ import _apply_overrides, _build_parser, main
from reserve_engine.config import PipelineConfig

T0 = 1_700_000_000

SMALL_ENV = {
    "RESERVE_HISTORY_HOURS": "480",
    "RESERVE_PRICING_WINDOW_HOURS": "336",
    "RESERVE_MAX_RETURN_TWAP_WINDOW": "48",
    "RESERVE_MAX_RETURN_PERIOD": "48",
    "RESERVE_MAX_ITERATIONS": "200",
    "RESERVE_GRADIENT_TOLERANCE": "1000000",
}


def _write_csv(path: Path, n: int = 480, unsorted: bool = False) -> None:
    rng = np.random.default_rng(8)
    rows = ["timestamp,base_fee"]
    for i in range(n):
        fee = math.exp(math.log(18.0) + 0.1 * math.sin(2 * math.pi * i / 24) + 0.04 * rng.standard_normal())
        rows.append(f"{(T0 + 3600 * i) * 1000},{fee!r}")
    if unsorted:
        rows[1], rows[2] = rows[2], rows[1]
    path.write_text("\n".join(rows) + "\n", encoding="utf-8")


class TestOverrides:
    def test_no_flags_keeps_config(self) -> None:
        config = PipelineConfig()
        args = _build_parser().parse_args(["--input", "fees.csv"])
        assert _apply_overrides(config, args) == config

    def test_simulation_flags(self) -> None:
        args = _build_parser().parse_args([
            "--input", "fees.csv", "--paths", "500", "--periods", "100",
            "--sampler", "sobol", "--seed", "9", "--timestamp-unit", "ms",
        ])
        config = _apply_overrides(PipelineConfig(), args)
        assert config.simulation.num_paths == 500
        assert config.simulation.n_periods == 100
        assert config.simulation.sampler == "sobol"
        assert config.simulation.seed == 9
        assert config.timestamp_unit == "ms"


class TestMain:
    def test_prints_public_output(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        csv_path = tmp_path / "fees.csv"
        out_path = tmp_path / "out.json"
        _write_csv(csv_path)
        argv = [
            "reserve_engine", "--input", str(csv_path), "--timestamp-unit", "ms",
            "--paths", "200", "--periods", "200", "--seed", "1",
            "--cache", str(tmp_path / "receipts.json"), "--output", str(out_path),
        ]
        with mock.patch.dict(os.environ, SMALL_ENV, clear=True), mock.patch.object(sys, "argv", argv):
            with pytest.raises(SystemExit) as info:
                main()
        assert info.value.code == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["public_output"]["end_timestamp"] == T0 + 3600 * 479
        assert json.loads(out_path.read_text(encoding="utf-8")) == printed
        assert (tmp_path / "receipts.json").exists()

    def test_failure_reports_stage(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        csv_path = tmp_path / "fees.csv"
        _write_csv(csv_path)
        argv = [
            "reserve_engine", "--input", str(csv_path), "--timestamp-unit", "ms",
            "--paths", "200", "--periods", "200", "--seed", "1",
        ]
        env = dict(SMALL_ENV, RESERVE_GRADIENT_TOLERANCE="1e-30")
        with mock.patch.dict(os.environ, env, clear=True), mock.patch.object(sys, "argv", argv):
            with pytest.raises(SystemExit) as info:
                main()
        assert info.value.code == 1
        assert "stage=price_simulation error=saddle_point outside tolerance" in capsys.readouterr().err

    def test_unsorted_input(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        csv_path = tmp_path / "fees.csv"
        _write_csv(csv_path, unsorted=True)
        argv = ["reserve_engine", "--input", str(csv_path), "--timestamp-unit", "ms"]
        with mock.patch.dict(os.environ, SMALL_ENV, clear=True), mock.patch.object(sys, "argv", argv):
            with pytest.raises(SystemExit) as info:
                main()
        assert info.value.code == 1
        assert "stage=host error=timestamps not sorted at index 1" in capsys.readouterr().err

    def test_malformed_csv_cell(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        csv_path = tmp_path / "fees.csv"
        csv_path.write_text(f"timestamp,base_fee\n{T0},12.0\n{T0 + 3600},abc\n", encoding="utf-8")
        argv = ["reserve_engine", "--input", str(csv_path)]
        with mock.patch.dict(os.environ, SMALL_ENV, clear=True), mock.patch.object(sys, "argv", argv):
            with pytest.raises(SystemExit) as info:
                main()
        assert info.value.code == 1
        err = capsys.readouterr().err
        assert "stage=host error=" in err
        assert "line 3" in err

    def test_unknown_sampler_env(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        csv_path = tmp_path / "fees.csv"
        _write_csv(csv_path)
        argv = ["reserve_engine", "--input", str(csv_path), "--timestamp-unit", "ms"]
        env = dict(SMALL_ENV, RESERVE_SAMPLER="halton")
        with mock.patch.dict(os.environ, env, clear=True), mock.patch.object(sys, "argv", argv):
            with pytest.raises(SystemExit) as info:
                main()
        assert info.value.code == 1
        assert "stage=host error=RESERVE_SAMPLER='halton'" in capsys.readouterr().err
