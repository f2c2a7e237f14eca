"""CLI entry point for the reserve-price pipeline.

Usage::

    python3 -m reserve_engine --input fees.csv
    python3 -m reserve_engine --input fees.csv --timestamp-unit ms --paths 2000
    python3 -m reserve_engine --input fees.csv --prover-url http://prover:8080 --cache receipts.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace

from reserve_engine.config import PipelineConfig, load_pipeline_config
from reserve_engine.data_source import load_fee_csv
from reserve_engine.errors import ReservePriceError, StageFailed
from reserve_engine.framework.controller import CompositionResult, run_pipeline
from reserve_engine.framework.prover import HttpProverConfig, HttpProvingClient, LocalProver
from reserve_engine.framework.receipt_cache import ReceiptCache, ReceiptCacheConfig
from reserve_engine.framework.stages import default_registry
from reserve_engine.logging_setup import configure_logging

LOGGER = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python3 -m reserve_engine",
        description="Certified reserve price for a capped option on the fee TWAP",
    )
    parser.add_argument(
        "--input", required=True,
        help="CSV with a timestamp column and a base_fee column, oldest first",
    )
    parser.add_argument(
        "--timestamp-unit", choices=("s", "ms"), default=None,
        help="Unit of the input timestamps (default: s)",
    )
    parser.add_argument(
        "--paths", type=int, default=None,
        help="Monte Carlo paths (default: 4000)",
    )
    parser.add_argument(
        "--periods", type=int, default=None,
        help="Simulated hourly periods per path (default: 720)",
    )
    parser.add_argument(
        "--sampler", choices=("pseudo", "sobol"), default=None,
        help="Random source for the simulator (default: pseudo)",
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Seed for the simulator",
    )
    parser.add_argument(
        "--prover-url", default=None,
        help="Remote proving service; runs the in-process dev prover when omitted",
    )
    parser.add_argument(
        "--cache", default=None,
        help="Receipt cache file; identical stages are reused on a rerun",
    )
    parser.add_argument(
        "--output", default=None,
        help="Write the public output JSON here as well as to stdout",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    return parser


def _apply_overrides(config: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    """Apply CLI argument overrides to the config."""
    overrides = {}
    sim_overrides = {}

    if args.timestamp_unit is not None:
        overrides["timestamp_unit"] = args.timestamp_unit

    if args.paths is not None:
        sim_overrides["num_paths"] = args.paths

    if args.periods is not None:
        sim_overrides["n_periods"] = args.periods

    if args.sampler is not None:
        sim_overrides["sampler"] = args.sampler

    if args.seed is not None:
        sim_overrides["seed"] = args.seed

    if sim_overrides:
        overrides["simulation"] = replace(config.simulation, **sim_overrides)

    if overrides:
        config = replace(config, **overrides)

    return config


def _render(result: CompositionResult) -> dict:
    return {
        "public_output": result.public_output.to_dict(),
        "converged": result.converged,
        "stop_reason": result.stop_reason,
        "receipt": result.receipt.to_dict(),
    }


async def _async_main(config: PipelineConfig, args: argparse.Namespace) -> int:
    series = load_fee_csv(args.input, config.timestamp_unit)
    registry = default_registry(config)

    cache = None
    if args.cache:
        cache = ReceiptCache(ReceiptCacheConfig(path=args.cache))
        cache.load()

    http_client = None
    if args.prover_url:
        http_client = HttpProvingClient(
            HttpProverConfig(base_url=args.prover_url, api_key=os.getenv("RESERVE_PROVER_API_KEY"))
        )
        client = http_client
    else:
        client = LocalProver(registry)

    try:
        result = await run_pipeline(series, client, config, registry, cache)
    finally:
        if http_client is not None:
            http_client.close()

    text = json.dumps(_render(result), indent=2, sort_keys=True)
    print(text)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(text + "\n")
        LOGGER.info("public output written to %s", args.output)
    if not result.converged:
        LOGGER.warning("parameter fit did not converge; reserve price is low confidence")
    return 0


def main() -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "INFO")

    try:
        # Env vars first, then CLI overrides
        config = _apply_overrides(load_pipeline_config(), args)
        code = asyncio.run(_async_main(config, args))
    except StageFailed as exc:
        print(f"stage={exc.stage_id} error={exc.last_error}", file=sys.stderr)
        sys.exit(1)
    except ReservePriceError as exc:
        print(f"stage=host error={exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
