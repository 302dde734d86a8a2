from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from lantern.cache import ComputedCache
from lantern.compute import compute_metrics
from lantern.errors import LanternError
from lantern.io import build_summary, read_json, write_node_timings_csv, write_summary_json
from lantern.metrics import METRICS, MetricResult
from lantern.settings import PRESETS, THROTTLING_METHODS, Settings

_LOG_LEVELS = [logging.CRITICAL, logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="lantern", description="Lantern page-load simulator")
    p.add_argument("-v", "--verbose", action="count", default=2, help="Increase log verbosity")
    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("compute", help="Estimate page-load metrics from a capture")
    c.add_argument("--trace", required=True, type=Path)
    c.add_argument("--devtools-log", required=True, type=Path)
    c.add_argument("--out-summary", required=True, type=Path)
    c.add_argument("--out-timings", required=False, type=Path)
    c.add_argument(
        "--metric",
        action="append",
        choices=sorted(METRICS),
        help="Metric to compute (repeatable; default: all)",
    )
    c.add_argument("--settings", required=False, type=Path, help="Settings JSON file")
    c.add_argument("--form-factor", required=False, choices=sorted(PRESETS))
    c.add_argument("--throttling-method", required=False, choices=THROTTLING_METHODS)
    c.add_argument("--max-connections-per-origin", required=False, type=int)
    return p


def _configure_logging(verbosity: int) -> None:
    level = _LOG_LEVELS[min(verbosity, len(_LOG_LEVELS) - 1)]
    logging.basicConfig(
        level=level, format="%(asctime)s.%(msecs)03d - %(message)s", datefmt="%H:%M:%S"
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings()
    if args.settings:
        settings = Settings.from_json(read_json(args.settings))
    return settings.with_overrides(
        throttling_method=args.throttling_method,
        form_factor=args.form_factor,
        max_connections_per_origin=args.max_connections_per_origin,
    )


def main(argv: list[str] | None = None) -> int:
    p = _build_parser()
    args = p.parse_args(argv)
    _configure_logging(args.verbose)

    if args.cmd == "compute":
        try:
            settings = _load_settings(args)
            cache = ComputedCache()
            outcomes = compute_metrics(
                args.metric or list(METRICS),
                trace=read_json(args.trace),
                devtools_log=read_json(args.devtools_log),
                settings=settings,
                cache=cache,
            )
        except (LanternError, ValueError) as e:
            sys.stderr.write(f"lantern: {e}\n")
            return 2

        write_summary_json(args.out_summary, build_summary(settings=settings, outcomes=outcomes))
        if args.out_timings:
            simulated = {n: o for n, o in outcomes.items() if isinstance(o, MetricResult)}
            write_node_timings_csv(args.out_timings, simulated)
        logging.getLogger(__name__).info(
            "computed %d metric(s); cache hits=%d misses=%d",
            len(outcomes),
            cache.hits,
            cache.misses,
        )
        return 0

    raise AssertionError(f"Unhandled command: {args.cmd}")
