from __future__ import annotations

import csv
import gzip
import json
from pathlib import Path
from typing import Any, Mapping

from lantern.errors import NoQuietPeriodError
from lantern.executors import MetricOutcome
from lantern.interactive import ObservedMetric
from lantern.metrics import Estimate, MetricResult
from lantern.settings import Settings
from lantern.types import QuietPeriod

_GZIP_MAGIC = b"\x1f\x8b"


def read_json(path: Path) -> Any:
    """Load a JSON file, transparently gunzipping `.gz` captures."""
    raw = path.read_bytes()
    if raw[:2] == _GZIP_MAGIC:
        raw = gzip.decompress(raw)
    return json.loads(raw.decode("utf-8"))


def _period(p: QuietPeriod) -> dict[str, float]:
    return {"start": p.start, "end": p.end}


def _estimate(e: Estimate) -> dict[str, Any]:
    return {"time_in_ms": e.time_in_ms, "node_count": len(e.node_timings)}


def summarize_outcome(outcome: MetricOutcome | NoQuietPeriodError) -> dict[str, Any]:
    if isinstance(outcome, NoQuietPeriodError):
        return {"applicable": False, "error": outcome.kind.value}
    if isinstance(outcome, ObservedMetric):
        out: dict[str, Any] = {"applicable": True, "timing_ms": outcome.timing}
        q = outcome.quiet_periods
        if q is not None:
            out["quiet_periods"] = {
                "cpu_quiet_period": _period(q.cpu_quiet_period),
                "network_quiet_period": _period(q.network_quiet_period),
                "cpu_quiet_periods": [_period(p) for p in q.cpu_quiet_periods],
                "network_quiet_periods": [_period(p) for p in q.network_quiet_periods],
            }
        return out
    if isinstance(outcome, MetricResult):
        return {
            "applicable": True,
            "timing_ms": outcome.timing,
            "optimistic_estimate": _estimate(outcome.optimistic_estimate),
            "pessimistic_estimate": _estimate(outcome.pessimistic_estimate),
            "gap_ms": outcome.gap,
        }
    raise TypeError(f"Unexpected metric outcome: {type(outcome).__name__}")


def build_summary(
    *, settings: Settings, outcomes: Mapping[str, MetricOutcome | NoQuietPeriodError]
) -> dict[str, Any]:
    t = settings.throttling
    return {
        "settings": {
            "throttling_method": settings.throttling_method,
            "form_factor": settings.form_factor,
            "rtt_ms": t.rtt_ms,
            "throughput_kbps": t.throughput_kbps,
            "cpu_slowdown_multiplier": t.cpu_slowdown_multiplier,
            "max_connections_per_origin": settings.max_connections_per_origin,
        },
        "metrics": {name: summarize_outcome(o) for name, o in outcomes.items()},
    }


def write_summary_json(path: Path, summary: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")


def write_node_timings_csv(path: Path, results: Mapping[str, MetricResult]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(
            [
                "metric",
                "estimate",
                "node_id",
                "node_type",
                "url",
                "start_time_ms",
                "end_time_ms",
                "duration_ms",
            ]
        )
        for name, result in results.items():
            for label, estimate in (
                ("optimistic", result.optimistic_estimate),
                ("pessimistic", result.pessimistic_estimate),
            ):
                rows = sorted(
                    estimate.node_timings.items(),
                    key=lambda item: (item[1].start_time, item[0].node_id),
                )
                for node, timing in rows:
                    w.writerow(
                        [
                            name,
                            label,
                            node.node_id,
                            node.node_type.value,
                            node.record.url if node.record is not None else "",
                            timing.start_time,
                            timing.end_time,
                            timing.duration,
                        ]
                    )
