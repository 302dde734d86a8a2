from __future__ import annotations

from lantern.cache import ComputedCache
from lantern.compute import compute_metrics


def _snapshot(results) -> dict[str, tuple]:
    out = {}
    for name, result in results.items():
        timings = sorted(
            (n.node_id, t.start_time, t.end_time)
            for n, t in result.pessimistic_estimate.node_timings.items()
        )
        out[name] = (
            result.timing,
            result.optimistic_estimate.time_in_ms,
            result.pessimistic_estimate.time_in_ms,
            timings,
        )
    return out


def test_metrics_are_identical_across_independent_runs(
    progressive_app_trace, progressive_app_devtools_log
) -> None:
    metrics = ["first-contentful-paint", "first-meaningful-paint", "interactive"]
    snapshots = [
        _snapshot(
            compute_metrics(
                metrics,
                trace=progressive_app_trace,
                devtools_log=progressive_app_devtools_log,
                cache=ComputedCache(),
            )
        )
        for _ in range(2)
    ]
    assert snapshots[0] == snapshots[1]


def test_metric_order_does_not_change_results(
    progressive_app_trace, progressive_app_devtools_log
) -> None:
    forward = compute_metrics(
        ["first-contentful-paint", "interactive"],
        trace=progressive_app_trace,
        devtools_log=progressive_app_devtools_log,
    )
    backward = compute_metrics(
        ["interactive", "first-contentful-paint"],
        trace=progressive_app_trace,
        devtools_log=progressive_app_devtools_log,
    )
    assert _snapshot(forward) == _snapshot(backward)
