from __future__ import annotations

from dataclasses import replace

import pytest

from lantern.compute import compute_metric, compute_metrics
from lantern.graph import build_page_graph
from lantern.interactive import ObservedMetric, observed_speed_index
from lantern.metrics import (
    MetricResult,
    SimulationContext,
    SpeedIndex,
    layout_weighted_time,
)
from lantern.settings import DESKTOP_DENSE_4G, MOBILE_SLOW_4G, Settings
from lantern.trace import build_task_tree
from lantern.types import PageLoadCapture, PageTimestamps, TraceEvent


def _event(name: str, ts: float, dur: float) -> TraceEvent:
    cat = "toplevel" if name == "RunTask" else "devtools.timeline"
    return TraceEvent(name=name, cat=cat, ph="X", ts=ts, dur=dur, pid=1, tid=1)


def test_layouts_are_weighted_by_log_duration() -> None:
    # Weights 2 and 4.
    layouts = [(4.0, 1000.0), (16.0, 2000.0)]
    assert layout_weighted_time(layouts, floor=0.0) == pytest.approx(10_000.0 / 6)
    assert layout_weighted_time(layouts, floor=1500.0) == pytest.approx(11_000.0 / 6)


def test_one_millisecond_layouts_fall_back_to_the_floor() -> None:
    assert layout_weighted_time([(1.0, 900.0), (0.0, 950.0)], floor=600.0) == 600.0
    assert layout_weighted_time([], floor=600.0) == 600.0


def test_coefficients_scale_with_round_trip_time() -> None:
    metric = SpeedIndex()
    mobile = metric.coefficients_for(MOBILE_SLOW_4G)
    assert (mobile.intercept, mobile.optimistic, mobile.pessimistic) == pytest.approx((-250.0, 1.4, 0.65))

    desktop = metric.coefficients_for(DESKTOP_DENSE_4G)
    assert desktop.intercept == pytest.approx(-250.0 / 12)
    assert desktop.optimistic == pytest.approx(0.575)
    assert desktop.pessimistic == pytest.approx(0.5125)

    fast = metric.coefficients_for(replace(DESKTOP_DENSE_4G, rtt_ms=10.0))
    assert (fast.intercept, fast.optimistic, fast.pessimistic) == (0.0, 0.5, 0.5)


def test_simulated_speed_index_is_bounded_by_first_contentful_paint(
    progressive_app_trace, progressive_app_devtools_log
) -> None:
    results = compute_metrics(
        ["first-contentful-paint", "speed-index"],
        trace=progressive_app_trace,
        devtools_log=progressive_app_devtools_log,
    )
    fcp, si = results["first-contentful-paint"], results["speed-index"]
    assert isinstance(si, MetricResult)
    floor = fcp.pessimistic_estimate.time_in_ms
    assert si.optimistic_estimate.time_in_ms >= floor
    assert si.pessimistic_estimate.time_in_ms >= floor
    blended = -250.0 + 1.4 * si.optimistic_estimate.time_in_ms + 0.65 * si.pessimistic_estimate.time_in_ms
    assert si.timing == pytest.approx(max(fcp.timing, blended))
    # Every node of the page is simulated on both sides.
    assert len(si.optimistic_estimate.node_timings) == 18
    assert len(si.pessimistic_estimate.node_timings) == 18


def test_measured_speed_index_replaces_the_optimistic_estimate(progressive_app_capture) -> None:
    graph = build_page_graph(progressive_app_capture)
    context = SimulationContext(profile=MOBILE_SLOW_4G)
    plain = SpeedIndex().compute(graph, progressive_app_capture.timestamps, context)
    measured = SpeedIndex(measured_speed_index=4321.0).compute(
        graph, progressive_app_capture.timestamps, context
    )
    assert measured.optimistic_estimate.time_in_ms == 4321.0
    assert measured.pessimistic_estimate.time_in_ms == plain.pessimistic_estimate.time_in_ms
    assert SpeedIndex(measured_speed_index=4321.0).cache_key() != SpeedIndex().cache_key()


def test_observed_speed_index_weights_recorded_layouts() -> None:
    events = [
        _event("RunTask", 400.0, 4.0),
        _event("Layout", 401.0, 2.0),
        _event("RunTask", 1000.0, 16.0),
        _event("Layout", 1001.0, 10.0),
        _event("RunTask", 1200.0, 64.0),
    ]
    capture = PageLoadCapture(
        records=(),
        main_thread_events=tuple(events),
        toplevel_tasks=tuple(build_task_tree(events)),
        timestamps=PageTimestamps(time_origin=0.0, first_contentful_paint=500.0, trace_end=5000.0),
        main_document_url="https://a.test/",
    )
    result = observed_speed_index(capture)
    # The first layout ends before FCP and counts at FCP.
    assert result.timing == pytest.approx((2 * 500.0 + 4 * 1016.0) / 6)


def test_observed_speed_index_on_fixture_is_first_contentful_paint(
    progressive_app_trace, progressive_app_devtools_log
) -> None:
    result = compute_metric(
        "speed-index",
        trace=progressive_app_trace,
        devtools_log=progressive_app_devtools_log,
        settings=Settings(throttling_method="provided"),
    )
    assert isinstance(result, ObservedMetric)
    # The only layout finishes at 1190 ms, before the 1200 ms paint.
    assert result.timing == pytest.approx(1200.0)
