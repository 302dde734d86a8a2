from __future__ import annotations

# Metrics read straight from the capture, used with the "provided" throttling
# method where the page was already loaded under the conditions of interest.

from dataclasses import dataclass

from lantern.errors import InvalidTraceError
from lantern.metrics import layout_weighted_time
from lantern.quiet_periods import (
    QuietPeriodResult,
    find_overlapping_quiet_periods,
    long_task_periods,
)
from lantern.types import PageLoadCapture


@dataclass(frozen=True)
class ObservedMetric:
    name: str
    timing: float
    quiet_periods: QuietPeriodResult | None = None


def observed_first_contentful_paint(capture: PageLoadCapture) -> ObservedMetric:
    return ObservedMetric(
        name="FirstContentfulPaint", timing=capture.timestamps.first_contentful_paint
    )


def observed_first_meaningful_paint(capture: PageLoadCapture) -> ObservedMetric:
    fmp = capture.timestamps.first_meaningful_paint
    if fmp is None:
        raise InvalidTraceError("NO_FMP")
    return ObservedMetric(name="FirstMeaningfulPaint", timing=fmp)


def observed_interactive(capture: PageLoadCapture) -> ObservedMetric:
    """Start of the first 5 s CPU+network quiet window after FCP, but never before DCL."""
    ts = capture.timestamps
    quiet = find_overlapping_quiet_periods(
        long_task_periods(capture.toplevel_tasks),
        capture.records,
        reference_ms=ts.first_contentful_paint,
        trace_end=ts.trace_end,
    )
    timing = max(
        quiet.cpu_quiet_period.start,
        ts.first_contentful_paint,
        ts.dom_content_loaded or 0.0,
    )
    return ObservedMetric(name="Interactive", timing=timing, quiet_periods=quiet)


def observed_speed_index(capture: PageLoadCapture) -> ObservedMetric:
    """Layout-weighted speed index over the recorded main-thread tasks."""
    layouts = [
        (task.duration, task.end_time)
        for task in capture.toplevel_tasks
        if any(child.name == "Layout" for child in task.iter_descendants())
    ]
    timing = layout_weighted_time(layouts, floor=capture.timestamps.first_contentful_paint)
    return ObservedMetric(name="SpeedIndex", timing=timing)


OBSERVED_METRICS = {
    "first-contentful-paint": observed_first_contentful_paint,
    "first-meaningful-paint": observed_first_meaningful_paint,
    "interactive": observed_interactive,
    "speed-index": observed_speed_index,
}
