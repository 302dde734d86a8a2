from __future__ import annotations

# Chrome trace events -> main-thread task tree and page timestamps.

import logging
from typing import Any, Iterable

from lantern.errors import InvalidTraceError
from lantern.types import CpuTask, PageTimestamps, TraceEvent

logger = logging.getLogger(__name__)

SCHEDULABLE_TASK_NAMES = (
    "RunTask",
    "ThreadControllerImpl::RunTask",
    "ThreadControllerImpl::DoWork",
    "TaskQueueManager::ProcessTaskFromWorkQueue",
)

_URL_EVENT_KEYS = ("url", "styleSheetUrl")
# Instant events (timers, XHR state changes) carry no duration but belong to a task.
_NESTED_PHASES = ("X", "I", "i")


def trace_events_of(trace: Any) -> list[dict[str, Any]]:
    if isinstance(trace, dict):
        events = trace.get("traceEvents")
    else:
        events = trace
    if not isinstance(events, list) or not events:
        raise InvalidTraceError("NO_TRACING_STARTED", "trace contains no events")
    return [e for e in events if isinstance(e, dict)]


def _main_frame(events: list[dict[str, Any]]) -> tuple[int | None, int | None, str | None]:
    """(pid, tid, frame id) of the inspected page, when the trace announces it."""
    for e in events:
        name = e.get("name")
        data = (e.get("args") or {}).get("data") or {}
        if name == "TracingStartedInBrowser":
            for frame in data.get("frames", []):
                if not frame.get("parent"):
                    return frame.get("processId"), None, frame.get("frame")
        if name == "TracingStartedInPage":
            return e.get("pid"), e.get("tid"), data.get("page")
    return None, None, None


def _main_thread(events: list[dict[str, Any]], pid: int | None, tid: int | None) -> tuple[int, int]:
    if pid is not None and tid is not None:
        return int(pid), int(tid)
    for e in events:
        if e.get("ph") != "M" or e.get("name") != "thread_name":
            continue
        if (e.get("args") or {}).get("name") != "CrRendererMain":
            continue
        if pid is None or e.get("pid") == pid:
            return int(e["pid"]), int(e["tid"])
    for e in events:
        if e.get("name") == "navigationStart":
            return int(e.get("pid", 0)), int(e.get("tid", 0))
    raise InvalidTraceError("NO_MAIN_THREAD", "could not identify the renderer main thread")


def _frame_matches(e: dict[str, Any], frame_id: str | None) -> bool:
    if frame_id is None:
        return True
    return (e.get("args") or {}).get("frame") == frame_id


def _marker_times(events: list[dict[str, Any]], name: str, frame_id: str | None) -> list[float]:
    return [
        float(e["ts"]) / 1000.0
        for e in events
        if e.get("name") == name and "ts" in e and _frame_matches(e, frame_id)
    ]


def _first_after(times: list[float], t0: float) -> float | None:
    after = [t for t in times if t >= t0]
    return min(after) if after else None


def compute_timestamps(events: list[dict[str, Any]], frame_id: str | None) -> PageTimestamps:
    nav_starts = _marker_times(events, "navigationStart", frame_id)
    if not nav_starts:
        raise InvalidTraceError("NO_NAVSTART", "no navigationStart for the main frame")

    fcps = _marker_times(events, "firstContentfulPaint", frame_id)
    if not fcps:
        raise InvalidTraceError("NO_FCP", "no firstContentfulPaint for the main frame")
    first_fcp = min(fcps)
    before_paint = [t for t in nav_starts if t <= first_fcp]
    origin = max(before_paint) if before_paint else min(nav_starts)

    fcp = _first_after(fcps, origin)
    if fcp is None:
        raise InvalidTraceError("NO_FCP", "firstContentfulPaint precedes navigation start")

    fmp = _first_after(_marker_times(events, "firstMeaningfulPaint", frame_id), origin)
    if fmp is None:
        candidates = [
            t
            for t in _marker_times(events, "firstMeaningfulPaintCandidate", frame_id)
            if t >= origin
        ]
        fmp = max(candidates) if candidates else None

    trace_end = origin
    for e in events:
        if "ts" not in e or e.get("ph") == "M":
            continue
        trace_end = max(trace_end, (float(e["ts"]) + float(e.get("dur", 0))) / 1000.0)

    def rel(t: float | None) -> float | None:
        return None if t is None else t - origin

    return PageTimestamps(
        time_origin=origin,
        first_contentful_paint=fcp - origin,
        trace_end=trace_end - origin,
        first_paint=rel(_first_after(_marker_times(events, "firstPaint", frame_id), origin)),
        first_meaningful_paint=rel(fmp),
        dom_content_loaded=rel(
            _first_after(_marker_times(events, "domContentLoadedEventEnd", frame_id), origin)
        ),
        load=rel(_first_after(_marker_times(events, "loadEventEnd", frame_id), origin)),
    )


def _to_event(raw: dict[str, Any], origin: float) -> TraceEvent:
    return TraceEvent(
        name=str(raw.get("name", "")),
        cat=str(raw.get("cat", "")),
        ph=str(raw.get("ph", "")),
        ts=float(raw["ts"]) / 1000.0 - origin,
        dur=float(raw.get("dur", 0)) / 1000.0,
        pid=int(raw.get("pid", 0)),
        tid=int(raw.get("tid", 0)),
        args=raw.get("args") or {},
    )


def main_thread_events(
    events: Iterable[dict[str, Any]], *, pid: int, tid: int, origin: float
) -> list[TraceEvent]:
    out = [
        _to_event(e, origin)
        for e in events
        if e.get("pid") == pid and e.get("tid") == tid and "ts" in e and e.get("ph") != "M"
    ]
    # Parents sort before children that share their start time.
    out.sort(key=lambda e: (e.ts, -e.dur))
    return out


def _own_urls(event: TraceEvent) -> list[str]:
    data = event.data
    urls = [str(data[k]) for k in _URL_EVENT_KEYS if data.get(k)]
    for frame in data.get("stackTrace") or []:
        url = frame.get("url") if isinstance(frame, dict) else None
        if url:
            urls.append(str(url))
    return urls


def build_task_tree(events: list[TraceEvent]) -> list[CpuTask]:
    """Nest complete ("X") and instant events by time containment; returns the top-level tasks."""
    toplevel: list[CpuTask] = []
    stack: list[CpuTask] = []
    for event in events:
        if event.ph not in _NESTED_PHASES:
            continue
        while stack and event.ts >= stack[-1].end_time:
            stack.pop()
        parent = stack[-1] if stack else None
        if parent is not None and event.end > parent.end_time:
            # Overlapping but not nested; clip to the parent.
            logger.debug("clipping %s at %.3fms to its parent %s", event.name, event.ts, parent.name)
            event = TraceEvent(
                name=event.name,
                cat=event.cat,
                ph=event.ph,
                ts=event.ts,
                dur=parent.end_time - event.ts,
                pid=event.pid,
                tid=event.tid,
                args=event.args,
            )
        inherited = list(parent.urls) if parent is not None else []
        own = [u for u in _own_urls(event) if u not in inherited]
        task = CpuTask(event=event, parent=parent, urls=tuple(inherited + own))
        if parent is None:
            toplevel.append(task)
        else:
            parent.children.append(task)
        stack.append(task)
    return toplevel


def is_schedulable_task(task: CpuTask) -> bool:
    if task.parent is not None or task.duration <= 0:
        return False
    return task.name in SCHEDULABLE_TASK_NAMES or "toplevel" in task.event.cat


def process_trace(trace: Any) -> tuple[PageTimestamps, list[TraceEvent], list[CpuTask]]:
    events = trace_events_of(trace)
    pid, tid, frame_id = _main_frame(events)
    main_pid, main_tid = _main_thread(events, pid, tid)
    timestamps = compute_timestamps(events, frame_id)
    thread_events = main_thread_events(
        events, pid=main_pid, tid=main_tid, origin=timestamps.time_origin
    )
    tasks = build_task_tree(thread_events)
    logger.debug(
        "main thread %d:%d has %d events in %d top-level tasks",
        main_pid,
        main_tid,
        len(thread_events),
        len(tasks),
    )
    return timestamps, thread_events, tasks
