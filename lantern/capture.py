from __future__ import annotations

from typing import Any, Iterable

from lantern.cache import ComputedCache
from lantern.devtools_log import parse_devtools_log
from lantern.trace import process_trace
from lantern.types import NetworkRecord, PageLoadCapture


def _main_document_url(records: list[NetworkRecord]) -> str:
    # Redirect hops are closed out as "Other", so this is where the navigation landed.
    for r in records:
        if r.resource_type == "Document":
            return r.url
    return records[0].url if records else ""


def normalize(trace: Any, devtools_log: Iterable[dict[str, Any]]) -> PageLoadCapture:
    """Parse a trace and a DevTools log onto the navigation-start time origin."""
    timestamps, thread_events, tasks = process_trace(trace)
    records = parse_devtools_log(devtools_log, time_origin_ms=timestamps.time_origin)
    return PageLoadCapture(
        records=tuple(records),
        main_thread_events=tuple(thread_events),
        toplevel_tasks=tuple(tasks),
        timestamps=timestamps,
        main_document_url=_main_document_url(records),
    )


def load_capture(
    trace: Any,
    devtools_log: list[dict[str, Any]],
    *,
    cache: ComputedCache | None = None,
) -> PageLoadCapture:
    if cache is None:
        return normalize(trace, devtools_log)
    return cache.get_or_compute(
        "PageLoadCapture",
        inputs=(trace, devtools_log),
        compute=lambda: normalize(trace, devtools_log),
    )
