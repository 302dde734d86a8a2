from __future__ import annotations

import logging
from typing import Any, Iterable

from lantern.cache import ComputedCache
from lantern.capture import load_capture
from lantern.errors import NoQuietPeriodError
from lantern.executors import MetricExecutor, MetricOutcome, default_executor_for_settings
from lantern.metrics import METRICS
from lantern.settings import Settings
from lantern.validate import validate_settings

logger = logging.getLogger(__name__)


def compute_metric(
    metric: str,
    *,
    trace: Any,
    devtools_log: list[dict[str, Any]],
    settings: Settings | None = None,
    cache: ComputedCache | None = None,
    executor: MetricExecutor | None = None,
) -> MetricOutcome:
    """Compute one metric by name, one of `METRICS` (e.g. `interactive`, `speed-index`)."""
    if metric not in METRICS:
        raise ValueError(f"Unknown metric: {metric!r} (expected one of {', '.join(METRICS)})")
    settings = settings or Settings()
    validate_settings(settings)
    cache = cache if cache is not None else ComputedCache()
    executor = executor or default_executor_for_settings(settings)

    capture = load_capture(trace, devtools_log, cache=cache)
    return executor.execute(metric=metric, capture=capture, settings=settings, cache=cache)


def compute_metrics(
    metrics: Iterable[str],
    *,
    trace: Any,
    devtools_log: list[dict[str, Any]],
    settings: Settings | None = None,
    cache: ComputedCache | None = None,
) -> dict[str, MetricOutcome | NoQuietPeriodError]:
    """Compute several metrics sharing one cache.

    A metric without a quiet window is reported as its `NoQuietPeriodError`
    rather than failing the whole run.
    """
    cache = cache if cache is not None else ComputedCache()
    out: dict[str, MetricOutcome | NoQuietPeriodError] = {}
    for metric in metrics:
        try:
            out[metric] = compute_metric(
                metric, trace=trace, devtools_log=devtools_log, settings=settings, cache=cache
            )
        except NoQuietPeriodError as e:
            logger.info("%s is not applicable: %s", metric, e)
            out[metric] = e
    return out
