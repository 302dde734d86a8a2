from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Union

from lantern.cache import ComputedCache
from lantern.interactive import ObservedMetric
from lantern.metrics import MetricResult
from lantern.settings import Settings
from lantern.types import PageLoadCapture

MetricOutcome = Union[MetricResult, ObservedMetric]


class MetricExecutor(Protocol):
    def execute(
        self,
        *,
        metric: str,
        capture: PageLoadCapture,
        settings: Settings,
        cache: ComputedCache,
    ) -> MetricOutcome:
        raise NotImplementedError


@dataclass(frozen=True)
class SimulatedExecutor:
    def execute(
        self,
        *,
        metric: str,
        capture: PageLoadCapture,
        settings: Settings,
        cache: ComputedCache,
    ) -> MetricOutcome:
        from lantern.graph import get_page_graph
        from lantern.metrics import METRICS, SimulationContext
        from lantern.network_analyzer import analyze_network
        from lantern.simulator import SimulatorOptions

        graph = get_page_graph(capture, cache=cache)
        analysis = cache.get_or_compute(
            "NetworkAnalysis",
            inputs=(capture,),
            compute=lambda: analyze_network(capture.records),
        )
        context = cache.get_or_compute(
            "SimulationContext",
            inputs=(capture,),
            settings=settings,
            compute=lambda: SimulationContext(
                profile=settings.throttling,
                options=SimulatorOptions(
                    max_connections_per_origin=settings.max_connections_per_origin,
                    additional_rtt_by_origin=analysis.additional_rtt_by_origin,
                    server_response_time_by_origin=analysis.server_response_time_by_origin,
                ),
            ),
        )
        return METRICS[metric]().compute(graph, capture.timestamps, context, cache=cache)


@dataclass(frozen=True)
class ObservedExecutor:
    def execute(
        self,
        *,
        metric: str,
        capture: PageLoadCapture,
        settings: Settings,
        cache: ComputedCache,
    ) -> MetricOutcome:
        from lantern.interactive import OBSERVED_METRICS

        return cache.get_or_compute(
            f"Observed:{metric}",
            inputs=(capture,),
            compute=lambda: OBSERVED_METRICS[metric](capture),
        )


def default_executor_for_settings(settings: Settings) -> MetricExecutor:
    if settings.throttling_method == "simulate":
        return SimulatedExecutor()
    if settings.throttling_method == "provided":
        return ObservedExecutor()
    raise ValueError(f"Unsupported throttling_method: {settings.throttling_method}")
