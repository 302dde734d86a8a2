from __future__ import annotations

# Lantern metrics: each metric chooses an optimistic and a pessimistic subgraph
# of the page graph, simulates both, and blends the two estimates.

from dataclasses import dataclass, field
import logging
import math
from typing import Any, Callable, ClassVar, Iterable, Mapping

from lantern.cache import ComputedCache
from lantern.errors import InvalidTraceError
from lantern.estimates import OPTIMISTIC, PESSIMISTIC
from lantern.node import Node, NodeType
from lantern.settings import ThrottlingProfile
from lantern.simulator import SimulatorOptions, simulate
from lantern.types import NodeTiming, PageTimestamps, SimulationResult

logger = logging.getLogger(__name__)

INTERACTIVE_CPU_TASK_MS = 20.0
LONG_TASK_MS = 50.0


@dataclass(frozen=True)
class Coefficients:
    intercept: float = 0.0
    optimistic: float = 0.5
    pessimistic: float = 0.5


@dataclass(frozen=True)
class Estimate:
    time_in_ms: float
    node_timings: Mapping[Node, NodeTiming]


@dataclass(frozen=True)
class MetricResult:
    name: str
    timing: float
    optimistic_estimate: Estimate
    pessimistic_estimate: Estimate
    optimistic_graph: Node = field(repr=False)
    pessimistic_graph: Node = field(repr=False)

    @property
    def gap(self) -> float:
        return self.pessimistic_estimate.time_in_ms - self.optimistic_estimate.time_in_ms


@dataclass(frozen=True)
class SimulationContext:
    profile: ThrottlingProfile
    options: SimulatorOptions = field(default_factory=SimulatorOptions)


def _script_urls(graph: Node, predicate: Callable[[Node], bool]) -> set[str]:
    urls: set[str] = set()
    for node in graph.traverse():
        if node.node_type is not NodeType.NETWORK or node.record is None:
            continue
        if node.record.resource_type == "Script" and predicate(node):
            urls.add(node.record.url)
    return urls


def _evaluates_any(node: Node, urls: set[str]) -> bool:
    return bool(node.evaluate_script_urls() & urls)


def paint_based_graph(graph: Node, paint_ts: float, *, pessimistic: bool) -> Node:
    """Subgraph of work that could have blocked a paint at `paint_ts`.

    The optimistic variant leaves out script-initiated requests; the pessimistic
    one keeps them and every layout/paint task before the paint.
    """

    def blocking(node: Node) -> bool:
        if not node.has_render_blocking_priority():
            return False
        assert node.record is not None
        return pessimistic or node.record.initiator_type != "script"

    urls = _script_urls(graph, lambda n: n.end_time <= paint_ts and blocking(n))

    def keep(node: Node) -> bool:
        if node.end_time > paint_ts and not node.is_main_document:
            return False
        if node.node_type is NodeType.CPU:
            if pessimistic and node.did_perform_layout():
                return True
            return _evaluates_any(node, urls)
        return blocking(node)

    return graph.clone_with_relationships(keep)


class LanternMetric:
    name: ClassVar[str] = ""
    coefficients: ClassVar[Coefficients] = Coefficients()

    def cache_key(self) -> str:
        return f"Lantern{self.name}"

    def coefficients_for(self, profile: ThrottlingProfile) -> Coefficients:
        return self.coefficients

    def final_timing(self, timing: float, extras: dict[str, Any]) -> float:
        return timing

    def optimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        raise NotImplementedError

    def pessimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        raise NotImplementedError

    def prerequisites(
        self,
        graph: Node,
        timestamps: PageTimestamps,
        context: SimulationContext,
        cache: ComputedCache | None,
    ) -> dict[str, Any]:
        return {}

    def estimate(
        self, simulation: SimulationResult, *, optimistic: bool, extras: dict[str, Any]
    ) -> Estimate:
        return Estimate(time_in_ms=simulation.time_in_ms, node_timings=simulation.node_timings)

    def compute(
        self,
        graph: Node,
        timestamps: PageTimestamps,
        context: SimulationContext,
        *,
        cache: ComputedCache | None = None,
    ) -> MetricResult:
        if cache is None:
            return self._compute(graph, timestamps, context, cache)
        return cache.get_or_compute(
            self.cache_key(),
            inputs=(graph, timestamps, context),
            settings=context.profile,
            compute=lambda: self._compute(graph, timestamps, context, cache),
        )

    def _compute(
        self,
        graph: Node,
        timestamps: PageTimestamps,
        context: SimulationContext,
        cache: ComputedCache | None,
    ) -> MetricResult:
        extras = self.prerequisites(graph, timestamps, context, cache)
        optimistic_graph = self.optimistic_graph(graph, timestamps)
        pessimistic_graph = self.pessimistic_graph(graph, timestamps)

        optimistic_sim = simulate(
            optimistic_graph,
            profile=context.profile,
            assumptions=OPTIMISTIC,
            options=context.options,
        )
        pessimistic_sim = simulate(
            pessimistic_graph,
            profile=context.profile,
            assumptions=PESSIMISTIC,
            options=context.options,
        )
        optimistic = self.estimate(optimistic_sim, optimistic=True, extras=extras)
        pessimistic = self.estimate(pessimistic_sim, optimistic=False, extras=extras)

        c = self.coefficients_for(context.profile)
        # The intercept only applies in full once the optimistic estimate reaches 1 s.
        intercept_scale = min(1.0, optimistic.time_in_ms / 1000) if c.intercept > 0 else 1.0
        timing = (
            c.intercept * intercept_scale
            + c.optimistic * optimistic.time_in_ms
            + c.pessimistic * pessimistic.time_in_ms
        )
        timing = self.final_timing(timing, extras)
        logger.debug(
            "%s: optimistic %.1fms, pessimistic %.1fms -> %.1fms",
            self.name,
            optimistic.time_in_ms,
            pessimistic.time_in_ms,
            timing,
        )
        return MetricResult(
            name=self.name,
            timing=timing,
            optimistic_estimate=optimistic,
            pessimistic_estimate=pessimistic,
            optimistic_graph=optimistic_graph,
            pessimistic_graph=pessimistic_graph,
        )


class FirstContentfulPaint(LanternMetric):
    name = "FirstContentfulPaint"

    def optimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        return paint_based_graph(graph, timestamps.first_contentful_paint, pessimistic=False)

    def pessimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        return paint_based_graph(graph, timestamps.first_contentful_paint, pessimistic=True)


class FirstMeaningfulPaint(LanternMetric):
    name = "FirstMeaningfulPaint"

    @staticmethod
    def _fmp(timestamps: PageTimestamps) -> float:
        if timestamps.first_meaningful_paint is None:
            raise InvalidTraceError("NO_FMP")
        return timestamps.first_meaningful_paint

    def optimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        return paint_based_graph(graph, self._fmp(timestamps), pessimistic=False)

    def pessimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        return paint_based_graph(graph, self._fmp(timestamps), pessimistic=True)

    def prerequisites(self, graph, timestamps, context, cache):
        return {"fcp": FirstContentfulPaint().compute(graph, timestamps, context, cache=cache)}

    def estimate(self, simulation, *, optimistic, extras):
        fcp: MetricResult = extras["fcp"]
        bound = fcp.optimistic_estimate if optimistic else fcp.pessimistic_estimate
        return Estimate(
            time_in_ms=max(bound.time_in_ms, simulation.time_in_ms),
            node_timings=simulation.node_timings,
        )


def last_long_task_end(
    node_timings: Mapping[Node, NodeTiming], *, duration: float = LONG_TASK_MS
) -> float:
    ends = [
        timing.end_time
        for node, timing in node_timings.items()
        if node.node_type is NodeType.CPU and timing.duration > duration
    ]
    return max(ends, default=0.0)


class Interactive(LanternMetric):
    name = "Interactive"

    def optimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        def keep(node: Node) -> bool:
            if node.node_type is NodeType.CPU:
                assert node.task is not None
                return node.task.duration > INTERACTIVE_CPU_TASK_MS
            assert node.record is not None
            if node.record.resource_type == "Image":
                return False
            return node.record.resource_type == "Script" or node.record.priority in (
                "High",
                "VeryHigh",
            )

        return graph.clone_with_relationships(keep)

    def pessimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        return graph

    def prerequisites(self, graph, timestamps, context, cache):
        return {"fcp": FirstContentfulPaint().compute(graph, timestamps, context, cache=cache)}

    def estimate(self, simulation, *, optimistic, extras):
        fcp: MetricResult = extras["fcp"]
        bound = fcp.optimistic_estimate if optimistic else fcp.pessimistic_estimate
        return Estimate(
            time_in_ms=max(bound.time_in_ms, last_long_task_end(simulation.node_timings)),
            node_timings=simulation.node_timings,
        )


SPEED_INDEX_REFERENCE_RTT_MS = 150.0
# Round trip below which the page is too fast for the fitted coefficients to apply.
SPEED_INDEX_BASE_RTT_MS = 30.0


def layout_weighted_time(layouts: Iterable[tuple[float, float]], *, floor: float) -> float:
    """Mean end time of layout tasks, weighted by log2 of each task's duration.

    `layouts` holds `(duration, end_time)` pairs. No end time counts as earlier
    than `floor`; with no weight at all the result is `floor`.
    """
    total_weight = 0.0
    weighted = 0.0
    for duration, end_time in layouts:
        weight = math.log2(duration) if duration > 1 else 0.0
        total_weight += weight
        weighted += weight * max(end_time, floor)
    if not total_weight:
        return floor
    return weighted / total_weight


def simulated_layouts(node_timings: Mapping[Node, NodeTiming]) -> list[tuple[float, float]]:
    return [
        (timing.duration, timing.end_time)
        for node, timing in node_timings.items()
        if node.node_type is NodeType.CPU
        and any(evt.name == "Layout" for evt in node.child_events)
    ]


class SpeedIndex(LanternMetric):
    """Layout-based Speed Index.

    A visually measured speed index, when the caller has one, replaces the
    optimistic estimate.
    """

    name = "SpeedIndex"
    coefficients = Coefficients(intercept=-250.0, optimistic=1.4, pessimistic=0.65)

    def __init__(self, measured_speed_index: float | None = None) -> None:
        self.measured_speed_index = measured_speed_index

    def cache_key(self) -> str:
        if self.measured_speed_index is None:
            return super().cache_key()
        return f"{super().cache_key()}:{self.measured_speed_index}"

    def coefficients_for(self, profile: ThrottlingProfile) -> Coefficients:
        c = self.coefficients
        scale = max(
            (profile.rtt_ms - SPEED_INDEX_BASE_RTT_MS)
            / (SPEED_INDEX_REFERENCE_RTT_MS - SPEED_INDEX_BASE_RTT_MS),
            0.0,
        )
        return Coefficients(
            intercept=c.intercept * scale,
            optimistic=0.5 + (c.optimistic - 0.5) * scale,
            pessimistic=0.5 + (c.pessimistic - 0.5) * scale,
        )

    def optimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        return graph

    def pessimistic_graph(self, graph: Node, timestamps: PageTimestamps) -> Node:
        return graph

    def prerequisites(self, graph, timestamps, context, cache):
        return {"fcp": FirstContentfulPaint().compute(graph, timestamps, context, cache=cache)}

    def estimate(self, simulation, *, optimistic, extras):
        fcp: MetricResult = extras["fcp"]
        if optimistic and self.measured_speed_index is not None:
            time_in_ms = self.measured_speed_index
        else:
            time_in_ms = layout_weighted_time(
                simulated_layouts(simulation.node_timings),
                floor=fcp.pessimistic_estimate.time_in_ms,
            )
        return Estimate(time_in_ms=time_in_ms, node_timings=simulation.node_timings)

    def final_timing(self, timing, extras):
        return max(timing, extras["fcp"].timing)


METRICS: dict[str, type[LanternMetric]] = {
    "first-contentful-paint": FirstContentfulPaint,
    "first-meaningful-paint": FirstMeaningfulPaint,
    "interactive": Interactive,
    "speed-index": SpeedIndex,
}
