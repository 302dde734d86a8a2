from __future__ import annotations

# Discrete-event page-load simulator.
#
# One pure entry point, `simulate()`, walks a dependency graph under a throttling
# profile. All mutable state (connection pool, DNS cache, ready set, progress)
# lives in a `_SimulationRun` that is discarded after the run.

from dataclasses import dataclass, field
import logging
import math

from lantern.connection import ConnectionPool, DnsCache
from lantern.errors import UnreachableNodeError
from lantern.estimates import ResourceAssumptions
from lantern.network_analyzer import DEFAULT_SERVER_RESPONSE_TIME_MS
from lantern.node import Node, NodeType
from lantern.settings import DEFAULT_MAX_CONNECTIONS_PER_ORIGIN, ThrottlingProfile
from lantern.types import NodeTiming, SimulationResult

logger = logging.getLogger(__name__)

MAXIMUM_CPU_TASK_MS = 10_000.0
CACHED_RESPONSE_BASE_MS = 8.0
CACHED_RESPONSE_MS_PER_MB = 20.0
_EPSILON = 1e-9


@dataclass(frozen=True)
class SimulatorOptions:
    max_connections_per_origin: int = DEFAULT_MAX_CONNECTIONS_PER_ORIGIN
    additional_rtt_by_origin: dict[str, float] = field(default_factory=dict)
    server_response_time_by_origin: dict[str, float] = field(default_factory=dict)
    default_server_response_time: float = DEFAULT_SERVER_RESPONSE_TIME_MS


@dataclass
class _Progress:
    start_time: float
    time_elapsed: float = 0.0
    overshoot: float = 0.0
    bytes_downloaded: int = 0
    estimated_remaining: float = 0.0


def _reachable(root: Node) -> list[Node]:
    nodes = list(root.traverse())
    members = {id(n) for n in nodes}
    blocked: list[Node] = []
    for node in nodes:
        if any(id(dep) not in members for dep in node.dependencies):
            blocked.append(node)
    if blocked:
        # Dependents of a blocked node are blocked too.
        stuck = {id(n): n for b in blocked for n in b.traverse()}
        raise UnreachableNodeError(sorted(n.node_id for n in stuck.values()))
    return nodes


class _SimulationRun:
    def __init__(
        self,
        root: Node,
        profile: ThrottlingProfile,
        assumptions: ResourceAssumptions,
        options: SimulatorOptions,
    ) -> None:
        self.profile = profile
        self.assumptions = assumptions
        self.nodes = _reachable(root)
        self.root = root
        ordered = sorted(self.nodes, key=lambda n: (n.start_time, n.node_id))
        self.position = {id(n): i for i, n in enumerate(ordered)}
        self.position[id(root)] = -1
        members = {id(n) for n in self.nodes}
        self.pending = {
            id(n): sum(1 for d in n.dependencies if id(d) in members) for n in self.nodes
        }

        self.pool = ConnectionPool(
            rtt=profile.rtt_ms,
            throughput=profile.throughput_bps,
            max_connections_per_origin=options.max_connections_per_origin,
            additional_rtt_by_origin=options.additional_rtt_by_origin,
            server_response_time_by_origin=options.server_response_time_by_origin,
            default_server_response_time=options.default_server_response_time,
            fresh_connection_per_request=not assumptions.reuse_warm_connections,
            warm_new_connections_after_first_use=assumptions.warm_new_connections_after_first_use,
        )
        self.dns = DnsCache(rtt=profile.rtt_ms)
        self.ready: list[Node] = []
        self.in_progress: list[Node] = []
        self.progress: dict[int, _Progress] = {}
        self.timings: dict[Node, NodeTiming] = {}
        self.cpu_busy: Node | None = None

    # Scheduling.

    def _uses_connection(self, node: Node) -> bool:
        record = node.record
        return record is not None and not record.from_cache and not record.is_non_network_protocol

    def _ready_in_order(self) -> list[Node]:
        cpu = [n for n in self.ready if n.node_type is NodeType.CPU]
        network = [n for n in self.ready if n.node_type is NodeType.NETWORK]
        cpu.sort(key=lambda n: self.position[id(n)])

        def network_key(n: Node) -> tuple[int, int]:
            assert n.record is not None
            reuse = 0 if self.pool.has_open_connection(n.record) else 1
            return reuse, self.position[id(n)]

        network.sort(key=network_key)
        return cpu[:1] + network

    def _try_start(self, node: Node, now: float) -> None:
        if node.node_type is NodeType.CPU:
            if self.cpu_busy is not None:
                return
            self.cpu_busy = node
        elif node.node_type is NodeType.NETWORK:
            assert node.record is not None
            if self._uses_connection(node) and self.pool.acquire(node.record) is None:
                return
        else:  # pragma: no cover
            raise AssertionError(f"unhandled node type: {node.node_type}")
        self.ready.remove(node)
        self.in_progress.append(node)
        self.progress[id(node)] = _Progress(start_time=now)

    def _update_network_capacity(self) -> None:
        flowing = [n for n in self.in_progress if self._uses_connection(n)]
        if not flowing:
            return
        share = self.profile.throughput_bps / len(flowing)
        for conn in self.pool.in_flight():
            conn.throughput = share

    # Timing model.

    def _cpu_duration(self, node: Node) -> float:
        assert node.task is not None
        multiplier = self.profile.cpu_slowdown_multiplier
        if node.did_perform_layout():
            multiplier *= self.assumptions.layout_task_multiplier
        return min(node.task.duration * multiplier, MAXIMUM_CPU_TASK_MS)

    def _estimate_remaining(self, node: Node) -> float:
        prog = self.progress[id(node)]
        if node.node_type is NodeType.CPU:
            remaining = self._cpu_duration(node) - prog.time_elapsed
        else:
            record = node.record
            assert record is not None
            if record.is_non_network_protocol:
                remaining = 0.0
            elif record.from_cache:
                size_mb = record.resource_size / 1024 / 1024
                total = CACHED_RESPONSE_BASE_MS + CACHED_RESPONSE_MS_PER_MB * size_mb
                remaining = total - prog.time_elapsed
            else:
                conn = self.pool.connection_for(record)
                dns = self.dns.time_until_resolution(record, requested_at=prog.start_time)
                estimate = conn.simulate_download_until(
                    record.transfer_size - prog.bytes_downloaded,
                    time_already_elapsed=prog.time_elapsed,
                    dns_resolution_time=dns,
                )
                remaining = estimate.time_elapsed + prog.overshoot
        prog.estimated_remaining = max(remaining, 0.0)
        return prog.estimated_remaining

    def _advance(self, node: Node, step: float, now: float) -> None:
        prog = self.progress[id(node)]
        finished = prog.estimated_remaining <= step + _EPSILON
        if not finished and step <= 0:
            return
        if not self._uses_connection(node):
            if finished:
                self._complete(node, now)
            else:
                prog.time_elapsed += step
            return

        record = node.record
        assert record is not None
        conn = self.pool.connection_for(record)
        dns = self.dns.time_until_resolution(record, requested_at=prog.start_time, update=True)
        calc = conn.simulate_download_until(
            record.transfer_size - prog.bytes_downloaded,
            time_already_elapsed=prog.time_elapsed,
            maximum_time_to_elapse=step - prog.overshoot,
            dns_resolution_time=dns,
        )
        conn.congestion_window = calc.congestion_window
        conn.h2_overflow_bytes_downloaded = calc.extra_bytes_downloaded
        if finished:
            self._complete(node, now)
        else:
            prog.time_elapsed += calc.time_elapsed
            prog.overshoot += calc.time_elapsed - step
            prog.bytes_downloaded += calc.bytes_downloaded

    def _complete(self, node: Node, now: float) -> None:
        prog = self.progress.pop(id(node))
        self.timings[node] = NodeTiming(start_time=prog.start_time, end_time=now)
        self.in_progress.remove(node)
        if node.node_type is NodeType.CPU:
            self.cpu_busy = None
        elif self._uses_connection(node):
            assert node.record is not None
            self.pool.release(node.record)
        for dependent in node.dependents:
            key = id(dependent)
            if key not in self.pending:
                continue
            self.pending[key] -= 1
            if self.pending[key] == 0:
                self.ready.append(dependent)

    def run(self) -> SimulationResult:
        now = 0.0
        self.ready.append(self.root)
        iterations = 0
        while self.ready or self.in_progress:
            for node in self._ready_in_order():
                self._try_start(node, now)
            if not self.in_progress:
                raise UnreachableNodeError(
                    sorted(n.node_id for n in self.ready), label=self.assumptions.label
                )

            self._update_network_capacity()
            step = min(self._estimate_remaining(n) for n in self.in_progress)
            if not math.isfinite(step):
                raise UnreachableNodeError(
                    sorted(n.node_id for n in self.in_progress), label=self.assumptions.label
                )
            now += step
            for node in list(self.in_progress):
                self._advance(node, step, now)
            iterations += 1

        if len(self.timings) != len(self.nodes):
            never = [n.node_id for n in self.nodes if n not in self.timings]
            raise UnreachableNodeError(sorted(never), label=self.assumptions.label)

        total = max((t.end_time for t in self.timings.values()), default=0.0)
        logger.debug(
            "%s simulation: %d nodes in %d steps, %.1fms",
            self.assumptions.label,
            len(self.nodes),
            iterations,
            total,
        )
        return SimulationResult(
            time_in_ms=total, node_timings=self.timings, label=self.assumptions.label
        )


def simulate(
    graph: Node,
    *,
    profile: ThrottlingProfile,
    assumptions: ResourceAssumptions,
    options: SimulatorOptions | None = None,
) -> SimulationResult:
    """Simulate the graph containing `graph`; all-or-nothing, deterministic."""
    run = _SimulationRun(graph.get_root(), profile, assumptions, options or SimulatorOptions())
    return run.run()
