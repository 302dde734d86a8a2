from __future__ import annotations

# Page dependency graph: one node per network record and per top-level
# main-thread task, rooted at the main document request.

import logging

from lantern.cache import ComputedCache
from lantern.errors import GraphConstructionError
from lantern.node import Node, NodeType, all_nodes, find_cycle
from lantern.trace import is_schedulable_task
from lantern.types import NetworkRecord, PageLoadCapture

logger = logging.getLogger(__name__)

SIGNIFICANT_TASK_MS = 10.0
# Script evaluation may begin slightly before its download is reported done.
SCRIPT_OVERLAP_TOLERANCE_MS = 100.0
# Start-time slack allowed when ordering two nodes that look mutually dependent.
TIE_BREAK_TOLERANCE_MS = 0.0

_URL_LINK_EVENTS = {
    "EvaluateScript": ("url",),
    "FunctionCall": ("url",),
    "v8.compile": ("url",),
    "ParseAuthorStyleSheet": ("styleSheetUrl",),
}
_STACK_LINK_EVENTS = (
    "TimerInstall",
    "InvalidateLayout",
    "ScheduleStyleRecalculation",
    "EvaluateScript",
    "XHRReadyStateChange",
    "ResourceSendRequest",
)


class _NetworkIndex:
    def __init__(self, nodes: list[Node]) -> None:
        self.nodes = nodes
        self.by_id: dict[str, Node] = {}
        self.by_url: dict[str, list[Node]] = {}
        for node in nodes:
            assert node.record is not None
            self.by_id[node.record.request_id] = node
            self.by_url.setdefault(node.record.url, []).append(node)


def _precedes(a: Node, b: Node, order: dict[int, int]) -> bool:
    if a.start_time < b.start_time - TIE_BREAK_TOLERANCE_MS:
        return True
    if a.start_time > b.start_time + TIE_BREAK_TOLERANCE_MS:
        return False
    return order[id(a)] < order[id(b)]


def link(dependency: Node, dependent: Node, order: dict[int, int]) -> bool:
    """Add `dependency -> dependent` if it agrees with observed start order.

    Initiator data is noisy and can describe two requests as initiating each
    other. Every edge added here points forward in one total order (start
    time, then observation index), so these edges alone can never form a loop.
    """
    if dependency is dependent or dependency in dependent.dependencies:
        return False
    if not _precedes(dependency, dependent, order):
        logger.debug(
            "dropping edge %s -> %s against observed start order",
            dependency.node_id,
            dependent.node_id,
        )
        return False
    dependent.add_dependency(dependency)
    return True


def _find_main_document(index: _NetworkIndex, main_document_url: str) -> Node:
    for node in index.nodes:
        assert node.record is not None
        if node.record.url == main_document_url and node.record.resource_type == "Document":
            return node
    for node in index.nodes:
        if node.resource_type == "Document":
            return node
    if not index.nodes:
        raise GraphConstructionError("capture has no finished network requests")
    return index.nodes[0]


def _find_root(index: _NetworkIndex, main_document: Node) -> Node:
    """The first hop of the main document's redirect chain."""
    assert main_document.record is not None
    for hop in main_document.record.redirects:
        node = index.by_id.get(hop.request_id)
        if node is not None:
            return node
    return main_document


def _initiator_urls(record: NetworkRecord) -> list[str]:
    urls = [record.initiator_url] if record.initiator_url else []
    urls.extend(u for u in record.initiator_stack_urls if u not in urls)
    return urls


def _link_network_nodes(
    index: _NetworkIndex, root: Node, main_document: Node, order: dict[int, int]
) -> None:
    assert main_document.record is not None
    chain_ids = {hop.request_id for hop in main_document.record.redirects}
    for node in index.nodes:
        if node is root:
            continue
        record = node.record
        assert record is not None
        # Hops of the navigation itself can only fall back to the first hop.
        fallback = root if record.request_id in chain_ids else main_document
        initiator = index.by_id.get(record.initiator_request_id or "", fallback)
        # A redirect hop depends only on the previous hop.
        urls = [] if record.redirects else _initiator_urls(record)
        for url in urls:
            candidates = index.by_url.get(url, [])
            if len(candidates) == 1 and candidates[0].start_time <= node.start_time:
                link(candidates[0], node, order)
            else:
                link(initiator, node, order)
        if record.redirects:
            hops = [*record.redirects, record]
            for prev, cur in zip(hops, hops[1:]):
                prev_node = index.by_id.get(prev.request_id)
                cur_node = index.by_id.get(cur.request_id)
                if prev_node is not None and cur_node is not None:
                    # Redirect chains are strictly linear; no tie-breaking here.
                    cur_node.add_dependency(prev_node)
        if not node.dependencies:
            link(initiator, node, order)
            if not node.dependencies:
                link(fallback, node, order)
            if not node.dependencies:
                link(root, node, order)


def _closest_finished_request(cpu: Node, url: str, index: _NetworkIndex) -> Node | None:
    best: Node | None = None
    best_gap = float("inf")
    for candidate in index.by_url.get(url, []):
        if candidate.start_time >= cpu.start_time:
            continue
        gap = cpu.start_time - candidate.end_time
        if gap >= -SCRIPT_OVERLAP_TOLERANCE_MS and gap < best_gap:
            best, best_gap = candidate, gap
    return best


def _link_cpu_nodes(
    cpu_nodes: list[Node],
    index: _NetworkIndex,
    root: Node,
    main_document: Node,
    order: dict[int, int],
) -> None:
    timers: dict[object, Node] = {}

    def on_url(cpu: Node, url: object) -> None:
        if not url:
            return
        network = _closest_finished_request(cpu, str(url), index)
        if network is not None:
            link(network, cpu, order)

    for cpu in cpu_nodes:
        for evt in cpu.child_events:
            data = evt.data
            if not data:
                continue
            if evt.name in _URL_LINK_EVENTS:
                for key in _URL_LINK_EVENTS[evt.name]:
                    on_url(cpu, data.get(key))
            if evt.name == "XHRReadyStateChange" and data.get("readyState") == 4:
                on_url(cpu, data.get("url"))
            if evt.name in _STACK_LINK_EVENTS:
                for frame in data.get("stackTrace") or []:
                    on_url(cpu, frame.get("url") if isinstance(frame, dict) else None)
            if evt.name == "TimerInstall":
                timers[data.get("timerId")] = cpu
            elif evt.name == "TimerFire":
                installer = timers.get(data.get("timerId"))
                if installer is not None and installer.end_time <= cpu.start_time:
                    link(installer, cpu, order)
            elif evt.name == "ResourceSendRequest":
                request = index.by_id.get(str(data.get("requestId", "")))
                if (
                    request is not None
                    and request.resource_type in ("XHR", "Fetch")
                    and request.start_time > cpu.start_time
                ):
                    link(cpu, request, order)

        if not cpu.dependencies:
            link(main_document, cpu, order)
        if not cpu.dependencies:
            link(root, cpu, order)


def _prune_short_tasks(cpu_nodes: list[Node]) -> list[Node]:
    kept: list[Node] = []
    firsts: set[str] = set()
    for cpu in cpu_nodes:
        is_first = False
        for marker in ("Layout", "Paint", "ParseHTML"):
            if marker not in firsts and any(e.name == marker for e in cpu.child_events):
                firsts.add(marker)
                is_first = True
        assert cpu.task is not None
        if (
            is_first
            or cpu.task.duration >= SIGNIFICANT_TASK_MS
            or len(cpu.dependencies) != 1
            or len(cpu.dependents) > 1
        ):
            kept.append(cpu)
            continue
        parent = cpu.dependencies[0]
        children = list(cpu.dependents)
        cpu.remove_dependency(parent)
        for child in children:
            child.remove_dependency(cpu)
            child.add_dependency(parent)
    return kept


def build_page_graph(capture: PageLoadCapture) -> Node:
    """Build the dependency graph; the root is the first request of the main document."""
    records = [r for r in capture.records if r.finished and r.end_time is not None]
    net_nodes = [Node.for_record(r) for r in records]
    index = _NetworkIndex(net_nodes)
    main_document = _find_main_document(index, capture.main_document_url)
    main_document.is_main_document = True
    root = _find_root(index, main_document)
    # Work from before the navigation cannot hang off the root.
    net_nodes = [n for n in net_nodes if n.start_time >= root.start_time]
    index = _NetworkIndex(net_nodes)

    cpu_nodes = [
        Node.for_task(t)
        for t in capture.toplevel_tasks
        if is_schedulable_task(t) and t.start_time >= root.start_time
    ]
    everything = sorted(net_nodes + cpu_nodes, key=lambda n: (n.start_time, n.node_id))
    order = {id(n): i for i, n in enumerate(everything)}
    order[id(root)] = -1

    _link_network_nodes(index, root, main_document, order)
    _link_cpu_nodes(cpu_nodes, index, root, main_document, order)
    kept_cpu = _prune_short_tasks(cpu_nodes)

    cycle = find_cycle(root)
    if cycle is not None:
        raise GraphConstructionError(
            "dependency cycle in page graph", node_ids=[n.node_id for n in cycle]
        )
    logger.debug(
        "page graph: %d network nodes, %d cpu nodes (%d pruned), %d reachable",
        len(net_nodes),
        len(kept_cpu),
        len(cpu_nodes) - len(kept_cpu),
        len(all_nodes(root)),
    )
    return root


def get_page_graph(capture: PageLoadCapture, *, cache: ComputedCache | None = None) -> Node:
    if cache is None:
        return build_page_graph(capture)
    return cache.get_or_compute(
        "PageDependencyGraph", inputs=(capture,), compute=lambda: build_page_graph(capture)
    )


def count_nodes(root: Node) -> dict[NodeType, int]:
    counts = {NodeType.NETWORK: 0, NodeType.CPU: 0}
    for node in root.traverse():
        counts[node.node_type] += 1
    return counts
