from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator

from lantern.errors import GraphConstructionError
from lantern.types import CpuTask, NetworkRecord, TraceEvent


class NodeType(str, Enum):
    NETWORK = "network"
    CPU = "cpu"


LAYOUT_EVENT_NAMES = ("Layout", "UpdateLayoutTree", "Paint", "RecalculateStyles")


@dataclass(eq=False)
class Node:
    """One unit of page-load work.

    Tagged by `node_type`: NETWORK nodes carry `record`, CPU nodes carry `task`
    and the flattened `child_events` of the coalesced top-level task.
    """

    node_id: str
    node_type: NodeType
    record: NetworkRecord | None = None
    task: CpuTask | None = None
    child_events: tuple[TraceEvent, ...] = ()
    is_main_document: bool = False
    dependencies: list["Node"] = field(default_factory=list, repr=False)
    dependents: list["Node"] = field(default_factory=list, repr=False)

    @staticmethod
    def for_record(record: NetworkRecord, *, is_main_document: bool = False) -> "Node":
        return Node(
            node_id=record.request_id,
            node_type=NodeType.NETWORK,
            record=record,
            is_main_document=is_main_document,
        )

    @staticmethod
    def for_task(task: CpuTask) -> "Node":
        children = tuple(t.event for t in task.iter_descendants())
        return Node(
            node_id=f"{task.event.tid}.{task.start_time:.3f}",
            node_type=NodeType.CPU,
            task=task,
            child_events=children,
        )

    @property
    def start_time(self) -> float:
        if self.record is not None:
            return self.record.start_time
        assert self.task is not None
        return self.task.start_time

    @property
    def end_time(self) -> float:
        if self.record is not None:
            end = self.record.end_time
            return self.record.start_time if end is None else end
        assert self.task is not None
        return self.task.end_time

    # Relationships.

    def add_dependency(self, node: "Node") -> None:
        if node is self:
            raise GraphConstructionError("node cannot depend on itself", node_ids=[self.node_id])
        if node in self.dependencies:
            return
        self.dependencies.append(node)
        node.dependents.append(self)

    def add_dependent(self, node: "Node") -> None:
        node.add_dependency(self)

    def remove_dependency(self, node: "Node") -> None:
        if node in self.dependencies:
            self.dependencies.remove(node)
            node.dependents.remove(self)

    def remove_dependent(self, node: "Node") -> None:
        node.remove_dependency(self)

    def is_dependent_on(self, node: "Node") -> bool:
        """True if `node` is a transitive dependency of this node."""
        for ancestor in self.traverse(lambda n: n.dependencies):
            if ancestor is node and ancestor is not self:
                return True
        return False

    def get_root(self) -> "Node":
        node = self
        seen = {id(node)}
        while node.dependencies and id(node.dependencies[0]) not in seen:
            node = node.dependencies[0]
            seen.add(id(node))
        return node

    def traverse(
        self, get_next: Callable[["Node"], list["Node"]] | None = None
    ) -> Iterator["Node"]:
        """Breadth-first walk over dependents (or `get_next`), each node once."""
        step = get_next or (lambda n: n.dependents)
        seen = {id(self)}
        queue: deque[Node] = deque([self])
        while queue:
            node = queue.popleft()
            yield node
            for nxt in step(node):
                if id(nxt) not in seen:
                    seen.add(id(nxt))
                    queue.append(nxt)

    def clone_without_relationships(self) -> "Node":
        return Node(
            node_id=self.node_id,
            node_type=self.node_type,
            record=self.record,
            task=self.task,
            child_events=self.child_events,
            is_main_document=self.is_main_document,
        )

    def clone_with_relationships(
        self, predicate: Callable[["Node"], bool] | None = None
    ) -> "Node":
        """Clone the graph keeping nodes that pass `predicate` plus all their dependencies.

        Returns the clone of the root node.
        """
        root = self.get_root()
        clones: dict[int, Node] = {}
        for node in root.traverse():
            if id(node) in clones:
                continue
            if predicate is None:
                clones[id(node)] = node.clone_without_relationships()
                continue
            if predicate(node):
                for ancestor in node.traverse(lambda n: n.dependencies):
                    if id(ancestor) not in clones:
                        clones[id(ancestor)] = ancestor.clone_without_relationships()

        for original in root.traverse():
            clone = clones.get(id(original))
            if clone is None:
                continue
            for dep in original.dependencies:
                cloned_dep = clones.get(id(dep))
                if cloned_dep is None:
                    raise GraphConstructionError(
                        "dependency was not cloned", node_ids=[dep.node_id, original.node_id]
                    )
                clone.add_dependency(cloned_dep)

        if id(root) not in clones:
            clones[id(root)] = root.clone_without_relationships()
        return clones[id(root)]

    # Variant-specific queries used by the metric graph filters.

    @property
    def resource_type(self) -> str | None:
        return self.record.resource_type if self.record is not None else None

    def has_render_blocking_priority(self) -> bool:
        if self.record is None:
            return False
        priority = self.record.priority
        blocking_high = priority == "High" and self.record.resource_type in ("Script", "Document")
        return priority == "VeryHigh" or blocking_high

    def evaluate_script_urls(self) -> set[str]:
        urls: set[str] = set()
        for evt in self.child_events:
            if evt.name == "EvaluateScript" and evt.data.get("url"):
                urls.add(str(evt.data["url"]))
        return urls

    def did_perform_layout(self) -> bool:
        return any(evt.name in LAYOUT_EVENT_NAMES for evt in self.child_events)


def all_nodes(root: Node) -> list[Node]:
    """Every node reachable from `root` in either direction, in BFS order."""
    return list(root.traverse(lambda n: n.dependents + n.dependencies))


def find_cycle(root: Node) -> list[Node] | None:
    """Return one dependency cycle as a node path, or None for a DAG."""
    white, grey, black = 0, 1, 2
    color: dict[int, int] = {}
    for start in all_nodes(root):
        if color.get(id(start), white) != white:
            continue
        path: list[Node] = []
        stack: list[tuple[Node, int]] = [(start, 0)]
        while stack:
            node, idx = stack.pop()
            if idx == 0:
                color[id(node)] = grey
                path.append(node)
            if idx < len(node.dependents):
                stack.append((node, idx + 1))
                nxt = node.dependents[idx]
                state = color.get(id(nxt), white)
                if state == grey:
                    return path[path.index(nxt):] + [nxt]
                if state == white:
                    stack.append((nxt, 0))
            else:
                color[id(node)] = black
                path.pop()
    return None
