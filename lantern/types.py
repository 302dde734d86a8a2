from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping
from urllib.parse import urlsplit

if TYPE_CHECKING:  # pragma: no cover
    from lantern.node import Node

NON_NETWORK_SCHEMES = ("data", "blob", "file", "filesystem", "about", "chrome-extension")
IGNORED_QUIET_SCHEMES = ("data", "ws", "wss")


@dataclass(frozen=True)
class ResourceTiming:
    """Connection phase offsets in ms relative to `request_time`; -1 means absent."""

    request_time: float
    dns_start: float = -1.0
    dns_end: float = -1.0
    connect_start: float = -1.0
    connect_end: float = -1.0
    ssl_start: float = -1.0
    ssl_end: float = -1.0
    send_start: float = -1.0
    send_end: float = -1.0
    receive_headers_end: float = -1.0


@dataclass(frozen=True)
class NetworkRecord:
    request_id: str
    url: str
    start_time: float
    end_time: float | None = None
    response_received_time: float | None = None
    protocol: str = ""
    method: str = "GET"
    resource_type: str = "Other"
    priority: str = "Low"
    transfer_size: int = 0
    resource_size: int = 0
    mime_type: str = ""
    status_code: int = -1
    failed: bool = False
    finished: bool = False
    from_disk_cache: bool = False
    from_memory_cache: bool = False
    connection_id: str = ""
    connection_reused: bool = False
    frame_id: str = ""
    initiator_type: str = "other"
    initiator_url: str | None = None
    initiator_stack_urls: tuple[str, ...] = ()
    initiator_request_id: str | None = None
    redirects: tuple["NetworkRecord", ...] = ()
    timing: ResourceTiming | None = None

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme.lower()

    @property
    def host(self) -> str:
        return urlsplit(self.url).hostname or ""

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        if parts.scheme in NON_NETWORK_SCHEMES:
            return parts.scheme
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def is_secure(self) -> bool:
        return self.scheme in ("https", "wss")

    @property
    def is_non_network_protocol(self) -> bool:
        return self.scheme in NON_NETWORK_SCHEMES or self.protocol in NON_NETWORK_SCHEMES

    @property
    def is_h2(self) -> bool:
        return self.protocol in ("h2", "h3", "spdy", "quic")

    @property
    def from_cache(self) -> bool:
        return self.from_disk_cache or self.from_memory_cache


@dataclass(frozen=True)
class TraceEvent:
    name: str
    cat: str
    ph: str
    ts: float  # ms from the time origin
    dur: float
    pid: int
    tid: int
    args: Mapping[str, Any] = field(default_factory=dict)

    @property
    def end(self) -> float:
        return self.ts + self.dur

    @property
    def data(self) -> Mapping[str, Any]:
        data = self.args.get("data")
        return data if isinstance(data, dict) else {}


@dataclass(eq=False)
class CpuTask:
    """A main-thread event and everything nested inside it. Read-only once built."""

    event: TraceEvent
    children: list["CpuTask"] = field(default_factory=list)
    parent: "CpuTask | None" = field(default=None, repr=False)
    urls: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.event.name

    @property
    def start_time(self) -> float:
        return self.event.ts

    @property
    def end_time(self) -> float:
        return self.event.end

    @property
    def duration(self) -> float:
        return self.event.dur

    @property
    def self_time(self) -> float:
        return max(0.0, self.duration - sum(c.duration for c in self.children))

    @property
    def attributable_url(self) -> str | None:
        return self.urls[0] if self.urls else None

    def iter_descendants(self):
        for child in self.children:
            yield child
            yield from child.iter_descendants()


@dataclass(frozen=True)
class PageTimestamps:
    time_origin: float  # absolute ms on the trace clock
    first_contentful_paint: float
    trace_end: float
    first_paint: float | None = None
    first_meaningful_paint: float | None = None
    dom_content_loaded: float | None = None
    load: float | None = None


@dataclass(frozen=True)
class PageLoadCapture:
    records: tuple[NetworkRecord, ...]
    main_thread_events: tuple[TraceEvent, ...]
    toplevel_tasks: tuple[CpuTask, ...]
    timestamps: PageTimestamps
    main_document_url: str

    @property
    def tasks(self) -> tuple[CpuTask, ...]:
        out: list[CpuTask] = []
        for task in self.toplevel_tasks:
            out.append(task)
            out.extend(task.iter_descendants())
        return tuple(out)


@dataclass(frozen=True)
class QuietPeriod:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class NodeTiming:
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class SimulationResult:
    time_in_ms: float
    node_timings: Mapping["Node", NodeTiming]
    label: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "node_timings", MappingProxyType(dict(self.node_timings)))
