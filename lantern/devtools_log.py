from __future__ import annotations

# DevTools protocol network log -> NetworkRecord list.

from dataclasses import dataclass, field, replace
import logging
from typing import Any, Iterable

from lantern.types import NetworkRecord, ResourceTiming

logger = logging.getLogger(__name__)

REDIRECT_SUFFIX = ":redirect"

_HANDLED_METHODS = (
    "Network.requestWillBeSent",
    "Network.requestServedFromCache",
    "Network.responseReceived",
    "Network.dataReceived",
    "Network.loadingFinished",
    "Network.loadingFailed",
    "Network.resourceChangedPriority",
)


@dataclass
class _PendingRecord:
    request_id: str
    url: str
    start_time: float
    method: str
    resource_type: str
    priority: str
    frame_id: str
    initiator_type: str
    initiator_url: str | None
    initiator_stack_urls: tuple[str, ...]
    document_url: str
    end_time: float | None = None
    response_received_time: float | None = None
    protocol: str = ""
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
    timing: ResourceTiming | None = None
    redirect_source: "_PendingRecord | None" = None
    seen: set[str] = field(default_factory=set)


def _stack_urls(initiator: dict[str, Any]) -> tuple[str, ...]:
    urls: list[str] = []
    stack = initiator.get("stack")
    while isinstance(stack, dict):
        for frame in stack.get("callFrames", []):
            url = frame.get("url")
            if url and url not in urls:
                urls.append(str(url))
        stack = stack.get("parent")
    return tuple(urls)


def _parse_timing(raw: dict[str, Any] | None) -> ResourceTiming | None:
    if not raw or "requestTime" not in raw:
        return None
    keys = {
        "dnsStart": "dns_start",
        "dnsEnd": "dns_end",
        "connectStart": "connect_start",
        "connectEnd": "connect_end",
        "sslStart": "ssl_start",
        "sslEnd": "ssl_end",
        "sendStart": "send_start",
        "sendEnd": "send_end",
        "receiveHeadersEnd": "receive_headers_end",
    }
    values = {attr: float(raw.get(k, -1.0)) for k, attr in keys.items()}
    return ResourceTiming(request_time=float(raw["requestTime"]) * 1000.0, **values)


class NetworkRecorder:
    """Replays DevTools `Network.*` events into request records.

    Timestamps are converted to ms and shifted so that `time_origin_ms` is 0.
    """

    def __init__(self, *, time_origin_ms: float = 0.0) -> None:
        self._origin = float(time_origin_ms)
        self._active: dict[str, _PendingRecord] = {}
        self._redirect_counts: dict[str, int] = {}
        self._records: list[_PendingRecord] = []
        self._early: dict[str, list[tuple[str, dict[str, Any]]]] = {}

    def _ms(self, seconds: Any) -> float:
        return float(seconds) * 1000.0 - self._origin

    def dispatch(self, method: str, params: dict[str, Any]) -> None:
        if method not in _HANDLED_METHODS:
            return
        request_id = str(params.get("requestId", ""))
        if not request_id:
            return
        if method == "Network.requestWillBeSent":
            self._on_request_will_be_sent(request_id, params)
            for early_method, early_params in self._early.pop(request_id, []):
                self.dispatch(early_method, early_params)
            return

        record = self._active.get(request_id)
        if record is None:
            # Out-of-order delivery: hold the event until the request starts.
            self._early.setdefault(request_id, []).append((method, params))
            return

        # Identity is (request id, redirect index); replays of an event are dropped.
        stamp = f"{method}@{params.get('timestamp', '')}"
        if method != "Network.dataReceived" and stamp in record.seen:
            return
        record.seen.add(stamp)

        if method == "Network.requestServedFromCache":
            record.from_memory_cache = True
        elif method == "Network.responseReceived":
            self._apply_response(record, params.get("response", {}))
            record.response_received_time = self._ms(params["timestamp"])
            record.resource_type = str(params.get("type", record.resource_type))
        elif method == "Network.dataReceived":
            record.resource_size += int(params.get("dataLength", 0))
        elif method == "Network.loadingFinished":
            if record.finished:
                return
            record.end_time = self._ms(params["timestamp"])
            record.transfer_size = int(params.get("encodedDataLength", record.transfer_size))
            record.finished = True
        elif method == "Network.loadingFailed":
            if record.finished:
                return
            record.end_time = self._ms(params["timestamp"])
            record.failed = True
            record.finished = True
        elif method == "Network.resourceChangedPriority":
            record.priority = str(params.get("newPriority", record.priority))

    def _apply_response(self, record: _PendingRecord, response: dict[str, Any]) -> None:
        record.status_code = int(response.get("status", record.status_code))
        record.mime_type = str(response.get("mimeType", record.mime_type))
        record.protocol = str(response.get("protocol", record.protocol)).lower()
        record.connection_id = str(response.get("connectionId", record.connection_id))
        record.connection_reused = bool(response.get("connectionReused", False))
        record.from_disk_cache = bool(response.get("fromDiskCache", False))
        if response.get("encodedDataLength") is not None:
            record.transfer_size = int(response["encodedDataLength"])
        record.timing = _parse_timing(response.get("timing"))

    def _on_request_will_be_sent(self, request_id: str, params: dict[str, Any]) -> None:
        request = params.get("request", {})
        url = str(request.get("url", ""))
        existing = self._active.get(request_id)
        redirect_response = params.get("redirectResponse")

        start_time = self._ms(params["timestamp"])
        if existing is not None:
            if existing.url == url and existing.start_time == start_time:
                logger.debug("replayed requestWillBeSent for %s", request_id)
                return
            if redirect_response is None:
                # Same request announced twice.
                logger.debug("duplicate requestWillBeSent for %s", request_id)
                return
            # Close out the current hop under a redirect id and start a new one.
            hops = self._redirect_counts.get(request_id, 0) + 1
            self._redirect_counts[request_id] = hops
            existing.request_id = request_id + REDIRECT_SUFFIX * hops
            self._apply_response(existing, redirect_response)
            existing.response_received_time = self._ms(params["timestamp"])
            existing.end_time = self._ms(params["timestamp"])
            existing.finished = True
            existing.resource_type = "Other"

        initiator = params.get("initiator", {}) or {}
        record = _PendingRecord(
            request_id=request_id,
            url=url,
            start_time=start_time,
            method=str(request.get("method", "GET")),
            resource_type=str(params.get("type", "Other")),
            priority=str(request.get("initialPriority", "Low")),
            frame_id=str(params.get("frameId", "")),
            initiator_type=str(initiator.get("type", "other")),
            initiator_url=initiator.get("url"),
            initiator_stack_urls=_stack_urls(initiator),
            document_url=str(params.get("documentURL", "")),
            redirect_source=existing,
        )
        self._active[request_id] = record
        self._records.append(record)

    def records(self) -> list[NetworkRecord]:
        for request_id, events in self._early.items():
            logger.debug(
                "discarding %d event(s) for request %s that never started",
                len(events),
                request_id,
            )

        built: dict[int, NetworkRecord] = {}
        ordered: list[NetworkRecord] = []
        for pending in self._records:
            chain: list[NetworkRecord] = []
            src = pending.redirect_source
            while src is not None:
                chain.append(built[id(src)])
                src = src.redirect_source
            chain.reverse()
            record = NetworkRecord(
                request_id=pending.request_id,
                url=pending.url,
                start_time=pending.start_time,
                end_time=pending.end_time,
                response_received_time=pending.response_received_time,
                protocol=pending.protocol,
                method=pending.method,
                resource_type=pending.resource_type,
                priority=pending.priority,
                transfer_size=pending.transfer_size,
                resource_size=pending.resource_size,
                mime_type=pending.mime_type,
                status_code=pending.status_code,
                failed=pending.failed,
                finished=pending.finished,
                from_disk_cache=pending.from_disk_cache,
                from_memory_cache=pending.from_memory_cache,
                connection_id=pending.connection_id,
                connection_reused=pending.connection_reused,
                frame_id=pending.frame_id,
                initiator_type=pending.initiator_type,
                initiator_url=pending.initiator_url,
                initiator_stack_urls=pending.initiator_stack_urls,
                redirects=tuple(chain),
                timing=pending.timing,
            )
            built[id(pending)] = record
            ordered.append(record)

        linked = _link_initiators(ordered, self._records)
        linked.sort(key=lambda r: (r.start_time, r.request_id))
        return linked


def _initiator_url(record: NetworkRecord, document_url: str) -> str | None:
    if record.redirects:
        return None
    if record.initiator_url:
        return record.initiator_url
    if record.initiator_stack_urls:
        return record.initiator_stack_urls[0]
    if record.initiator_type == "parser" and document_url and document_url != record.url:
        return document_url
    return None


def _link_initiators(
    records: list[NetworkRecord], pending: list[_PendingRecord]
) -> list[NetworkRecord]:
    by_url: dict[str, list[NetworkRecord]] = {}
    for r in records:
        by_url.setdefault(r.url, []).append(r)

    out: list[NetworkRecord] = []
    for r, p in zip(records, pending):
        url = _initiator_url(r, p.document_url)
        candidates = by_url.get(url, []) if url else []
        if len(candidates) == 1 and candidates[0] is not r:
            r = replace(r, initiator_request_id=candidates[0].request_id)
        out.append(r)
    return out


def parse_devtools_log(
    log: Iterable[dict[str, Any]], *, time_origin_ms: float = 0.0
) -> list[NetworkRecord]:
    recorder = NetworkRecorder(time_origin_ms=time_origin_ms)
    count = 0
    for entry in log:
        method = entry.get("method")
        params = entry.get("params")
        if not isinstance(method, str) or not isinstance(params, dict):
            continue
        recorder.dispatch(method, params)
        count += 1
    records = recorder.records()
    logger.debug("parsed %d devtools events into %d network records", count, len(records))
    return records
