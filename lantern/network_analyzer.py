from __future__ import annotations

# Per-origin observations (RTT, server response time, throughput) taken from
# the captured requests, used to calibrate the simulated connections.

from dataclasses import dataclass
import logging
from typing import Iterable

import numpy as np

from lantern.types import NetworkRecord

logger = logging.getLogger(__name__)

DEFAULT_SERVER_RESPONSE_TIME_MS = 30.0


@dataclass(frozen=True)
class OriginSummary:
    rtt_ms: float
    server_response_time_ms: float
    samples: int


@dataclass(frozen=True)
class NetworkAnalysis:
    rtt_ms: float
    throughput_bps: float
    additional_rtt_by_origin: dict[str, float]
    server_response_time_by_origin: dict[str, float]


def _rtt_samples(record: NetworkRecord) -> list[float]:
    t = record.timing
    if t is None:
        return []
    if not record.connection_reused and t.connect_start >= 0 and t.connect_end > t.connect_start:
        if t.ssl_start >= 0 and t.ssl_start > t.connect_start:
            # TCP handshake is one round trip; TLS is measured separately.
            return [t.ssl_start - t.connect_start]
        return [t.connect_end - t.connect_start]
    return []


def _ttfb(record: NetworkRecord) -> float | None:
    t = record.timing
    if t is None or t.send_start < 0 or t.receive_headers_end < t.send_start:
        return None
    return t.receive_headers_end - t.send_start


def _network_records(records: Iterable[NetworkRecord]) -> list[NetworkRecord]:
    return [
        r
        for r in records
        if r.finished and not r.failed and not r.is_non_network_protocol and not r.from_cache
    ]


def estimate_rtt_and_server_response_time(
    records: Iterable[NetworkRecord],
) -> dict[str, OriginSummary]:
    rtts: dict[str, list[float]] = {}
    ttfbs: dict[str, list[float]] = {}
    for r in _network_records(records):
        rtts.setdefault(r.origin, []).extend(_rtt_samples(r))
        ttfb = _ttfb(r)
        if ttfb is not None:
            ttfbs.setdefault(r.origin, []).append(ttfb)

    out: dict[str, OriginSummary] = {}
    for origin in sorted(set(rtts) | set(ttfbs)):
        origin_rtts = rtts.get(origin, [])
        origin_ttfbs = ttfbs.get(origin, [])
        if origin_rtts:
            rtt = float(np.min(origin_rtts))
        elif origin_ttfbs:
            # Only reused connections observed: TTFB bounds RTT from above.
            rtt = float(np.min(origin_ttfbs))
        else:
            continue
        if origin_ttfbs:
            server = max(float(np.median(origin_ttfbs)) - rtt, 0.0)
        else:
            server = DEFAULT_SERVER_RESPONSE_TIME_MS
        out[origin] = OriginSummary(
            rtt_ms=rtt,
            server_response_time_ms=server,
            samples=len(origin_rtts) + len(origin_ttfbs),
        )
    return out


def estimate_throughput(records: Iterable[NetworkRecord]) -> float:
    """Bits per second while at least one request was transferring."""
    spans = []
    total_bytes = 0
    for r in _network_records(records):
        if r.end_time is None or r.response_received_time is None:
            continue
        if r.end_time <= r.response_received_time:
            continue
        spans.append((r.response_received_time, r.end_time))
        total_bytes += r.transfer_size
    if not spans:
        return float("inf")

    arr = np.array(sorted(spans))
    starts, ends = arr[:, 0], arr[:, 1]
    # A span opens a new busy run when it starts after every earlier span ended.
    reach = np.maximum.accumulate(ends)
    opens_run = np.concatenate(([True], starts[1:] > reach[:-1]))
    run_ends = np.maximum.reduceat(ends, np.flatnonzero(opens_run))
    busy = float(np.sum(run_ends - starts[opens_run]))
    if busy <= 0:
        return float("inf")
    return float(total_bytes * 8 / (busy / 1000.0))


def analyze_network(records: Iterable[NetworkRecord]) -> NetworkAnalysis:
    records = list(records)
    summaries = estimate_rtt_and_server_response_time(records)
    if summaries:
        min_rtt = float(np.min([s.rtt_ms for s in summaries.values()]))
    else:
        min_rtt = 0.0
    additional = {o: s.rtt_ms - min_rtt for o, s in summaries.items()}
    server = {o: s.server_response_time_ms for o, s in summaries.items()}
    throughput = estimate_throughput(records)
    logger.debug(
        "network analysis: %d origins, min rtt %.1fms, throughput %.0f bps",
        len(summaries),
        min_rtt,
        throughput,
    )
    return NetworkAnalysis(
        rtt_ms=min_rtt,
        throughput_bps=throughput,
        additional_rtt_by_origin=additional,
        server_response_time_by_origin=server,
    )
