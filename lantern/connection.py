from __future__ import annotations

# TCP connection, DNS and per-origin connection pool state for one simulation run.

from dataclasses import dataclass
import math

from lantern.types import NetworkRecord

TCP_SEGMENT_SIZE = 1460
INITIAL_CONGESTION_WINDOW = 10
DNS_RESOLUTION_RTT_MULTIPLIER = 2


@dataclass(frozen=True)
class DownloadEstimate:
    round_trips: int
    time_elapsed: float
    bytes_downloaded: int
    extra_bytes_downloaded: int
    congestion_window: int


class TcpConnection:
    def __init__(
        self,
        *,
        rtt: float,
        throughput: float,
        server_latency: float = 0.0,
        ssl: bool = True,
        h2: bool = False,
    ) -> None:
        self.rtt = rtt
        self.throughput = throughput  # bits per second
        self.server_latency = server_latency
        self.ssl = ssl
        self.h2 = h2
        self.warmed = False
        self.congestion_window = INITIAL_CONGESTION_WINDOW
        self.h2_overflow_bytes_downloaded = 0

    def reset(self) -> None:
        self.warmed = False
        self.congestion_window = INITIAL_CONGESTION_WINDOW
        self.h2_overflow_bytes_downloaded = 0

    def maximum_congestion_window(self) -> int:
        if math.isinf(self.throughput):
            return 1 << 30
        bytes_per_round_trip = (self.throughput / 8) * (self.rtt / 1000)
        return max(int(bytes_per_round_trip // TCP_SEGMENT_SIZE), 1)

    def simulate_download_until(
        self,
        bytes_to_download: int,
        *,
        time_already_elapsed: float = 0.0,
        maximum_time_to_elapse: float = math.inf,
        dns_resolution_time: float = 0.0,
    ) -> DownloadEstimate:
        """Time to fetch `bytes_to_download`, or the progress made within the time cap."""
        if self.warmed and self.h2:
            bytes_to_download -= self.h2_overflow_bytes_downloaded
        two_way = self.rtt
        one_way = two_way / 2
        max_cwnd = self.maximum_congestion_window()

        handshake_and_request = one_way
        if not self.warmed:
            # DNS, SYN, SYN-ACK, ACK+request, plus a TLS round trip.
            handshake_and_request = (
                dns_resolution_time + 3 * one_way + (two_way if self.ssl else 0.0)
            )
        round_trips = math.ceil(handshake_and_request / two_way) if two_way > 0 else 0
        time_to_first_byte = handshake_and_request + self.server_latency + one_way
        if self.warmed and self.h2:
            time_to_first_byte = 0.0

        ttfb_remaining = max(time_to_first_byte - time_already_elapsed, 0.0)
        download_budget = maximum_time_to_elapse - ttfb_remaining

        cwnd = min(self.congestion_window, max_cwnd)
        total_bytes = 0
        if ttfb_remaining > 0:
            total_bytes = cwnd * TCP_SEGMENT_SIZE
        else:
            round_trips = 0

        download_time = 0.0
        remaining = bytes_to_download - total_bytes
        while remaining > 0 and download_time <= download_budget:
            round_trips += 1
            download_time += two_way
            cwnd = max(min(max_cwnd, cwnd * 2), 1)
            in_window = cwnd * TCP_SEGMENT_SIZE
            total_bytes += in_window
            remaining -= in_window

        extra = max(total_bytes - bytes_to_download, 0) if self.h2 else 0
        return DownloadEstimate(
            round_trips=round_trips,
            time_elapsed=ttfb_remaining + download_time,
            bytes_downloaded=max(min(total_bytes, bytes_to_download), 0),
            extra_bytes_downloaded=extra,
            congestion_window=cwnd,
        )


class DnsCache:
    def __init__(self, *, rtt: float) -> None:
        self._rtt = rtt
        self._resolved_at: dict[str, float] = {}

    def time_until_resolution(
        self, record: NetworkRecord, *, requested_at: float, update: bool = False
    ) -> float:
        resolved_at = self._resolved_at.get(record.host)
        if resolved_at is not None:
            return max(resolved_at - requested_at, 0.0)
        duration = self._rtt * DNS_RESOLUTION_RTT_MULTIPLIER
        if update:
            self._resolved_at[record.host] = requested_at + duration
        return duration


class ConnectionPool:
    """Per-origin connections; created per simulation run, never shared."""

    def __init__(
        self,
        *,
        rtt: float,
        throughput: float,
        max_connections_per_origin: int,
        additional_rtt_by_origin: dict[str, float],
        server_response_time_by_origin: dict[str, float],
        default_server_response_time: float,
        fresh_connection_per_request: bool,
        warm_new_connections_after_first_use: bool,
    ) -> None:
        self._rtt = rtt
        self._throughput = throughput
        self._max = max_connections_per_origin
        self._additional_rtt = additional_rtt_by_origin
        self._server_time = server_response_time_by_origin
        self._default_server_time = default_server_response_time
        self._fresh = fresh_connection_per_request
        self._warm_after_first = warm_new_connections_after_first_use
        self._by_origin: dict[str, list[TcpConnection]] = {}
        self._in_use: dict[int, TcpConnection] = {}
        self._busy: set[int] = set()
        self._warmed_origins: set[str] = set()

    def has_open_connection(self, record: NetworkRecord) -> bool:
        return bool(self._by_origin.get(record.origin))

    def _new_connection(self, record: NetworkRecord) -> TcpConnection:
        origin = record.origin
        conn = TcpConnection(
            rtt=self._rtt + self._additional_rtt.get(origin, 0.0),
            throughput=self._throughput,
            server_latency=self._server_time.get(origin, self._default_server_time),
            ssl=record.is_secure,
            h2=record.is_h2,
        )
        if self._warm_after_first and origin in self._warmed_origins:
            conn.warmed = True
        return conn

    def acquire(self, record: NetworkRecord) -> TcpConnection | None:
        """Connection for `record`, or None if the origin is at its limit."""
        key = id(record)
        if key in self._in_use:
            return self._in_use[key]
        conns = self._by_origin.setdefault(record.origin, [])
        if record.is_h2 and conns and not self._fresh:
            # h2 multiplexes every request to an origin over one connection.
            # Fresh mode gives each request its own cold connection instead.
            conn = conns[0]
            self._in_use[key] = conn
            return conn

        idle = [c for c in conns if id(c) not in self._busy]
        conn: TcpConnection | None = None
        if idle and not self._fresh:
            conn = max(idle, key=lambda c: (c.warmed, c.congestion_window))
        elif idle:
            conn = idle[0]
            conn.reset()
        elif len(conns) < self._max:
            conn = self._new_connection(record)
            conns.append(conn)
        if conn is None:
            return None
        self._busy.add(id(conn))
        self._in_use[key] = conn
        return conn

    def connection_for(self, record: NetworkRecord) -> TcpConnection:
        return self._in_use[id(record)]

    def release(self, record: NetworkRecord) -> None:
        conn = self._in_use.pop(id(record), None)
        if conn is None:
            return
        conn.warmed = True
        self._warmed_origins.add(record.origin)
        if not any(c is conn for c in self._in_use.values()):
            self._busy.discard(id(conn))

    def in_flight(self) -> list[TcpConnection]:
        seen: dict[int, TcpConnection] = {}
        for conn in self._in_use.values():
            seen.setdefault(id(conn), conn)
        return list(seen.values())
