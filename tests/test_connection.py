from __future__ import annotations

import math

import pytest

from lantern.connection import ConnectionPool, DnsCache, TcpConnection
from lantern.settings import MOBILE_SLOW_4G
from lantern.types import NetworkRecord


def _record(request_id: str, url: str = "https://a.test/x.js", protocol: str = "http/1.1") -> NetworkRecord:
    return NetworkRecord(request_id=request_id, url=url, start_time=0.0, protocol=protocol)


def _pool(*, max_connections: int = 2, fresh: bool = False, warm_after_first: bool = False) -> ConnectionPool:
    return ConnectionPool(
        rtt=100.0,
        throughput=math.inf,
        max_connections_per_origin=max_connections,
        additional_rtt_by_origin={},
        server_response_time_by_origin={},
        default_server_response_time=0.0,
        fresh_connection_per_request=fresh,
        warm_new_connections_after_first_use=warm_after_first,
    )


def test_cold_tls_connection_pays_handshake_round_trips() -> None:
    conn = TcpConnection(rtt=100.0, throughput=math.inf)
    est = conn.simulate_download_until(10_000)
    # 3 one-way trips for TCP, one round trip for TLS, then one way for the response.
    assert est.time_elapsed == pytest.approx(300.0)
    assert est.round_trips == 3
    assert est.bytes_downloaded == 10_000


def test_dns_time_is_added_to_a_cold_connection() -> None:
    conn = TcpConnection(rtt=100.0, throughput=math.inf, ssl=False)
    est = conn.simulate_download_until(1000, dns_resolution_time=200.0)
    assert est.time_elapsed == pytest.approx(400.0)


def test_warm_connection_grows_congestion_window() -> None:
    conn = TcpConnection(rtt=100.0, throughput=math.inf)
    conn.warmed = True
    est = conn.simulate_download_until(30_000)
    # First window of 10 segments arrives with the response, the rest one round trip later.
    assert est.time_elapsed == pytest.approx(200.0)
    assert est.congestion_window == 20


def test_warm_h2_connection_tracks_overflow_bytes() -> None:
    conn = TcpConnection(rtt=100.0, throughput=math.inf, h2=True)
    conn.warmed = True
    est = conn.simulate_download_until(1000)
    assert est.time_elapsed == pytest.approx(100.0)
    assert est.extra_bytes_downloaded == 20 * 1460 - 1000


def test_time_cap_reports_partial_progress() -> None:
    conn = TcpConnection(rtt=100.0, throughput=math.inf)
    est = conn.simulate_download_until(1_000_000, maximum_time_to_elapse=350.0)
    assert est.time_elapsed == pytest.approx(400.0)
    assert est.bytes_downloaded == 10 * 1460 + 20 * 1460


def test_maximum_congestion_window_follows_bandwidth_delay_product() -> None:
    conn = TcpConnection(rtt=MOBILE_SLOW_4G.rtt_ms, throughput=MOBILE_SLOW_4G.throughput_bps)
    assert conn.maximum_congestion_window() == 21


def test_dns_cache_resolves_each_host_once() -> None:
    dns = DnsCache(rtt=100.0)
    a = _record("a")
    assert dns.time_until_resolution(a, requested_at=0.0) == pytest.approx(200.0)
    assert dns.time_until_resolution(a, requested_at=0.0, update=True) == pytest.approx(200.0)
    assert dns.time_until_resolution(a, requested_at=50.0) == pytest.approx(150.0)
    assert dns.time_until_resolution(a, requested_at=300.0) == 0.0
    other = _record("b", url="https://b.test/")
    assert dns.time_until_resolution(other, requested_at=300.0) == pytest.approx(200.0)


def test_pool_enforces_per_origin_limit_and_reuses_released_connections() -> None:
    pool = _pool()
    r1, r2, r3 = _record("1"), _record("2"), _record("3")
    c1 = pool.acquire(r1)
    c2 = pool.acquire(r2)
    assert c1 is not None and c2 is not None and c1 is not c2
    assert pool.acquire(r3) is None
    assert pool.acquire(r1) is c1

    pool.release(r1)
    assert pool.acquire(r3) is c1
    assert c1.warmed
    assert len(pool.in_flight()) == 2


def test_other_origins_have_their_own_limit() -> None:
    pool = _pool(max_connections=1)
    assert pool.acquire(_record("1")) is not None
    assert pool.acquire(_record("2", url="https://b.test/y.js")) is not None
    assert pool.has_open_connection(_record("3"))
    assert not pool.has_open_connection(_record("4", url="https://c.test/"))


def test_h2_requests_share_one_connection() -> None:
    pool = _pool(max_connections=1)
    r1, r2 = _record("1", protocol="h2"), _record("2", protocol="h2")
    c1 = pool.acquire(r1)
    assert pool.acquire(r2) is c1
    assert pool.in_flight() == [c1]

    pool.release(r1)
    # Still carrying r2.
    assert pool.acquire(_record("3")) is None


def test_fresh_mode_resets_reused_connections() -> None:
    pool = _pool(max_connections=1, fresh=True)
    r1, r2 = _record("1"), _record("2")
    conn = pool.acquire(r1)
    assert conn is not None
    conn.congestion_window = 40
    pool.release(r1)

    assert pool.acquire(r2) is conn
    assert conn.warmed is False
    assert conn.congestion_window == 10


def test_fresh_mode_does_not_multiplex_h2_over_a_warm_connection() -> None:
    pool = _pool(max_connections=1, fresh=True)
    r1, r2, r3 = (_record(i, protocol="h2") for i in ("1", "2", "3"))
    conn = pool.acquire(r1)
    assert conn is not None
    # Busy connections count against the limit even for h2.
    assert pool.acquire(r2) is None
    conn.h2_overflow_bytes_downloaded = 5000
    pool.release(r1)

    assert pool.acquire(r3) is conn
    assert conn.warmed is False
    assert conn.h2_overflow_bytes_downloaded == 0


def test_new_connections_start_warm_after_origin_was_used() -> None:
    pool = _pool(warm_after_first=True)
    r1, r2, r3 = _record("1"), _record("2"), _record("3")
    first = pool.acquire(r1)
    assert first is not None and first.warmed is False
    pool.release(r1)

    assert pool.acquire(r2) is first
    second = pool.acquire(r3)
    assert second is not None and second is not first
    assert second.warmed is True
