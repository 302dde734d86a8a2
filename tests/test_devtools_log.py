from __future__ import annotations

import pytest

from lantern.devtools_log import parse_devtools_log


def _will_be_sent(request_id: str, url: str, ts: float, **extra: object) -> dict:
    params = {
        "requestId": request_id,
        "documentURL": "https://a.test/",
        "request": {"url": url, "method": "GET", "initialPriority": "High"},
        "timestamp": ts,
        "initiator": {"type": "other"},
        "type": "Document",
    }
    params.update(extra)
    return {"method": "Network.requestWillBeSent", "params": params}


def _finished(request_id: str, ts: float, size: int = 100) -> dict:
    return {
        "method": "Network.loadingFinished",
        "params": {"requestId": request_id, "timestamp": ts, "encodedDataLength": size},
    }


def test_fixture_records_are_rebased_and_sorted(progressive_app_capture) -> None:
    records = progressive_app_capture.records
    assert [r.request_id for r in records] == [f"1000.{i}" for i in range(1, 12)]
    starts = [r.start_time for r in records]
    assert starts == sorted(starts)
    assert records[0].start_time == pytest.approx(0.0)
    assert records[0].end_time == pytest.approx(400.0)
    assert records[0].resource_size == 20000


def test_replayed_and_orphan_events_are_dropped(progressive_app_capture) -> None:
    by_id = {r.request_id: r for r in progressive_app_capture.records}
    assert "9999.1" not in by_id
    assert by_id["1000.3"].transfer_size == 60110
    assert by_id["1000.3"].end_time == pytest.approx(800.0)


def test_events_before_request_start_are_replayed(progressive_app_capture) -> None:
    hero = {r.request_id: r for r in progressive_app_capture.records}["1000.6"]
    assert hero.status_code == 200
    assert hero.mime_type == "image/jpeg"
    assert hero.response_received_time == pytest.approx(900.0)


def test_unfinished_request_is_kept_without_end_time(progressive_app_capture) -> None:
    updates = {r.request_id: r for r in progressive_app_capture.records}["1000.11"]
    assert updates.finished is False
    assert updates.end_time is None


def test_initiators_resolve_to_unique_request(progressive_app_capture) -> None:
    by_id = {r.request_id: r for r in progressive_app_capture.records}
    assert by_id["1000.1"].initiator_request_id is None
    assert by_id["1000.5"].initiator_request_id == "1000.1"
    assert by_id["1000.7"].initiator_request_id == "1000.2"
    assert by_id["1000.8"].initiator_request_id == "1000.3"
    assert by_id["1000.10"].initiator_request_id == "1000.9"


def test_redirect_hops_become_chained_records() -> None:
    log = [
        _will_be_sent("r", "http://a.test/", 1.0),
        _will_be_sent("r", "https://a.test/", 1.1, redirectResponse={"status": 301}),
        _will_be_sent("r", "https://a.test/home", 1.2, redirectResponse={"status": 302}),
        _finished("r", 1.5),
    ]
    records = parse_devtools_log(log, time_origin_ms=1000.0)

    assert [r.request_id for r in records] == ["r:redirect", "r:redirect:redirect", "r"]
    first, second, final = records
    assert first.status_code == 301 and second.status_code == 302
    assert first.resource_type == "Other" and first.finished
    assert first.end_time == pytest.approx(100.0)
    assert [hop.url for hop in final.redirects] == ["http://a.test/", "https://a.test/"]
    assert final.resource_type == "Document"
    assert final.end_time == pytest.approx(500.0)


def test_failed_and_cached_requests_are_flagged() -> None:
    log = [
        _will_be_sent("a", "https://a.test/x.js", 1.0, type="Script"),
        {"method": "Network.loadingFailed", "params": {"requestId": "a", "timestamp": 1.2}},
        _will_be_sent("b", "https://a.test/y.js", 1.0, type="Script"),
        {"method": "Network.requestServedFromCache", "params": {"requestId": "b"}},
        _finished("b", 1.01),
        {"method": "Network.resourceChangedPriority",
         "params": {"requestId": "b", "newPriority": "Low", "timestamp": 1.005}},
    ]
    a, b = parse_devtools_log(log, time_origin_ms=1000.0)
    assert a.failed and a.finished and a.end_time == pytest.approx(200.0)
    assert b.from_memory_cache and b.from_cache
    assert b.priority == "Low"


def test_duplicate_request_announcement_keeps_first() -> None:
    log = [
        _will_be_sent("a", "https://a.test/", 1.0),
        _will_be_sent("a", "https://a.test/", 1.0),
        _will_be_sent("a", "https://a.test/", 1.05),
        _finished("a", 1.3),
    ]
    records = parse_devtools_log(log, time_origin_ms=1000.0)
    assert len(records) == 1
    assert records[0].start_time == pytest.approx(0.0)


def test_malformed_entries_are_skipped() -> None:
    log = [{"method": 3}, {"params": {}}, {"method": "Network.dataReceived", "params": []}]
    assert parse_devtools_log(log) == []
