import asyncio
import json

import pytest
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

import backend.main as main_module
from backend.app.services.upstream import UpstreamFailure, UpstreamFailureKind, UpstreamSuccess


def make_video(video_id):
    return {
        "kind": "youtube#video",
        "id": video_id,
        "snippet": {"title": f"Video {video_id}", "channelTitle": "Smoke Channel"},
        "statistics": {"viewCount": "1000"},
        "contentDetails": {"duration": "PT3M"},
    }


def make_search_result(query, count):
    return {
        "kind": "youtube#searchListResponse",
        "items": [{"id": {"videoId": f"{query}{i}"}, "snippet": {"title": f"{query} {i}"}} for i in range(count)],
    }


def body_of(response):
    return json.loads(response.body)


@pytest.fixture(autouse=True)
def reset_state():
    main_module.CACHE_STORE.flush_all()
    main_module.QUOTA_STATE.mark_ok()
    yield
    main_module.CACHE_STORE.flush_all()
    main_module.QUOTA_STATE.mark_ok()


def test_health():
    payload = main_module.health()
    assert payload["status"] == "healthy"
    assert payload["quotaStatus"] == "OK"
    assert payload["uptime"] >= 0


def test_health_reports_exhausted_quota():
    main_module.QUOTA_STATE.mark_exhausted()

    assert main_module.health()["quotaStatus"] == "EXHAUSTED"
    assert main_module.root()["quotaStatus"] == "EXHAUSTED"


def test_root_lists_endpoints():
    payload = main_module.root()
    assert payload["status"] == "OK"
    assert payload["endpoints"]["quota_status"] == "/api/quota-status"


def test_search_then_cached(monkeypatch):
    call_count = {"search": 0}

    def fake_search(query, max_results):
        call_count["search"] += 1
        return UpstreamSuccess(body=make_search_result(query, max_results))

    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "search", fake_search)

    first = main_module.search(q="cats", max_results="5")
    second = main_module.search(q="  Cats", max_results="5")

    assert first.status_code == 200
    assert len(body_of(first)["items"]) == 5
    assert "_fromCache" not in body_of(first)
    assert second.status_code == 200
    assert body_of(second)["_fromCache"] is True
    assert call_count["search"] == 1
    assert main_module.CACHE_STORE.get("search_cats_5") is not None


def test_search_max_results_defaults_and_clamps(monkeypatch):
    seen = []

    def fake_search(query, max_results):
        seen.append(max_results)
        return UpstreamSuccess(body=make_search_result(query, 1))

    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "search", fake_search)

    main_module.search(q="dogs")
    main_module.search(q="birds", max_results="999")
    main_module.search(q="fish", max_results="lots")

    assert seen == [10, 50, 10]


def test_search_empty_query_is_400(monkeypatch):
    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "search", lambda *_: pytest.fail("upstream must not be called"))

    response = main_module.search(q="")

    assert response.status_code == 400
    assert body_of(response)["code"] == 400
    assert main_module.CACHE_STORE.keys() == set()


def test_search_negative_max_results_is_400(monkeypatch):
    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "search", lambda *_: pytest.fail("upstream must not be called"))
    assert main_module.search(q="cats", max_results="-3").status_code == 400


def test_video_details_not_found(monkeypatch):
    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "video", lambda _id: UpstreamSuccess(body={"items": []}))

    response = main_module.video_details("nope")

    assert response.status_code == 404
    assert body_of(response)["error"] == "Video not found"


def test_channel_details(monkeypatch):
    channel = {"items": [{"id": "UC_TEST", "snippet": {"title": "Smoke Channel"}}]}
    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "channel", lambda _id: UpstreamSuccess(body=channel))

    response = main_module.channel_details("UC_TEST")

    assert response.status_code == 200
    assert body_of(response) == channel


def test_quota_exceeded_serves_stale_video(monkeypatch):
    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "video", lambda _id: UpstreamSuccess(body={"items": [make_video("v1")]}))
    assert main_module.video_details("v1").status_code == 200

    entry = main_module.CACHE_STORE.get("video_v1")
    entry.expires_at = 0

    def quota_failure(_id):
        main_module.QUOTA_STATE.mark_exhausted()
        return UpstreamFailure(kind=UpstreamFailureKind.QUOTA_EXCEEDED, message="quota", status_code=403)

    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "video", quota_failure)

    response = main_module.video_details("v1")
    payload = body_of(response)

    assert response.status_code == 200
    assert payload["_fromCache"] is True
    assert payload["_quotaExceeded"] is True
    assert payload["items"][0]["id"] == "v1"


def test_exhausted_quota_blocks_uncached_lookup(monkeypatch):
    main_module.QUOTA_STATE.mark_exhausted()
    monkeypatch.setattr(main_module.YOUTUBE_CLIENT, "video", lambda _id: pytest.fail("upstream must not be called"))

    response = main_module.video_details("uncached")
    payload = body_of(response)

    assert response.status_code == 429
    assert payload["quotaExceeded"] is True
    assert payload["code"] == 429


def test_quota_status_reports_state(monkeypatch):
    monkeypatch.setattr(main_module.QUOTA_TRACKER, "probe", lambda: UpstreamSuccess(body={"items": []}))
    main_module.CACHE_STORE.set("video_x", {"items": [make_video("x")]})

    payload = main_module.quota_status()

    assert payload["quotaOk"] is True
    assert payload["quotaExhausted"] is False
    assert payload["lastCheck"].endswith("Z")
    assert payload["cacheSize"] == 1


def test_clear_cache_reports_cleared_keys(monkeypatch):
    monkeypatch.setattr(
        main_module.YOUTUBE_CLIENT,
        "search",
        lambda query, max_results: UpstreamSuccess(body=make_search_result(query, max_results)),
    )
    for query in ("cats", "dogs", "birds"):
        assert main_module.search(q=query, max_results="2").status_code == 200

    payload = main_module.clear_cache()

    assert payload["clearedKeys"] == 3
    assert payload["quotaReset"] is False
    for query in ("cats", "dogs", "birds"):
        assert main_module.CACHE_STORE.get(f"search_{query}_2") is None


def make_request(path: str = "/") -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": path,
            "headers": [],
            "client": ("127.0.0.1", 8000),
            "query_string": b"",
            "server": ("test", 80),
            "scheme": "http",
            "http_version": "1.1",
        }
    )


def test_unknown_endpoint_is_json_404():
    response = asyncio.run(
        main_module.http_exception_handler(make_request("/api/nope"), StarletteHTTPException(status_code=404))
    )
    payload = body_of(response)

    assert response.status_code == 404
    assert payload["error"] == "Endpoint not found"
    assert payload["path"] == "/api/nope"
    assert "DELETE /api/cache" in payload["availableEndpoints"]


def test_unhandled_exception_is_json_500():
    response = asyncio.run(main_module.unhandled_exception_handler(make_request(), RuntimeError("boom")))

    assert response.status_code == 500
    assert body_of(response)["error"] == "Internal server error"
