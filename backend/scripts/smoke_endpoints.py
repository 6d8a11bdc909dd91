from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from unittest.mock import patch

import requests

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("YOUTUBE_API_KEY", "smoke-test-key")

import backend.main as main_module  # noqa: E402
import backend.app.services.upstream as upstream_module  # noqa: E402


class FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None, text: str = "", content_type: str = "application/json"):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload)
        self.headers = {"content-type": content_type}

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> dict:
        if self._payload is None:
            raise ValueError("invalid json")
        return self._payload


QUOTA_ERROR = {
    "error": {
        "code": 403,
        "message": "The request cannot be completed because you have exceeded your quota.",
        "errors": [{"domain": "youtube.quota", "reason": "quotaExceeded"}],
    }
}


def make_search_payload(count: int) -> dict:
    return {
        "kind": "youtube#searchListResponse",
        "items": [{"id": {"videoId": f"smoke{i}"}, "snippet": {"title": f"Smoke {i}"}} for i in range(count)],
    }


def body_of(response) -> dict:
    return json.loads(response.body)


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


def reset_state() -> None:
    main_module.CACHE_STORE.flush_all()
    main_module.QUOTA_STATE.mark_ok()


def test_health() -> None:
    payload = main_module.health()
    assert_true(payload.get("status") == "healthy", "/health should report healthy")


def test_search_cache() -> None:
    reset_state()
    call_count = {"get": 0}

    def fake_get(url: str, params: dict, headers: dict, timeout: float):
        _ = (url, headers, timeout)
        call_count["get"] += 1
        return FakeResponse(200, make_search_payload(int(params["maxResults"])))

    with patch.object(upstream_module.requests, "get", side_effect=fake_get):
        first = main_module.search(q="cats", max_results="5")
        second = main_module.search(q=" CATS ", max_results="5")

    assert_true(first.status_code == 200, "/api/search should return 200")
    assert_true(len(body_of(first)["items"]) == 5, "/api/search should pass upstream items through")
    assert_true(body_of(second).get("_fromCache") is True, "/api/search repeat should come from cache")
    assert_true(call_count["get"] == 1, "/api/search should hit upstream once then cache")


def test_quota_fallback() -> None:
    reset_state()
    video = {"items": [{"id": "smoke_video", "snippet": {"title": "Smoke"}}]}

    with patch.object(upstream_module.requests, "get", return_value=FakeResponse(200, video)):
        main_module.video_details("smoke_video")

    main_module.CACHE_STORE.get("video_smoke_video").expires_at = 0

    with patch.object(upstream_module.requests, "get", return_value=FakeResponse(403, QUOTA_ERROR)):
        stale = main_module.video_details("smoke_video")

    payload = body_of(stale)
    assert_true(stale.status_code == 200, "quota error with cached entry should still return 200")
    assert_true(payload.get("_quotaExceeded") is True, "stale response should be flagged _quotaExceeded")
    assert_true(main_module.QUOTA_STATE.exhausted, "quota error should mark quota exhausted")

    with patch.object(upstream_module.requests, "get", side_effect=AssertionError("upstream called")):
        blocked = main_module.channel_details("UC_UNCACHED")
    assert_true(blocked.status_code == 429, "uncached lookup while exhausted should return 429")


def test_transport_fallback() -> None:
    reset_state()
    channel = {"items": [{"id": "UC_SMOKE"}]}

    with patch.object(upstream_module.requests, "get", return_value=FakeResponse(200, channel)):
        main_module.channel_details("UC_SMOKE")
    main_module.CACHE_STORE.get("channel_UC_SMOKE").expires_at = 0

    with patch.object(upstream_module.requests, "get", side_effect=requests.ConnectionError("dns failure")):
        stale = main_module.channel_details("UC_SMOKE")
        missing = main_module.channel_details("UC_OTHER")

    assert_true(stale.status_code == 200, "transport error with cached entry should return 200")
    assert_true("_apiError" in body_of(stale), "stale response should carry _apiError")
    assert_true(missing.status_code == 502, "transport error without cache should return 502")


def test_cache_flush() -> None:
    reset_state()
    for key in ("search_a_10", "video_b", "channel_c"):
        main_module.CACHE_STORE.set(key, {"items": [1]})
    payload = main_module.clear_cache()
    assert_true(payload.get("clearedKeys") == 3, "DELETE /api/cache should report cleared keys")


def run() -> int:
    checks = [
        ("health", test_health),
        ("search cache", test_search_cache),
        ("quota fallback", test_quota_fallback),
        ("transport fallback", test_transport_fallback),
        ("cache flush", test_cache_flush),
    ]
    failures = []

    for check_name, check_fn in checks:
        try:
            check_fn()
            print(f"[PASS] {check_name}")
        except Exception as exc:  # pragma: no cover - smoke script output path
            failures.append((check_name, str(exc)))
            print(f"[FAIL] {check_name}: {exc}")

    if failures:
        print(f"\nSmoke checks failed: {len(failures)}")
        for check_name, message in failures:
            print(f"- {check_name}: {message}")
        return 1

    print("\nAll smoke checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(run())
