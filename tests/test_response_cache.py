"""Tests for the response cache and cache invalidation middleware."""

import asyncio
import base64
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.testclient import TestClient
from starlette.requests import Request

from scaffold.app.core.cache import CacheBackend, InMemoryCache
from scaffold.app.exceptions import CacheBackendError
from scaffold.app.middleware.response_cache import (
    CacheInvalidationMiddleware,
    CachedResponse,
    CacheMiddlewareConfig,
    ResponseCacheMiddleware,
    default_cache_key_builder,
    skip_query_params,
    _ResponseCapture,
)


def build_app(cache, config=None, clock=None) -> FastAPI:
    """App with a call counter so tests can tell live responses from cached ones."""
    app = FastAPI()
    app.state.calls = 0

    @app.get("/data")
    async def data(x: str = ""):
        app.state.calls += 1
        return JSONResponse({"calls": app.state.calls, "x": x}, headers={"X-Cache": "upstream"})

    @app.post("/data")
    async def write():
        return {"ok": True}

    @app.post("/bad")
    async def bad_write():
        return JSONResponse({"error": "bad"}, status_code=400)

    @app.get("/fail")
    async def fail():
        app.state.calls += 1
        return JSONResponse({"error": "boom"}, status_code=500)

    @app.get("/health")
    async def health():
        app.state.calls += 1
        return {"status": "ok"}

    @app.get("/stream")
    async def stream():
        app.state.calls += 1

        async def chunks():
            yield b"chunk-1,"
            yield b"chunk-2"

        return StreamingResponse(chunks(), media_type="text/plain")

    kwargs = {"cache": cache, "config": config}
    if clock is not None:
        kwargs["clock"] = clock
    app.add_middleware(ResponseCacheMiddleware, **kwargs)
    app.add_middleware(CacheInvalidationMiddleware, cache=cache)
    return app


def stored_keys(cache: InMemoryCache) -> list[str]:
    return asyncio.run(cache.keys("http:*"))


class TestResponseCacheMiddleware:
    """Tests for serving and capturing cached responses."""

    @pytest.fixture
    def cache(self, clock):
        return InMemoryCache(clock=clock)

    @pytest.fixture
    def client(self, cache, clock):
        config = CacheMiddlewareConfig(default_ttl=60)
        return TestClient(build_app(cache, config, clock))

    def test_miss_then_hit(self, client, clock):
        first = client.get("/data")
        assert first.status_code == 200
        assert first.json()["calls"] == 1
        assert first.headers["X-Cache"] == "upstream"

        second = client.get("/data")
        assert second.status_code == 200
        assert second.content == first.content
        assert second.headers.get_list("X-Cache") == ["HIT"]
        expected_time = datetime.fromtimestamp(clock.now, tz=timezone.utc).isoformat(
            timespec="seconds"
        )
        assert second.headers["X-Cache-Time"] == expected_time
        assert second.headers["content-type"] == first.headers["content-type"]

    def test_query_string_distinguishes_entries(self, client, cache):
        assert client.get("/data?x=1").json() == {"calls": 1, "x": "1"}
        assert client.get("/data?x=2").json() == {"calls": 2, "x": "2"}

        hit = client.get("/data?x=1")
        assert hit.headers["X-Cache"] == "HIT"
        assert hit.json() == {"calls": 1, "x": "1"}
        assert len(stored_keys(cache)) == 2

    def test_authorized_requests_never_cached(self, client, cache):
        headers = {"Authorization": "Bearer token"}
        client.get("/data", headers=headers)
        response = client.get("/data", headers=headers)

        assert response.json()["calls"] == 2
        assert response.headers["X-Cache"] == "upstream"
        assert stored_keys(cache) == []

    def test_authorized_request_bypasses_anonymous_entry(self, client, cache):
        client.get("/data")
        assert client.get("/data").headers["X-Cache"] == "HIT"
        assert len(stored_keys(cache)) == 1

        response = client.get("/data", headers={"Authorization": "Bearer token"})

        assert response.headers["X-Cache"] == "upstream"
        assert response.json()["calls"] == 2
        assert client.app.state.calls == 2

    def test_entry_expires_after_ttl(self, client, clock):
        client.get("/data")
        clock.advance(59)
        assert client.get("/data").headers["X-Cache"] == "HIT"

        clock.advance(2)
        response = client.get("/data")
        assert response.json()["calls"] == 2
        assert response.headers["X-Cache"] == "upstream"

    def test_error_responses_not_stored(self, client, cache):
        assert client.get("/fail").status_code == 500
        assert client.get("/fail").status_code == 500
        assert client.app.state.calls == 2
        assert stored_keys(cache) == []

    def test_skip_paths_bypass_cache(self, client):
        client.get("/health")
        response = client.get("/health")
        assert "X-Cache" not in response.headers
        assert client.app.state.calls == 2

    def test_streamed_body_captured_whole(self, client):
        first = client.get("/stream")
        assert first.text == "chunk-1,chunk-2"

        second = client.get("/stream")
        assert second.headers["X-Cache"] == "HIT"
        assert second.text == "chunk-1,chunk-2"
        assert client.app.state.calls == 1

    def test_unreadable_entry_treated_as_miss(self, client, cache):
        client.get("/data")
        for key in stored_keys(cache):
            asyncio.run(cache.set(key, b"not a cached response", 60))

        response = client.get("/data")
        assert response.json()["calls"] == 2
        assert response.headers["X-Cache"] == "upstream"
        assert client.get("/data").headers["X-Cache"] == "HIT"

    def test_lookup_and_store_errors_fall_through(self):
        cache = MagicMock(spec=CacheBackend)
        cache.get = AsyncMock(side_effect=CacheBackendError("get", "timeout"))
        cache.set = AsyncMock(side_effect=CacheBackendError("set", "timeout"))
        client = TestClient(build_app(cache))

        for expected in (1, 2):
            response = client.get("/data")
            assert response.status_code == 200
            assert response.json()["calls"] == expected
        assert cache.set.await_count == 2

    def test_custom_skip_predicate(self, cache, clock):
        config = CacheMiddlewareConfig(skip_cache=(skip_query_params,))
        client = TestClient(build_app(cache, config, clock))

        client.get("/data?x=1")
        assert client.get("/data?x=1").json()["calls"] == 2
        client.get("/data")
        assert client.get("/data").headers["X-Cache"] == "HIT"


class TestCacheInvalidationMiddleware:
    """Tests for invalidation after writes."""

    @pytest.fixture
    def cache(self, clock):
        return InMemoryCache(clock=clock)

    @pytest.fixture
    def client(self, cache, clock):
        return TestClient(build_app(cache, clock=clock))

    def test_successful_write_invalidates(self, client, cache):
        client.get("/data")
        assert client.get("/data").headers["X-Cache"] == "HIT"

        assert client.post("/data").status_code == 200
        assert stored_keys(cache) == []

        response = client.get("/data")
        assert response.json()["calls"] == 2
        assert response.headers["X-Cache"] == "upstream"

    def test_failed_write_keeps_entries(self, client):
        client.get("/data")
        assert client.post("/bad").status_code == 400
        assert client.get("/data").headers["X-Cache"] == "HIT"

    @pytest.mark.asyncio
    async def test_invalidate_only_matching_patterns(self, cache):
        await cache.set("http:GET:/data:1", b"1", 60)
        await cache.set("item:1", b"2", 60)
        middleware = CacheInvalidationMiddleware(MagicMock(), cache)

        assert await middleware.invalidate() == 1
        assert await cache.get("item:1") == b"2"

    @pytest.mark.asyncio
    async def test_invalidate_survives_store_errors(self):
        cache = MagicMock(spec=CacheBackend)
        cache.keys = AsyncMock(side_effect=CacheBackendError("keys", "timeout"))
        middleware = CacheInvalidationMiddleware(MagicMock(), cache, patterns=["http:*", "item:*"])

        assert await middleware.invalidate() == 0
        assert cache.keys.await_count == 2

    @pytest.mark.asyncio
    async def test_streamed_write_response_forwarded_without_buffering(self, cache):
        await cache.set("http:GET:/data:1", b"1", 60)
        messages = [
            {"type": "http.response.start", "status": 201, "headers": [(b"content-type", b"text/plain")]},
            {"type": "http.response.body", "body": b"part-1,", "more_body": True},
            {"type": "http.response.body", "body": b"part-2"},
        ]

        async def upload(scope, receive, send):
            for message in messages:
                await send(message)

        send = AsyncMock()
        middleware = CacheInvalidationMiddleware(upload, cache)
        await middleware({"type": "http", "method": "POST", "path": "/data"}, AsyncMock(), send)

        assert [c.args[0] for c in send.await_args_list] == messages
        assert await cache.keys("http:*") == []

    @pytest.mark.asyncio
    async def test_status_only_capture_keeps_no_body(self):
        send = AsyncMock()
        capture = _ResponseCapture(send, buffer_body=False)

        await capture({"type": "http.response.start", "status": 204, "headers": []})
        await capture({"type": "http.response.body", "body": b"ignored"})

        assert capture.status_code == 204
        assert capture.complete is True
        assert capture.body == bytearray()
        assert send.await_count == 2


def make_request(path="/items", query=b"", method="GET"):
    return Request(
        {
            "type": "http",
            "method": method,
            "path": path,
            "query_string": query,
            "headers": [],
            "server": ("testserver", 80),
        }
    )


class TestCacheKeysAndPayloads:
    """Tests for key derivation, config defaults and the stored payload."""

    def test_key_format(self):
        key = default_cache_key_builder(make_request())
        prefix, method, path, digest = key.split(":")
        assert (prefix, method, path) == ("http", "GET", "/items")
        assert len(digest) == 8

    def test_query_changes_key(self):
        base = default_cache_key_builder(make_request(query=b"x=1"))
        assert base == default_cache_key_builder(make_request(query=b"x=1"))
        assert base != default_cache_key_builder(make_request(query=b"x=2"))
        assert base != default_cache_key_builder(make_request(query=b"x=1", method="HEAD"))

    def test_config_defaults(self):
        config = CacheMiddlewareConfig(default_ttl=0, only_methods=(), key_builder=None)
        assert config.default_ttl == 300
        assert config.only_methods == ("GET",)
        assert config.key_builder is default_cache_key_builder

    def test_payload_round_trip_keeps_repeated_headers(self):
        cached = CachedResponse(
            status_code=200,
            headers=(("set-cookie", "a=1"), ("set-cookie", "b=2")),
            body=b"\x00binary",
            captured_at=1_700_000_000.0,
        )
        payload = json.loads(cached.to_json())
        assert payload["body"] == base64.b64encode(b"\x00binary").decode()
        assert CachedResponse.from_json(cached.to_json()) == cached

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b'{"status_code": 200}',
            b'{"status_code": 200, "headers": [], "body": "***", "timestamp": 0}',
        ],
    )
    def test_malformed_payload(self, raw):
        with pytest.raises(ValueError):
            CachedResponse.from_json(raw)
