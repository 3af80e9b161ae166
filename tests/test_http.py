"""Tests for perch.http — headers, query params, Request and Response."""

import asyncio

import pytest

from perch.errors import ClientDisconnected, HTTPError
from perch.http.datastructures import Headers, QueryParams
from perch.http.request import Request
from perch.http.response import Response


def _make_scope(**overrides: object) -> dict[str, object]:
    """Build a minimal valid ASGI HTTP scope."""
    base: dict[str, object] = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "get",
        "path": "/",
        "raw_path": b"/",
        "query_string": b"",
        "root_path": "",
        "headers": [],
        "server": ("localhost", 8000),
        "client": ("127.0.0.1", 54321),
    }
    base.update(overrides)
    return base


def _make_receive(*bodies: bytes):
    """Create an ASGI receive callable that yields bodies, then disconnects."""
    messages = [
        {"type": "http.request", "body": body, "more_body": i < len(bodies) - 1}
        for i, body in enumerate(bodies)
    ]
    messages.append({"type": "http.disconnect"})
    it = iter(messages)

    async def receive():
        return next(it)

    return receive


class TestHeaders:
    def test_case_insensitive(self) -> None:
        headers = Headers.from_raw([(b"Content-Type", b"application/json")])
        assert headers["content-type"] == "application/json"
        assert "CONTENT-TYPE" in headers

    def test_multiple_values(self) -> None:
        headers = Headers([("Accept", "a"), ("accept", "b")])
        assert headers["accept"] == "a"
        assert headers.get_list("ACCEPT") == ["a", "b"]
        assert headers.raw() == [(b"accept", b"a"), (b"accept", b"b")]

    def test_immutable(self) -> None:
        headers = Headers()
        with pytest.raises(AttributeError):
            headers.extra = 1  # type: ignore[attr-defined]


class TestQueryParams:
    def test_parse(self) -> None:
        query = QueryParams(b"q=lamp%20shade&tag=a&tag=b&empty=")
        assert query["q"] == "lamp shade"
        assert query.get_list("tag") == ["a", "b"]
        assert query["empty"] == ""
        assert query.get("missing") is None
        assert query.query_string == "q=lamp%20shade&tag=a&tag=b&empty="


class TestRequest:
    def test_from_asgi(self) -> None:
        scope = _make_scope(
            path="/files/a b",
            raw_path=b"/files/a%20b",
            query_string=b"x=1",
            headers=[(b"content-type", b"application/json"), (b"content-length", b"2")],
        )
        request = Request.from_asgi(scope, _make_receive(b"{}"))
        assert request.method == "GET"
        assert request.path == "/files/a b"
        assert request.route_path == "/files/a%20b"
        assert request.url == "/files/a b?x=1"
        assert request.content_type == "application/json"
        assert request.content_length == 2
        assert request.client == ("127.0.0.1", 54321)

    def test_route_path_without_raw_path(self) -> None:
        request = Request(method="GET", path="/files/a b")
        assert request.route_path == "/files/a%20b"

    @pytest.mark.asyncio
    async def test_body_chunks_cached(self) -> None:
        request = Request.from_asgi(_make_scope(), _make_receive(b'{"a"', b": 1}"))
        assert await request.body() == b'{"a": 1}'
        assert await request.body() == b'{"a": 1}'
        assert await request.json() == {"a": 1}

    @pytest.mark.asyncio
    async def test_concurrent_readers_share_one_read(self) -> None:
        request = Request.from_asgi(_make_scope(), _make_receive(b"abc"))
        first, second = await asyncio.gather(request.body(), request.body())
        assert first == second == b"abc"

    def test_has_body(self) -> None:
        with_length = Request(method="POST", path="/", headers=Headers([("content-length", "3")]))
        chunked = Request(method="POST", path="/", headers=Headers([("transfer-encoding", "chunked")]))
        assert with_length.has_body is True
        assert chunked.has_body is True
        assert Request(method="GET", path="/").has_body is False

    @pytest.mark.asyncio
    async def test_body_limit(self) -> None:
        request = Request.from_asgi(_make_scope(), _make_receive(b"x" * 10), max_body_size=4)
        with pytest.raises(HTTPError) as exc_info:
            await request.body()
        assert exc_info.value.status == 413
        # A second read fails the same way instead of reading past the limit
        with pytest.raises(HTTPError):
            await request.body()

    @pytest.mark.asyncio
    async def test_disconnect_while_reading(self) -> None:
        async def receive():
            return {"type": "http.disconnect"}

        request = Request.from_asgi(_make_scope(method="POST"), receive)
        with pytest.raises(ClientDisconnected):
            await request.body()
        assert request.disconnected is True

    def test_with_path_params_shares_cache(self) -> None:
        request = Request(method="GET", path="/users/1")
        bound = request.with_path_params({"id": "1"})
        bound.mark_disconnected()
        assert bound.path_params == {"id": "1"}
        assert request.disconnected is True


class TestResponse:
    def test_chainable(self) -> None:
        response = Response("created").with_status(201).with_header("Location", "/items/7")
        assert response.status == 201
        assert response.header("location") == "/items/7"
        assert response.body_bytes == b"created"

    def test_immutable_transformations(self) -> None:
        original = Response("ok")
        original.with_status(500)
        assert original.status == 200

    def test_content_type_and_json(self) -> None:
        response = Response(b'{"a": 1}').with_content_type("application/json")
        assert response.content_type == "application/json"
        assert response.json() == {"a": 1}
