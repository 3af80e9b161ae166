"""Immutable HTTP request.

Frozen metadata with async body access. The body stream can be consumed
once; the bytes are cached so later readers see the same payload.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import quote

from perch._internal.asgi import Receive, Scope
from perch.errors import ClientDisconnected, HTTPError
from perch.http.datastructures import Headers, QueryParams

_PATH_SAFE = "/:@!$&'()*+,;=~"


async def _empty_receive() -> dict[str, Any]:
    return {"type": "http.request", "body": b"", "more_body": False}


@dataclass(frozen=True, slots=True)
class Request:
    """An immutable HTTP request.

    Metadata (method, path, headers, query) is frozen at creation.
    Body is accessed asynchronously via ``.body()``, ``.text()`` or
    ``.json()``.
    """

    method: str
    path: str
    # Percent-encoded path as sent by the client; routing splits on it
    raw_path: str = ""
    headers: Headers = field(default_factory=Headers)
    query: QueryParams = field(default_factory=QueryParams)
    path_params: dict[str, str] = field(default_factory=dict)
    http_version: str = "1.1"
    server: tuple[str, int] | None = None
    client: tuple[str, int] | None = None
    root_path: str = ""
    max_body_size: int | None = None

    # ASGI receive callable for body streaming
    _receive: Receive = field(default=_empty_receive, repr=False, compare=False)

    # Shared across copies made by ``with_path_params``: body bytes,
    # decoded payload, disconnect flag, body lock and read event
    _cache: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    # -- Computed properties --

    @property
    def content_type(self) -> str | None:
        """The Content-Type header value."""
        return self.headers.get("content-type")

    @property
    def content_length(self) -> int | None:
        """The Content-Length header as int."""
        value = self.headers.get("content-length")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    @property
    def route_path(self) -> str:
        """The percent-encoded path used for route matching."""
        return self.raw_path or quote(self.path, safe=_PATH_SAFE)

    @property
    def url(self) -> str:
        """Request path plus query string."""
        qs = self.query.query_string
        return f"{self.path}?{qs}" if qs else self.path

    @property
    def disconnected(self) -> bool:
        """True once the server reported ``http.disconnect`` for this request."""
        return self._cache.get("_disconnected", False)

    def mark_disconnected(self) -> None:
        self._cache["_disconnected"] = True

    def with_path_params(self, path_params: dict[str, str]) -> Request:
        """Return a copy carrying matched path parameters (body cache shared)."""
        return replace(self, path_params=path_params)

    # -- Async body access --

    @property
    def has_body(self) -> bool:
        """True when the client announced a body (length or chunked)."""
        return bool(self.content_length) or "transfer-encoding" in self.headers

    def _body_read_event(self) -> asyncio.Event:
        return self._cache.setdefault("_body_read", asyncio.Event())

    async def wait_body_read(self) -> None:
        """Wait until ``body()`` has consumed the receive channel."""
        await self._body_read_event().wait()

    async def body(self) -> bytes:
        """Read the full request body.

        The ASGI receive channel is consumed once; subsequent calls return
        the cached bytes. Concurrent callers share one read.
        """
        if "_body" in self._cache:
            return self._cache["_body"]
        async with self._cache.setdefault("_body_lock", asyncio.Lock()):
            if "_body" in self._cache:
                return self._cache["_body"]
            if "_body_error" in self._cache:
                raise self._cache["_body_error"]
            chunks: list[bytes] = []
            size = 0
            async for chunk in self.stream():
                size += len(chunk)
                if self.max_body_size is not None and size > self.max_body_size:
                    # The channel is partly consumed; later reads fail the same way
                    error = HTTPError(status=413, detail="Request body too large")
                    self._cache["_body_error"] = error
                    raise error
                chunks.append(chunk)
            result = b"".join(chunks)
            self._cache["_body"] = result
        self._body_read_event().set()
        return result

    async def stream(self) -> AsyncGenerator[bytes]:
        """Stream the request body in chunks."""
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                self.mark_disconnected()
                raise ClientDisconnected(f"Client disconnected during {self.method} {self.path}")
            body = message.get("body", b"")
            if body:
                yield body
            if not message.get("more_body", False):
                break

    async def text(self) -> str:
        """Read the body as text (UTF-8)."""
        raw = await self.body()
        return raw.decode("utf-8")

    async def json(self) -> Any:
        """Parse the body as JSON."""
        import json as json_module

        return json_module.loads(await self.body())

    # -- Factory --

    @classmethod
    def from_asgi(
        cls,
        scope: Scope,
        receive: Receive,
        *,
        max_body_size: int | None = None,
    ) -> Request:
        """Create a Request from an ASGI scope and receive callable."""
        server = scope.get("server")
        client = scope.get("client")
        raw_path = scope.get("raw_path")
        return cls(
            method=scope["method"].upper(),
            path=scope["path"],
            raw_path=raw_path.decode("latin-1").split("?", 1)[0] if raw_path else "",
            headers=Headers.from_raw(scope.get("headers", ())),
            query=QueryParams(scope.get("query_string", b"")),
            http_version=scope.get("http_version", "1.1"),
            server=tuple(server) if server else None,
            client=tuple(client) if client else None,
            root_path=scope.get("root_path", ""),
            max_body_size=max_body_size,
            _receive=receive,
        )
