"""Async test client for perch applications.

Uses the same Request and Response types as production.
No wrapper translation layer.
"""

from __future__ import annotations

import asyncio
import json as json_module
from typing import Any
from urllib.parse import unquote, urlencode

from perch.app import App
from perch.http.response import Response


class TestClient:
    __test__ = False  # Tell pytest this is not a test class
    """Async test client for perch applications.

    Returns the same ``Response`` type used in production. Sends requests
    through the ASGI interface directly, no HTTP involved.

    Usage::

        async with TestClient(app) as client:
            response = await client.get("/")
            assert response.status == 200
    """

    __slots__ = ("app",)

    def __init__(self, app: App) -> None:
        self.app = app

    async def __aenter__(self) -> TestClient:
        await self.app.startup()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.app.shutdown()

    async def get(
        self,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        query: dict[str, Any] | None = None,
    ) -> Response:
        """Send a GET request."""
        return await self.request("GET", path, headers=headers, query=query)

    async def head(self, path: str, *, headers: dict[str, str] | None = None) -> Response:
        """Send a HEAD request."""
        return await self.request("HEAD", path, headers=headers)

    async def post(
        self,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        json: Any = None,
    ) -> Response:
        """Send a POST request."""
        return await self.request("POST", path, headers=headers, body=body, json=json)

    async def put(
        self,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        json: Any = None,
    ) -> Response:
        """Send a PUT request."""
        return await self.request("PUT", path, headers=headers, body=body, json=json)

    async def patch(
        self,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        json: Any = None,
    ) -> Response:
        """Send a PATCH request."""
        return await self.request("PATCH", path, headers=headers, body=body, json=json)

    async def delete(
        self,
        path: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> Response:
        """Send a DELETE request."""
        return await self.request("DELETE", path, headers=headers)

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        query: dict[str, Any] | None = None,
        body: bytes | None = None,
        json: Any = None,
    ) -> Response:
        """Send an arbitrary request through the ASGI app."""
        messages = await self.exchange(method, path, headers=headers, query=query, body=body, json=json)
        if not messages:
            msg = f"{method} {path} produced no response"
            raise AssertionError(msg)

        start = messages[0]
        body_bytes = b"".join(m.get("body", b"") for m in messages[1:])

        content_type = "text/plain; charset=utf-8"
        extra_headers: list[tuple[str, str]] = []
        for name_b, value_b in start.get("headers", []):
            name_str = name_b.decode("latin-1")
            value_str = value_b.decode("latin-1")
            if name_str == "content-type":
                content_type = value_str
            else:
                extra_headers.append((name_str, value_str))

        return Response(
            body=body_bytes,
            status=start["status"],
            content_type=content_type,
            headers=tuple(extra_headers),
        )

    async def exchange(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        query: dict[str, Any] | None = None,
        body: bytes | None = None,
        json: Any = None,
        disconnect: bool = False,
    ) -> list[dict[str, Any]]:
        """Run one request and return the ASGI messages the app sent.

        With ``disconnect=True`` the client is gone before the body is
        read: ``receive()`` only ever reports ``http.disconnect``.
        """
        # Split path and query string
        if "?" in path:
            path_part, query_string = path.split("?", 1)
        else:
            path_part = path
            query_string = ""
        if query:
            extra = urlencode(query, doseq=True)
            query_string = f"{query_string}&{extra}" if query_string else extra

        request_body = body or b""
        merged: dict[str, str] = {}
        if json is not None:
            request_body = json_module.dumps(json).encode("utf-8")
            merged["content-type"] = "application/json"
        merged.update(headers or {})
        if request_body and "content-length" not in {k.lower() for k in merged}:
            merged["content-length"] = str(len(request_body))

        # Build raw ASGI headers
        raw_headers: list[tuple[bytes, bytes]] = []
        for name, value in merged.items():
            raw_headers.append((name.lower().encode("latin-1"), value.encode("latin-1")))

        # Build ASGI scope
        scope: dict[str, Any] = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method.upper(),
            "path": unquote(path_part),
            "raw_path": path_part.encode("latin-1"),
            "query_string": query_string.encode("latin-1"),
            "root_path": "",
            "headers": raw_headers,
            "server": ("testserver", 80),
            "client": ("127.0.0.1", 0),
        }

        body_sent = False
        response_complete = asyncio.Event()

        async def receive() -> dict[str, Any]:
            nonlocal body_sent
            if disconnect:
                return {"type": "http.disconnect"}
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": request_body, "more_body": False}
            # Like a server: the client stays until the response is out
            await response_complete.wait()
            return {"type": "http.disconnect"}

        messages: list[dict[str, Any]] = []

        async def send(message: dict[str, Any]) -> None:
            messages.append(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                response_complete.set()

        await self.app(scope, receive, send)
        return messages
