"""Middleware protocol and Next type alias.

A middleware (pipeline stage) is any callable matching::

    async def my_mw(request: Request, next: Next) -> Response: ...

No base class required. The pipeline checks the shape, not the lineage.
"""

from collections.abc import Awaitable, Callable
from typing import Protocol

from perch.http.request import Request
from perch.http.response import Response

# The next stage in the chain (or the handler, after the last stage)
type Next = Callable[[Request], Awaitable[Response]]


class Middleware(Protocol):
    """Protocol for perch middleware.

    Accepts both functions and callable objects::

        # Function middleware
        async def timing(request: Request, next: Next) -> Response:
            start = time.monotonic()
            response = await next(request)
            elapsed = time.monotonic() - start
            return response.with_header("X-Time", f"{elapsed:.3f}")

        # Class middleware
        class RequireToken:
            async def __call__(self, request: Request, next: Next) -> Response:
                if "authorization" not in request.headers:
                    return Response("unauthorized", status=401)
                return await next(request)
    """

    async def __call__(self, request: Request, next: Next) -> Response: ...
