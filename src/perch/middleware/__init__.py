"""Middleware — Protocol-based, no inheritance required.

A middleware is any callable matching:
    async def mw(request: Request, next: Next) -> Response

Built-in middleware:
    AccessLog -- one log line per request
"""

from perch.middleware.builtin import AccessLog
from perch.middleware.pipeline import Pipeline
from perch.middleware.protocol import Middleware, Next

__all__ = ["AccessLog", "Middleware", "Next", "Pipeline"]
