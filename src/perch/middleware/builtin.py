"""Built-in middleware: access logging.

``AccessLog`` writes one line per request to the ``perch.access`` logger:
method, path, status and duration. Requests that fail with an exception
are logged at ERROR with the exception type and re-raised untouched.
"""

import logging
import time

from perch.http.request import Request
from perch.http.response import Response
from perch.middleware.protocol import Next


class AccessLog:
    """Per-request access log line.

    Only requests slower than *slow_threshold* seconds or with a status
    of at least *min_status* are logged at INFO; everything else goes to
    DEBUG.

    Usage::

        app.add_middleware(AccessLog(slow_threshold=1.0))
    """

    __slots__ = ("logger", "min_status", "slow_threshold")

    def __init__(
        self,
        *,
        logger: logging.Logger | None = None,
        slow_threshold: float = 1.0,
        min_status: int = 400,
    ) -> None:
        self.logger = logger or logging.getLogger("perch.access")
        self.slow_threshold = slow_threshold
        self.min_status = min_status

    async def __call__(self, request: Request, next: Next) -> Response:
        start = time.perf_counter()
        try:
            response = await next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - start
            self.logger.error(
                "%s %s - %s after %.3fs", request.method, request.url, type(exc).__name__, elapsed
            )
            raise

        elapsed = time.perf_counter() - start
        level = (
            logging.INFO
            if elapsed >= self.slow_threshold or response.status >= self.min_status
            else logging.DEBUG
        )
        self.logger.log(
            level, "%s %s - %d - %.3fs", request.method, request.url, response.status, elapsed
        )
        return response
