"""Error mapping for perch requests.

Maps ``HTTPError`` exceptions and unexpected failures to Response objects,
using registered error handlers or codec-encoded defaults.
"""

import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any

from perch.codecs import Codec
from perch.errors import DependencyError, HandlerError, HTTPError, PipelineStageError, format_chain
from perch.http.request import Request
from perch.http.response import Response
from perch.server.negotiation import negotiate

logger = logging.getLogger("perch.server")

type ErrorHandlers = Mapping[int | type[BaseException], Callable[..., Any]]


def _error_response(payload: dict[str, Any], status: int, codec: Codec) -> Response:
    return Response(body=codec.encode(payload), status=status, content_type=codec.media_type)


def find_error_handler(
    error_handlers: ErrorHandlers,
    exc: BaseException,
    status: int,
) -> tuple[Callable[..., Any], BaseException] | None:
    """Find the handler for *exc*: by exception class (MRO), then by status.

    Wrapped application errors are looked up by the original exception
    first, so ``@app.error(ValueError)`` sees the ``ValueError`` a handler
    raised rather than the ``HandlerError`` around it.
    """
    candidates: list[BaseException] = []
    original = getattr(exc, "original", None) if isinstance(exc, (HandlerError, PipelineStageError)) else None
    if isinstance(original, BaseException):
        candidates.append(original)
    candidates.append(exc)

    for candidate in candidates:
        for cls in type(candidate).__mro__:
            handler = error_handlers.get(cls)
            if handler is not None:
                return handler, candidate
    handler = error_handlers.get(status)
    if handler is not None:
        return handler, exc
    return None


async def call_error_handler(
    handler: Callable[..., Any],
    request: Request,
    exc: BaseException,
    codec: Codec,
) -> Response:
    """Invoke a user-registered error handler with introspected arguments.

    Error handlers may accept zero, one (request), or two (request, exc) args.
    Supports both sync and async error handlers.
    """
    params = list(inspect.signature(handler).parameters.values())

    if len(params) >= 2:
        result = handler(request, exc)
    elif len(params) == 1:
        result = handler(request)
    else:
        result = handler()

    if inspect.isawaitable(result):
        result = await result

    return negotiate(result, codec)


async def _run_user_handler(
    found: tuple[Callable[..., Any], BaseException],
    request: Request,
    codec: Codec,
    status: int,
) -> Response | None:
    handler, matched = found
    try:
        response = await call_error_handler(handler, request, matched, codec)
    except Exception:
        logger.exception("Error handler %r failed for %s %s", handler, request.method, request.path)
        return None
    # Keep the error's status unless the handler chose its own
    if response.status == 200:
        response = response.with_status(status)
    return response


async def handle_http_error(
    exc: HTTPError,
    request: Request,
    error_handlers: ErrorHandlers,
    codec: Codec,
) -> Response:
    """Map an HTTPError to a Response using registered error handlers."""
    logger.debug("%d %s %s: %s", exc.status, request.method, request.path, exc.detail)

    found = find_error_handler(error_handlers, exc, exc.status)
    if found is not None:
        response = await _run_user_handler(found, request, codec, exc.status)
        if response is not None:
            return response

    response = _error_response(exc.to_payload(), exc.status, codec)
    return response.with_headers(dict(exc.headers)) if exc.headers else response


async def handle_internal_error(
    exc: Exception,
    request: Request,
    error_handlers: ErrorHandlers,
    codec: Codec,
    debug: bool,
) -> Response:
    """Handle everything that is not an ``HTTPError``.

    Dependency failures are logged with their resolution chain. A
    ``PipelineStageError`` tagged with a status keeps that status; all
    other failures become 500.
    """
    status = 500
    detail = "Internal Server Error"

    if isinstance(exc, PipelineStageError) and exc.status != 500:
        status = exc.status
        detail = exc.detail or detail
        logger.warning("%d %s %s: %s", status, request.method, request.path, exc)
    elif isinstance(exc, DependencyError):
        logger.error(
            "500 %s %s: dependency resolution failed (chain: %s)",
            request.method,
            request.path,
            format_chain((*exc.chain, exc.capability)),
            exc_info=exc,
        )
    else:
        logger.exception("500 %s %s", request.method, request.path)

    found = find_error_handler(error_handlers, exc, status)
    if found is not None:
        response = await _run_user_handler(found, request, codec, status)
        if response is not None:
            return response

    payload: dict[str, Any] = {"status": status, "detail": detail}
    if debug:
        original = getattr(exc, "original", None) or exc
        payload["error"] = type(original).__name__
        payload["message"] = str(original)
        if isinstance(exc, DependencyError):
            payload["chain"] = format_chain((*exc.chain, exc.capability))
    return _error_response(payload, status, codec)
