"""Request dispatcher: one request from route match to response.

Every request walks the same states::

    MATCHING -> PIPING -> BINDING -> RESOLVING -> INVOKING -> RESPONDING

and can fall into ERRORED from any of them. Matching happens before the
middleware pipeline; binding, dependency resolution, invocation and
return-value negotiation happen inside it, at the end of the chain.

The request's ``ResolutionScope`` is opened before matching and released
exactly once in a ``finally`` block, whatever the exit path: success,
a mapped error, a stage short-circuit, a client disconnect or task
cancellation.
"""

import asyncio
import enum
import logging

from perch.binding import bind_values, resolve_dependencies
from perch.codecs import Codec
from perch.di.container import Container
from perch.di.scope import ResolutionScope
from perch.errors import ClientDisconnected, HandlerError, HTTPError
from perch.http.request import Request
from perch.http.response import Response
from perch.middleware.pipeline import Pipeline
from perch.routing.route import RouteMatch
from perch.routing.router import Router
from perch.server.errors import ErrorHandlers, handle_http_error, handle_internal_error
from perch.server.negotiation import negotiate

logger = logging.getLogger("perch.server")


class DispatchState(enum.Enum):
    MATCHING = "matching"
    PIPING = "piping"
    BINDING = "binding"
    RESOLVING = "resolving"
    INVOKING = "invoking"
    RESPONDING = "responding"
    ERRORED = "errored"


class Exchange:
    """Per-request dispatch record: current state, match and scope."""

    __slots__ = ("error", "history", "match", "request", "scope")

    def __init__(self, request: Request) -> None:
        self.request = request
        self.match: RouteMatch | None = None
        self.scope: ResolutionScope | None = None
        self.error: BaseException | None = None
        self.history: list[DispatchState] = []

    @property
    def state(self) -> DispatchState | None:
        return self.history[-1] if self.history else None

    def advance(self, state: DispatchState) -> None:
        self.history.append(state)

    def fail(self, exc: BaseException) -> None:
        self.error = exc
        if self.state is not DispatchState.ERRORED:
            self.history.append(DispatchState.ERRORED)


class Dispatcher:
    """Runs requests through routing, middleware, binding and the handler.

    Built once by ``App._freeze()`` from the frozen router, container and
    pipeline; shared by all requests.
    """

    __slots__ = ("_codec", "_container", "_debug", "_error_handlers", "_pipeline", "_router")

    def __init__(
        self,
        *,
        router: Router,
        container: Container,
        pipeline: Pipeline,
        codec: Codec,
        error_handlers: ErrorHandlers | None = None,
        debug: bool = False,
    ) -> None:
        self._router = router
        self._container = container
        self._pipeline = pipeline
        self._codec = codec
        self._error_handlers: ErrorHandlers = error_handlers or {}
        self._debug = debug

    async def dispatch(self, request: Request) -> Response:
        """Produce the response for *request*.

        Raises ``ClientDisconnected`` if the client went away (there is no
        one to respond to) and lets ``asyncio.CancelledError`` propagate.
        """
        return await self.run(Exchange(request))

    async def run(self, exchange: Exchange) -> Response:
        """Like ``dispatch``, recording progress on *exchange*."""
        request = exchange.request
        scope = self._container.create_scope()
        exchange.scope = scope
        try:
            try:
                exchange.advance(DispatchState.MATCHING)
                match = self._router.match(request.method, request.route_path)
                exchange.match = match
                request = request.with_path_params(match.path_params)

                exchange.advance(DispatchState.PIPING)
                return await self._pipeline.run(request, _Endpoint(self, exchange))
            except (ClientDisconnected, asyncio.CancelledError) as exc:
                exchange.fail(exc)
                logger.debug("%s %s abandoned: %s", request.method, request.path, type(exc).__name__)
                raise
            except HTTPError as exc:
                exchange.fail(exc)
                return await handle_http_error(exc, request, self._error_handlers, self._codec)
            except Exception as exc:
                exchange.fail(exc)
                return await handle_internal_error(
                    exc, request, self._error_handlers, self._codec, self._debug
                )
        finally:
            await scope.aclose()

    async def _respond(self, exchange: Exchange, request: Request) -> Response:
        assert exchange.match is not None and exchange.scope is not None
        descriptor = exchange.match.route.descriptor

        exchange.advance(DispatchState.BINDING)
        values = await bind_values(descriptor, request, request.path_params, self._codec)

        exchange.advance(DispatchState.RESOLVING)
        values = await resolve_dependencies(descriptor, values, self._container, exchange.scope)

        exchange.advance(DispatchState.INVOKING)
        try:
            result = await descriptor.invoke(values)
            exchange.advance(DispatchState.RESPONDING)
            return negotiate(result, self._codec)
        except (HTTPError, ClientDisconnected):
            raise
        except Exception as exc:
            raise HandlerError(descriptor.handler, exc) from exc


class _Endpoint:
    """The pipeline's innermost ``next``: bind, resolve, invoke, negotiate."""

    __slots__ = ("_dispatcher", "_exchange")

    def __init__(self, dispatcher: Dispatcher, exchange: Exchange) -> None:
        self._dispatcher = dispatcher
        self._exchange = exchange

    async def __call__(self, request: Request) -> Response:
        return await self._dispatcher._respond(self._exchange, request)
