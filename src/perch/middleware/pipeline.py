"""Middleware pipeline.

Stages run in registration order on the way in and in reverse order on
the way out. The chain is an immutable tuple walked by an index-carrying
continuation object, so no closures are built per request and every stage
boundary is a place to notice a disconnected client.

Error ownership: an exception raised *by a stage itself* becomes a
``PipelineStageError``; an exception coming up from downstream passes
through the stage unchanged, even if the stage re-raises it. A stage can
keep control of the response by raising an ``HTTPError`` or tagging its own
``PipelineStageError(status=...)``.
"""

from collections.abc import Sequence

from perch._internal.invoke import callable_name
from perch.errors import ClientDisconnected, HTTPError, LateRegistrationError, PipelineStageError
from perch.http.request import Request
from perch.http.response import Response
from perch.middleware.protocol import Middleware, Next

_PASSTHROUGH = (HTTPError, PipelineStageError, ClientDisconnected)


class _Continuation:
    """The ``next`` callable handed to stage *index - 1*."""

    __slots__ = ("_endpoint", "_index", "_stages", "raised")

    def __init__(self, stages: tuple[Middleware, ...], endpoint: Next, index: int) -> None:
        self._stages = stages
        self._endpoint = endpoint
        self._index = index
        # The exception this continuation last raised, if any
        self.raised: BaseException | None = None

    async def __call__(self, request: Request) -> Response:
        try:
            return await self._step(request)
        except BaseException as exc:
            self.raised = exc
            raise

    async def _step(self, request: Request) -> Response:
        if request.disconnected:
            msg = f"Client disconnected before {self._describe_target()} ran"
            raise ClientDisconnected(msg)

        if self._index == len(self._stages):
            return await self._endpoint(request)

        stage = self._stages[self._index]
        downstream = _Continuation(self._stages, self._endpoint, self._index + 1)
        try:
            return await stage(request, downstream)
        except Exception as exc:
            if exc is downstream.raised or isinstance(exc, _PASSTHROUGH):
                raise
            raise PipelineStageError(stage, exc) from exc

    def _describe_target(self) -> str:
        if self._index == len(self._stages):
            return "the handler"
        return f"middleware {callable_name(self._stages[self._index])}"


class Pipeline:
    """Ordered middleware chain around an endpoint.

    Usage::

        pipeline = Pipeline()
        pipeline.use(AccessLog())
        pipeline.freeze()
        response = await pipeline.run(request, endpoint)
    """

    __slots__ = ("_frozen", "_stages")

    def __init__(self, stages: Sequence[Middleware] = ()) -> None:
        self._stages: tuple[Middleware, ...] = tuple(stages)
        self._frozen = False

    def use(self, stage: Middleware) -> None:
        """Append *stage*. Raises ``LateRegistrationError`` after ``freeze()``."""
        if self._frozen:
            msg = f"Cannot add middleware {callable_name(stage)}: the pipeline is frozen."
            raise LateRegistrationError(msg)
        if not callable(stage):
            msg = f"Middleware must be callable, got {stage!r}"
            raise TypeError(msg)
        self._stages = (*self._stages, stage)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def stages(self) -> tuple[Middleware, ...]:
        return self._stages

    def __len__(self) -> int:
        return len(self._stages)

    async def run(self, request: Request, endpoint: Next) -> Response:
        """Send *request* through every stage, then *endpoint*."""
        return await _Continuation(self._stages, endpoint, 0)(request)
