"""Tests for perch.middleware.pipeline — ordering, short-circuit and error ownership."""

import logging

import pytest

from perch.errors import (
    ClientDisconnected,
    HTTPError,
    LateRegistrationError,
    PipelineStageError,
)
from perch.http.request import Request
from perch.http.response import Response
from perch.middleware import AccessLog, Next, Pipeline


def _request() -> Request:
    return Request(method="GET", path="/things")


def _recorder(name: str, events: list[str]):
    async def stage(request: Request, next: Next) -> Response:
        events.append(f"{name} in")
        response = await next(request)
        events.append(f"{name} out")
        return response.with_header("X-Stage", name)

    stage.__qualname__ = name
    return stage


async def _endpoint(request: Request) -> Response:
    return Response("ok")


class TestOrdering:
    @pytest.mark.asyncio
    async def test_in_order_then_reverse(self) -> None:
        events: list[str] = []
        pipeline = Pipeline([_recorder("a", events), _recorder("b", events)])

        async def endpoint(request: Request) -> Response:
            events.append("handler")
            return Response("ok")

        response = await pipeline.run(_request(), endpoint)
        assert events == ["a in", "b in", "handler", "b out", "a out"]
        # Outer stages see what inner stages produced
        assert response.headers == (("X-Stage", "b"), ("X-Stage", "a"))

    @pytest.mark.asyncio
    async def test_empty_pipeline_calls_endpoint(self) -> None:
        response = await Pipeline().run(_request(), _endpoint)
        assert response.text == "ok"

    @pytest.mark.asyncio
    async def test_short_circuit(self) -> None:
        called = False

        async def deny(request: Request, next: Next) -> Response:
            return Response("denied", status=403)

        async def endpoint(request: Request) -> Response:
            nonlocal called
            called = True
            return Response("ok")

        response = await Pipeline([deny]).run(_request(), endpoint)
        assert response.status == 403
        assert called is False

    @pytest.mark.asyncio
    async def test_class_middleware(self) -> None:
        class Tag:
            async def __call__(self, request: Request, next: Next) -> Response:
                return (await next(request)).with_header("X-Tag", "1")

        response = await Pipeline([Tag()]).run(_request(), _endpoint)
        assert response.header("x-tag") == "1"


class TestRegistration:
    def test_use_after_freeze(self) -> None:
        pipeline = Pipeline()
        pipeline.use(_recorder("a", []))
        pipeline.freeze()
        with pytest.raises(LateRegistrationError):
            pipeline.use(_recorder("b", []))
        assert len(pipeline) == 1

    def test_rejects_non_callable(self) -> None:
        with pytest.raises(TypeError):
            Pipeline().use("not a stage")  # type: ignore[arg-type]


class TestErrorOwnership:
    @pytest.mark.asyncio
    async def test_stage_failure_is_wrapped(self) -> None:
        async def broken(request: Request, next: Next) -> Response:
            msg = "bad config"
            raise KeyError(msg)

        with pytest.raises(PipelineStageError) as exc_info:
            await Pipeline([broken]).run(_request(), _endpoint)
        assert exc_info.value.stage is broken
        assert isinstance(exc_info.value.original, KeyError)

    @pytest.mark.asyncio
    async def test_stage_failure_after_next_is_wrapped(self) -> None:
        async def broken(request: Request, next: Next) -> Response:
            await next(request)
            msg = "post-processing failed"
            raise ValueError(msg)

        with pytest.raises(PipelineStageError):
            await Pipeline([broken]).run(_request(), _endpoint)

    @pytest.mark.asyncio
    async def test_downstream_error_passes_through(self) -> None:
        seen: list[BaseException] = []

        async def observer(request: Request, next: Next) -> Response:
            try:
                return await next(request)
            except Exception as exc:
                seen.append(exc)
                raise

        async def endpoint(request: Request) -> Response:
            msg = "handler failed"
            raise RuntimeError(msg)

        with pytest.raises(RuntimeError, match="handler failed"):
            await Pipeline([observer, _recorder("inner", [])]).run(_request(), endpoint)
        assert isinstance(seen[0], RuntimeError)

    @pytest.mark.asyncio
    async def test_http_error_from_stage_passes_through(self) -> None:
        async def auth(request: Request, next: Next) -> Response:
            raise HTTPError(status=401, detail="login required")

        with pytest.raises(HTTPError) as exc_info:
            await Pipeline([auth]).run(_request(), _endpoint)
        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_tagged_stage_error_kept(self) -> None:
        async def limiter(request: Request, next: Next) -> Response:
            raise PipelineStageError(limiter, status=429, detail="slow down")

        with pytest.raises(PipelineStageError) as exc_info:
            await Pipeline([limiter]).run(_request(), _endpoint)
        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_stage_may_transform_downstream_error(self) -> None:
        async def translate(request: Request, next: Next) -> Response:
            try:
                return await next(request)
            except LookupError:
                return Response("missing", status=404)

        async def endpoint(request: Request) -> Response:
            raise KeyError("thing")

        response = await Pipeline([translate]).run(_request(), endpoint)
        assert response.status == 404


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_stops_before_next_stage(self) -> None:
        events: list[str] = []

        async def drop(request: Request, next: Next) -> Response:
            request.mark_disconnected()
            return await next(request)

        with pytest.raises(ClientDisconnected):
            await Pipeline([drop, _recorder("later", events)]).run(_request(), _endpoint)
        assert events == []


class TestAccessLog:
    @pytest.mark.asyncio
    async def test_logs_errors_at_info(self, caplog: pytest.LogCaptureFixture) -> None:
        async def endpoint(request: Request) -> Response:
            return Response("nope", status=404)

        with caplog.at_level(logging.DEBUG, logger="perch.access"):
            await Pipeline([AccessLog()]).run(_request(), endpoint)
        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert "GET /things - 404" in record.getMessage()

    @pytest.mark.asyncio
    async def test_fast_success_at_debug(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="perch.access"):
            await Pipeline([AccessLog()]).run(_request(), _endpoint)
        assert caplog.records[-1].levelno == logging.DEBUG

    @pytest.mark.asyncio
    async def test_exception_logged_and_reraised(self, caplog: pytest.LogCaptureFixture) -> None:
        async def endpoint(request: Request) -> Response:
            msg = "boom"
            raise RuntimeError(msg)

        with caplog.at_level(logging.ERROR, logger="perch.access"), pytest.raises(RuntimeError):
            await Pipeline([AccessLog()]).run(_request(), endpoint)
        assert "RuntimeError" in caplog.text
