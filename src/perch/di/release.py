"""Release callables for instances the container constructed.

An instance is releasable when it exposes ``aclose()`` or ``close()``,
or when its factory is a generator suspended at ``yield``. A failing
release is logged and never stops the remaining releases.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from typing import Any

from perch._internal.invoke import callable_name, invoke

logger = logging.getLogger("perch.di")

type Release = Callable[[], Awaitable[None]]


def release_for_instance(instance: Any) -> Release | None:
    """Return a release callable for a closeable instance, else ``None``."""
    if instance is None or inspect.isclass(instance) or inspect.ismodule(instance):
        return None
    for name in ("aclose", "close"):
        method = getattr(instance, name, None)
        if callable(method):

            async def release(_method: Callable[[], Any] = method) -> None:
                await invoke(_method)

            return release
    return None


def release_for_generator(gen: Generator[Any] | AsyncGenerator[Any]) -> Release:
    """Resume a factory generator past its single ``yield``."""

    async def release() -> None:
        if inspect.isasyncgen(gen):
            try:
                await anext(gen)
            except StopAsyncIteration:
                return
            await gen.aclose()
        else:
            try:
                next(gen)
            except StopIteration:
                return
            gen.close()
        msg = f"Factory generator {gen.__qualname__} yielded more than once"
        raise RuntimeError(msg)

    return release


async def run_release(release: Release, instance: Any) -> bool:
    """Run *release*, logging a failure instead of raising. Returns success."""
    try:
        await release()
    except Exception:
        logger.exception("Releasing %s failed", callable_name(type(instance)))
        return False
    return True
