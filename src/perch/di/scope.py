"""Per-request resolution scope.

A ``ResolutionScope`` holds the scoped instances of one request, plus the
release callables of every releasable instance constructed inside it. It
is created by the dispatcher when a request starts and closed exactly once
when the request ends, on every exit path.

A scope belongs to a single request's task, so it needs no locking. Two
concurrent resolutions of the same scoped capability inside one request
(``asyncio.gather``) share a single construction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from perch._internal.invoke import callable_name
from perch.di.release import Release, run_release
from perch.errors import ScopeError

if TYPE_CHECKING:
    from perch.di.container import Container, Registration

logger = logging.getLogger("perch.di")


class ResolutionScope:
    """Scoped-instance cache with deterministic release.

    Usage::

        async with container.create_scope() as scope:
            db = await scope.resolve(Session)
        # Session released here
    """

    __slots__ = ("_closed", "_container", "_instances", "_releases")

    def __init__(self, container: Container) -> None:
        self._container = container
        self._instances: dict[Any, asyncio.Future[Any]] = {}
        # (release, instance) pairs in construction order
        self._releases: list[tuple[Release, Any]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __contains__(self, capability: object) -> bool:
        future = self._instances.get(capability)
        return (
            future is not None
            and future.done()
            and not future.cancelled()
            and future.exception() is None
        )

    async def resolve(self, capability: Any) -> Any:
        """Shorthand for ``container.resolve(capability, self)``."""
        return await self._container.resolve(capability, self)

    async def get_or_create(
        self,
        registration: Registration,
        construct: Callable[[], Awaitable[tuple[Any, Release | None]]],
    ) -> Any:
        """Return the cached instance for *registration*, constructing it once."""
        if self._closed:
            msg = f"Cannot resolve {callable_name(registration.capability)}: the scope is closed"
            raise ScopeError(msg, registration.capability)

        capability = registration.capability
        future = self._instances.get(capability)
        if future is not None:
            return await asyncio.shield(future)

        future = asyncio.get_running_loop().create_future()
        self._instances[capability] = future
        try:
            instance, release = await construct()
        except BaseException as exc:
            # A failed construction is not cached; concurrent waiters see the error
            del self._instances[capability]
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(exc)
                future.exception()  # retrieved; do not warn when nobody waits
            raise
        if release is not None:
            self.track(release, instance)
        future.set_result(instance)
        return instance

    def track(self, release: Release, instance: Any = None) -> None:
        """Register *release* to run when the scope closes."""
        self._releases.append((release, instance))

    async def aclose(self) -> None:
        """Release tracked instances in reverse construction order.

        Idempotent: the second and later calls do nothing.
        """
        if self._closed:
            return
        self._closed = True
        releases, self._releases = self._releases, []
        self._instances.clear()
        for release, instance in reversed(releases):
            await run_release(release, instance)

    async def __aenter__(self) -> ResolutionScope:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
