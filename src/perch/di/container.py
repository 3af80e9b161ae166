"""Dependency container.

Registrations map a capability (usually an abstract class or protocol) to
a factory or a fixed instance, with a lifetime:

- ``TRANSIENT``: the factory runs on every resolution.
- ``SCOPED``: once per ``ResolutionScope`` (one scope per request).
- ``SINGLETON``: once per process.

Factories may be classes, functions, coroutine functions, or generator
functions (sync or async) that ``yield`` the instance and clean up after
the ``yield``. Factory parameters are resolved from the container by their
type annotation.

Thread safety:
    Registration happens at startup, single-threaded. After ``freeze()``
    the registration table is read-only. The one shared mutation while
    serving is a singleton's first construction, guarded per registration
    so concurrent first resolutions (threads or tasks) build exactly one
    instance.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import inspect
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, get_args, get_origin, get_type_hints

from perch._internal.invoke import callable_name
from perch.di.release import Release, release_for_generator, release_for_instance, run_release
from perch.errors import (
    ConfigurationError,
    CyclicDependencyError,
    LateRegistrationError,
    ScopeError,
    UnresolvedDependencyError,
    format_chain,
)
from perch.handlers import Inject, unwrap_optional

if TYPE_CHECKING:
    from perch.di.scope import ResolutionScope

logger = logging.getLogger("perch.di")

# Result published to waiters when the constructing task was cancelled
_ABANDONED = object()


class Lifetime(enum.Enum):
    TRANSIENT = "transient"
    SCOPED = "scoped"
    SINGLETON = "singleton"


@dataclass(frozen=True, slots=True)
class FactoryParam:
    """A factory parameter satisfied from the container."""

    name: str
    capability: Any
    default: Any
    has_default: bool
    keyword_only: bool


@dataclass(frozen=True, slots=True)
class Registration:
    """How to produce a capability. Immutable once registered."""

    capability: Any
    lifetime: Lifetime
    factory: Callable[..., Any] | None
    params: tuple[FactoryParam, ...] = ()
    instance: Any = None
    owns_instance: bool = True

    @property
    def is_instance(self) -> bool:
        return self.factory is None


class _SingletonCell:
    """Construction state of one singleton registration."""

    __slots__ = ("instance", "lock", "owned", "pending", "ready", "release")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.pending: concurrent.futures.Future[Any] | None = None
        self.ready = False
        self.instance: Any = None
        self.release: Release | None = None
        # Releasable transients built for this singleton, in construction order
        self.owned: list[tuple[Release, Any]] = []

    async def aclose(self) -> None:
        """Release the singleton, then the transients it was built from."""
        releases = list(reversed(self.owned))
        if self.release is not None:
            releases.insert(0, (self.release, self.instance))
        self.release = None
        self.owned = []
        for release, instance in releases:
            await run_release(release, instance)


def inspect_factory(factory: Callable[..., Any]) -> tuple[FactoryParam, ...]:
    """Read a factory's parameters and the capabilities they request.

    Raises ``ConfigurationError`` for a parameter that has neither an
    annotation nor a default.
    """
    name = callable_name(factory)
    target = factory.__init__ if inspect.isclass(factory) else factory
    try:
        hints = get_type_hints(target, include_extras=True)
    except (NameError, TypeError) as exc:
        msg = f"Cannot resolve type hints of factory {name}: {exc}"
        raise ConfigurationError(msg) from exc

    params: list[FactoryParam] = []
    for param in inspect.signature(factory).parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        has_default = param.default is not inspect.Parameter.empty
        annotation = hints.get(param.name, inspect.Parameter.empty)

        capability = annotation
        if get_origin(annotation) is Annotated:
            base, *extras = get_args(annotation)
            marker = next((e for e in extras if isinstance(e, Inject)), None)
            capability = marker.capability if marker and marker.capability is not None else base
        capability, optional = unwrap_optional(capability)

        if capability is inspect.Parameter.empty:
            if has_default:
                continue
            msg = f"Factory {name}: parameter {param.name!r} needs a type annotation or a default"
            raise ConfigurationError(msg)

        params.append(
            FactoryParam(
                name=param.name,
                capability=capability,
                default=param.default if has_default else None,
                has_default=has_default or optional,
                keyword_only=param.kind is param.KEYWORD_ONLY,
            )
        )
    return tuple(params)


class Container:
    """Capability-keyed dependency container.

    Usage::

        container = Container()
        container.register(Clock, SystemClock, Lifetime.SINGLETON)
        container.register(Session, open_session, Lifetime.SCOPED)

        async with container.create_scope() as scope:
            session = await container.resolve(Session, scope)
    """

    __slots__ = ("_frozen", "_registrations", "_retired", "_singleton_order", "_singletons")

    def __init__(self) -> None:
        self._registrations: dict[Any, Registration] = {}
        self._singletons: dict[Any, _SingletonCell] = {}
        # Singletons in construction order, released in reverse by aclose()
        self._singleton_order: list[_SingletonCell] = []
        # Cells replaced by re-registration; still released by aclose()
        self._retired: list[_SingletonCell] = []
        self._frozen = False

    # -- Registration --

    def register(
        self,
        capability: Any,
        factory: Callable[..., Any] | None = None,
        lifetime: Lifetime = Lifetime.TRANSIENT,
    ) -> Registration:
        """Register *factory* for *capability*.

        *factory* defaults to *capability* itself (a concrete class).
        Registering a capability again replaces the previous registration:
        last write wins. This is how tests substitute doubles. The
        replaced registration is logged, and a singleton it already built
        is still released by ``aclose()``.
        """
        factory = factory if factory is not None else capability
        if not callable(factory):
            msg = f"Factory for {callable_name(capability)} is not callable: {factory!r}"
            raise ConfigurationError(msg)
        registration = Registration(
            capability=capability,
            lifetime=Lifetime(lifetime),
            factory=factory,
            params=inspect_factory(factory),
        )
        self._store(registration)
        return registration

    def register_instance(self, capability: Any, instance: Any, *, owned: bool = False) -> Registration:
        """Register a fixed instance as a singleton.

        The container only releases the instance on ``aclose()`` when
        *owned* is true.
        """
        registration = Registration(
            capability=capability,
            lifetime=Lifetime.SINGLETON,
            factory=None,
            instance=instance,
            owns_instance=owned,
        )
        self._store(registration)
        cell = self._singletons[capability]
        cell.instance = instance
        cell.ready = True
        if owned:
            cell.release = release_for_instance(instance)
            self._singleton_order.append(cell)
        return registration

    def _store(self, registration: Registration) -> None:
        if self._frozen:
            msg = (
                f"Cannot register {callable_name(registration.capability)}: "
                "the container is frozen once the app starts serving."
            )
            raise LateRegistrationError(msg)

        previous = self._registrations.get(registration.capability)
        if previous is not None:
            logger.info(
                "Replacing %s registration of %s with %s",
                previous.lifetime.value,
                callable_name(registration.capability),
                registration.lifetime.value,
            )
            old_cell = self._singletons.pop(registration.capability, None)
            if old_cell is not None and old_cell.ready and (old_cell.release is not None or old_cell.owned):
                self._retired.append(old_cell)

        self._registrations[registration.capability] = registration
        if registration.lifetime is Lifetime.SINGLETON:
            self._singletons[registration.capability] = _SingletonCell()

    def freeze(self) -> None:
        """Make the registration table read-only."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, capability: object) -> bool:
        return capability in self._registrations

    def registration(self, capability: Any) -> Registration | None:
        return self._registrations.get(capability)

    @property
    def registrations(self) -> list[Registration]:
        return list(self._registrations.values())

    # -- Scopes --

    def create_scope(self) -> ResolutionScope:
        """Create a per-request resolution scope."""
        from perch.di.scope import ResolutionScope

        return ResolutionScope(self)

    # -- Resolution --

    async def resolve(self, capability: Any, scope: ResolutionScope | None = None) -> Any:
        """Resolve *capability*, honoring its lifetime.

        Raises ``UnresolvedDependencyError`` when nothing is registered,
        ``CyclicDependencyError`` when a factory needs a capability already
        being resolved, and ``ScopeError`` for a scoped capability without
        a scope.
        """
        return await self._resolve(capability, scope, ())

    async def _resolve(
        self,
        capability: Any,
        scope: ResolutionScope | None,
        chain: tuple[Any, ...],
        owned: list[tuple[Release, Any]] | None = None,
    ) -> Any:
        if capability in chain:
            raise CyclicDependencyError(capability, chain)
        registration = self._registrations.get(capability)
        if registration is None:
            raise UnresolvedDependencyError(capability, chain)
        chain = (*chain, capability)

        if registration.lifetime is Lifetime.SINGLETON:
            return await self._resolve_singleton(registration, chain)

        if registration.lifetime is Lifetime.SCOPED:
            if scope is None:
                msg = f"Scoped {callable_name(capability)} requested outside a resolution scope"
                if len(chain) > 1:
                    msg += f" (resolution chain: {format_chain(chain)})"
                raise ScopeError(msg, capability, chain[:-1])
            return await scope.get_or_create(registration, lambda: self._construct(registration, scope, chain))

        instance, release = await self._construct(registration, scope, chain, owned)
        if release is not None:
            if scope is not None:
                scope.track(release, instance)
            elif owned is not None:
                owned.append((release, instance))
        return instance

    async def _resolve_singleton(self, registration: Registration, chain: tuple[Any, ...]) -> Any:
        cell = self._singletons[registration.capability]
        while True:
            if cell.ready:
                return cell.instance

            with cell.lock:
                if cell.ready:
                    return cell.instance
                pending = cell.pending
                owner = pending is None
                if owner:
                    pending = cell.pending = concurrent.futures.Future()
            assert pending is not None

            if owner:
                return await self._build_singleton(registration, cell, pending, chain)

            # Shielded: a cancelled waiter must not cancel the shared future
            result = await asyncio.shield(asyncio.wrap_future(pending))
            if result is not _ABANDONED:
                return result

    async def _build_singleton(
        self,
        registration: Registration,
        cell: _SingletonCell,
        pending: concurrent.futures.Future[Any],
        chain: tuple[Any, ...],
    ) -> Any:
        owned: list[tuple[Release, Any]] = []
        try:
            # Singletons never capture request-scoped state
            instance, release = await self._construct(registration, None, chain, owned)
        except BaseException as exc:
            with cell.lock:
                cell.pending = None
            for dependency_release, dependency in reversed(owned):
                await run_release(dependency_release, dependency)
            if isinstance(exc, asyncio.CancelledError):
                # Waiters retry; one of them constructs instead
                pending.set_result(_ABANDONED)
            else:
                pending.set_exception(exc)
            raise

        with cell.lock:
            cell.instance = instance
            cell.release = release
            cell.owned = owned
            cell.ready = True
            cell.pending = None
            self._singleton_order.append(cell)
        pending.set_result(instance)
        logger.debug("Constructed singleton %s", callable_name(registration.capability))
        return instance

    async def _construct(
        self,
        registration: Registration,
        scope: ResolutionScope | None,
        chain: tuple[Any, ...],
        owned: list[tuple[Release, Any]] | None = None,
    ) -> tuple[Any, Release | None]:
        """Run the factory, resolving its parameters first.

        Returns the instance and its release callable, if any. Transients
        built while *scope* is ``None`` are collected in *owned*.
        """
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        for param in registration.params:
            if param.has_default and param.capability not in self._registrations:
                value = param.default
            else:
                value = await self._resolve(param.capability, scope, chain, owned)
            if param.keyword_only:
                kwargs[param.name] = value
            else:
                args.append(value)

        assert registration.factory is not None
        result = registration.factory(*args, **kwargs)

        if inspect.isasyncgen(result):
            instance = await anext(result)
            return instance, release_for_generator(result)
        if inspect.isgenerator(result):
            instance = next(result)
            return instance, release_for_generator(result)
        if inspect.isawaitable(result):
            result = await result
        return result, release_for_instance(result)

    # -- Validation --

    def validate(self, required: Iterable[Any] = ()) -> None:
        """Check the registration graph before serving.

        Walks every registration plus the *required* capabilities (for
        example, those handlers inject) and raises on the first problem:
        ``UnresolvedDependencyError``, ``CyclicDependencyError``, or
        ``ScopeError`` when a singleton depends on a scoped capability.
        """
        checked: set[tuple[Any, bool]] = set()
        for capability in (*self._registrations, *required):
            self._check(capability, (), None, checked)

    def _check(
        self,
        capability: Any,
        chain: tuple[Any, ...],
        singleton_owner: Any,
        checked: set[tuple[Any, bool]],
    ) -> None:
        if capability in chain:
            raise CyclicDependencyError(capability, chain)
        registration = self._registrations.get(capability)
        if registration is None:
            raise UnresolvedDependencyError(capability, chain)

        if registration.lifetime is Lifetime.SCOPED and singleton_owner is not None:
            msg = (
                f"Singleton {callable_name(singleton_owner)} depends on scoped "
                f"{callable_name(capability)} (resolution chain: {format_chain((*chain, capability))})"
            )
            raise ScopeError(msg, capability, chain)
        if registration.lifetime is Lifetime.SINGLETON and singleton_owner is None:
            singleton_owner = capability

        key = (capability, singleton_owner is None)
        if key in checked:
            return
        for param in registration.params:
            if param.has_default and param.capability not in self._registrations:
                continue
            self._check(param.capability, (*chain, capability), singleton_owner, checked)
        checked.add(key)

    # -- Shutdown --

    async def aclose(self) -> None:
        """Release constructed singletons in reverse construction order."""
        cells = [*self._retired, *self._singleton_order]
        self._retired.clear()
        self._singleton_order.clear()
        for cell in reversed(cells):
            await cell.aclose()
