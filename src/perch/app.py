"""Perch application class.

Mutable during setup (routes, providers, middleware, error handlers).
Frozen at runtime when the ASGI lifespan starts or ``__call__()`` is first
invoked.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from perch._internal.asgi import Receive, Scope, Send
from perch._internal.invoke import invoke
from perch.config import AppConfig
from perch.di.container import Container, Lifetime, Registration
from perch.errors import LateRegistrationError
from perch.handlers import MISSING, ParamSource, describe_handler
from perch.middleware.pipeline import Pipeline
from perch.middleware.protocol import Middleware
from perch.routing.route import Route
from perch.routing.router import Router, parse_pattern
from perch.server.dispatcher import Dispatcher
from perch.server.handler import handle_request

logger = logging.getLogger("perch.server")

type Handler = Callable[..., Any]
type ErrorHandler = Callable[..., Any]


class App:
    """The perch application.

    Mutable during setup: routes, providers, middleware and error handlers
    are registered at import time. Frozen at runtime when the lifespan
    starts or the first request arrives; any registration after that
    raises ``LateRegistrationError``.

    Thread safety:
        The setup phase is single-threaded (decorators at import time).
        The freeze transition uses a Lock + double-check to ensure exactly
        one thread compiles the app, even when several ASGI workers call
        ``__call__()`` concurrently on the first request.
    """

    __slots__ = (
        "_container",
        "_dispatcher",
        "_error_handlers",
        "_freeze_lock",
        "_frozen",
        "_pipeline",
        "_router",
        "_shutdown_hooks",
        "_startup_hooks",
        "config",
    )

    def __init__(self, config: AppConfig | None = None, *, container: Container | None = None) -> None:
        self.config: AppConfig = config or AppConfig()
        self._router = Router()
        self._container = container or Container()
        self._pipeline = Pipeline()
        self._error_handlers: dict[int | type[BaseException], ErrorHandler] = {}
        self._startup_hooks: list[Callable[..., Any]] = []
        self._shutdown_hooks: list[Callable[..., Any]] = []
        self._frozen: bool = False
        self._freeze_lock: threading.Lock = threading.Lock()

        # Compiled state, set during _freeze()
        self._dispatcher: Dispatcher | None = None

    # -- Route registration --

    def route(
        self,
        path: str,
        *,
        methods: Iterable[str] | None = None,
        name: str | None = None,
    ) -> Callable[[Handler], Handler]:
        """Register a route handler via decorator.

        Args:
            path: URL path pattern. Use ``{param}`` or ``{param:int}`` for
                path parameters and ``{rest:path}`` or ``*`` for a trailing
                wildcard.
            methods: HTTP methods. Defaults to ``["GET"]``.
            name: Optional route name for ``url_for``.

        The handler signature is inspected here, once. Malformed patterns,
        unbindable handlers and duplicate routes raise immediately.
        """

        def decorator(func: Handler) -> Handler:
            self._check_not_frozen()
            param_names = [s.name for s in parse_pattern(path) if s.name is not None]
            route_name = name
            for method in dict.fromkeys(m.upper() for m in (methods or ["GET"])):
                descriptor = describe_handler(func, param_names, method)
                self._router.register(method, path, descriptor, name=route_name)
                # Only the first method's route carries the name
                route_name = None
            return func

        return decorator

    def get(self, path: str, *, name: str | None = None) -> Callable[[Handler], Handler]:
        return self.route(path, methods=["GET"], name=name)

    def post(self, path: str, *, name: str | None = None) -> Callable[[Handler], Handler]:
        return self.route(path, methods=["POST"], name=name)

    def put(self, path: str, *, name: str | None = None) -> Callable[[Handler], Handler]:
        return self.route(path, methods=["PUT"], name=name)

    def patch(self, path: str, *, name: str | None = None) -> Callable[[Handler], Handler]:
        return self.route(path, methods=["PATCH"], name=name)

    def delete(self, path: str, *, name: str | None = None) -> Callable[[Handler], Handler]:
        return self.route(path, methods=["DELETE"], name=name)

    @property
    def routes(self) -> list[Route]:
        return self._router.routes

    def url_for(self, name: str, /, **params: object) -> str:
        """Build the path of the route registered as *name*."""
        return self._router.url_for(name, **params)

    # -- Service injection --

    def provide(
        self,
        capability: Any,
        factory: Callable[..., Any] | None = None,
        *,
        lifetime: Lifetime = Lifetime.TRANSIENT,
    ) -> Registration:
        """Register a factory for dependency injection.

        Handler parameters annotated with *capability* receive the
        factory's product. *factory* defaults to *capability* itself::

            app.provide(Database, connect_database, lifetime=Lifetime.SINGLETON)
            app.provide(UnitOfWork, lifetime=Lifetime.SCOPED)

            @app.get("/products/{id}")
            async def product(id: int, db: Database) -> dict: ...

        Registering the same capability again replaces the previous
        registration, which is how tests substitute doubles.
        """
        self._check_not_frozen()
        return self._container.register(capability, factory, lifetime)

    def provide_instance(self, capability: Any, instance: Any, *, owned: bool = False) -> Registration:
        """Register an existing object as a singleton."""
        self._check_not_frozen()
        return self._container.register_instance(capability, instance, owned=owned)

    @property
    def container(self) -> Container:
        return self._container

    # -- Error handlers --

    def error(
        self,
        code_or_exception: int | type[BaseException],
    ) -> Callable[[ErrorHandler], ErrorHandler]:
        """Register an error handler via decorator.

        The handler may take no arguments, ``(request)`` or
        ``(request, exc)`` and returns anything a route handler may return.
        """

        def decorator(func: ErrorHandler) -> ErrorHandler:
            self._check_not_frozen()
            self._error_handlers[code_or_exception] = func
            return func

        return decorator

    # -- Middleware --

    def add_middleware(self, middleware: Middleware) -> None:
        """Add a middleware to the pipeline."""
        self._check_not_frozen()
        self._pipeline.use(middleware)

    def use(self, middleware: Middleware) -> Middleware:
        """Decorator form of ``add_middleware``."""
        self.add_middleware(middleware)
        return middleware

    # -- Lifecycle hooks --

    def on_startup(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Register an async or sync startup hook via decorator.

        Hooks run in registration order during ASGI lifespan startup,
        before the server begins accepting HTTP requests.
        """
        self._check_not_frozen()
        self._startup_hooks.append(func)
        return func

    def on_shutdown(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Register an async or sync shutdown hook via decorator.

        Hooks run in registration order during ASGI lifespan shutdown;
        the container releases its singletons after the last hook.
        """
        self._check_not_frozen()
        self._shutdown_hooks.append(func)
        return func

    async def startup(self) -> None:
        """Freeze the app and run startup hooks."""
        self._ensure_frozen()
        for hook in self._startup_hooks:
            await invoke(hook)

    async def shutdown(self) -> None:
        """Run shutdown hooks, then release container singletons."""
        try:
            for hook in self._shutdown_hooks:
                await invoke(hook)
        finally:
            await self._container.aclose()

    # -- ASGI --

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI 3.0 entry point.

        Handles the lifespan scope directly, then delegates HTTP scopes to
        the request handler.
        """
        if scope["type"] == "lifespan":
            await self._handle_lifespan(scope, receive, send)
            return

        self._ensure_frozen()

        assert self._dispatcher is not None

        await handle_request(
            scope,
            receive,
            send,
            dispatcher=self._dispatcher,
            max_body_size=self.config.max_content_length,
        )

    async def _handle_lifespan(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        """Run the ASGI lifespan protocol.

        Freezes the app at startup (before the first HTTP request), so
        composition errors fail startup instead of the first request.
        """
        while True:
            message = await receive()
            msg_type = message["type"]

            if msg_type == "lifespan.startup":
                try:
                    await self.startup()
                except Exception as exc:
                    logger.exception("Startup failed")
                    await send({"type": "lifespan.startup.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.startup.complete"})

            elif msg_type == "lifespan.shutdown":
                try:
                    await self.shutdown()
                except Exception as exc:
                    logger.exception("Shutdown failed")
                    await send({"type": "lifespan.shutdown.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.shutdown.complete"})
                return

    # -- Internal --

    def _ensure_frozen(self) -> None:
        """Thread-safe freeze with double-check locking."""
        if self._frozen:
            return
        with self._freeze_lock:
            if self._frozen:
                return
            self._freeze()

    def _freeze(self) -> None:
        """Compile the app into its frozen runtime state.

        MUST only be called while holding _freeze_lock.
        """
        # 1. Freeze route table, pipeline and container
        self._router.compile()
        self._pipeline.freeze()
        self._container.freeze()

        # 2. Fail fast on missing, cyclic or mis-scoped dependencies
        if self.config.validate_dependencies:
            required = [
                param.capability
                for route in self._router.routes
                for param in route.descriptor.params
                if param.source is ParamSource.DEPENDENCY and param.default is MISSING
            ]
            self._container.validate(required)

        # 3. Build the dispatcher over the frozen parts
        self._dispatcher = Dispatcher(
            router=self._router,
            container=self._container,
            pipeline=self._pipeline,
            codec=self.config.codec,
            error_handlers=dict(self._error_handlers),
            debug=self.config.debug,
        )

        self._frozen = True
        logger.debug(
            "App frozen: %d routes, %d middleware, %d registrations",
            len(self._router),
            len(self._pipeline),
            len(self._container.registrations),
        )

    def _check_not_frozen(self) -> None:
        if self._frozen:
            msg = (
                "Cannot modify the app after it has started serving requests. "
                "Register routes, providers and middleware before startup."
            )
            raise LateRegistrationError(msg)
