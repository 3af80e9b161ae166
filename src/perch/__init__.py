"""Perch: a small ASGI framework with typed handlers and dependency injection.

Handlers declare what they need in their signature; perch binds path,
query and body values and resolves services from a container with
transient, scoped and singleton lifetimes.

Basic usage::

    from perch import App, Lifetime

    app = App()
    app.provide(Catalog, lifetime=Lifetime.SINGLETON)

    @app.get("/products/{id:int}")
    async def product(id: int, catalog: Catalog) -> dict:
        return catalog.get(id)
"""

__version__ = "0.1.0"
__all__ = [
    "App",
    "AppConfig",
    "Body",
    "ConfigurationError",
    "Container",
    "HTTPError",
    "Inject",
    "Lifetime",
    "Middleware",
    "Next",
    "Path",
    "PerchError",
    "Query",
    "Request",
    "Response",
]


def __getattr__(name: str) -> object:
    """Lazy imports for public API.

    Keeps ``import perch`` fast while providing a clean top-level API.
    """
    if name == "App":
        from perch.app import App

        return App

    if name == "AppConfig":
        from perch.config import AppConfig

        return AppConfig

    if name == "Request":
        from perch.http.request import Request

        return Request

    if name == "Response":
        from perch.http.response import Response

        return Response

    if name in ("Container", "Lifetime"):
        from perch import di as _di

        return getattr(_di, name)

    if name in ("Body", "Inject", "Path", "Query"):
        from perch import handlers as _handlers

        return getattr(_handlers, name)

    if name in ("Middleware", "Next"):
        from perch.middleware import protocol as _mw

        return getattr(_mw, name)

    if name in ("ConfigurationError", "HTTPError", "PerchError"):
        from perch import errors as _errors

        return getattr(_errors, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
