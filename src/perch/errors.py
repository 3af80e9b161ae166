"""Perch exception hierarchy.

Shared across Router, Container, Binder, Pipeline and Dispatcher so every
module raises and catches the same types.

Registration-time errors (``ConfigurationError`` and subclasses) abort
startup. Per-request errors are caught at the dispatcher boundary and
mapped to a response.
"""

from dataclasses import dataclass
from typing import Any


class PerchError(Exception):
    """Base for all perch-specific errors."""


class ConfigurationError(PerchError):
    """Raised when app composition is invalid.

    Typically raised during registration or ``App._freeze()`` at startup.
    """


class DuplicateRouteError(ConfigurationError):
    """A route with the same method and pattern shape is already registered."""

    def __init__(self, method: str, pattern: str, existing: str) -> None:
        self.method = method
        self.pattern = pattern
        self.existing = existing
        super().__init__(
            f"Route {method} {pattern!r} conflicts with already registered {method} {existing!r}"
        )


class LateRegistrationError(ConfigurationError):
    """Registration attempted after the app started serving."""


@dataclass(frozen=True, slots=True)
class HTTPError(PerchError):
    """An error that maps directly to an HTTP status code.

    Raised by the router, binder, middleware, or handlers. The dispatcher
    catches these and dispatches to the matching ``@app.error()`` handler.
    """

    status: int
    detail: str = ""
    headers: tuple[tuple[str, str], ...] = ()

    def __str__(self) -> str:
        if self.detail:
            return f"{self.status}: {self.detail}"
        return str(self.status)

    def to_payload(self) -> dict[str, Any]:
        """Body fields for the default error response."""
        return {"status": self.status, "detail": self.detail}


class NoMatchError(HTTPError):
    """404 — no route matched the request path."""

    def __init__(self, detail: str = "Not Found") -> None:
        super().__init__(status=404, detail=detail)


class MethodNotAllowedError(HTTPError):
    """405 — the path matches, but not for this HTTP method.

    Carries an ``Allow`` header listing the valid methods.
    """

    def __init__(self, allowed: frozenset[str], detail: str = "") -> None:
        allow_value = ", ".join(sorted(allowed))
        super().__init__(
            status=405,
            detail=detail or f"Method not allowed. Allowed methods: {allow_value}",
            headers=(("Allow", allow_value),),
        )
        object.__setattr__(self, "allowed", allowed)


class BindingError(HTTPError):
    """400 — a handler parameter could not be bound from the request."""

    def __init__(self, parameter: str, reason: str, raw: object = None) -> None:
        detail = f"Invalid value for parameter {parameter!r}: {reason}"
        super().__init__(status=400, detail=detail)
        object.__setattr__(self, "parameter", parameter)
        object.__setattr__(self, "reason", reason)
        object.__setattr__(self, "raw", raw)

    def to_payload(self) -> dict[str, Any]:
        payload = HTTPError.to_payload(self)
        payload["parameter"] = self.parameter
        payload["reason"] = self.reason
        return payload


def _describe(capability: object) -> str:
    return getattr(capability, "__qualname__", None) or repr(capability)


def format_chain(chain: tuple[object, ...]) -> str:
    """Render a resolution chain as ``A -> B -> C``."""
    return " -> ".join(_describe(c) for c in chain)


class DependencyError(PerchError):
    """Base for container resolution failures.

    These indicate a composition bug: fatal at startup when detectable,
    otherwise mapped to a 500 response per request.
    """

    def __init__(self, message: str, capability: object, chain: tuple[object, ...] = ()) -> None:
        self.capability = capability
        self.chain = chain
        super().__init__(message)


class UnresolvedDependencyError(DependencyError):
    """No registration exists for the requested capability."""

    def __init__(self, capability: object, chain: tuple[object, ...] = ()) -> None:
        message = f"No registration for {_describe(capability)}"
        if chain:
            message += f" (resolution chain: {format_chain((*chain, capability))})"
        super().__init__(message, capability, chain)


class CyclicDependencyError(DependencyError):
    """A factory requires a capability already in the resolution chain."""

    def __init__(self, capability: object, chain: tuple[object, ...]) -> None:
        cycle = (*chain, capability)
        super().__init__(f"Dependency cycle: {format_chain(cycle)}", capability, chain)
        self.cycle = cycle


class ScopeError(DependencyError):
    """A lifetime rule was violated.

    Raised when a scoped capability is resolved without a resolution scope,
    or when a singleton depends on a scoped capability.
    """


class HandlerError(PerchError):
    """Application code raised an exception while handling a request."""

    def __init__(self, handler: object, original: BaseException) -> None:
        self.handler = handler
        self.original = original
        name = getattr(handler, "__qualname__", repr(handler))
        super().__init__(f"Handler {name} raised {type(original).__name__}: {original}")


class PipelineStageError(PerchError):
    """A middleware stage itself failed.

    Treated like ``HandlerError`` (500) unless the stage supplies a
    ``status``.
    """

    def __init__(
        self,
        stage: object,
        original: BaseException | None = None,
        *,
        status: int = 500,
        detail: str = "",
    ) -> None:
        self.stage = stage
        self.original = original
        self.status = status
        self.detail = detail
        name = getattr(stage, "__qualname__", None) or type(stage).__qualname__
        message = detail or (f"{type(original).__name__}: {original}" if original else "failed")
        super().__init__(f"Middleware {name} {message}")


class ClientDisconnected(PerchError):  # noqa: N818
    """The client closed the connection before the response was sent."""
