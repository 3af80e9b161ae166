"""Handler descriptors — what a handler needs, decided once at registration.

``describe_handler`` inspects a handler's signature and classifies every
parameter by where its value comes from: the matched path, the query
string, the request body, the dependency container, or the request
itself. The resulting ``HandlerDescriptor`` is immutable; the binder reads
it on every request without inspecting the signature again.

Inference rules, first match wins:

1. An explicit marker in ``Annotated[...]``: ``Path()``, ``Query()``,
   ``Body()`` or ``Inject()``.
2. The parameter name appears in the route pattern -> path.
3. Annotated as ``Request`` (or named ``request``) -> the request.
4. A dataclass -> body for POST/PUT/PATCH/DELETE, query otherwise.
   On those methods a ``dict``, ``list`` or list of dataclasses is body too.
5. A scalar (``str``, ``int``, ``float``, ``bool``, ``UUID``, ``Decimal``,
   an ``Enum``, optionals and lists of those) or no annotation -> query.
6. Any other type -> a dependency resolved from the container.
"""

from __future__ import annotations

import dataclasses
import decimal
import enum
import inspect
import types
import typing
import uuid
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import Annotated, Any, get_args, get_origin, get_type_hints

from perch._internal.invoke import callable_name, invoke
from perch.errors import ConfigurationError
from perch.http.request import Request

BODY_METHODS: frozenset[str] = frozenset({"POST", "PUT", "PATCH", "DELETE"})

SCALAR_TYPES: tuple[type, ...] = (str, int, float, bool, uuid.UUID, decimal.Decimal)


class ParamSource(enum.Enum):
    PATH = "path"
    QUERY = "query"
    BODY = "body"
    DEPENDENCY = "dependency"
    REQUEST = "request"


# -- Explicit markers --


@dataclass(frozen=True, slots=True)
class Path:
    """Bind from a path parameter, optionally under a different name."""

    alias: str | None = None


@dataclass(frozen=True, slots=True)
class Query:
    """Bind from the query string.

    ``required=None`` infers from the signature: required when the
    parameter has no default and is not optional.
    """

    alias: str | None = None
    required: bool | None = None


@dataclass(frozen=True, slots=True)
class Body:
    """Bind from the decoded request payload."""


@dataclass(frozen=True, slots=True)
class Inject:
    """Resolve from the container, optionally under another capability."""

    capability: Any = None


_MARKERS = (Path, Query, Body, Inject)

# Builtin containers are never services
_CONTAINER_TYPES: tuple[type, ...] = (dict, list, tuple, set, frozenset)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass(frozen=True, slots=True)
class HandlerParam:
    """One handler parameter and how to bind it."""

    name: str
    source: ParamSource
    annotation: Any = Any
    required: bool = True
    default: Any = MISSING
    alias: str | None = None
    capability: Any = None
    keyword_only: bool = False
    many: bool = False

    @property
    def key(self) -> str:
        """Lookup key in the path parameters or query string."""
        return self.alias or self.name


@dataclass(frozen=True, slots=True)
class HandlerDescriptor:
    """A handler plus its ordered parameter specs.

    ``invoke`` is the invocation thunk: it receives bound values in
    declaration order and calls the handler, awaiting it if needed.
    """

    handler: Callable[..., Any]
    params: tuple[HandlerParam, ...]
    name: str

    @property
    def body_param(self) -> HandlerParam | None:
        return next((p for p in self.params if p.source is ParamSource.BODY), None)

    @property
    def dependencies(self) -> tuple[Any, ...]:
        """Capabilities this handler resolves from the container."""
        return tuple(p.capability for p in self.params if p.source is ParamSource.DEPENDENCY)

    async def invoke(self, values: list[Any]) -> Any:
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        for param, value in zip(self.params, values, strict=True):
            if param.keyword_only:
                kwargs[param.name] = value
            else:
                args.append(value)
        return await invoke(self.handler, *args, **kwargs)


# -- Type helpers --


def unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Return ``(inner, is_optional)`` for ``X | None`` / ``Optional[X]``."""
    origin = get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1 and len(get_args(annotation)) == 2:
            return args[0], True
    return annotation, False


def is_scalar(annotation: Any) -> bool:
    if annotation is Any or annotation is inspect.Parameter.empty:
        return True
    return isinstance(annotation, type) and get_origin(annotation) is None and (
        issubclass(annotation, SCALAR_TYPES) or issubclass(annotation, enum.Enum)
    )


def list_item_type(annotation: Any) -> Any | None:
    """Return ``X`` for ``list[X]`` / ``tuple[X, ...]``, else ``None``."""
    origin = get_origin(annotation)
    args = get_args(annotation)
    if origin is list and len(args) == 1:
        return args[0]
    if origin is tuple and len(args) == 2 and args[1] is Ellipsis:
        return args[0]
    return None


def _is_payload(annotation: Any) -> bool:
    if annotation is dict or annotation is list or get_origin(annotation) is dict:
        return True
    item = list_item_type(annotation)
    return isinstance(item, type) and dataclasses.is_dataclass(item)


def _split_annotated(annotation: Any) -> tuple[Any, Any]:
    """Return ``(base_annotation, marker_or_None)``."""
    if get_origin(annotation) is Annotated:
        base, *extras = get_args(annotation)
        marker = next((e for e in extras if isinstance(e, _MARKERS)), None)
        return base, marker
    return annotation, None


def _resolve_hints(handler: Callable[..., Any]) -> dict[str, Any]:
    target = handler
    if not inspect.isfunction(handler) and not inspect.ismethod(handler):
        target = getattr(type(handler), "__call__", handler)
    try:
        return get_type_hints(target, include_extras=True)
    except (NameError, TypeError) as exc:
        msg = f"Cannot resolve type hints of handler {callable_name(handler)}: {exc}"
        raise ConfigurationError(msg) from exc


def describe_handler(
    handler: Callable[..., Any],
    path_params: Collection[str] = (),
    method: str = "GET",
) -> HandlerDescriptor:
    """Build the descriptor for *handler* on a route.

    *path_params* are the parameter names in the route pattern; *method*
    decides whether dataclass parameters read the body or the query.

    Raises ``ConfigurationError`` for handlers that cannot be bound: a
    second body parameter, a ``Path()`` marker without a matching pattern
    segment, or ``*args`` / ``**kwargs``.
    """
    name = callable_name(handler)
    hints = _resolve_hints(handler)
    params: list[HandlerParam] = []

    for param in inspect.signature(handler).parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            msg = f"Handler {name} cannot take *{param.name}; declare each parameter explicitly"
            raise ConfigurationError(msg)

        annotation, marker = _split_annotated(hints.get(param.name, param.annotation))
        described = _classify(param, annotation, marker, path_params, method.upper(), name)

        first = next((p for p in params if p.source is ParamSource.BODY), None)
        if described.source is ParamSource.BODY and first is not None:
            msg = (
                f"Handler {name} binds both {first.name!r} and {param.name!r} from the body; "
                "the request payload can be consumed at most once"
            )
            raise ConfigurationError(msg)
        params.append(described)

    return HandlerDescriptor(handler=handler, params=tuple(params), name=name)


def _classify(
    param: inspect.Parameter,
    annotation: Any,
    marker: Any,
    path_params: Collection[str],
    method: str,
    handler_name: str,
) -> HandlerParam:
    has_default = param.default is not inspect.Parameter.empty
    default = param.default if has_default else MISSING
    inner, optional = unwrap_optional(annotation)
    if optional and not has_default:
        default = None
    common = {
        "name": param.name,
        "default": default,
        "keyword_only": param.kind is param.KEYWORD_ONLY,
    }
    required = not has_default and not optional

    if isinstance(marker, Path) or (marker is None and param.name in path_params):
        alias = marker.alias if isinstance(marker, Path) else None
        if (alias or param.name) not in path_params:
            msg = f"Handler {handler_name}: path parameter {alias or param.name!r} is not in the route pattern"
            raise ConfigurationError(msg)
        return HandlerParam(source=ParamSource.PATH, annotation=inner, alias=alias, **common)

    if isinstance(marker, Query):
        if marker.required is not None:
            required = marker.required
        return _query_param(inner, required, marker.alias, common)

    if isinstance(marker, Body):
        return HandlerParam(source=ParamSource.BODY, annotation=inner, required=required, **common)

    if isinstance(marker, Inject):
        capability = marker.capability if marker.capability is not None else inner
        return HandlerParam(
            source=ParamSource.DEPENDENCY, annotation=inner, capability=capability, **common
        )

    if inner is Request or (param.name == "request" and annotation is inspect.Parameter.empty):
        return HandlerParam(source=ParamSource.REQUEST, annotation=Request, **common)

    if isinstance(inner, type) and dataclasses.is_dataclass(inner):
        if method in BODY_METHODS:
            return HandlerParam(source=ParamSource.BODY, annotation=inner, required=required, **common)
        return HandlerParam(source=ParamSource.QUERY, annotation=inner, required=False, **common)

    if method in BODY_METHODS and _is_payload(inner):
        return HandlerParam(source=ParamSource.BODY, annotation=inner, required=required, **common)

    if is_scalar(inner) or list_item_type(inner) is not None:
        return _query_param(inner, required, None, common)

    if (
        get_origin(inner) is not None
        or not isinstance(inner, type)
        or inner in _CONTAINER_TYPES
    ):
        msg = (
            f"Handler {handler_name}: cannot infer a source for parameter {param.name!r} "
            f"annotated {inner!r}; use Annotated[..., Query()/Body()/Inject()]"
        )
        raise ConfigurationError(msg)

    return HandlerParam(source=ParamSource.DEPENDENCY, annotation=inner, capability=inner, **common)


def _query_param(
    annotation: Any,
    required: bool,
    alias: str | None,
    common: dict[str, Any],
) -> HandlerParam:
    item = list_item_type(annotation)
    if item is not None:
        return HandlerParam(
            source=ParamSource.QUERY,
            annotation=item,
            required=required,
            alias=alias,
            many=True,
            **common,
        )
    return HandlerParam(
        source=ParamSource.QUERY, annotation=annotation, required=required, alias=alias, **common
    )
