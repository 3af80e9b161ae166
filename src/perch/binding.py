"""Binder — turns a request into handler arguments.

Binding runs in two phases, both in declaration order:

1. ``bind_values`` — path, query, body and request parameters. Nothing is
   constructed, so a malformed request fails before any dependency runs.
2. ``resolve_dependencies`` — dependency parameters, resolved from the
   container within the request's scope.

Binding is all-or-nothing: the first failure is raised and the handler is
never invoked.

Supported conversions: ``str``, ``int``, ``float``, ``bool``, ``UUID``,
``Decimal``, ``Enum`` subclasses, lists of those (query only), and
dataclasses populated from a mapping (body or query).
"""

from __future__ import annotations

import dataclasses
import decimal
import enum
import inspect
import uuid
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, get_origin, get_type_hints

from perch.codecs import Codec, DecodeError
from perch.errors import BindingError, HTTPError
from perch.handlers import (
    MISSING,
    HandlerDescriptor,
    HandlerParam,
    ParamSource,
    list_item_type,
    unwrap_optional,
)

if TYPE_CHECKING:
    from perch.di.container import Container
    from perch.di.scope import ResolutionScope
    from perch.http.request import Request

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})

# Sentinel for "dependency not bound yet" in the phase-one result
UNRESOLVED: Any = object()


def convert_value(raw: Any, target: Any, parameter: str) -> Any:
    """Convert *raw* to *target*, raising ``BindingError`` on failure."""
    if target is Any or target is inspect.Parameter.empty or target is object:
        return raw
    is_class = isinstance(target, type) and get_origin(target) is None
    if is_class and not isinstance(raw, str) and isinstance(raw, target):
        # Decoded payloads already carry JSON types; bool is not an int here
        if not (target in (int, float) and isinstance(raw, bool)):
            return raw

    if target is str:
        if isinstance(raw, str):
            return raw
        raise BindingError(parameter, "expected a string", raw)

    if target is bool:
        if isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
        raise BindingError(parameter, "expected a boolean", raw)

    if target is int:
        if isinstance(raw, bool):
            raise BindingError(parameter, "expected an integer", raw)
        if isinstance(raw, float) and raw.is_integer():
            return int(raw)
        try:
            return int(raw)
        except (ValueError, TypeError):
            raise BindingError(parameter, "expected an integer", raw) from None

    if target is float:
        if isinstance(raw, bool):
            raise BindingError(parameter, "expected a number", raw)
        try:
            return float(raw)
        except (ValueError, TypeError):
            raise BindingError(parameter, "expected a number", raw) from None

    if target is uuid.UUID:
        try:
            return uuid.UUID(str(raw))
        except ValueError:
            raise BindingError(parameter, "expected a UUID", raw) from None

    if target is decimal.Decimal:
        try:
            return decimal.Decimal(str(raw))
        except decimal.InvalidOperation:
            raise BindingError(parameter, "expected a decimal number", raw) from None

    if is_class and issubclass(target, enum.Enum):
        try:
            return target(raw)
        except ValueError:
            choices = ", ".join(str(m.value) for m in target)
            raise BindingError(parameter, f"expected one of: {choices}", raw) from None

    if is_class and dataclasses.is_dataclass(target):
        if not isinstance(raw, Mapping):
            raise BindingError(parameter, "expected an object", raw)
        return extract_dataclass(target, raw, parameter)

    item = list_item_type(target)
    if item is not None:
        if not isinstance(raw, list):
            raise BindingError(parameter, "expected a list", raw)
        return [convert_value(v, item, f"{parameter}[{i}]") for i, v in enumerate(raw)]

    if target is dict or getattr(target, "__origin__", None) is dict:
        if not isinstance(raw, dict):
            raise BindingError(parameter, "expected an object", raw)
        return raw

    if target is list:
        if not isinstance(raw, list):
            raise BindingError(parameter, "expected a list", raw)
        return raw

    try:
        return target(raw)
    except (ValueError, TypeError) as exc:
        raise BindingError(parameter, str(exc) or f"expected {target!r}", raw) from None


def extract_dataclass[T](cls: type[T], data: Mapping[str, Any], parameter: str) -> T:
    """Create a dataclass instance from a mapping (query params or payload).

    Each field is looked up by name and converted to its annotated type.
    A missing field falls back to its default; a missing field without a
    default, or a value that does not convert, raises ``BindingError``
    naming ``parameter.field``.
    """
    hints = get_type_hints(cls)
    kwargs: dict[str, Any] = {}

    for f in dataclasses.fields(cls):  # type: ignore[arg-type]
        if not f.init:
            continue
        label = f"{parameter}.{f.name}"
        if f.name not in data:
            if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
                raise BindingError(label, "field required")
            continue

        raw = data[f.name]
        target, optional = unwrap_optional(hints.get(f.name, Any))
        if raw is None and optional:
            kwargs[f.name] = None
            continue
        if list_item_type(target) is not None and hasattr(data, "get_list") and isinstance(raw, str):
            raw = data.get_list(f.name)
        kwargs[f.name] = convert_value(raw, target, label)

    return cls(**kwargs)


# -- Phase one: request values --


async def read_payload(request: Request, codec: Codec, parameter: str) -> Any:
    """Decode the request body once; later calls return the cached payload."""
    cache = request._cache
    if "_payload" in cache:
        return cache["_payload"]

    if not codec.accepts(request.content_type):
        raise HTTPError(
            status=415,
            detail=f"Unsupported Content-Type {request.content_type!r}; expected {codec.media_type}",
        )
    raw = await request.body()
    if not raw:
        cache["_payload"] = MISSING
        return MISSING
    try:
        payload = codec.decode(raw)
    except DecodeError as exc:
        raise BindingError(parameter, str(exc)) from exc
    cache["_payload"] = payload
    return payload


async def _bind_one(
    param: HandlerParam,
    request: Request,
    path_params: Mapping[str, str],
    codec: Codec,
) -> Any:
    match param.source:
        case ParamSource.REQUEST:
            return request

        case ParamSource.PATH:
            raw = path_params.get(param.key)
            if raw is None:
                raise BindingError(param.name, "missing path parameter")
            return convert_value(raw, param.annotation, param.name)

        case ParamSource.QUERY:
            if isinstance(param.annotation, type) and dataclasses.is_dataclass(param.annotation):
                return extract_dataclass(param.annotation, request.query, param.name)
            if param.key not in request.query:
                if param.required:
                    raise BindingError(param.name, "missing required query parameter")
                return [] if param.many and param.default is MISSING else param.default
            if param.many:
                return [convert_value(v, param.annotation, param.name) for v in request.query.get_list(param.key)]
            return convert_value(request.query[param.key], param.annotation, param.name)

        case ParamSource.BODY:
            payload = await read_payload(request, codec, param.name)
            if payload is MISSING:
                if param.required:
                    raise BindingError(param.name, "request body is required")
                return param.default
            return convert_value(payload, param.annotation, param.name)

        case _:
            return UNRESOLVED


async def bind_values(
    descriptor: HandlerDescriptor,
    request: Request,
    path_params: Mapping[str, str],
    codec: Codec,
) -> list[Any]:
    """Bind every non-dependency parameter.

    Dependency slots hold ``UNRESOLVED`` until ``resolve_dependencies``.
    """
    return [await _bind_one(p, request, path_params, codec) for p in descriptor.params]


# -- Phase two: dependencies --


async def resolve_dependencies(
    descriptor: HandlerDescriptor,
    values: list[Any],
    container: Container,
    scope: ResolutionScope,
) -> list[Any]:
    """Fill dependency slots from the container, in declaration order.

    An optional dependency (one with a default) that is not registered
    keeps its default.
    """
    for index, param in enumerate(descriptor.params):
        if param.source is not ParamSource.DEPENDENCY:
            continue
        if param.default is not MISSING and param.capability not in container:
            values[index] = param.default
        else:
            values[index] = await container.resolve(param.capability, scope)
    return values


async def bind(
    descriptor: HandlerDescriptor,
    request: Request,
    path_params: Mapping[str, str],
    *,
    codec: Codec,
    container: Container,
    scope: ResolutionScope,
) -> list[Any]:
    """Produce the full argument list for *descriptor* (both phases)."""
    values = await bind_values(descriptor, request, path_params, codec)
    return await resolve_dependencies(descriptor, values, container, scope)
