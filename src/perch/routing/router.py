"""Route table with trie-based, precedence-ordered matching.

Routes are registered during setup and frozen by ``compile()``. Matching
walks the trie segment by segment, trying literal children first, then
parameter edges (in the order they were first registered), then a
trailing wildcard, backtracking when a branch dead-ends. The first
terminal reached that serves the request method wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote

from perch.errors import (
    ConfigurationError,
    DuplicateRouteError,
    LateRegistrationError,
    MethodNotAllowedError,
    NoMatchError,
)
from perch.routing.params import CONVERTERS, WILDCARD_CONVERTERS, compile_converter
from perch.routing.route import PathSegment, Route, RouteMatch

if TYPE_CHECKING:
    from perch.handlers import HandlerDescriptor

logger = logging.getLogger("perch.routing")

_PARAM_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def parse_pattern(pattern: str) -> list[PathSegment]:
    """Parse a route pattern into segments.

    Examples::

        "/users"             -> [literal "users"]
        "/users/{id}"        -> [literal "users", param "id" (str)]
        "/users/{id:int}"    -> [literal "users", param "id" (int)]
        "/files/{rest:path}" -> [literal "files", wildcard "rest"]
        "/static/*"          -> [literal "static", wildcard "path"]

    Raises ``ConfigurationError`` for malformed patterns.
    """
    if not pattern.startswith("/"):
        msg = f"Route pattern {pattern!r} must start with '/'"
        raise ConfigurationError(msg)

    segments: list[PathSegment] = []
    seen: set[str] = set()
    parts = [p for p in pattern.strip("/").split("/") if p]

    for position, part in enumerate(parts):
        if part.startswith("<") and part.endswith(">"):
            msg = f"Route pattern {pattern!r} uses <param> syntax; write {{param}} instead"
            raise ConfigurationError(msg)

        if part.startswith("{") and part.endswith("}"):
            inner = part[1:-1]
            name, _, converter = inner.partition(":")
            converter = converter or "str"
            if converter in WILDCARD_CONVERTERS:
                segment = PathSegment(value=part, kind="wildcard", name=name)
            elif converter in CONVERTERS:
                segment = PathSegment(value=part, kind="param", name=name, converter=converter)
            else:
                msg = f"Unknown converter {converter!r} in route pattern {pattern!r}"
                raise ConfigurationError(msg)
        elif part.startswith("*"):
            segment = PathSegment(value=part, kind="wildcard", name=part[1:] or "path")
        elif "{" in part or "}" in part:
            msg = f"Route pattern {pattern!r}: a parameter must span the whole segment ({part!r})"
            raise ConfigurationError(msg)
        else:
            segment = PathSegment(value=part)

        if segment.kind != "literal":
            assert segment.name is not None
            if not _PARAM_NAME.match(segment.name):
                msg = f"Invalid parameter name {segment.name!r} in route pattern {pattern!r}"
                raise ConfigurationError(msg)
            if segment.name in seen:
                msg = f"Duplicate parameter {segment.name!r} in route pattern {pattern!r}"
                raise ConfigurationError(msg)
            seen.add(segment.name)
            if segment.kind == "wildcard" and position != len(parts) - 1:
                msg = f"Wildcard must be the last segment of route pattern {pattern!r}"
                raise ConfigurationError(msg)

        segments.append(segment)
    return segments


def split_path(path: str) -> list[str]:
    """Split a percent-encoded request path into decoded segments.

    One trailing slash is ignored. Empty interior segments are kept, and
    no parameter matches them.
    """
    parts = path.removeprefix("/").split("/")
    if parts[-1] == "":
        parts.pop()
    return [unquote(p) for p in parts]


class _TrieNode:
    """A node in the route trie. Mutable until the router compiles."""

    __slots__ = ("literals", "params", "routes", "wildcard")

    def __init__(self) -> None:
        # Literal segment children: "users" -> node
        self.literals: dict[str, _TrieNode] = {}
        # Parameter edges, in first-registration order; one per converter
        self.params: list[_ParamEdge] = []
        # Routes consuming the remaining path, keyed by method
        self.wildcard: dict[str, Route] = {}
        # Routes terminating here, keyed by method
        self.routes: dict[str, Route] = {}


@dataclass(slots=True)
class _ParamEdge:
    converter: str
    regex: re.Pattern[str]
    node: _TrieNode


class Router:
    """Route table.

    Usage::

        router = Router()
        router.register("GET", "/users/{id:int}", describe_handler(get_user, ...))
        router.compile()
        match = router.match("GET", "/users/42")
        match.path_params  # {"id": "42"}
    """

    __slots__ = ("_by_name", "_compiled", "_root", "_routes")

    def __init__(self) -> None:
        self._root = _TrieNode()
        self._routes: list[Route] = []
        self._by_name: dict[str, Route] = {}
        self._compiled = False

    # -- Registration --

    def register(
        self,
        method: str,
        pattern: str,
        descriptor: HandlerDescriptor,
        *,
        name: str | None = None,
    ) -> Route:
        """Register *descriptor* under (*method*, *pattern*).

        Raises ``DuplicateRouteError`` if the same method and pattern shape
        are already registered; the table is left unchanged.
        """
        route = Route(
            method=method.upper(),
            pattern=pattern,
            segments=tuple(parse_pattern(pattern)),
            descriptor=descriptor,
            name=name,
        )
        self.add(route)
        return route

    def add(self, route: Route) -> None:
        """Insert a pre-built route. Must be called before ``compile()``."""
        if self._compiled:
            msg = f"Cannot register {route.method} {route.pattern!r}: the route table is frozen."
            raise LateRegistrationError(msg)
        if route.name is not None and route.name in self._by_name:
            existing = self._by_name[route.name]
            msg = f"Route name {route.name!r} already used by {existing.method} {existing.pattern!r}"
            raise ConfigurationError(msg)

        # Walk without creating nodes first, so a duplicate leaves the trie untouched
        existing = self._find_terminal(route)
        if existing is not None:
            raise DuplicateRouteError(route.method, route.pattern, existing.pattern)

        node = self._root
        for segment in route.segments:
            if segment.kind == "literal":
                node = node.literals.setdefault(segment.value, _TrieNode())
            elif segment.kind == "param":
                node = self._param_edge(node, segment.converter).node
            else:
                node.wildcard[route.method] = route
                break
        else:
            node.routes[route.method] = route

        self._routes.append(route)
        if route.name is not None:
            self._by_name[route.name] = route
        logger.debug("Registered %s %s -> %s", route.method, route.pattern, route.descriptor.name)

    def _find_terminal(self, route: Route) -> Route | None:
        node: _TrieNode | None = self._root
        for segment in route.segments:
            assert node is not None
            if segment.kind == "literal":
                node = node.literals.get(segment.value)
            elif segment.kind == "param":
                edge = next((e for e in node.params if e.converter == segment.converter), None)
                node = edge.node if edge is not None else None
            else:
                return node.wildcard.get(route.method)
            if node is None:
                return None
        assert node is not None
        return node.routes.get(route.method)

    @staticmethod
    def _param_edge(node: _TrieNode, converter: str) -> _ParamEdge:
        for edge in node.params:
            if edge.converter == converter:
                return edge
        edge = _ParamEdge(converter=converter, regex=compile_converter(converter), node=_TrieNode())
        node.params.append(edge)
        return edge

    def compile(self) -> None:
        """Freeze the table. Later registrations raise ``LateRegistrationError``."""
        self._compiled = True

    @property
    def compiled(self) -> bool:
        return self._compiled

    @property
    def routes(self) -> list[Route]:
        """All registered routes, in registration order."""
        return list(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    # -- Matching --

    def match(self, method: str, path: str) -> RouteMatch:
        """Match a request against the table.

        *path* is the percent-encoded request path; each segment is decoded
        after splitting, so an encoded ``/`` stays inside its segment.

        Returns a ``RouteMatch`` on success.
        Raises ``NoMatchError`` if no route matches the path.
        Raises ``MethodNotAllowedError`` if only other methods match.
        """
        method = method.upper()
        parts = split_path(path)
        allowed: set[str] = set()

        for by_method, values in self._candidates(self._root, parts, 0, ()):
            route = by_method.get(method)
            if route is None and method == "HEAD":
                route = by_method.get("GET")
            if route is not None:
                return RouteMatch(route=route, path_params=dict(zip(route.param_names, values)))
            allowed.update(by_method)

        if allowed:
            if "GET" in allowed:
                allowed.add("HEAD")
            raise MethodNotAllowedError(frozenset(allowed))
        raise NoMatchError(f"No route matches {method} {path!r}")

    def _candidates(
        self,
        node: _TrieNode,
        parts: list[str],
        index: int,
        values: tuple[str, ...],
    ) -> Iterator[tuple[dict[str, Route], tuple[str, ...]]]:
        """Yield terminal route sets reachable for *parts*, best first."""
        if index == len(parts):
            if node.routes:
                yield node.routes, values
            return

        part = parts[index]

        # 1. Literal child
        child = node.literals.get(part)
        if child is not None:
            yield from self._candidates(child, parts, index + 1, values)

        # 2. Parameter edges
        for edge in node.params:
            if edge.regex.fullmatch(part):
                yield from self._candidates(edge.node, parts, index + 1, (*values, part))

        # 3. Wildcard consumes the rest (at least one non-empty segment)
        rest = "/".join(parts[index:])
        if node.wildcard and rest:
            yield node.wildcard, (*values, rest)

    # -- Reverse routing --

    def url_for(self, name: str, /, **params: object) -> str:
        """Build the path for the route registered as *name*.

        Raises ``KeyError`` for an unknown route name or a missing parameter.
        """
        route = self._by_name[name]
        parts: list[str] = []
        for segment in route.segments:
            if segment.kind == "literal":
                parts.append(quote(segment.value))
            elif segment.kind == "param":
                parts.append(quote(str(params[segment.name or ""]), safe=""))
            else:
                parts.append(quote(str(params[segment.name or ""]), safe="/"))
        return "/" + "/".join(parts)
