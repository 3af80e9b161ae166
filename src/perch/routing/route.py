"""Route, PathSegment and RouteMatch frozen dataclasses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from perch.handlers import HandlerDescriptor

type SegmentKind = Literal["literal", "param", "wildcard"]


@dataclass(frozen=True, slots=True)
class PathSegment:
    """A parsed segment of a route pattern.

    Literal:   ``/users``        (kind="literal")
    Param:     ``/{id}``         (kind="param", name="id", converter="str")
    Typed:     ``/{id:int}``     (kind="param", name="id", converter="int")
    Wildcard:  ``/{rest:path}`` or ``/*rest`` (kind="wildcard", name="rest")
    """

    value: str
    kind: SegmentKind = "literal"
    name: str | None = None
    converter: str = "str"

    @property
    def shape(self) -> tuple[str, str]:
        """Identity of the segment for duplicate detection.

        Parameter names do not take part; converters do.
        """
        if self.kind == "literal":
            return ("literal", self.value)
        if self.kind == "param":
            return ("param", self.converter)
        return ("wildcard", "")


@dataclass(frozen=True, slots=True)
class Route:
    """A registered route.

    Immutable once registered; shared read-only across requests.
    """

    method: str
    pattern: str
    segments: tuple[PathSegment, ...]
    descriptor: HandlerDescriptor
    name: str | None = None

    @property
    def param_names(self) -> tuple[str, ...]:
        """Names of parameter and wildcard segments, left to right."""
        return tuple(s.name for s in self.segments if s.kind != "literal" and s.name)

    @property
    def shape(self) -> tuple[tuple[str, str], ...]:
        return tuple(s.shape for s in self.segments)

    @property
    def handler(self) -> object:
        return self.descriptor.handler


@dataclass(frozen=True, slots=True)
class RouteMatch:
    """Result of a successful route match."""

    route: Route
    path_params: dict[str, str]
