"""Routing — route table with deterministic, precedence-ordered matching.

Routes are registered during setup and frozen when the app starts
serving. Literal segments outrank parameters, parameters outrank
wildcards, left to right.
"""

from perch.routing.route import PathSegment, Route, RouteMatch
from perch.routing.router import Router, parse_pattern

__all__ = ["PathSegment", "Route", "RouteMatch", "Router", "parse_pattern"]
