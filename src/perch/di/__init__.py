"""Dependency injection — capability-keyed container with lifetimes.

Exports:
- ``Container``: registrations and resolution.
- ``Lifetime``: ``TRANSIENT``, ``SCOPED``, ``SINGLETON``.
- ``ResolutionScope``: per-request holder of scoped instances.
"""

from perch.di.container import Container, Lifetime, Registration
from perch.di.scope import ResolutionScope

__all__ = ["Container", "Lifetime", "Registration", "ResolutionScope"]
