"""Invoke helpers — call sync or async callables uniformly.

Handlers, factories, error handlers and lifecycle hooks can be ``def`` or
``async def``. The sync/async check lives here and nowhere else.

Usage::

    from perch._internal.invoke import invoke

    result = await invoke(handler, *args, **kwargs)
"""

import inspect
from typing import Any


async def invoke(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Call *func* and await the result if it is awaitable."""
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def callable_name(obj: object) -> str:
    """Best-effort readable name for logs and error messages."""
    name = getattr(obj, "__qualname__", None)
    if name is None:
        name = type(obj).__qualname__
    module = getattr(obj, "__module__", None)
    return f"{module}.{name}" if module and module != "builtins" else name
