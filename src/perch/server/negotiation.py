"""Content negotiation: maps handler return values to a Response.

Checked in order via ``match`` statement:

1. ``Response``: pass through
2. ``None``: 204 No Content
3. ``str``: text/plain
4. ``bytes``: application/octet-stream
5. ``dict`` or ``list``: encoded with the codec
6. ``(value, status)`` or ``(value, status, headers)``: negotiate ``value``,
   then apply the status and headers
7. A dataclass instance: encoded with the codec
"""

import dataclasses
from typing import Any

from perch.codecs import Codec
from perch.http.response import Response


def negotiate(value: Any, codec: Codec) -> Response:
    """Convert a handler return value to a ``Response``."""
    match value:
        case Response():
            return value
        case None:
            return Response(status=204)
        case str():
            return Response(body=value)
        case bytes() | bytearray():
            return Response(body=bytes(value), content_type="application/octet-stream")
        case dict() | list():
            return _encoded(value, codec)
        case (inner, int() as status):
            return negotiate(inner, codec).with_status(status)
        case (inner, int() as status, dict() as headers):
            return negotiate(inner, codec).with_status(status).with_headers(headers)
        case _ if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return _encoded(value, codec)
        case _:
            msg = (
                f"Cannot convert {type(value).__name__} to a response. "
                "Return str, bytes, dict, list, a dataclass, None, Response, "
                "or a (value, status[, headers]) tuple."
            )
            raise TypeError(msg)


def _encoded(value: Any, codec: Codec) -> Response:
    return Response(body=codec.encode(value), content_type=codec.media_type)
