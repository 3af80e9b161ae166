"""Body codecs.

The binder and the response negotiator never parse or serialize payloads
themselves; they go through a codec. JSON is the default. Any object with
the ``Codec`` shape can be passed as ``AppConfig(codec=...)``.
"""

import dataclasses
import datetime
import decimal
import enum
import json
import uuid
from typing import Any, Protocol, runtime_checkable


class DecodeError(ValueError):
    """The request payload could not be decoded."""


@runtime_checkable
class Codec(Protocol):
    """Protocol for request/response body codecs."""

    media_type: str

    def accepts(self, content_type: str | None) -> bool: ...
    def decode(self, data: bytes) -> Any: ...
    def encode(self, value: Any) -> bytes: ...


def _to_primitive(value: Any) -> Any:
    """``json.dumps`` fallback for common non-JSON types."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, decimal.Decimal)):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    msg = f"Object of type {type(value).__name__} is not JSON serializable"
    raise TypeError(msg)


class JSONCodec:
    """JSON codec (UTF-8).

    Accepts ``application/json`` and any ``+json`` media type. A request
    without a Content-Type header is assumed to be JSON.
    """

    __slots__ = ("_ensure_ascii", "_indent")

    media_type = "application/json"

    def __init__(self, *, indent: int | None = None, ensure_ascii: bool = False) -> None:
        self._indent = indent
        self._ensure_ascii = ensure_ascii

    def accepts(self, content_type: str | None) -> bool:
        if not content_type:
            return True
        mime = content_type.split(";", 1)[0].strip().lower()
        return mime == "application/json" or mime.endswith("+json")

    def decode(self, data: bytes) -> Any:
        try:
            return json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeError(f"malformed JSON: {exc}") from exc

    def encode(self, value: Any) -> bytes:
        separators = None if self._indent is not None else (",", ":")
        return json.dumps(
            value,
            default=_to_primitive,
            indent=self._indent,
            separators=separators,
            ensure_ascii=self._ensure_ascii,
        ).encode("utf-8")
