"""Read-only multi-value mappings for headers and query strings.

Both decode once at construction and keep every value in arrival order.
``__getitem__`` returns the first value; ``get_list`` returns all of them.
"""

from collections.abc import Iterable, Iterator, Mapping
from urllib.parse import parse_qsl


class _MultiMap(Mapping[str, str]):
    """Immutable ``key -> [values]`` mapping with first-value lookups."""

    __slots__ = ("_items", "_index")

    def __init__(self, items: Iterable[tuple[str, str]] = ()) -> None:
        pairs = tuple(items)
        index: dict[str, list[str]] = {}
        for key, value in pairs:
            index.setdefault(self._normalize(key), []).append(value)
        object.__setattr__(self, "_items", pairs)
        object.__setattr__(self, "_index", index)

    @staticmethod
    def _normalize(key: str) -> str:
        return key

    def __setattr__(self, name: str, value: object) -> None:
        msg = f"{type(self).__name__} is immutable"
        raise AttributeError(msg)

    def __getitem__(self, key: str) -> str:
        return self._index[self._normalize(key)][0]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._normalize(key) in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self._items)!r})"

    def get(self, key: str, default: str | None = None) -> str | None:  # type: ignore[override]
        values = self._index.get(self._normalize(key))
        return values[0] if values else default

    def get_list(self, key: str) -> list[str]:
        """Return every value for *key*, in arrival order."""
        return list(self._index.get(self._normalize(key), ()))

    def multi_items(self) -> list[tuple[str, str]]:
        """Return all ``(key, value)`` pairs, duplicates included."""
        return list(self._items)


class Headers(_MultiMap):
    """Case-insensitive request headers built from raw ASGI byte pairs."""

    __slots__ = ()

    @staticmethod
    def _normalize(key: str) -> str:
        return key.lower()

    @classmethod
    def from_raw(cls, raw: Iterable[tuple[bytes, bytes]]) -> "Headers":
        """Decode ASGI ``(name, value)`` byte pairs (latin-1, per RFC 9110)."""
        return cls((name.decode("latin-1"), value.decode("latin-1")) for name, value in raw)

    def raw(self) -> list[tuple[bytes, bytes]]:
        """Encode back to ASGI byte pairs with lower-cased names."""
        return [
            (name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in self._items
        ]


class QueryParams(_MultiMap):
    """Query string parameters, percent-decoded, blank values kept."""

    __slots__ = ("query_string",)

    def __init__(self, query_string: bytes | str = b"") -> None:
        if isinstance(query_string, bytes):
            query_string = query_string.decode("latin-1")
        super().__init__(parse_qsl(query_string, keep_blank_values=True))
        object.__setattr__(self, "query_string", query_string)
