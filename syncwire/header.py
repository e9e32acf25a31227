"""Header Store - ordered, case-insensitive, duplicate-preserving headers.

Used the same way for request and response headers. Values are never
normalized; names keep the case they were given but compare case-insensitively.
"""

from __future__ import annotations

from typing import Iterable, Iterator, NamedTuple

from syncwire.errors import ProtocolError


class Header(NamedTuple):
    """One header field as it appears on the wire."""

    name: str
    value: str

    def is_name(self, name: str) -> bool:
        return self.name.lower() == name.lower()

    def __str__(self) -> str:
        return f"{self.name}: {self.value}"


class Headers:
    """Ordered multi-map of header name to value.

    Usage:
        headers = Headers()
        headers.add("X-Forwarded-For", "1.2.3.4")
        headers.add("x-forwarded-for", "2.3.4.5")
        headers.get("X-FORWARDED-FOR")      # "1.2.3.4"
        headers.get_all("x-forwarded-for")  # ["1.2.3.4", "2.3.4.5"]
    """

    def __init__(self, items: Iterable[Header | tuple[str, str]] = ()) -> None:
        self._items: list[Header] = [Header(name, value) for name, value in items]

    @classmethod
    def parse_line(cls, line: str) -> Header:
        """Parse one ``name: value`` wire line, trimming surrounding whitespace."""
        name, sep, value = line.partition(":")
        name = name.strip()
        if not sep or not name:
            raise ProtocolError(f"Malformed header line: {line!r}")
        return Header(name, value.strip())

    def add(self, name: str, value: str) -> None:
        """Append a header, keeping any existing entries with the same name."""
        self._items.append(Header(name, value))

    def set(self, name: str, value: str) -> None:
        """Replace every entry named ``name`` with a single new one."""
        self.remove(name)
        self._items.append(Header(name, value))

    def remove(self, name: str) -> None:
        self._items = [h for h in self._items if not h.is_name(name)]

    def get(self, name: str) -> str | None:
        for header in self._items:
            if header.is_name(name):
                return header.value
        return None

    def get_all(self, name: str) -> list[str]:
        return [h.value for h in self._items if h.is_name(name)]

    def has(self, name: str) -> bool:
        return any(h.is_name(name) for h in self._items)

    def names(self) -> list[str]:
        """Lower-cased header names in insertion order, each listed once."""
        seen: list[str] = []
        for header in self._items:
            lowered = header.name.lower()
            if lowered not in seen:
                seen.append(lowered)
        return seen

    def copy(self) -> Headers:
        return Headers(self._items)

    def to_tuple(self) -> tuple[Header, ...]:
        return tuple(self._items)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __iter__(self) -> Iterator[Header]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"Headers({[tuple(h) for h in self._items]!r})"
