from __future__ import annotations

from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import MutableMapping


def _native(x: str | bytes) -> str:
    if isinstance(x, bytes):
        return x.decode("latin-1")
    return x


class Headers(MutableMapping[str, str]):
    """
    Header class which allows both convenient access to individual headers as well as
    direct access to the underlying raw data.

    Headers are case insensitive, but the original spelling of every field
    is kept for the wire:
    >>> h = Headers([("Host", "example.com"), ("Accept", "text/html"), ("accept", "application/xml")])
    >>> h["host"]
    "example.com"

    Multiple headers are folded into a single header as per RFC 7230:
    >>> h["Accept"]
    "text/html, application/xml"

    Setting a header removes all existing headers with the same name.
    Set-Cookie and friends should be accessed through `get_all`.
    """

    fields: tuple[tuple[str, str], ...]
    """The underlying raw datastructure."""

    def __init__(self, fields: Iterable[tuple[str | bytes, str | bytes]] = (), **headers):
        self.fields = tuple((_native(k), _native(v)) for k, v in fields)
        # content_type -> content-type
        for name, value in headers.items():
            self[name.replace("_", "-")] = value

    def __repr__(self):
        return "{cls}[{fields}]".format(
            cls=type(self).__name__, fields=", ".join(repr(f) for f in self.fields)
        )

    @staticmethod
    def _kconv(key: str) -> str:
        return key.lower()

    def __getitem__(self, key: str) -> str:
        values = self.get_all(key)
        if not values:
            raise KeyError(key)
        return ", ".join(values)

    def __setitem__(self, key: str, value: str) -> None:
        self.set_all(key, [value])

    def __delitem__(self, key: str) -> None:
        if key not in self:
            raise KeyError(key)
        key = self._kconv(key)
        self.fields = tuple(
            field for field in self.fields if key != self._kconv(field[0])
        )

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for key, _ in self.fields:
            key_kconv = self._kconv(key)
            if key_kconv not in seen:
                seen.add(key_kconv)
                yield key

    def __len__(self) -> int:
        return len({self._kconv(key) for key, _ in self.fields})

    def __contains__(self, key) -> bool:
        if not isinstance(key, str):
            return False
        key = self._kconv(key)
        return any(self._kconv(k) == key for k, _ in self.fields)

    def __eq__(self, other) -> bool:
        if isinstance(other, Headers):
            return self.fields == other.fields
        return False

    def get_all(self, key: str) -> list[str]:
        """
        Like `Headers.get`, but does not fold multiple headers into a single one.
        This is useful for Set-Cookie and Cookie headers, which do not support folding.
        """
        key = self._kconv(key)
        return [value for k, value in self.fields if self._kconv(k) == key]

    def set_all(self, key: str, values: list[str]) -> None:
        """
        Remove the old values for a key and add new ones.
        The position and spelling of the first existing field are kept.
        """
        values = [str(v) for v in values]
        key_kconv = self._kconv(key)

        new_fields: list[tuple[str, str]] = []
        for field in self.fields:
            if self._kconv(field[0]) == key_kconv:
                if values:
                    new_fields.append((field[0], values.pop(0)))
            else:
                new_fields.append(field)
        while values:
            new_fields.append((key, values.pop(0)))
        self.fields = tuple(new_fields)

    def add(self, key: str, value: str) -> None:
        """
        Add an additional value for the given key at the bottom.
        """
        self.fields = self.fields + ((key, str(value)),)

    def copy(self) -> Headers:
        return Headers(self.fields)

    def to_dict(self) -> dict[str, str | list[str]]:
        """
        A JSON-friendly view: repeated fields become lists, in the spelling they were first seen.
        """
        ret: dict[str, str | list[str]] = {}
        for k in self:
            values = self.get_all(k)
            ret[k] = values[0] if len(values) == 1 else values
        return ret

    def __bytes__(self) -> bytes:
        if self.fields:
            return (
                b"\r\n".join(
                    f"{k}: {v}".encode("latin-1", "replace") for k, v in self.fields
                )
                + b"\r\n"
            )
        else:
            return b""


def parse_content_type(c: str) -> tuple[str, str, dict[str, str]] | None:
    """
    A simple parser for content-type values. Returns a (type, subtype,
    parameters) tuple, where type and subtype are strings, and parameters
    is a dict. If the string could not be parsed, return None.

    E.g. the following string:

        text/html; charset=UTF-8

    Returns:

        ("text", "html", {"charset": "UTF-8"})
    """
    parts = c.split(";", 1)
    ts = parts[0].split("/", 1)
    if len(ts) != 2:
        return None
    d = {}
    if len(parts) == 2:
        for i in parts[1].split(";"):
            clause = i.split("=", 1)
            if len(clause) == 2:
                d[clause[0].strip()] = clause[1].strip()
    return ts[0].strip().lower(), ts[1].strip().lower(), d
