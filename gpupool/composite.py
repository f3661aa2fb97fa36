"""Parsing of database composite (row) values such as ``(key,value)``."""

from __future__ import annotations

import math
import re
from typing import Any

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


class CompositeError(ValueError):
    """Raised when a composite value cannot be parsed or converted."""


def _as_bytes(src: bytes | str | None) -> bytes | None:
    if isinstance(src, str):
        return src.encode()
    return src


def parse_composite(src: bytes | str) -> list[bytes | None]:
    """Split a composite value into its raw columns; NULL or empty gives None."""
    data = _as_bytes(src) or b""
    if not data.startswith(b"("):
        raise CompositeError(
            "Composite: unable to parse composite, expected '(' at offset 0"
        )

    size = len(data)
    elems: list[bytes | None] = []
    i = 1
    while i < size:
        if data[i : i + 1] == b'"':
            elem = bytearray()
            escape = False
            i += 1
            while i < size:
                char = data[i : i + 1]
                if escape:
                    elem += char
                    escape = False
                elif char == b"\\":
                    escape = True
                elif char == b'"':
                    i += 1
                    if i < size and data[i : i + 1] == b'"':
                        elem += b'"'
                    else:
                        elems.append(bytes(elem))
                        break
                else:
                    elem += char
                i += 1
        else:
            start = i
            while i < size and data[i : i + 1] not in (b",", b")"):
                i += 1
            if i < size:
                raw = data[start:i]
                elems.append(None if raw in (b"", b"NULL") else raw)

        if i >= size:
            break
        char = data[i : i + 1]
        if char == b",":
            i += 1
        elif char == b")":
            break

    if i >= size:
        raise CompositeError("Composite: unable to parse array; unexpected end")
    if data[i : i + 1] != b")":
        raise CompositeError(
            f"Composite: unable to parse array, unexpected {chr(data[i])!r} at offset {i}"
        )
    return elems


def _quoted(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _parse_float(text: str) -> float:
    if not text or any(c.isspace() for c in text) or "_" in text:
        raise ValueError("invalid syntax")
    try:
        value = float(text)
    except ValueError:
        raise ValueError("invalid syntax") from None
    if math.isinf(value) and "inf" not in text.lower():
        raise ValueError("value out of range")
    return value


def _parse_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError("invalid syntax")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError("value out of range")
    return value


def convert_column(src: bytes | str | None, kind: type) -> Any:
    """Convert one raw column to ``kind``: str, bytes, bool, int or float."""
    data = _as_bytes(src)
    if kind is str:
        return (data or b"").decode()
    if kind is bytes:
        return None if data is None else bytes(data)
    if kind is bool:
        text = (data or b"").decode()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise CompositeError(f"parsing {_quoted(text)}: invalid syntax")
    if kind in (int, float):
        name = kind.__name__
        if data is None:
            raise CompositeError(f"converting NULL to {name} is unsupported")
        text = data.decode()
        parser = _parse_int if kind is int else _parse_float
        try:
            return parser(text)
        except ValueError as error:
            raise CompositeError(
                f"converting '{_quoted(text)}' to a {name}: {error}"
            ) from None
    raise CompositeError(
        f"unsupported Scan, storing bytes into type {getattr(kind, '__name__', kind)}"
    )


def scan(src: bytes | str, *args: type) -> tuple[Any, ...]:
    """Parse a composite value and convert each column to the matching kind."""
    columns = parse_composite(src)
    if len(columns) != len(args):
        raise CompositeError(
            f"Composite: expected {len(columns)} destination arguments in Scan, not {len(args)}"
        )
    values = []
    for index, (column, kind) in enumerate(zip(columns, args)):
        try:
            values.append(convert_column(column, kind))
        except CompositeError as error:
            raise CompositeError(
                f"Composite: Scan error on column index {index}, {error}"
            ) from error
    return tuple(values)