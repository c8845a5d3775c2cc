"""
resp.py

Byte-exact codec for the length-prefixed, CRLF-framed reply protocol spoken by
Redis and Redis Sentinel.

Every payload is kept as raw bytes. Nothing is decoded through a text encoding,
so encode(parse(b)) == b holds for any canonical frame, including bulk strings
that carry CR, LF or arbitrary binary octets.

Canonical headers only: integers and lengths are plain decimal, optional
leading "-", no "+", no leading zeros. Anything else is a ProtocolError.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

CRLF = b"\r\n"
MAX_DEPTH = 64
MAX_HEADER_DIGITS = 19  # int64 needs at most 19 digits

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1


class ProtocolError(ValueError):
    """Raised for truncated input, unknown type markers or malformed headers."""


# =============================================================================
# Value model
# =============================================================================

@dataclass(frozen=True)
class SimpleString:
    value: bytes


@dataclass(frozen=True)
class ErrorValue:
    value: bytes


@dataclass(frozen=True)
class Integer:
    value: int


@dataclass(frozen=True)
class BulkString:
    value: Optional[bytes]  # None => null bulk string ($-1)

    @property
    def is_null(self) -> bool:
        return self.value is None


@dataclass(frozen=True)
class Array:
    items: Optional[Tuple["ProtocolValue", ...]]  # None => null array (*-1)

    @property
    def is_null(self) -> bool:
        return self.items is None


ProtocolValue = Union[SimpleString, ErrorValue, Integer, BulkString, Array]


# =============================================================================
# Decoding
# =============================================================================

def _read_line(buf: bytes, pos: int) -> Tuple[bytes, int]:
    end = buf.find(CRLF, pos)
    if end < 0:
        raise ProtocolError(f"unterminated header at offset {pos}")
    return buf[pos:end], end + 2


def _parse_decimal(raw: bytes, *, what: str) -> int:
    body = raw[1:] if raw.startswith(b"-") else raw
    if not body or not body.isdigit():
        raise ProtocolError(f"malformed {what}: {raw!r}")
    if len(body) > 1 and body.startswith(b"0"):
        raise ProtocolError(f"non-canonical {what}: {raw!r}")
    if raw == b"-0":
        raise ProtocolError(f"non-canonical {what}: {raw!r}")
    if len(body) > MAX_HEADER_DIGITS:
        raise ProtocolError(f"{what} too long: {len(body)} digits")
    return int(body) * (-1 if raw.startswith(b"-") else 1)


def _parse_length(raw: bytes, *, what: str) -> int:
    n = _parse_decimal(raw, what=what)
    if n < -1:
        raise ProtocolError(f"negative {what}: {n}")
    return n


def parse_frame(buf: bytes, pos: int = 0, depth: int = 0) -> Tuple[ProtocolValue, int]:
    """
    Decode one frame starting at buf[pos].
    Returns (value, offset just past the frame). Never reads beyond the bytes
    the frame declares.
    """
    if depth > MAX_DEPTH:
        raise ProtocolError(f"nesting deeper than {MAX_DEPTH}")
    if pos >= len(buf):
        raise ProtocolError("unexpected end of input")

    marker = buf[pos:pos + 1]
    line, pos = _read_line(buf, pos + 1)

    if marker == b"+":
        return SimpleString(line), pos

    if marker == b"-":
        return ErrorValue(line), pos

    if marker == b":":
        value = _parse_decimal(line, what="integer")
        if value < INT64_MIN or value > INT64_MAX:
            raise ProtocolError(f"integer out of 64-bit range: {value}")
        return Integer(value), pos

    if marker == b"$":
        length = _parse_length(line, what="bulk length")
        if length == -1:
            return BulkString(None), pos
        end = pos + length
        if end + 2 > len(buf):
            raise ProtocolError(f"bulk string truncated: need {length} bytes at offset {pos}")
        if buf[end:end + 2] != CRLF:
            raise ProtocolError(f"bulk string not terminated at offset {end}")
        return BulkString(bytes(buf[pos:end])), end + 2

    if marker == b"*":
        count = _parse_length(line, what="array count")
        if count == -1:
            return Array(None), pos
        items: List[ProtocolValue] = []
        for _ in range(count):
            item, pos = parse_frame(buf, pos, depth + 1)
            items.append(item)
        return Array(tuple(items)), pos

    raise ProtocolError(f"unknown type marker {marker!r}")


def parse(buf: bytes) -> ProtocolValue:
    """Decode a buffer holding exactly one frame."""
    value, pos = parse_frame(buf, 0)
    if pos != len(buf):
        raise ProtocolError(f"{len(buf) - pos} trailing bytes after frame")
    return value


def parse_all(buf: bytes) -> List[ProtocolValue]:
    """Decode a buffer that is a concatenation of one or more complete frames."""
    if not buf:
        raise ProtocolError("empty input")
    out: List[ProtocolValue] = []
    pos = 0
    while pos < len(buf):
        value, pos = parse_frame(buf, pos)
        out.append(value)
    return out


# =============================================================================
# Encoding
# =============================================================================

def _encode_into(value: ProtocolValue, out: bytearray) -> None:
    if isinstance(value, SimpleString):
        out += b"+" + value.value + CRLF
    elif isinstance(value, ErrorValue):
        out += b"-" + value.value + CRLF
    elif isinstance(value, Integer):
        out += b":%d\r\n" % value.value
    elif isinstance(value, BulkString):
        if value.value is None:
            out += b"$-1\r\n"
        else:
            out += b"$%d\r\n" % len(value.value)
            out += value.value
            out += CRLF
    elif isinstance(value, Array):
        if value.items is None:
            out += b"*-1\r\n"
        else:
            out += b"*%d\r\n" % len(value.items)
            for item in value.items:
                _encode_into(item, out)
    else:
        raise TypeError(f"not a protocol value: {value!r}")


def encode(value: ProtocolValue) -> bytes:
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def encode_all(values: List[ProtocolValue]) -> bytes:
    out = bytearray()
    for v in values:
        _encode_into(v, out)
    return bytes(out)
