"""
translate.py

Address substitution over decoded reply trees.

Only bulk-string payloads are candidates: Sentinel replies carry hosts and
ports there (SENTINEL get-master-addr-by-name, SENTINEL replicas, ...).
A payload is replaced only when it equals an internal "host:port" or an
internal host exactly. No substring or suffix matching.
"""

from __future__ import annotations

from typing import Optional, Tuple

from .mapping import MappingTable
from .resp import Array, BulkString, ProtocolError, ProtocolValue, encode_all, parse_all


def _as_text(payload: bytes) -> Optional[str]:
    if not payload or not payload.isascii():
        return None
    text = payload.decode("ascii")
    return text if text.isprintable() else None


def translate_address(text: str, table: MappingTable) -> Optional[str]:
    """Exact host:port match first, then bare hostname. None => no match."""
    ext = table.lookup_exact(text)
    if ext is not None:
        return str(ext)
    return table.lookup_host(text)


def translate(value: ProtocolValue, table: MappingTable) -> ProtocolValue:
    if isinstance(value, Array):
        if value.items is None:
            return value
        items = tuple(translate(item, table) for item in value.items)
        if all(a is b for a, b in zip(items, value.items)):
            return value
        return Array(items)

    if isinstance(value, BulkString):
        if value.value is None:
            return value
        text = _as_text(value.value)
        if text is None:
            return value
        replaced = translate_address(text, table)
        if replaced is None:
            return value
        return BulkString(replaced.encode("utf-8"))

    return value


def rewrite_chunk(chunk: bytes, table: MappingTable) -> Tuple[bytes, bool]:
    """
    Upstream -> client pipeline for one received chunk.

    Returns (bytes to send, decoded). When the chunk is not a whole number of
    complete frames the received bytes come back untouched with decoded=False.
    """
    try:
        frames = parse_all(chunk)
    except ProtocolError:
        return chunk, False

    out = [translate(f, table) for f in frames]
    if all(a is b for a, b in zip(out, frames)):
        return chunk, True
    return encode_all(out), True
