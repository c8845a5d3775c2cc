"""
mapping.py

Internal -> external endpoint table. Built once from ProxySettings before the
listener starts, then shared read-only by every session.

Order matters: primary, then replicas, then sentinels, each in index order.
Both exact and bare-hostname lookups return the first matching entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .config import ConfigError, ProxySettings
from .logs import log_event


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("endpoint host must not be empty")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"endpoint port out of range: {self.port}")

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, text: str) -> "Endpoint":
        host, sep, port = text.rpartition(":")
        if not sep or not port.isdigit():
            raise ConfigError(f"expected host:port, got {text!r}")
        return cls(host, int(port))


@dataclass(frozen=True)
class MappingEntry:
    internal: Endpoint
    external: Endpoint


class MappingTable:
    """Immutable, ordered sequence of MappingEntry with first-match-wins lookups."""

    def __init__(self, entries: Sequence[MappingEntry]) -> None:
        self._entries: Tuple[MappingEntry, ...] = tuple(entries)
        exact: Dict[str, Endpoint] = {}
        hosts: Dict[str, str] = {}
        for e in self._entries:
            exact.setdefault(str(e.internal), e.external)
            hosts.setdefault(e.internal.host, e.external.host)
        self._exact = exact
        self._hosts = hosts

    def __iter__(self) -> Iterator[MappingEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> Tuple[MappingEntry, ...]:
        return self._entries

    def lookup_exact(self, text: str) -> Optional[Endpoint]:
        return self._exact.get(text)

    def lookup_host(self, text: str) -> Optional[str]:
        return self._hosts.get(text)

    def to_dict(self) -> Dict[str, str]:
        return {k: str(v) for k, v in self._exact.items()}

    @classmethod
    def from_pairs(cls, pairs: Sequence[Tuple[str, str]]) -> "MappingTable":
        return cls([MappingEntry(Endpoint.parse(a), Endpoint.parse(b)) for a, b in pairs])


def _group(role: str, count: int, internal_port: int, port_range: Optional[Tuple[int, int]], external_host: str) -> List[MappingEntry]:
    if count <= 0 or port_range is None:
        return []
    start, _end = port_range
    return [
        MappingEntry(
            internal=Endpoint(f"{role}-{i + 1}", internal_port),
            external=Endpoint(external_host, start + i),
        )
        for i in range(count)
    ]


def build_mapping(settings: ProxySettings) -> MappingTable:
    entries: List[MappingEntry] = [
        MappingEntry(
            internal=Endpoint(settings.primary_host, settings.primary_port),
            external=Endpoint(settings.external_host, settings.external_primary_port),
        )
    ]
    entries += _group("replica", settings.replica_count, settings.replica_port,
                      settings.replica_port_range, settings.external_host)
    entries += _group("sentinel", settings.sentinel_count, settings.sentinel_port,
                      settings.sentinel_port_range, settings.external_host)
    return MappingTable(entries)


def log_mapping(table: MappingTable, log: logging.Logger) -> None:
    for idx, e in enumerate(table):
        log_event(log, "info", "mapping", "entry",
                  {"index": idx, "internal": str(e.internal), "external": str(e.external)})
