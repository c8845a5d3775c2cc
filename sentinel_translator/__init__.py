"""
sentinel_translator

Transparent proxy for Redis Sentinel (or any RESP2 upstream) that rewrites
internal host:port values in replies into externally reachable ones.
"""

from .config import ConfigError, ProxySettings
from .mapping import Endpoint, MappingEntry, MappingTable, build_mapping
from .resp import ProtocolError, encode, parse
from .service import TranslatorService
from .session import ProxySession, SessionPhase
from .translate import rewrite_chunk, translate

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "Endpoint",
    "MappingEntry",
    "MappingTable",
    "ProtocolError",
    "ProxySession",
    "ProxySettings",
    "SessionPhase",
    "TranslatorService",
    "build_mapping",
    "encode",
    "parse",
    "rewrite_chunk",
    "translate",
]
