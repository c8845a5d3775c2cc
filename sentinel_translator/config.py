"""
config.py

Settings for the translator, from either of two sources:

- a JSON (or json-ish) config file, read with load_config() / settings_from_config()
- a docker-compose style .env file plus a few process environment overrides,
  read with parse_env_file() / settings_from_env()

Both produce the same frozen ProxySettings, which is all the rest of the
package ever sees.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

PortRange = Tuple[int, int]


class ConfigError(ValueError):
    """Malformed or missing settings. Fatal at startup."""


# =============================================================================
# Small utilities
# =============================================================================

def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


def to_int(v: Any, *, key: str, default: int) -> int:
    if v is None or (isinstance(v, str) and not v.strip()):
        return default
    if isinstance(v, bool):
        raise ConfigError(f"{key}: expected integer, got {v!r}")
    try:
        return int(str(v).strip())
    except ValueError:
        raise ConfigError(f"{key}: expected integer, got {v!r}") from None


def to_port(v: Any, *, key: str, default: int) -> int:
    port = to_int(v, key=key, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{key}: port out of range: {port}")
    return port


def parse_port_range(v: Any, *, key: str) -> Optional[PortRange]:
    """Accepts "start-end" or [start, end]. Empty / missing => None."""
    if v is None or v == "" or v == []:
        return None
    if isinstance(v, (list, tuple)):
        parts = list(v)
    else:
        parts = str(v).split("-")
    if len(parts) != 2:
        raise ConfigError(f"{key}: expected 'start-end', got {v!r}")
    start = to_port(parts[0], key=key, default=0)
    end = to_port(parts[1], key=key, default=0)
    if end < start:
        raise ConfigError(f"{key}: range end {end} before start {start}")
    return (start, end)


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class ProxySettings:
    external_host: str = "localhost"

    primary_host: str = "primary"
    primary_port: int = 6379
    external_primary_port: int = 6379

    replica_count: int = 0
    replica_port: int = 6379
    replica_port_range: Optional[PortRange] = None

    sentinel_count: int = 0
    sentinel_port: int = 26379
    sentinel_port_range: Optional[PortRange] = None

    listen_host: str = "0.0.0.0"
    listen_port: int = 26379
    upstream_host: str = "sentinel-1"
    upstream_port: int = 26379

    chunk_size: int = 65536
    stats_interval_sec: float = 0.0

    def __post_init__(self) -> None:
        if not self.external_host:
            raise ConfigError("external host must not be empty")
        if not self.upstream_host:
            raise ConfigError("upstream host must not be empty")
        for name in ("primary_port", "external_primary_port", "replica_port",
                     "sentinel_port", "upstream_port"):
            port = getattr(self, name)
            if not 1 <= port <= 65535:
                raise ConfigError(f"{name}: port out of range: {port}")
        # 0 => ephemeral port picked by the OS
        if not 0 <= self.listen_port <= 65535:
            raise ConfigError(f"listen_port: port out of range: {self.listen_port}")
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive: {self.chunk_size}")
        if self.stats_interval_sec < 0:
            raise ConfigError(f"stats_interval_sec must not be negative: {self.stats_interval_sec}")
        _check_group("replica", self.replica_count, self.replica_port_range)
        _check_group("sentinel", self.sentinel_count, self.sentinel_port_range)


def _check_group(role: str, count: int, port_range: Optional[PortRange]) -> None:
    if count < 0:
        raise ConfigError(f"{role} count must not be negative: {count}")
    if count == 0:
        return
    if port_range is None:
        raise ConfigError(f"{role} count is {count} but no external port range is set")
    start, end = port_range
    if count > end - start + 1:
        raise ConfigError(f"{role} count {count} does not fit external port range {start}-{end}")


# =============================================================================
# .env source
# =============================================================================

def parse_env_file(path: str) -> Dict[str, str]:
    """KEY=VALUE lines; blank lines and '#' comments skipped; values may contain '='."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read env file {path}: {e}") from e

    env: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        env[key.strip()] = value.strip()
    return env


def settings_from_env(env: Mapping[str, str], environ: Optional[Mapping[str, str]] = None) -> ProxySettings:
    environ = os.environ if environ is None else environ

    sentinel_range = parse_port_range(env.get("DOCKER_REDIS_SENTINEL_PORTS"), key="DOCKER_REDIS_SENTINEL_PORTS")
    sentinel_port = to_port(env.get("REDIS_SENTINEL_PORT"), key="REDIS_SENTINEL_PORT", default=26379)

    default_listen = sentinel_range[0] if sentinel_range else 26379

    return ProxySettings(
        external_host=env.get("EXTERNAL_HOST") or "localhost",
        primary_host=env.get("REDIS_PRIMARY_HOST") or "primary",
        primary_port=to_port(env.get("REDIS_PRIMARY_PORT"), key="REDIS_PRIMARY_PORT", default=6379),
        external_primary_port=to_port(env.get("DOCKER_REDIS_PORT"), key="DOCKER_REDIS_PORT", default=6379),
        replica_count=to_int(env.get("DOCKER_REDIS_REPLICA_COUNT"), key="DOCKER_REDIS_REPLICA_COUNT", default=0),
        replica_port=to_port(env.get("REDIS_REPLICA_PORT"), key="REDIS_REPLICA_PORT", default=6379),
        replica_port_range=parse_port_range(env.get("DOCKER_REDIS_REPLICA_PORTS"), key="DOCKER_REDIS_REPLICA_PORTS"),
        sentinel_count=to_int(env.get("DOCKER_REDIS_SENTINEL_COUNT"), key="DOCKER_REDIS_SENTINEL_COUNT", default=0),
        sentinel_port=sentinel_port,
        sentinel_port_range=sentinel_range,
        listen_port=to_port(environ.get("LISTEN_PORT"), key="LISTEN_PORT", default=default_listen),
        upstream_host=environ.get("SENTINEL_HOST") or "sentinel-1",
        upstream_port=to_port(environ.get("SENTINEL_PORT"), key="SENTINEL_PORT", default=sentinel_port),
    )


# =============================================================================
# "json-ish" config file source (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)

    def _repl(m: re.Match) -> str:
        prefix, key, suffix = m.group(1), m.group(2), m.group(3)
        return f'{prefix}"{key}"{suffix}:'

    text = _KEY_RE.sub(_repl, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def load_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    try:
        return json.loads(raw)
    except ValueError:
        norm = _jsonish_to_json(raw)
        try:
            return json.loads(norm)
        except ValueError as e:
            raise SystemExit(f"Config parse error for {path}:\n{e}\n\nNormalized text:\n{norm}") from e


def settings_from_config(cfg: Dict[str, Any]) -> ProxySettings:
    m = get_path(cfg, "mapping", {}) or {}
    primary = get_path(m, "primary", {}) or {}
    replicas = get_path(m, "replicas", {}) or {}
    sentinels = get_path(m, "sentinels", {}) or {}

    sentinel_port = to_port(sentinels.get("port"), key="mapping.sentinels.port", default=26379)
    sentinel_range = parse_port_range(sentinels.get("external_ports"), key="mapping.sentinels.external_ports")

    interval = get_path(cfg, "runtime.stats_interval_sec", 0) or 0
    try:
        stats_interval = float(interval)
    except (TypeError, ValueError):
        raise ConfigError(f"runtime.stats_interval_sec: expected number, got {interval!r}") from None

    return ProxySettings(
        external_host=str(m.get("external_host") or "localhost"),
        primary_host=str(primary.get("host") or "primary"),
        primary_port=to_port(primary.get("port"), key="mapping.primary.port", default=6379),
        external_primary_port=to_port(primary.get("external_port"), key="mapping.primary.external_port", default=6379),
        replica_count=to_int(replicas.get("count"), key="mapping.replicas.count", default=0),
        replica_port=to_port(replicas.get("port"), key="mapping.replicas.port", default=6379),
        replica_port_range=parse_port_range(replicas.get("external_ports"), key="mapping.replicas.external_ports"),
        sentinel_count=to_int(sentinels.get("count"), key="mapping.sentinels.count", default=0),
        sentinel_port=sentinel_port,
        sentinel_port_range=sentinel_range,
        listen_host=str(get_path(cfg, "listen.bind_ip", "0.0.0.0") or "0.0.0.0"),
        listen_port=to_port(get_path(cfg, "listen.port"), key="listen.port", default=26379),
        upstream_host=str(get_path(cfg, "upstream.host", "sentinel-1") or "sentinel-1"),
        upstream_port=to_port(get_path(cfg, "upstream.port"), key="upstream.port", default=sentinel_port),
        chunk_size=to_int(get_path(cfg, "runtime.chunk_size"), key="runtime.chunk_size", default=65536),
        stats_interval_sec=stats_interval,
    )
