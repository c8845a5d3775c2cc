from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import get_path

LOGGER_NAME = "sentinel_translator"
_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    level = getattr(logging, name, default)
    return level if isinstance(level, int) else default


def setup_logging(cfg: Dict[str, Any], cli_level: Optional[str] = None) -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = get_path(cfg, "logging", {}) or {}

    console_cfg = lc.get("console", {}) or {}
    file_cfg = lc.get("file", {}) or {}

    console_level = parse_level(console_cfg.get("verbosity"), logging.INFO)
    if cli_level:
        console_level = parse_level(cli_level, console_level)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter(_FORMAT))
    log.addHandler(ch)

    if bool(file_cfg.get("enabled", False)):
        path = str(file_cfg.get("path", "sentinel-translator.log"))
        file_level = parse_level(file_cfg.get("verbosity"), logging.INFO)
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FORMAT))
        log.addHandler(fh)

    return log


def log_event(log: logging.Logger, level: str, cat: str, event: str, payload: Dict[str, Any]) -> None:
    """One line per event: '<cat>.<event> {payload}'."""
    lvl = parse_level(level, logging.INFO)
    if log.isEnabledFor(lvl):
        log.log(lvl, "%s.%s %s", cat, event, payload)
