from __future__ import annotations

import argparse
import asyncio
import os
import signal

from .config import ConfigError, load_config, parse_env_file, settings_from_config, settings_from_env
from .logs import setup_logging
from .mapping import build_mapping
from .service import TranslatorService


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sentinel-translator",
        description="Redis Sentinel proxy that rewrites internal addresses in replies to external ones",
    )
    p.add_argument("--config", default=None, help="Path to JSON (or json-ish) config file")
    p.add_argument("--env-file", default=None, help="Path to .env file (default: $ENV_FILE or .env); ignored with --config")
    p.add_argument("--log-level", default=None, help="Optional console override: DEBUG/INFO/WARNING/ERROR")
    return p


async def amain(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config) if args.config else {}
    except ConfigError as e:
        log = setup_logging({}, args.log_level)
        log.error("config error: %s", e)
        return 2
    log = setup_logging(cfg, args.log_level)

    try:
        if args.config:
            settings = settings_from_config(cfg)
        else:
            env_path = args.env_file or os.environ.get("ENV_FILE", ".env")
            settings = settings_from_env(parse_env_file(env_path))
        table = build_mapping(settings)
    except ConfigError as e:
        log.error("config error: %s", e)
        return 2

    svc = TranslatorService(settings, table, log)

    stop_ev = asyncio.Event()

    def _stop(*_a) -> None:
        stop_ev.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            pass

    try:
        await svc.start()
    except OSError as e:
        log.error("cannot listen on %s:%d: %s", settings.listen_host, settings.listen_port, e)
        return 1

    await stop_ev.wait()
    await svc.stop()

    # Let pending cancellations settle
    await asyncio.sleep(0)

    return 0


def main(argv=None) -> None:
    args = build_argparser().parse_args(argv)
    try:
        rc = asyncio.run(amain(args))
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)
