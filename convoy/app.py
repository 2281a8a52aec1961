"""Convoy entry point — configure logging and run the web server."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_logging(log_level: str) -> Path:
    log_dir = Path(os.getenv("CONVOY_LOG_DIR", str(Path.home() / ".convoy" / "logs")))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "convoy-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _log_runtime_compatibility() -> None:
    """Log Python/SDK versions to make support reports actionable."""
    logger = logging.getLogger(__name__)
    logger.info("Python runtime: %s", sys.version.split()[0])
    try:
        from importlib.metadata import version

        logger.info("claude-agent-sdk version: %s", version("claude-agent-sdk"))
    except Exception:
        logger.warning("claude-agent-sdk is not installed; agent requests will fail")


def main() -> None:
    import argparse

    from convoy import __version__
    from convoy.engine.config import ServerConfig
    from convoy.engine.yaml_config import load_yaml_config

    parser = argparse.ArgumentParser(
        prog="convoy",
        description="Convoy — multi-user web chat server for the Claude Agent SDK",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (overrides CONVOY_* env vars)",
    )
    parser.add_argument(
        "--host",
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Port to listen on (default: 8787)",
    )
    parser.add_argument(
        "--sessions-root", metavar="DIR",
        help="Directory holding per-user home directories",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: CONVOY_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args()

    config = ServerConfig.from_env()
    if args.config:
        try:
            config = load_yaml_config(args.config, base=config)
        except (OSError, ValueError) as exc:
            print(f"convoy: cannot load config {args.config}: {exc}", file=sys.stderr)
            sys.exit(2)

    overrides: dict[str, object] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.sessions_root:
        overrides["sessions_root"] = args.sessions_root
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        config = replace(config, **overrides)

    log_file = _configure_logging(config.log_level)
    logging.getLogger(__name__).info(
        "Starting convoy %s host=%s port=%s sessions_root=%s config=%s log=%s",
        __version__,
        config.host,
        config.port,
        config.sessions_root_path,
        args.config or "<none>",
        log_file,
    )
    _log_runtime_compatibility()

    from convoy.web.server import ConvoyServer

    server = ConvoyServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted; exiting")


if __name__ == "__main__":
    main()
