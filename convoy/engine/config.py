"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONVOY_* env vars,
a YAML file (see yaml_config.py), or command line flags.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for observing session lifecycle events.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Observers are best-effort; they must never break a request.
        logger.warning(
            "Event callback failed for %s", event.get("event"), exc_info=True,
        )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default


@dataclass
class ServerConfig:
    """Server and session engine configuration."""

    host: str = "127.0.0.1"
    port: int = 8787

    # Per-user homes live at sessions_root / sanitize(user_id)
    sessions_root: str = "/tmp/claude-sessions"

    # Eviction: sessions idle longer than this, unattached and not busy
    # are reclaimed by a sweep every sweep_interval_seconds.
    idle_timeout_minutes: float = 30.0
    sweep_interval_seconds: float = 300.0

    # Metadata store (sqlite3). Empty disables metadata persistence.
    metadata_db_path: str = ""

    # Skills store directory (one subdirectory per skill with SKILL.md).
    skills_store_dir: str = "skills-store"

    # Agent runtime
    model: str | None = None
    permission_mode: str = "bypassPermissions"
    api_key_env: str = "ANTHROPIC_API_KEY"
    base_url: str | None = None
    cli_path: str | None = None

    # SSE transport
    sse_heartbeat_seconds: float = 15.0
    sse_idle_timeout_seconds: float = 1800.0
    # WebSocket protocol-level ping interval
    ws_heartbeat_seconds: float = 30.0

    log_level: str = "INFO"

    @property
    def idle_threshold_seconds(self) -> float:
        return max(0.0, self.idle_timeout_minutes * 60.0)

    @property
    def sessions_root_path(self) -> Path:
        return Path(self.sessions_root).expanduser().resolve()

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load configuration from CONVOY_* environment variables."""
        convoy_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONVOY_")
        }
        if convoy_vars:
            logger.info(
                "ServerConfig.from_env: CONVOY_* env overrides: %s",
                ", ".join(sorted(convoy_vars)),
            )
        else:
            logger.debug("ServerConfig.from_env: no CONVOY_* env vars set, using defaults")

        sessions_root = (
            os.getenv("CONVOY_SESSIONS_ROOT")
            or os.getenv("CLAUDE_SESSIONS_ROOT")
            or cls.sessions_root
        )
        config = cls(
            host=os.getenv("CONVOY_HOST", cls.host),
            port=int(os.getenv("CONVOY_PORT", str(cls.port))),
            sessions_root=sessions_root,
            idle_timeout_minutes=_env_float(
                "CONVOY_SESSION_IDLE_MINUTES", cls.idle_timeout_minutes
            ),
            sweep_interval_seconds=_env_float(
                "CONVOY_SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds
            ),
            metadata_db_path=os.getenv("CONVOY_METADATA_DB", cls.metadata_db_path),
            skills_store_dir=os.getenv("CONVOY_SKILLS_STORE", cls.skills_store_dir),
            model=os.getenv("CONVOY_MODEL") or os.getenv("ANTHROPIC_MODEL") or None,
            permission_mode=os.getenv("CONVOY_PERMISSION_MODE", cls.permission_mode),
            api_key_env=os.getenv("CONVOY_API_KEY_ENV", cls.api_key_env),
            base_url=os.getenv("ANTHROPIC_BASE_URL") or None,
            cli_path=os.getenv("CONVOY_CLAUDE_CLI_PATH") or None,
            sse_heartbeat_seconds=_env_float(
                "CONVOY_SSE_HEARTBEAT_SECONDS", cls.sse_heartbeat_seconds
            ),
            sse_idle_timeout_seconds=_env_float(
                "CONVOY_SSE_IDLE_TIMEOUT_SECONDS", cls.sse_idle_timeout_seconds
            ),
            ws_heartbeat_seconds=_env_float(
                "CONVOY_WS_HEARTBEAT_SECONDS", cls.ws_heartbeat_seconds
            ),
            log_level=os.getenv("CONVOY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "ServerConfig.from_env: sessions_root=%s idle=%.1fm sweep=%.0fs model=%s",
            config.sessions_root, config.idle_timeout_minutes,
            config.sweep_interval_seconds, config.model or "<sdk default>",
        )
        return config
