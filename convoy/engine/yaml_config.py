"""YAML configuration loader.

A single YAML file can replace the CONVOY_* env vars. Values in the
file override the environment; command line flags override both.

Example YAML:
    server:
      host: 0.0.0.0
      port: 8787
      sessions_root: /data/users
      idle_timeout_minutes: 30
      sweep_interval_seconds: 300
      metadata_db_path: /data/convoy.sqlite3
      skills_store_dir: /srv/skills-store

    runtime:
      model: claude-sonnet-4-5
      permission_mode: bypassPermissions
      base_url: https://proxy.example.com
      api_key_env: ANTHROPIC_API_KEY
"""
from __future__ import annotations

import logging
import os
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import ServerConfig

logger = logging.getLogger(__name__)

_RUNTIME_KEYS = {"model", "permission_mode", "base_url", "api_key_env", "cli_path"}


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} references in string values."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def load_yaml_config(
    path: str | Path,
    base: ServerConfig | None = None,
) -> ServerConfig:
    """Load a YAML file and overlay it on ``base`` (default: from_env()).

    Raises FileNotFoundError if the file does not exist and ValueError
    if the top level is not a mapping.
    """
    config_path = Path(path).expanduser()
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")

    base = base or ServerConfig.from_env()
    known = {f.name: f for f in fields(ServerConfig)}
    overrides: dict[str, Any] = {}

    server_section = raw.get("server") or {}
    runtime_section = raw.get("runtime") or {}
    for section_name, section, allowed in (
        ("server", server_section, set(known) - _RUNTIME_KEYS),
        ("runtime", runtime_section, _RUNTIME_KEYS),
    ):
        if not isinstance(section, dict):
            raise ValueError(f"'{section_name}' section must be a mapping")
        for key, value in section.items():
            if key not in allowed:
                logger.warning(
                    "Ignoring unknown %s config key %r in %s",
                    section_name, key, config_path,
                )
                continue
            overrides[key] = _expand_env(value)

    for key in ("port",):
        if key in overrides:
            overrides[key] = int(overrides[key])
    for key in (
        "idle_timeout_minutes",
        "sweep_interval_seconds",
        "sse_heartbeat_seconds",
        "sse_idle_timeout_seconds",
        "ws_heartbeat_seconds",
    ):
        if key in overrides:
            overrides[key] = float(overrides[key])

    config = replace(base, **overrides)
    logger.info(
        "Loaded YAML config from %s (%d override(s))", config_path, len(overrides),
    )
    return config
