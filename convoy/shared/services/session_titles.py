"""Derive human-readable session titles from persisted conversation logs.

The SDK writes one JSONL file per conversation under
``<home>/.claude/projects/<cwd-hash>/<session-id>.jsonl``. The title is
the first user-authored text message. Purely cosmetic: every failure
yields None.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50
PROJECTS_SUBPATH = Path(".claude") / "projects"


def _first_user_text(record: object) -> str | None:
    if not isinstance(record, dict) or record.get("type") != "user":
        return None
    message = record.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content or None
    if isinstance(content, list):
        for block in content:
            if (
                isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
                and block["text"]
            ):
                return block["text"]
    return None


def _title_from_log(path: Path) -> str | None:
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError:
                continue
            text = _first_user_text(record)
            if text:
                title = text[:TITLE_MAX_CHARS].strip()
                return title or None
    return None


def extract_session_title(
    home_directory: str | Path,
    remote_session_id: str | None,
) -> str | None:
    """Return a title for ``remote_session_id``, or None. Never raises."""
    if not remote_session_id or any(sep in remote_session_id for sep in ("/", "\\", "..")):
        return None
    try:
        projects_dir = Path(home_directory) / PROJECTS_SUBPATH
        if not projects_dir.is_dir():
            logger.debug("Projects directory not found: %s", projects_dir)
            return None
        for project_dir in sorted(projects_dir.iterdir()):
            log_path = project_dir / f"{remote_session_id}.jsonl"
            if not log_path.is_file():
                continue
            try:
                title = _title_from_log(log_path)
            except OSError:
                logger.debug("Failed to read %s", log_path, exc_info=True)
                continue
            if title:
                return title
        return None
    except Exception:
        logger.debug(
            "Title extraction failed for %s in %s",
            remote_session_id, home_directory, exc_info=True,
        )
        return None


def fallback_session_title(created_at: datetime) -> str:
    """Title used when no user message is available yet."""
    return f"Session {created_at.strftime('%Y-%m-%d %H:%M')}"
