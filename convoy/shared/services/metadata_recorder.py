"""Populate the metadata store from session lifecycle events.

Installed as the registry's ``event_callback``; every AgentSession fires
``session_init`` when the runtime reveals a conversation id and
``request_completed`` after a request finishes.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from .metadata_store import SessionMetadataStore, SessionRecord
from .session_titles import extract_session_title, fallback_session_title

logger = logging.getLogger(__name__)


class MetadataRecorder:
    """Async event callback writing session records to the store."""

    def __init__(self, store: SessionMetadataStore) -> None:
        self._store = store

    async def __call__(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        user_id = event.get("user_id")
        session_id = event.get("session_id")
        if not user_id or not session_id:
            return
        try:
            if kind == "session_init":
                await asyncio.to_thread(self._record_init, event)
            elif kind == "request_completed":
                await asyncio.to_thread(self._record_completion, event)
        except Exception:
            logger.warning(
                "Failed to record %s for user %s session %s",
                kind, user_id, session_id, exc_info=True,
            )

    def _record_init(self, event: dict[str, Any]) -> SessionRecord:
        record = self._store.upsert(
            event["user_id"],
            event["session_id"],
            home_path=event.get("home_directory", ""),
            remote_session_id=event["session_id"],
        )
        logger.info(
            "Recorded session %s for user %s (record %s)",
            event["session_id"], event["user_id"], record.id,
        )
        return record

    def _record_completion(self, event: dict[str, Any]) -> SessionRecord:
        user_id = event["user_id"]
        session_id = event["session_id"]
        home = event.get("home_directory", "")
        existing = self._store.get_by_sdk_id(user_id, session_id)
        title = None
        if existing is None or not existing.title:
            title = extract_session_title(home, session_id)
            if not title:
                created = _parse_timestamp(existing.created_at) if existing else None
                title = fallback_session_title(created or datetime.now(timezone.utc))
        return self._store.upsert(
            user_id,
            existing.sdk_session_id if existing else session_id,
            home_path=home,
            remote_session_id=session_id,
            title=title,
            touch=True,
        )


def _parse_timestamp(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
