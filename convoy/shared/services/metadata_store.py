"""Session metadata store (sqlite3).

Keeps one row per (user, SDK session) so the UI can list, rename,
favorite and delete past conversations without scanning the filesystem.
Conversation content itself stays in the SDK's JSONL logs.
"""
from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from convoy.engine.errors import MetadataStoreError


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


@dataclass
class SessionRecord:
    id: str
    user_id: str
    sdk_session_id: str
    real_sdk_session_id: str | None
    title: str | None
    claude_home_path: str
    favorite: bool
    last_message_at: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SessionRecord:
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            sdk_session_id=str(row["sdk_session_id"]),
            real_sdk_session_id=row["real_sdk_session_id"],
            title=row["title"],
            claude_home_path=str(row["claude_home_path"]),
            favorite=bool(row["favorite"]),
            last_message_at=row["last_message_at"],
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "sdkSessionId": self.sdk_session_id,
            "realSdkSessionId": self.real_sdk_session_id,
            "title": self.title,
            "claudeHomePath": self.claude_home_path,
            "favorite": self.favorite,
            "lastMessageAt": self.last_message_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class SessionMetadataStore:
    """User-scoped upsert/query service over the ``agent_session`` table."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_session (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    sdk_session_id TEXT NOT NULL,
                    real_sdk_session_id TEXT,
                    title TEXT,
                    claude_home_path TEXT NOT NULL,
                    favorite INTEGER NOT NULL DEFAULT 0,
                    last_message_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_agent_session_user ON agent_session(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_agent_session_updated ON agent_session(updated_at)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_agent_session_user_sdk "
                "ON agent_session(user_id, sdk_session_id)"
            )
            conn.commit()

    def upsert(
        self,
        user_id: str,
        local_session_id: str,
        *,
        home_path: str,
        remote_session_id: str | None = None,
        title: str | None = None,
        touch: bool = False,
    ) -> SessionRecord:
        """Insert or update the record keyed by (user_id, local_session_id).

        ``title`` only fills a missing title (rename with ``update``);
        ``touch`` stamps ``last_message_at``.
        """
        if not user_id or not local_session_id:
            raise MetadataStoreError("user_id and local_session_id are required")
        now = _iso_utc(_utc_now())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_session(
                    id, user_id, sdk_session_id, real_sdk_session_id, title,
                    claude_home_path, favorite, last_message_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                ON CONFLICT(user_id, sdk_session_id) DO UPDATE SET
                    real_sdk_session_id = COALESCE(excluded.real_sdk_session_id, real_sdk_session_id),
                    title = COALESCE(title, excluded.title),
                    claude_home_path = excluded.claude_home_path,
                    last_message_at = COALESCE(excluded.last_message_at, last_message_at),
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    local_session_id,
                    remote_session_id,
                    title,
                    home_path,
                    now if touch else None,
                    now,
                    now,
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM agent_session WHERE user_id = ? AND sdk_session_id = ?",
                (user_id, local_session_id),
            ).fetchone()
        return SessionRecord.from_row(row)

    def get(self, user_id: str, record_id: str) -> SessionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_session WHERE id = ? AND user_id = ?",
                (record_id, user_id),
            ).fetchone()
        return SessionRecord.from_row(row) if row is not None else None

    def get_by_sdk_id(self, user_id: str, sdk_session_id: str) -> SessionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM agent_session
                WHERE user_id = ? AND (sdk_session_id = ? OR real_sdk_session_id = ?)
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (user_id, sdk_session_id, sdk_session_id),
            ).fetchone()
        return SessionRecord.from_row(row) if row is not None else None

    def list_for_user(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> list[SessionRecord]:
        """Favorites first, then most recently updated."""
        page = max(1, page)
        limit = max(1, min(100, limit))
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM agent_session
                WHERE user_id = ?
                ORDER BY favorite DESC, updated_at DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, (page - 1) * limit),
            ).fetchall()
        return [SessionRecord.from_row(row) for row in rows]

    def count_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM agent_session WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return int(row["total"]) if row is not None else 0

    def update(
        self,
        user_id: str,
        record_id: str,
        *,
        title: str | None = None,
        favorite: bool | None = None,
    ) -> SessionRecord | None:
        """Update title/favorite. Returns None if the record is not the user's."""
        assignments = ["updated_at = ?"]
        params: list[Any] = [_iso_utc(_utc_now())]
        if title is not None:
            assignments.append("title = ?")
            params.append(title)
        if favorite is not None:
            assignments.append("favorite = ?")
            params.append(1 if favorite else 0)
        params.extend([record_id, user_id])
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE agent_session SET {', '.join(assignments)} "
                "WHERE id = ? AND user_id = ?",
                params,
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.get(user_id, record_id)

    def delete(self, user_id: str, record_id: str) -> SessionRecord | None:
        """Delete a record. Returns the deleted record, or None."""
        record = self.get(user_id, record_id)
        if record is None:
            return None
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM agent_session WHERE id = ? AND user_id = ?",
                (record_id, user_id),
            )
            conn.commit()
        return record
