from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest

from convoy.engine.errors import MetadataStoreError
from convoy.shared.services.metadata_recorder import MetadataRecorder
from convoy.shared.services.metadata_store import SessionMetadataStore


def _store(tmpdir: str) -> SessionMetadataStore:
    return SessionMetadataStore(Path(tmpdir) / "db" / "convoy.sqlite3")


def test_upsert_inserts_then_updates_same_row() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir)
        first = store.upsert("alice", "s-1", home_path="/homes/alice")
        second = store.upsert(
            "alice", "s-1", home_path="/homes/alice",
            remote_session_id="s-1", title="Hello", touch=True,
        )

        assert second.id == first.id
        assert second.title == "Hello"
        assert second.real_sdk_session_id == "s-1"
        assert second.last_message_at is not None
        assert second.created_at == first.created_at
        assert store.count_for_user("alice") == 1

        # Later upserts without a title keep the existing one.
        third = store.upsert("alice", "s-1", home_path="/homes/alice")
        assert third.title == "Hello"
        assert third.last_message_at == second.last_message_at


def test_upsert_requires_keys() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir)
        with pytest.raises(MetadataStoreError):
            store.upsert("", "s-1", home_path="/x")


def test_records_are_user_scoped() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir)
        record = store.upsert("alice", "s-1", home_path="/homes/alice")
        store.upsert("bob", "s-1", home_path="/homes/bob")

        assert store.get("bob", record.id) is None
        assert store.update("bob", record.id, title="stolen") is None
        assert store.delete("bob", record.id) is None
        assert store.get("alice", record.id).title is None
        assert store.count_for_user("bob") == 1


def test_list_orders_favorites_first_and_paginates() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir)
        records = [store.upsert("alice", f"s-{i}", home_path="/h") for i in range(5)]
        store.update("alice", records[1].id, favorite=True)

        page_one = store.list_for_user("alice", page=1, limit=2)
        page_three = store.list_for_user("alice", page=3, limit=2)

        assert page_one[0].id == records[1].id
        assert page_one[0].favorite is True
        assert len(page_one) == 2
        assert len(page_three) == 1
        assert store.count_for_user("alice") == 5


def test_get_by_sdk_id_and_delete() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir)
        record = store.upsert("alice", "local-1", home_path="/h", remote_session_id="real-1")

        assert store.get_by_sdk_id("alice", "local-1").id == record.id
        assert store.get_by_sdk_id("alice", "real-1").id == record.id
        assert store.get_by_sdk_id("bob", "real-1") is None

        assert store.delete("alice", record.id).id == record.id
        assert store.get("alice", record.id) is None


def test_to_dict_uses_camel_case() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        record = _store(tmpdir).upsert("alice", "s-1", home_path="/h")
        payload = record.to_dict()
        assert payload["sdkSessionId"] == "s-1"
        assert payload["claudeHomePath"] == "/h"
        assert payload["favorite"] is False
        assert set(payload) >= {"id", "userId", "title", "lastMessageAt", "createdAt", "updatedAt"}


# ── Recorder ──


@pytest.mark.asyncio
async def test_recorder_upserts_on_init_and_titles_on_completion(tmp_path: Path) -> None:
    store = SessionMetadataStore(tmp_path / "meta.sqlite3")
    recorder = MetadataRecorder(store)
    home = tmp_path / "alice"
    log_dir = home / ".claude" / "projects" / "-x"
    log_dir.mkdir(parents=True)
    (log_dir / "remote-1.jsonl").write_text(
        json.dumps({"type": "user", "message": {"content": "Plan the migration"}}) + "\n",
        encoding="utf-8",
    )

    await recorder({
        "event": "session_init",
        "user_id": "alice",
        "session_id": "remote-1",
        "home_directory": str(home),
    })
    record = store.get_by_sdk_id("alice", "remote-1")
    assert record is not None
    assert record.title is None
    assert record.claude_home_path == str(home)

    await recorder({
        "event": "request_completed",
        "user_id": "alice",
        "session_id": "remote-1",
        "home_directory": str(home),
        "event_count": 3,
    })
    record = store.get_by_sdk_id("alice", "remote-1")
    assert record.title == "Plan the migration"
    assert record.last_message_at is not None


@pytest.mark.asyncio
async def test_recorder_falls_back_to_dated_title(tmp_path: Path) -> None:
    store = SessionMetadataStore(tmp_path / "meta.sqlite3")
    recorder = MetadataRecorder(store)

    await recorder({
        "event": "request_completed",
        "user_id": "alice",
        "session_id": "remote-2",
        "home_directory": str(tmp_path / "alice"),
    })

    record = store.get_by_sdk_id("alice", "remote-2")
    assert record.title.startswith("Session ")


@pytest.mark.asyncio
async def test_recorder_ignores_incomplete_events(tmp_path: Path) -> None:
    store = SessionMetadataStore(tmp_path / "meta.sqlite3")
    recorder = MetadataRecorder(store)

    await recorder({"event": "request_completed", "user_id": "alice", "session_id": None})
    await recorder({"event": "session_init", "session_id": "x"})

    assert store.count_for_user("alice") == 0
