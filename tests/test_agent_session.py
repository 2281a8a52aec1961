from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from convoy.engine.errors import AgentInterruptedError, WorkspaceConflictError
from convoy.engine.lifecycle import SessionState
from convoy.engine.runtime import AgentRuntime, RuntimeRequest
from convoy.engine.session import OWNER_MARKER, AgentSession


INIT_EVENT = {"type": "system", "subtype": "init", "session_id": "remote-1"}


class _ScriptedRuntime(AgentRuntime):
    """Yields scripted events, then optionally blocks until cancelled or raises."""

    def __init__(
        self,
        events: list[dict] | None = None,
        *,
        block: bool = False,
        error: Exception | None = None,
    ) -> None:
        self.events = list(events or [])
        self.block = block
        self.error = error
        self.calls: list[RuntimeRequest] = []
        self.started = asyncio.Event()

    @property
    def name(self) -> str:
        return "scripted"

    async def run(self, request: RuntimeRequest):
        self.calls.append(request)
        self.started.set()
        for event in self.events:
            yield event
        if self.block:
            reason = await request.cancellation.wait()
            raise AgentInterruptedError(reason or "cancelled")
        if self.error is not None:
            raise self.error


class _Conn:
    def __init__(self, *, open: bool = True) -> None:
        self.frames: list[dict] = []
        self.open = open

    def is_open(self) -> bool:
        return self.open

    def send(self, data: bytes) -> None:
        self.frames.append(json.loads(data))


class _BrokenConn(_Conn):
    def send(self, data: bytes) -> None:
        raise ConnectionResetError("gone")


def _types(conn: _Conn) -> list[str]:
    return [f["type"] for f in conn.frames]


@pytest.mark.asyncio
async def test_submit_streams_events_to_all_connections(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([
        INIT_EVENT,
        {"type": "assistant", "n": 1},
        {"type": "assistant", "n": 2},
    ])
    session = AgentSession("alice", tmp_path, runtime)
    first, second = _Conn(), _Conn()
    session.attach(first)
    session.attach(second)

    await session.submit("hello")

    assert _types(first) == ["session_init", "message", "message", "message", "done"]
    assert first.frames == second.frames
    assert first.frames[0] == {"type": "session_init", "sessionId": "remote-1"}
    assert first.frames[1]["event"] == INIT_EVENT
    assert session.remote_session_id == "remote-1"
    assert session.state is SessionState.IDLE
    assert session.pending_cancellation is None
    assert session.last_error is None


@pytest.mark.asyncio
async def test_submit_creates_home_directory_lazily(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([{"type": "assistant"}])
    session = AgentSession("bob@corp.io", tmp_path, runtime)
    assert not session.home_directory.exists()

    await session.submit("hi")

    assert session.home_directory.is_dir()
    assert session.home_directory == tmp_path.resolve() / "bob_corp_io"
    assert (session.home_directory / OWNER_MARKER).read_text(encoding="utf-8") == "bob@corp.io"
    assert runtime.calls[0].working_directory == session.home_directory
    assert runtime.calls[0].prompt == "hi"


@pytest.mark.asyncio
async def test_continuation_id_is_passed_to_runtime(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([])
    session = AgentSession("alice", tmp_path, runtime)

    await session.submit("again", continuation_id="remote-0")

    assert runtime.calls[0].continuation_id == "remote-0"


@pytest.mark.asyncio
async def test_concurrent_submit_is_rejected_as_busy(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([INIT_EVENT], block=True)
    session = AgentSession("alice", tmp_path, runtime)
    conn = _Conn()
    session.attach(conn)

    first = asyncio.create_task(session.submit("one"))
    second = asyncio.create_task(session.submit("two"))
    await runtime.started.wait()
    await second
    # Rejection is reported to connections, never raised to the caller.
    assert second.result() is None

    assert len(runtime.calls) == 1
    busy = [f for f in conn.frames if f["type"] == "error"]
    assert busy == [{
        "type": "error",
        "code": "busy",
        "message": "Session is busy processing another request",
        "retriable": True,
    }]
    assert session.busy

    assert session.interrupt() is True
    await first
    assert not session.busy


@pytest.mark.asyncio
async def test_interrupt_when_idle_is_noop(tmp_path: Path) -> None:
    session = AgentSession("alice", tmp_path, _ScriptedRuntime())
    conn = _Conn()
    session.attach(conn)

    assert session.interrupt() is False
    assert session.state is SessionState.IDLE
    assert conn.frames == []


@pytest.mark.asyncio
async def test_interrupt_reports_abort_immediately_and_admits_next_submit(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([INIT_EVENT], block=True)
    session = AgentSession("alice", tmp_path, runtime)
    conn = _Conn()
    session.attach(conn)

    task = asyncio.create_task(session.submit("long job"))
    await runtime.started.wait()
    await asyncio.sleep(0)
    handle = session.pending_cancellation
    assert handle is not None

    assert session.interrupt() is True
    # Reported synchronously, before the runtime stream winds down.
    assert conn.frames[-1] == {
        "type": "error",
        "code": "aborted",
        "message": "Request was interrupted",
        "retriable": False,
    }
    assert session.state is SessionState.IDLE
    assert handle.cancelled
    assert isinstance(session.last_error, AgentInterruptedError)

    await task
    # The cancelled call adds nothing after the abort.
    assert conn.frames[-1]["code"] == "aborted"

    runtime.block = False
    runtime.events = [{"type": "assistant"}]
    await session.submit("next")
    assert conn.frames[-1] == {"type": "done"}
    assert len(runtime.calls) == 2


@pytest.mark.asyncio
async def test_superseded_call_events_are_dropped(tmp_path: Path) -> None:
    gate = asyncio.Event()

    class _StubbornRuntime(_ScriptedRuntime):
        async def run(self, request: RuntimeRequest):
            self.calls.append(request)
            self.started.set()
            # Ignores cancellation and keeps producing.
            await gate.wait()
            yield {"type": "system", "subtype": "init", "session_id": "late"}
            yield {"type": "assistant", "late": True}

    runtime = _StubbornRuntime()
    session = AgentSession("alice", tmp_path, runtime)
    conn = _Conn()
    session.attach(conn)

    task = asyncio.create_task(session.submit("slow"))
    await runtime.started.wait()
    session.interrupt()
    gate.set()
    await task

    assert _types(conn) == ["error"]
    assert session.remote_session_id is None
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_runtime_failure_is_retriable_server_error(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([{"type": "assistant"}], error=RuntimeError("sdk crashed"))
    session = AgentSession("alice", tmp_path, runtime)
    conn = _Conn()
    session.attach(conn)

    await session.submit("hi")

    assert _types(conn) == ["message", "error"]
    assert conn.frames[-1]["code"] == "server_error"
    assert conn.frames[-1]["retriable"] is True
    assert isinstance(session.last_error, RuntimeError)
    assert not session.busy


@pytest.mark.asyncio
async def test_runtime_timeout_maps_to_timeout_code(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([], error=asyncio.TimeoutError())
    session = AgentSession("alice", tmp_path, runtime)
    conn = _Conn()
    session.attach(conn)

    await session.submit("hi")

    assert conn.frames[-1]["code"] == "timeout"
    assert conn.frames[-1]["retriable"] is True


@pytest.mark.asyncio
async def test_last_error_cleared_on_next_request(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([], error=RuntimeError("boom"))
    session = AgentSession("alice", tmp_path, runtime)
    await session.submit("first")
    assert session.last_error is not None

    runtime.error = None
    await session.submit("second")
    assert session.last_error is None
    assert session.request_count == 2


@pytest.mark.asyncio
async def test_home_directory_failure_is_fatal_to_request_only(tmp_path: Path) -> None:
    blocker = tmp_path / "root-is-a-file"
    blocker.write_text("x", encoding="utf-8")
    runtime = _ScriptedRuntime([{"type": "assistant"}])
    session = AgentSession("alice", blocker, runtime)
    conn = _Conn()
    session.attach(conn)

    await session.submit("hi")

    assert runtime.calls == []
    assert conn.frames[-1]["type"] == "error"
    assert conn.frames[-1]["code"] == "server_error"
    assert conn.frames[-1]["retriable"] is True
    assert not session.busy


@pytest.mark.asyncio
async def test_colliding_user_ids_cannot_share_a_home(tmp_path: Path) -> None:
    owner = AgentSession("a.b", tmp_path, _ScriptedRuntime([]))
    await owner.submit("claim")

    intruder_runtime = _ScriptedRuntime([{"type": "assistant"}])
    intruder = AgentSession("a_b", tmp_path, intruder_runtime)
    assert intruder.home_directory == owner.home_directory
    conn = _Conn()
    intruder.attach(conn)

    await intruder.submit("hi")

    assert intruder_runtime.calls == []
    assert isinstance(intruder.last_error, WorkspaceConflictError)
    assert conn.frames[-1]["code"] == "server_error"


@pytest.mark.asyncio
async def test_simultaneous_first_use_has_a_single_owner(tmp_path: Path) -> None:
    sessions = [
        AgentSession(user_id, tmp_path, _ScriptedRuntime([]))
        for user_id in ("a.b", "a_b", "a/b", "a\\b")
    ]

    results = await asyncio.gather(
        *(session.ensure_home_directory() for session in sessions),
        return_exceptions=True,
    )

    winners = [s for s, r in zip(sessions, results) if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 3
    assert all(isinstance(exc, WorkspaceConflictError) for exc in losers)
    home = winners[0].home_directory
    assert (home / OWNER_MARKER).read_text(encoding="utf-8") == winners[0].user_id
    assert [p.name for p in home.iterdir()] == [OWNER_MARKER]


class _PlainEvents:
    """Async iterator without ``aclose``."""

    def __init__(self, events: list[dict]) -> None:
        self._events = iter(events)

    def __aiter__(self) -> _PlainEvents:
        return self

    async def __anext__(self) -> dict:
        try:
            return next(self._events)
        except StopIteration:
            raise StopAsyncIteration from None


class _PlainRuntime(AgentRuntime):
    @property
    def name(self) -> str:
        return "plain"

    def run(self, request: RuntimeRequest) -> _PlainEvents:
        return _PlainEvents([{"type": "assistant", "n": 1}])


@pytest.mark.asyncio
async def test_runtime_may_return_plain_async_iterator(tmp_path: Path) -> None:
    session = AgentSession("alice", tmp_path, _PlainRuntime())
    conn = _Conn()
    session.attach(conn)

    await session.submit("hello")

    assert _types(conn) == ["message", "done"]
    assert session.last_error is None
    assert not session.busy


@pytest.mark.asyncio
async def test_attach_replays_known_session_id_first(tmp_path: Path) -> None:
    session = AgentSession("alice", tmp_path, _ScriptedRuntime([INIT_EVENT]))
    await session.submit("hello")

    late = _Conn()
    session.attach(late)

    assert late.frames == [{"type": "session_init", "sessionId": "remote-1"}]


@pytest.mark.asyncio
async def test_attach_is_idempotent(tmp_path: Path) -> None:
    session = AgentSession("alice", tmp_path, _ScriptedRuntime([{"type": "assistant"}]))
    conn = _Conn()
    session.attach(conn)
    session.attach(conn)
    assert session.connection_count == 1

    await session.submit("hi")
    assert _types(conn) == ["message", "done"]


@pytest.mark.asyncio
async def test_closed_and_failing_connections_are_skipped(tmp_path: Path) -> None:
    session = AgentSession("alice", tmp_path, _ScriptedRuntime([{"type": "assistant"}]))
    closed, broken, healthy = _Conn(open=False), _BrokenConn(), _Conn()
    for conn in (closed, broken, healthy):
        session.attach(conn)

    await session.submit("hi")

    assert closed.frames == []
    assert _types(healthy) == ["message", "done"]
    assert session.broadcast({"type": "pong"}) == 1


@pytest.mark.asyncio
async def test_detach_does_not_cancel_work(tmp_path: Path) -> None:
    runtime = _ScriptedRuntime([INIT_EVENT], block=True)
    session = AgentSession("alice", tmp_path, runtime)
    conn = _Conn()
    session.attach(conn)

    task = asyncio.create_task(session.submit("work"))
    await runtime.started.wait()
    session.detach(conn)

    assert not session.has_connections()
    assert session.busy
    assert not session.pending_cancellation.cancelled

    session.interrupt()
    await task


@pytest.mark.asyncio
async def test_events_are_reported_to_callback(tmp_path: Path) -> None:
    seen: list[dict] = []

    async def _observer(event: dict) -> None:
        seen.append(event)

    session = AgentSession(
        "alice", tmp_path, _ScriptedRuntime([INIT_EVENT, {"type": "assistant"}]),
        event_callback=_observer,
    )
    await session.submit("hi")

    assert [e["event"] for e in seen] == ["session_init", "request_completed"]
    assert seen[0]["session_id"] == "remote-1"
    assert seen[0]["home_directory"] == str(session.home_directory)
    assert seen[1]["event_count"] == 2


@pytest.mark.asyncio
async def test_activity_refreshed_per_event(tmp_path: Path) -> None:
    ticks = iter(range(100))
    session = AgentSession(
        "alice", tmp_path,
        _ScriptedRuntime([{"type": "assistant"}, {"type": "assistant"}]),
        clock=lambda: float(next(ticks)),
    )
    before = session.last_activity

    await session.submit("hi")

    # one touch on admission and one per event
    assert session.last_activity == before + 3
