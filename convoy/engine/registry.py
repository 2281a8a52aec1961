"""SessionRegistry — owns all live AgentSessions.

Responsibilities:
- Create and track one session per user id
- Map transport connections to sessions (at most one session each)
- Evict sessions that are idle, unattached and not busy

Construct one registry per process and pass it to whatever needs it.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import EventCallback
from .runtime import AgentRuntime
from .session import AgentSession, Connection

logger = logging.getLogger(__name__)

# Reclaim sessions after 30 minutes without activity.
DEFAULT_IDLE_THRESHOLD_SECONDS = 30 * 60.0
# Check for reclaimable sessions every 5 minutes.
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60.0


@dataclass
class RegistryEntry:
    session: AgentSession
    user_id: str
    created_at: float = field(default_factory=time.time)


class SessionRegistry:
    """Process-wide map of user id -> AgentSession."""

    def __init__(
        self,
        sessions_root: str | Path,
        runtime: AgentRuntime,
        *,
        idle_threshold: float = DEFAULT_IDLE_THRESHOLD_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        event_callback: EventCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions_root = Path(sessions_root).expanduser().resolve()
        self._runtime = runtime
        self.idle_threshold = idle_threshold
        self.sweep_interval = sweep_interval
        self._event_callback = event_callback
        self._clock = clock
        self._entries: dict[str, RegistryEntry] = {}
        self._connection_sessions: dict[Connection, AgentSession] = {}
        self._sweep_task: asyncio.Task | None = None
        logger.info(
            "SessionRegistry init sessions_root=%s idle=%.0fs sweep=%.0fs",
            self._sessions_root, idle_threshold, sweep_interval,
        )

    @property
    def sessions_root(self) -> Path:
        return self._sessions_root

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    # ── Sessions ──

    def get(self, user_id: str) -> AgentSession | None:
        entry = self._entries.get(user_id)
        return entry.session if entry else None

    def entry(self, user_id: str) -> RegistryEntry | None:
        return self._entries.get(user_id)

    def get_or_create(self, user_id: str) -> AgentSession:
        """Return the user's live session, creating it on first use."""
        entry = self._entries.get(user_id)
        if entry is not None:
            return entry.session

        session = AgentSession(
            user_id,
            self._sessions_root,
            self._runtime,
            event_callback=self._event_callback,
            clock=self._clock,
        )
        self._entries[user_id] = RegistryEntry(session=session, user_id=user_id)
        logger.info(
            "Created session for user %s home=%s (total: %d)",
            user_id, session.home_directory, len(self._entries),
        )
        return session

    # ── Connections ──

    def attach_connection(self, connection: Connection, session: AgentSession) -> None:
        """Bind a connection to ``session``, leaving any previous session."""
        previous = self._connection_sessions.get(connection)
        if previous is not None and previous is not session:
            previous.detach(connection)
        self._connection_sessions[connection] = session
        session.attach(connection)

    def detach_connection(self, connection: Connection) -> AgentSession | None:
        """Unbind a connection from its session (if any)."""
        session = self._connection_sessions.pop(connection, None)
        if session is not None:
            session.detach(connection)
        return session

    def session_for_connection(self, connection: Connection) -> AgentSession | None:
        return self._connection_sessions.get(connection)

    # ── Eviction ──

    def is_evictable(self, session: AgentSession, now: float | None = None) -> bool:
        """Idle past the threshold, no connections, and not busy."""
        now = self._clock() if now is None else now
        return (
            now - session.last_activity > self.idle_threshold
            and not session.has_connections()
            and not session.busy
        )

    def sweep(self, now: float | None = None) -> list[str]:
        """Evict abandoned sessions. Returns the evicted user ids."""
        now = self._clock() if now is None else now
        expired = [
            user_id
            for user_id, entry in self._entries.items()
            if self.is_evictable(entry.session, now)
        ]
        for user_id in expired:
            entry = self._entries.pop(user_id, None)
            if entry is None:
                continue
            # Ensure nothing in flight survives eviction.
            entry.session.interrupt("evicted")
            for connection, session in list(self._connection_sessions.items()):
                if session is entry.session:
                    del self._connection_sessions[connection]
            logger.info(
                "Evicted idle session for user %s after %.1f minutes",
                user_id, (now - entry.session.last_activity) / 60.0,
            )
        if expired:
            logger.info(
                "Sweep evicted %d session(s) (remaining: %d)",
                len(expired), len(self._entries),
            )
        return expired

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval)
                try:
                    self.sweep()
                except Exception:
                    logger.warning("Session sweep failed", exc_info=True)
        except asyncio.CancelledError:
            pass

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        if self.sweep_interval <= 0:
            logger.info("Session sweep disabled (interval <= 0)")
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def shutdown(self) -> None:
        """Interrupt every session and forget all state."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        interrupted = 0
        for entry in self._entries.values():
            if entry.session.interrupt("shutdown"):
                interrupted += 1
        total = len(self._entries)
        self._entries.clear()
        self._connection_sessions.clear()
        logger.info(
            "SessionRegistry shutdown complete (sessions=%d interrupted=%d)",
            total, interrupted,
        )

    def stats(self) -> dict[str, int]:
        return {
            "total_sessions": len(self._entries),
            "total_connections": len(self._connection_sessions),
            "busy_sessions": sum(1 for e in self._entries.values() if e.session.busy),
        }
