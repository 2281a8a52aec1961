"""AgentSession — one user's conversation with the agent runtime.

Responsibilities:
- Owns the user's isolated home directory (created lazily)
- Admits at most one in-flight runtime call (single-flight)
- Fans runtime events out to every attached transport connection
- Supports interruption of the in-flight call

All methods except ``submit`` are synchronous and never suspend, so
``interrupt`` and ``attach``/``detach`` are safe to call while a submit
is parked on the runtime stream.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from convoy.adapters import messages

from .config import EventCallback, fire_event
from .errors import AgentInterruptedError, WorkspaceConflictError, WorkspaceSetupError
from .identity import sanitize_user_id
from .lifecycle import SessionState, validate_transition
from .runtime import AgentRuntime, CancellationHandle, RuntimeRequest, close_stream

logger = logging.getLogger(__name__)

OWNER_MARKER = ".convoy-owner"


class Connection(Protocol):
    """What a session needs from a transport connection."""

    def is_open(self) -> bool: ...

    def send(self, data: bytes) -> None: ...


class AgentSession:
    """Per-user session: home directory, single-flight slot, fan-out."""

    def __init__(
        self,
        user_id: str,
        sessions_root: str | Path,
        runtime: AgentRuntime,
        *,
        event_callback: EventCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._user_id = user_id
        root = Path(sessions_root).expanduser().resolve()
        self._home_directory = root / sanitize_user_id(user_id)
        self._runtime = runtime
        self._event_callback = event_callback
        self._clock = clock

        self.remote_session_id: str | None = None
        self.last_activity: float = clock()
        self.last_error: BaseException | None = None

        self._state = SessionState.IDLE
        self._cancellation: CancellationHandle | None = None
        self._connections: set[Connection] = set()
        self._home_ready = False
        self.request_count = 0

    def __repr__(self) -> str:
        return (
            f"AgentSession(user={self._user_id!r}, state={self._state.value}, "
            f"connections={len(self._connections)})"
        )

    # ── Properties ──

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def home_directory(self) -> Path:
        return self._home_directory

    @property
    def busy(self) -> bool:
        return self._state is SessionState.BUSY

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_cancellation(self) -> CancellationHandle | None:
        return self._cancellation

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def touch(self) -> None:
        self.last_activity = self._clock()

    # ── Connections ──

    def attach(self, connection: Connection) -> None:
        """Subscribe a connection; replay the known conversation id to it."""
        self._connections.add(connection)
        logger.debug(
            "Connection attached to session %s (total: %d)",
            self._user_id, len(self._connections),
        )
        if self.remote_session_id:
            self._send(connection, messages.encode(messages.session_init(self.remote_session_id)))

    def detach(self, connection: Connection) -> None:
        """Unsubscribe a connection. In-flight work keeps running."""
        self._connections.discard(connection)
        logger.debug(
            "Connection detached from session %s (remaining: %d)",
            self._user_id, len(self._connections),
        )

    def has_connections(self) -> bool:
        return bool(self._connections)

    def _send(self, connection: Connection, data: bytes) -> bool:
        if not connection.is_open():
            return False
        try:
            connection.send(data)
        except Exception:
            logger.debug(
                "Dropping frame for connection %r of session %s",
                connection, self._user_id, exc_info=True,
            )
            return False
        return True

    def broadcast(self, message: dict[str, Any]) -> int:
        """Deliver one message to every open connection. Returns deliveries."""
        data = messages.encode(message)
        delivered = 0
        for connection in list(self._connections):
            if self._send(connection, data):
                delivered += 1
        return delivered

    # ── State transitions ──

    def _enter_busy(self, handle: CancellationHandle) -> None:
        validate_transition(self._state, SessionState.BUSY)
        self._state = SessionState.BUSY
        self._cancellation = handle

    def _enter_idle(self) -> None:
        validate_transition(self._state, SessionState.IDLE)
        self._state = SessionState.IDLE
        self._cancellation = None

    def _owns(self, handle: CancellationHandle) -> bool:
        """True while ``handle`` is still the live in-flight call."""
        return self._cancellation is handle and not handle.cancelled

    def interrupt(self, reason: str = "user_interrupt") -> bool:
        """Cancel the in-flight call and return to idle immediately.

        Returns False (and does nothing) when the session is idle.
        """
        handle = self._cancellation
        if not self.busy or handle is None:
            return False
        handle.cancel(reason)
        self._enter_idle()
        self.last_error = AgentInterruptedError(reason)
        logger.info("Session %s interrupted (%s)", self._user_id, reason)
        self.broadcast(
            messages.error_message(
                messages.ABORTED, "Request was interrupted", retriable=False,
            )
        )
        return True

    # ── Home directory ──

    def _prepare_home(self) -> None:
        home = self._home_directory
        try:
            home.mkdir(parents=True, exist_ok=True)
            self._claim_home(home)
        except WorkspaceConflictError:
            raise
        except OSError as exc:
            raise WorkspaceSetupError(str(home), str(exc)) from exc

    def _claim_home(self, home: Path) -> None:
        """Record this user as the directory's owner, or verify an existing claim.

        The marker is written to a private temp file and hard-linked into
        place, so a concurrent claimant either wins the link or reads a
        complete marker.
        """
        marker = home / OWNER_MARKER
        staged = home / f"{OWNER_MARKER}.{os.getpid()}.{id(self):x}"
        staged.write_text(self._user_id, encoding="utf-8")
        try:
            os.link(staged, marker)
        except FileExistsError:
            owner = marker.read_text(encoding="utf-8").strip()
            if owner and owner != self._user_id:
                raise WorkspaceConflictError(str(home), owner, self._user_id) from None
        finally:
            staged.unlink(missing_ok=True)

    async def ensure_home_directory(self) -> Path:
        """Create the home directory on first use (idempotent)."""
        if not self._home_ready:
            await asyncio.to_thread(self._prepare_home)
            self._home_ready = True
            logger.info("Prepared home directory %s", self._home_directory)
        return self._home_directory

    # ── Requests ──

    async def submit(self, prompt: str, continuation_id: str | None = None) -> None:
        """Run one prompt through the runtime, broadcasting the results.

        Never raises for per-request failures; they are reported to
        attached connections as ``error`` messages.
        """
        if self.busy:
            logger.info("Rejected prompt for busy session %s", self._user_id)
            self.broadcast(
                messages.error_message(
                    messages.BUSY,
                    "Session is busy processing another request",
                    retriable=True,
                )
            )
            return

        handle = CancellationHandle()
        self._enter_busy(handle)
        self.last_error = None
        self.request_count += 1
        self.touch()
        started = time.monotonic()
        event_count = 0

        try:
            await self.ensure_home_directory()
            if not self._owns(handle):
                return
            request = RuntimeRequest(
                prompt=prompt,
                working_directory=self._home_directory,
                cancellation=handle,
                continuation_id=continuation_id,
            )
            stream = self._runtime.run(request)
            try:
                async for event in stream:
                    if not self._owns(handle):
                        # Late event from a superseded call.
                        break
                    self.touch()
                    event_count += 1
                    identity = messages.session_identity(event)
                    if identity and identity != self.remote_session_id:
                        self.remote_session_id = identity
                        logger.info(
                            "Session %s bound to remote session %s",
                            self._user_id, identity,
                        )
                        self.broadcast(messages.session_init(identity))
                        await fire_event(self._event_callback, {
                            "event": "session_init",
                            "user_id": self._user_id,
                            "session_id": identity,
                            "home_directory": str(self._home_directory),
                        })
                        if not self._owns(handle):
                            break
                    self.broadcast(messages.agent_message(event))
            finally:
                await close_stream(stream)

            if not self._owns(handle):
                return
            self.broadcast(messages.done_message())
            logger.info(
                "Session %s request completed events=%d duration_ms=%.1f",
                self._user_id, event_count, (time.monotonic() - started) * 1000,
            )
            await fire_event(self._event_callback, {
                "event": "request_completed",
                "user_id": self._user_id,
                "session_id": self.remote_session_id,
                "home_directory": str(self._home_directory),
                "event_count": event_count,
            })
        except Exception as exc:
            self._report_failure(handle, exc)
        finally:
            if self._cancellation is handle:
                self._enter_idle()

    def _report_failure(self, handle: CancellationHandle, exc: Exception) -> None:
        if handle.cancelled or self._cancellation is not handle:
            # interrupt() already recorded and reported the abort.
            logger.debug(
                "Session %s: cancelled call ended with %r", self._user_id, exc,
            )
            return
        self.last_error = exc
        if isinstance(exc, AgentInterruptedError):
            code, retriable = messages.ABORTED, False
        elif isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            code, retriable = messages.TIMEOUT, True
        else:
            code, retriable = messages.SERVER_ERROR, True
        logger.warning(
            "Session %s request failed code=%s: %s",
            self._user_id, code, exc, exc_info=code == messages.SERVER_ERROR,
        )
        self.broadcast(
            messages.error_message(code, str(exc) or type(exc).__name__, retriable=retriable)
        )
