"""Queue-backed transport connections.

A Session broadcasts by calling ``send(bytes)`` on every attached
connection. That call must never block, so each connection owns a
bounded asyncio.Queue; the transport handler (WebSocket or SSE) drains
it and does the actual socket writes.
"""
from __future__ import annotations

import asyncio
import itertools
import logging

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class QueueConnection:
    """One browser transport (WebSocket or SSE stream)."""

    def __init__(
        self,
        user_id: str,
        *,
        transport: str = "ws",
        maxsize: int = 5000,
    ) -> None:
        self.connection_id = f"{transport}-{next(_ids)}"
        self.user_id = user_id
        self.transport = transport
        # Continuation id requested via an inbound ``resume`` frame.
        self.resume_session_id: str | None = None
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def __repr__(self) -> str:
        return f"QueueConnection({self.connection_id}, user={self.user_id!r})"

    def is_open(self) -> bool:
        return not self._closed

    def send(self, data: bytes) -> None:
        """Enqueue a frame without blocking; drop it if the queue is full."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Connection %s queue full, dropping frame (dropped=%d)",
                self.connection_id, self.dropped,
            )

    async def receive(self, timeout: float | None = None) -> bytes | None:
        """Next queued frame, or None on timeout."""
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Mark closed; later sends are ignored."""
        self._closed = True
