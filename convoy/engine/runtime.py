"""Agent runtime contract and the Claude Agent SDK implementation.

The session engine treats the runtime as an opaque streaming call:
it hands over a prompt, a working directory, a cancellation handle and
an optional continuation id, and consumes a lazy sequence of event
dicts until exhaustion or error.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from convoy.adapters.sdk_events import message_to_event

from .errors import AgentInterruptedError, RuntimeUnavailableError

logger = logging.getLogger(__name__)


class CancellationHandle:
    """Cooperative cancellation signal for one in-flight runtime call.

    ``cancel()`` is synchronous and idempotent. Runtimes either poll
    ``cancelled``, await ``wait()``, or register a callback.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "user_interrupt") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.warning("Cancellation callback failed", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancel (immediately if already cancelled)."""
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason


@dataclass
class RuntimeRequest:
    """Everything one runtime call needs. No ambient process state."""
    prompt: str
    working_directory: Path
    cancellation: CancellationHandle
    continuation_id: str | None = None


class AgentRuntime(abc.ABC):
    """Abstract agent runtime.

    Implementations must yield JSON-compatible dicts. A fresh
    conversation's first events include ``{"type": "system",
    "subtype": "init", "session_id": ...}``.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short runtime name (e.g. 'claude')."""

    @abc.abstractmethod
    def run(self, request: RuntimeRequest) -> AsyncIterator[dict[str, Any]]:
        """Start one call and return its event stream."""

    def is_available(self) -> bool:
        return True


async def close_stream(iterator: AsyncIterator[Any]) -> None:
    """Close ``iterator`` if it supports ``aclose``; plain iterators are left alone."""
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError:
        # Generator still running after a cancelled __anext__.
        logger.debug("Runtime stream could not be closed", exc_info=True)


async def iterate_until_cancelled(
    iterator: AsyncIterator[Any],
    handle: CancellationHandle,
) -> AsyncIterator[Any]:
    """Yield items from ``iterator`` until it ends or ``handle`` fires.

    Each pending ``__anext__`` is raced against the handle so a runtime
    that is stuck waiting on its subprocess still stops promptly.
    Raises AgentInterruptedError on cancellation.
    """
    cancel_wait = asyncio.ensure_future(handle.wait())
    try:
        while True:
            if handle.cancelled:
                raise AgentInterruptedError(handle.reason or "cancelled")
            next_item = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait(
                {next_item, cancel_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_item not in done:
                next_item.cancel()
                await asyncio.wait({next_item})
                if not next_item.cancelled() and next_item.exception() is not None:
                    logger.debug(
                        "Runtime stream raised after cancellation: %r",
                        next_item.exception(),
                    )
                raise AgentInterruptedError(handle.reason or "cancelled")
            try:
                item = next_item.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        cancel_wait.cancel()
        await close_stream(iterator)


class ClaudeAgentRuntime(AgentRuntime):
    """Runtime backed by the Claude Agent SDK ``query()`` call.

    The per-user home directory is both the agent's cwd and the parent of
    its Claude config directory (``<home>/.claude``), so conversation logs
    land under ``<home>/.claude/projects``. Credentials and the config
    directory are passed through the per-call ``env`` option.
    """

    def __init__(
        self,
        model: str | None = None,
        *,
        permission_mode: str = "bypassPermissions",
        api_key_env: str | None = "ANTHROPIC_API_KEY",
        base_url: str | None = None,
        cli_path: str | None = None,
    ) -> None:
        self._model = model
        self._permission_mode = permission_mode
        self._api_key_env = api_key_env
        self._base_url = base_url
        self._cli_path = cli_path

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return False
        return True

    def build_env(self, working_directory: Path) -> dict[str, str]:
        """Per-call environment for the SDK subprocess."""
        env = {"CLAUDE_CONFIG_DIR": str(working_directory / ".claude")}
        if self._api_key_env:
            api_key = os.getenv(self._api_key_env)
            if api_key:
                env["ANTHROPIC_API_KEY"] = api_key
        if self._base_url:
            env["ANTHROPIC_BASE_URL"] = self._base_url
            env["ANTHROPIC_API_URL"] = self._base_url
        if self._model:
            env["ANTHROPIC_MODEL"] = self._model
        return env

    def build_options_kwargs(self, request: RuntimeRequest) -> dict[str, Any]:
        options_kwargs: dict[str, Any] = dict(
            cwd=str(request.working_directory),
            permission_mode=self._permission_mode,
            env=self.build_env(request.working_directory),
        )
        if self._model:
            options_kwargs["model"] = self._model
        if request.continuation_id:
            options_kwargs["resume"] = request.continuation_id
        if self._cli_path:
            resolved_cli = shutil.which(self._cli_path)
            if resolved_cli:
                options_kwargs["cli_path"] = resolved_cli
            else:
                logger.warning(
                    "Configured Claude CLI not found: %s; falling back to SDK default",
                    self._cli_path,
                )
        return options_kwargs

    async def run(self, request: RuntimeRequest) -> AsyncIterator[dict[str, Any]]:
        """Stream SDK messages as wire events."""
        # Import SDK lazily so the engine imports without it (unit tests).
        try:
            from claude_agent_sdk import ClaudeAgentOptions, query
        except ImportError as exc:
            raise RuntimeUnavailableError("claude_agent_sdk not installed") from exc

        options = ClaudeAgentOptions(**self.build_options_kwargs(request))
        logger.info(
            "Claude query starting cwd=%s model=%s resume=%s",
            request.working_directory,
            self._model or "<sdk default>",
            request.continuation_id or "-",
        )
        stream = query(prompt=request.prompt, options=options)
        async with aclosing(iterate_until_cancelled(stream, request.cancellation)) as sdk_messages:
            async for message in sdk_messages:
                yield message_to_event(message)
