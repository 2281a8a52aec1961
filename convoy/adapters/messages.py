"""Transport message shapes exchanged with browser clients.

Outbound messages are plain dicts with a ``type`` key, encoded once per
broadcast. Inbound WebSocket frames are parsed into typed dataclasses.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from convoy.engine.errors import InvalidMessageError

# Error codes carried by outbound ``error`` messages.
BUSY = "busy"
ABORTED = "aborted"
SERVER_ERROR = "server_error"
TIMEOUT = "timeout"
INVALID_MESSAGE = "invalid_message"


def session_init(session_id: str) -> dict[str, Any]:
    return {"type": "session_init", "sessionId": session_id}


def agent_message(event: dict[str, Any]) -> dict[str, Any]:
    return {"type": "message", "event": event}


def error_message(code: str, message: str, *, retriable: bool) -> dict[str, Any]:
    return {
        "type": "error",
        "code": code,
        "message": message,
        "retriable": retriable,
    }


def done_message() -> dict[str, Any]:
    return {"type": "done"}


def pong_message() -> dict[str, Any]:
    return {"type": "pong"}


def encode(message: dict[str, Any]) -> bytes:
    """Serialize an outbound message to UTF-8 JSON bytes."""
    return json.dumps(message, default=str, ensure_ascii=False).encode("utf-8")


def is_terminal(message: dict[str, Any]) -> bool:
    """True for messages that end a request (``done`` or ``error``)."""
    return message.get("type") in {"done", "error"}


def session_identity(event: dict[str, Any]) -> str | None:
    """Return the remote session id an SDK ``system:init`` event carries."""
    if event.get("type") != "system" or event.get("subtype") != "init":
        return None
    session_id = event.get("session_id")
    if isinstance(session_id, str) and session_id:
        return session_id
    return None


# ── Inbound ──


@dataclass
class InboundMessage:
    """Base inbound frame."""
    type: str = ""


@dataclass
class ChatRequest(InboundMessage):
    type: str = "chat"
    content: str = ""
    session_id: str | None = None


@dataclass
class ResumeRequest(InboundMessage):
    type: str = "resume"
    session_id: str = ""


@dataclass
class AbortRequest(InboundMessage):
    type: str = "abort"


@dataclass
class PingRequest(InboundMessage):
    type: str = "ping"


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidMessageError(f"'{key}' must be a string")
    return value or None


def parse_inbound(raw: str | bytes) -> InboundMessage:
    """Parse one WebSocket frame. Raises InvalidMessageError."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidMessageError(f"Invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidMessageError("Message must be a JSON object")

    kind = payload.get("type")
    if kind == "chat":
        content = payload.get("content")
        if not isinstance(content, str) or not content:
            raise InvalidMessageError("'content' must be a non-empty string")
        return ChatRequest(content=content, session_id=_optional_str(payload, "sessionId"))
    if kind == "resume":
        session_id = _optional_str(payload, "sessionId")
        if not session_id:
            raise InvalidMessageError("'sessionId' is required for resume")
        return ResumeRequest(session_id=session_id)
    if kind == "abort":
        return AbortRequest()
    if kind == "ping":
        return PingRequest()
    raise InvalidMessageError(f"Unknown message type: {kind!r}")
