"""Convert Claude Agent SDK message objects into plain JSON events.

The SDK yields typed dataclasses (SystemMessage, AssistantMessage,
ResultMessage, ...). Clients expect the CLI's wire shape, e.g.
``{"type": "system", "subtype": "init", "session_id": "..."}``, so each
message is flattened into a dict tagged with a ``type`` derived from its
class name.
"""
from __future__ import annotations

import dataclasses
import re
from typing import Any

# Explicit tags for SDK classes whose names do not reduce cleanly.
_TYPE_TAGS = {
    "SystemMessage": "system",
    "UserMessage": "user",
    "AssistantMessage": "assistant",
    "ResultMessage": "result",
    "StreamEvent": "stream_event",
    "TextBlock": "text",
    "ThinkingBlock": "thinking",
    "ToolUseBlock": "tool_use",
    "ToolResultBlock": "tool_result",
}


def _type_tag(obj: Any) -> str:
    name = type(obj).__name__
    if name in _TYPE_TAGS:
        return _TYPE_TAGS[name]
    base = re.sub(r"(Message|Block|Event)$", "", name) or name
    return re.sub(r"(?<!^)(?=[A-Z])", "_", base).lower()


def to_jsonable(value: Any) -> Any:
    """Recursively convert SDK dataclasses into JSON-compatible values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        out: dict[str, Any] = {"type": _type_tag(value)}
        for f in dataclasses.fields(value):
            out[f.name] = to_jsonable(getattr(value, f.name))
        return out
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def message_to_event(message: Any) -> dict[str, Any]:
    """Convert one SDK message to a wire event dict.

    SystemMessage carries its payload in ``data``; it is flattened so the
    init event exposes ``session_id`` at the top level.
    """
    if isinstance(message, dict):
        return dict(message)
    event = to_jsonable(message)
    if not isinstance(event, dict):
        return {"type": "unknown", "value": event}
    if event.get("type") == "system":
        data = event.pop("data", None)
        if isinstance(data, dict):
            for key, val in data.items():
                event.setdefault(key, val)
    return event
