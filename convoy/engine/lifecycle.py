"""Session lifecycle state machine.

State Diagram:

    IDLE ──submit──> BUSY ──┬──> IDLE   (stream exhausted, done)
                            ├──> IDLE   (runtime failure, error recorded)
                            └──> IDLE   (interrupt, aborted)

Entry into BUSY requires IDLE. There are no other states.
"""
from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"


VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.BUSY},
    SessionState.BUSY: {SessionState.IDLE},
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none"
        raise ValueError(
            f"Invalid session transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
