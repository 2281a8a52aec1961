"""Exception hierarchy for the session engine.

Every per-request failure is contained inside AgentSession.submit and
reported to clients as an ``error`` message; these types exist so the
containment code can pick the right error code.
"""
from __future__ import annotations


class ConvoyError(Exception):
    """Base exception for all convoy errors."""


class AgentInterruptedError(ConvoyError):
    """The in-flight runtime call was cancelled on purpose."""
    def __init__(self, reason: str = "user_interrupt"):
        self.reason = reason
        super().__init__(f"Request interrupted: {reason}")


class WorkspaceSetupError(ConvoyError):
    """The per-user home directory could not be prepared."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot prepare workspace {path}: {reason}")


class WorkspaceConflictError(WorkspaceSetupError):
    """Two distinct user ids sanitized to the same home directory."""
    def __init__(self, path: str, owner: str, user_id: str):
        self.owner = owner
        self.user_id = user_id
        super().__init__(
            path,
            f"directory is owned by another user (owner={owner!r}, requested={user_id!r})",
        )


class RuntimeUnavailableError(ConvoyError):
    """The agent runtime (SDK or CLI) cannot be used."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Agent runtime unavailable: {reason}")


class InvalidMessageError(ConvoyError):
    """An inbound transport frame could not be parsed."""


class SkillNotFoundError(ConvoyError):
    """Requested skill does not exist in the skills store."""
    def __init__(self, skill_name: str):
        self.skill_name = skill_name
        super().__init__(f"Skill not found in store: {skill_name}")


class MetadataStoreError(ConvoyError):
    """The session metadata store rejected an operation."""
