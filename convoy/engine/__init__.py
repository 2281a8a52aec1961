"""Convoy engine — per-user agent sessions over a shared Claude Agent SDK runtime."""
from .config import EventCallback, ServerConfig, fire_event
from .errors import (
    AgentInterruptedError,
    ConvoyError,
    InvalidMessageError,
    MetadataStoreError,
    RuntimeUnavailableError,
    SkillNotFoundError,
    WorkspaceConflictError,
    WorkspaceSetupError,
)
from .identity import normalize_skill_name, sanitize_user_id
from .lifecycle import SessionState
from .registry import RegistryEntry, SessionRegistry
from .runtime import (
    AgentRuntime,
    CancellationHandle,
    ClaudeAgentRuntime,
    RuntimeRequest,
    iterate_until_cancelled,
)
from .session import AgentSession

__all__ = [
    # Sessions
    "AgentSession",
    "RegistryEntry",
    "SessionRegistry",
    "SessionState",
    # Runtime
    "AgentRuntime",
    "CancellationHandle",
    "ClaudeAgentRuntime",
    "RuntimeRequest",
    "iterate_until_cancelled",
    # Config
    "EventCallback",
    "ServerConfig",
    "fire_event",
    # Identity
    "normalize_skill_name",
    "sanitize_user_id",
    # Errors
    "AgentInterruptedError",
    "ConvoyError",
    "InvalidMessageError",
    "MetadataStoreError",
    "RuntimeUnavailableError",
    "SkillNotFoundError",
    "WorkspaceConflictError",
    "WorkspaceSetupError",
]
