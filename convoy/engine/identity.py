"""Filesystem-safe identifiers for per-user workspaces."""
from __future__ import annotations

import re

_SEPARATOR_RUN = re.compile(r"[/\\.]+")
_UNSAFE_CHAR = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_user_id(raw_id: str) -> str:
    """Map an arbitrary user identifier to a single safe path segment.

    Runs of ``/``, ``\\`` and ``.`` collapse to one ``_``; any other
    character outside ``[A-Za-z0-9_-]`` becomes ``_``. The result never
    contains a separator or ``..``. Distinct inputs can collide
    (``"a.b"`` and ``"a_b"``); AgentSession guards against that with an
    ownership marker in the home directory.
    """
    text = "" if raw_id is None else str(raw_id)
    safe = _UNSAFE_CHAR.sub("_", _SEPARATOR_RUN.sub("_", text))
    return safe or "_"


def normalize_skill_name(skill_name: str) -> str:
    """Normalize a skill name for use as a directory name."""
    safe = _UNSAFE_CHAR.sub("_", skill_name or "")
    return safe or "_"
