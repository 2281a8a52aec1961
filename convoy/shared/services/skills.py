"""Skills manager — list the skills store and install skills per user.

A skill is a directory holding a ``SKILL.md`` file (plus any assets).
The store lives in one shared directory:

    skills-store/
        pdf-tools/
            SKILL.md
            scripts/...

Enabling a skill copies its directory into the user's session home at
``<sessions_root>/<user>/.claude/skills/<name>`` where the agent runtime
discovers it. ``SKILL.md`` starts with YAML frontmatter:

    ---
    name: PDF tools
    description: Extract and fill PDF forms
    category: documents
    ---
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml

from convoy.engine.errors import SkillNotFoundError
from convoy.engine.identity import normalize_skill_name, sanitize_user_id

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
DEFAULT_CATEGORY = "general"


@dataclass
class SkillInfo:
    """A skill as listed to the browser."""

    slug: str
    name: str
    description: str = ""
    category: str = DEFAULT_CATEGORY

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_skill_file(text: str, slug: str) -> SkillInfo:
    """Parse SKILL.md frontmatter, falling back to the first heading."""
    meta: dict[str, Any] = {}
    body = text
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) == 3:
            try:
                loaded = yaml.safe_load(parts[1])
            except yaml.YAMLError:
                logger.warning("Invalid frontmatter in skill %s", slug)
                loaded = None
            if isinstance(loaded, dict):
                meta = loaded
            body = parts[2]

    name = str(meta.get("name") or "").strip()
    if not name:
        for line in body.splitlines():
            if line.startswith("#"):
                name = line.lstrip("#").strip()
                break
    return SkillInfo(
        slug=slug,
        name=name or slug,
        description=str(meta.get("description") or "").strip(),
        category=str(meta.get("category") or DEFAULT_CATEGORY).strip(),
    )


class SkillsManager:
    """Lists the shared skills store and manages per-user installs."""

    def __init__(self, store_dir: str | Path, sessions_root: str | Path) -> None:
        self._store_dir = Path(store_dir).expanduser().resolve()
        self._sessions_root = Path(sessions_root).expanduser().resolve()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def user_skills_dir(self, user_id: str) -> Path:
        return self._sessions_root / sanitize_user_id(user_id) / ".claude" / "skills"

    def _read_skill(self, skill_dir: Path) -> SkillInfo | None:
        skill_file = skill_dir / SKILL_FILE
        if not skill_file.is_file():
            return None
        try:
            text = skill_file.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read %s: %s", skill_file, exc)
            return None
        return parse_skill_file(text, skill_dir.name)

    def _list_dir(self, root: Path) -> list[SkillInfo]:
        if not root.is_dir():
            return []
        skills: list[SkillInfo] = []
        for child in sorted(root.iterdir()):
            if not child.is_dir():
                continue
            info = self._read_skill(child)
            if info is not None:
                skills.append(info)
        return skills

    def list_store(self) -> list[SkillInfo]:
        """All skills available for installation."""
        skills = self._list_dir(self._store_dir)
        logger.debug("Skills store %s: %d skill(s)", self._store_dir, len(skills))
        return skills

    def enabled_for_user(self, user_id: str) -> list[SkillInfo]:
        """Skills currently installed in the user's home."""
        return self._list_dir(self.user_skills_dir(user_id))

    def enable(self, user_id: str, name: str) -> SkillInfo:
        """Install (or reinstall) a store skill for ``user_id``."""
        slug = normalize_skill_name(name)
        source = self._store_dir / slug
        info = self._read_skill(source) if source.is_dir() else None
        if info is None:
            raise SkillNotFoundError(name)

        target = self.user_skills_dir(user_id) / slug
        if target.exists():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, target)
        logger.info("Enabled skill %s for user %s", slug, user_id)
        return info

    def disable(self, user_id: str, name: str) -> bool:
        """Remove an installed skill. Returns False if it was not installed."""
        slug = normalize_skill_name(name)
        target = self.user_skills_dir(user_id) / slug
        if not target.exists():
            return False
        shutil.rmtree(target)
        logger.info("Disabled skill %s for user %s", slug, user_id)
        return True
