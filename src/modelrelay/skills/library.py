"""
Skill library: instruction documents the model can activate on demand.

A skill lives in its own directory as ``<dir>/SKILL.md``, a Markdown file with YAML front
matter::

    ---
    name: research
    description: Multi-step web research with citations
    enabled: true
    ---
    Full instructions ...

Only names and descriptions are disclosed up front; instructions are loaded when selected.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

import yaml

from modelrelay.config import settings

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"


def parse_front_matter(content: str) -> Tuple[Dict[str, Any], str]:
    """Split ``content`` into its YAML front matter mapping and the Markdown body."""
    if not content.lstrip().startswith("---"):
        return {}, content.strip()
    parts = content.lstrip().split("---", 2)
    if len(parts) < 3:
        return {}, content.strip()
    try:
        meta = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError as exc:
        logger.warning("Invalid skill front matter: %s", exc)
        meta = {}
    if not isinstance(meta, dict):
        meta = {}
    return meta, parts[2].strip()


@dataclass
class Skill:
    name: str
    description: str = ""
    instructions: str = ""
    enabled: bool = True
    path: Optional[Path] = None

    @classmethod
    def from_file(cls, path: Path) -> "Skill":
        meta, body = parse_front_matter(path.read_text(encoding="utf-8"))
        return cls(
            name=str(meta.get("name") or path.parent.name),
            description=str(meta.get("description") or ""),
            instructions=body,
            enabled=bool(meta.get("enabled", True)),
            path=path,
        )


class SkillLibrary:
    """Name -> :class:`Skill` lookup; names compare case-insensitively."""

    def __init__(self, skills: Iterable[Skill] = ()) -> None:
        self._skills: Dict[str, Skill] = {}
        for skill in skills:
            self.add(skill)

    @classmethod
    def discover(cls, directory: str | Path | None = None) -> "SkillLibrary":
        """
        Build a library from every ``*/SKILL.md`` below *directory*.

        Defaults to ``settings.SKILLS_DIR``; a missing directory yields an empty library.
        Unreadable skill files are logged and skipped.
        """
        library = cls()
        root = directory or settings.SKILLS_DIR
        if not root:
            return library
        base = Path(root).expanduser()
        if not base.is_dir():
            logger.debug("Skills directory %s does not exist", base)
            return library
        for entry in sorted(base.iterdir()):
            md = entry / SKILL_FILENAME
            if entry.name.startswith(".") or not md.is_file():
                continue
            try:
                library.add(Skill.from_file(md))
            except OSError as exc:
                logger.warning("Could not read skill %s: %s", md, exc)
        logger.info("Discovered %d skill(s) under %s", len(library), base)
        return library

    def add(self, skill: Skill) -> None:
        self._skills[skill.name.lower()] = skill

    def get(self, name: str) -> Optional[Skill]:
        return self._skills.get(name.strip().lower())

    def __len__(self) -> int:
        return len(self._skills)

    def is_enabled(self, name: str, overrides: Mapping[str, bool] | None = None) -> bool:
        skill = self.get(name)
        if skill is None:
            return False
        if overrides and skill.name in overrides:
            return bool(overrides[skill.name])
        return skill.enabled

    def enabled_skills(self, overrides: Mapping[str, bool] | None = None) -> List[Skill]:
        return [s for s in self._skills.values() if self.is_enabled(s.name, overrides)]

    def load_instructions(self, names: Iterable[str]) -> Dict[str, str]:
        """Full instructions keyed by canonical skill name; unknown names are omitted."""
        loaded: Dict[str, str] = {}
        for name in names:
            skill = self.get(name)
            if skill is not None:
                loaded[skill.name] = skill.instructions
        return loaded
