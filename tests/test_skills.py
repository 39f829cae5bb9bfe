"""Tests for SKILL.md discovery and loading."""

from pathlib import Path

from modelrelay.config import settings
from modelrelay.skills.library import (
    SkillLibrary,
    parse_front_matter,
)


def _write_skill(root: Path, folder: str, content: str) -> None:
    (root / folder).mkdir(parents=True)
    (root / folder / "SKILL.md").write_text(content, encoding="utf-8")


def _populate(root: Path) -> None:
    _write_skill(
        root,
        "research",
        "---\nname: Research\ndescription: Multi-step research\n---\nAlways cite sources.\n",
    )
    _write_skill(root, "legal", "---\ndescription: Legal drafting\nenabled: false\n---\nPlain words.")
    _write_skill(root, "notes", "Just a body without front matter.")
    _write_skill(root, ".hidden", "---\nname: hidden\n---\nsecret")
    (root / "empty").mkdir()


def test_parse_front_matter() -> None:
    """YAML metadata and body are split apart."""

    meta, body = parse_front_matter("---\nname: a\nenabled: false\n---\nBody text\n")

    assert meta == {"name": "a", "enabled": False}
    assert body == "Body text"


def test_parse_front_matter_tolerates_bad_yaml() -> None:
    """Malformed metadata is dropped, the body survives."""

    meta, body = parse_front_matter("---\nname: [unclosed\n---\nBody")

    assert meta == {}
    assert body == "Body"


def test_discover(tmp_path) -> None:
    """Every folder with a SKILL.md becomes a skill; hidden and empty ones are skipped."""

    _populate(tmp_path)

    library = SkillLibrary.discover(tmp_path)

    assert len(library) == 3
    research = library.get("research")
    assert research.name == "Research"
    assert research.description == "Multi-step research"
    assert research.instructions == "Always cite sources."
    # Name falls back to the folder
    assert library.get("legal").name == "legal"
    assert library.get("notes").instructions == "Just a body without front matter."
    assert library.get("hidden") is None


def test_enabled_flag_and_overrides(tmp_path) -> None:
    """Front matter can disable a skill; per-scope overrides win."""

    _populate(tmp_path)
    library = SkillLibrary.discover(tmp_path)

    assert sorted(s.name for s in library.enabled_skills()) == ["Research", "notes"]
    assert not library.is_enabled("legal")
    assert library.is_enabled("legal", {"legal": True})
    assert not library.is_enabled("notes", {"notes": False})


def test_load_instructions(tmp_path) -> None:
    """Instructions are keyed by canonical name; unknown names are omitted."""

    _populate(tmp_path)
    library = SkillLibrary.discover(tmp_path)

    assert library.load_instructions(["RESEARCH", "missing"]) == {"Research": "Always cite sources."}


def test_discover_defaults_to_settings(tmp_path, monkeypatch) -> None:
    """Without an argument the configured directory is scanned."""

    _populate(tmp_path)
    monkeypatch.setattr(settings, "SKILLS_DIR", str(tmp_path))

    assert len(SkillLibrary.discover()) == 3


def test_discover_missing_directory(tmp_path) -> None:
    """A directory that does not exist yields an empty library."""

    assert len(SkillLibrary.discover(tmp_path / "nope")) == 0
