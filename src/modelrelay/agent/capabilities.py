"""
Two-phase capability disclosure.

Phase 1 offers the model a compact catalog (names and one-line descriptions) and exactly one
tool, ``select_capabilities``.  Once the model calls it, phase 2 offers the full specs of the
selected tools, the instructions of the selected skills and ``select_capabilities`` again so
more can be added later.  Selections accumulate until :meth:`CapabilitySelector.reset`.
"""

import json
import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
)

from modelrelay.config import settings
from modelrelay.core.errors import CapabilitySelectionError
from modelrelay.core.schema import ToolSpec
from modelrelay.skills.library import SkillLibrary
from modelrelay.tools import (
    TOOL_REGISTRY,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

SELECT_CAPABILITIES = "select_capabilities"

SELECT_CAPABILITIES_SPEC = ToolSpec(
    name=SELECT_CAPABILITIES,
    description=(
        "Select which tools and skills to use for this conversation. "
        "Call this before starting your response."
    ),
    parameters={
        "type": "object",
        "properties": {
            "tools": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Names of tools to enable for this conversation",
            },
            "skills": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Names of skills to activate for guidance",
            },
        },
        "required": ["tools", "skills"],
    },
)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CapabilityEntry:
    kind: str  # "tool" | "skill"
    name: str
    description: str = ""
    category: Optional[str] = None

    @property
    def summary(self) -> str:
        # Catalog lines carry only the first line of a description
        return self.description.strip().splitlines()[0] if self.description.strip() else ""


@dataclass
class CapabilityCatalog:
    """Read-only view over the enabled tools and skills of one conversation scope."""

    tools: List[CapabilityEntry] = field(default_factory=list)
    skills: List[CapabilityEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.tools and not self.skills

    def as_system_prompt_section(self) -> str:
        if self.is_empty:
            return ""
        lines = [
            "# Available Capabilities",
            "",
            f"You have access to tools and skills. Before responding, call `{SELECT_CAPABILITIES}` "
            "to choose which ones you need for this conversation.",
            "",
        ]
        if self.tools:
            lines.append("## Tools (callable functions)")
            lines.extend(_catalog_line(entry) for entry in self.tools)
            lines.append("")
        if self.skills:
            lines.append("## Skills (specialized knowledge/guidance)")
            lines.extend(_catalog_line(entry) for entry in self.skills)
            lines.append("")
        return "\n".join(lines).rstrip()

    def as_compact_catalog(self) -> str:
        if self.is_empty:
            return ""
        items = [f"tool:{t.name}" for t in self.tools] + [f"skill:{s.name}" for s in self.skills]
        return "Available: " + ", ".join(items)

    def all_names(self) -> List[str]:
        return [t.name for t in self.tools] + [s.name for s in self.skills]

    def find(self, name: str) -> Optional[CapabilityEntry]:
        wanted = name.strip().lower()
        for entry in self.tools + self.skills:
            if entry.name.lower() == wanted:
                return entry
        return None

    def without(self, tool_names: List[str], skill_names: List[str]) -> "CapabilityCatalog":
        return CapabilityCatalog(
            tools=[t for t in self.tools if t.name not in tool_names],
            skills=[s for s in self.skills if s.name not in skill_names],
        )


def _catalog_line(entry: CapabilityEntry) -> str:
    category = f" [{entry.category}]" if entry.category else ""
    return f"- **{entry.name}**{category}: {entry.summary}"


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------
def parse_selection(arguments_json: str) -> Tuple[List[str], List[str]]:
    """
    Decode ``select_capabilities`` arguments into ``(tools, skills)``.

    Raises
    ------
    CapabilitySelectionError
        If the payload is not a JSON object or a field is not a list of strings.
    """
    try:
        payload = json.loads(arguments_json or "{}")
    except json.JSONDecodeError as exc:
        raise CapabilitySelectionError(f"Invalid arguments for {SELECT_CAPABILITIES}: {exc}") from exc
    if not isinstance(payload, dict):
        raise CapabilitySelectionError(f"Invalid arguments for {SELECT_CAPABILITIES}: expected an object")

    def _names(key: str) -> List[str]:
        value = payload.get(key) or []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise CapabilitySelectionError(f"'{key}' must be a list of names")
        return [str(item).strip() for item in value if str(item).strip()]

    return _names("tools"), _names("skills")


class CapabilitySelector:
    """
    Per-conversation state of the two-phase protocol.

    Parameters
    ----------
    tools:
        Registry the tool names are validated against.
    skills:
        Skill collaborator providing catalog entries and instructions.
    overrides:
        Per-scope ``{name: enabled}`` overrides applied to both tools and skills.
    two_phase:
        When false the selector is transparent: every enabled tool is offered directly.
    """

    def __init__(
        self,
        tools: ToolRegistry | None = None,
        skills: SkillLibrary | None = None,
        overrides: Mapping[str, bool] | None = None,
        *,
        two_phase: bool | None = None,
    ) -> None:
        self.tools = tools or TOOL_REGISTRY
        self.skills = skills or SkillLibrary()
        self.overrides: Dict[str, bool] = dict(overrides or {})
        self.two_phase = settings.TWO_PHASE_CAPABILITIES if two_phase is None else two_phase
        self.reset()

    def reset(self) -> None:
        self.has_selected = False
        self.selected_tool_names: List[str] = []
        self.selected_skill_names: List[str] = []
        self.skill_instructions: Dict[str, str] = {}

    def catalog(self) -> CapabilityCatalog:
        tools = [
            CapabilityEntry("tool", e.name, e.description, e.category)
            for e in self.tools.enabled_entries(self.overrides)
            if e.name != SELECT_CAPABILITIES
        ]
        skills = [
            CapabilityEntry("skill", s.name, s.description)
            for s in self.skills.enabled_skills(self.overrides)
        ]
        return CapabilityCatalog(tools=tools, skills=skills)

    # -- request shaping -----------------------------------------------------
    def system_prompt(self, base: str = "") -> str:
        parts = [base.strip()] if base and base.strip() else []
        if not self.two_phase:
            return "\n\n".join(parts)

        catalog = self.catalog()
        if not self.has_selected:
            parts.append(catalog.as_system_prompt_section())
        else:
            if self.skill_instructions:
                parts.append("# Activated Skills\n\n" + "\n\n---\n\n".join(self.skill_instructions.values()))
            remaining = catalog.without(self.selected_tool_names, self.selected_skill_names)
            if not remaining.is_empty:
                parts.append(
                    f"Additional capabilities available via `{SELECT_CAPABILITIES}`: "
                    + remaining.as_compact_catalog()[len("Available: ") :]
                )
        return "\n\n".join(p for p in parts if p)

    def toolset(self) -> List[ToolSpec]:
        """Tool specs to offer the backend on the next request."""
        if not self.two_phase:
            return [s for s in self.tools.specs(self.overrides) if s.name != SELECT_CAPABILITIES]
        if self.catalog().is_empty:
            return []
        offered: List[ToolSpec] = []
        for name in self.selected_tool_names:
            entry = self.tools.get(name)
            if entry is not None and self.tools.is_enabled(name, self.overrides):
                offered.append(entry.spec())
        offered.append(SELECT_CAPABILITIES_SPEC)
        return offered

    # -- meta-tool -----------------------------------------------------------
    def select(self, arguments_json: str) -> str:
        """
        Handle a ``select_capabilities`` call and return the tool-result text.

        Unknown or disabled names, and malformed arguments, become warnings in the result.
        This never raises.
        """
        warnings: List[str] = []
        try:
            requested_tools, requested_skills = parse_selection(arguments_json)
        except CapabilitySelectionError as exc:
            logger.warning("Malformed capability selection: %s", exc)
            return self._render([], {}, [str(exc)])

        catalog = self.catalog()
        added_tools: List[str] = []
        for name in requested_tools:
            entry = next((t for t in catalog.tools if t.name.lower() == name.lower()), None)
            if entry is None:
                warnings.append(f"Tool '{name}' not found or not enabled")
                continue
            if entry.name not in self.selected_tool_names:
                self.selected_tool_names.append(entry.name)
            if entry.name not in added_tools:
                added_tools.append(entry.name)

        valid_skills: List[str] = []
        for name in requested_skills:
            entry = next((s for s in catalog.skills if s.name.lower() == name.lower()), None)
            if entry is None:
                warnings.append(f"Skill '{name}' not found or not enabled")
                continue
            if entry.name not in valid_skills:
                valid_skills.append(entry.name)

        loaded = self.skills.load_instructions(valid_skills)
        for name in valid_skills:
            if name not in self.selected_skill_names:
                self.selected_skill_names.append(name)
            self.skill_instructions[name] = loaded.get(name, "")

        self.has_selected = True
        logger.info(
            "Capabilities selected: tools=%s skills=%s (%d warning(s))",
            self.selected_tool_names,
            self.selected_skill_names,
            len(warnings),
        )
        return self._render(added_tools, {n: self.skill_instructions[n] for n in valid_skills}, warnings)

    @staticmethod
    def _render(tools: List[str], skills: Dict[str, str], warnings: List[str]) -> str:
        lines = ["# Capabilities Loaded", ""]
        if tools:
            lines.append("## Selected Tools")
            lines.append("The following tools are now available for this conversation:")
            lines.extend(f"- {name}" for name in tools)
            lines.append("")
        if skills:
            lines.append("## Activated Skills")
            lines.append("The following skill instructions are now active:")
            lines.append("")
            for name, instructions in skills.items():
                lines.extend([f"### {name}", "", instructions, ""])
        if warnings:
            lines.append("## Warnings")
            lines.extend(f"- {warning}" for warning in warnings)
            lines.append("")
        if tools or skills:
            lines.append("You can now proceed with your response using the loaded capabilities.")
        else:
            lines.append("No capabilities were loaded. You can proceed without tools or skills.")
        return "\n".join(lines)
