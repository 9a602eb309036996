from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from .errors import NotFoundError

WAREHOUSE_RELATIVE_PATH = ".agent/skills"
NOTES_RELATIVE_PATH = ".agent/.skill-notes.json"


@dataclass(frozen=True)
class ToolDefinition:
    id: str
    name: str
    root_paths: tuple[str, ...]  # anchors used to detect whether the tool is installed
    skill_paths: tuple[str, ...]  # candidate skills dirs; the first one is the creation default


SUPPORTED_TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition("claude", "Claude Code", (".claude",), (".claude/skills",)),
    ToolDefinition("gemini", "Gemini CLI", (".gemini",), (".gemini/skills",)),
    ToolDefinition(
        "antigravity",
        "Antigravity",
        (".gemini/antigravity",),
        (".gemini/antigravity/global_skills",),
    ),
    ToolDefinition("windsurf", "Windsurf", (".codeium/windsurf",), (".codeium/windsurf/skills",)),
    # OpenCode moved its config dir between releases and uses "skill", not "skills".
    ToolDefinition(
        "opencode",
        "OpenCode",
        (".config/opencode", ".opencode"),
        (".config/opencode/skill", ".opencode/skill"),
    ),
    ToolDefinition("codex", "Codex CLI", (".codex",), (".codex/skills",)),
)


def expand_user_path(value: str | os.PathLike[str], *, home: Path) -> Path:
    raw = str(value).strip()
    if raw == "~":
        return home
    if raw.startswith("~/") or raw.startswith("~\\"):
        return home / raw[2:]
    return Path(raw)


def _lexists(path: Path) -> bool:
    # Broken links still count: they are something the caller must deal with.
    return os.path.lexists(path)


class PathResolver:
    """
    Computes the warehouse location and each tool's expected skills directory.

    Every path is derived from ``home`` so tests can point the resolver at a
    throwaway directory.
    """

    def __init__(
        self,
        *,
        home: Path | None = None,
        warehouse_path: str | os.PathLike[str] | None = None,
        notes_path: str | os.PathLike[str] | None = None,
        tool_paths: Mapping[str, str] | None = None,
        tools: Sequence[ToolDefinition] = SUPPORTED_TOOLS,
    ) -> None:
        self.home = (home or Path.home()).expanduser()
        self._warehouse_override = warehouse_path
        self._notes_override = notes_path
        self._tool_overrides = {k: v for k, v in (tool_paths or {}).items() if isinstance(v, str) and v.strip()}
        self._tools = {t.id: t for t in tools}

    @property
    def warehouse_path(self) -> Path:
        if self._warehouse_override:
            return expand_user_path(self._warehouse_override, home=self.home)
        return self.home / WAREHOUSE_RELATIVE_PATH

    @property
    def notes_path(self) -> Path:
        if self._notes_override:
            return expand_user_path(self._notes_override, home=self.home)
        return self.home / NOTES_RELATIVE_PATH

    def tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def tool(self, tool_id: str) -> ToolDefinition:
        tool = self._tools.get(tool_id)
        if tool is None:
            known = ", ".join(sorted(self._tools))
            raise NotFoundError(f"Unknown tool {tool_id!r}. Known tools: {known}")
        return tool

    def has_override(self, tool_id: str) -> bool:
        return tool_id in self._tool_overrides

    def root_candidates(self, tool_id: str) -> list[Path]:
        return [self.home / rp for rp in self.tool(tool_id).root_paths]

    def skill_candidates(self, tool_id: str) -> list[Path]:
        tool = self.tool(tool_id)
        override = self._tool_overrides.get(tool_id)
        if override:
            return [expand_user_path(override, home=self.home)]
        return [self.home / sp for sp in tool.skill_paths]

    def default_skill_path(self, tool_id: str) -> Path:
        return self.skill_candidates(tool_id)[0]

    def installed_root(self, tool_id: str) -> Path | None:
        for root in self.root_candidates(tool_id):
            if root.exists():
                return root
        return None

    def detect_skill_path(self, tool_id: str) -> Path | None:
        """First candidate that exists as a directory or link (dangling links included)."""
        for candidate in self.skill_candidates(tool_id):
            if _lexists(candidate) and (candidate.is_dir() or candidate.is_symlink()):
                return candidate
        return None

    def current_skill_path(self, tool_id: str) -> Path:
        return self.detect_skill_path(tool_id) or self.default_skill_path(tool_id)
