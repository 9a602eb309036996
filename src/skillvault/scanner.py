"""Discovery of skill packages: directories that contain a ``SKILL.md`` marker."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

from .storage import read_json_file, write_json_atomic

logger = logging.getLogger(__name__)

MARKER_FILENAME = "SKILL.md"
META_FILENAME = ".skill-meta.json"
DESCRIPTION_MAX_CHARS = 100
DEEP_SCAN_MAX_DEPTH = 5

SkillState = Literal["enabled", "disabled"]

_FRONTMATTER_DELIMITER = "---"
_DESCRIPTION_LINE_RE = re.compile(r"^description:\s*(.+)$", re.MULTILINE)


@dataclass(frozen=True)
class Skill:
    name: str
    path: Path
    description: str
    state: SkillState
    origin: str = "local"
    source_id: str | None = None
    source_url: str | None = None
    revision: str | None = None

    @property
    def enabled(self) -> bool:
        return self.state == "enabled"


def is_hidden(path: Path) -> bool:
    return path.name.startswith(".")


def is_skill_dir(path: Path) -> bool:
    return path.is_dir() and (path / MARKER_FILENAME).is_file()


def _split_frontmatter(text: str) -> tuple[str | None, list[str]]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != _FRONTMATTER_DELIMITER:
        return None, lines
    for idx in range(1, len(lines)):
        if lines[idx].strip() == _FRONTMATTER_DELIMITER:
            return "\n".join(lines[1:idx]), lines[idx + 1 :]
    # An unterminated header is treated as plain body text.
    return None, lines


def _header_description(header: str) -> str | None:
    try:
        data = yaml.safe_load(header)
    except yaml.YAMLError:
        data = None
    if isinstance(data, dict):
        value = data.get("description")
        if isinstance(value, str) and value.strip():
            return value.strip()
        if value is not None and not isinstance(value, (dict, list)):
            return str(value).strip() or None
        return None
    # Malformed YAML still commonly carries a usable ``description:`` line.
    m = _DESCRIPTION_LINE_RE.search(header)
    if m:
        return m.group(1).strip().strip("\"'") or None
    return None


def truncate_description(text: str, limit: int = DESCRIPTION_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def extract_description(skill_md: Path) -> str:
    try:
        text = skill_md.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Could not read %s: %s", skill_md, e)
        return ""

    header, body = _split_frontmatter(text)
    if header is not None:
        desc = _header_description(header)
        if desc:
            return truncate_description(desc)

    for line in body:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or stripped == _FRONTMATTER_DELIMITER:
            continue
        return truncate_description(stripped)
    return ""


def read_skill_meta(skill_dir: Path) -> dict[str, Any] | None:
    data = read_json_file(skill_dir / META_FILENAME)
    return data if isinstance(data, dict) else None


def write_skill_meta(skill_dir: Path, meta: dict[str, Any]) -> None:
    write_json_atomic(skill_dir / META_FILENAME, meta)


def _optional_str(meta: dict[str, Any], key: str) -> str | None:
    value = meta.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def load_skill(skill_dir: Path, state: SkillState) -> Skill:
    meta = read_skill_meta(skill_dir) or {}
    return Skill(
        name=skill_dir.name,
        path=skill_dir,
        description=extract_description(skill_dir / MARKER_FILENAME),
        state=state,
        origin=_optional_str(meta, "source") or "local",
        source_id=_optional_str(meta, "sourceId"),
        source_url=_optional_str(meta, "sourceUrl"),
        revision=_optional_str(meta, "commitHash"),
    )


def scan(directory: Path, state: SkillState) -> list[Skill]:
    """List the packages directly inside ``directory``, sorted by name."""
    if not directory.is_dir():
        return []
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        logger.warning("Could not list %s: %s", directory, e)
        return []

    skills: list[Skill] = []
    for entry in entries:
        if is_hidden(entry) or not is_skill_dir(entry):
            continue
        skills.append(load_skill(entry, state))
    return skills


def find_skill_dirs(root: Path, max_depth: int = DEEP_SCAN_MAX_DEPTH) -> list[Path]:
    """
    Depth-first search for package directories below ``root``.

    A directory holding ``SKILL.md`` is reported and not descended into.
    Hidden directories and directory links are skipped.
    """
    results: list[Path] = []

    def _walk(current: Path, depth: int) -> None:
        if depth > max_depth:
            return
        try:
            children = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            return
        for child in children:
            if is_hidden(child) or child.is_symlink() or not child.is_dir():
                continue
            if (child / MARKER_FILENAME).is_file():
                results.append(child.absolute())
            else:
                _walk(child, depth + 1)

    _walk(root, 0)
    return results


def count_tool_entries(directory: Path) -> int:
    """Visible subdirectories plus standalone markdown skill files, for display."""
    count = 0
    try:
        entries = list(os.scandir(directory))
    except OSError:
        return 0
    for entry in entries:
        if entry.name.startswith("."):
            continue
        try:
            if entry.is_dir():
                count += 1
            elif entry.is_file() and entry.name.lower().endswith(".md"):
                count += 1
        except OSError:
            continue
    return count
