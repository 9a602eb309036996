from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import AlreadyExistsError, FatalIOError, NotFoundError, SkillvaultError, classify_os_error
from .mover import MoveResult, StateMover
from .scanner import MARKER_FILENAME, Skill, SkillState, is_skill_dir, scan

logger = logging.getLogger(__name__)

ENABLED_DIRNAME = "enabled"
DISABLED_DIRNAME = "disabled"
SOURCES_FILENAME = ".sources.json"
CHECKOUTS_DIRNAME = ".sources"
TMP_DIRNAME = ".tmp"

_STATES: tuple[SkillState, ...] = ("enabled", "disabled")

SKILL_TEMPLATE = """---
name: {name}
description: {description}
---

# {title}

Describe when this skill should be used and the steps to follow.

## Instructions

1. ...
"""


@dataclass(frozen=True)
class SkillLocation:
    name: str
    state: SkillState
    path: Path


def validate_skill_name(name: str) -> str:
    value = (name or "").strip()
    if not value or value in (".", "..") or value.startswith("."):
        raise SkillvaultError(f"Invalid skill name {name!r}.")
    if "/" in value or "\\" in value or "\x00" in value:
        raise SkillvaultError(f"Invalid skill name {name!r}: path separators are not allowed.")
    return value


class WarehouseStore:
    """
    The two-partition package store under a single root.

    ``enabled/`` and ``disabled/`` hold packages; the root also keeps the
    source registry, source checkouts and a staging area. Nothing here is
    locked: enumeration is a snapshot that may race with concurrent moves.
    """

    def __init__(self, root: Path, *, mover: StateMover | None = None) -> None:
        self.root = Path(root).expanduser()
        self.mover = mover or StateMover()

    @property
    def enabled_dir(self) -> Path:
        return self.root / ENABLED_DIRNAME

    @property
    def disabled_dir(self) -> Path:
        return self.root / DISABLED_DIRNAME

    @property
    def sources_file(self) -> Path:
        return self.root / SOURCES_FILENAME

    @property
    def checkouts_dir(self) -> Path:
        return self.root / CHECKOUTS_DIRNAME

    @property
    def tmp_dir(self) -> Path:
        return self.root / TMP_DIRNAME

    def partition_dir(self, state: SkillState) -> Path:
        return self.enabled_dir if state == "enabled" else self.disabled_dir

    def initialize(self) -> Path:
        for d in (self.root, self.enabled_dir, self.disabled_dir):
            try:
                d.mkdir(parents=True, exist_ok=True)
            except FileExistsError as e:
                raise FatalIOError(f"{d} exists and is not a directory", paths=[d]) from e
            except OSError as e:
                raise FatalIOError(f"Could not create {d}: {e.strerror or e}", paths=[d]) from e
        return self.root

    def enumerate(self) -> list[Skill]:
        skills = scan(self.enabled_dir, "enabled") + scan(self.disabled_dir, "disabled")
        return sorted(skills, key=lambda s: (s.name, s.state))

    def find(self, name: str) -> SkillLocation | None:
        name = validate_skill_name(name)
        for state in _STATES:
            path = self.partition_dir(state) / name
            if path.is_dir():
                return SkillLocation(name=name, state=state, path=path)
        return None

    def locate(self, name: str) -> SkillLocation:
        loc = self.find(name)
        if loc is None:
            raise NotFoundError(f"Skill {name!r} not found in {self.root}", paths=[self.enabled_dir, self.disabled_dir])
        return loc

    def get(self, name: str) -> Skill:
        loc = self.locate(name)
        for skill in scan(self.partition_dir(loc.state), loc.state):
            if skill.name == loc.name:
                return skill
        raise NotFoundError(f"{loc.path} is not a valid skill (missing {MARKER_FILENAME})", paths=[loc.path])

    def enable(self, name: str) -> MoveResult:
        return self._set_state(name, "enabled")

    def disable(self, name: str) -> MoveResult:
        return self._set_state(name, "disabled")

    def _set_state(self, name: str, state: SkillState) -> MoveResult:
        name = validate_skill_name(name)
        other: SkillState = "disabled" if state == "enabled" else "enabled"
        src = self.partition_dir(other) / name
        dest = self.partition_dir(state) / name

        if not src.is_dir():
            if dest.is_dir():
                raise AlreadyExistsError(f"Skill {name!r} is already {state}", paths=[dest])
            raise NotFoundError(f"Skill {name!r} does not exist in {other}/", paths=[src])
        if not is_skill_dir(src):
            raise NotFoundError(f"{name!r} is not a valid skill (missing {MARKER_FILENAME})", paths=[src])

        self.initialize()
        result = self.mover.move(src, dest)
        if result.soft:
            logger.warning("Skill %s is %s but a stale copy remains at %s", name, state, result.leftover)
        else:
            logger.info("Skill %s is now %s", name, state)
        return result

    def delete(self, name: str) -> SkillLocation:
        loc = self.locate(name)
        try:
            if loc.path.is_symlink():
                loc.path.unlink()
            else:
                shutil.rmtree(loc.path)
        except OSError as e:
            raise classify_os_error(e, f"Could not delete skill {name!r}", paths=[loc.path]) from e
        logger.info("Deleted skill %s from %s", name, loc.path)
        return loc

    def create(self, name: str, *, description: str = "", enabled: bool = False) -> SkillLocation:
        name = validate_skill_name(name)
        existing = self.find(name)
        if existing is not None:
            raise AlreadyExistsError(f"Skill {name!r} already exists in {existing.state}/", paths=[existing.path])

        self.initialize()
        state: SkillState = "enabled" if enabled else "disabled"
        path = self.partition_dir(state) / name
        title = name.replace("-", " ").replace("_", " ").title()
        content = SKILL_TEMPLATE.format(
            name=name,
            description=json.dumps(description.strip() or f"{title} skill", ensure_ascii=False),
            title=title,
        )
        try:
            path.mkdir(parents=True)
            (path / MARKER_FILENAME).write_text(content, encoding="utf-8")
        except OSError as e:
            raise classify_os_error(e, f"Could not create skill {name!r}", paths=[path]) from e
        return SkillLocation(name=name, state=state, path=path)
