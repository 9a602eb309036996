from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from .storage import read_json_file, write_json_atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkillNote:
    skill_id: str
    note: str
    created_at: int  # epoch ms
    updated_at: int  # epoch ms

    def to_json(self) -> dict[str, Any]:
        return {
            "skillId": self.skill_id,
            "note": self.note,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def note_key(name: str) -> str:
    # Standalone markdown skills are keyed without their extension.
    return name.strip().removesuffix(".md")


class NoteStore:
    """Free-text notes per package, kept as one JSON object keyed by package name."""

    def __init__(self, path: Path, *, clock: Callable[[], float] = time.time) -> None:
        self.path = path
        self._clock = clock

    def _load(self) -> dict[str, dict[str, Any]]:
        raw = read_json_file(self.path, default={})
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed notes file %s", self.path)
            return {}
        return {k: v for k, v in raw.items() if isinstance(v, dict) and isinstance(v.get("note"), str)}

    def _save(self, notes: dict[str, dict[str, Any]]) -> None:
        write_json_atomic(self.path, notes)

    def all(self) -> dict[str, SkillNote]:
        out: dict[str, SkillNote] = {}
        for key, value in self._load().items():
            out[key] = SkillNote(
                skill_id=key,
                note=value["note"],
                created_at=int(value.get("createdAt") or 0),
                updated_at=int(value.get("updatedAt") or 0),
            )
        return out

    def get(self, name: str) -> str | None:
        entry = self._load().get(note_key(name))
        return entry["note"] if entry and entry["note"] else None

    def set(self, name: str, note: str) -> SkillNote:
        key = note_key(name)
        notes = self._load()
        now = int(self._clock() * 1000)
        created = notes.get(key, {}).get("createdAt") or now
        record = SkillNote(skill_id=key, note=note, created_at=int(created), updated_at=now)
        notes[key] = record.to_json()
        self._save(notes)
        return record

    def delete(self, name: str) -> bool:
        key = note_key(name)
        notes = self._load()
        if key not in notes:
            return False
        del notes[key]
        self._save(notes)
        return True

    def many(self, names: Iterable[str]) -> dict[str, str]:
        notes = self._load()
        out: dict[str, str] = {}
        for name in names:
            entry = notes.get(note_key(name))
            if entry and entry["note"]:
                out[name] = entry["note"]
        return out
