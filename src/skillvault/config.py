from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import SkillvaultError

DEFAULT_CATALOG_URL = "https://raw.githubusercontent.com/buzhangsan/skill-manager/main/data/all_skills_with_cn.json"
DEFAULT_CATALOG_TTL_S = 30 * 60.0
DEFAULT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class Config:
    warehouse_path: str | None = None  # default: ~/.agent/skills
    notes_path: str | None = None  # default: ~/.agent/.skill-notes.json
    tool_paths: dict[str, str] = field(default_factory=dict)  # tool id -> custom skills dir
    catalog_url: str = DEFAULT_CATALOG_URL
    catalog_ttl_s: float = DEFAULT_CATALOG_TTL_S
    timeout_s: float = DEFAULT_TIMEOUT_S
    git_executable: str = "git"
    move_retries: int = 3
    move_backoff_s: float = 0.1


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLVAULT_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillvault") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SkillvaultError(f"Could not read config {path}: {e}", paths=[path]) from e
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in fields(Config)}
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    if not isinstance(filtered.get("tool_paths", {}), dict):
        filtered.pop("tool_paths")
    return Config(**filtered)


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def apply_env_overrides(cfg: Config, environ: dict[str, str] | None = None) -> Config:
    """Environment variables win over the config file but lose to CLI flags."""
    env = os.environ if environ is None else environ
    updates: dict[str, Any] = {}
    if warehouse := env.get("SKILLVAULT_WAREHOUSE"):
        updates["warehouse_path"] = warehouse
    if catalog_url := env.get("SKILLVAULT_CATALOG_URL"):
        updates["catalog_url"] = catalog_url
    if timeout := env.get("SKILLVAULT_TIMEOUT_S"):
        try:
            updates["timeout_s"] = float(timeout)
        except ValueError as e:
            raise SkillvaultError(f"SKILLVAULT_TIMEOUT_S must be a number, got {timeout!r}") from e
    return replace(cfg, **updates) if updates else cfg


_INT_FIELDS = {"move_retries"}
_FLOAT_FIELDS = {"catalog_ttl_s", "timeout_s", "move_backoff_s"}


def set_config_value(cfg: Config, key: str, value: str) -> Config:
    """
    Return a copy of ``cfg`` with ``key`` set from a command-line string.

    ``tool_paths.<tool>`` addresses a single tool override; an empty value
    clears it.
    """
    if key.startswith("tool_paths."):
        tool_id = key.split(".", 1)[1].strip()
        if not tool_id:
            raise SkillvaultError("Expected tool_paths.<tool id>.")
        tool_paths = dict(cfg.tool_paths)
        if value.strip():
            tool_paths[tool_id] = value.strip()
        else:
            tool_paths.pop(tool_id, None)
        return replace(cfg, tool_paths=tool_paths)

    allowed = {f.name for f in fields(Config)} - {"tool_paths"}
    if key not in allowed:
        raise SkillvaultError(f"Unknown config key {key!r}. Known keys: {', '.join(sorted(allowed))}, tool_paths.<tool>")

    parsed: Any = value
    try:
        if key in _INT_FIELDS:
            parsed = int(value)
        elif key in _FLOAT_FIELDS:
            parsed = float(value)
    except ValueError as e:
        raise SkillvaultError(f"Invalid value for {key}: {value!r}") from e
    if key in ("warehouse_path", "notes_path") and not value.strip():
        parsed = None
    return replace(cfg, **{key: parsed})
