from __future__ import annotations

import json
import logging
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx

from .config import DEFAULT_CATALOG_TTL_S, DEFAULT_TIMEOUT_S
from .errors import CatalogError, NotFoundError, SkillvaultError, SyncError, VcsError
from .sources import PackageImporter, SyncResult, clone_url, locate_packages, normalize_subpath, parse_source_url, remove_tree
from .storage import read_json_file, write_json_atomic
from .vcs import VcsClient
from .warehouse import WarehouseStore, validate_skill_name

logger = logging.getLogger(__name__)

FALLBACK_BRANCH = "master"


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    author: str
    description: str
    github_url: str
    stars: int = 0
    forks: int = 0
    updated_at: int | None = None
    path: str | None = None
    branch: str = "main"
    tags: tuple[str, ...] = ()
    description_zh: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "author": self.author,
            "description": self.description,
            "descriptionZh": self.description_zh,
            "githubUrl": self.github_url,
            "stars": self.stars,
            "forks": self.forks,
            "updatedAt": self.updated_at,
            "path": self.path,
            "branch": self.branch,
            "tags": list(self.tags),
        }


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _parse_entry(item: dict[str, Any]) -> CatalogEntry | None:
    name = str(item.get("name") or "").strip()
    entry_id = str(item.get("id") or name).strip()
    if not entry_id:
        return None
    tags = item.get("tags")
    updated = item.get("updatedAt", item.get("updated_at"))
    return CatalogEntry(
        id=entry_id,
        name=name,
        author=str(item.get("author") or "Unknown"),
        description=str(item.get("description") or ""),
        github_url=str(item.get("githubUrl") or item.get("github_url") or ""),
        stars=_as_int(item.get("stars")),
        forks=_as_int(item.get("forks")),
        updated_at=_as_int(updated) if updated is not None else None,
        path=item.get("path") if isinstance(item.get("path"), str) else None,
        branch=str(item.get("branch") or "main"),
        tags=tuple(str(t) for t in tags) if isinstance(tags, list) else (),
        description_zh=item.get("descriptionZh") or item.get("description_zh"),
    )


def parse_catalog(data: Any) -> list[CatalogEntry]:
    if not isinstance(data, list):
        return []
    entries: list[CatalogEntry] = []
    for item in data:
        if isinstance(item, dict):
            entry = _parse_entry(item)
            if entry is not None:
                entries.append(entry)
    return entries


def fetch_catalog_json(url: str, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> Any:
    # Local file support for offline usage.
    try:
        if url.startswith("file://"):
            return json.loads(Path(url.removeprefix("file://")).read_text(encoding="utf-8"))
        if "://" not in url:
            return json.loads(Path(url).expanduser().read_text(encoding="utf-8"))

        with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
            resp = client.get(url, headers={"accept": "application/json"})
            resp.raise_for_status()
            return resp.json()
    except httpx.HTTPError as e:
        raise CatalogError(f"Catalog request failed: {e}") from e
    except (OSError, ValueError) as e:
        raise CatalogError(f"Could not load catalog from {url}: {e}") from e


class CatalogCache:
    """
    Time-bounded cache of the catalog listing, in memory and on disk.

    ``get`` serves fresh data from memory or the disk copy, refetches when
    stale, and falls back to stale data when the refetch fails.
    """

    def __init__(
        self,
        url: str,
        *,
        fetcher: Callable[[str], Any] = fetch_catalog_json,
        clock: Callable[[], float] = time.time,
        ttl_s: float = DEFAULT_CATALOG_TTL_S,
        cache_path: Path | None = None,
    ) -> None:
        self.url = url
        self.ttl_s = ttl_s
        self.cache_path = cache_path
        self._fetcher = fetcher
        self._clock = clock
        self._entries: list[CatalogEntry] = []
        self._fetched_at: float | None = None

    def _fresh(self) -> bool:
        return self._fetched_at is not None and (self._clock() - self._fetched_at) < self.ttl_s

    def _load_disk(self) -> None:
        if self.cache_path is None:
            return
        raw = read_json_file(self.cache_path)
        if not isinstance(raw, dict):
            return
        entries = parse_catalog(raw.get("skills"))
        fetched_ms = raw.get("lastFetchTime")
        if entries and isinstance(fetched_ms, (int, float)):
            self._entries = entries
            self._fetched_at = fetched_ms / 1000.0

    def _save_disk(self) -> None:
        if self.cache_path is None or self._fetched_at is None:
            return
        payload = {
            "skills": [e.to_json() for e in self._entries],
            "lastFetchTime": int(self._fetched_at * 1000),
            "totalCount": len(self._entries),
        }
        try:
            write_json_atomic(self.cache_path, payload, sort_keys=False)
        except OSError as e:
            logger.warning("Could not write catalog cache %s: %s", self.cache_path, e)

    def refresh(self) -> list[CatalogEntry]:
        entries = parse_catalog(self._fetcher(self.url))
        self._entries = entries
        self._fetched_at = self._clock()
        self._save_disk()
        logger.info("Fetched %d catalog entries from %s", len(entries), self.url)
        return list(entries)

    def get(self, *, force_refresh: bool = False) -> list[CatalogEntry]:
        if not self._entries:
            self._load_disk()
        if not force_refresh and self._entries and self._fresh():
            return list(self._entries)
        try:
            return self.refresh()
        except CatalogError as e:
            if self._entries:
                logger.warning("Serving stale catalog: %s", e)
                return list(self._entries)
            raise

    def invalidate(self) -> None:
        self._fetched_at = None


def search_catalog(entries: list[CatalogEntry], query: str | None) -> list[CatalogEntry]:
    """
    Entries matching every whitespace-separated term in the name, author,
    descriptions or tags.

    Ordering: all terms in the name, then name and author hits, then any
    name hit, then the rest; ties broken by stars.
    """
    terms = [t for t in (query or "").lower().split() if t]
    if not terms:
        return list(entries)

    def _has(text: str | None, term: str) -> bool:
        return bool(text) and term in text.lower()  # type: ignore[union-attr]

    def _matches(entry: CatalogEntry) -> bool:
        return all(
            _has(entry.name, t)
            or _has(entry.author, t)
            or _has(entry.description, t)
            or _has(entry.description_zh, t)
            or any(_has(tag, t) for tag in entry.tags)
            for t in terms
        )

    def _priority(entry: CatalogEntry) -> int:
        name = entry.name.lower()
        author = entry.author.lower()
        if all(t in name for t in terms):
            return 3
        any_name = any(t in name for t in terms)
        if any_name and any(t in author for t in terms):
            return 2
        return 1 if any_name else 0

    matched = [e for e in entries if _matches(e)]
    return sorted(matched, key=lambda e: (-_priority(e), -e.stars))


def top_entries(entries: list[CatalogEntry], limit: int = 50) -> list[CatalogEntry]:
    return sorted(entries, key=lambda e: -e.stars)[: max(0, limit)]


def find_entry(entries: list[CatalogEntry], entry_id: str) -> CatalogEntry:
    for e in entries:
        if e.id == entry_id:
            return e
    for e in entries:
        if e.name == entry_id:
            return e
    raise NotFoundError(f"Catalog entry {entry_id!r} not found")


class CatalogInstaller:
    """Installs catalog entries as warehouse packages without registering a source."""

    def __init__(self, store: WarehouseStore, vcs: VcsClient, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.vcs = vcs
        self.importer = PackageImporter(store)
        self._clock = clock

    def _clone(self, url: str, dest: Path, branch: str) -> None:
        try:
            self.vcs.clone(url, dest, branch=branch, depth=1)
        except VcsError as e:
            if branch == FALLBACK_BRANCH:
                raise
            logger.info("Branch %s not cloneable (%s), trying %s", branch, e, FALLBACK_BRANCH)
            remove_tree(dest)
            self.vcs.clone(url, dest, branch=FALLBACK_BRANCH, depth=1)

    def install(self, entry: CatalogEntry) -> SyncResult:
        if not entry.github_url:
            raise CatalogError(f"Catalog entry {entry.id!r} has no repository URL")
        try:
            parsed = parse_source_url(entry.github_url)
        except SkillvaultError as e:
            raise CatalogError(str(e)) from e

        try:
            root_name = validate_skill_name(entry.name)
        except SkillvaultError:
            root_name = parsed.repo

        self.store.initialize()
        self.store.tmp_dir.mkdir(parents=True, exist_ok=True)
        warnings: list[str] = []
        with tempfile.TemporaryDirectory(prefix="skillvault-catalog-", dir=self.store.tmp_dir, ignore_cleanup_errors=True) as td:
            repo = Path(td) / "repo"
            try:
                self._clone(clone_url(parsed.repo_url), repo, entry.branch or "main")
            except VcsError as e:
                raise SyncError(f"Could not clone {parsed.repo_url}: {e}", paths=[repo]) from e
            try:
                revision: str | None = self.vcs.rev_parse(repo) or None
            except VcsError as e:
                warnings.append(f"Could not read checkout revision: {e}")
                revision = None

            packages = locate_packages(repo, normalize_subpath(entry.path), root_name=root_name)
            if not packages:
                raise NotFoundError(f"No skills (directories with SKILL.md) found in {entry.github_url}")
            meta = {
                "source": "marketplace",
                "sourceId": entry.id,
                "sourceUrl": entry.github_url,
                "installDate": int(self._clock() * 1000),
                "commitHash": revision,
            }
            result = self.importer.import_all(packages, origin_id=entry.id, meta=meta, revision=revision, warnings=warnings)
        logger.info("Installed %s: %d added, %d updated", entry.id, len(result.added), len(result.updated))
        return result
