"""
Git-hosted skill sources.

A source is a repository (optionally narrowed to a subpath) whose skill
packages are copied into the warehouse. Checkouts live under
``<warehouse>/.sources/<id>/`` and the registry is ``<warehouse>/.sources.json``.
Imports never change a package's partition: a name already enabled is
refreshed in ``enabled/``, everything else lands in ``disabled/``.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Literal

from .errors import AlreadyExistsError, NotFoundError, SkillvaultError, SyncError, VcsError, classify_os_error
from .scanner import find_skill_dirs, is_skill_dir, write_skill_meta
from .storage import read_json_file, write_json_atomic
from .vcs import VcsClient
from .warehouse import SkillLocation, WarehouseStore, validate_skill_name

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
WHOLE_REPO = "."
PLACEHOLDER_MAX_BYTES = 200
FALLBACK_SCAN_DIRS = ("skills", ".claude/skills", ".agent/skills")

_PLACEHOLDER_RE = re.compile(r"^\.\.?/")
_GITHUB_RE = re.compile(
    r"^(?:https?://)?(?:www\.)?github\.com/(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+?)(?:\.git)?"
    r"(?:/tree/(?P<branch>[^/\s]+)(?:/(?P<subpath>.+))?)?/*$"
)
_SSH_RE = re.compile(r"^git@github\.com:(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+?)(?:\.git)?/*$")
_SHORT_RE = re.compile(r"^(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?$")

SourceStatus = Literal["pending", "updating", "synced", "partial", "error"]


@dataclass(frozen=True)
class ParsedSourceUrl:
    owner: str
    repo: str
    branch: str | None = None
    subpath: str | None = None

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    @property
    def source_id(self) -> str:
        return source_id(self.owner, self.repo)


def source_id(owner: str, repo: str) -> str:
    return f"{owner}-{repo}"


def normalize_subpath(value: str | None) -> str:
    raw = (value or "").strip().replace("\\", "/").strip("/")
    if not raw or raw == WHOLE_REPO:
        return WHOLE_REPO
    norm = posixpath.normpath(raw)
    if norm.startswith("..") or posixpath.isabs(norm):
        raise SkillvaultError(f"Subpath {value!r} points outside the repository.")
    return norm


def parse_source_url(url: str) -> ParsedSourceUrl:
    """
    Accepts ``owner/repo``, ``https://github.com/owner/repo[.git]``,
    ``https://github.com/owner/repo/tree/<branch>/<subpath>`` and
    ``git@github.com:owner/repo.git``.
    """
    raw = (url or "").strip().rstrip("/")
    for pattern in (_GITHUB_RE, _SSH_RE, _SHORT_RE):
        m = pattern.match(raw)
        if not m:
            continue
        groups = m.groupdict()
        repo = groups["repo"].removesuffix(".git")
        if not repo or repo in (".", ".."):
            break
        subpath = groups.get("subpath")
        return ParsedSourceUrl(
            owner=groups["owner"],
            repo=repo,
            branch=groups.get("branch") or None,
            subpath=normalize_subpath(subpath) if subpath else None,
        )
    raise SkillvaultError(f"Invalid repository URL {url!r}. Expected owner/repo or a github.com URL.")


def clone_url(repo_url: str) -> str:
    if repo_url.endswith(".git") or "://" not in repo_url:
        return repo_url
    return f"{repo_url}.git"


@dataclass(frozen=True)
class SkillSource:
    id: str
    name: str
    repo_url: str
    branch: str = DEFAULT_BRANCH
    subpath: str = WHOLE_REPO
    enabled: bool = True
    auto_update: bool = False
    last_updated: int | None = None  # epoch ms
    last_revision: str | None = None
    has_update: bool = False
    last_checked: int | None = None  # epoch ms
    package_count: int = 0
    status: SourceStatus = "pending"

    @property
    def sparse(self) -> bool:
        return self.subpath not in ("", WHOLE_REPO)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "repoUrl": self.repo_url,
            "branch": self.branch,
            "subpath": self.subpath,
            "enabled": self.enabled,
            "autoUpdate": self.auto_update,
            "lastUpdated": self.last_updated,
            "lastRevision": self.last_revision,
            "hasUpdate": self.has_update,
            "lastChecked": self.last_checked,
            "packageCount": self.package_count,
            "status": self.status,
        }

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> SkillSource:
        sid = obj.get("id")
        repo_url = obj.get("repoUrl")
        if not isinstance(sid, str) or not sid or not isinstance(repo_url, str) or not repo_url:
            raise ValueError("source record needs id and repoUrl")

        def _int(value: Any) -> int | None:
            return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None

        status = obj.get("status")
        subpath = obj.get("subpath", obj.get("skillsPath"))
        return cls(
            id=sid,
            name=str(obj.get("name") or sid),
            repo_url=repo_url,
            branch=str(obj.get("branch") or DEFAULT_BRANCH),
            subpath=str(subpath) if isinstance(subpath, str) and subpath.strip() else WHOLE_REPO,
            enabled=obj.get("enabled", True) is not False,
            auto_update=bool(obj.get("autoUpdate", False)),
            last_updated=_int(obj.get("lastUpdated")),
            last_revision=obj.get("lastRevision") or obj.get("lastCommitHash") or None,
            has_update=bool(obj.get("hasUpdate", False)),
            last_checked=_int(obj.get("lastChecked")),
            package_count=_int(obj.get("packageCount", obj.get("skillCount"))) or 0,
            status=status if status in ("pending", "updating", "synced", "partial", "error") else "pending",
        )


class SourceRegistry:
    """The JSON array of source records kept at ``<warehouse>/.sources.json``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[SkillSource]:
        raw = read_json_file(self.path, default=[])
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed source registry %s", self.path)
            return []
        sources: list[SkillSource] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                sources.append(SkillSource.from_json(item))
            except ValueError as e:
                logger.warning("Skipping source record in %s: %s", self.path, e)
        return sources

    def save(self, sources: list[SkillSource]) -> None:
        write_json_atomic(self.path, [s.to_json() for s in sources], sort_keys=False)

    def get(self, sid: str) -> SkillSource | None:
        for s in self.load():
            if s.id == sid:
                return s
        return None

    def require(self, sid: str) -> SkillSource:
        source = self.get(sid)
        if source is None:
            raise NotFoundError(f"Source {sid!r} is not registered", paths=[self.path])
        return source

    def upsert(self, source: SkillSource) -> None:
        sources = self.load()
        for idx, existing in enumerate(sources):
            if existing.id == source.id:
                sources[idx] = source
                break
        else:
            sources.append(source)
        self.save(sources)

    def update(self, sid: str, **changes: Any) -> SkillSource:
        source = replace(self.require(sid), **changes)
        self.upsert(source)
        return source

    def remove(self, sid: str) -> bool:
        sources = self.load()
        kept = [s for s in sources if s.id != sid]
        if len(kept) == len(sources):
            return False
        self.save(kept)
        return True


@dataclass(frozen=True)
class SyncResult:
    source_id: str
    added: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    failed: tuple[tuple[str, str], ...] = ()  # (skill name, reason)
    warnings: tuple[str, ...] = ()
    revision: str | None = None

    @property
    def partial(self) -> bool:
        return bool(self.failed)

    @property
    def package_count(self) -> int:
        return len(self.added) + len(self.updated)


@dataclass(frozen=True)
class UpdateCheck:
    source_id: str
    has_update: bool
    remote_revision: str | None = None
    local_revision: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SyncAllResult:
    total: int
    succeeded: tuple[str, ...]
    failed: tuple[tuple[str, str], ...]  # (source id, reason)
    results: tuple[SyncResult, ...] = ()


@dataclass(frozen=True)
class SourcesStatus:
    total_sources: int
    enabled_sources: int
    total_skills: int
    updates_available: int
    sources: tuple[SkillSource, ...] = field(default_factory=tuple)


def read_placeholder(path: Path) -> str | None:
    """
    Relative link text if ``path`` is a symlink or looks like one checked out as a file.

    Sparse checkouts leave a real symlink dangling when its target is outside
    the sparse set, and some checkouts materialize a symlink as a tiny text
    file holding its target. A legitimately tiny file starting with ``./`` or
    ``../`` is indistinguishable from such a placeholder.
    """
    try:
        if path.is_symlink():
            content = os.readlink(path)
        elif path.is_file() and path.stat().st_size < PLACEHOLDER_MAX_BYTES:
            content = path.read_text(encoding="utf-8")
            if not _PLACEHOLDER_RE.match(content):
                return None
        else:
            return None
    except (OSError, UnicodeDecodeError):
        return None
    link = content.strip().replace("\\", "/")
    if not link or posixpath.isabs(link) or os.path.isabs(link):
        return None
    return link


def _inside(relative: str) -> bool:
    return not (relative.startswith("..") or posixpath.isabs(relative) or relative in ("", "."))


def find_placeholder_targets(checkout: Path, subpath: str) -> list[str]:
    """Repository-relative targets of placeholder files at or directly inside ``subpath``."""
    if subpath in ("", WHOLE_REPO):
        return []
    entry = checkout / subpath
    targets: list[str] = []
    if entry.is_symlink() or entry.is_file():
        link = read_placeholder(entry)
        if link:
            targets.append(posixpath.normpath(posixpath.join(posixpath.dirname(subpath), link)))
    elif entry.is_dir():
        try:
            children = sorted(entry.iterdir(), key=lambda p: p.name)
        except OSError:
            children = []
        for child in children:
            link = read_placeholder(child)
            if link:
                targets.append(posixpath.normpath(posixpath.join(subpath, link)))
    return [t for t in targets if _inside(t)]


def _resolve_placeholder_dir(path: Path, checkout: Path) -> Path | None:
    link = read_placeholder(path)
    if not link:
        return None
    resolved = Path(os.path.normpath(path.parent / link))
    try:
        resolved.relative_to(checkout)
    except ValueError:
        return None
    return resolved if resolved.is_dir() else None


def resolve_scan_root(checkout: Path, subpath: str) -> Path | None:
    root = checkout if subpath in ("", WHOLE_REPO) else checkout / subpath
    if not os.path.lexists(root):
        root = next((checkout / fb for fb in FALLBACK_SCAN_DIRS if (checkout / fb).is_dir()), root)
    if root.is_symlink() or root.is_file():
        target = _resolve_placeholder_dir(root, checkout)
        if target is not None:
            logger.info("Resolved placeholder %s -> %s", root, target)
            root = target
    return root if root.is_dir() else None


def locate_packages(checkout: Path, subpath: str, *, root_name: str) -> list[tuple[str, Path]]:
    """
    Packages inside a checkout, as ``(name, directory)`` pairs.

    A checkout with ``SKILL.md`` at its root is a single package called
    ``root_name``. Otherwise the scan root (subpath, a placeholder's target
    or a conventional skills dir) is either a package itself or searched
    depth-first. Placeholder files directly inside the scan root contribute
    their targets.
    """
    if is_skill_dir(checkout):
        return [(root_name, checkout)]

    scan_root = resolve_scan_root(checkout, subpath)
    if scan_root is None:
        return []
    if is_skill_dir(scan_root):
        return [(scan_root.name, scan_root)]

    found = [(p.name, p) for p in find_skill_dirs(scan_root)]
    seen = {p.resolve() for _, p in found}
    for child in sorted(scan_root.iterdir(), key=lambda p: p.name):
        target = _resolve_placeholder_dir(child, checkout) if child.is_symlink() or child.is_file() else None
        if target is not None and is_skill_dir(target) and target.resolve() not in seen:
            seen.add(target.resolve())
            found.append((target.name, target))
    return found


class PackageImporter:
    """Copies package directories into the warehouse through a staging area."""

    def __init__(self, store: WarehouseStore) -> None:
        self.store = store

    def import_package(self, package_dir: Path, name: str, meta: dict[str, Any]) -> tuple[SkillLocation, bool]:
        """
        Place ``package_dir`` in the warehouse as ``name``; returns the location
        and whether the name already existed.
        """
        name = validate_skill_name(name)
        existing = self.store.find(name)
        state = existing.state if existing is not None else "disabled"
        target = self.store.partition_dir(state) / name

        self.store.tmp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="skillvault-", dir=self.store.tmp_dir, ignore_cleanup_errors=True) as td:
            stage = Path(td) / name
            shutil.copytree(package_dir, stage, symlinks=True, ignore=shutil.ignore_patterns(".git"))
            write_skill_meta(stage, meta)
            result = self.store.mover.move(stage, target)
            if result.soft:
                logger.warning("Imported %s but staging copy %s was left behind", name, result.leftover)
        return SkillLocation(name=name, state=state, path=target), existing is not None

    def import_all(
        self,
        packages: list[tuple[str, Path]],
        *,
        origin_id: str,
        meta: dict[str, Any],
        revision: str | None,
        warnings: list[str],
    ) -> SyncResult:
        added: list[str] = []
        updated: list[str] = []
        failed: list[tuple[str, str]] = []
        seen: set[str] = set()

        for name, package_dir in packages:
            if name in seen:
                msg = f"Duplicate skill name {name!r} at {package_dir}; kept the first one"
                logger.warning("%s", msg)
                warnings.append(msg)
                continue
            seen.add(name)
            try:
                _, existed = self.import_package(package_dir, name, meta)
            except OSError as e:
                err = classify_os_error(e, f"Could not import {name}", paths=[package_dir])
                logger.warning("%s", err)
                failed.append((name, str(err)))
                continue
            except SkillvaultError as e:
                logger.warning("Could not import %s: %s", name, e)
                failed.append((name, str(e)))
                continue
            (updated if existed else added).append(name)

        return SyncResult(
            source_id=origin_id,
            added=tuple(added),
            updated=tuple(updated),
            failed=tuple(failed),
            warnings=tuple(warnings),
            revision=revision,
        )


def remove_tree(path: Path) -> None:
    if path.is_symlink():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


class SourceSync:
    def __init__(
        self,
        store: WarehouseStore,
        vcs: VcsClient,
        *,
        registry: SourceRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.vcs = vcs
        self.registry = registry or SourceRegistry(store.sources_file)
        self.importer = PackageImporter(store)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def checkout_dir(self, sid: str) -> Path:
        return self.store.checkouts_dir / sid

    def list_sources(self) -> list[SkillSource]:
        return self.registry.load()

    def get_source(self, sid: str) -> SkillSource:
        return self.registry.require(sid)

    def _resolve(self, source: SkillSource | str) -> SkillSource:
        sid = source if isinstance(source, str) else source.id
        return self.registry.require(sid)

    def add_source(
        self,
        url: str,
        *,
        name: str | None = None,
        branch: str | None = None,
        subpath: str | None = None,
    ) -> tuple[SkillSource, SyncResult]:
        """
        Register and immediately sync a source.

        Any failure removes the record and the checkout again before the
        original error propagates, so no half-registered source survives.
        """
        parsed = parse_source_url(url)
        sid = parsed.source_id
        if self.registry.get(sid) is not None:
            raise AlreadyExistsError(f"Source {sid!r} is already registered", paths=[self.registry.path])

        source = SkillSource(
            id=sid,
            name=(name or "").strip() or f"{parsed.owner}/{parsed.repo}",
            repo_url=parsed.repo_url,
            branch=(branch or "").strip() or parsed.branch or DEFAULT_BRANCH,
            subpath=normalize_subpath(subpath) if subpath else (parsed.subpath or WHOLE_REPO),
        )

        registry_existed = self.registry.path.exists()
        checkout = self.checkout_dir(sid)
        checkout_existed = os.path.lexists(checkout)

        self.registry.upsert(source)
        try:
            result = self.sync_source(source)
        except Exception:
            self._rollback(sid, registry_existed=registry_existed, checkout_existed=checkout_existed)
            raise
        return self.registry.require(sid), result

    def _rollback(self, sid: str, *, registry_existed: bool, checkout_existed: bool) -> None:
        logger.warning("Rolling back source %s", sid)
        try:
            self.registry.remove(sid)
            if not registry_existed and not self.registry.load() and self.registry.path.exists():
                self.registry.path.unlink()
        except OSError as e:
            logger.error("Could not roll back registry entry for %s: %s", sid, e)
        if not checkout_existed:
            try:
                remove_tree(self.checkout_dir(sid))
            except OSError as e:
                logger.error("Could not remove checkout of %s: %s", sid, e)

    def remove_source(self, sid: str) -> SkillSource:
        """Forget a source. Packages it imported stay in the warehouse as local packages."""
        source = self.registry.require(sid)
        checkout = self.checkout_dir(sid)
        try:
            remove_tree(checkout)
        except OSError as e:
            raise classify_os_error(e, f"Could not remove checkout of {sid}", paths=[checkout]) from e
        self.registry.remove(sid)
        logger.info("Removed source %s", sid)
        return source

    def update_source(self, sid: str, *, enabled: bool | None = None, auto_update: bool | None = None) -> SkillSource:
        changes: dict[str, Any] = {}
        if enabled is not None:
            changes["enabled"] = enabled
        if auto_update is not None:
            changes["auto_update"] = auto_update
        return self.registry.update(sid, **changes)

    def _clone(self, source: SkillSource, dest: Path) -> None:
        url = clone_url(source.repo_url)
        if source.sparse:
            try:
                self.vcs.init(dest, url)
                self.vcs.sparse_init(dest)
                self.vcs.sparse_set(dest, [source.subpath])
                self.vcs.fetch(dest, source.branch, depth=1)
                self.vcs.checkout(dest, source.branch)
                return
            except VcsError as e:
                logger.warning("Sparse checkout of %s failed, falling back to a full clone: %s", source.id, e)
                remove_tree(dest)
        try:
            self.vcs.clone(url, dest, branch=source.branch, depth=1)
        except VcsError:
            remove_tree(dest)
            raise

    def _prepare_checkout(self, source: SkillSource) -> Path:
        dest = self.checkout_dir(source.id)
        self.store.checkouts_dir.mkdir(parents=True, exist_ok=True)
        if dest.is_dir():
            try:
                self.vcs.pull(dest, source.branch)
                return dest
            except VcsError as e:
                logger.warning("Pull of %s failed, re-cloning: %s", source.id, e)
                remove_tree(dest)
        elif os.path.lexists(dest):
            remove_tree(dest)
        self._clone(source, dest)
        return dest

    def _resolve_placeholders(self, checkout: Path, source: SkillSource, warnings: list[str]) -> None:
        targets = [t for t in find_placeholder_targets(checkout, source.subpath) if not (checkout / t).exists()]
        if not targets:
            return
        added = 0
        for target in targets:
            logger.info("Adding placeholder target %s to the checkout of %s", target, source.id)
            try:
                self.vcs.sparse_add(checkout, [target])
                added += 1
            except VcsError as e:
                msg = f"Could not add {target} to the checkout: {e}"
                logger.warning("%s", msg)
                warnings.append(msg)
        if added:
            try:
                self.vcs.checkout(checkout, source.branch)
            except VcsError as e:
                msg = f"Could not refresh checkout after adding placeholder targets: {e}"
                logger.warning("%s", msg)
                warnings.append(msg)

    def _revision(self, checkout: Path, warnings: list[str]) -> str | None:
        try:
            return self.vcs.rev_parse(checkout) or None
        except VcsError as e:
            warnings.append(f"Could not read checkout revision: {e}")
            return None

    def sync_source(self, source: SkillSource | str) -> SyncResult:
        source = self._resolve(source)
        self.store.initialize()
        self.registry.update(source.id, status="updating")

        warnings: list[str] = []
        checkout = self.checkout_dir(source.id)
        try:
            checkout = self._prepare_checkout(source)
            self._resolve_placeholders(checkout, source, warnings)
            revision = self._revision(checkout, warnings)
            packages = locate_packages(checkout, source.subpath, root_name=source.id)
            if not packages:
                msg = f"No skills found in {source.repo_url} ({source.subpath})"
                logger.warning("%s", msg)
                warnings.append(msg)
            meta = {
                "source": "github",
                "sourceId": source.id,
                "sourceUrl": source.repo_url,
                "installDate": self._now_ms(),
                "commitHash": revision,
            }
            result = self.importer.import_all(
                packages, origin_id=source.id, meta=meta, revision=revision, warnings=warnings
            )
        except VcsError as e:
            self.registry.update(source.id, status="error")
            raise SyncError(f"Could not sync source {source.id}: {e}", paths=[checkout]) from e
        except OSError as e:
            self.registry.update(source.id, status="error")
            raise classify_os_error(e, f"Could not sync source {source.id}", paths=[checkout]) from e
        except SkillvaultError:
            self.registry.update(source.id, status="error")
            raise

        self.registry.update(
            source.id,
            status="partial" if result.partial else "synced",
            last_updated=self._now_ms(),
            last_revision=revision,
            has_update=False,
            package_count=result.package_count,
        )
        logger.info(
            "Synced %s: %d added, %d updated, %d failed",
            source.id,
            len(result.added),
            len(result.updated),
            len(result.failed),
        )
        return result

    def sync_all(self) -> SyncAllResult:
        sources = [s for s in self.registry.load() if s.enabled]
        succeeded: list[str] = []
        failed: list[tuple[str, str]] = []
        results: list[SyncResult] = []
        for source in sources:
            try:
                results.append(self.sync_source(source))
                succeeded.append(source.id)
            except SkillvaultError as e:
                logger.warning("Sync of %s failed: %s", source.id, e)
                failed.append((source.id, str(e)))
        return SyncAllResult(total=len(sources), succeeded=tuple(succeeded), failed=tuple(failed), results=tuple(results))

    def check_for_updates(self, source: SkillSource | str) -> UpdateCheck:
        """
        Compare the remote branch head with the recorded revision.

        A missing checkout always counts as an update. Query failures report
        no update together with the error text. The outcome is cached on the
        record as ``has_update``/``last_checked``.
        """
        source = self._resolve(source)
        checkout = self.checkout_dir(source.id)
        if not checkout.is_dir():
            check = UpdateCheck(source_id=source.id, has_update=True, local_revision=source.last_revision)
        else:
            try:
                remote = self.vcs.ls_remote_head(checkout, source.branch)
                local = source.last_revision or self.vcs.rev_parse(checkout)
            except VcsError as e:
                logger.warning("Update check for %s failed: %s", source.id, e)
                check = UpdateCheck(source_id=source.id, has_update=False, error=str(e))
            else:
                if remote is None:
                    check = UpdateCheck(
                        source_id=source.id,
                        has_update=False,
                        local_revision=local,
                        error=f"Branch {source.branch!r} not found on remote",
                    )
                else:
                    check = UpdateCheck(
                        source_id=source.id,
                        has_update=remote != local,
                        remote_revision=remote,
                        local_revision=local,
                    )
        self.registry.update(source.id, has_update=check.has_update, last_checked=self._now_ms())
        return check

    def check_all_for_updates(self) -> list[UpdateCheck]:
        return [self.check_for_updates(s) for s in self.registry.load() if s.enabled]

    def status(self) -> SourcesStatus:
        sources = self.registry.load()
        return SourcesStatus(
            total_sources=len(sources),
            enabled_sources=sum(1 for s in sources if s.enabled),
            total_skills=sum(s.package_count for s in sources),
            updates_available=sum(1 for s in sources if s.has_update),
            sources=tuple(sources),
        )
