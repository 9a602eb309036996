from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Protocol

from .errors import (
    AlreadyExistsError,
    FatalIOError,
    NotLinkedError,
    UnlinkFailedError,
    UnsupportedError,
    classify_os_error,
)
from .paths import PathResolver, ToolDefinition
from .scanner import count_tool_entries

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_S = 0.2


class DirectoryLink(Protocol):
    def create(self, link_path: Path, target: Path) -> None:
        ...

    def remove(self, link_path: Path) -> None:
        ...

    def is_link(self, path: Path) -> bool:
        ...

    def resolve_target(self, path: Path) -> Path | None:
        ...


class SymlinkLink:
    """POSIX directory symlinks. Removal unlinks the entry, never the target's content."""

    def create(self, link_path: Path, target: Path) -> None:
        os.symlink(str(target), str(link_path), target_is_directory=True)

    def remove(self, link_path: Path) -> None:
        os.unlink(link_path)

    def is_link(self, path: Path) -> bool:
        return path.is_symlink()

    def resolve_target(self, path: Path) -> Path | None:
        if not self.is_link(path):
            return None
        raw = Path(os.readlink(path))
        if not raw.is_absolute():
            raw = path.parent / raw
        return Path(os.path.realpath(raw))


def _has_reparse_point(path: Path) -> bool:
    try:
        st = os.lstat(path)
    except OSError:
        return False
    attrs = getattr(st, "st_file_attributes", 0)
    flag = getattr(stat, "FILE_ATTRIBUTE_REPARSE_POINT", 0x400)
    return bool(attrs & flag)


class JunctionLink:
    """
    Windows directory junctions.

    Junctions need no elevation, unlike directory symlinks. They must be
    removed with a plain ``rmdir``: a recursive delete walks through the
    junction and destroys the warehouse content behind it.
    """

    def __init__(self, *, run: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run) -> None:
        self._run = run

    def create(self, link_path: Path, target: Path) -> None:
        proc = self._run(
            ["cmd", "/c", "mklink", "/J", str(link_path), str(target)],
            capture_output=True,
            text=True,
            check=False,
        )
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip() or f"exit status {proc.returncode}"
            raise FatalIOError(f"mklink /J failed for {link_path}: {detail}", paths=[link_path, target])

    def remove(self, link_path: Path) -> None:
        os.rmdir(link_path)

    def is_link(self, path: Path) -> bool:
        isjunction = getattr(os.path, "isjunction", None)
        if isjunction is not None and isjunction(path):
            return True
        return path.is_symlink() or _has_reparse_point(path)

    def resolve_target(self, path: Path) -> Path | None:
        if not self.is_link(path):
            return None
        try:
            return Path(os.path.realpath(path))
        except OSError:
            return None


def default_directory_link(platform: str | None = None) -> DirectoryLink:
    name = sys.platform if platform is None else platform
    if name.startswith("win"):
        return JunctionLink()
    return SymlinkLink()


@dataclass(frozen=True)
class ToolStatus:
    tool: ToolDefinition
    installed: bool
    linked: bool
    path: Path
    link_target: Path | None = None
    skills_count: int = 0

    @property
    def state(self) -> str:
        if not self.installed:
            return "not_installed"
        return "linked" if self.linked else "unlinked"


def _same_path(a: Path, b: Path) -> bool:
    return os.path.normcase(os.path.realpath(a)) == os.path.normcase(os.path.realpath(b))


def _contains(parent: Path, child: Path) -> bool:
    p = os.path.normcase(os.path.realpath(parent))
    c = os.path.normcase(os.path.realpath(child))
    return c == p or c.startswith(p.rstrip(os.sep) + os.sep)


def _copy_missing(src_dir: Path, dest_dir: Path, *, reserved: Iterable[Path] = ()) -> list[str]:
    """Copy entries of ``src_dir`` that are absent from ``dest_dir`` and every reserved dir."""
    skipped: list[str] = []
    reserved = tuple(reserved)
    dest_dir.mkdir(parents=True, exist_ok=True)
    for entry in sorted(src_dir.iterdir(), key=lambda p: p.name):
        dest = dest_dir / entry.name
        if os.path.lexists(dest) or any(os.path.lexists(r / entry.name) for r in reserved):
            skipped.append(entry.name)
            continue
        if entry.is_symlink():
            os.symlink(os.readlink(entry), dest)
        elif entry.is_dir():
            shutil.copytree(entry, dest, symlinks=True)
        elif entry.is_file():
            shutil.copy2(entry, dest)
    return skipped


class LinkManager:
    """
    Attaches tool skill directories to the warehouse with directory links.

    Platform details stay behind the injected ``DirectoryLink``; this class
    only decides what to merge, remove and verify.
    """

    def __init__(
        self,
        resolver: PathResolver,
        *,
        link: DirectoryLink | None = None,
        settle_s: float = DEFAULT_SETTLE_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.resolver = resolver
        self.link_impl = link or default_directory_link()
        self.settle_s = settle_s
        self._sleep = sleep

    def link(
        self,
        tool_id: str,
        warehouse_path: Path,
        *,
        reserved: Iterable[Path] = (),
    ) -> Path:
        """
        Point the tool's skills directory at ``warehouse_path``.

        An existing ordinary directory is merged into ``warehouse_path``
        without overwriting, skipping names present in any ``reserved``
        directory, then removed. Returns the link path.
        """
        self.resolver.tool(tool_id)
        target = self.resolver.current_skill_path(tool_id)
        warehouse_path = Path(warehouse_path)

        try:
            warehouse_path.mkdir(parents=True, exist_ok=True)
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise classify_os_error(e, f"Could not prepare link for {tool_id}", paths=[target, warehouse_path]) from e

        if self.link_impl.is_link(target):
            try:
                self.link_impl.remove(target)
            except OSError as e:
                raise classify_os_error(e, f"Could not remove existing link {target}", paths=[target]) from e
            logger.info("Removed previous link at %s", target)
        elif target.exists():
            if _contains(target, warehouse_path):
                raise UnsupportedError(
                    f"{tool_id} skills directory {target} holds the warehouse",
                    paths=[target, warehouse_path],
                )
            if not target.is_dir():
                raise AlreadyExistsError(f"{target} exists and is not a directory", paths=[target])
            self._merge_and_remove(target, warehouse_path, reserved=reserved)

        try:
            self.link_impl.create(target, warehouse_path)
        except OSError as e:
            raise classify_os_error(e, f"Could not link {tool_id}", paths=[target, warehouse_path]) from e

        resolved = self.link_impl.resolve_target(target)
        if resolved is None or not _same_path(resolved, warehouse_path):
            raise FatalIOError(
                f"Link {target} resolves to {resolved}, expected {warehouse_path}",
                paths=[target, warehouse_path],
            )
        logger.info("Linked %s: %s -> %s", tool_id, target, warehouse_path)
        return target

    def _merge_and_remove(self, tool_dir: Path, dest: Path, *, reserved: Iterable[Path]) -> None:
        try:
            skipped = _copy_missing(tool_dir, dest, reserved=reserved)
        except OSError as e:
            raise classify_os_error(e, f"Could not merge {tool_dir} into {dest}", paths=[tool_dir, dest]) from e
        for name in skipped:
            logger.warning("Kept warehouse copy of %s; the one in %s was not merged", name, tool_dir)
        try:
            shutil.rmtree(tool_dir)
        except OSError as e:
            raise classify_os_error(e, f"Merged {tool_dir} but could not remove it", paths=[tool_dir]) from e

    def unlink(
        self,
        tool_id: str,
        warehouse_path: Path,
        *,
        sync_back: bool = False,
    ) -> Path:
        """
        Replace the tool's link with an ordinary directory.

        Every candidate path is checked, since tools move their skills
        directory between versions. With ``sync_back`` the new directory is
        filled with a one-way snapshot of ``warehouse_path``.
        """
        self.resolver.tool(tool_id)
        target = self.resolver.current_skill_path(tool_id)
        if not self.link_impl.is_link(target):
            raise NotLinkedError(f"{tool_id} is not linked ({target} is not a directory link)", paths=[target])

        try:
            self.link_impl.remove(target)
        except OSError as e:
            raise classify_os_error(e, f"Could not remove link {target}", paths=[target]) from e

        if self.settle_s > 0:
            self._sleep(self.settle_s)
        if self.link_impl.is_link(target):
            raise UnlinkFailedError(
                f"Link {target} still exists after removal; close programs using it and retry",
                paths=[target],
            )
        logger.info("Unlinked %s at %s", tool_id, target)

        warehouse_path = Path(warehouse_path)
        if _same_path(target, warehouse_path):
            return target
        try:
            target.mkdir(parents=True, exist_ok=True)
            if sync_back and warehouse_path.is_dir():
                _copy_missing(warehouse_path, target)
        except OSError as e:
            raise classify_os_error(e, f"Unlinked {tool_id} but could not restore {target}", paths=[target]) from e
        return target

    def status(self, tool_id: str) -> ToolStatus:
        tool = self.resolver.tool(tool_id)
        installed = self.resolver.installed_root(tool_id) is not None or self.resolver.has_override(tool_id)
        path = self.resolver.current_skill_path(tool_id)
        if not installed:
            return ToolStatus(tool=tool, installed=False, linked=False, path=path)

        linked = self.link_impl.is_link(path)
        link_target = self.link_impl.resolve_target(path) if linked else None
        if not linked and not os.path.lexists(path):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning("Could not create skills directory for %s at %s: %s", tool_id, path, e)
        return ToolStatus(
            tool=tool,
            installed=True,
            linked=linked,
            path=path,
            link_target=link_target,
            skills_count=count_tool_entries(path) if path.is_dir() else 0,
        )

    def status_all(self) -> list[ToolStatus]:
        return [self.status(t.id) for t in self.resolver.tools()]
