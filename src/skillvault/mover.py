"""
Directory moves that survive other processes holding file handles.

Rename is tried first. Busy errors are retried with a linear backoff, and a
cross-device rename (or one that stays busy) falls back to copy, settle and
delete. Once the copy is complete the content is never lost: a source that
cannot be deleted is reported as a leftover instead of an error.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal

from .errors import classify_os_error, is_busy_error, is_cross_device_error

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_S = 0.1
DEFAULT_SETTLE_S = 0.2

MoveStrategy = Literal["rename", "copy"]


@dataclass(frozen=True)
class MoveResult:
    src: Path
    dest: Path
    strategy: MoveStrategy
    leftover: Path | None = None  # src directory that could not be deleted after a good copy

    @property
    def soft(self) -> bool:
        return self.leftover is not None


def _copytree(src: Path, dest: Path) -> None:
    shutil.copytree(src, dest, symlinks=True)


def _rmtree(path: Path) -> None:
    shutil.rmtree(path)


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    else:
        _rmtree(path)


class StateMover:
    def __init__(
        self,
        *,
        retries: int = DEFAULT_RETRIES,
        backoff_s: float = DEFAULT_BACKOFF_S,
        settle_s: float = DEFAULT_SETTLE_S,
        sleep: Callable[[float], None] = time.sleep,
        rename: Callable[[Path, Path], None] = os.rename,
        copytree: Callable[[Path, Path], None] = _copytree,
        rmtree: Callable[[Path], None] = _rmtree,
    ) -> None:
        self.retries = max(0, int(retries))
        self.backoff_s = backoff_s
        self.settle_s = settle_s
        self._sleep = sleep
        self._rename = rename
        self._copytree = copytree
        self._rmtree = rmtree

    def move(self, src: Path, dest: Path) -> MoveResult:
        src = Path(src)
        dest = Path(dest)

        if os.path.lexists(dest):
            try:
                self._remove_existing(dest)
            except OSError as e:
                raise classify_os_error(e, f"Could not replace {dest}", paths=[src, dest]) from e
        dest.parent.mkdir(parents=True, exist_ok=True)

        for attempt in range(self.retries + 1):
            if attempt:
                delay = self.backoff_s * attempt
                logger.info("Rename %s -> %s busy, retry %d/%d in %.2fs", src, dest, attempt, self.retries, delay)
                self._sleep(delay)
            try:
                self._rename(src, dest)
                return MoveResult(src=src, dest=dest, strategy="rename")
            except OSError as e:
                if is_cross_device_error(e):
                    logger.info("Rename %s -> %s crosses devices, copying instead", src, dest)
                    break
                if not is_busy_error(e):
                    raise classify_os_error(e, f"Could not move {src} to {dest}", paths=[src, dest]) from e
        else:
            logger.warning("Rename %s -> %s still busy after %d retries, copying instead", src, dest, self.retries)

        return self._copy_then_delete(src, dest)

    def _remove_existing(self, dest: Path) -> None:
        if dest.is_symlink() or dest.is_file():
            dest.unlink()
        else:
            self._rmtree(dest)

    def _copy_then_delete(self, src: Path, dest: Path) -> MoveResult:
        try:
            self._copytree(src, dest)
        except OSError as e:
            if os.path.lexists(dest):
                try:
                    _remove_path(dest)
                except OSError as cleanup_error:
                    logger.warning("Could not purge partial copy %s: %s", dest, cleanup_error)
            raise classify_os_error(e, f"Could not copy {src} to {dest}", paths=[src, dest]) from e

        if self.settle_s > 0:
            self._sleep(self.settle_s)

        for attempt in range(self.retries + 1):
            if attempt:
                self._sleep(self.backoff_s * attempt)
            try:
                self._rmtree(src)
                return MoveResult(src=src, dest=dest, strategy="copy")
            except FileNotFoundError:
                return MoveResult(src=src, dest=dest, strategy="copy")
            except OSError as e:
                if not is_busy_error(e) or attempt == self.retries:
                    logger.warning("Moved %s to %s but could not delete the original: %s", src, dest, e)
                    break

        return MoveResult(src=src, dest=dest, strategy="copy", leftover=src)
