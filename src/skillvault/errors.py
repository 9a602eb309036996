from __future__ import annotations

import errno
import os
from pathlib import Path
from typing import Iterable

# errno values that usually mean "someone else holds a handle right now".
BUSY_ERRNOS = frozenset(
    code
    for code in (
        errno.EBUSY,
        errno.EPERM,
        errno.EACCES,
        errno.ENOTEMPTY,
        getattr(errno, "ETXTBSY", None),
    )
    if code is not None
)

# Windows reports sharing violations through winerror rather than errno.
_BUSY_WINERRORS = frozenset({5, 32, 33, 145})


class SkillvaultError(RuntimeError):
    def __init__(self, message: str, *, paths: Iterable[str | os.PathLike[str]] = ()) -> None:
        super().__init__(message)
        self.paths: tuple[Path, ...] = tuple(Path(p) for p in paths)


class NotFoundError(SkillvaultError):
    pass


class AlreadyExistsError(SkillvaultError):
    pass


class BusyError(SkillvaultError):
    pass


class UnsupportedError(SkillvaultError):
    pass


class FatalIOError(SkillvaultError):
    pass


class NotLinkedError(SkillvaultError):
    pass


class UnlinkFailedError(FatalIOError):
    pass


class SyncError(SkillvaultError):
    pass


class CatalogError(SkillvaultError):
    pass


class VcsError(SkillvaultError):
    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"Git command failed: {' '.join(args)}\n{detail}")


def is_busy_error(exc: OSError) -> bool:
    if getattr(exc, "winerror", None) in _BUSY_WINERRORS:
        return True
    return exc.errno in BUSY_ERRNOS


def is_cross_device_error(exc: OSError) -> bool:
    return exc.errno == errno.EXDEV


def classify_os_error(
    exc: OSError,
    message: str,
    *,
    paths: Iterable[str | os.PathLike[str]] = (),
) -> SkillvaultError:
    """Map a low-level OSError onto the error taxonomy, keeping the attempted paths."""
    text = f"{message}: {exc.strerror or exc}"
    if isinstance(exc, FileNotFoundError):
        return NotFoundError(text, paths=paths)
    if isinstance(exc, FileExistsError):
        return AlreadyExistsError(text, paths=paths)
    if is_cross_device_error(exc):
        return UnsupportedError(text, paths=paths)
    if is_busy_error(exc):
        return BusyError(text, paths=paths)
    return FatalIOError(text, paths=paths)
