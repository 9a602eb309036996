from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from .errors import VcsError

logger = logging.getLogger(__name__)


class VcsClient(Protocol):
    def clone(self, url: str, dest: Path, *, branch: str, depth: int = 1) -> None:
        ...

    def init(self, dest: Path, url: str) -> None:
        ...

    def sparse_init(self, repo: Path) -> None:
        ...

    def sparse_set(self, repo: Path, paths: Sequence[str]) -> None:
        ...

    def sparse_add(self, repo: Path, paths: Sequence[str]) -> None:
        ...

    def fetch(self, repo: Path, branch: str, *, depth: int = 1) -> None:
        ...

    def checkout(self, repo: Path, branch: str) -> None:
        ...

    def pull(self, repo: Path, branch: str) -> None:
        ...

    def rev_parse(self, repo: Path, ref: str = "HEAD") -> str:
        ...

    def ls_remote_head(self, repo: Path, branch: str) -> str | None:
        ...


def parse_ls_remote_commit(output: str) -> str | None:
    """Commit hash from ``git ls-remote`` output, preferring a peeled tag line."""
    fallback: str | None = None
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split(maxsplit=1)
        commit = parts[0].strip()
        if not commit:
            continue
        ref = parts[1].strip() if len(parts) > 1 else ""
        if ref.endswith("^{}"):
            return commit
        if fallback is None:
            fallback = commit
    return fallback


class GitClient:
    """Runs the ``git`` executable; every non-zero exit becomes a ``VcsError``."""

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    def _run(self, args: list[str], *, cwd: Path | None = None) -> str:
        cmd = [self.executable, *args]
        logger.debug("Running %s (cwd=%s)", " ".join(cmd), cwd)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise VcsError(cmd, -1, f"Could not run {self.executable}: {e}") from e
        if result.returncode != 0:
            raise VcsError(cmd, result.returncode, result.stderr.strip() or result.stdout.strip())
        return result.stdout

    def clone(self, url: str, dest: Path, *, branch: str, depth: int = 1) -> None:
        self._run(["clone", "--depth", str(depth), "--branch", branch, url, str(dest)])

    def init(self, dest: Path, url: str) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        self._run(["init"], cwd=dest)
        self._run(["remote", "add", "origin", url], cwd=dest)

    def sparse_init(self, repo: Path) -> None:
        self._run(["sparse-checkout", "init", "--cone"], cwd=repo)

    def sparse_set(self, repo: Path, paths: Sequence[str]) -> None:
        self._run(["sparse-checkout", "set", *paths], cwd=repo)

    def sparse_add(self, repo: Path, paths: Sequence[str]) -> None:
        self._run(["sparse-checkout", "add", *paths], cwd=repo)

    def fetch(self, repo: Path, branch: str, *, depth: int = 1) -> None:
        self._run(["fetch", "--depth", str(depth), "origin", branch], cwd=repo)

    def checkout(self, repo: Path, branch: str) -> None:
        # After a bare fetch only FETCH_HEAD exists; -B creates the local branch from it.
        try:
            self._run(["checkout", branch], cwd=repo)
        except VcsError:
            self._run(["checkout", "-B", branch, "FETCH_HEAD"], cwd=repo)

    def pull(self, repo: Path, branch: str) -> None:
        self._run(["pull", "--ff-only", "origin", branch], cwd=repo)

    def rev_parse(self, repo: Path, ref: str = "HEAD") -> str:
        return self._run(["rev-parse", ref], cwd=repo).strip()

    def ls_remote_head(self, repo: Path, branch: str) -> str | None:
        return parse_ls_remote_commit(self._run(["ls-remote", "origin", branch], cwd=repo))
