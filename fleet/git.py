"""Git integration for fleet.

Provides the version-control probe used when capturing checkpoints and the
mutating operations used by rollback:
- Capturing branch/commit/status/diff into a checkpoint
- Stashing, checking out, and re-applying patches during rollback

Code above this module depends on the ``VersionControl`` protocol; ``GitRepo``
implements it with the git CLI. Every call runs ``git -C <dir>`` with a
timeout and raises ``ExternalToolError`` on failure.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from fleet.config import DEFAULT_COMMAND_TIMEOUT
from fleet.errors import ExternalToolError

logger = logging.getLogger(__name__)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class StatusCounts:
    """File counts derived from ``git status --porcelain``."""

    staged: int = 0
    unstaged: int = 0
    untracked: int = 0

    @property
    def total(self) -> int:
        return self.staged + self.unstaged + self.untracked

    @property
    def is_dirty(self) -> bool:
        return self.total > 0


class VersionControl(Protocol):
    """What fleet needs from a version-control system."""

    def is_repo(self, path: Path | str) -> bool: ...

    def current_branch(self, path: Path | str) -> str: ...

    def current_commit(self, path: Path | str) -> str: ...

    def status(self, path: Path | str) -> str: ...

    def status_text(self, path: Path | str) -> str: ...

    def diff(self, path: Path | str) -> str: ...

    def stash(self, path: Path | str, name: str) -> None: ...

    def stash_pop(self, path: Path | str, name: str | None = None) -> None: ...

    def checkout(self, path: Path | str, commit: str) -> None: ...

    def apply_patch(self, path: Path | str, patch: str) -> None: ...


# =============================================================================
# Status Parsing
# =============================================================================


def parse_status(status: str) -> StatusCounts:
    """Count staged, unstaged, and untracked entries in porcelain output.

    Each line is ``XY path``: X is the index column, Y the worktree column.
    A line may count as both staged and unstaged ("MM" = staged, then
    modified again). "??" lines are untracked and count only as such.
    """
    staged = unstaged = untracked = 0

    # Leading spaces are significant in porcelain format; only drop newlines
    for line in status.rstrip("\n").split("\n"):
        if len(line) < 2:
            continue
        index_status, worktree_status = line[0], line[1]

        if line.startswith("??"):
            untracked += 1
            continue

        if index_status not in (" ", "?"):
            staged += 1
        if worktree_status not in (" ", "?"):
            unstaged += 1

    return StatusCounts(staged=staged, unstaged=unstaged, untracked=untracked)


# =============================================================================
# Git CLI Adapter
# =============================================================================


class GitRepo:
    """VersionControl backed by the git CLI."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    def _run_git(self, args: list[str], cwd: Path | str, input: str | None = None) -> str:
        """Run ``git -C cwd <args>`` and return raw stdout.

        Output is not stripped: porcelain status and patches are
        whitespace-sensitive. Bytes that are not UTF-8 (a Latin-1 file in
        a diff) decode to surrogate escapes and encode back unchanged.
        """
        try:
            # Security: shell=False (default), args are internal constants
            result = subprocess.run(
                ["git", "-C", str(cwd), *args],  # noqa: S603, S607
                capture_output=True,
                encoding="utf-8",
                errors="surrogateescape",
                timeout=self.timeout,
                input=input,
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError("git", args, f"git {args[0]} timed out after {self.timeout}s") from e
        except UnicodeError as e:
            raise ExternalToolError("git", args, f"git {args[0]}: undecodable data: {e}") from e
        except (FileNotFoundError, OSError) as e:
            raise ExternalToolError("git", args, f"Failed to run git: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            logger.debug(f"git {' '.join(args)} exited {result.returncode}: {stderr}")
            raise ExternalToolError(
                "git",
                args,
                f"git {' '.join(args[:2])} failed (exit {result.returncode}): {stderr}",
                stderr=stderr,
            )
        return result.stdout

    def is_repo(self, path: Path | str) -> bool:
        try:
            self._run_git(["rev-parse", "--git-dir"], path)
        except ExternalToolError:
            return False
        return True

    def current_branch(self, path: Path | str) -> str:
        """Current branch name, or a describe string when HEAD is detached."""
        try:
            return self._run_git(["symbolic-ref", "--short", "HEAD"], path).strip()
        except ExternalToolError:
            pass
        return self._run_git(["describe", "--tags", "--always"], path).strip()

    def current_commit(self, path: Path | str) -> str:
        """Full SHA of HEAD."""
        return self._run_git(["rev-parse", "HEAD"], path).strip()

    def status(self, path: Path | str) -> str:
        return self._run_git(["status", "--porcelain"], path)

    def status_text(self, path: Path | str) -> str:
        return self._run_git(["status"], path)

    def diff(self, path: Path | str) -> str:
        """Staged and unstaged changes to tracked files, relative to HEAD."""
        return self._run_git(["diff", "HEAD"], path)

    def stash(self, path: Path | str, name: str) -> None:
        """Stash all changes, untracked files included, under ``name``.

        Raises:
            ExternalToolError: if git fails or no stash entry was created
        """
        self._run_git(["stash", "push", "--include-untracked", "-m", name], path)
        latest = self._run_git(["stash", "list", "-1", "--format=%s"], path).strip()
        if not latest.endswith(name):
            raise ExternalToolError(
                "git",
                ["stash", "push"],
                f"git stash did not create an entry named {name!r}",
            )

    def stash_pop(self, path: Path | str, name: str | None = None) -> None:
        """Pop the stash named ``name``, or the most recent one."""
        ref = self._find_stash(path, name) if name else None
        args = ["stash", "pop"]
        if ref:
            args.append(ref)
        self._run_git(args, path)

    def _find_stash(self, path: Path | str, name: str) -> str | None:
        listing = self._run_git(["stash", "list", "--format=%gd %s"], path)
        for line in listing.splitlines():
            ref, _, message = line.partition(" ")
            if message.endswith(name):
                return ref
        logger.warning(f"Stash {name!r} not found, popping most recent stash")
        return None

    def checkout(self, path: Path | str, commit: str) -> None:
        self._run_git(["checkout", commit], path)

    def apply_patch(self, path: Path | str, patch: str) -> None:
        self._run_git(["apply", "--3way", "-"], path, input=patch)


def has_uncommitted_changes(vcs: VersionControl, path: Path | str) -> bool:
    """True if the working tree has any staged, unstaged, or untracked changes.

    A failing status probe is treated as a clean tree.
    """
    try:
        return bool(vcs.status(path).strip())
    except ExternalToolError as e:
        logger.debug(f"git status failed in {path}: {e}")
        return False
