"""Git state capture for checkpoint snapshots.

Records which branch and commit a workspace's target was on when a
checkpoint was taken, plus which files were modified or staged.

All functions handle non-git directories by returning None/empty values.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class GitState:
    """Repository state at a point in time."""

    branch: str  # Current branch name, or a describe string when detached
    commit_hash: str  # Short SHA
    modified_files: tuple[str, ...]  # Unstaged changes
    staged_files: tuple[str, ...]  # Files in staging area

    @property
    def dirty(self) -> bool:
        return bool(self.modified_files or self.staged_files)

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "commit_hash": self.commit_hash,
            "modified_files": list(self.modified_files),
            "staged_files": list(self.staged_files),
        }

    @classmethod
    def from_dict(cls, data: dict) -> GitState:
        return cls(
            branch=data.get("branch", ""),
            commit_hash=data.get("commit_hash", ""),
            modified_files=tuple(data.get("modified_files", [])),
            staged_files=tuple(data.get("staged_files", [])),
        )


# =============================================================================
# Git CLI Helpers
# =============================================================================


def _run_git(args: list[str], cwd: Path | None = None) -> str | None:
    """Run a git command and return stdout, or None on failure."""
    try:
        # Security: shell=False (default), args are internal constants
        result = subprocess.run(
            ["git", *args],  # noqa: S603, S607
            capture_output=True,
            text=True,
            timeout=5,
            cwd=cwd,
        )
        if result.returncode == 0:
            return result.stdout.strip()
        return None
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"Git command failed: {e}")
        return None


def _lines(output: str | None) -> tuple[str, ...]:
    if not output:
        return ()
    return tuple(line for line in output.split("\n") if line)


def is_git_repo(path: Path | None = None) -> bool:
    return _run_git(["rev-parse", "--git-dir"], cwd=path) is not None


def get_branch(path: Path | None = None) -> str:
    """Current branch name; a tag/sha description when HEAD is detached."""
    branch = _run_git(["symbolic-ref", "--short", "HEAD"], cwd=path)
    if branch:
        return branch
    return _run_git(["describe", "--tags", "--always"], cwd=path) or ""


def get_commit(path: Path | None = None) -> str:
    return _run_git(["rev-parse", "--short", "HEAD"], cwd=path) or ""


def get_modified_files(path: Path | None = None) -> tuple[str, ...]:
    return _lines(_run_git(["diff", "--name-only"], cwd=path))


def get_staged_files(path: Path | None = None) -> tuple[str, ...]:
    return _lines(_run_git(["diff", "--staged", "--name-only"], cwd=path))


# =============================================================================
# High-Level Functions
# =============================================================================


def capture_git_state(path: Path | None = None) -> GitState | None:
    """Capture current git state, or None if ``path`` is not a repository."""
    if path is not None and not Path(path).exists():
        return None
    if not is_git_repo(path):
        return None

    return GitState(
        branch=get_branch(path),
        commit_hash=get_commit(path),
        modified_files=get_modified_files(path),
        staged_files=get_staged_files(path),
    )
