"""Git staging and commit operations."""

import logging
import re
from pathlib import Path

from epicrun.git.runner import run_git, GitResult
from epicrun.git.status import get_staged_files, get_untracked_files
from epicrun.lib.constants import SENSITIVE_FILE_PATTERNS

logger = logging.getLogger(__name__)

_SENSITIVE = [re.compile(p) for p in SENSITIVE_FILE_PATTERNS]


def stage_tracked(repo: Path) -> GitResult:
    """Stage modifications and deletions of tracked files (git add -u)."""
    return run_git(["add", "-u"], repo)


def stage_files(repo: Path, files: list[str]) -> GitResult:
    """Stage specific files."""
    return run_git(["add", "--"] + files, repo)


def commit(repo: Path, message: str) -> GitResult:
    """Create a commit with the given message."""
    return run_git(["commit", "-m", message], repo)


def is_sensitive(path: str) -> bool:
    return any(p.search(path) for p in _SENSITIVE)


def find_sensitive_files(repo: Path) -> list[str]:
    """Staged files matching a sensitive pattern.

    Untracked sensitive files that are not gitignored are logged; they are
    never staged by stage_tracked().
    """
    for path in get_untracked_files(repo):
        if is_sensitive(path):
            logger.warning(f"Sensitive file '{path}' is untracked and not gitignored")
    return [f for f in get_staged_files(repo) if is_sensitive(f)]
