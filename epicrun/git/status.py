"""Git status operations."""

from pathlib import Path

from epicrun.git.runner import run_git


def is_git_repo(repo: Path) -> bool:
    result = run_git(["rev-parse", "--is-inside-work-tree"], repo)
    return result.success and result.stdout.strip() == "true"


def has_uncommitted_changes(repo: Path) -> bool:
    """Check if the repo has any uncommitted changes (staged, unstaged, or untracked)."""
    result = run_git(["status", "--porcelain"], repo)
    return bool(result.stdout.strip())


def has_staged_changes(repo: Path) -> bool:
    """True if the index differs from HEAD."""
    result = run_git(["diff", "--cached", "--quiet"], repo)
    return result.returncode == 1


def get_current_branch(repo: Path) -> str | None:
    """Current branch name, or None when detached or not a repo."""
    result = run_git(["rev-parse", "--abbrev-ref", "HEAD"], repo)
    if not result.success:
        return None
    branch = result.stdout.strip()
    return None if branch == "HEAD" else branch


def get_staged_files(repo: Path) -> list[str]:
    result = run_git(["diff", "--cached", "--name-only"], repo)
    if not result.success:
        return []
    return [f.strip() for f in result.stdout.splitlines() if f.strip()]


def get_untracked_files(repo: Path) -> list[str]:
    """Get list of untracked, non-ignored files."""
    result = run_git(["ls-files", "--others", "--exclude-standard"], repo)
    return [f.strip() for f in result.stdout.splitlines() if f.strip()]


def get_changed_files_since(repo: Path, commits: int = 1) -> list[str]:
    """Files changed in the last N commits (empty on failure)."""
    result = run_git(["diff", "--name-only", f"HEAD~{commits}", "HEAD"], repo)
    if not result.success:
        return []
    return [f.strip() for f in result.stdout.splitlines() if f.strip()]
