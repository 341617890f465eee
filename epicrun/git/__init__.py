"""Git operations for epicrun.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: stage_tracked(), stage_files(), commit()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: has_uncommitted_changes(), has_staged_changes()
- Functions returning parsed values (str, list): Return None/empty on failure.
  Examples: get_current_branch() -> None, get_staged_files() -> []
"""

from epicrun.git.status import (
    is_git_repo,
    has_uncommitted_changes,
    has_staged_changes,
    get_current_branch,
    get_staged_files,
    get_untracked_files,
    get_changed_files_since,
)
from epicrun.git.commit import (
    stage_tracked,
    stage_files,
    commit,
    is_sensitive,
    find_sensitive_files,
)

__all__ = [
    # status
    "is_git_repo",
    "has_uncommitted_changes",
    "has_staged_changes",
    "get_current_branch",
    "get_staged_files",
    "get_untracked_files",
    "get_changed_files_since",
    # commit
    "stage_tracked",
    "stage_files",
    "commit",
    "is_sensitive",
    "find_sensitive_files",
]
