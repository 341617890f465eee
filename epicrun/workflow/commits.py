"""Commit hand-off: stage, check for sensitive files, commit."""

import logging
from pathlib import Path

from epicrun.git import commit, find_sensitive_files, has_staged_changes, stage_files, stage_tracked
from epicrun.runner.context import EpicContext

logger = logging.getLogger(__name__)


def story_commit_message(epic_id: str, story_id: str) -> str:
    return f"feat(epic-{epic_id}): complete {story_id}"


def traceability_commit_message(epic_id: str, attempt: int) -> str:
    return f"test(epic-{epic_id}): generate missing tests for traceability (attempt {attempt})"


def uat_commit_message(epic_id: str) -> str:
    return f"docs(epic-{epic_id}): add UAT document"


def commit_changes(ctx: EpicContext, message: str, subject: str, extra_files: list[Path] | None = None) -> bool:
    """
    Stage tracked changes (plus extra_files) and commit.

    Skipped under --dry-run and --no-commit. Refuses to commit when a staged
    file matches a sensitive pattern.

    Returns:
        True if a commit was created
    """
    if ctx.options.dry_run or ctx.options.no_commit:
        logger.info(f"Skipping commit ({'dry run' if ctx.options.dry_run else '--no-commit'}): {message}")
        return False

    root = ctx.config.project_root
    staged = stage_tracked(root)
    if not staged.success:
        logger.warning(f"Staging failed: {staged.describe()}")
        return False

    files = [str(f) for f in (extra_files or []) if Path(f).exists()]
    if files:
        result = stage_files(root, files)
        if not result.success:
            logger.warning(f"Could not stage {files}: {result.describe()}")

    sensitive = find_sensitive_files(root)
    if sensitive:
        logger.error(f"Refusing to commit sensitive file(s): {', '.join(sensitive)}")
        if ctx.metrics:
            ctx.metrics.add_issue(subject, "sensitive_files", ", ".join(sensitive))
        return False

    if not has_staged_changes(root):
        logger.info(f"Nothing to commit for {subject}")
        return False

    result = commit(root, message)
    if not result.success:
        logger.warning(f"Commit failed for {subject}: {result.describe()}")
        if ctx.metrics:
            ctx.metrics.add_issue(subject, "commit_failed", result.describe()[:200])
        return False

    logger.info(f"Committed: {message}")
    ctx.log(f"Committed: {message}")
    return True
