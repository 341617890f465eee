"""
Epic decision log.

A cumulative markdown file (<sprint_artifacts>/epic-<id>-decisions.md) that
carries implementation decisions from one story's phases into the prompts of
later ones.
"""

import logging
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def decision_log_path(sprint_artifacts_dir: Path, epic_id: str) -> Path:
    return Path(sprint_artifacts_dir) / f"epic-{epic_id}-decisions.md"


def init_decision_log(path: Path, epic_id: str) -> Path:
    """Create the decision log if it does not exist yet."""
    path = Path(path)
    if path.exists():
        logger.debug(f"Using existing decision log: {path}")
        return path

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        f"# Epic {epic_id} Decision Log\n\n"
        "This file tracks implementation decisions for context continuity across phases.\n\n"
        f"**Epic:** {epic_id}\n"
        f"**Started:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        "---\n"
    )
    logger.info(f"Decision log initialized: {path}")
    return path


def append_decisions(path: Path, phase: str, story_id: str, decisions) -> bool:
    """Append a section of decisions. Returns False if there was nothing to add."""
    path = Path(path)
    decisions = [d for d in decisions if d]
    if not decisions:
        return False
    if not path.exists():
        logger.warning(f"Decision log not initialized: {path}")
        return False

    body = "\n".join(f"- {d}" for d in decisions)
    with open(path, "a") as f:
        f.write(
            f"\n## {phase.upper()}: {story_id}\n"
            f"**Timestamp:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
            f"{body}\n\n---\n"
        )
    logger.debug(f"Appended {len(decisions)} {phase} decision(s) for {story_id}")
    return True


def read_decision_log(path: Path) -> str:
    """Decision log contents for prompt context, or empty string."""
    path = Path(path)
    if not path.exists():
        return ""
    return path.read_text()
