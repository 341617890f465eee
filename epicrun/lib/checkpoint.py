"""
Epic resume checkpoint.

Stored as KEY=value lines at <sprint_artifacts>/.epic-<id>-checkpoint so it
can be read by the same safe parser as the project config. Written by whole
file replacement after every story transition and removed when the epic
completes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from . import envparse
from .files import write_atomic
from .validate import ValidationError, validate, validate_before_write

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    epic_id: str
    last_story_index: int
    last_story_id: str
    completed: int
    failed: int
    skipped: int
    timestamp: str
    exit_code: int | None = None

    @property
    def resume_index(self) -> int:
        return self.last_story_index + 1

    def age(self, now: datetime | None = None) -> timedelta:
        now = now or datetime.now()
        return now - datetime.fromisoformat(self.timestamp)

    def to_dict(self) -> dict:
        return {
            "epic_id": self.epic_id,
            "last_story_index": self.last_story_index,
            "last_story_id": self.last_story_id,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "timestamp": self.timestamp,
            "exit_code": self.exit_code,
        }


def checkpoint_path(sprint_artifacts_dir: Path, epic_id: str) -> Path:
    return Path(sprint_artifacts_dir) / f".epic-{epic_id}-checkpoint"


def save_checkpoint(path: Path, checkpoint: Checkpoint) -> None:
    """Validate and write the checkpoint.

    Raises:
        ValidationError: If the checkpoint is malformed (nothing is written)
    """
    data = checkpoint.to_dict()
    validate_before_write(data, "checkpoint", path)

    env = {
        "EPIC_ID": checkpoint.epic_id,
        "LAST_STORY_INDEX": checkpoint.last_story_index,
        "LAST_STORY_ID": checkpoint.last_story_id,
        "COMPLETED": checkpoint.completed,
        "FAILED": checkpoint.failed,
        "SKIPPED": checkpoint.skipped,
        "TIMESTAMP": checkpoint.timestamp,
        "EXIT_CODE": checkpoint.exit_code,
    }
    write_atomic(path, envparse.dump_env(env, header=f"epicrun checkpoint for epic {checkpoint.epic_id}"))
    logger.debug(f"Checkpoint saved: {path} (last index {checkpoint.last_story_index})")


def _from_env(env: dict, epic_id: str) -> Checkpoint:
    exit_code = env.get("EXIT_CODE")
    checkpoint = Checkpoint(
        epic_id=env.get("EPIC_ID", epic_id),
        last_story_index=int(env["LAST_STORY_INDEX"]),
        last_story_id=env.get("LAST_STORY_ID", ""),
        completed=int(env.get("COMPLETED", 0)),
        failed=int(env.get("FAILED", 0)),
        skipped=int(env.get("SKIPPED", 0)),
        timestamp=env["TIMESTAMP"],
        exit_code=int(exit_code) if exit_code not in (None, "") else None,
    )
    validate(checkpoint.to_dict(), "checkpoint")
    datetime.fromisoformat(checkpoint.timestamp)
    return checkpoint


def load_checkpoint(
    path: Path,
    epic_id: str,
    max_age_days: int,
    now: datetime | None = None,
) -> Checkpoint | None:
    """
    Load a checkpoint if present, readable and fresh.

    A checkpoint for a different epic, a malformed one, or one older than
    max_age_days is ignored with a warning.
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        checkpoint = _from_env(envparse.load_env(path), epic_id)
    except (ValueError, KeyError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable checkpoint {path}: {e}")
        return None

    if checkpoint.epic_id != epic_id:
        logger.warning(f"Ignoring checkpoint {path}: belongs to epic {checkpoint.epic_id}")
        return None

    age = checkpoint.age(now)
    if age > timedelta(days=max_age_days):
        logger.warning(
            f"Ignoring stale checkpoint {path}: {age.days} days old (limit {max_age_days})"
        )
        return None

    return checkpoint


def clear_checkpoint(path: Path) -> None:
    path = Path(path)
    if path.exists():
        path.unlink()
        logger.debug(f"Checkpoint cleared: {path}")
