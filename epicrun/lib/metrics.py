"""
Per-epic execution metrics.

Kept in memory and rewritten to <sprint_artifacts>/metrics/epic-<id>-metrics.yaml
after every update. Counters only grow during a run; finalize() stamps the
end time and duration exactly once, whether the run ends normally or through
the shutdown guard.
"""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

import yaml

from .files import write_atomic
from .types import GateVerdict
from .validate import validate_before_write

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def metrics_path(metrics_dir: Path, epic_id: str) -> Path:
    return Path(metrics_dir) / f"epic-{epic_id}-metrics.yaml"


class EpicMetrics:
    """Metrics document for one epic run."""

    def __init__(self, path: Path, epic_id: str, total_stories: int = 0):
        self.path = Path(path)
        self.epic_id = epic_id
        self._lock = threading.RLock()  # finalize() may run from a signal handler mid-update
        self._finalized = False
        self._started = datetime.now(timezone.utc)
        self.data = {
            "epic_id": epic_id,
            "execution": {
                "start_time": self._started.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "end_time": None,
                "duration_seconds": None,
                "exit_code": None,
            },
            "stories": {"total": total_stories, "completed": 0, "failed": 0, "skipped": 0},
            "fix_loop": {"total_fix_attempts": 0, "stories_requiring_fixes": 0, "max_retries_hit": 0},
            "gates": [],
            "issues": [],
            "story_details": [],
        }

    @property
    def finalized(self) -> bool:
        return self._finalized

    def save(self) -> None:
        validate_before_write(self.data, "metrics", self.path)
        write_atomic(self.path, yaml.safe_dump(self.data, sort_keys=False, default_flow_style=False))

    def _update(self, fn) -> None:
        with self._lock:
            if self._finalized:
                logger.debug(f"Ignoring metrics update after finalize: {self.path}")
                return
            fn(self.data)
            self.save()

    def record_story(self, story_id: str, status: str, fix_attempts: int = 0,
                     duration_seconds: float | None = None) -> None:
        """Count a finished story. status is completed, failed or skipped."""
        def apply(d):
            if status in ("completed", "failed", "skipped"):
                d["stories"][status] += 1
            if fix_attempts:
                d["fix_loop"]["stories_requiring_fixes"] += 1
            d["story_details"].append({
                "story": story_id,
                "status": status,
                "fix_attempts": fix_attempts,
                "duration_seconds": round(duration_seconds, 1) if duration_seconds is not None else None,
            })
        self._update(apply)

    def carry_over(self, completed: int, failed: int, skipped: int) -> None:
        """Seed story counters with the totals of a resumed checkpoint."""
        def apply(d):
            d["stories"]["completed"] += completed
            d["stories"]["failed"] += failed
            d["stories"]["skipped"] += skipped
        self._update(apply)

    def record_fix_attempt(self) -> None:
        def apply(d):
            d["fix_loop"]["total_fix_attempts"] += 1
        self._update(apply)

    def record_max_retries(self, story_id: str, phase: str) -> None:
        def apply(d):
            d["fix_loop"]["max_retries_hit"] += 1
        self._update(apply)
        self.add_issue(story_id, "max_retries_exhausted", f"{phase} fix attempts exhausted")

    def record_gate(self, subject: str, verdict: GateVerdict) -> None:
        self._update(lambda d: d["gates"].append({
            "subject": subject,
            "phase": verdict.phase.value,
            "verdict": verdict.verdict.value,
            "reason": verdict.reason,
            "score": verdict.score,
        }))

    def add_issue(self, story: str, issue_type: str, message: str) -> None:
        self._update(lambda d: d["issues"].append({
            "story": story,
            "type": issue_type,
            "message": message,
            "timestamp": _utcnow(),
        }))

    def counts(self) -> dict:
        return dict(self.data["stories"])

    def finalize(self, exit_code: int | None = None) -> bool:
        """Stamp end time and duration. Returns False if already finalized."""
        with self._lock:
            if self._finalized:
                return False
            ended = datetime.now(timezone.utc)
            self.data["execution"]["end_time"] = ended.strftime("%Y-%m-%dT%H:%M:%SZ")
            self.data["execution"]["duration_seconds"] = round((ended - self._started).total_seconds(), 1)
            self.data["execution"]["exit_code"] = exit_code
            self.save()
            self._finalized = True
        logger.info(f"Metrics finalized: {self.path}")
        return True


def load_metrics(path: Path) -> dict | None:
    """Read a metrics file for reporting. Returns None if missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        return yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {path}: {e}")
        return None
