"""
Stats tracking for agent invocations.

Records one JSONL line per agent invocation in the run directory.
"""

import json
import logging
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class InvocationStats:
    """Stats for a single agent invocation."""
    timestamp: str
    run_id: str
    phase: str
    subject: str  # story id, or epic id for epic-level phases
    outcome: str  # InvocationOutcome value
    elapsed_seconds: float
    exit_code: Optional[int] = None
    attempt: int = 1
    prompt_bytes: Optional[int] = None


def record_invocation_stats(run_dir: Path, stats: InvocationStats) -> None:
    """Append invocation stats to the run's stats.jsonl file."""
    run_dir.mkdir(parents=True, exist_ok=True)
    stats_file = run_dir / "stats.jsonl"
    with open(stats_file, "a") as f:
        f.write(json.dumps(asdict(stats)) + "\n")
        f.flush()


def load_run_stats(run_dir: Path) -> list[InvocationStats]:
    """Load all stats for a run. Skips corrupted lines."""
    stats_file = run_dir / "stats.jsonl"
    if not stats_file.exists():
        return []

    stats = []
    for line_num, line in enumerate(stats_file.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
            stats.append(InvocationStats(**data))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Skipping corrupted stats line {line_num} in {stats_file}: {e}")
    return stats


@dataclass
class AggregatedStats:
    """Aggregated stats summary."""
    total_elapsed_seconds: float = 0.0
    invocations: int = 0
    timeouts: int = 0
    failures: int = 0
    by_phase: dict[str, float] = field(default_factory=dict)


def get_run_stats_summary(run_dir: Path, stats: Optional[list[InvocationStats]] = None) -> Optional[AggregatedStats]:
    """Aggregate invocation stats for a run, or None if there are none."""
    if stats is None:
        stats = load_run_stats(run_dir)
    if not stats:
        return None

    summary = AggregatedStats()
    for s in stats:
        summary.invocations += 1
        summary.total_elapsed_seconds += s.elapsed_seconds
        summary.by_phase[s.phase] = summary.by_phase.get(s.phase, 0.0) + s.elapsed_seconds
        if s.outcome == "timeout":
            summary.timeouts += 1
        elif s.outcome != "ok":
            summary.failures += 1
    return summary


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def format_stats_summary(stats: AggregatedStats) -> list[str]:
    """Format stats summary as list of lines for display."""
    lines = [
        f"  Agent time:    {format_duration(stats.total_elapsed_seconds)} ({stats.invocations} calls)",
    ]
    if stats.timeouts or stats.failures:
        lines.append(f"  Problems:      {stats.timeouts} timeout(s), {stats.failures} failed call(s)")
    for phase, elapsed in sorted(stats.by_phase.items(), key=lambda kv: -kv[1]):
        lines.append(f"    {phase:<16} {format_duration(elapsed)}")
    return lines
