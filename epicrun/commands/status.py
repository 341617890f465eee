"""
epicrun status - Show checkpoint, metrics and last run stats for an epic.
"""

import json
from pathlib import Path

from epicrun.lib.checkpoint import checkpoint_path, load_checkpoint
from epicrun.lib.config import ConfigurationError, load_run_config
from epicrun.lib.constants import EXIT_CONFIG_ERROR
from epicrun.lib.metrics import load_metrics, metrics_path
from epicrun.lib.stats import format_stats_summary, get_run_stats_summary
from epicrun.lib.stories import discover_stories
from epicrun.runner.locking import is_epic_locked
from epicrun.workflow.story_fsm import story_record_path


def latest_run_dir(state_dir: Path, epic_id: str) -> Path | None:
    runs_dir = state_dir / "runs"
    if not runs_dir.is_dir():
        return None
    runs = sorted(runs_dir.glob(f"*_epic-{epic_id}"))
    return runs[-1] if runs else None


def _story_state(record_dir: Path, story_id: str) -> str:
    path = story_record_path(record_dir, story_id)
    if not path.exists():
        return "-"
    try:
        return json.loads(path.read_text()).get("state", "?")
    except (OSError, json.JSONDecodeError):
        return "?"


def cmd_status(args, project_root: Path) -> int:
    """Show status of one epic."""
    try:
        config = load_run_config(project_root)
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    epic_id = args.epic_id
    print(f"Epic: {epic_id}")
    print("=" * 60)
    print()

    if is_epic_locked(config.state_dir, epic_id):
        print("Running:        yes (lock held)")
    else:
        print("Running:        no")

    cp_path = checkpoint_path(config.sprint_artifacts_dir, epic_id)
    checkpoint = load_checkpoint(cp_path, epic_id, config.checkpoint_max_age_days)
    if checkpoint:
        print(f"Checkpoint:     {cp_path}")
        print(f"  Last story:   {checkpoint.last_story_id} (index {checkpoint.last_story_index})")
        print(f"  Resume index: {checkpoint.resume_index}")
        print(f"  Counts:       {checkpoint.completed} completed, {checkpoint.failed} failed, "
              f"{checkpoint.skipped} skipped")
        if checkpoint.exit_code is not None:
            print(f"  Exit code:    {checkpoint.exit_code}")
    else:
        print("Checkpoint:     none")
    print()

    metrics = load_metrics(metrics_path(config.metrics_dir, epic_id))
    if metrics:
        stories = metrics.get("stories", {})
        fix_loop = metrics.get("fix_loop", {})
        execution = metrics.get("execution", {})
        print(f"Metrics:        {metrics_path(config.metrics_dir, epic_id)}")
        print(f"  Stories:      {stories.get('completed', 0)}/{stories.get('total', 0)} completed, "
              f"{stories.get('failed', 0)} failed, {stories.get('skipped', 0)} skipped")
        print(f"  Fix attempts: {fix_loop.get('total_fix_attempts', 0)} "
              f"(max retries hit {fix_loop.get('max_retries_hit', 0)})")
        if execution.get("duration_seconds") is not None:
            print(f"  Duration:     {execution['duration_seconds']}s (exit {execution.get('exit_code')})")
        issues = metrics.get("issues", [])
        if issues:
            print(f"  Issues:       {len(issues)}")
            for issue in issues[-5:]:
                print(f"    [{issue.get('type')}] {issue.get('story')}: {issue.get('message')}")
    else:
        print("Metrics:        none")
    print()

    run_dir = latest_run_dir(config.state_dir, epic_id)
    if run_dir:
        print(f"Last run:       {run_dir.name}")
        summary = get_run_stats_summary(run_dir)
        if summary:
            for line in format_stats_summary(summary):
                print(line)
        print()

    stories = discover_stories(config, epic_id)
    if stories:
        record_dir = config.state_dir / "stories"
        print(f"Stories ({len(stories)}):")
        for story in stories:
            print(f"  {story.id:<24} {_story_state(record_dir, story.id)}")

    return 0
