"""Tests for epicrun.workflow.epic module."""

import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeInvoker, agent_json, make_ctx, write_story
from epicrun.agents.claude import Invocation, InvocationOutcome, TransientInvocationError
from epicrun.lib.checkpoint import Checkpoint, load_checkpoint, save_checkpoint
from epicrun.lib.config import ConfigurationError
from epicrun.lib.metrics import load_metrics
from epicrun.lib.static_analysis import CheckRun, ToolCheck
from epicrun.lib.stories import discover_stories
from epicrun.lib.types import PhaseType, Verdict
from epicrun.runner.locking import LockTimeout, epic_lock
from epicrun.workflow.epic import preflight, run_epic
from epicrun.workflow.models import EpicRequest


@pytest.fixture(autouse=True)
def no_git():
    with patch("epicrun.workflow.phases.stage_tracked") as mock_stage:
        mock_stage.return_value = MagicMock(success=True)
        yield mock_stage


@pytest.fixture
def stories(config):
    for name in ("3-1-login", "3-2-profile", "3-3-logout"):
        write_story(config, name)
    return discover_stories(config, "3")


def failing_review():
    return agent_json("FAILED", issues=[{"severity": "critical", "description": "auth bypass"}])


def exhausted():
    return TransientInvocationError(3, Invocation("", InvocationOutcome.SPAWN_ERROR, None, 0.0))


class TestRunEpic:
    """Whole-epic execution."""

    def test_all_stories_complete(self, config, stories):
        """A clean epic runs every story, both epic phases, and clears the checkpoint."""
        invoker = FakeInvoker()
        ctx = make_ctx(config, invoker)

        outcome = run_epic(ctx, stories=stories)

        assert outcome.exit_code == 0
        assert outcome.status == "complete"
        assert outcome.state.completed == 3
        assert invoker.labels()[-2:] == ["traceability", "acceptance_doc"]
        assert not ctx.checkpoint_file.exists()
        assert outcome.uat_path == config.uat_dir / "epic-3-uat.md"

        metrics = load_metrics(ctx.metrics_file)
        assert metrics["stories"]["completed"] == 3
        assert metrics["execution"]["exit_code"] == 0

        result = json.loads((ctx.run_dir / "result.json").read_text())
        assert result["status"] == "complete"
        assert result["stages"]["traceability"]["status"] == "passed"

    def test_blocked_story_continues_and_exits_1(self, config, stories):
        """A blocked story does not stop the epic; the run exits 1."""
        invoker = FakeInvoker({"code_review": [agent_json("PASSED"), failing_review()]})
        ctx = make_ctx(config, invoker)

        outcome = run_epic(ctx, stories=stories)

        assert outcome.exit_code == 1
        assert outcome.status == "blocked"
        assert outcome.state.completed == 1
        assert outcome.state.failed == 2
        assert outcome.failure["story"] == "3-2-profile"
        assert outcome.failure["phase"] == "code_review"
        assert outcome.failure["verdict"] == "FAIL"
        assert outcome.failure["resume_index"] == 1

    def test_retry_exhausted_checkpoints_failing_story(self, config, stories):
        """Exhausted retries stop the epic and checkpoint the story before it."""
        invoker = FakeInvoker({"dev": [agent_json(), exhausted()]})
        ctx = make_ctx(config, invoker)

        outcome = run_epic(ctx, stories=stories)

        assert outcome.exit_code == 2
        assert outcome.status == "failed"
        assert "3-3-logout" not in [s for s, _, _ in invoker.calls]
        assert "traceability" not in invoker.labels()

        checkpoint = load_checkpoint(ctx.checkpoint_file, "3", max_age_days=7)
        assert checkpoint.last_story_index == 0
        assert checkpoint.resume_index == 1
        assert checkpoint.exit_code == 2

    def test_resume_from_checkpoint(self, config, stories):
        """A fresh checkpoint skips the stories it already covers."""
        ctx = make_ctx(config, FakeInvoker())
        save_checkpoint(ctx.checkpoint_file, Checkpoint(
            epic_id="3", last_story_index=0, last_story_id="3-1-login",
            completed=1, failed=0, skipped=0,
            timestamp=ctx.start_time.replace(microsecond=0).isoformat(),
        ))

        outcome = run_epic(ctx, stories=stories)

        subjects = {s for s, _, _ in ctx.invoker.calls}
        assert "3-1-login" not in subjects
        assert {"3-2-profile", "3-3-logout"} <= subjects
        assert outcome.state.completed == 3
        assert not ctx.checkpoint_file.exists()

    def test_resume_carries_checkpoint_counts_into_metrics(self, config, stories):
        """Metrics after a resume count the stories finished before the checkpoint."""
        ctx = make_ctx(config, FakeInvoker())
        save_checkpoint(ctx.checkpoint_file, Checkpoint(
            epic_id="3", last_story_index=1, last_story_id="3-2-profile",
            completed=2, failed=0, skipped=0,
            timestamp=ctx.start_time.replace(microsecond=0).isoformat(),
        ))

        outcome = run_epic(ctx, stories=stories)

        assert outcome.state.completed == 3
        counts = load_metrics(ctx.metrics_file)["stories"]
        assert counts["completed"] == 3
        assert counts["total"] == 3

    @patch("epicrun.lib.static_analysis.run_check")
    def test_static_analysis_gate_runs_per_story(self, mock_check, config, stories):
        """Detected tooling runs after each story's dev phase; the tests also run before it."""
        (config.project_root / "package.json").write_text(json.dumps({"scripts": {"lint": "eslint ."}}))
        mock_check.side_effect = lambda root, check, timeout: CheckRun(check.name, check.command, 0)
        ctx = make_ctx(config, FakeInvoker(), run_static_analysis=True)

        outcome = run_epic(ctx, stories=stories)

        assert outcome.state.completed == 3
        assert ctx.static_analysis.checks == [ToolCheck("lint", "npm run lint")]
        commands = [c.args[1].command for c in mock_check.call_args_list]
        assert commands.count("npm test") == 6
        assert commands.count("npm run lint") == 3

    def test_static_analysis_skipped_on_request(self, config, stories):
        """Without the option no gate is built."""
        (config.project_root / "package.json").write_text(json.dumps({"scripts": {"lint": "eslint ."}}))
        ctx = make_ctx(config, FakeInvoker())
        run_epic(ctx, stories=stories)
        assert ctx.static_analysis is None

    def test_start_from_overrides_checkpoint(self, config, stories):
        """An explicit start story wins over the checkpoint."""
        ctx = make_ctx(config, FakeInvoker(), start_from="3-3")
        save_checkpoint(ctx.checkpoint_file, Checkpoint(
            epic_id="3", last_story_index=0, last_story_id="3-1-login",
            completed=1, failed=0, skipped=0,
            timestamp=ctx.start_time.replace(microsecond=0).isoformat(),
        ))

        outcome = run_epic(ctx, stories=stories)

        assert {s for s, _, _ in ctx.invoker.calls if s.startswith("3-")} == {"3-3-logout"}
        assert outcome.state.skipped == 2
        assert load_metrics(ctx.metrics_file)["stories"]["skipped"] == 2

    def test_start_from_unknown_story(self, config, stories):
        """A start story that matches nothing is a configuration error."""
        ctx = make_ctx(config, FakeInvoker(), start_from="3-9")
        with pytest.raises(ConfigurationError, match="matches no story"):
            run_epic(ctx, stories=stories)

    def test_skip_done(self, config, stories):
        """Stories already marked done are skipped on request."""
        write_story(config, "3-1-login", status="done")
        ctx = make_ctx(config, FakeInvoker(), skip_done=True)

        outcome = run_epic(ctx, stories=stories)

        assert "3-1-login" not in {s for s, _, _ in ctx.invoker.calls}
        assert outcome.state.skipped == 1
        assert outcome.state.completed == 2

    def test_dry_run(self, config, stories):
        """A dry run calls no agent and changes no files."""
        invoker = FakeInvoker()
        ctx = make_ctx(config, invoker, dry_run=True)

        outcome = run_epic(ctx, stories=stories)

        assert outcome.exit_code == 0
        assert outcome.status == "dry_run"
        assert invoker.calls == []
        assert not ctx.checkpoint_file.exists()
        assert "Status: ready-for-dev" in stories[0].path.read_text()

    def test_no_completed_stories_skips_epic_phases(self, config, stories):
        """Epic phases need at least one completed story."""
        invoker = FakeInvoker({"code_review": failing_review()})
        ctx = make_ctx(config, invoker)

        run_epic(ctx, stories=stories)

        assert "traceability" not in invoker.labels()
        assert ctx.stages["traceability"]["status"] == "skipped"

    def test_traceability_skipped_by_option(self, config, stories):
        """Skipping traceability still writes the acceptance document."""
        invoker = FakeInvoker()
        run_epic(make_ctx(config, invoker, skip_phases=frozenset({PhaseType.TRACEABILITY})), stories=stories)
        assert "traceability" not in invoker.labels()
        assert "acceptance_doc" in invoker.labels()

    def test_traceability_gaps_recorded(self, config, stories):
        """Coverage gaps are an issue in metrics, not a failed run."""
        invoker = FakeInvoker({"traceability": agent_json("FAIL", coverage={"P0": 80, "P1": 95})})
        ctx = make_ctx(config, invoker)

        outcome = run_epic(ctx, stories=stories)

        assert outcome.traceability.verdict.verdict == Verdict.FAIL
        assert outcome.exit_code == 0
        issues = load_metrics(ctx.metrics_file)["issues"]
        assert "traceability_gaps" in [i["type"] for i in issues]

    def test_lock_held_elsewhere(self, config, stories):
        """A held epic lock stops the run before any agent call."""
        ctx = make_ctx(config, FakeInvoker())
        with patch("epicrun.workflow.epic.epic_lock") as mock_lock:
            mock_lock.side_effect = LockTimeout("Could not acquire lock for epic 3 within 10s")
            with pytest.raises(LockTimeout):
                run_epic(ctx, stories=stories)
        assert ctx.invoker.calls == []


class TestPreflight:
    """Checks before any agent call."""

    def test_no_stories(self, config):
        """An epic without stories fails preflight."""
        with pytest.raises(ConfigurationError, match="No stories found for epic 3"):
            preflight(make_ctx(config))

    def test_missing_agent_binary(self, project, stories):
        """The agent command must be on PATH."""
        from epicrun.lib.config import load_run_config
        config = load_run_config(project, env={"AGENT_COMMAND": "no-such-agent-binary -p"})
        with pytest.raises(ConfigurationError, match="Agent command not found"):
            preflight(make_ctx(config))

    @patch("epicrun.workflow.epic.get_current_branch", return_value="main")
    @patch("epicrun.workflow.epic.is_git_repo", return_value=True)
    @patch("epicrun.workflow.epic.shutil.which", return_value="/usr/bin/claude")
    def test_protected_branch(self, mock_which, mock_repo, mock_branch, config, stories):
        """Committing runs refuse protected branches."""
        with pytest.raises(ConfigurationError, match="protected branch 'main'"):
            preflight(make_ctx(config, no_commit=False))

    @patch("epicrun.workflow.epic.shutil.which", return_value="/usr/bin/claude")
    def test_discovers_stories(self, mock_which, config, stories):
        """Preflight returns the epic's stories in order."""
        assert [s.id for s in preflight(make_ctx(config))] == ["3-1-login", "3-2-profile", "3-3-logout"]


class TestEpicRequest:
    def test_numeric_epic_id(self):
        """Epic ids are numeric."""
        with pytest.raises(ValueError):
            EpicRequest(project_root="/tmp", epic_id="three")

    def test_unknown_skip_phase(self):
        """Only known phases can be skipped."""
        with pytest.raises(ValueError):
            EpicRequest(project_root="/tmp", epic_id="3", skip_phases=["deploy"])

    def test_to_options(self):
        """Request fields become run options."""
        request = EpicRequest(project_root="/tmp", epic_id="3", skip_phases=["code_review"], dry_run=True)
        options = request.to_options()
        assert options.dry_run
        assert options.skips(PhaseType.CODE_REVIEW)
