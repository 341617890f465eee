"""Tests for epicrun.workflow.story module."""

import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeInvoker, agent_json, make_ctx, write_story
from epicrun.agents.claude import Invocation, InvocationOutcome, TransientInvocationError
from epicrun.lib.decisions import init_decision_log
from epicrun.lib.stories import StoryStatus, discover_stories
from epicrun.lib.types import PhaseType, Verdict
from epicrun.runner.context import RunState
from epicrun.workflow.story import run_story, unmet_dependencies
from epicrun.workflow.story_fsm import story_record_path


@pytest.fixture(autouse=True)
def no_git():
    with patch("epicrun.workflow.phases.stage_tracked") as mock_stage:
        mock_stage.return_value = MagicMock(success=True)
        yield mock_stage


@pytest.fixture
def stories(config):
    write_story(config, "3-1-login")
    write_story(config, "3-2-profile", "Depends on: 3-1\n")
    return discover_stories(config, "3")


def record(ctx, story_id):
    return json.loads(story_record_path(ctx.story_record_dir(), story_id).read_text())


class TestRunStory:
    """Story phase sequence."""

    def test_all_phases_pass(self, config, stories):
        """Four passing phases mark the story done on disk and in its record."""
        invoker = FakeInvoker()
        ctx = make_ctx(config, invoker)
        story = stories[0]

        outcome = run_story(story, ctx, RunState("3", stories))

        assert outcome.succeeded
        assert invoker.labels() == ["dev", "arch_compliance", "code_review", "test_quality"]
        assert story.status == StoryStatus.DONE
        assert "Status: done" in story.path.read_text()
        assert record(ctx, story.id)["state"] == "done"
        assert set(record(ctx, story.id)["gates"]) == {"dev", "arch_compliance", "code_review", "test_quality"}
        assert not outcome.committed

    def test_hard_blocking_failure_blocks_story(self, config, stories):
        """A failing review blocks the story and stops later phases."""
        invoker = FakeInvoker({"code_review": agent_json(
            "FAILED", issues=[{"severity": "high", "description": "missing auth check"}],
        )})
        ctx = make_ctx(config, invoker)

        outcome = run_story(stories[0], ctx, RunState("3", stories))

        assert outcome.status == "failed"
        assert outcome.failed_phase == PhaseType.CODE_REVIEW
        assert outcome.verdict.verdict == Verdict.FAIL
        assert outcome.fix_attempts == config.policy(PhaseType.CODE_REVIEW).max_fix_attempts
        assert "test_quality" not in invoker.labels()
        assert record(ctx, stories[0].id)["state"] == "blocked"
        assert stories[0].status == StoryStatus.BLOCKED
        assert "Status: ready-for-dev" in stories[0].path.read_text()

    def test_advisory_failure_does_not_block(self, config, stories):
        """A failing advisory phase is recorded but the story still succeeds."""
        invoker = FakeInvoker({"test_quality": agent_json(
            "CONCERNS", score=50,
            issues=[{"severity": "medium", "description": "no BDD format"}],
        )})
        outcome = run_story(stories[0], make_ctx(config, invoker), RunState("3", stories))

        tq = outcome.phases[-1]
        assert tq.verdict.verdict == Verdict.FAIL
        assert outcome.succeeded

    def test_blocked_dev_is_terminal(self, config, stories):
        """A dev agent reporting a blocker ends the story at once."""
        invoker = FakeInvoker({"dev": "IMPLEMENTATION BLOCKED - schema undecided"})
        outcome = run_story(stories[0], make_ctx(config, invoker), RunState("3", stories))
        assert outcome.verdict.verdict == Verdict.BLOCKED
        assert invoker.labels() == ["dev"]

    def test_skipped_phases(self, config, stories):
        """Skipped phases are never invoked."""
        invoker = FakeInvoker()
        ctx = make_ctx(config, invoker, skip_phases=frozenset({PhaseType.ARCH_COMPLIANCE, PhaseType.TEST_QUALITY}))
        run_story(stories[0], ctx, RunState("3", stories))
        assert invoker.labels() == ["dev", "code_review"]

    def test_retry_exhausted(self, config, stories):
        """Exhausted transient retries fail the story with the phase named."""
        last = Invocation("", InvocationOutcome.NONZERO, 1, 0.2)
        invoker = FakeInvoker({"arch_compliance": TransientInvocationError(3, last)})
        outcome = run_story(stories[0], make_ctx(config, invoker), RunState("3", stories))

        assert outcome.retry_exhausted
        assert outcome.failed_phase == PhaseType.ARCH_COMPLIANCE
        assert outcome.status == "failed"

    def test_decisions_appended(self, config, stories):
        """Dev decisions land in the epic decision log."""
        invoker = FakeInvoker({"dev": agent_json(
            decisions=[{"what": "Store sessions in Redis", "why": "shared across workers"}],
        )})
        ctx = make_ctx(config, invoker)
        init_decision_log(ctx.decision_log, "3")

        run_story(stories[0], ctx, RunState("3", stories))

        text = ctx.decision_log.read_text()
        assert "## DEV: 3-1-login" in text
        assert "Store sessions in Redis: shared across workers" in text


class TestDependencies:
    """Story-level dependency checks."""

    def test_unmet_dependency_skips_story(self, config, stories):
        """A story waiting on an unfinished story is skipped without an agent call."""
        invoker = FakeInvoker()
        ctx = make_ctx(config, invoker)

        outcome = run_story(stories[1], ctx, RunState("3", stories))

        assert outcome.status == "skipped"
        assert "3-1-login" in outcome.reason
        assert invoker.calls == []
        assert record(ctx, stories[1].id)["state"] == "skipped"

    def test_dependency_done(self, config, stories):
        """A finished dependency is met."""
        stories[0].status = StoryStatus.DONE
        assert unmet_dependencies(stories[1], stories) == []

    def test_unknown_dependency_ignored(self, config, stories, caplog):
        """Dependencies on stories outside the epic are logged and ignored."""
        stories[0].depends_on = ["9-9"]
        assert unmet_dependencies(stories[0], stories) == []
        assert "unknown dependency" in caplog.text
