"""
Story executor.

Runs one story through dev -> arch_compliance -> code_review -> test_quality,
each phase through the PhaseRunner, with the static analysis gate between dev
and the review phases. A terminal gate verdict blocks the story;
a story that passes every phase is marked done and committed.
"""

import logging
import time
from dataclasses import dataclass, field

from epicrun.lib.decisions import append_decisions
from epicrun.lib.gates import GateFailure, is_terminal
from epicrun.lib.prompts import Priority, PromptFragment
from epicrun.lib.regression import RegressionCheck
from epicrun.lib.stories import Story, StoryStatus, is_story_done, mark_story_done, resolve_dependency
from epicrun.lib.static_analysis import CHECK_TITLES, StaticAnalysisReport
from epicrun.lib.types import STORY_PHASES, GateVerdict, PhaseOutcome, PhaseType, Verdict
from epicrun.notifications import notify_blocked
from epicrun.runner.context import EpicContext, RunState
from epicrun.workflow.commits import commit_changes, story_commit_message
from epicrun.workflow.phases import PhaseRunner, context_fragments, story_fragments, template_fragment
from epicrun.workflow.story_fsm import StoryFSM

logger = logging.getLogger(__name__)


class RetryBudgetExhausted(Exception):
    """An agent invocation kept failing transiently for a story phase."""

    def __init__(self, phase: PhaseType, story_id: str, message: str):
        self.phase = phase
        self.story_id = story_id
        super().__init__(f"{story_id} {phase.value}: {message}")


@dataclass
class StoryOutcome:
    story_id: str
    status: str  # completed, failed, skipped
    phases: list[PhaseOutcome] = field(default_factory=list)
    failed_phase: PhaseType | None = None
    verdict: GateVerdict | None = None
    reason: str = ""
    retry_exhausted: bool = False
    committed: bool = False
    regression: RegressionCheck | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    @property
    def fix_attempts(self) -> int:
        return sum(len(p.attempts) for p in self.phases)


def unmet_dependencies(story: Story, stories: list[Story]) -> list[str]:
    """Declared dependencies that are not done. Unknown references are ignored."""
    unmet = []
    for dep in story.depends_on:
        target = resolve_dependency(dep, stories)
        if target is None:
            logger.warning(f"{story.id}: unknown dependency '{dep}' ignored")
            continue
        if target.status != StoryStatus.DONE and not is_story_done(target.path):
            unmet.append(target.id)
    return unmet


def run_story(story: Story, ctx: EpicContext, state: RunState,
              phase_runner: PhaseRunner | None = None) -> StoryOutcome:
    """
    Execute one story.

    Args:
        story: Story to run
        ctx: Epic run context
        state: Run state (used for dependency resolution)
        phase_runner: Runner for the story phases (a fresh one if None)

    Returns:
        StoryOutcome. Never raises for gate failures; a terminal verdict
        yields status "failed".
    """
    start = time.time()
    runner = phase_runner or PhaseRunner(ctx)
    fsm = StoryFSM(ctx.story_record_dir(), story)
    outcome = StoryOutcome(story_id=story.id, status="failed")

    unmet = unmet_dependencies(story, state.stories)
    if unmet:
        reason = f"dependencies not done: {', '.join(unmet)}"
        logger.warning(f"Skipping {story.id} ({reason})")
        fsm.skip()
        story.status = StoryStatus.SKIPPED
        outcome.status = "skipped"
        outcome.reason = reason
        outcome.duration_seconds = time.time() - start
        return outcome

    story.status = StoryStatus.IN_PROGRESS
    ctx.log(f"Story {story.id}: starting")

    if ctx.static_analysis is not None and not ctx.options.dry_run:
        ctx.static_analysis.capture_baseline(story.id)
    tooling_failures = ""

    try:
        for phase in STORY_PHASES:
            if ctx.options.skips(phase):
                logger.info(f"{story.id}: skipping {phase.value} (disabled by options)")
                continue

            fsm.enter_phase(phase)
            fragments = story_fragments(ctx, phase, story)
            if phase == PhaseType.CODE_REVIEW and tooling_failures:
                fragments.append(PromptFragment(
                    "static_analysis",
                    "The project tooling failed after development and was fixed before this review. "
                    "Verify the fixes.\n\n" + tooling_failures,
                    Priority.HIGH,
                ))
            phase_outcome = runner.run(phase, story.id, fragments)
            outcome.phases.append(phase_outcome)

            for result in phase_outcome.history:
                fsm.record_result(result)
            fsm.record_gate(phase_outcome.verdict)

            if phase_outcome.result.decisions:
                append_decisions(ctx.decision_log, phase.value, story.id, phase_outcome.result.decisions)

            if phase_outcome.result.retry_exhausted:
                raise RetryBudgetExhausted(phase, story.id, phase_outcome.result.summary)

            policy = ctx.config.policy(phase)
            if is_terminal(phase_outcome.verdict, policy, phase_outcome.persisting_critical):
                raise GateFailure(phase, phase_outcome.verdict, story.id)

            runner.stage()

            if phase == PhaseType.DEV:
                tooling_failures = _run_static_analysis(ctx, story, runner)

            if phase == PhaseType.TEST_QUALITY:
                outcome.regression = _check_regression(ctx, story)

    except RetryBudgetExhausted as e:
        logger.error(f"[STORY] {e}")
        fsm.block(reason=str(e))
        story.status = StoryStatus.BLOCKED
        outcome.failed_phase = e.phase
        outcome.reason = str(e)
        outcome.retry_exhausted = True
        outcome.duration_seconds = time.time() - start
        return outcome

    except GateFailure as e:
        logger.error(f"[STORY] {story.id} blocked at {e.phase.value}: {e.verdict.verdict.value} ({e.verdict.reason})")
        fsm.block(reason=str(e))
        story.status = StoryStatus.BLOCKED
        outcome.failed_phase = e.phase
        outcome.verdict = e.verdict
        outcome.reason = str(e)
        outcome.duration_seconds = time.time() - start
        if ctx.config.notifications and not ctx.options.dry_run:
            notify_blocked(story.id, str(e))
        return outcome

    if ctx.options.skips(PhaseType.TEST_QUALITY):
        outcome.regression = _check_regression(ctx, story)

    fsm.complete()
    if ctx.options.dry_run:
        logger.info(f"[DRY RUN] Would mark story as done: {story.id}")
    else:
        mark_story_done(story, ctx.config)
    story.status = StoryStatus.DONE

    outcome.committed = commit_changes(ctx, story_commit_message(story.epic_id, story.id), story.id)
    outcome.status = "completed"
    outcome.duration_seconds = time.time() - start
    ctx.log(f"Story {story.id}: done")
    return outcome


def _check_regression(ctx: EpicContext, story: Story) -> RegressionCheck | None:
    """Run the regression gate. A drop is recorded, never fatal."""
    if ctx.regression is None or ctx.options.dry_run:
        return None
    check = ctx.regression.check(story.id)
    if check is not None and not check.passed and ctx.metrics:
        ctx.metrics.add_issue(story.id, "regression", check.message)
    return check


def _tooling_issues(report: StaticAnalysisReport) -> str:
    return "\n".join(
        f"- [HIGH] {CHECK_TITLES.get(run.name, run.name)} failed: `{run.command}`"
        for run in report.failures
    )


def _run_static_analysis(ctx: EpicContext, story: Story, runner: PhaseRunner) -> str:
    """
    Run the project tooling after dev and fix what it reports.

    Returns:
        The failure report of the last failing run, or "" if the tooling
        passed first time

    Raises:
        GateFailure: if failures remain after the configured fix attempts
        RetryBudgetExhausted: if the fixer could not be invoked
    """
    gate = ctx.static_analysis
    if gate is None or ctx.options.dry_run:
        return ""

    max_fixes = ctx.config.static_analysis_max_fixes
    failures = ""
    attempt = 0
    while True:
        report = gate.run(story.id)
        if report.passed:
            return failures

        failures = report.fragment_text(ctx.config.max_test_failure_bytes)
        if ctx.metrics:
            ctx.metrics.add_issue(story.id, "static_analysis_failed",
                                  f"Static analysis gate failed with {len(report.failures)} issue(s)")

        attempt += 1
        if attempt > max_fixes:
            logger.error(f"[STATIC] {story.id}: max static analysis fix attempts ({max_fixes}) reached")
            if ctx.metrics:
                ctx.metrics.add_issue(story.id, "static_analysis_max_retries",
                                      f"Static analysis failures after {max_fixes} fix attempt(s)")
            verdict = GateVerdict(
                PhaseType.DEV, Verdict.FAIL,
                reason=f"static analysis failures after {max_fixes} fix attempt(s)",
            )
            raise GateFailure(PhaseType.DEV, verdict, story.id)

        logger.warning(f"[STATIC] {story.id}: static analysis failed, fix attempt {attempt}/{max_fixes}")
        fix = runner.remediate(
            PhaseType.DEV,
            story.id,
            [
                template_fragment(
                    "fix",
                    phase="static_analysis",
                    subject=story.id,
                    attempt=attempt,
                    max_attempts=max_fixes,
                    issues=_tooling_issues(report),
                ),
                PromptFragment("static_analysis", failures, Priority.HIGH),
            ] + context_fragments(ctx, story),
            label=f"static_analysis-fix-{attempt}",
        )
        if fix.retry_exhausted:
            raise RetryBudgetExhausted(PhaseType.DEV, story.id, fix.summary)
