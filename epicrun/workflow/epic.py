"""
Epic executor.

Runs the stories of one epic in order, then the per-epic traceability and
acceptance-document phases. Progress is checkpointed after every story so an
interrupted run resumes at the next story.

Wrapped with a Prefect @flow (epic_flow) for observability; run_epic() is
the plain entry point used by the chain executor and the tests.
"""

import logging
import shlex
import shutil
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Callable

from prefect import flow

from epicrun.git import get_current_branch, has_uncommitted_changes, is_git_repo
from epicrun.lib.checkpoint import clear_checkpoint, load_checkpoint, save_checkpoint
from epicrun.lib.config import ConfigurationError, load_run_config
from epicrun.lib.constants import EXIT_GATE_FAILURE, EXIT_RETRY_EXHAUSTED, EXIT_SUCCESS
from epicrun.lib.decisions import init_decision_log
from epicrun.lib.metrics import EpicMetrics
from epicrun.lib.regression import RegressionGate
from epicrun.lib.static_analysis import StaticAnalysisGate
from epicrun.lib.stories import Story, discover_stories, is_story_done
from epicrun.lib.types import PhaseOutcome, PhaseType, Verdict
from epicrun.notifications import notify_epic_complete
from epicrun.runner.context import EpicContext, RunState
from epicrun.runner.locking import epic_lock
from epicrun.runner.shutdown import ShutdownGuard
from epicrun.runner.stages import StageSkipped, run_stage
from epicrun.workflow.commits import commit_changes, traceability_commit_message, uat_commit_message
from epicrun.workflow.models import EpicRequest
from epicrun.workflow.phases import PhaseRunner, context_fragments, template_fragment
from epicrun.workflow.story import StoryOutcome, run_story

logger = logging.getLogger(__name__)

StoryRunner = Callable[[Story, EpicContext, RunState, PhaseRunner], StoryOutcome]


@dataclass
class EpicOutcome:
    epic_id: str
    exit_code: int
    status: str  # complete, blocked, failed, interrupted, dry_run
    state: RunState
    run_dir: Path
    failure: dict | None = None
    traceability: PhaseOutcome | None = None
    acceptance_doc: PhaseOutcome | None = None
    uat_path: Path | None = None
    artifacts: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == EXIT_SUCCESS


def epic_subject(epic_id: str) -> str:
    return f"epic-{epic_id}"


def uat_path(ctx: EpicContext) -> Path:
    return ctx.config.uat_dir / f"epic-{ctx.epic_id}-uat.md"


def preflight(ctx: EpicContext) -> list[Story]:
    """
    Check everything an agent call depends on.

    Raises:
        ConfigurationError: no stories, agent binary missing, or the project
            is on a protected branch with commits enabled
    """
    config, options = ctx.config, ctx.options

    stories = discover_stories(config, ctx.epic_id)
    if not stories:
        raise ConfigurationError(
            f"No stories found for epic {ctx.epic_id} in {config.stories_dir} "
            f"or {config.sprint_artifacts_dir}"
        )

    if not options.dry_run:
        agent = shlex.split(config.agent_command)[0] if config.agent_command.strip() else ""
        if not agent or shutil.which(agent) is None:
            raise ConfigurationError(f"Agent command not found: '{agent or config.agent_command}'")

    if not options.dry_run and not options.no_commit and is_git_repo(config.project_root):
        branch = get_current_branch(config.project_root)
        if branch in config.protected_branches:
            raise ConfigurationError(
                f"Refusing to commit on protected branch '{branch}'. "
                "Switch to a feature branch or pass --no-commit."
            )

    logger.info(f"[EPIC] {ctx.epic_id}: {len(stories)} stories")
    return stories


def resume_index(ctx: EpicContext, stories: list[Story], state: RunState) -> int:
    """
    Index of the first story to run.

    --start-from wins over a checkpoint; stories before the match count as
    skipped. Otherwise a fresh checkpoint resumes at last_story_index + 1.
    """
    options = ctx.options

    if options.start_from:
        for index, story in enumerate(stories):
            if options.start_from in story.id:
                state.skipped = index
                state.last_index = index - 1
                state.last_story_id = stories[index - 1].id if index else ""
                if index:
                    logger.info(f"[EPIC] Starting from {story.id}, skipping {index} earlier stories")
                return index
        raise ConfigurationError(f"--start-from '{options.start_from}' matches no story of epic {ctx.epic_id}")

    checkpoint = load_checkpoint(ctx.checkpoint_file, ctx.epic_id, ctx.config.checkpoint_max_age_days)
    if checkpoint is None:
        return 0

    state.completed = checkpoint.completed
    state.failed = checkpoint.failed
    state.skipped = checkpoint.skipped
    state.last_index = checkpoint.last_story_index
    state.last_story_id = checkpoint.last_story_id
    logger.info(
        f"[EPIC] Resuming epic {ctx.epic_id} from checkpoint at story index {checkpoint.resume_index} "
        f"(last: {checkpoint.last_story_id or 'none'})"
    )
    return checkpoint.resume_index


def _failure_info(ctx: EpicContext, outcome: StoryOutcome, resume_at: int, checkpointed: bool) -> dict:
    return {
        "story": outcome.story_id,
        "phase": outcome.failed_phase.value if outcome.failed_phase else None,
        "verdict": outcome.verdict.verdict.value if outcome.verdict else None,
        "checkpoint": str(ctx.checkpoint_file) if checkpointed else None,
        "resume_index": resume_at,
    }


def _report_failure(ctx: EpicContext, failure: dict) -> None:
    logger.error(
        f"[EPIC] Epic {ctx.epic_id} failed at story {failure['story']} "
        f"phase {failure['phase'] or 'unknown'} (verdict: {failure['verdict'] or 'none'}). "
        f"Checkpoint: {failure['checkpoint'] or 'none'}, resume index {failure['resume_index']}"
    )
    logger.error(f"Resume with: epicrun epic {ctx.epic_id} --start-from {failure['story']}")


def _save_checkpoint(ctx: EpicContext, state: RunState, exit_code: int | None = None) -> None:
    if ctx.options.dry_run:
        return
    save_checkpoint(ctx.checkpoint_file, state.to_checkpoint(exit_code))


def run_stories(ctx: EpicContext, state: RunState, runner: PhaseRunner, start: int,
                story_runner: StoryRunner) -> dict | None:
    """Run stories from start. Returns failure info for the first failed story, if any."""
    failure = None
    metrics = ctx.metrics

    for index in range(start, len(state.stories)):
        story = state.stories[index]
        state.index = index

        if ctx.options.skip_done and is_story_done(story.path):
            logger.info(f"Skipping {story.id} (Status: done)")
            state.record(index, story, "skipped")
            if metrics:
                metrics.record_story(story.id, "skipped")
            _save_checkpoint(ctx, state)
            continue

        logger.info(f"[EPIC] Story {index + 1}/{len(state.stories)}: {story.id}")
        outcome = story_runner(story, ctx, state, runner)
        state.outcomes.append(outcome)

        if metrics:
            metrics.record_story(story.id, outcome.status, outcome.fix_attempts, outcome.duration_seconds)

        if outcome.retry_exhausted:
            # Not recorded as finished: resume re-runs this story
            state.exhausted = True
            failure = _failure_info(ctx, outcome, index, checkpointed=not ctx.options.dry_run)
            _save_checkpoint(ctx, state, EXIT_RETRY_EXHAUSTED)
            _report_failure(ctx, failure)
            break

        state.record(index, story, outcome.status)
        if outcome.status == "failed":
            state.blocked = True
            if failure is None:
                failure = _failure_info(ctx, outcome, index, checkpointed=False)
                _report_failure(ctx, failure)
        _save_checkpoint(ctx, state)

    return failure


def run_traceability(ctx: EpicContext, runner: PhaseRunner, state: RunState) -> PhaseOutcome:
    """Per-epic traceability with self-healing test generation."""
    subject = epic_subject(ctx.epic_id)
    matrix = ctx.config.sprint_artifacts_dir / "traceability" / f"epic-{ctx.epic_id}-traceability.md"
    stories = "\n".join(f"- {s.id}: {s.path}" for s in state.stories)

    def after_fix(attempt: int) -> None:
        runner.stage()
        commit_changes(ctx, traceability_commit_message(ctx.epic_id, attempt), subject)

    outcome = runner.run(
        PhaseType.TRACEABILITY,
        subject,
        [template_fragment("traceability", epic_id=ctx.epic_id, stories=stories, matrix_path=matrix)]
        + context_fragments(ctx),
        fix_template="traceability_fix",
        fix_vars={"epic_id": ctx.epic_id},
        after_fix=after_fix,
    )
    if outcome.verdict.verdict == Verdict.FAIL and ctx.metrics:
        ctx.metrics.add_issue(subject, "traceability_gaps", outcome.verdict.reason)
    return outcome


def run_acceptance_doc(ctx: EpicContext, runner: PhaseRunner, state: RunState) -> tuple[PhaseOutcome, Path]:
    """Generate the epic's UAT document and commit it."""
    subject = epic_subject(ctx.epic_id)
    path = uat_path(ctx)
    done = [s for s in state.stories if s.status.value == "done"]
    stories = "\n".join(f"- {s.id}: {s.path}" for s in done)

    outcome = runner.run(
        PhaseType.ACCEPTANCE_DOC,
        subject,
        [template_fragment(
            "acceptance_doc",
            epic_id=ctx.epic_id,
            story_count=len(done),
            stories=stories,
            uat_path=path,
            date=date.today().isoformat(),
        )] + context_fragments(ctx),
    )

    reported = outcome.result.detail.strip()
    if reported and (ctx.config.project_root / reported).exists():
        path = ctx.config.project_root / reported

    if outcome.verdict.verdict == Verdict.PASS:
        commit_changes(ctx, uat_commit_message(ctx.epic_id), subject, extra_files=[path])
    return outcome, path


def run_epic(ctx: EpicContext, *, story_runner: StoryRunner = run_story,
             stories: list[Story] | None = None) -> EpicOutcome:
    """
    Execute an epic.

    Args:
        ctx: Epic run context
        story_runner: Callable running one story (the Prefect task inside epic_flow)
        stories: Pre-discovered stories (preflight runs if None)

    Returns:
        EpicOutcome with exit code 0 (all done), 1 (a story blocked) or
        2 (an invocation retry budget ran out)

    Raises:
        ConfigurationError: before any agent call
        LockTimeout: if another executor holds the epic lock
    """
    if stories is None:
        stories = preflight(ctx)
    ctx.record_stage("preflight", "passed", 0.0)

    state = RunState(epic_id=ctx.epic_id, stories=stories)
    runner = PhaseRunner(ctx)
    outcome = EpicOutcome(
        epic_id=ctx.epic_id,
        exit_code=EXIT_SUCCESS,
        status="complete",
        state=state,
        run_dir=ctx.run_dir,
    )
    finished = {"normal": False}

    with epic_lock(ctx.config.state_dir, ctx.epic_id):
        start = resume_index(ctx, stories, state)

        ctx.metrics = EpicMetrics(ctx.metrics_file, ctx.epic_id, total_stories=len(stories))
        if state.skipped and ctx.options.start_from:
            for story in stories[:start]:
                ctx.metrics.record_story(story.id, "skipped")
        elif start:
            ctx.metrics.carry_over(state.completed, state.failed, state.skipped)
        if not ctx.options.dry_run:
            init_decision_log(ctx.decision_log, ctx.epic_id)

        def finish(exit_code: int | None) -> None:
            """Runs exactly once: normal completion, signal or interpreter exit."""
            if not finished["normal"] and not exit_code:
                exit_code = state.exit_code or EXIT_GATE_FAILURE
            state.exit_code = exit_code

            ctx.metrics.finalize(exit_code)

            if finished["normal"] and not state.exhausted:
                if not ctx.options.dry_run:
                    clear_checkpoint(ctx.checkpoint_file)
            else:
                _save_checkpoint(ctx, state, exit_code)
                if not finished["normal"]:
                    outcome.status = "interrupted"
                    logger.error(
                        f"[EPIC] Epic {ctx.epic_id} interrupted (exit code {exit_code}). "
                        f"Checkpoint: {ctx.checkpoint_file}, resume index {state.last_index + 1}"
                    )
                if is_git_repo(ctx.config.project_root) and has_uncommitted_changes(ctx.config.project_root):
                    logger.warning("Uncommitted changes remain. Review with 'git status'")

            ctx.write_result(outcome.status, state, outcome.failure)

        with ShutdownGuard(finish) as guard:
            try:
                if ctx.options.run_regression and not ctx.options.dry_run:
                    ctx.regression = RegressionGate(
                        ctx.config.project_root, ctx.config.test_command or None, ctx.config.test_timeout,
                    )
                    run_stage(ctx, "baseline", lambda c: c.regression.capture_baseline())
                if ctx.options.run_static_analysis and not ctx.options.dry_run:
                    gate = StaticAnalysisGate.from_config(ctx.config)
                    if gate.enabled:
                        ctx.static_analysis = gate
                    else:
                        logger.warning("[STATIC] No recognized project tooling; static analysis gate disabled")

                outcome.failure = run_stories(ctx, state, runner, start, story_runner)
                ctx.record_stage("stories", "blocked" if outcome.failure else "passed", 0.0,
                                 f"{state.completed} completed, {state.failed} failed, {state.skipped} skipped")

                if not state.exhausted:
                    _run_epic_phases(ctx, runner, state, outcome)

                if state.exhausted:
                    state.exit_code = EXIT_RETRY_EXHAUSTED
                    outcome.status = "failed"
                elif state.failed:
                    state.exit_code = EXIT_GATE_FAILURE
                    outcome.status = "blocked"
                else:
                    state.exit_code = EXIT_SUCCESS
                    outcome.status = "dry_run" if ctx.options.dry_run else "complete"
                finished["normal"] = True
            finally:
                guard.run(state.exit_code if finished["normal"] else None)

    outcome.exit_code = state.exit_code
    outcome.artifacts = {
        "metrics": ctx.metrics_file,
        "checkpoint": ctx.checkpoint_file,
        "decision_log": ctx.decision_log,
        "run_dir": ctx.run_dir,
    }
    if outcome.uat_path is not None:
        outcome.artifacts["uat"] = outcome.uat_path

    logger.info(
        f"[EPIC] Epic {ctx.epic_id} finished: {state.completed} completed, {state.failed} failed, "
        f"{state.skipped} skipped (exit {outcome.exit_code})"
    )
    if ctx.config.notifications and not ctx.options.dry_run:
        notify_epic_complete(ctx.epic_id, state.completed, state.failed)
    return outcome


def _run_epic_phases(ctx: EpicContext, runner: PhaseRunner, state: RunState, outcome: EpicOutcome) -> None:
    def traceability_stage(c: EpicContext) -> None:
        if c.options.skips(PhaseType.TRACEABILITY):
            raise StageSkipped("traceability", "disabled by options")
        if not state.completed:
            raise StageSkipped("traceability", "no completed stories")
        outcome.traceability = run_traceability(c, runner, state)

    def acceptance_stage(c: EpicContext) -> None:
        if c.options.skips(PhaseType.ACCEPTANCE_DOC):
            raise StageSkipped("acceptance_doc", "disabled by options")
        if not state.completed:
            raise StageSkipped("acceptance_doc", "no completed stories")
        outcome.acceptance_doc, outcome.uat_path = run_acceptance_doc(c, runner, state)

    run_stage(ctx, "traceability", traceability_stage)
    run_stage(ctx, "acceptance_doc", acceptance_stage)


def prepare_epic(request: EpicRequest) -> EpicContext:
    """Load configuration and create the run context for a request.

    Raises:
        ConfigurationError: if the configuration is invalid
    """
    config = load_run_config(request.root)
    return EpicContext.create(config, request.to_options(), request.epic_id, handoff=request.handoff)


@flow(name="epic_run", retries=0)
def epic_flow(request: EpicRequest) -> dict:
    """Prefect flow for one epic. Stories run as Prefect tasks.

    Returns:
        Dict with status, exit_code, counts and run directory
    """
    from epicrun.workflow.tasks import task_run_story

    ctx = prepare_epic(request)
    outcome = run_epic(ctx, story_runner=task_run_story)
    return {
        "epic_id": outcome.epic_id,
        "status": outcome.status,
        "exit_code": outcome.exit_code,
        "completed": outcome.state.completed,
        "failed": outcome.state.failed,
        "skipped": outcome.state.skipped,
        "run_dir": str(outcome.run_dir),
        "failure": outcome.failure,
    }
