"""
Chain executor.

Runs several epics in order. Between epics it writes a context hand-off for
the next epic and runs the acceptance gate against the finished epic's UAT
document. Whether a failed gate or a failed epic halts the chain depends on
the UAT blocking setting.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import yaml
from prefect import flow

from epicrun.git import get_changed_files_since, is_git_repo
from epicrun.lib.config import ConfigurationError, RunConfig, load_run_config
from epicrun.lib.constants import EXIT_GATE_FAILURE, EXIT_RETRY_EXHAUSTED, EXIT_SUCCESS
from epicrun.lib.files import write_atomic
from epicrun.lib.stories import Epic, load_epic
from epicrun.lib.types import GateVerdict, PhaseOutcome, PhaseType, Verdict
from epicrun.lib.validate import validate_before_write
from epicrun.notifications import notify_chain_complete
from epicrun.runner.context import EpicContext
from epicrun.workflow.epic import EpicOutcome, epic_subject, run_epic
from epicrun.workflow.models import ChainRequest
from epicrun.workflow.phases import PhaseRunner, context_fragments, template_fragment

logger = logging.getLogger(__name__)

EpicRunner = Callable[[EpicContext], EpicOutcome]

GATE_MODE_INSTRUCTIONS = {
    "full": "Run every scenario marked as automatable.",
    "quick": (
        "Run the smoke subset only: the first happy-path scenario of each user "
        "journey and any scenario marked as smoke."
    ),
}


@dataclass
class ChainOutcome:
    epic_ids: list[str]
    exit_code: int = EXIT_SUCCESS
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    halted: bool = False
    epics: list[EpicOutcome] = field(default_factory=list)
    gates: dict[str, GateVerdict] = field(default_factory=dict)
    plan_path: Path | None = None
    combined_uat: Path | None = None
    handoffs: list[Path] = field(default_factory=list)
    artifacts: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == EXIT_SUCCESS


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def validate_chain(config: RunConfig, epic_ids: list[str]) -> list[Epic]:
    """
    Locate every epic file and its stories.

    Raises:
        ConfigurationError: an epic file is missing or an epic has no stories
    """
    epics = []
    for epic_id in epic_ids:
        epic = load_epic(config, epic_id)
        if epic is None:
            raise ConfigurationError(
                f"Epic file not found for epic {epic_id} in {config.epics_dir} "
                f"(tried epic-{epic_id}.md, epic-{epic_id}-*.md, epic-0{epic_id}-*.md, {epic_id}.md)"
            )
        if not epic.stories:
            raise ConfigurationError(f"No stories found for epic {epic_id}")
        epics.append(epic)

    position = {e: i for i, e in enumerate(epic_ids)}
    for epic in epics:
        for dep in epic.dependencies:
            if dep not in position:
                logger.warning(f"[CHAIN] Epic {epic.id} depends on epic {dep}, which is not in this chain")
            elif position[dep] > position[epic.id]:
                logger.warning(f"[CHAIN] Epic {epic.id} depends on epic {dep}, which runs after it")
    return epics


def chain_plan_path(config: RunConfig) -> Path:
    return config.sprint_artifacts_dir / "chain-plan.yaml"


def write_chain_plan(config: RunConfig, epics: list[Epic], request: ChainRequest) -> Path:
    """Write chain-plan.yaml describing the execution order."""
    plan = {
        "generated": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "epics": [e.id for e in epics],
        "total_epics": len(epics),
        "execution_order": [
            {
                "epic": e.id,
                "file": e.path.name,
                "stories": len(e.stories),
                "dependencies": list(e.dependencies),
            }
            for e in epics
        ],
        "total_stories": sum(len(e.stories) for e in epics),
        "options": {
            "dry_run": request.dry_run,
            "skip_done": request.skip_done,
            "context_handoff": not request.no_handoff,
            "combined_uat": not request.no_combined_uat,
            "uat_gate": "skip" if request.no_uat else (request.uat_gate_mode or config.uat_gate_mode),
        },
    }
    path = chain_plan_path(config)
    validate_before_write(plan, "chain_plan", path)
    write_atomic(path, yaml.safe_dump(plan, sort_keys=False, default_flow_style=False))
    logger.info(f"[CHAIN] Plan saved to: {path}")
    return path


def handoff_path(config: RunConfig, from_epic: str, to_epic: str) -> Path:
    return config.handoff_dir / f"epic-{from_epic}-to-{to_epic}-handoff.md"


def write_handoff(config: RunConfig, epic: Epic, next_epic: Epic, outcome: EpicOutcome) -> Path:
    """Summarise a finished epic for the next one's prompts."""
    files = []
    if is_git_repo(config.project_root) and outcome.state.completed:
        files = get_changed_files_since(config.project_root, outcome.state.completed)[:20]
    files_section = "\n".join(f"- {f}" for f in files) or "Unable to determine - check git log"
    uat = outcome.uat_path or config.uat_dir / f"epic-{epic.id}-uat.md"

    path = handoff_path(config, epic.id, next_epic.id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        f"# Epic {epic.id} → Epic {next_epic.id} Handoff\n\n"
        f"## Generated\n{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        f"## Epic {epic.id} Completion Summary\n\n"
        f"Epic {epic.id} ({epic.title}) has been completed: "
        f"{outcome.state.completed} stories done, {outcome.state.skipped} skipped.\n\n"
        f"### Files Modified\n{files_section}\n\n"
        f"### Notes for Next Epic\n"
        f"- Continue following patterns established in this epic\n"
        f"- Reference UAT document at `{uat}` for context\n"
    )
    logger.info(f"[CHAIN] Handoff saved to: {path}")
    return path


def run_acceptance_gate(ctx: EpicContext, outcome: EpicOutcome, mode: str, blocking: bool) -> PhaseOutcome:
    """Run the UAT acceptance gate for a finished epic, retrying failed scenarios."""
    # Epic metrics are finalized; gate results go to chain metrics instead
    gate_ctx = replace(ctx, metrics=None)
    runner = PhaseRunner(gate_ctx)
    policy = replace(ctx.config.policy(PhaseType.ACCEPTANCE_GATE), hard_blocking=blocking)

    return runner.run(
        PhaseType.ACCEPTANCE_GATE,
        epic_subject(ctx.epic_id),
        [template_fragment(
            "acceptance_gate",
            epic_id=ctx.epic_id,
            uat_path=outcome.uat_path,
            mode=mode,
            mode_instructions=GATE_MODE_INSTRUCTIONS[mode],
        )] + context_fragments(gate_ctx),
        policy=policy,
    )


def write_combined_uat(config: RunConfig, epic_ids: list[str]) -> Path:
    """Index of the per-epic UAT documents plus cross-epic checks."""
    path = config.uat_dir / f"chain-{'-'.join(epic_ids)}-uat.md"
    lines = [
        f"# Combined UAT: Epics {' '.join(epic_ids)}",
        "",
        "## Generated",
        datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "",
        "## Overview",
        "",
        f"This document combines User Acceptance Testing for epics: {' '.join(epic_ids)}",
        "",
        "## Individual Epic UATs",
        "",
    ]
    for epic_id in epic_ids:
        name = f"epic-{epic_id}-uat.md"
        if (config.uat_dir / name).exists():
            lines += [f"### Epic {epic_id}", "", f"See: [{name}]({name})", ""]
    lines += [
        "## Cross-Epic Integration Testing",
        "",
        "After individual epic testing, verify these cross-epic scenarios:",
        "",
        "1. [ ] Features from earlier epics still work after later epic changes",
        "2. [ ] Data flows correctly between features from different epics",
        "3. [ ] No regression in previously tested functionality",
        "",
        "## Sign-off",
        "",
        "| Epic | Tester | Date | Status |",
        "|------|--------|------|--------|",
    ]
    lines += [f"| {epic_id} | | | Pending |" for epic_id in epic_ids]

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")
    logger.info(f"[CHAIN] Combined UAT saved to: {path}")
    return path


class ChainMetrics:
    """chain-<ids>-metrics.yaml: per-epic results, UAT gates and issues."""

    def __init__(self, config: RunConfig, epic_ids: list[str]):
        self.path = config.metrics_dir / f"chain-{'-'.join(epic_ids)}-metrics.yaml"
        self._started = datetime.now(timezone.utc)
        self.data = {
            "epics": list(epic_ids),
            "execution": {"start_time": _now(), "end_time": None, "duration_seconds": None, "exit_code": None},
            "summary": {"completed": 0, "failed": 0, "skipped": 0},
            "epic_results": [],
            "uat_gates": [],
            "issues": [],
        }

    def save(self) -> None:
        validate_before_write(self.data, "chain_metrics", self.path)
        write_atomic(self.path, yaml.safe_dump(self.data, sort_keys=False, default_flow_style=False))

    def record_epic(self, outcome: EpicOutcome) -> None:
        metrics = outcome.artifacts.get("metrics")
        self.data["epic_results"].append({
            "epic": outcome.epic_id,
            "status": outcome.status,
            "exit_code": outcome.exit_code,
            "metrics": str(metrics) if metrics else None,
        })
        self.save()

    def record_gate(self, epic_id: str, gate: PhaseOutcome, blocking: bool) -> None:
        self.data["uat_gates"].append({
            "epic": epic_id,
            "verdict": gate.verdict.verdict.value,
            "reason": gate.verdict.reason,
            "blocking": blocking,
            "fix_attempts": len(gate.attempts),
        })
        self.save()

    def add_issue(self, epic_id: str, issue_type: str, message: str) -> None:
        self.data["issues"].append({"epic": epic_id, "type": issue_type, "message": message})
        self.save()

    def finalize(self, outcome: ChainOutcome) -> None:
        ended = datetime.now(timezone.utc)
        self.data["summary"] = {"completed": outcome.completed, "failed": outcome.failed, "skipped": outcome.skipped}
        self.data["execution"]["end_time"] = ended.strftime("%Y-%m-%dT%H:%M:%SZ")
        self.data["execution"]["duration_seconds"] = round((ended - self._started).total_seconds(), 1)
        self.data["execution"]["exit_code"] = outcome.exit_code
        self.save()


def run_chain(
    config: RunConfig,
    epic_ids: list[str],
    request: ChainRequest,
    *,
    epic_runner: EpicRunner = run_epic,
    context_factory: Callable[..., EpicContext] = EpicContext.create,
) -> ChainOutcome:
    """
    Execute a chain of epics.

    Args:
        config: Project configuration
        epic_ids: Epics in execution order
        request: Chain options
        epic_runner: Callable running one epic
        context_factory: Builds the EpicContext for each epic

    Returns:
        ChainOutcome. exit_code is the highest exit code of the failed epics,
        or 1 when a blocking acceptance gate failed.

    Raises:
        ConfigurationError: an epic file or its stories are missing
    """
    epics = validate_chain(config, epic_ids)
    outcome = ChainOutcome(epic_ids=list(epic_ids))
    outcome.plan_path = write_chain_plan(config, epics, request)

    if request.analyze_only:
        logger.info("[CHAIN] Analysis complete (--analyze-only specified)")
        return outcome

    blocking = config.uat_blocking if request.uat_blocking is None else request.uat_blocking
    mode = "skip" if request.no_uat else (request.uat_gate_mode or config.uat_gate_mode)
    metrics = None if request.dry_run else ChainMetrics(config, epic_ids)

    started = request.start_from is None
    previous: Epic | None = None

    for index, epic in enumerate(epics):
        if not started:
            if epic.id == request.start_from:
                started = True
            else:
                logger.warning(f"[CHAIN] Skipping epic {epic.id} (waiting for --start-from {request.start_from})")
                outcome.skipped += 1
                continue

        handoff = ""
        if previous is not None and not request.no_handoff:
            path = handoff_path(config, previous.id, epic.id)
            if path.exists():
                logger.info(f"[CHAIN] Loading context handoff from epic {previous.id}")
                handoff = path.read_text()

        logger.info(f"[CHAIN] Executing epic {epic.id} ({index + 1}/{len(epics)})")
        epic_request = request.epic_request(epic.id, handoff=handoff)
        ctx = context_factory(config, epic_request.to_options(), epic.id, handoff=handoff)
        epic_outcome = epic_runner(ctx)
        outcome.epics.append(epic_outcome)
        if metrics:
            metrics.record_epic(epic_outcome)
        previous = epic

        if not epic_outcome.succeeded:
            outcome.failed += 1
            outcome.exit_code = max(outcome.exit_code, epic_outcome.exit_code)
            logger.error(f"[CHAIN] Epic {epic.id} failed (exit {epic_outcome.exit_code})")
            if blocking:
                logger.error("[CHAIN] Halting chain (UAT blocking enabled)")
                outcome.halted = True
                break
            continue

        outcome.completed += 1
        logger.info(f"[CHAIN] Epic {epic.id} completed")

        if not request.no_handoff and index + 1 < len(epics):
            outcome.handoffs.append(write_handoff(config, epic, epics[index + 1], epic_outcome))

        if mode == "skip" or request.dry_run:
            continue
        if epic_outcome.uat_path is None or not epic_outcome.uat_path.exists():
            logger.warning(f"[CHAIN] No UAT document for epic {epic.id}; skipping acceptance gate")
            if metrics:
                metrics.add_issue(epic.id, "uat_missing", "acceptance gate skipped: no UAT document")
            continue

        gate = run_acceptance_gate(ctx, epic_outcome, mode, blocking)
        outcome.gates[epic.id] = gate.verdict
        if metrics:
            metrics.record_gate(epic.id, gate, blocking)

        if gate.verdict.verdict in (Verdict.FAIL, Verdict.BLOCKED):
            if blocking:
                logger.error(f"[CHAIN] Acceptance gate failed for epic {epic.id}: {gate.verdict.reason}. Halting chain.")
                exit_code = EXIT_RETRY_EXHAUSTED if gate.result.retry_exhausted else EXIT_GATE_FAILURE
                outcome.exit_code = max(outcome.exit_code, exit_code)
                outcome.halted = True
                break
            logger.warning(f"[CHAIN] Acceptance gate failed for epic {epic.id}: {gate.verdict.reason} (non-blocking)")
            if metrics:
                metrics.add_issue(epic.id, "uat_gate_failed", gate.verdict.reason)

    if outcome.completed > 1 and not request.no_combined_uat and not request.dry_run:
        completed_ids = [e.epic_id for e in outcome.epics if e.succeeded]
        outcome.combined_uat = write_combined_uat(config, completed_ids)

    outcome.artifacts = {
        "plan": outcome.plan_path,
        "metrics": [e.artifacts.get("metrics") for e in outcome.epics if e.artifacts.get("metrics")],
        "checkpoints": [e.artifacts.get("checkpoint") for e in outcome.epics if e.artifacts.get("checkpoint")],
        "handoffs": list(outcome.handoffs),
        "uat": [e.uat_path for e in outcome.epics if e.uat_path],
    }
    if metrics:
        metrics.finalize(outcome)
        outcome.artifacts["chain_metrics"] = metrics.path
    if outcome.combined_uat:
        outcome.artifacts["combined_uat"] = outcome.combined_uat

    logger.info(
        f"[CHAIN] Complete: {outcome.completed} completed, {outcome.failed} failed, "
        f"{outcome.skipped} skipped (exit {outcome.exit_code})"
    )
    if config.notifications and not request.dry_run:
        notify_chain_complete(list(epic_ids), outcome.exit_code)
    return outcome


def _run_epic_with_tasks(ctx: EpicContext) -> EpicOutcome:
    from epicrun.workflow.tasks import task_run_story
    return run_epic(ctx, story_runner=task_run_story)


@flow(name="chain_run", retries=0)
def chain_flow(request: ChainRequest) -> dict:
    """Prefect flow for a chain of epics.

    Returns:
        Dict with exit_code, counts and artifact paths
    """
    config = load_run_config(request.root)
    outcome = run_chain(config, request.epic_ids, request, epic_runner=_run_epic_with_tasks)
    return {
        "epic_ids": outcome.epic_ids,
        "exit_code": outcome.exit_code,
        "completed": outcome.completed,
        "failed": outcome.failed,
        "skipped": outcome.skipped,
        "halted": outcome.halted,
        "plan": str(outcome.plan_path) if outcome.plan_path else None,
        "combined_uat": str(outcome.combined_uat) if outcome.combined_uat else None,
    }
