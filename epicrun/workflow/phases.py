"""
Phase runner: invoke -> extract -> fix-loop -> gate.

Every phase of every story (and the per-epic and per-chain phases) goes
through PhaseRunner.run(). The runner owns the unclear/timeout re-invocation,
the remediation rounds and the final gate verdict; callers decide what a
terminal verdict means for them.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Callable

from epicrun.agents.claude import InvocationOutcome, InvocationTimeout, TransientInvocationError
from epicrun.git import stage_tracked
from epicrun.lib.config import PhasePolicy
from epicrun.lib.constants import DECISION_LOG_TAIL_BYTES
from epicrun.lib.decisions import read_decision_log
from epicrun.lib.gates import evaluate_gate
from epicrun.lib.prompts import (
    Priority,
    PromptFragment,
    assemble_prompt,
    build_section,
    render_prompt,
)
from epicrun.lib.signals import extract_phase_result
from epicrun.lib.stories import Story
from epicrun.lib.types import PhaseOutcome, PhaseResult, PhaseStatus, PhaseType, Verdict
from epicrun.runner.context import EpicContext
from epicrun.workflow.fixloop import FixLoop

logger = logging.getLogger(__name__)


def template_fragment(name: str, **kwargs) -> PromptFragment:
    """Rendered phase instructions. Never truncated."""
    return PromptFragment(name, render_prompt(name, **kwargs), Priority.CRITICAL)


def context_fragments(ctx: EpicContext, story: Story | None = None) -> list[PromptFragment]:
    """Story contents, chain hand-off and decision log as budgeted fragments."""
    fragments = []
    if story is not None:
        fragments.append(PromptFragment(
            "story",
            build_section(story.read(), f"## Story Contents ({story.path.name})"),
            Priority.HIGH,
        ))
    if ctx.handoff:
        fragments.append(PromptFragment(
            "handoff",
            build_section(ctx.handoff, "## Context From Previous Epic"),
            Priority.MEDIUM,
        ))
    decisions = read_decision_log(ctx.decision_log)
    if decisions:
        fragments.append(PromptFragment(
            "decision_log",
            build_section(decisions, "## Previous Implementation Decisions"),
            Priority.LOW,
            keep="tail",
            max_bytes=DECISION_LOG_TAIL_BYTES,
        ))
    return fragments


def output_fragment() -> PromptFragment:
    return PromptFragment("output_format", render_prompt("json_output_instructions"), Priority.CRITICAL)


def _format_issues(issues) -> str:
    return "\n".join(i.format() for i in issues)


class PhaseRunner:
    """Runs phases for one epic run.

    Args:
        ctx: Epic run context (config, options, invoker, metrics)
    """

    def __init__(self, ctx: EpicContext):
        self.ctx = ctx

    @property
    def _project_root(self):
        return self.ctx.config.project_root

    def _assemble(self, fragments: list[PromptFragment]) -> tuple[str, list[str]]:
        config = self.ctx.config
        assembled = assemble_prompt(
            fragments,
            ceiling=config.max_prompt_bytes,
            reserve=config.prompt_reserve_bytes,
        )
        return assembled.text, list(assembled.warnings)

    def _invoke(self, prompt: str, phase: PhaseType, subject: str, *,
                invocation_phase: str | None = None, remediation: bool = False) -> PhaseResult:
        """One agent call (with transient retry) turned into a PhaseResult."""
        invoker = self.ctx.invoker
        label = invocation_phase or phase.value
        try:
            invocation = invoker.invoke_with_retry(
                prompt, self.ctx.config.agent_timeout, phase=label, subject=subject,
            )
        except InvocationTimeout as e:
            logger.warning(f"[PHASE] {subject} {label}: agent timed out after {e.elapsed:.0f}s")
            return PhaseResult(
                phase=phase,
                status=PhaseStatus.UNCLEAR,
                summary=str(e),
                exit_outcome=InvocationOutcome.TIMEOUT.value,
            )
        except TransientInvocationError as e:
            logger.error(f"[PHASE] {subject} {label}: {e}")
            if self.ctx.metrics:
                self.ctx.metrics.add_issue(subject, "retry_exhausted", f"{label}: {e}")
            return PhaseResult(
                phase=phase,
                status=PhaseStatus.FAILED,
                summary=str(e),
                exit_outcome=e.last.outcome.value,
                retry_exhausted=True,
            )

        result = extract_phase_result(invocation.output, phase, remediation=remediation)
        return replace(result, exit_outcome=invocation.outcome.value)

    def _invoke_phase(self, prompt: str, phase: PhaseType, subject: str, policy: PhasePolicy) -> PhaseResult:
        """Invoke, re-invoking once (UNCLEAR_RETRIES) on a timeout or unclear result."""
        result = self._invoke(prompt, phase, subject)
        retries = 0
        while (result.status == PhaseStatus.UNCLEAR and not result.retry_exhausted
               and retries < policy.unclear_retries):
            retries += 1
            reason = "timed out" if result.exit_outcome == InvocationOutcome.TIMEOUT.value else "gave no clear signal"
            logger.warning(f"[PHASE] {subject} {phase.value}: agent {reason}, re-invoking ({retries}/{policy.unclear_retries})")
            self.ctx.log(f"{subject} {phase.value}: {reason}, re-invoking")
            result = self._invoke(prompt, phase, subject)

        if result.exit_outcome == InvocationOutcome.TIMEOUT.value:
            # A phase that keeps timing out has failed; it is not merely unclear
            result = replace(result, status=PhaseStatus.FAILED)
        return result

    def stage(self) -> None:
        if self.ctx.options.dry_run:
            return
        staged = stage_tracked(self._project_root)
        if not staged.success:
            logger.warning(f"Could not stage tracked changes: {staged.describe()}")

    def remediate(self, phase: PhaseType, subject: str, fragments: list[PromptFragment], label: str) -> PhaseResult:
        """One fix invocation outside a phase's own fix loop. Stages what the fixer changed."""
        prompt, _ = self._assemble(fragments + [output_fragment()])
        self.ctx.log(f"{subject} {label}: invoking fixer ({len(prompt.encode('utf-8'))} bytes)")
        result = self._invoke(prompt, phase, subject, invocation_phase=label, remediation=True)
        if self.ctx.metrics:
            self.ctx.metrics.record_fix_attempt()
        if not result.retry_exhausted:
            self.stage()
        return result

    def dry_run_outcome(self, phase: PhaseType, subject: str, policy: PhasePolicy) -> PhaseOutcome:
        result = PhaseResult(phase=phase, status=PhaseStatus.COMPLETE, summary="dry run", source="dry_run")
        logger.info(f"[DRY RUN] Would run {phase.value} for {subject}")
        verdict = evaluate_gate(result, policy, self.ctx.config.gates)
        return PhaseOutcome(phase=phase, result=result, verdict=verdict, initial_result=result)

    def run(
        self,
        phase: PhaseType,
        subject: str,
        fragments: list[PromptFragment],
        *,
        policy: PhasePolicy | None = None,
        fix_template: str = "fix",
        fix_vars: dict | None = None,
        after_fix: Callable[[int], None] | None = None,
    ) -> PhaseOutcome:
        """
        Run one phase instance to a gate verdict.

        Args:
            phase: Phase to run
            subject: Story id (or epic label for per-epic phases)
            fragments: Prompt fragments for the phase invocation
            policy: Overrides the configured policy (chain UAT blocking)
            fix_template: Remediation prompt template
            fix_vars: Extra variables for the remediation template
            after_fix: Called with the attempt number after each fix
                invocation; defaults to staging tracked changes

        Returns:
            PhaseOutcome with the final result, verdict and fix attempts
        """
        config = self.ctx.config
        policy = policy or config.policy(phase)

        if self.ctx.options.dry_run:
            return self.dry_run_outcome(phase, subject, policy)

        prompt, warnings = self._assemble(fragments + [output_fragment()])
        self.ctx.log(f"{subject} {phase.value}: invoking agent ({len(prompt.encode('utf-8'))} bytes)")

        result = self._invoke_phase(prompt, phase, subject, policy)
        initial = result

        loop = FixLoop(phase, policy, subject=subject)
        state = loop.evaluate(result)

        while state == "fixing":
            issues = loop.open_issues
            attempt = len(loop.attempts) + 1
            fix_prompt, fix_warnings = self._assemble([
                PromptFragment(fix_template, render_prompt(
                    fix_template,
                    phase=phase.value,
                    subject=subject,
                    attempt=attempt,
                    max_attempts=loop.max_attempts,
                    issues=_format_issues(issues),
                    **(fix_vars or {}),
                ), Priority.CRITICAL),
                output_fragment(),
            ])
            warnings.extend(fix_warnings)
            self.ctx.log(f"{subject} {phase.value}: fix attempt {attempt}/{loop.max_attempts} ({len(issues)} issue(s))")

            fix_result = self._invoke(fix_prompt, phase, subject,
                                      invocation_phase=f"{phase.value}-fix-{attempt}", remediation=True)
            if self.ctx.metrics:
                self.ctx.metrics.record_fix_attempt()
            if fix_result.retry_exhausted:
                result = fix_result
                loop.record_attempt(issues, result)
                loop.evaluate(result)
                break
            if fix_result.status != PhaseStatus.COMPLETE:
                logger.warning(f"[FIX] {subject} {phase.value}: fixer reported {fix_result.status.value}")

            if after_fix is not None:
                after_fix(attempt)
            else:
                self.stage()

            # Re-evaluate against the staged tree
            result = self._invoke_phase(prompt, phase, subject, policy)
            loop.record_attempt(issues, result)
            state = loop.evaluate(result)

        if loop.state == "exhausted" and loop.attempts and loop.open_issues and self.ctx.metrics:
            self.ctx.metrics.record_max_retries(subject, phase.value)

        verdict = evaluate_gate(result, policy, config.gates)
        if self.ctx.metrics:
            self.ctx.metrics.record_gate(subject, verdict)
            if result.status == PhaseStatus.UNCLEAR and verdict.verdict == Verdict.CONCERNS:
                self.ctx.metrics.add_issue(subject, "unclear_result", f"{phase.value}: {verdict.reason}")

        log = logger.info if verdict.verdict in (Verdict.PASS, Verdict.CONCERNS) else logger.warning
        log(f"[GATE] {subject} {phase.value}: {verdict.verdict.value} ({verdict.reason})")
        self.ctx.log(f"{subject} {phase.value}: {verdict.verdict.value} ({verdict.reason})")

        return PhaseOutcome(
            phase=phase,
            result=result,
            verdict=verdict,
            attempts=list(loop.attempts),
            final_state=loop.state,
            persisting_critical=loop.persisting_critical,
            warnings=warnings,
            initial_result=initial,
        )


def story_fragments(ctx: EpicContext, phase: PhaseType, story: Story) -> list[PromptFragment]:
    """Prompt fragments for a story phase."""
    instructions = template_fragment(
        phase.value,
        story_id=story.id,
        story_path=story.path,
        epic_id=story.epic_id,
        project_root=ctx.config.project_root,
        date=date.today().isoformat(),
    )
    return [instructions] + context_fragments(ctx, story)
