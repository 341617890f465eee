"""
Quality gate evaluation.

evaluate_gate() is a pure function of a PhaseResult and the phase policy, so
evaluating the same result twice always yields the same verdict. An unclear
result is never PASS: hard-blocking phases FAIL, advisory phases record
CONCERNS.
"""

import logging

from .config import GateThresholds, PhasePolicy
from .severity import SeverityPolicy
from .signals import compute_quality_score
from .types import GateVerdict, PhaseResult, PhaseStatus, PhaseType, Severity, Verdict

logger = logging.getLogger(__name__)


class GateFailure(Exception):
    """A gate verdict is terminal for the story (or, when blocking, the chain)."""

    def __init__(self, phase: PhaseType, verdict: GateVerdict, story_id: str | None = None):
        self.phase = phase
        self.verdict = verdict
        self.story_id = story_id
        subject = f"{story_id} " if story_id else ""
        super().__init__(
            f"{subject}{phase.value}: {verdict.verdict.value}"
            + (f" ({verdict.reason})" if verdict.reason else "")
        )


def _failed(result: PhaseResult) -> bool:
    return result.status in (PhaseStatus.FAILED, PhaseStatus.BLOCKED)


def _gate_dev(result, policy, thresholds):
    if result.status == PhaseStatus.COMPLETE:
        return Verdict.PASS, "implementation complete"
    if result.status == PhaseStatus.BLOCKED:
        return Verdict.BLOCKED, result.summary or "implementation blocked"
    return Verdict.FAIL, f"implementation {result.status.value}"


def _gate_arch(result, policy, thresholds):
    severe = result.issues_at(Severity.CRITICAL, Severity.HIGH)
    if severe:
        return Verdict.FAIL, f"{len(severe)} high/critical violation(s) remain"
    if _failed(result) and not result.issues:
        return Verdict.FAIL, "violations reported without details"
    medium = result.issues_at(Severity.MEDIUM)
    if medium:
        return Verdict.CONCERNS, f"{len(medium)} medium violation(s) remain"
    return Verdict.PASS, "compliant"


def _gate_review(result, policy, thresholds):
    significant = SeverityPolicy(policy.medium_threshold).significant(result.issues)
    if significant:
        return Verdict.FAIL, f"{len(significant)} blocking finding(s) remain"
    if _failed(result) and not result.issues:
        return Verdict.FAIL, "review failed without findings"
    return Verdict.PASS, "review passed"


def _gate_test_quality(result, policy, thresholds):
    score = result.score if result.score is not None else compute_quality_score(result.issues)
    critical = result.issues_at(Severity.CRITICAL)
    if critical:
        return Verdict.FAIL, f"{len(critical)} critical issue(s) unresolved (score {score})"
    if _failed(result) and not result.issues:
        return Verdict.FAIL, f"test quality failed (score {score})"
    if score < thresholds.test_quality_concerns:
        return Verdict.FAIL, f"score {score} < {thresholds.test_quality_concerns}"
    if score < thresholds.test_quality_pass:
        return Verdict.CONCERNS, f"score {score} < {thresholds.test_quality_pass}"
    return Verdict.PASS, f"score {score}"


def _gate_traceability(result, policy, thresholds):
    p0 = result.coverage_for("P0")
    p1 = result.coverage_for("P1")

    if p0 is None and p1 is None:
        critical_gaps = result.issues_at(Severity.CRITICAL)
        if critical_gaps:
            return Verdict.FAIL, f"{len(critical_gaps)} P0 gap(s)"
        if result.issues or result.status != PhaseStatus.COMPLETE:
            return Verdict.CONCERNS, f"{len(result.issues)} gap(s), status {result.status.value}"
        return Verdict.PASS, "no gaps"

    if p0 is not None and p0 < thresholds.trace_p0_required:
        return Verdict.FAIL, f"P0 coverage {p0:g}% < {thresholds.trace_p0_required:g}%"
    if p1 is not None:
        if p1 < thresholds.trace_p1_concerns:
            return Verdict.FAIL, f"P1 coverage {p1:g}% < {thresholds.trace_p1_concerns:g}%"
        if p1 < thresholds.trace_p1_pass:
            return Verdict.CONCERNS, f"P1 coverage {p1:g}% < {thresholds.trace_p1_pass:g}%"
    return Verdict.PASS, "coverage thresholds met"


def _gate_acceptance_doc(result, policy, thresholds):
    if result.status == PhaseStatus.COMPLETE:
        return Verdict.PASS, result.detail or "acceptance document generated"
    return Verdict.CONCERNS, f"acceptance document {result.status.value}"


def _gate_acceptance(result, policy, thresholds):
    if result.issues:
        return Verdict.FAIL, f"{len(result.issues)} scenario(s) failed"
    if _failed(result):
        return Verdict.FAIL, result.detail or "acceptance gate failed"
    if result.status == PhaseStatus.CONCERNS:
        return Verdict.CONCERNS, result.detail or "acceptance concerns"
    return Verdict.PASS, result.detail or "all scenarios passed"


_GATES = {
    PhaseType.DEV: _gate_dev,
    PhaseType.ARCH_COMPLIANCE: _gate_arch,
    PhaseType.CODE_REVIEW: _gate_review,
    PhaseType.TEST_QUALITY: _gate_test_quality,
    PhaseType.TRACEABILITY: _gate_traceability,
    PhaseType.ACCEPTANCE_DOC: _gate_acceptance_doc,
    PhaseType.ACCEPTANCE_GATE: _gate_acceptance,
}


def evaluate_gate(
    result: PhaseResult,
    policy: PhasePolicy,
    thresholds: GateThresholds | None = None,
) -> GateVerdict:
    """
    Derive the gate verdict for a phase result.

    Args:
        result: Final PhaseResult after the fix-loop
        policy: Policy for result.phase (medium threshold, hard-blocking)
        thresholds: Score and coverage thresholds (defaults if None)

    Returns:
        GateVerdict
    """
    thresholds = thresholds or GateThresholds()

    if result.status == PhaseStatus.UNCLEAR:
        if result.phase == PhaseType.ACCEPTANCE_GATE or policy.hard_blocking:
            verdict, reason = Verdict.FAIL, "no recognisable completion signal"
        else:
            verdict, reason = Verdict.CONCERNS, "no recognisable completion signal"
    else:
        verdict, reason = _GATES[result.phase](result, policy, thresholds)

    score = result.score
    if result.phase == PhaseType.TEST_QUALITY and score is None:
        score = compute_quality_score(result.issues)

    logger.debug(f"[GATE] {result.phase.value}: {verdict.value} ({reason})")
    return GateVerdict(phase=result.phase, verdict=verdict, reason=reason, score=score)


def is_terminal(verdict: GateVerdict, policy: PhasePolicy, persisting_critical: bool = False) -> bool:
    """Whether a verdict blocks the story: BLOCKED, FAIL in a hard-blocking
    phase, or FAIL with a Critical issue that survived the fix-loop."""
    if verdict.verdict == Verdict.BLOCKED:
        return True
    if verdict.verdict == Verdict.FAIL:
        return policy.hard_blocking or persisting_critical
    return False
