"""Fix-loop state machine using transitions library.

One FixLoop per phase instance. The phase runner feeds it each evaluated
PhaseResult; the loop decides whether the result is accepted, needs another
remediation round, or has exhausted its fix budget.

States:
    evaluating -> accepted | accepted_with_issues | fixing | exhausted
    fixing -> evaluating

Usage:
    loop = FixLoop(PhaseType.CODE_REVIEW, policy, subject="3-1-login")
    state = loop.evaluate(result)
    while state == "fixing":
        issues = loop.open_issues
        ...  # invoke the fixer, stage, re-run the phase
        loop.record_attempt(issues, new_result)
        state = loop.evaluate(new_result)
"""

import logging

from transitions import Machine

from epicrun.lib.config import PhasePolicy
from epicrun.lib.severity import SeverityPolicy
from epicrun.lib.types import FixAttempt, Issue, PhaseResult, PhaseStatus, PhaseType, Severity

logger = logging.getLogger(__name__)


STATES = [
    "evaluating",
    "fixing",
    "accepted",
    "accepted_with_issues",
    "exhausted",
]

TERMINAL_STATES = ("accepted", "accepted_with_issues", "exhausted")

TRANSITIONS = [
    {"trigger": "accept", "source": "evaluating", "dest": "accepted"},
    {"trigger": "accept_with_issues", "source": "evaluating", "dest": "accepted_with_issues"},
    {"trigger": "request_fix", "source": "evaluating", "dest": "fixing"},
    {"trigger": "exhaust", "source": "evaluating", "dest": "exhausted"},
    {"trigger": "reevaluate", "source": "fixing", "dest": "evaluating"},
]


class FixLoopError(Exception):
    """Fix-loop used out of order or beyond its attempt budget."""
    pass


class FixLoop:
    """Severity-gated remediation loop for one phase instance.

    Args:
        phase: Phase being evaluated
        policy: Max fix attempts, Medium threshold and hard-blocking flag
        subject: Story or epic id, for logging
    """

    def __init__(self, phase: PhaseType, policy: PhasePolicy, subject: str = ""):
        self.phase = phase
        self.subject = subject
        self.max_attempts = policy.max_fix_attempts
        self.hard_blocking = policy.hard_blocking
        self.severity = SeverityPolicy(policy.medium_threshold)
        self.attempts: list[FixAttempt] = []
        self.last_result: PhaseResult | None = None

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="evaluating",
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        logger.debug(
            f"[FIX] {self.subject} {self.phase.value}: "
            f"{event.transition.source} -> {event.transition.dest} ({event.event.name})"
        )

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def open_issues(self) -> list[Issue]:
        """Actionable issues of the last evaluated result. Only these go to the fixer."""
        if self.last_result is None:
            return []
        return self.severity.actionable(self.last_result.issues)

    @property
    def documented_issues(self) -> list[Issue]:
        if self.last_result is None:
            return []
        return self.severity.documented(self.last_result.issues)

    @property
    def persisting_critical(self) -> bool:
        """A Critical issue survived the final evaluation."""
        if not self.finished or self.last_result is None:
            return False
        return bool(self.last_result.issues_at(Severity.CRITICAL))

    def evaluate(self, result: PhaseResult) -> str:
        """Decide the next state for an evaluated result. Returns the new state."""
        if self.state != "evaluating":
            raise FixLoopError(f"Cannot evaluate in state '{self.state}'")

        self.last_result = result
        actionable = self.severity.actionable(result.issues)

        if actionable:
            if len(self.attempts) < self.max_attempts:
                logger.info(
                    f"[FIX] {self.subject} {self.phase.value}: {len(actionable)} actionable issue(s), "
                    f"fix attempt {len(self.attempts) + 1}/{self.max_attempts}"
                )
                self.request_fix()
            else:
                if self.max_attempts:
                    logger.warning(
                        f"[FIX] {self.subject} {self.phase.value}: max fix attempts "
                        f"({self.max_attempts}) reached with {len(actionable)} issue(s) open"
                    )
                self.exhaust()
        elif result.status in (PhaseStatus.COMPLETE, PhaseStatus.CONCERNS):
            if result.issues:
                self.accept_with_issues()
            else:
                self.accept()
        elif self.hard_blocking:
            # failed, blocked or unclear with nothing to hand to a fixer
            self.exhaust()
        else:
            self.accept_with_issues()

        return self.state

    def record_attempt(self, issues, result: PhaseResult) -> FixAttempt:
        """Record a completed remediation round and return to evaluating."""
        if self.state != "fixing":
            raise FixLoopError(f"Cannot record a fix attempt in state '{self.state}'")
        if len(self.attempts) >= self.max_attempts:
            raise FixLoopError(
                f"{self.phase.value}: fix attempt {len(self.attempts) + 1} exceeds maximum {self.max_attempts}"
            )

        attempt = FixAttempt(index=len(self.attempts) + 1, issues=tuple(issues), result=result)
        self.attempts.append(attempt)
        self.reevaluate()
        return attempt
