"""
Shared data types for epicrun.

Value types produced by extraction and consumed by the fix-loop, gates and
executors. Kept in one module to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class PhaseType(Enum):
    DEV = "dev"
    ARCH_COMPLIANCE = "arch_compliance"
    CODE_REVIEW = "code_review"
    TEST_QUALITY = "test_quality"
    TRACEABILITY = "traceability"
    ACCEPTANCE_DOC = "acceptance_doc"
    ACCEPTANCE_GATE = "acceptance_gate"


STORY_PHASES = [
    PhaseType.DEV,
    PhaseType.ARCH_COMPLIANCE,
    PhaseType.CODE_REVIEW,
    PhaseType.TEST_QUALITY,
]


class PhaseStatus(Enum):
    COMPLETE = "complete"
    CONCERNS = "concerns"
    BLOCKED = "blocked"
    FAILED = "failed"
    UNCLEAR = "unclear"


class Severity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is more severe."""
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str | None, default: "Severity | None" = None) -> "Severity":
        """Parse a severity name or traceability priority (P0..P3)."""
        if value is None:
            return default or cls.MEDIUM
        key = str(value).strip().lower()
        if key in _PRIORITY_ALIASES:
            return _PRIORITY_ALIASES[key]
        for member in cls:
            if member.value == key:
                return member
        return default or cls.MEDIUM


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}

_PRIORITY_ALIASES = {
    "p0": Severity.CRITICAL,
    "p1": Severity.HIGH,
    "p2": Severity.MEDIUM,
    "p3": Severity.LOW,
    "blocker": Severity.CRITICAL,
    "major": Severity.HIGH,
    "minor": Severity.LOW,
}


class Verdict(Enum):
    PASS = "PASS"
    CONCERNS = "CONCERNS"
    FAIL = "FAIL"
    BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class Issue:
    """A single finding reported by the agent for a phase."""
    category: str
    severity: Severity
    description: str
    location: str | None = None
    fixable: bool = True

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "severity": self.severity.value,
            "description": self.description,
            "location": self.location,
            "fixable": self.fixable,
        }

    def format(self) -> str:
        """One-line rendering used in remediation prompts and logs."""
        loc = f" ({self.location})" if self.location else ""
        return f"- [{self.severity.value.upper()}] {self.description}{loc}"


@dataclass(frozen=True)
class PhaseResult:
    """Structured outcome of one agent invocation for a phase.

    Immutable: a fix attempt produces a new PhaseResult.
    """
    phase: PhaseType
    status: PhaseStatus
    score: int | None = None
    issues: tuple[Issue, ...] = ()
    summary: str = ""
    files_changed: tuple[str, ...] = ()
    tests_added: int | None = None
    decisions: tuple[str, ...] = ()
    tests_passed: int | None = None
    coverage: tuple[tuple[str, float], ...] = ()  # (priority, percent) pairs
    detail: str = ""
    source: str = "none"  # json, result, inline, token, fuzzy, none, dry_run
    exit_outcome: str | None = None  # InvocationOutcome value
    retry_exhausted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in (PhaseStatus.COMPLETE, PhaseStatus.CONCERNS)

    def coverage_for(self, priority: str) -> float | None:
        for key, value in self.coverage:
            if key.upper() == priority.upper():
                return value
        return None

    def issues_at(self, *severities: Severity) -> list[Issue]:
        return [i for i in self.issues if i.severity in severities]

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "score": self.score,
            "issues": [i.to_dict() for i in self.issues],
            "summary": self.summary,
            "files_changed": list(self.files_changed),
            "tests_added": self.tests_added,
            "decisions": list(self.decisions),
            "tests_passed": self.tests_passed,
            "coverage": {k: v for k, v in self.coverage},
            "detail": self.detail,
            "source": self.source,
            "exit_outcome": self.exit_outcome,
            "retry_exhausted": self.retry_exhausted,
        }


@dataclass(frozen=True)
class FixAttempt:
    """One remediation round: the issues handed to the fixer and the re-evaluated result."""
    index: int
    issues: tuple[Issue, ...]
    result: PhaseResult


@dataclass(frozen=True)
class GateVerdict:
    """Derived gate decision. Never stored on its own; emitted into story/epic state."""
    phase: PhaseType
    verdict: Verdict
    reason: str = ""
    score: int | None = None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "score": self.score,
        }


@dataclass
class PhaseOutcome:
    """Everything the phase runner produced for one phase instance."""
    phase: PhaseType
    result: PhaseResult
    verdict: GateVerdict
    attempts: list[FixAttempt] = field(default_factory=list)
    final_state: str = "accepted"  # fix-loop terminal state
    persisting_critical: bool = False
    warnings: list[str] = field(default_factory=list)
    initial_result: PhaseResult | None = None

    @property
    def history(self) -> list[PhaseResult]:
        """Initial result followed by every fix-attempt result."""
        first = [self.initial_result] if self.initial_result is not None else []
        return first + [a.result for a in self.attempts]
