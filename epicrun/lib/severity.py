"""Severity policy: which issues a fixer is asked to address."""

from dataclasses import dataclass

from .types import Issue, Severity


@dataclass(frozen=True)
class SeverityPolicy:
    """Critical and High are always actionable. Medium is actionable only when
    the total number of open issues exceeds medium_threshold. Low is only
    documented.
    """
    medium_threshold: int

    def is_actionable(self, issue: Issue, total: int) -> bool:
        if issue.severity in (Severity.CRITICAL, Severity.HIGH):
            return True
        if issue.severity == Severity.MEDIUM:
            return total > self.medium_threshold
        return False

    def significant(self, issues) -> list[Issue]:
        """Issues that count against a gate, fixable or not."""
        issues = list(issues)
        return [i for i in issues if self.is_actionable(i, len(issues))]

    def actionable(self, issues) -> list[Issue]:
        """Significant issues a fix invocation can address."""
        return [i for i in self.significant(issues) if i.fixable]

    def documented(self, issues) -> list[Issue]:
        """Issues that stay open without triggering a fix."""
        actionable = self.actionable(issues)
        return [i for i in issues if i not in actionable]
