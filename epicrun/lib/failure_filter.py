"""
New-failures-only test filter.

A story is only asked to fix the test failures it introduced. The failing
tests are recorded before the story's dev phase; afterwards the current
failures are compared with that baseline and only the new ones are reported,
truncated to a size that fits a fix prompt.
"""

import logging
import re
from dataclasses import dataclass, field

from .constants import MAX_TEST_FAILURE_BYTES
from .test_parser import FailureInfo, ParsedTestOutput, parse_test_output

logger = logging.getLogger(__name__)

# vitest/jest file-level lines: "FAIL  src/a.test.ts > Suite > name"
_FAIL_LINE = re.compile(r'(?:^|\s)FAIL\s+(.+?)\s*$', re.MULTILINE)


def failure_signature(failure: FailureInfo) -> str:
    return f"{failure.file}::{failure.name}" if failure.file else failure.name


def failure_signatures(parsed: ParsedTestOutput, output: str) -> set[str]:
    """Identifiers of the failing tests in one run."""
    signatures = {failure_signature(f) for f in parsed.failures}
    signatures.update(m.group(1) for m in _FAIL_LINE.finditer(output))
    return signatures


def truncate_failures(text: str, max_bytes: int = MAX_TEST_FAILURE_BYTES) -> str:
    """Cut failure output to max_bytes, keeping the head and the closing summary."""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    summary = "\n".join(text.splitlines()[-20:])
    available = max(max_bytes - len(summary.encode("utf-8")) - 200, 0)
    head = data[:available].decode("utf-8", errors="ignore")
    return (
        f"{head}\n\n... [TEST OUTPUT TRUNCATED: {len(data)}B total, showing first {available}B + summary] ...\n\n"
        f"{summary}"
    )


@dataclass
class NewFailures:
    """Failures of the current run that the baseline did not have."""
    failures: list[str] = field(default_factory=list)
    baseline_count: int = 0
    current_count: int = 0
    details: str = ""

    @property
    def count(self) -> int:
        return len(self.failures)

    def report(self, max_bytes: int = MAX_TEST_FAILURE_BYTES) -> str:
        if not self.failures:
            return (
                f"All {self.current_count} failure(s) are pre-existing from the baseline.\n"
                "No new failures were introduced by this story."
            )
        listing = "\n".join(f"- {name}" for name in self.failures)
        body = f"{listing}\n\n{self.details}".rstrip()
        return truncate_failures(
            f"{body}\n\n"
            "---\n"
            "**Failure Summary:**\n"
            f"- New failures (this story): {self.count}\n"
            f"- Pre-existing failures (baseline): {self.baseline_count}\n"
            f"- Total current failures: {self.current_count}\n\n"
            f"Only the {self.count} NEW failure(s) above need to be fixed by this story.\n"
            "Pre-existing failures from the baseline have been filtered out.",
            max_bytes,
        )


class FailureBaseline:
    """Failing tests recorded before a story changed anything."""

    def __init__(self):
        self.signatures: set[str] | None = None

    @property
    def captured(self) -> bool:
        return self.signatures is not None

    def capture(self, stdout: str, stderr: str = "", story_id: str = "") -> int:
        self.signatures = failure_signatures(parse_test_output(stdout, stderr), f"{stdout}\n{stderr}")
        if self.signatures:
            logger.warning(f"[TESTS] {story_id}: baseline has {len(self.signatures)} pre-existing test failure(s)")
        else:
            logger.info(f"[TESTS] {story_id}: baseline captured, no pre-existing failures")
        return len(self.signatures)

    def new_failures(self, stdout: str, stderr: str = "") -> NewFailures:
        """Failures of the current output that are not in the baseline.

        Without a baseline every current failure counts as new.
        """
        parsed = parse_test_output(stdout, stderr)
        current = failure_signatures(parsed, f"{stdout}\n{stderr}")
        baseline = self.signatures or set()
        new = sorted(current - baseline)
        details = "\n".join(
            f"{failure_signature(f)}: {f.message}" if f.message else failure_signature(f)
            for f in parsed.failures
            if failure_signature(f) in new
        )
        return NewFailures(
            failures=new,
            baseline_count=len(baseline),
            current_count=len(current),
            details=details,
        )
