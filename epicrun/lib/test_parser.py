"""
Parse test runner output.

Two uses:
- count_passing_tests(): number of passing tests reported by common runners,
  used by the regression gate and by extraction of dev/test-quality results.
- parse_test_output(): structured failure info (pytest, jest/mocha) that can
  be summarised in regression warnings.
"""

import re
from dataclasses import dataclass, field

# Ordered: the first runner-specific pattern that matches wins.
_PASSING_PATTERNS = [
    # jest: "Tests:       2 failed, 5 passed, 7 total"
    re.compile(r'^\s*Tests:\s.*?(\d+)\s+passed', re.MULTILINE),
    # mocha: "  12 passing (30ms)"
    re.compile(r'(\d+)\s+passing\b'),
    # generic: "12 tests passed"
    re.compile(r'(\d+)\s+tests?\s+passed\b', re.IGNORECASE),
    # pytest / cargo: "5 passed in 0.12s", "test result: ok. 5 passed; 0 failed"
    re.compile(r'(\d+)\s+passed\b'),
]


def count_passing_tests(output: str) -> int | None:
    """
    Count passing tests from runner output.

    Uses the last summary line of the first pattern family that matches, since
    watch-mode and multi-project runs print several summaries.

    Returns:
        Number of passing tests, or None if no summary was recognised
    """
    if not output:
        return None

    for pattern in _PASSING_PATTERNS:
        matches = pattern.findall(output)
        if matches:
            return int(matches[-1])

    return None


@dataclass
class FailureInfo:
    """A single test failure."""
    name: str
    file: str | None = None
    line: int | None = None
    message: str = ""


@dataclass
class ParsedTestOutput:
    """Structured test output."""
    failures: list[FailureInfo] = field(default_factory=list)
    passed: int | None = None
    summary: str = ""
    raw_output: str = ""

    def is_empty(self) -> bool:
        return len(self.failures) == 0


def parse_test_output(stdout: str, stderr: str = "") -> ParsedTestOutput:
    """
    Parse test output and extract structured failure info.

    Tries pytest, then jest/mocha, falls back to raw output.
    """
    combined = f"{stdout}\n{stderr}"
    passed = count_passing_tests(combined)

    result = _parse_pytest(combined)
    if result.is_empty():
        result = _parse_js(combined)

    if result.is_empty():
        return ParsedTestOutput(
            passed=passed,
            raw_output=_truncate(combined, 2000),
            summary="No failures recognised" if passed is not None else "Unparsed test output",
        )

    result.passed = passed
    return result


def _parse_pytest(combined: str) -> ParsedTestOutput:
    """Parse pytest short test summary lines."""
    failures = []

    # FAILED tests/test_x.py::test_name - message
    failed_pattern = re.compile(
        r'^FAILED\s+([^:\s]+)::(\S+)(?:\s+-\s+(.+))?$',
        re.MULTILINE
    )

    # Last traceback location per file is usually the assertion line
    location_pattern = re.compile(r'^([^\s:]+\.py):(\d+):', re.MULTILINE)
    file_to_line: dict[str, int] = {}
    for match in location_pattern.finditer(combined):
        file_to_line[match.group(1)] = int(match.group(2))

    for match in failed_pattern.finditer(combined):
        filepath, test_name, message = match.groups()
        failures.append(FailureInfo(
            name=test_name,
            file=filepath,
            line=file_to_line.get(filepath),
            message=message or "",
        ))

    if not failures:
        return ParsedTestOutput()

    return ParsedTestOutput(
        failures=failures,
        summary=f"{len(failures)} test(s) failed",
        raw_output=_truncate(combined, 1000),
    )


def _parse_js(combined: str) -> ParsedTestOutput:
    """Parse jest ("● Suite › test") and mocha ("1) suite test:") failure headers."""
    failures = []

    jest_pattern = re.compile(r'^\s*●\s+(.+?)\s*$', re.MULTILINE)
    for match in jest_pattern.finditer(combined):
        name = match.group(1)
        if name.startswith("Console"):
            continue
        failures.append(FailureInfo(name=name))

    if not failures:
        mocha_pattern = re.compile(r'^\s*\d+\)\s+(.+?):?\s*$', re.MULTILINE)
        seen = set()
        for match in mocha_pattern.finditer(combined):
            name = match.group(1)
            if name in seen:
                continue
            seen.add(name)
            failures.append(FailureInfo(name=name))

    if not failures:
        return ParsedTestOutput()

    return ParsedTestOutput(
        failures=failures,
        summary=f"{len(failures)} test(s) failed",
        raw_output=_truncate(combined, 1000),
    )


def _truncate(s: str, max_len: int) -> str:
    """Truncate string, keeping the end (most relevant for errors)."""
    if len(s) <= max_len:
        return s.strip()
    return "...(truncated)\n" + s[-max_len:].strip()
