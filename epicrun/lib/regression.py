"""
Regression gate.

Captures the number of passing tests before the first story runs and
compares it after each story. A drop is reported as a warning and recorded
in metrics; it never fails the story on its own.
"""

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .test_parser import parse_test_output

logger = logging.getLogger(__name__)


def detect_test_command(project_root: Path) -> str | None:
    """Pick a test command from the project's build files."""
    if (project_root / "package.json").exists():
        return "npm test"
    if (project_root / "Cargo.toml").exists():
        return "cargo test"
    if (project_root / "pyproject.toml").exists() or (project_root / "requirements.txt").exists():
        return "pytest -q"
    return None


@dataclass
class SuiteRun:
    command: str
    returncode: int
    passed: int | None
    duration: float
    summary: str = ""


@dataclass
class RegressionCheck:
    baseline: int
    current: int | None
    passed: bool
    message: str


def run_tests(project_root: Path, command: str, timeout: int) -> SuiteRun:
    """Run the test command and count passing tests. Never raises on test failure."""
    cmd = shlex.split(command)
    logger.info(f"Running: {command}")
    start = time.time()
    try:
        result = subprocess.run(
            cmd,
            cwd=str(project_root),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return SuiteRun(command, -1, None, time.time() - start, f"timed out after {timeout}s")
    except OSError as e:
        return SuiteRun(command, -1, None, time.time() - start, f"could not run: {e}")

    parsed = parse_test_output(result.stdout, result.stderr)
    return SuiteRun(
        command=command,
        returncode=result.returncode,
        passed=parsed.passed,
        duration=time.time() - start,
        summary=parsed.summary,
    )


class RegressionGate:
    """Baseline of passing tests for one epic run."""

    def __init__(self, project_root: Path, command: str | None, timeout: int = 600):
        self.project_root = Path(project_root)
        self.command = command or detect_test_command(self.project_root)
        self.timeout = timeout
        self.baseline: int | None = None

    @property
    def enabled(self) -> bool:
        return self.command is not None

    def capture_baseline(self) -> int | None:
        if not self.enabled:
            logger.info("Regression gate disabled: no test command")
            return None
        run = run_tests(self.project_root, self.command, self.timeout)
        self.baseline = run.passed or 0
        logger.info(f"Regression baseline initialized: {self.baseline} passing tests")
        return self.baseline

    def check(self, story_id: str) -> RegressionCheck | None:
        """Compare the current passing count with the baseline.

        The baseline moves up when tests are added, so each story is compared
        with the best count seen so far.
        """
        if not self.enabled or self.baseline is None:
            logger.debug(f"Regression gate skipped for {story_id}: baseline not initialized")
            return None

        run = run_tests(self.project_root, self.command, self.timeout)
        current = run.passed
        if current is None:
            return RegressionCheck(self.baseline, None, True, f"could not count tests ({run.summary})")

        if current < self.baseline:
            message = f"passing tests dropped from {self.baseline} to {current}"
            if run.summary:
                message += f" ({run.summary})"
            logger.warning(f"[REGRESSION] {story_id}: {message}")
            return RegressionCheck(self.baseline, current, False, message)

        baseline = self.baseline
        self.baseline = current
        return RegressionCheck(baseline, current, True, f"{current} passing (baseline {baseline})")
