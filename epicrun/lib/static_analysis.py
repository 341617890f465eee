"""
Static analysis gate.

Runs the project's own tooling (type check, lint, build, tests) after a
story's dev phase. Failures are real tool output, not agent findings; they are
handed to a fix invocation as a high-priority prompt fragment and shown to the
code reviewer. Test failures that already existed before the story started
are filtered out.
"""

import json
import logging
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from .failure_filter import FailureBaseline, NewFailures, truncate_failures
from .regression import detect_test_command

logger = logging.getLogger(__name__)

CHECK_TITLES = {
    "typecheck": "Type Check",
    "lint": "Lint",
    "build": "Build",
    "tests": "Test",
}


@dataclass
class ToolCheck:
    name: str
    command: str


@dataclass
class CheckRun:
    """Outcome of one tool command."""
    name: str
    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


def _package_scripts(project_root: Path) -> dict:
    try:
        data = json.loads((project_root / "package.json").read_text())
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read package.json: {e}")
        return {}
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def detect_checks(project_root: Path) -> list[ToolCheck]:
    """Type check, lint and build commands for the project's toolchain."""
    project_root = Path(project_root)

    if (project_root / "package.json").exists():
        scripts = _package_scripts(project_root)
        checks = []
        for script in ("typecheck", "type-check"):
            if script in scripts:
                checks.append(ToolCheck("typecheck", f"npm run {script}"))
                break
        else:
            if (project_root / "tsconfig.json").exists():
                checks.append(ToolCheck("typecheck", "npx tsc --noEmit"))
        if "lint" in scripts:
            checks.append(ToolCheck("lint", "npm run lint"))
        if "build" in scripts:
            checks.append(ToolCheck("build", "npm run build"))
        return checks

    if (project_root / "Cargo.toml").exists():
        return [ToolCheck("typecheck", "cargo check")]

    if (project_root / "go.mod").exists():
        return [ToolCheck("build", "go build ./...")]

    if (project_root / "pyproject.toml").exists() or (project_root / "requirements.txt").exists():
        if (project_root / "mypy.ini").exists() and shutil.which("mypy"):
            return [ToolCheck("typecheck", "mypy .")]
        return []

    return []


def run_check(project_root: Path, check: ToolCheck, timeout: int) -> CheckRun:
    """Run one tool command. Never raises on a failing tool."""
    logger.info(f"[STATIC] Running {check.name}: {check.command}")
    start = time.time()
    try:
        result = subprocess.run(
            shlex.split(check.command),
            cwd=str(project_root),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CheckRun(check.name, check.command, -1, stderr=f"timed out after {timeout}s",
                        duration=time.time() - start, timed_out=True)
    except OSError as e:
        return CheckRun(check.name, check.command, -1, stderr=f"could not run: {e}",
                        duration=time.time() - start)
    return CheckRun(check.name, check.command, result.returncode, result.stdout, result.stderr,
                    duration=time.time() - start)


@dataclass
class StaticAnalysisReport:
    story_id: str
    runs: list[CheckRun] = field(default_factory=list)
    new_test_failures: NewFailures | None = None

    def _test_failed(self, run: CheckRun) -> bool:
        if run.passed:
            return False
        new = self.new_test_failures
        # A crashed or unparseable run still fails
        if new is None or new.current_count == 0:
            return True
        return new.count > 0

    @property
    def failures(self) -> list[CheckRun]:
        return [
            run for run in self.runs
            if (self._test_failed(run) if run.name == "tests" else not run.passed)
        ]

    @property
    def passed(self) -> bool:
        return not self.failures

    def fragment_text(self, max_bytes: int) -> str:
        """Failure report for a fix or review prompt. Empty when the gate passed."""
        failures = self.failures
        if not failures:
            return ""
        per_section = max(max_bytes // len(failures), 1_000)
        sections = []
        for run in failures:
            if run.name == "tests" and self.new_test_failures and self.new_test_failures.count:
                body = self.new_test_failures.report(per_section)
            else:
                body = truncate_failures(run.output or f"exit code {run.returncode}", per_section)
            title = CHECK_TITLES.get(run.name, run.name)
            sections.append(f"### {title} Failures (`{run.command}`)\n```\n{body}\n```")
        return (
            f"## Static Analysis Failures for {self.story_id}\n\n"
            "The following failures come from running the project's own tooling. "
            "They are not agent findings; they are actual compilation, lint, build or test errors.\n\n"
            + "\n\n".join(sections)
            + "\n\nFix ALL the errors shown above before anything else."
        )


class StaticAnalysisGate:
    """Project tooling run after each story's dev phase.

    Args:
        project_root: Directory the commands run in
        checks: Type check, lint and build commands
        test_command: Test command whose new failures count (None to skip tests)
        timeout: Seconds allowed per command
    """

    def __init__(self, project_root: Path, checks: list[ToolCheck], test_command: str | None = None,
                 timeout: int = 600):
        self.project_root = Path(project_root)
        self.checks = list(checks)
        self.test_command = test_command
        self.timeout = timeout
        self.baseline = FailureBaseline()

    @classmethod
    def from_config(cls, config) -> 'StaticAnalysisGate':
        """Configured commands win over detection; detection fills only when none is set."""
        configured = [
            ToolCheck(name, command)
            for name, command in (
                ("typecheck", config.typecheck_command),
                ("lint", config.lint_command),
                ("build", config.build_command),
            )
            if command
        ]
        checks = configured or detect_checks(config.project_root)
        test_command = config.test_command or detect_test_command(config.project_root)
        return cls(config.project_root, checks, test_command, config.static_analysis_timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.checks or self.test_command)

    def _test_check(self) -> ToolCheck:
        return ToolCheck("tests", self.test_command)

    def capture_baseline(self, story_id: str) -> int | None:
        """Record the failing tests before the story changes anything."""
        if not self.test_command:
            return None
        logger.info(f"[STATIC] Capturing test failure baseline for {story_id}")
        run = run_check(self.project_root, self._test_check(), self.timeout)
        if run.timed_out:
            logger.warning(f"[STATIC] {story_id}: baseline test run timed out; all failures will count as new")
            return None
        return self.baseline.capture(run.stdout, run.stderr, story_id)

    def run(self, story_id: str) -> StaticAnalysisReport:
        logger.info(f"[STATIC] Static analysis gate: {story_id}")
        report = StaticAnalysisReport(story_id=story_id)
        for check in self.checks:
            run = run_check(self.project_root, check, self.timeout)
            if not run.passed:
                logger.error(f"[STATIC] {story_id}: {check.name} failed (exit {run.returncode})")
            report.runs.append(run)

        if self.test_command:
            run = run_check(self.project_root, self._test_check(), self.timeout)
            report.runs.append(run)
            if not run.passed:
                report.new_test_failures = self.baseline.new_failures(run.stdout, run.stderr)
                new = report.new_test_failures
                if new.current_count and not new.count:
                    logger.info(f"[STATIC] {story_id}: all {new.current_count} test failure(s) are pre-existing")

        if report.passed:
            logger.info(f"[STATIC] Static analysis gate passed: {story_id}")
        else:
            logger.error(f"[STATIC] Static analysis gate failed for {story_id} with {len(report.failures)} issue(s)")
        return report
