"""
Agent invocation.

Runs the configured agent CLI (default: claude) with the prompt on stdin and
returns its text output with a closed outcome classification. Transient
failures are retried with exponential backoff; a timeout raises
InvocationTimeout at once and is handled by the phase runner.
"""

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from epicrun.lib.constants import (
    DEFAULT_AGENT_COMMAND,
    RETRY_INITIAL_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
)
from epicrun.lib.signals import has_structured_signal
from epicrun.lib.stats import InvocationStats, record_invocation_stats

logger = logging.getLogger(__name__)


class InvocationOutcome(Enum):
    OK = "ok"
    NONZERO = "nonzero"
    TIMEOUT = "timeout"
    SPAWN_ERROR = "spawn_error"


@dataclass
class Invocation:
    output: str
    outcome: InvocationOutcome
    exit_code: int | None
    elapsed_seconds: float
    stderr: str = ""
    attempts: int = 1


class TransientInvocationError(Exception):
    """Every retry attempt failed transiently."""

    def __init__(self, attempts: int, last: Invocation):
        self.attempts = attempts
        self.last = last
        super().__init__(
            f"Agent failed after {attempts} attempt(s): {last.outcome.value}"
            + (f" (exit {last.exit_code})" if last.exit_code is not None else "")
        )


class InvocationTimeout(Exception):
    """Agent did not finish within its timeout."""

    def __init__(self, timeout: int, elapsed: float):
        self.timeout = timeout
        self.elapsed = elapsed
        super().__init__(f"Agent timed out after {timeout}s")


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def is_transient(invocation: Invocation) -> bool:
    """Spawn errors, and non-zero exits that produced no structured signal."""
    if invocation.outcome == InvocationOutcome.SPAWN_ERROR:
        return True
    if invocation.outcome == InvocationOutcome.NONZERO:
        return not has_structured_signal(invocation.output)
    return False


def backoff_delays(attempts: int, initial: float, maximum: float) -> list[float]:
    """Delays slept between attempts: initial, doubling, capped at maximum."""
    delays = []
    delay = initial
    for _ in range(max(0, attempts - 1)):
        delays.append(min(delay, maximum))
        delay *= 2
    return delays


class AgentInvoker:
    """Invokes the agent CLI for one run.

    Args:
        command: Agent command line; the prompt is passed on stdin
        cwd: Working directory for the agent (the project root)
        run_dir: Run directory; logs go to run_dir/logs and stats to run_dir/stats.jsonl
        run_id: Identifier recorded with each stats line
    """

    def __init__(
        self,
        command: str = DEFAULT_AGENT_COMMAND,
        cwd: Path | None = None,
        run_dir: Path | None = None,
        run_id: str = "",
        max_attempts: int = RETRY_MAX_ATTEMPTS,
        initial_delay: float = RETRY_INITIAL_DELAY,
        max_delay: float = RETRY_MAX_DELAY,
    ):
        self.command = command
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.run_dir = Path(run_dir) if run_dir else None
        self.run_id = run_id
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._seq = 0

    @classmethod
    def from_config(cls, config, run_dir: Path | None = None, run_id: str = "") -> "AgentInvoker":
        return cls(
            command=config.agent_command,
            cwd=config.project_root,
            run_dir=run_dir,
            run_id=run_id,
            max_attempts=config.retry_max_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
        )

    def _log_file(self, phase: str, subject: str) -> Path | None:
        if self.run_dir is None:
            return None
        self._seq += 1
        log_dir = self.run_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        name = f"{self._seq:03d}-{subject or 'run'}-{phase}.log"
        return log_dir / name

    def invoke(self, prompt: str, timeout: int, *, phase: str = "agent", subject: str = "",
               attempt: int = 1) -> Invocation:
        """
        Run the agent once.

        Never raises for agent failures; the outcome says what happened.
        """
        cmd = shlex.split(self.command)

        # Remove ANTHROPIC_API_KEY so Claude uses OAuth credentials instead
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}

        start = time.time()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.cwd),
                input=prompt,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
            stdout, stderr, exit_code = result.stdout, result.stderr, result.returncode
            outcome = InvocationOutcome.OK if exit_code == 0 else InvocationOutcome.NONZERO
        except subprocess.TimeoutExpired as e:
            # subprocess.run kills the child before re-raising
            stdout, stderr, exit_code = _text(e.stdout), _text(e.stderr), None
            stderr += f"\nTimeout expired after {timeout}s"
            outcome = InvocationOutcome.TIMEOUT
        except OSError as e:
            stdout, stderr, exit_code = "", f"Failed to start agent: {e}", None
            outcome = InvocationOutcome.SPAWN_ERROR

        elapsed = time.time() - start
        invocation = Invocation(
            output=stdout or "",
            outcome=outcome,
            exit_code=exit_code,
            elapsed_seconds=elapsed,
            stderr=stderr or "",
            attempts=attempt,
        )

        log_file = self._log_file(phase, subject)
        if log_file:
            log_file.write_text(
                f"=== COMMAND ===\n{' '.join(cmd)}\n\n"
                f"=== EXIT CODE ===\n{exit_code if exit_code is not None else outcome.value}\n\n"
                f"=== STDOUT ===\n{invocation.output}\n\n"
                f"=== STDERR ===\n{invocation.stderr}\n"
            )

        if self.run_dir is not None:
            record_invocation_stats(self.run_dir, InvocationStats(
                timestamp=datetime.now().isoformat(),
                run_id=self.run_id,
                phase=phase,
                subject=subject,
                outcome=outcome.value,
                elapsed_seconds=round(elapsed, 2),
                exit_code=exit_code,
                attempt=attempt,
                prompt_bytes=len(prompt.encode("utf-8")),
            ))

        logger.debug(f"[AGENT] {subject} {phase}: {outcome.value} in {elapsed:.1f}s")
        return invocation

    def invoke_with_retry(self, prompt: str, timeout: int, *, phase: str = "agent",
                          subject: str = "") -> Invocation:
        """
        Run the agent, retrying transient failures with exponential backoff.

        Timeouts are never retried.

        Raises:
            InvocationTimeout: If the agent did not finish within timeout
            TransientInvocationError: If every attempt failed transiently
        """
        delays = backoff_delays(self.max_attempts, self.initial_delay, self.max_delay)
        invocation = None

        for attempt in range(1, self.max_attempts + 1):
            invocation = self.invoke(prompt, timeout, phase=phase, subject=subject, attempt=attempt)
            if invocation.outcome == InvocationOutcome.TIMEOUT:
                raise InvocationTimeout(timeout, invocation.elapsed_seconds)
            if not is_transient(invocation):
                return invocation

            if attempt < self.max_attempts:
                delay = delays[attempt - 1]
                logger.warning(
                    f"[AGENT] {subject} {phase}: transient failure ({invocation.outcome.value}), "
                    f"retrying in {delay:.0f}s (attempt {attempt}/{self.max_attempts})"
                )
                time.sleep(delay)

        raise TransientInvocationError(self.max_attempts, invocation)
