"""Git command runner.

Every git call goes through run_git() so a hung or missing git never stalls an
epic: calls are bounded by a timeout and failures come back as a GitResult
instead of an exception.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
GIT_NOT_FOUND = 127


@dataclass
class GitResult:
    """Outcome of one git invocation."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    args: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe(self) -> str:
        """One-line failure description for logs and metrics."""
        command = "git " + " ".join(self.args) if self.args else "git"
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else f"exit {self.returncode}"
        return f"{command}: {detail}"


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """
    Run git against the repository at cwd.

    Args:
        args: Git arguments (e.g., ["add", "-u"])
        cwd: Repository root, passed with -C
        timeout: Seconds before the call is abandoned

    Returns:
        GitResult. A timeout sets timed_out; a missing git binary is
        returncode 127.
    """
    cmd = ["git", "-C", str(cwd)] + args
    logger.debug(f"[GIT] {' '.join(args)}")
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"[GIT] {' '.join(args)} timed out after {timeout}s")
        return GitResult(-1, "", f"Command timed out after {timeout}s", timed_out=True, args=args)
    except FileNotFoundError:
        return GitResult(GIT_NOT_FOUND, "", "git not found", args=args)
    return GitResult(proc.returncode, proc.stdout, proc.stderr, args=args)
