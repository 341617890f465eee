"""
Stage execution framework for epic runs.

Epic-level steps (preflight, baseline, stories, traceability, acceptance
document) run through run_stage(), which times them and records the result
on the context.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from epicrun.lib.constants import EXIT_GATE_FAILURE
from epicrun.runner.context import EpicContext


class StageResult(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StageError(Exception):
    """A stage failed."""
    stage: str
    message: str
    exit_code: int
    details: Optional[dict] = None

    def __str__(self):
        return f"[{self.stage}] {self.message}"


@dataclass
class StageSkipped(Exception):
    """A stage had nothing to do (disabled by options, dry run)."""
    stage: str
    reason: str


# Stage function signature: (ctx: EpicContext) -> None
# Raises StageError on failure, StageSkipped if skipped


def run_stage(ctx: EpicContext, stage_name: str, stage_fn: Callable[[EpicContext], None]) -> StageResult:
    """
    Run a single stage with timing and error handling.

    Returns StageResult and updates ctx.stages. StageError propagates;
    unexpected exceptions are wrapped in StageError.
    """
    ctx.log(f"Starting stage: {stage_name}")
    start = time.time()

    try:
        stage_fn(ctx)
        duration = time.time() - start
        ctx.record_stage(stage_name, "passed", duration)
        ctx.log(f"Stage {stage_name} passed ({duration:.2f}s)")
        return StageResult.PASSED

    except StageSkipped as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "skipped", duration, e.reason)
        ctx.log(f"Stage {stage_name} skipped: {e.reason}")
        return StageResult.SKIPPED

    except StageError as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "failed", duration, e.message)
        ctx.log(f"Stage {stage_name} failed: {e.message}")
        raise

    except Exception as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "failed", duration, str(e))
        ctx.log(f"Stage {stage_name} error: {e}")
        raise StageError(stage_name, str(e), EXIT_GATE_FAILURE) from e
