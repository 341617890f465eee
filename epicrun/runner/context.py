"""
Run context and run state for epic execution.

EpicContext carries what stays fixed for one epic run (configuration, agent
invoker, artifact paths). RunState carries what changes as stories finish and
is threaded explicitly through the executors; its persisted subset is the
checkpoint.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from epicrun.agents.claude import AgentInvoker
from epicrun.lib.checkpoint import Checkpoint, checkpoint_path
from epicrun.lib.config import RunConfig, RunOptions
from epicrun.lib.decisions import decision_log_path
from epicrun.lib.metrics import EpicMetrics, metrics_path
from epicrun.lib.regression import RegressionGate
from epicrun.lib.static_analysis import StaticAnalysisGate
from epicrun.lib.stories import Story
from epicrun.lib.validate import validate_before_write


@dataclass
class EpicContext:
    """Context for a single epic run."""
    run_id: str
    run_dir: Path
    epic_id: str
    config: RunConfig
    options: RunOptions
    invoker: AgentInvoker
    metrics: EpicMetrics | None = None
    regression: RegressionGate | None = None
    static_analysis: StaticAnalysisGate | None = None
    handoff: str = ""  # context handed over from the previous epic in a chain
    start_time: datetime = field(default_factory=datetime.now)
    stages: dict = field(default_factory=dict)

    @classmethod
    def create(cls, config: RunConfig, options: RunOptions, epic_id: str,
               handoff: str = "", invoker: AgentInvoker | None = None) -> 'EpicContext':
        """Create a new run context with a fresh run directory."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        run_id = f"{timestamp}_epic-{epic_id}"

        run_dir = config.state_dir / "runs" / run_id
        run_dir.mkdir(parents=True, exist_ok=True)

        return cls(
            run_id=run_id,
            run_dir=run_dir,
            epic_id=epic_id,
            config=config,
            options=options,
            invoker=invoker or AgentInvoker.from_config(config, run_dir=run_dir, run_id=run_id),
            handoff=handoff,
        )

    @property
    def checkpoint_file(self) -> Path:
        return checkpoint_path(self.config.sprint_artifacts_dir, self.epic_id)

    @property
    def metrics_file(self) -> Path:
        return metrics_path(self.config.metrics_dir, self.epic_id)

    @property
    def decision_log(self) -> Path:
        return decision_log_path(self.config.sprint_artifacts_dir, self.epic_id)

    def story_record_dir(self) -> Path:
        return self.config.state_dir / "stories"

    def log(self, message: str):
        """Append to run log."""
        timestamp = datetime.now().isoformat()
        log_path = self.run_dir / "run.log"
        with open(log_path, "a") as f:
            f.write(f"[{timestamp}] {message}\n")

    def record_stage(self, stage: str, status: str, duration: float, notes: str = ""):
        """Record stage result."""
        self.stages[stage] = {
            "status": status,
            "duration_seconds": duration,
            "notes": notes,
        }

    def write_result(self, status: str, state: 'RunState', failure: dict | None = None):
        """Write result.json."""
        end_time = datetime.now()
        duration = (end_time - self.start_time).total_seconds()

        result = {
            "version": 1,
            "run_id": self.run_id,
            "epic_id": self.epic_id,
            "status": status,
            "exit_code": state.exit_code,
            "timestamps": {
                "started": self.start_time.isoformat(),
                "ended": end_time.isoformat(),
                "duration_seconds": duration,
            },
            "stages": self.stages,
            "stories": {
                "completed": state.completed,
                "failed": state.failed,
                "skipped": state.skipped,
            },
            "failure": failure,
        }

        validate_before_write(result, "run_result", self.run_dir / "result.json")
        (self.run_dir / "result.json").write_text(json.dumps(result, indent=2))


@dataclass
class RunState:
    """Mutable progress of one epic run."""
    epic_id: str
    stories: list[Story]
    index: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: list = field(default_factory=list)  # StoryOutcome, in execution order
    last_index: int = -1
    last_story_id: str = ""
    exhausted: bool = False  # an invocation retry budget ran out
    blocked: bool = False    # a story was blocked by a gate
    exit_code: int = 0

    def record(self, index: int, story: Story, status: str) -> None:
        """Count a finished story (completed, failed or skipped) at index."""
        if status == "completed":
            self.completed += 1
        elif status == "failed":
            self.failed += 1
        else:
            self.skipped += 1
        self.last_index = index
        self.last_story_id = story.id

    def to_checkpoint(self, exit_code: int | None = None) -> Checkpoint:
        return Checkpoint(
            epic_id=self.epic_id,
            last_story_index=self.last_index,
            last_story_id=self.last_story_id,
            completed=self.completed,
            failed=self.failed,
            skipped=self.skipped,
            timestamp=datetime.now().replace(microsecond=0).isoformat(),
            exit_code=exit_code,
        )
