"""Story state machine using transitions library.

Tracks a story through its phase sequence and persists every transition,
phase result and gate verdict to <state_dir>/stories/<story_id>.json.

Usage:
    from epicrun.workflow.story_fsm import StoryFSM

    fsm = StoryFSM(record_dir, story)
    fsm.start_dev()
    fsm.to_arch()
    fsm.block(reason="code_review: FAIL")
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from transitions import Machine

from epicrun.lib.files import write_atomic
from epicrun.lib.stories import Story
from epicrun.lib.types import GateVerdict, PhaseResult, PhaseType
from epicrun.lib.validate import validate_before_write

logger = logging.getLogger(__name__)


STATES = [
    "pending",
    "dev",
    "arch_compliance",
    "code_review",
    "test_quality",
    "done",
    "blocked",
    "skipped",
]

ACTIVE_STATES = ["dev", "arch_compliance", "code_review", "test_quality"]

# Later phases can be reached directly when earlier ones are skipped
TRANSITIONS = [
    {"trigger": "start_dev", "source": "pending", "dest": "dev"},

    {"trigger": "to_arch", "source": "dev", "dest": "arch_compliance"},

    {"trigger": "to_review", "source": ["dev", "arch_compliance"], "dest": "code_review"},

    {"trigger": "to_test_quality", "source": ["dev", "arch_compliance", "code_review"], "dest": "test_quality"},

    {"trigger": "complete", "source": ACTIVE_STATES, "dest": "done"},

    {"trigger": "block", "source": ACTIVE_STATES, "dest": "blocked"},

    {"trigger": "skip", "source": "pending", "dest": "skipped"},

    # Re-running a story from an earlier run (resume, or --start-from)
    {"trigger": "reset", "source": ACTIVE_STATES + ["done", "blocked", "skipped"], "dest": "pending"},
]

# Phase -> trigger that enters it
ENTER_PHASE = {
    PhaseType.DEV: "start_dev",
    PhaseType.ARCH_COMPLIANCE: "to_arch",
    PhaseType.CODE_REVIEW: "to_review",
    PhaseType.TEST_QUALITY: "to_test_quality",
}


def story_record_path(record_dir: Path, story_id: str) -> Path:
    return Path(record_dir) / f"{story_id}.json"


class StoryFSM:
    """State machine for one story.

    Loads the previous state from the story record if one exists and resets
    it to pending, so a story is always run from the start of its sequence.
    """

    def __init__(self, record_dir: Path, story: Story,
                 on_transition: Callable[[str, str, str], None] | None = None):
        self.record_dir = Path(record_dir)
        self.story = story
        self.story_id = story.id
        self.on_transition = on_transition
        self.history: list[dict] = []
        self.gates: dict[str, dict] = {}
        self.blocked_reason: str | None = None

        initial = self._load_state()
        if initial not in STATES:
            logger.warning(f"[FSM] {self.story_id}: Unknown state '{initial}', defaulting to 'pending'")
            initial = "pending"

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

        if self.state != "pending":
            self.reset()

    @property
    def path(self) -> Path:
        return story_record_path(self.record_dir, self.story_id)

    def _load_state(self) -> str:
        if not self.path.exists():
            return "pending"
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[FSM] {self.story_id}: Error reading story record: {e}")
            return "pending"
        return data.get("state", "pending")

    def to_dict(self) -> dict:
        return {
            "version": 1,
            "story_id": self.story_id,
            "epic_id": self.story.epic_id,
            "state": self.state,
            "history": self.history,
            "gates": self.gates,
            "blocked_reason": self.blocked_reason,
            "updated": datetime.now().isoformat(),
        }

    def _save(self) -> None:
        data = self.to_dict()
        validate_before_write(data, "story_record", self.path)
        write_atomic(self.path, json.dumps(data, indent=2))

    def on_state_change(self, event) -> None:
        """Callback after any state transition.

        Persists the record and logs the transition.
        """
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        if trigger == "block":
            self.blocked_reason = event.kwargs.get("reason")
        elif trigger == "reset":
            self.history = []
            self.gates = {}
            self.blocked_reason = None

        logger.info(f"[FSM] {self.story_id}: {from_state} -> {to_state} ({trigger})")

        self._save()

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def enter_phase(self, phase: PhaseType) -> None:
        getattr(self, ENTER_PHASE[phase])()

    def record_result(self, result: PhaseResult) -> None:
        """Append a phase result (initial or fix attempt) to the history."""
        self.history.append(result.to_dict())
        self.story.history.append(result)
        self._save()

    def record_gate(self, verdict: GateVerdict) -> None:
        self.gates[verdict.phase.value] = verdict.to_dict()
        self.story.gates[verdict.phase.value] = verdict
        self._save()

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available in current state."""
        return self.machine.get_triggers(self.state)
