"""Shared fixtures: a throwaway project and a scripted agent."""

import json
from pathlib import Path

import pytest

from epicrun.agents.claude import Invocation, InvocationOutcome
from epicrun.lib.config import RunOptions, load_run_config
from epicrun.runner.context import EpicContext


def agent_json(status="COMPLETE", **fields) -> str:
    """Agent output ending in a structured result block."""
    fields["status"] = status
    return f"Done.\n```json\n{json.dumps(fields)}\n```\n"


PASSING = agent_json()


class FakeInvoker:
    """Stands in for AgentInvoker.

    responses maps an invocation label ("dev", "code_review-fix-1") to an
    output, an exception, or a list of them consumed in order (the last one
    repeats). Fix invocations fall back to the "fix" key.
    """

    def __init__(self, responses=None, default=PASSING):
        self.responses = {k: list(v) if isinstance(v, list) else [v] for k, v in (responses or {}).items()}
        self.default = default
        self.calls = []

    def _next(self, label):
        key = label
        if key not in self.responses and "-fix-" in label:
            key = "fix"
        queue = self.responses.get(key)
        if not queue:
            return self.default
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def invoke_with_retry(self, prompt, timeout, *, phase="agent", subject=""):
        self.calls.append((subject, phase, prompt))
        response = self._next(phase)
        if isinstance(response, Exception):
            raise response
        return Invocation(output=response, outcome=InvocationOutcome.OK, exit_code=0, elapsed_seconds=0.1)

    def labels(self, subject=None):
        return [phase for s, phase, _ in self.calls if subject is None or s == subject]


@pytest.fixture
def project(tmp_path) -> Path:
    (tmp_path / "docs" / "epics").mkdir(parents=True)
    (tmp_path / "docs" / "stories").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def config(project):
    return load_run_config(project, env={"NOTIFICATIONS": "false"})


def write_story(config, name: str, body: str = "", status: str = "ready-for-dev") -> Path:
    path = config.stories_dir / f"{name}.md"
    path.write_text(f"# {name}\n\nStatus: {status}\n\n{body}")
    return path


def write_epic(config, epic_id: str, title: str = "Accounts", body: str = "") -> Path:
    path = config.epics_dir / f"epic-{epic_id}.md"
    path.write_text(f"# Epic {epic_id}: {title}\n\n{body}")
    return path


def make_ctx(config, invoker=None, epic_id="3", **options) -> EpicContext:
    options.setdefault("no_commit", True)
    options.setdefault("run_regression", False)
    options.setdefault("run_static_analysis", False)
    run_dir = config.state_dir / "runs" / f"test_epic-{epic_id}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return EpicContext(
        run_id=f"test_epic-{epic_id}",
        run_dir=run_dir,
        epic_id=epic_id,
        config=config,
        options=RunOptions(**options),
        invoker=invoker or FakeInvoker(),
    )
