"""Prefect task wrappers for the story executor.

Invocation retries happen inside the agent invoker, so tasks are not
retried by Prefect. Inputs carry locks and file handles, so caching is off.
"""

from typing import TYPE_CHECKING

from prefect import task
from prefect.cache_policies import NONE

from epicrun.workflow.story import StoryOutcome, run_story

if TYPE_CHECKING:
    from epicrun.lib.stories import Story
    from epicrun.runner.context import EpicContext, RunState
    from epicrun.workflow.phases import PhaseRunner


@task(
    name="story",
    description="Run one story through dev, architecture, review and test quality",
    cache_policy=NONE,
)
def task_run_story(story: "Story", ctx: "EpicContext", state: "RunState",
                   phase_runner: "PhaseRunner | None" = None) -> StoryOutcome:
    return run_story(story, ctx, state, phase_runner)
