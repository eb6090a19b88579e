"""Goal evaluation: latched, sequential progress through a scenario's goals."""

from __future__ import annotations

from dataclasses import dataclass

from kubesim.engine.scenario import Scenario
from kubesim.observability.logging import get_logger
from kubesim.observability.metrics import goals_completed
from kubesim.store.cluster import ClusterState

_logger = get_logger("goal_evaluator")


@dataclass(frozen=True)
class GoalProgress:
    completed: tuple[bool, ...]
    done: bool


class GoalEvaluator:
    """Tracks which goals have been reached.

    A goal latches the first time its check passes and stays reached even if
    the cluster later drifts. Goals are checked in order: a goal is only
    looked at once every goal before it has latched. Scenarios without
    granular goals fall back to their ``goal_check``.
    """

    def __init__(self, scenario: Scenario | None) -> None:
        self._scenario = scenario
        count = len(scenario.goals) if scenario is not None else 0
        self._latched = [False] * count
        self._done = False

    @property
    def progress(self) -> GoalProgress:
        return GoalProgress(completed=tuple(self._latched), done=self._done)

    def evaluate(self, state: ClusterState) -> GoalProgress:
        scenario = self._scenario
        if scenario is None:
            return self.progress

        if scenario.goals:
            for i, goal in enumerate(scenario.goals):
                if self._latched[i]:
                    continue
                if not goal.check(state):
                    break
                self._latched[i] = True
                _logger.info("goal_reached", scenario=scenario.name, index=i, goal=goal.description)
            self._done = all(self._latched)
        elif not self._done and scenario.goal_check(state):
            self._done = True

        goals_completed.set(sum(self._latched))
        if self._done:
            _logger.debug("scenario_complete", scenario=scenario.name)
        return self.progress
