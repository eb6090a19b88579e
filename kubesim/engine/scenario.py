"""Scenario capability interface.

A scenario is what a lesson hands the engine: how the cluster starts, an
optional deterministic hook run after the controllers every tick (used to
script external systems such as a node autoscaler), and the goals that
decide completion. Scenarios are injected into the Simulation, never
subclassed from it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from kubesim.models.resources import FailureMode
from kubesim.store.cluster import ClusterState

StateCheck = Callable[[ClusterState], bool]
AfterTickHook = Callable[[int, ClusterState], "ClusterState | None"]


@dataclass(frozen=True)
class Goal:
    """One granular step of a lesson, checked against the cluster snapshot."""

    description: str
    check: StateCheck


@runtime_checkable
class Scenario(Protocol):
    """Minimal interface the simulation needs from a lesson."""

    name: str
    description: str
    goals: list[Goal]
    manifest_template: str | None
    pod_failure_rules: dict[str, FailureMode]

    def initial_state(self) -> ClusterState: ...

    def after_tick(self, tick: int, state: ClusterState) -> ClusterState | None: ...

    def goal_check(self, state: ClusterState) -> bool: ...


@dataclass
class SimpleScenario:
    """Scenario assembled from plain callables.

    ``build`` must return a fresh ClusterState on every call so that two runs
    of the same scenario start from identical stores.
    """

    name: str
    build: Callable[[], ClusterState]
    description: str = ""
    hook: AfterTickHook | None = None
    check: StateCheck | None = None
    goals: list[Goal] = field(default_factory=list)
    manifest_template: str | None = None
    pod_failure_rules: dict[str, FailureMode] = field(default_factory=dict)

    def initial_state(self) -> ClusterState:
        return self.build()

    def after_tick(self, tick: int, state: ClusterState) -> ClusterState | None:
        if self.hook is None:
            return None
        return self.hook(tick, state)

    def goal_check(self, state: ClusterState) -> bool:
        if self.check is not None:
            return self.check(state)
        return bool(self.goals) and all(g.check(state) for g in self.goals)
