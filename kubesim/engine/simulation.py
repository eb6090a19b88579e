"""Tick driver.

One tick clones the current snapshot once and runs every controller over
that working copy in a fixed order, then the scenario hook, then goal
evaluation, and finally advances the tick counter. Commands are applied
between ticks and only touch the store; nothing reconciles until the next
tick.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field

from kubesim.commands.interpreter import CommandResult, apply_command
from kubesim.commands.parser import Command, parse_command
from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.controllers.daemonset import DaemonSetController
from kubesim.controllers.deployment import DeploymentController
from kubesim.controllers.endpoints import EndpointsController
from kubesim.controllers.garbage import GarbageCollector
from kubesim.controllers.hpa import HPAController
from kubesim.controllers.job import CronJobController, JobController
from kubesim.controllers.kubelet import Kubelet
from kubesim.controllers.nodelifecycle import NodeLifecycleController
from kubesim.controllers.replicaset import ReplicaSetController
from kubesim.controllers.scheduler import Scheduler
from kubesim.controllers.statefulset import StatefulSetController
from kubesim.controllers.storage import VolumeController
from kubesim.engine.goals import GoalEvaluator, GoalProgress
from kubesim.engine.scenario import Scenario
from kubesim.errors import CommandParseError
from kubesim.models.config import KubesimConfig
from kubesim.models.events import Mutation, SimEvent
from kubesim.models.resources import PodPhase
from kubesim.observability.logging import get_logger, tick_context
from kubesim.observability.metrics import commands_total, events_total, pods, tick_duration_seconds, ticks_total
from kubesim.store.cluster import ClusterState

_logger = get_logger("simulation")


def default_pipeline() -> list[Controller]:
    """Controllers in tick order."""
    return [
        VolumeController(),
        Scheduler(),
        Kubelet(),
        ReplicaSetController(),
        DeploymentController(),
        StatefulSetController(),
        DaemonSetController(),
        JobController(),
        CronJobController(),
        HPAController(),
        NodeLifecycleController(),
        GarbageCollector(),
        EndpointsController(),
    ]


@dataclass
class TickResult:
    """Outcome of one tick. ``tick`` is the number of the tick that just ran."""

    tick: int
    state: ClusterState
    events: list[SimEvent] = field(default_factory=list)
    mutations: list[Mutation] = field(default_factory=list)
    goals: GoalProgress = field(default_factory=lambda: GoalProgress(completed=(), done=False))

    @property
    def complete(self) -> bool:
        return self.goals.done

    @property
    def converged(self) -> bool:
        """Nothing changed: no controller mutated an object and no event fired."""
        return not self.events and not self.mutations


class Simulation:
    """Owns the current cluster snapshot and advances it tick by tick."""

    def __init__(
        self,
        scenario: Scenario | None = None,
        config: KubesimConfig | None = None,
        state: ClusterState | None = None,
    ) -> None:
        self.scenario = scenario
        self.config = config or KubesimConfig()
        if state is None:
            state = scenario.initial_state() if scenario is not None else ClusterState()
        self.state = state
        rules = dict(scenario.pod_failure_rules) if scenario is not None else {}
        self._ctx = ReconcileContext(config=self.config, failure_rules=rules)
        self._pipeline = default_pipeline()
        self._goals = GoalEvaluator(scenario)

    @property
    def goals(self) -> GoalProgress:
        return self._goals.progress

    @property
    def complete(self) -> bool:
        return self._goals.progress.done

    # -----------------------------------------------------------------------
    # Ticks
    # -----------------------------------------------------------------------

    def tick(self) -> TickResult:
        started = time.perf_counter()
        state = self.state.clone()
        first_event = len(state.events)
        mutations: list[Mutation] = []

        with tick_context(self._scenario_name, state.tick):
            for controller in self._pipeline:
                result = controller.run(state, self._ctx, in_place=True)
                state = result.state
                mutations.extend(result.mutations)

        if self.scenario is not None:
            hooked = self.scenario.after_tick(state.tick, state.clone())
            if hooked is not None:
                state = hooked

        progress = self._goals.evaluate(state)
        ran = state.tick
        state.tick += 1
        self.state = state

        events = state.events[first_event:]
        self._record_metrics(state, events, time.perf_counter() - started)
        _logger.debug("tick_complete", tick=ran, events=len(events), mutations=len(mutations))
        return TickResult(tick=ran, state=state, events=events, mutations=mutations, goals=progress)

    def run(self, max_ticks: int | None = None) -> list[TickResult]:
        """Tick until every goal is reached or ``max_ticks`` ticks have run."""
        budget = max_ticks if max_ticks is not None else self.config.engine.max_ticks
        results: list[TickResult] = []
        for _ in range(budget):
            result = self.tick()
            results.append(result)
            if result.complete:
                _logger.info("scenario_complete", scenario=self._scenario_name, tick=result.tick)
                break
        return results

    @property
    def _scenario_name(self) -> str:
        return self.scenario.name if self.scenario is not None else ""

    @staticmethod
    def _record_metrics(state: ClusterState, events: list[SimEvent], elapsed: float) -> None:
        ticks_total.inc()
        tick_duration_seconds.observe(elapsed)
        for event in events:
            events_total.labels(type=event.type.value, reason=event.reason).inc()
        phases = Counter(p.status.phase for p in state.pods)
        for phase in PodPhase:
            pods.labels(phase=phase.value).set(phases.get(phase, 0))

    # -----------------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------------

    def apply(self, command: Command) -> CommandResult:
        """Apply a parsed command to the current snapshot."""
        if command.kind == "apply" and not command.manifest and self.scenario is not None:
            command = command.with_manifest(self.scenario.manifest_template or "")
        result = apply_command(command, self.state)
        self.state = result.state
        return result

    def execute(self, text: str) -> CommandResult:
        """Parse and apply one command line; parse errors become error results."""
        try:
            command = parse_command(text)
        except CommandParseError as exc:
            commands_total.labels(kind="invalid", outcome="error").inc()
            _logger.info("command_rejected", text=text, error=str(exc))
            return CommandResult(state=self.state, output=f"Error: {exc}", ok=False)
        return self.apply(command)
