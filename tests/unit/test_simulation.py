"""Tests for kubesim.engine.simulation: the tick driver and command entry points."""

from __future__ import annotations

import pytest

from kubesim.controllers.deployment import DeploymentController
from kubesim.engine.simulation import Simulation, default_pipeline
from kubesim.models.config import EngineConfig, KubesimConfig
from kubesim.models.resources import PodPhase
from kubesim.scenarios import get_scenario
from kubesim.scenarios.autoscaling import KARPENTER_LABEL
from kubesim.store.builders import build_deployment
from kubesim.store.cluster import ClusterState

_WEB = {"app": "web"}


def _web_pods(sim: Simulation, phase: PodPhase) -> list[str]:
    return [p.metadata.name for p in sim.state.live_matching_pods(_WEB) if p.status.phase == phase]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestPipeline:
    def test_controller_order(self) -> None:
        assert [c.name for c in default_pipeline()] == [
            "volume_controller",
            "scheduler",
            "kubelet",
            "replicaset_controller",
            "deployment_controller",
            "statefulset_controller",
            "daemonset_controller",
            "job_controller",
            "cronjob_controller",
            "hpa_controller",
            "node_lifecycle_controller",
            "garbage_collector",
            "endpoints_controller",
        ]


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------


class TestTick:
    def test_tick_advances_counter(self) -> None:
        sim = Simulation()
        result = sim.tick()
        assert result.tick == 0
        assert sim.state.tick == 1

    def test_state_cloned_once_per_tick(self, monkeypatch: pytest.MonkeyPatch) -> None:
        state = ClusterState()
        state.add(build_deployment(state, "web", "nginx", 2))
        sim = Simulation(state=state)
        calls = []
        original = ClusterState.clone

        def counting_clone(self: ClusterState) -> ClusterState:
            calls.append(self.tick)
            return original(self)

        monkeypatch.setattr(ClusterState, "clone", counting_clone)
        sim.tick()
        assert calls == [0]

    def test_in_place_run_returns_the_same_state(self) -> None:
        state = ClusterState()
        state.add(build_deployment(state, "web", "nginx", 2))
        result = DeploymentController().run(state, in_place=True)
        assert result.state is state
        assert len(state.replica_sets) == 1

    def test_default_run_leaves_input_untouched(self) -> None:
        state = ClusterState()
        state.add(build_deployment(state, "web", "nginx", 2))
        result = DeploymentController().run(state)
        assert result.state is not state
        assert state.replica_sets == []

    def test_previous_snapshot_not_mutated(self) -> None:
        state = ClusterState()
        state.add(build_deployment(state, "web", "nginx", 2))
        sim = Simulation(state=state)
        sim.tick()
        assert state.replica_sets == []
        assert state.tick == 0

    def test_empty_cluster_is_converged(self) -> None:
        assert Simulation().tick().converged

    def test_node_less_deployment_runs(self) -> None:
        state = ClusterState()
        state.add(build_deployment(state, "web", "nginx", 2))
        sim = Simulation(state=state)
        for _ in range(4):
            sim.tick()
        assert len(_web_pods(sim, PodPhase.RUNNING)) == 2

    def test_reaches_quiescence(self) -> None:
        state = ClusterState()
        state.add(build_deployment(state, "web", "nginx", 2))
        sim = Simulation(state=state)
        assert any(sim.tick().converged for _ in range(10))

    def test_no_scenario_never_completes(self) -> None:
        sim = Simulation(config=KubesimConfig(engine=EngineConfig(max_ticks=3)))
        results = sim.run()
        assert len(results) == 3
        assert not sim.complete


# ---------------------------------------------------------------------------
# End-to-end: node autoscaling
# ---------------------------------------------------------------------------


class TestClusterAutoscalingRun:
    def _sim(self) -> Simulation:
        sim = Simulation(get_scenario("cluster-autoscaling"))
        result = sim.execute("kubectl scale deployment web --replicas=5")
        assert result.ok
        return sim

    def test_completes_in_four_ticks(self) -> None:
        sim = self._sim()
        results = sim.run(20)
        assert len(results) == 4
        assert results[-1].complete
        assert sim.complete

    def test_all_pods_running_none_pending(self) -> None:
        sim = self._sim()
        original = {p.metadata.name for p in sim.state.pods}
        sim.run(20)
        running = _web_pods(sim, PodPhase.RUNNING)
        assert len(running) == 5
        assert _web_pods(sim, PodPhase.PENDING) == []
        assert len(set(running) - original) == 3

    def test_node_provisioned_for_unschedulable_pod(self) -> None:
        sim = self._sim()
        results = sim.run(20)
        node = sim.state.find_node("karpenter-node-3")
        assert node is not None
        assert node.metadata.labels[KARPENTER_LABEL] == "true"
        reasons = [e.reason for r in results for e in r.events]
        assert "FailedScheduling" in reasons
        assert reasons.count("NodeProvisioned") == 1

    def test_goals_latch_in_order(self) -> None:
        sim = self._sim()
        progress = [r.goals.completed for r in sim.run(20)]
        assert progress[0] == (True, False, False)
        assert progress[-1] == (True, True, True)

    def test_identical_runs_give_identical_states(self) -> None:
        first, second = self._sim(), self._sim()
        first.run(20)
        second.run(20)
        assert first.state.to_dict() == second.state.to_dict()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    def test_parse_error_result(self) -> None:
        sim = Simulation()
        result = sim.execute("kubectl frobnicate")
        assert not result.ok
        assert result.output.startswith("Error: Unknown command")
        assert sim.state.commands_used == []

    def test_command_changes_state_without_reconciling(self) -> None:
        sim = Simulation()
        sim.execute("kubectl create deployment web --image=nginx --replicas=2")
        assert len(sim.state.deployments) == 1
        assert sim.state.replica_sets == []

    def test_failed_command_keeps_tag(self) -> None:
        sim = Simulation()
        result = sim.execute("kubectl scale deployment web --replicas=2")
        assert not result.ok
        assert sim.state.commands_used == ["scale"]

    def test_apply_without_file_uses_scenario_template(self) -> None:
        sim = Simulation(get_scenario("hpa"))
        result = sim.execute("kubectl apply -f -")
        assert result.ok
        assert result.output == "horizontalpodautoscaler.autoscaling/web created"
        assert sim.state.hpas[0].spec.max_replicas == 8

    def test_apply_without_template_is_an_error(self) -> None:
        sim = Simulation(get_scenario("replicasets"))
        assert not sim.execute("kubectl apply -f -").ok
