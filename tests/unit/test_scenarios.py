"""Tests for the built-in scenarios: registry lookups and full walkthroughs."""

from __future__ import annotations

import pytest

from kubesim.engine.scenario import Scenario
from kubesim.engine.simulation import Simulation
from kubesim.errors import ScenarioNotFoundError
from kubesim.models.resources import PodPhase, PodReason
from kubesim.scenarios import SCENARIOS, get_scenario, list_scenarios
from kubesim.scenarios.autoscaling import cpu_load, provision_nodes
from kubesim.scenarios.fixtures import seed_deployment, seed_nodes
from kubesim.store.cluster import ClusterState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _play(name: str, *commands: str, ticks: int = 40) -> Simulation:
    sim = Simulation(get_scenario(name))
    for text in commands:
        result = sim.execute(text)
        assert result.ok, result.output
    sim.run(ticks)
    return sim


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_list_is_sorted(self) -> None:
        names = [s.name for s in list_scenarios()]
        assert names == sorted(SCENARIOS)

    def test_unknown_scenario(self) -> None:
        with pytest.raises(ScenarioNotFoundError, match="Unknown scenario 'nope'") as info:
            get_scenario("nope")
        assert "hpa" in info.value.available

    @pytest.mark.parametrize("name", sorted(SCENARIOS))
    def test_every_scenario_is_well_formed(self, name: str) -> None:
        scenario = get_scenario(name)
        assert isinstance(scenario, Scenario)
        assert scenario.name == name
        assert scenario.description
        assert scenario.goals

    @pytest.mark.parametrize("name", sorted(SCENARIOS))
    def test_initial_state_is_deterministic(self, name: str) -> None:
        assert get_scenario(name).initial_state().to_dict() == get_scenario(name).initial_state().to_dict()

    @pytest.mark.parametrize("name", sorted(SCENARIOS))
    def test_nothing_completes_without_the_user(self, name: str) -> None:
        sim = Simulation(get_scenario(name))
        sim.run(10)
        assert not sim.complete


# ---------------------------------------------------------------------------
# Walkthroughs
# ---------------------------------------------------------------------------


class TestWalkthroughs:
    def test_cluster_autoscaling(self) -> None:
        assert _play("cluster-autoscaling", "kubectl scale deployment web --replicas=5").complete

    def test_hpa(self) -> None:
        sim = _play("hpa", "kubectl autoscale deployment web --min=2 --max=8 --cpu-percent=50")
        assert sim.complete
        assert sim.state.deployments[0].spec.replicas > 2

    def test_hpa_via_apply_template(self) -> None:
        assert _play("hpa", "kubectl apply -f -").complete

    def test_configmaps(self) -> None:
        sim = _play("configmaps", "kubectl create configmap app-config --from-literal=LOG_LEVEL=info")
        assert sim.complete

    def test_configmaps_pods_stuck_without_config(self) -> None:
        sim = Simulation(get_scenario("configmaps"))
        sim.run(3)
        reasons = {p.status.reason for p in sim.state.pods}
        assert reasons == {PodReason.CREATE_CONTAINER_CONFIG_ERROR}

    def test_daemonsets(self) -> None:
        assert _play("daemonsets", "kubectl create daemonset log-collector --image=fluentd:1.0").complete

    def test_jobs(self) -> None:
        sim = _play("jobs", "kubectl create job data-migration --image=migrate:1.0 --completions=3")
        assert sim.complete
        assert sim.state.jobs[0].status.succeeded >= 3

    def test_rolling_update(self) -> None:
        sim = _play("rolling-update", "kubectl set image deployment/web web=web-app:2.0")
        assert sim.complete
        assert {p.spec.image for p in sim.state.pods if p.live} == {"web-app:2.0"}

    def test_replicaset_adoption(self) -> None:
        sim = _play(
            "replicaset-adoption",
            "kubectl get pods",
            "kubectl run extra --image=nginx:1.0",
            "kubectl label pod extra app=web-app",
        )
        assert sim.complete
        assert len(sim.state.live_matching_pods({"app": "web-app"})) == 2

    def test_replicasets_up_then_down(self) -> None:
        sim = Simulation(get_scenario("replicasets"))
        sim.execute("kubectl scale deployment my-app --replicas=5")
        sim.tick()
        sim.execute("kubectl scale deployment my-app --replicas=2")
        sim.run(20)
        assert sim.complete

    def test_statefulsets(self) -> None:
        sim = _play("statefulsets", "kubectl apply -f -", ticks=8)
        assert not sim.complete
        assert sorted(p.metadata.name for p in sim.state.pods if p.live) == ["db-0", "db-1", "db-2"]
        result = sim.execute("kubectl scale statefulset db --replicas=1")
        assert result.ok, result.output
        sim.run(10)
        assert sim.complete
        assert len(sim.state.persistent_volume_claims) == 3


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


class TestHooks:
    def test_provision_nodes_idle_without_stuck_pods(self) -> None:
        state = get_scenario("cluster-autoscaling").initial_state()
        assert provision_nodes(0, state) is None

    def test_provision_nodes_adds_one_node(self) -> None:
        state = get_scenario("cluster-autoscaling").initial_state()
        stuck = state.pods[0]
        stuck.status.phase = PodPhase.PENDING
        stuck.status.reason = PodReason.UNSCHEDULABLE
        out = provision_nodes(2, state)
        assert out is not None
        assert [n.metadata.name for n in out.nodes][-1] == "karpenter-node-3"
        assert out.events[-1].reason == "NodeProvisioned"

    def test_cpu_load_phases(self) -> None:
        state = get_scenario("hpa").initial_state()
        assert cpu_load(4, state) is None
        out = cpu_load(6, state)
        assert out is not None
        assert {p.status.cpu_usage for p in out.pods} == {30.0}

    def test_seeded_deployment_is_converged(self) -> None:
        state = ClusterState()
        seed_nodes(state, 2)
        seed_deployment(state, "web", "web-app:1.0", 2)
        assert Simulation(state=state).tick().mutations == []
