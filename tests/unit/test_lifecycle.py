"""Tests for garbage collection, node lifecycle and endpoints controllers."""

from __future__ import annotations

from kubesim.controllers.base import ReconcileContext
from kubesim.controllers.endpoints import EndpointsController, pod_ip
from kubesim.controllers.garbage import GarbageCollector
from kubesim.controllers.nodelifecycle import NodeLifecycleController
from kubesim.engine.simulation import Simulation
from kubesim.models.config import EngineConfig, KubesimConfig
from kubesim.models.events import EventType
from kubesim.models.resources import (
    ConfigMap,
    Job,
    JobPhase,
    JobSpec,
    PodPhase,
    PodReason,
    PodSpec,
    PodTemplate,
    RestartPolicy,
    Service,
    ServiceSpec,
)
from kubesim.scenarios.fixtures import seed_deployment, seed_nodes
from kubesim.store.cluster import ClusterState

_WEB = {"app": "web"}


def _cluster(replicas: int = 2) -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 2)
    seed_deployment(state, "web", "web-app:1.0", replicas)
    return state


# ---------------------------------------------------------------------------
# Garbage collector
# ---------------------------------------------------------------------------


class TestGarbageCollector:
    def test_terminating_pod_removed(self) -> None:
        state = _cluster()
        state.mark_deleted(state.pods[0])
        out = GarbageCollector().run(state).state
        assert len(out.pods) == 1

    def test_grace_ticks_delay_removal(self) -> None:
        state = _cluster()
        state.mark_deleted(state.pods[0])
        ctx = ReconcileContext(config=KubesimConfig(engine=EngineConfig(termination_grace_ticks=2)))
        assert len(GarbageCollector().run(state, ctx).state.pods) == 2
        state.tick = 2
        assert len(GarbageCollector().run(state, ctx).state.pods) == 1

    def test_replica_set_waits_for_its_pods(self) -> None:
        state = _cluster()
        state.mark_deleted(state.replica_sets[0])
        out = GarbageCollector().run(state).state
        assert len(out.replica_sets) == 1

        for pod in out.pods:
            out.mark_deleted(pod)
        out = GarbageCollector().run(out).state
        assert out.replica_sets == []
        assert out.pods == []

    def test_deployment_waits_for_replica_sets(self) -> None:
        state = _cluster()
        state.mark_deleted(state.deployments[0])
        assert len(GarbageCollector().run(state).state.deployments) == 1

    def test_config_objects_removed_at_once(self) -> None:
        state = ClusterState()
        cm = ConfigMap(metadata=state.new_meta("ConfigMap", "cfg"))
        state.add(cm)
        state.mark_deleted(cm)
        assert GarbageCollector().run(state).state.config_maps == []

    def test_allocations_refreshed(self) -> None:
        state = _cluster()
        bound = state.pods[0].spec.node_name
        state.mark_deleted(state.pods[0])
        out = GarbageCollector().run(state).state
        node = out.find_node(bound)
        assert node is not None
        assert node.status.allocated_pods == 0


# ---------------------------------------------------------------------------
# Node lifecycle
# ---------------------------------------------------------------------------


class TestNodeLifecycle:
    def test_pods_evicted_from_not_ready_node(self) -> None:
        state = _cluster()
        failed = state.nodes[0]
        failed.set_ready(False)
        result = NodeLifecycleController().run(state)
        evicted = [p for p in result.state.pods if p.spec.node_name == failed.metadata.name]
        assert evicted
        assert all(p.status.phase == PodPhase.FAILED for p in evicted)
        assert all(p.status.reason == PodReason.NODE_NOT_READY for p in evicted)
        assert all(p.metadata.terminating for p in evicted)
        assert all(e.type == EventType.WARNING for e in result.events)

    def test_pods_on_removed_node_evicted(self) -> None:
        state = _cluster()
        gone = state.nodes.pop(0).metadata.name
        out = NodeLifecycleController().run(state).state
        assert all(p.metadata.terminating for p in out.pods if p.spec.node_name == gone)

    def test_job_pod_kept_for_accounting(self) -> None:
        state = _cluster()
        pod = state.pods[0]
        pod.spec.restart_policy = RestartPolicy.NEVER
        node = state.find_node(pod.spec.node_name or "")
        assert node is not None
        node.set_ready(False)
        out = NodeLifecycleController().run(state).state
        evicted = next(p for p in out.pods if p.metadata.uid == pod.metadata.uid)
        assert evicted.status.phase == PodPhase.FAILED
        assert evicted.status.reason == PodReason.NODE_NOT_READY
        assert not evicted.metadata.terminating

    def test_healthy_cluster_untouched(self) -> None:
        result = NodeLifecycleController().run(_cluster())
        assert result.events == []
        assert result.mutations == []


def _job_cluster(backoff_limit: int) -> Simulation:
    state = ClusterState()
    seed_nodes(state, 1)
    spec = JobSpec(
        template=PodTemplate(spec=PodSpec(image="busybox")),
        backoff_limit=backoff_limit,
        completion_ticks=5,
    )
    state.add(Job(metadata=state.new_meta("Job", "batch"), spec=spec))
    return Simulation(state=state)


def _flap_node(sim: Simulation) -> None:
    """Run the first pod, then take its node down for one tick."""
    sim.tick()
    sim.tick()
    sim.state.nodes[0].set_ready(False)
    sim.tick()
    sim.state.nodes[0].set_ready(True)


class TestEvictedJobPods:
    def test_eviction_counts_as_a_failed_attempt(self) -> None:
        sim = _job_cluster(backoff_limit=6)
        _flap_node(sim)
        sim.run(12)
        job = sim.state.jobs[0]
        created = [e for e in sim.state.events if e.reason == "SuccessfulCreate" and e.object_name == "batch"]
        assert job.status.phase == JobPhase.COMPLETE
        assert (job.status.succeeded, job.status.failed) == (1, 1)
        assert len(created) == job.status.succeeded + job.status.failed + job.status.active

    def test_eviction_respects_backoff_limit(self) -> None:
        sim = _job_cluster(backoff_limit=1)
        _flap_node(sim)
        sim.tick()
        job = sim.state.jobs[0]
        assert job.status.phase == JobPhase.FAILED
        assert job.status.failed == 1
        assert len(sim.state.pods) == 1


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


def _with_service(state: ClusterState) -> ClusterState:
    state.add(Service(metadata=state.new_meta("Service", "web"), spec=ServiceSpec(selector=dict(_WEB))))
    return state


class TestEndpoints:
    def test_ready_pods_become_endpoints(self) -> None:
        state = _with_service(_cluster())
        result = EndpointsController().run(state)
        svc = result.state.services[0]
        assert svc.status.endpoints == sorted(pod_ip(p) for p in state.pods)
        assert [e.reason for e in result.events] == ["EndpointsAdded"]

    def test_not_ready_pod_removed(self) -> None:
        state = EndpointsController().run(_with_service(_cluster())).state
        state.pods[0].status.ready = False
        result = EndpointsController().run(state)
        assert len(result.state.services[0].status.endpoints) == 1
        assert [e.reason for e in result.events] == ["EndpointsRemoved"]

    def test_unchanged_endpoints_are_quiet(self) -> None:
        state = EndpointsController().run(_with_service(_cluster())).state
        assert EndpointsController().run(state).mutations == []

    def test_pod_ip_is_deterministic(self) -> None:
        state = _cluster()
        pod = state.pods[0]
        assert pod_ip(pod) == pod_ip(pod)
        assert pod_ip(pod).startswith("10.244.")
