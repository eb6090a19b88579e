"""Tests for kubesim.controllers.daemonset."""

from __future__ import annotations

from kubesim.controllers.daemonset import DaemonSetController, eligible_nodes
from kubesim.models.resources import (
    DaemonSet,
    DaemonSetSpec,
    Pod,
    PodPhase,
    PodSpec,
    PodTemplate,
    StrategyType,
    Taint,
    Toleration,
)
from kubesim.store.builders import build_node
from kubesim.store.cluster import ClusterState

_SELECTOR = {"app": "log-collector"}


def _state(nodes: int = 3, tolerations: list[Toleration] | None = None) -> ClusterState:
    state = ClusterState()
    for i in range(1, nodes + 1):
        state.nodes.append(build_node(state, f"node-{i}"))
    spec = PodSpec(image="fluentd:1.0", tolerations=list(tolerations or []))
    state.add(
        DaemonSet(
            metadata=state.new_meta("DaemonSet", "log-collector", labels=_SELECTOR),
            spec=DaemonSetSpec(selector=dict(_SELECTOR), template=PodTemplate(labels=dict(_SELECTOR), spec=spec)),
        )
    )
    return state


def _live(state: ClusterState) -> list[Pod]:
    return state.live_matching_pods(_SELECTOR)


def _sync(state: ClusterState) -> ClusterState:
    out = DaemonSetController().run(state).state
    for pod in _live(out):
        pod.status.phase = PodPhase.RUNNING
        pod.status.ready = True
    return out


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------


class TestPlacement:
    def test_one_pod_per_ready_node(self) -> None:
        out = DaemonSetController().run(_state()).state
        pods = _live(out)
        assert sorted(p.spec.node_name for p in pods) == ["node-1", "node-2", "node-3"]
        assert sorted(p.metadata.name for p in pods) == [
            "log-collector-node-1",
            "log-collector-node-2",
            "log-collector-node-3",
        ]

    def test_second_pass_is_idle(self) -> None:
        state = _sync(_state())
        result = DaemonSetController().run(state)
        assert result.mutations == []

    def test_not_ready_node_is_skipped(self) -> None:
        state = _state()
        state.nodes[1].set_ready(False)
        out = DaemonSetController().run(state).state
        assert sorted(p.spec.node_name for p in _live(out)) == ["node-1", "node-3"]

    def test_cordoned_node_still_gets_a_pod(self) -> None:
        state = _state(1)
        state.nodes[0].spec.unschedulable = True
        assert len(_live(DaemonSetController().run(state).state)) == 1

    def test_new_node_gets_a_pod(self) -> None:
        state = _sync(_state(2))
        state.nodes.append(build_node(state, "node-3"))
        out = DaemonSetController().run(state).state
        assert len(_live(out)) == 3

    def test_status_counts(self) -> None:
        state = _sync(_sync(_state()))
        ds = state.daemon_sets[0]
        assert ds.status.desired_number_scheduled == 3
        assert ds.status.current_number_scheduled == 3
        assert ds.status.number_ready == 3


# ---------------------------------------------------------------------------
# Taints
# ---------------------------------------------------------------------------


class TestTaints:
    def test_untolerated_taint_excludes_node(self) -> None:
        state = _state(2)
        state.nodes[0].spec.taints.append(Taint(key="dedicated", value="db", effect="NoSchedule"))
        assert [n.metadata.name for n in eligible_nodes(state.daemon_sets[0], state.nodes)] == ["node-2"]

    def test_tolerated_taint_keeps_node(self) -> None:
        state = _state(2, tolerations=[Toleration(key="dedicated", operator="Exists")])
        state.nodes[0].spec.taints.append(Taint(key="dedicated", value="db", effect="NoSchedule"))
        assert len(eligible_nodes(state.daemon_sets[0], state.nodes)) == 2


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


class TestRemoval:
    def test_pod_removed_from_failed_node(self) -> None:
        state = _sync(_state())
        state.nodes[2].set_ready(False)
        result = DaemonSetController().run(state)
        assert sorted(p.spec.node_name for p in _live(result.state)) == ["node-1", "node-2"]
        assert "NodeNotReady" in [e.reason for e in result.events]

    def test_deleted_daemon_set_removes_pods(self) -> None:
        state = _sync(_state())
        state.mark_deleted(state.daemon_sets[0])
        assert _live(DaemonSetController().run(state).state) == []


# ---------------------------------------------------------------------------
# Rolling update
# ---------------------------------------------------------------------------


class TestRollingUpdate:
    def test_replaces_one_pod_at_a_time(self) -> None:
        state = _sync(_state())
        state.daemon_sets[0].spec.template.spec.image = "fluentd:2.0"
        out = DaemonSetController().run(state).state
        assert len([p for p in out.pods if p.metadata.terminating]) == 1

    def test_all_pods_updated_eventually(self) -> None:
        state = _sync(_state())
        state.daemon_sets[0].spec.template.spec.image = "fluentd:2.0"
        for _ in range(8):
            state = _sync(state)
        assert sorted(p.spec.image for p in _live(state)) == ["fluentd:2.0"] * 3


class TestOnDelete:
    def _updated_template(self) -> ClusterState:
        state = _sync(_state())
        ds = state.daemon_sets[0]
        ds.spec.update_strategy.type = StrategyType.ON_DELETE
        ds.spec.template.spec.image = "fluentd:2.0"
        return state

    def test_template_change_replaces_nothing(self) -> None:
        state = self._updated_template()
        for _ in range(3):
            state = _sync(state)
        assert sorted(p.spec.image for p in _live(state)) == ["fluentd:1.0"] * 3
        assert not any(p.metadata.terminating for p in state.pods)

    def test_deleted_pod_comes_back_updated(self) -> None:
        state = self._updated_template()
        state.mark_deleted(next(p for p in _live(state) if p.spec.node_name == "node-2"))
        state = _sync(state)
        images = {p.spec.node_name: p.spec.image for p in _live(state)}
        assert images == {"node-1": "fluentd:1.0", "node-2": "fluentd:2.0", "node-3": "fluentd:1.0"}
