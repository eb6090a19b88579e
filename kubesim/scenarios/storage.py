"""Stateful scenarios: StatefulSets with per-pod persistent volume claims."""

from __future__ import annotations

from kubesim.engine.scenario import Goal, SimpleScenario
from kubesim.models.resources import ReclaimPolicy, StorageClass
from kubesim.scenarios.fixtures import running_pods, seed_nodes
from kubesim.store.cluster import ClusterState

_DB = {"app": "db"}

DB_MANIFEST = """\
apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: db
spec:
  serviceName: db
  replicas: 3
  selector:
    matchLabels:
      app: db
  template:
    metadata:
      labels:
        app: db
    spec:
      containers:
        - name: postgres
          image: postgres:16
  volumeClaimTemplates:
    - metadata:
        name: data
      spec:
        storageClassName: standard
        resources:
          requests:
            storage: 1Gi
"""


def _statefulsets_state() -> ClusterState:
    state = ClusterState()
    seed_nodes(state, 3)
    state.add(
        StorageClass(metadata=state.new_meta("StorageClass", "standard", ""), reclaim_policy=ReclaimPolicy.DELETE)
    )
    return state


def _running_names(state: ClusterState) -> list[str]:
    return sorted(p.metadata.name for p in running_pods(state, _DB))


def _claims_bound(state: ClusterState) -> bool:
    claims = [state.find("PersistentVolumeClaim", f"data-db-{i}") for i in range(3)]
    return all(c is not None and c.bound for c in claims)


def _scaled_to_one(state: ClusterState) -> bool:
    sts = state.find("StatefulSet", "db")
    if sts is None or sts.spec.replicas != 1:
        return False
    if [p.metadata.name for p in state.live_matching_pods(_DB)] != ["db-0"]:
        return False
    kept = state.find("PersistentVolumeClaim", "data-db-2")
    return kept is not None and kept.bound


def statefulsets() -> SimpleScenario:
    return SimpleScenario(
        name="statefulsets",
        description=(
            'Run the "db" StatefulSet: three ordered pods, each with its own volume. '
            "Then scale it down and check that the volumes stay."
        ),
        build=_statefulsets_state,
        manifest_template=DB_MANIFEST,
        goals=[
            Goal('Create the "db" StatefulSet with "kubectl apply"', lambda s: s.find("StatefulSet", "db") is not None),
            Goal("Pods db-0, db-1 and db-2 Running", lambda s: _running_names(s) == ["db-0", "db-1", "db-2"]),
            Goal("Every pod's data claim is Bound", _claims_bound),
            Goal('Scale "db" down to 1 replica; the claim of db-2 is kept', _scaled_to_one),
        ],
    )
