"""The entity store: one immutable-by-convention snapshot of the cluster.

ClusterState is passed through the tick pipeline as a value. A tick clones
it once and its controllers mutate the clone, so a caller holding an older
snapshot never observes a change.
"""

from __future__ import annotations

import copy
import hashlib
import json
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from typing import Any

from kubesim.models.events import EventType, SimEvent
from kubesim.models.resources import (
    DEFAULT_NAMESPACE,
    POD_TEMPLATE_HASH_LABEL,
    ConfigMap,
    CronJob,
    DaemonSet,
    Deployment,
    HorizontalPodAutoscaler,
    Ingress,
    Job,
    Namespace,
    Node,
    ObjectMeta,
    OwnerReference,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    PodTemplate,
    ReplicaSet,
    Secret,
    Service,
    StatefulSet,
    StorageClass,
)

# Lower-case alphanumerics without vowels, as used for generated names.
_NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"

KIND_COLLECTIONS: dict[str, str] = {
    "Pod": "pods",
    "ReplicaSet": "replica_sets",
    "Deployment": "deployments",
    "DaemonSet": "daemon_sets",
    "StatefulSet": "stateful_sets",
    "Job": "jobs",
    "CronJob": "cron_jobs",
    "HorizontalPodAutoscaler": "hpas",
    "Node": "nodes",
    "Namespace": "namespaces",
    "ConfigMap": "config_maps",
    "Secret": "secrets",
    "Service": "services",
    "Ingress": "ingresses",
    "StorageClass": "storage_classes",
    "PersistentVolume": "persistent_volumes",
    "PersistentVolumeClaim": "persistent_volume_claims",
}

CLUSTER_SCOPED_KINDS = frozenset({"Node", "Namespace", "StorageClass", "PersistentVolume"})


def labels_match(selector: dict[str, str], labels: dict[str, str]) -> bool:
    """AND over every selector key; extra labels are ignored.

    An empty selector selects nothing, so a malformed workload can never
    adopt every pod in its namespace.
    """
    if not selector:
        return False
    return all(labels.get(key) == value for key, value in selector.items())


def template_hash(template: PodTemplate) -> str:
    """Stable 10-character digest of a pod template."""
    payload = asdict(template)
    payload["labels"] = {k: v for k, v in template.labels.items() if k != POD_TEMPLATE_HASH_LABEL}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:10]


def _encode(digest: bytes, length: int) -> str:
    return "".join(_NAME_ALPHABET[b % len(_NAME_ALPHABET)] for b in digest[:length])


@dataclass
class ClusterState:
    tick: int = 0
    clock: int = 0
    pods: list[Pod] = field(default_factory=list)
    replica_sets: list[ReplicaSet] = field(default_factory=list)
    deployments: list[Deployment] = field(default_factory=list)
    daemon_sets: list[DaemonSet] = field(default_factory=list)
    stateful_sets: list[StatefulSet] = field(default_factory=list)
    jobs: list[Job] = field(default_factory=list)
    cron_jobs: list[CronJob] = field(default_factory=list)
    hpas: list[HorizontalPodAutoscaler] = field(default_factory=list)
    nodes: list[Node] = field(default_factory=list)
    namespaces: list[Namespace] = field(default_factory=list)
    config_maps: list[ConfigMap] = field(default_factory=list)
    secrets: list[Secret] = field(default_factory=list)
    services: list[Service] = field(default_factory=list)
    ingresses: list[Ingress] = field(default_factory=list)
    storage_classes: list[StorageClass] = field(default_factory=list)
    persistent_volumes: list[PersistentVolume] = field(default_factory=list)
    persistent_volume_claims: list[PersistentVolumeClaim] = field(default_factory=list)
    events: list[SimEvent] = field(default_factory=list)
    commands_used: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not any(ns.metadata.name == DEFAULT_NAMESPACE for ns in self.namespaces):
            self.namespaces.insert(0, Namespace(metadata=ObjectMeta(name=DEFAULT_NAMESPACE, uid="ns-default")))

    def clone(self) -> ClusterState:
        return copy.deepcopy(self)

    # -----------------------------------------------------------------------
    # Identity
    # -----------------------------------------------------------------------

    def next_timestamp(self) -> int:
        self.clock += 1
        return self.clock

    def new_meta(
        self,
        kind: str,
        name: str,
        namespace: str = DEFAULT_NAMESPACE,
        labels: dict[str, str] | None = None,
        owner: Any = None,
    ) -> ObjectMeta:
        """Allocate metadata with a deterministic UID and creation timestamp.

        ``owner`` is any entity; only its kind, name and uid are recorded.
        """
        ts = self.next_timestamp()
        digest = hashlib.sha256(f"{kind}/{namespace}/{name}/{ts}".encode()).hexdigest()
        owner_ref = None
        if owner is not None:
            owner_ref = OwnerReference(kind=owner.kind, name=owner.metadata.name, uid=owner.metadata.uid)
        return ObjectMeta(
            name=name,
            uid=f"{digest[:8]}-{digest[8:12]}",
            namespace=namespace,
            labels=dict(labels or {}),
            owner_reference=owner_ref,
            creation_timestamp=ts,
        )

    def generate_name(self, kind: str, base: str, namespace: str = DEFAULT_NAMESPACE) -> str:
        """Return ``base-xxxxx`` unique among objects of ``kind``."""
        attempt = 0
        while True:
            seed = f"{kind}/{namespace}/{base}/{self.clock}/{attempt}".encode()
            name = f"{base}-{_encode(hashlib.sha256(seed).digest(), 5)}"
            if self.find(kind, name, namespace) is None:
                return name
            attempt += 1

    # -----------------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------------

    def collection(self, kind: str) -> list[Any]:
        try:
            attr = KIND_COLLECTIONS[kind]
        except KeyError:
            raise KeyError(f"unknown kind: {kind}") from None
        return getattr(self, attr)  # type: ignore[no-any-return]

    def find(self, kind: str, name: str, namespace: str = DEFAULT_NAMESPACE) -> Any | None:
        for obj in self.collection(kind):
            if obj.metadata.name != name:
                continue
            if kind in CLUSTER_SCOPED_KINDS or obj.metadata.namespace == namespace:
                return obj
        return None

    def find_node(self, name: str) -> Node | None:
        for node in self.nodes:
            if node.metadata.name == name:
                return node
        return None

    def matching_pods(self, selector: dict[str, str], namespace: str = DEFAULT_NAMESPACE) -> list[Pod]:
        """Every pod in ``namespace`` selected by ``selector``, terminating or not."""
        return [p for p in self.pods if p.metadata.namespace == namespace and labels_match(selector, p.metadata.labels)]

    def live_matching_pods(self, selector: dict[str, str], namespace: str = DEFAULT_NAMESPACE) -> list[Pod]:
        return [p for p in self.matching_pods(selector, namespace) if p.live]

    def namespace_exists(self, name: str) -> bool:
        return any(ns.metadata.name == name and not ns.metadata.terminating for ns in self.namespaces)

    def all_objects(self) -> Iterator[Any]:
        for attr in KIND_COLLECTIONS.values():
            yield from getattr(self, attr)

    # -----------------------------------------------------------------------
    # Mutation helpers
    # -----------------------------------------------------------------------

    def add(self, obj: Any) -> None:
        self.collection(obj.kind).append(obj)

    def remove(self, obj: Any) -> None:
        """Drop an object from the store immediately."""
        items = self.collection(obj.kind)
        items[:] = [o for o in items if o.metadata.uid != obj.metadata.uid]

    def mark_deleted(self, obj: Any) -> None:
        """Soft-delete: the object stops counting and the garbage collector removes it."""
        if obj.metadata.deletion_timestamp is None:
            obj.metadata.deletion_timestamp = self.tick

    def record_event(
        self,
        type_: EventType,
        reason: str,
        object_kind: str,
        object_name: str,
        message: str,
    ) -> SimEvent:
        event = SimEvent(
            timestamp=self.next_timestamp(),
            tick=self.tick,
            type=type_,
            reason=reason,
            object_kind=object_kind,
            object_name=object_name,
            message=message,
        )
        self.events.append(event)
        return event

    def refresh_node_allocations(self) -> None:
        """Recompute ``allocated_pods`` from live pods bound to each node."""
        counts: dict[str, int] = {}
        for pod in self.pods:
            if pod.spec.node_name and pod.live:
                counts[pod.spec.node_name] = counts.get(pod.spec.node_name, 0) + 1
        for node in self.nodes:
            node.status.allocated_pods = counts.get(node.metadata.name, 0)

    def to_dict(self) -> dict[str, Any]:
        """Plain-data view used by JSON output and equality checks."""
        return asdict(self)
