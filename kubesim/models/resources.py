"""Cluster entity data structures.

Every object the simulated control plane knows about is a plain, mutable
dataclass. Controllers never touch the live store: they receive a deep copy,
mutate it and hand it back (see kubesim.controllers.base).

Timestamps are logical. ``creation_timestamp`` is drawn from the store's
monotonic clock, so ordering by it is total even for objects created inside
the same tick. ``deletion_timestamp`` is the tick at which an object was
marked terminating.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import ClassVar

DEFAULT_NAMESPACE = "default"
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"
CONTROLLER_REVISION_LABEL = "controller-revision-hash"
JOB_NAME_LABEL = "job-name"
CRONJOB_NAME_LABEL = "cronjob-name"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
STATEFULSET_POD_NAME_LABEL = "statefulset.kubernetes.io/pod-name"


class PodPhase(StrEnum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class PodReason(StrEnum):
    """Pod-level failure taxonomy, surfaced through ``status.reason``."""

    UNSCHEDULABLE = "Unschedulable"
    CREATE_CONTAINER_CONFIG_ERROR = "CreateContainerConfigError"
    IMAGE_PULL_ERROR = "ImagePullError"
    CRASH_LOOP_BACK_OFF = "CrashLoopBackOff"
    OOM_KILLED = "OOMKilled"
    ERROR = "Error"
    COMPLETED = "Completed"
    NODE_NOT_READY = "NodeNotReady"


class FailureMode(StrEnum):
    """Failure classes a scenario can inject into a pod."""

    IMAGE_PULL_ERROR = "ImagePullError"
    CRASH_LOOP_BACK_OFF = "CrashLoopBackOff"
    OOM_KILLED = "OOMKilled"
    ERROR = "Error"


class RestartPolicy(StrEnum):
    ALWAYS = "Always"
    ON_FAILURE = "OnFailure"
    NEVER = "Never"


class StrategyType(StrEnum):
    ROLLING_UPDATE = "RollingUpdate"
    RECREATE = "Recreate"
    ON_DELETE = "OnDelete"


class JobPhase(StrEnum):
    RUNNING = "Running"
    COMPLETE = "Complete"
    FAILED = "Failed"


class ConcurrencyPolicy(StrEnum):
    ALLOW = "Allow"
    FORBID = "Forbid"
    REPLACE = "Replace"


class VolumePhase(StrEnum):
    """Shared by PersistentVolumes (Available/Bound/Released) and claims (Pending/Bound)."""

    PENDING = "Pending"
    AVAILABLE = "Available"
    BOUND = "Bound"
    RELEASED = "Released"


class ReclaimPolicy(StrEnum):
    DELETE = "Delete"
    RETAIN = "Retain"


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


@dataclass
class OwnerReference:
    """Pods are counted by selector alone; Deployments also use this to tell overlapping sets apart."""

    kind: str
    name: str
    uid: str


@dataclass
class ObjectMeta:
    name: str
    uid: str = ""
    namespace: str = DEFAULT_NAMESPACE
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_reference: OwnerReference | None = None
    creation_timestamp: int = 0
    deletion_timestamp: int | None = None

    @property
    def terminating(self) -> bool:
        return self.deletion_timestamp is not None


# ---------------------------------------------------------------------------
# Pods
# ---------------------------------------------------------------------------


@dataclass
class EnvFromSource:
    """Reference to a ConfigMap or Secret whose keys become env vars."""

    kind: str
    name: str


@dataclass
class Toleration:
    key: str = ""
    operator: str = "Equal"
    value: str = ""
    effect: str = ""


@dataclass
class Volume:
    """A pod volume backed by a PersistentVolumeClaim in the pod's namespace."""

    name: str
    claim_name: str


@dataclass
class PodSpec:
    image: str
    node_name: str | None = None
    env_from: list[EnvFromSource] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    tolerations: list[Toleration] = field(default_factory=list)
    node_selector: dict[str, str] = field(default_factory=dict)
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS
    failure_mode: FailureMode | None = None
    completion_ticks: int | None = None


@dataclass
class PodStatus:
    phase: PodPhase = PodPhase.PENDING
    reason: str | None = None
    message: str | None = None
    cpu_usage: float | None = None
    restart_count: int = 0
    ready: bool = False
    tick_created: int = 0
    start_tick: int | None = None
    last_crash_tick: int | None = None


@dataclass
class PodTemplate:
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: PodSpec = field(default_factory=lambda: PodSpec(image=""))


@dataclass
class Pod:
    kind: ClassVar[str] = "Pod"

    metadata: ObjectMeta
    spec: PodSpec
    status: PodStatus = field(default_factory=PodStatus)

    @property
    def finished(self) -> bool:
        return self.status.phase in (PodPhase.SUCCEEDED, PodPhase.FAILED)

    @property
    def live(self) -> bool:
        """Counts toward a controller's replica total."""
        return not self.metadata.terminating and not self.finished

    @property
    def is_ready(self) -> bool:
        return self.live and self.status.phase == PodPhase.RUNNING and self.status.ready


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


@dataclass
class ReplicaSetSpec:
    replicas: int
    selector: dict[str, str]
    template: PodTemplate


@dataclass
class ReplicaSetStatus:
    replicas: int = 0
    ready_replicas: int = 0


@dataclass
class ReplicaSet:
    kind: ClassVar[str] = "ReplicaSet"

    metadata: ObjectMeta
    spec: ReplicaSetSpec
    status: ReplicaSetStatus = field(default_factory=ReplicaSetStatus)


@dataclass
class DeploymentStrategy:
    """Rollout bounds. Integers are absolute; strings like "25%" are relative."""

    type: StrategyType = StrategyType.ROLLING_UPDATE
    max_surge: int | str = 1
    max_unavailable: int | str = 1


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""


@dataclass
class DeploymentSpec:
    replicas: int
    selector: dict[str, str]
    template: PodTemplate
    strategy: DeploymentStrategy = field(default_factory=DeploymentStrategy)


@dataclass
class DeploymentStatus:
    replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    conditions: list[Condition] = field(default_factory=list)
    observed_template_hash: str = ""


@dataclass
class Deployment:
    kind: ClassVar[str] = "Deployment"

    metadata: ObjectMeta
    spec: DeploymentSpec
    status: DeploymentStatus = field(default_factory=DeploymentStatus)

    def condition(self, type_: str) -> Condition | None:
        for cond in self.status.conditions:
            if cond.type == type_:
                return cond
        return None


@dataclass
class DaemonSetUpdateStrategy:
    type: StrategyType = StrategyType.ROLLING_UPDATE
    max_unavailable: int = 1


@dataclass
class DaemonSetSpec:
    selector: dict[str, str]
    template: PodTemplate
    update_strategy: DaemonSetUpdateStrategy = field(default_factory=DaemonSetUpdateStrategy)


@dataclass
class DaemonSetStatus:
    desired_number_scheduled: int = 0
    current_number_scheduled: int = 0
    number_ready: int = 0
    updated_number_scheduled: int = 0


@dataclass
class DaemonSet:
    kind: ClassVar[str] = "DaemonSet"

    metadata: ObjectMeta
    spec: DaemonSetSpec
    status: DaemonSetStatus = field(default_factory=DaemonSetStatus)


@dataclass
class PersistentVolumeClaimSpec:
    storage_class_name: str = ""
    storage: str = "1Gi"
    volume_name: str | None = None


@dataclass
class PersistentVolumeClaimTemplate:
    name: str
    spec: PersistentVolumeClaimSpec = field(default_factory=PersistentVolumeClaimSpec)


@dataclass
class StatefulSetUpdateStrategy:
    type: StrategyType = StrategyType.ROLLING_UPDATE


@dataclass
class StatefulSetSpec:
    replicas: int
    selector: dict[str, str]
    template: PodTemplate
    service_name: str = ""
    update_strategy: StatefulSetUpdateStrategy = field(default_factory=StatefulSetUpdateStrategy)
    volume_claim_templates: list[PersistentVolumeClaimTemplate] = field(default_factory=list)


@dataclass
class StatefulSetStatus:
    replicas: int = 0
    ready_replicas: int = 0
    current_replicas: int = 0
    update_revision: str = ""


@dataclass
class StatefulSet:
    kind: ClassVar[str] = "StatefulSet"

    metadata: ObjectMeta
    spec: StatefulSetSpec
    status: StatefulSetStatus = field(default_factory=StatefulSetStatus)


@dataclass
class JobSpec:
    template: PodTemplate
    completions: int = 1
    parallelism: int = 1
    backoff_limit: int = 6
    restart_policy: RestartPolicy = RestartPolicy.NEVER
    completion_ticks: int = 2


@dataclass
class JobStatus:
    phase: JobPhase = JobPhase.RUNNING
    succeeded: int = 0
    failed: int = 0
    active: int = 0
    start_tick: int | None = None
    completion_tick: int | None = None
    next_attempt_tick: int = 0
    succeeded_pods: list[str] = field(default_factory=list)
    failed_pods: list[str] = field(default_factory=list)


@dataclass
class Job:
    kind: ClassVar[str] = "Job"

    metadata: ObjectMeta
    spec: JobSpec
    status: JobStatus = field(default_factory=JobStatus)

    @property
    def finished(self) -> bool:
        return self.status.phase in (JobPhase.COMPLETE, JobPhase.FAILED)


@dataclass
class CronJobSpec:
    schedule: str
    job_template: JobSpec
    concurrency_policy: ConcurrencyPolicy = ConcurrencyPolicy.ALLOW
    suspend: bool = False
    successful_jobs_history_limit: int = 3
    failed_jobs_history_limit: int = 1


@dataclass
class CronJobStatus:
    active: list[str] = field(default_factory=list)
    last_schedule_tick: int | None = None


@dataclass
class CronJob:
    kind: ClassVar[str] = "CronJob"

    metadata: ObjectMeta
    spec: CronJobSpec
    status: CronJobStatus = field(default_factory=CronJobStatus)


@dataclass
class ScaleTargetRef:
    kind: str
    name: str


@dataclass
class HPASpec:
    scale_target_ref: ScaleTargetRef
    min_replicas: int = 1
    max_replicas: int = 10
    target_cpu_utilization_percentage: int = 80


@dataclass
class HPAStatus:
    current_replicas: int = 0
    desired_replicas: int = 0
    current_cpu_utilization_percentage: int | None = None
    recommendations: list[int] = field(default_factory=list)
    last_scale_tick: int | None = None
    able_to_scale: bool = True


@dataclass
class HorizontalPodAutoscaler:
    kind: ClassVar[str] = "HorizontalPodAutoscaler"

    metadata: ObjectMeta
    spec: HPASpec
    status: HPAStatus = field(default_factory=HPAStatus)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


@dataclass
class Taint:
    key: str
    value: str = ""
    effect: str = "NoSchedule"


@dataclass
class NodeSpec:
    capacity_pods: int = 4
    unschedulable: bool = False
    taints: list[Taint] = field(default_factory=list)


@dataclass
class NodeStatus:
    conditions: list[Condition] = field(default_factory=lambda: [Condition(type="Ready", status="True")])
    allocated_pods: int = 0


@dataclass
class Node:
    kind: ClassVar[str] = "Node"

    metadata: ObjectMeta
    spec: NodeSpec = field(default_factory=NodeSpec)
    status: NodeStatus = field(default_factory=NodeStatus)

    @property
    def ready(self) -> bool:
        return any(c.type == "Ready" and c.status == "True" for c in self.status.conditions)

    def set_ready(self, ready: bool) -> None:
        status = "True" if ready else "False"
        for cond in self.status.conditions:
            if cond.type == "Ready":
                cond.status = status
                return
        self.status.conditions.append(Condition(type="Ready", status=status))


# ---------------------------------------------------------------------------
# Config and discovery
# ---------------------------------------------------------------------------


@dataclass
class Namespace:
    kind: ClassVar[str] = "Namespace"

    metadata: ObjectMeta


@dataclass
class ConfigMap:
    kind: ClassVar[str] = "ConfigMap"

    metadata: ObjectMeta
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Secret:
    kind: ClassVar[str] = "Secret"

    metadata: ObjectMeta
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class ServiceSpec:
    selector: dict[str, str] = field(default_factory=dict)
    port: int = 80
    type: str = "ClusterIP"


@dataclass
class ServiceStatus:
    endpoints: list[str] = field(default_factory=list)


@dataclass
class Service:
    kind: ClassVar[str] = "Service"

    metadata: ObjectMeta
    spec: ServiceSpec = field(default_factory=ServiceSpec)
    status: ServiceStatus = field(default_factory=ServiceStatus)


@dataclass
class IngressRule:
    host: str
    path: str = "/"
    service_name: str = ""
    service_port: int = 80


@dataclass
class Ingress:
    kind: ClassVar[str] = "Ingress"

    metadata: ObjectMeta
    rules: list[IngressRule] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@dataclass
class StorageClass:
    """Cluster-scoped. Claims naming a class that exists are provisioned on demand."""

    kind: ClassVar[str] = "StorageClass"

    metadata: ObjectMeta
    provisioner: str = "kubesim.io/hostpath"
    reclaim_policy: ReclaimPolicy = ReclaimPolicy.DELETE


@dataclass
class PersistentVolumeSpec:
    capacity: str = "1Gi"
    storage_class_name: str = ""
    reclaim_policy: ReclaimPolicy = ReclaimPolicy.RETAIN
    # "namespace/name" of the bound claim.
    claim_ref: str | None = None


@dataclass
class PersistentVolumeStatus:
    phase: VolumePhase = VolumePhase.AVAILABLE


@dataclass
class PersistentVolume:
    kind: ClassVar[str] = "PersistentVolume"

    metadata: ObjectMeta
    spec: PersistentVolumeSpec = field(default_factory=PersistentVolumeSpec)
    status: PersistentVolumeStatus = field(default_factory=PersistentVolumeStatus)


@dataclass
class PersistentVolumeClaimStatus:
    phase: VolumePhase = VolumePhase.PENDING
    message: str | None = None


@dataclass
class PersistentVolumeClaim:
    kind: ClassVar[str] = "PersistentVolumeClaim"

    metadata: ObjectMeta
    spec: PersistentVolumeClaimSpec = field(default_factory=PersistentVolumeClaimSpec)
    status: PersistentVolumeClaimStatus = field(default_factory=PersistentVolumeClaimStatus)

    @property
    def bound(self) -> bool:
        return self.status.phase == VolumePhase.BOUND and not self.metadata.terminating
