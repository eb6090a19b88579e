"""YAML manifests for ``kubectl apply``.

Documents are read with ``yaml.safe_load_all`` and validated with Pydantic v2
models that mirror the Kubernetes field names (camelCase aliases). A
validated document is turned into a kubesim entity with ``build_entity``.
Any problem, from YAML syntax to a selector that does not match its
template, raises ManifestError naming the offending document.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from kubesim.controllers.storage import parse_quantity
from kubesim.errors import ManifestError
from kubesim.models.resources import (
    DEFAULT_NAMESPACE,
    ConcurrencyPolicy,
    ConfigMap,
    CronJob,
    CronJobSpec,
    DaemonSet,
    DaemonSetSpec,
    DaemonSetUpdateStrategy,
    Deployment,
    DeploymentSpec,
    DeploymentStrategy,
    EnvFromSource,
    HorizontalPodAutoscaler,
    HPASpec,
    Ingress,
    IngressRule,
    Job,
    JobSpec,
    Namespace,
    PersistentVolume,
    PersistentVolumeClaim,
    PersistentVolumeClaimSpec,
    PersistentVolumeClaimTemplate,
    PersistentVolumeSpec,
    Pod,
    PodSpec,
    PodStatus,
    PodTemplate,
    ReclaimPolicy,
    ReplicaSet,
    ReplicaSetSpec,
    RestartPolicy,
    ScaleTargetRef,
    Secret,
    Service,
    ServiceSpec,
    StatefulSet,
    StatefulSetSpec,
    StatefulSetUpdateStrategy,
    StorageClass,
    StrategyType,
    Toleration,
    Volume,
)
from kubesim.store.cluster import CLUSTER_SCOPED_KINDS, ClusterState

_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]{0,251}[a-z0-9])?$")


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------


class ObjectMetaModel(_Model):
    name: str
    namespace: str = DEFAULT_NAMESPACE
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(f"metadata.name must be a lowercase DNS subdomain, got: {value!r}")
        return value


class TemplateMetaModel(_Model):
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class NameRefModel(_Model):
    name: str


class EnvFromModel(_Model):
    config_map_ref: NameRefModel | None = Field(default=None, alias="configMapRef")
    secret_ref: NameRefModel | None = Field(default=None, alias="secretRef")


class ContainerModel(_Model):
    name: str = ""
    image: str
    env_from: list[EnvFromModel] = Field(default_factory=list, alias="envFrom")


class TolerationModel(_Model):
    key: str = ""
    operator: str = "Equal"
    value: str = ""
    effect: str = ""


class ClaimSourceModel(_Model):
    claim_name: str = Field(alias="claimName")


class VolumeModel(_Model):
    name: str
    persistent_volume_claim: ClaimSourceModel | None = Field(default=None, alias="persistentVolumeClaim")


class PodSpecModel(_Model):
    containers: list[ContainerModel] = Field(min_length=1)
    volumes: list[VolumeModel] = Field(default_factory=list)
    tolerations: list[TolerationModel] = Field(default_factory=list)
    node_selector: dict[str, str] = Field(default_factory=dict, alias="nodeSelector")
    restart_policy: RestartPolicy | None = Field(default=None, alias="restartPolicy")


class PodTemplateModel(_Model):
    metadata: TemplateMetaModel = Field(default_factory=TemplateMetaModel)
    spec: PodSpecModel


class SelectorModel(_Model):
    match_labels: dict[str, str] = Field(alias="matchLabels", min_length=1)


class _SelectedWorkload(_Model):
    selector: SelectorModel
    template: PodTemplateModel

    @model_validator(mode="after")
    def selector_matches_template(self) -> _SelectedWorkload:
        labels = self.template.metadata.labels
        for key, value in self.selector.match_labels.items():
            if labels.get(key) != value:
                raise ValueError("selector does not match template labels")
        return self


# ---------------------------------------------------------------------------
# Kind-specific specs
# ---------------------------------------------------------------------------


class RollingUpdateModel(_Model):
    max_surge: int | str = Field(default=1, alias="maxSurge")
    max_unavailable: int | str = Field(default=1, alias="maxUnavailable")


class DeploymentStrategyModel(_Model):
    type: StrategyType = StrategyType.ROLLING_UPDATE
    rolling_update: RollingUpdateModel = Field(default_factory=RollingUpdateModel, alias="rollingUpdate")


class DeploymentSpecModel(_SelectedWorkload):
    replicas: int = Field(default=1, ge=0)
    strategy: DeploymentStrategyModel = Field(default_factory=DeploymentStrategyModel)


class ReplicaSetSpecModel(_SelectedWorkload):
    replicas: int = Field(default=1, ge=0)


class DaemonSetRollingUpdateModel(_Model):
    max_unavailable: int = Field(default=1, ge=1, alias="maxUnavailable")


class DaemonSetStrategyModel(_Model):
    type: StrategyType = StrategyType.ROLLING_UPDATE
    rolling_update: DaemonSetRollingUpdateModel = Field(
        default_factory=DaemonSetRollingUpdateModel, alias="rollingUpdate"
    )


class DaemonSetSpecModel(_SelectedWorkload):
    update_strategy: DaemonSetStrategyModel = Field(default_factory=DaemonSetStrategyModel, alias="updateStrategy")


class StorageRequestsModel(_Model):
    requests: dict[str, str] = Field(default_factory=dict)


class ClaimSpecModel(_Model):
    storage_class_name: str = Field(default="", alias="storageClassName")
    resources: StorageRequestsModel = Field(default_factory=StorageRequestsModel)

    @field_validator("resources")
    @classmethod
    def validate_storage(cls, value: StorageRequestsModel) -> StorageRequestsModel:
        parse_quantity(value.requests.get("storage", "1Gi"))
        return value

    @property
    def storage(self) -> str:
        return self.resources.requests.get("storage", "1Gi")


class ClaimTemplateMetaModel(_Model):
    name: str


class VolumeClaimTemplateModel(_Model):
    metadata: ClaimTemplateMetaModel
    spec: ClaimSpecModel = Field(default_factory=ClaimSpecModel)


class StatefulSetStrategyModel(_Model):
    type: StrategyType = StrategyType.ROLLING_UPDATE

    @field_validator("type")
    @classmethod
    def validate_type(cls, value: StrategyType) -> StrategyType:
        if value == StrategyType.RECREATE:
            raise ValueError("statefulsets support RollingUpdate or OnDelete")
        return value


class StatefulSetSpecModel(_SelectedWorkload):
    replicas: int = Field(default=1, ge=0)
    service_name: str = Field(default="", alias="serviceName")
    update_strategy: StatefulSetStrategyModel = Field(default_factory=StatefulSetStrategyModel, alias="updateStrategy")
    volume_claim_templates: list[VolumeClaimTemplateModel] = Field(default_factory=list, alias="volumeClaimTemplates")


class VolumeSpecModel(_Model):
    capacity: dict[str, str] = Field(default_factory=dict)
    storage_class_name: str = Field(default="", alias="storageClassName")
    reclaim_policy: ReclaimPolicy = Field(default=ReclaimPolicy.RETAIN, alias="persistentVolumeReclaimPolicy")

    @field_validator("capacity")
    @classmethod
    def validate_capacity(cls, value: dict[str, str]) -> dict[str, str]:
        if "storage" not in value:
            raise ValueError("capacity.storage is required")
        parse_quantity(value["storage"])
        return value


class StorageClassModel(_Model):
    """StorageClass keeps its fields at the top level of the document."""

    provisioner: str = "kubesim.io/hostpath"
    reclaim_policy: ReclaimPolicy = Field(default=ReclaimPolicy.DELETE, alias="reclaimPolicy")


class JobSpecModel(_Model):
    template: PodTemplateModel
    completions: int = Field(default=1, ge=1)
    parallelism: int = Field(default=1, ge=1)
    backoff_limit: int = Field(default=6, ge=0, alias="backoffLimit")

    @field_validator("template")
    @classmethod
    def validate_restart_policy(cls, value: PodTemplateModel) -> PodTemplateModel:
        if value.spec.restart_policy == RestartPolicy.ALWAYS:
            raise ValueError("job pod templates must use restartPolicy Never or OnFailure")
        return value


class JobTemplateModel(_Model):
    spec: JobSpecModel


class CronJobSpecModel(_Model):
    schedule: str
    job_template: JobTemplateModel = Field(alias="jobTemplate")
    concurrency_policy: ConcurrencyPolicy = Field(default=ConcurrencyPolicy.ALLOW, alias="concurrencyPolicy")
    suspend: bool = False
    successful_jobs_history_limit: int = Field(default=3, ge=0, alias="successfulJobsHistoryLimit")
    failed_jobs_history_limit: int = Field(default=1, ge=0, alias="failedJobsHistoryLimit")


class ScaleTargetRefModel(_Model):
    kind: str
    name: str


class HPASpecModel(_Model):
    scale_target_ref: ScaleTargetRefModel = Field(alias="scaleTargetRef")
    min_replicas: int = Field(default=1, ge=1, alias="minReplicas")
    max_replicas: int = Field(ge=1, alias="maxReplicas")
    target_cpu_utilization_percentage: int = Field(default=80, ge=1, alias="targetCPUUtilizationPercentage")

    @model_validator(mode="after")
    def validate_bounds(self) -> HPASpecModel:
        if self.max_replicas < self.min_replicas:
            raise ValueError("maxReplicas must be >= minReplicas")
        return self


class ServicePortModel(_Model):
    port: int = Field(ge=1, le=65535)


class ServiceSpecModel(_Model):
    selector: dict[str, str] = Field(default_factory=dict)
    ports: list[ServicePortModel] = Field(default_factory=list)
    type: str = "ClusterIP"


class IngressBackendModel(_Model):
    service_name: str = Field(alias="serviceName")
    service_port: int = Field(default=80, alias="servicePort")


class IngressPathModel(_Model):
    path: str = "/"
    backend: IngressBackendModel


class IngressHTTPModel(_Model):
    paths: list[IngressPathModel] = Field(default_factory=list)


class IngressRuleModel(_Model):
    host: str = ""
    http: IngressHTTPModel = Field(default_factory=IngressHTTPModel)


class IngressSpecModel(_Model):
    rules: list[IngressRuleModel] = Field(default_factory=list)


_SPEC_MODELS: dict[str, type[_Model]] = {
    "Pod": PodSpecModel,
    "Deployment": DeploymentSpecModel,
    "ReplicaSet": ReplicaSetSpecModel,
    "DaemonSet": DaemonSetSpecModel,
    "StatefulSet": StatefulSetSpecModel,
    "PersistentVolume": VolumeSpecModel,
    "PersistentVolumeClaim": ClaimSpecModel,
    "Job": JobSpecModel,
    "CronJob": CronJobSpecModel,
    "HorizontalPodAutoscaler": HPASpecModel,
    "Service": ServiceSpecModel,
    "Ingress": IngressSpecModel,
}

_DATA_KINDS = frozenset({"ConfigMap", "Secret"})

# Kinds validated from the whole document rather than from ``spec``.
_TOP_LEVEL_MODELS: dict[str, type[_Model]] = {"StorageClass": StorageClassModel}

SUPPORTED_KINDS = tuple(sorted({*_SPEC_MODELS, *_DATA_KINDS, *_TOP_LEVEL_MODELS, "Namespace"}))


class ManifestHeader(_Model):
    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str
    metadata: ObjectMetaModel
    spec: dict[str, Any] | None = None
    data: dict[str, str] = Field(default_factory=dict)
    string_data: dict[str, str] = Field(default_factory=dict, alias="stringData")

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, value: str) -> str:
        if value not in SUPPORTED_KINDS:
            raise ValueError(f"unsupported kind {value!r}; supported: {', '.join(SUPPORTED_KINDS)}")
        return value


@dataclass
class ManifestObject:
    """One validated document: its header plus the kind-specific spec model."""

    kind: str
    metadata: ObjectMetaModel
    spec: _Model | None
    data: dict[str, str]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _describe_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def load_manifest(text: str) -> list[ManifestObject]:
    """Parse and validate every document in ``text``.

    All documents are validated before any is returned, so a caller that
    applies the result never sees a partially valid manifest.
    """
    if not text.strip():
        raise ManifestError("Manifest is empty")
    try:
        documents = [d for d in yaml.safe_load_all(text) if d is not None]
    except yaml.YAMLError as exc:
        raise ManifestError(f"Invalid YAML: {exc}") from exc
    if not documents:
        raise ManifestError("Manifest is empty")

    objects: list[ManifestObject] = []
    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise ManifestError(f"Document {index + 1} is not a mapping", document=index)
        try:
            header = ManifestHeader.model_validate(doc)
            spec: _Model | None = None
            model = _SPEC_MODELS.get(header.kind)
            if header.kind in _TOP_LEVEL_MODELS:
                spec = _TOP_LEVEL_MODELS[header.kind].model_validate(doc)
            elif model is not None:
                if header.spec is None:
                    raise ManifestError(f"Document {index + 1} ({header.kind}): spec is required", document=index)
                spec = model.model_validate(header.spec)
        except ValidationError as exc:
            raise ManifestError(f"Document {index + 1}: {_describe_errors(exc)}", document=index) from exc
        objects.append(
            ManifestObject(
                kind=header.kind,
                metadata=header.metadata,
                spec=spec,
                data={**header.data, **header.string_data},
            )
        )
    return objects


# ---------------------------------------------------------------------------
# Conversion to entities
# ---------------------------------------------------------------------------


def _env_from(container: ContainerModel) -> list[EnvFromSource]:
    sources: list[EnvFromSource] = []
    for ref in container.env_from:
        if ref.config_map_ref is not None:
            sources.append(EnvFromSource(kind="ConfigMap", name=ref.config_map_ref.name))
        if ref.secret_ref is not None:
            sources.append(EnvFromSource(kind="Secret", name=ref.secret_ref.name))
    return sources


def _pod_spec(model: PodSpecModel) -> PodSpec:
    container = model.containers[0]
    spec = PodSpec(
        image=container.image,
        env_from=_env_from(container),
        volumes=[
            Volume(name=v.name, claim_name=v.persistent_volume_claim.claim_name)
            for v in model.volumes
            if v.persistent_volume_claim is not None
        ],
        tolerations=[
            Toleration(key=t.key, operator=t.operator, value=t.value, effect=t.effect) for t in model.tolerations
        ],
        node_selector=dict(model.node_selector),
    )
    if model.restart_policy is not None:
        spec.restart_policy = model.restart_policy
    return spec


def _template(model: PodTemplateModel) -> PodTemplate:
    return PodTemplate(
        labels=dict(model.metadata.labels),
        annotations=dict(model.metadata.annotations),
        spec=_pod_spec(model.spec),
    )


def _job_spec(model: JobSpecModel) -> JobSpec:
    template = _template(model.template)
    restart = model.template.spec.restart_policy or RestartPolicy.NEVER
    return JobSpec(
        template=template,
        completions=model.completions,
        parallelism=model.parallelism,
        backoff_limit=model.backoff_limit,
        restart_policy=restart,
    )


def _claim_spec(model: ClaimSpecModel) -> PersistentVolumeClaimSpec:
    return PersistentVolumeClaimSpec(storage_class_name=model.storage_class_name, storage=model.storage)


def build_spec(obj: ManifestObject) -> Any:
    """Return the entity spec (or data dict) described by ``obj``."""
    spec = obj.spec
    if isinstance(spec, PodSpecModel):
        return _pod_spec(spec)
    if isinstance(spec, DeploymentSpecModel):
        return DeploymentSpec(
            replicas=spec.replicas,
            selector=dict(spec.selector.match_labels),
            template=_template(spec.template),
            strategy=DeploymentStrategy(
                type=spec.strategy.type,
                max_surge=spec.strategy.rolling_update.max_surge,
                max_unavailable=spec.strategy.rolling_update.max_unavailable,
            ),
        )
    if isinstance(spec, ReplicaSetSpecModel):
        return ReplicaSetSpec(
            replicas=spec.replicas, selector=dict(spec.selector.match_labels), template=_template(spec.template)
        )
    if isinstance(spec, DaemonSetSpecModel):
        return DaemonSetSpec(
            selector=dict(spec.selector.match_labels),
            template=_template(spec.template),
            update_strategy=DaemonSetUpdateStrategy(
                type=spec.update_strategy.type,
                max_unavailable=spec.update_strategy.rolling_update.max_unavailable,
            ),
        )
    if isinstance(spec, StatefulSetSpecModel):
        return StatefulSetSpec(
            replicas=spec.replicas,
            selector=dict(spec.selector.match_labels),
            template=_template(spec.template),
            service_name=spec.service_name,
            update_strategy=StatefulSetUpdateStrategy(type=spec.update_strategy.type),
            volume_claim_templates=[
                PersistentVolumeClaimTemplate(name=t.metadata.name, spec=_claim_spec(t.spec))
                for t in spec.volume_claim_templates
            ],
        )
    if isinstance(spec, ClaimSpecModel):
        return _claim_spec(spec)
    if isinstance(spec, VolumeSpecModel):
        return PersistentVolumeSpec(
            capacity=spec.capacity["storage"],
            storage_class_name=spec.storage_class_name,
            reclaim_policy=spec.reclaim_policy,
        )
    if isinstance(spec, StorageClassModel):
        return {"provisioner": spec.provisioner, "reclaim_policy": spec.reclaim_policy}
    if isinstance(spec, JobSpecModel):
        return _job_spec(spec)
    if isinstance(spec, CronJobSpecModel):
        return CronJobSpec(
            schedule=spec.schedule,
            job_template=_job_spec(spec.job_template.spec),
            concurrency_policy=spec.concurrency_policy,
            suspend=spec.suspend,
            successful_jobs_history_limit=spec.successful_jobs_history_limit,
            failed_jobs_history_limit=spec.failed_jobs_history_limit,
        )
    if isinstance(spec, HPASpecModel):
        return HPASpec(
            scale_target_ref=ScaleTargetRef(kind=spec.scale_target_ref.kind, name=spec.scale_target_ref.name),
            min_replicas=spec.min_replicas,
            max_replicas=spec.max_replicas,
            target_cpu_utilization_percentage=spec.target_cpu_utilization_percentage,
        )
    if isinstance(spec, ServiceSpecModel):
        port = spec.ports[0].port if spec.ports else 80
        return ServiceSpec(selector=dict(spec.selector), port=port, type=spec.type)
    if isinstance(spec, IngressSpecModel):
        return [
            IngressRule(
                host=rule.host,
                path=path.path,
                service_name=path.backend.service_name,
                service_port=path.backend.service_port,
            )
            for rule in spec.rules
            for path in rule.http.paths
        ]
    return dict(obj.data)


_SPEC_ENTITIES: dict[str, Any] = {
    "Deployment": Deployment,
    "ReplicaSet": ReplicaSet,
    "DaemonSet": DaemonSet,
    "StatefulSet": StatefulSet,
    "PersistentVolume": PersistentVolume,
    "PersistentVolumeClaim": PersistentVolumeClaim,
    "Job": Job,
    "CronJob": CronJob,
    "HorizontalPodAutoscaler": HorizontalPodAutoscaler,
    "Service": Service,
}

_DATA_ENTITIES: dict[str, Any] = {"ConfigMap": ConfigMap, "Secret": Secret}


def build_entity(obj: ManifestObject, state: ClusterState) -> Any:
    """Create a new entity for ``obj``, allocating metadata from ``state``."""
    namespace = "" if obj.kind in CLUSTER_SCOPED_KINDS else obj.metadata.namespace
    meta = state.new_meta(obj.kind, obj.metadata.name, namespace, obj.metadata.labels)
    meta.annotations = dict(obj.metadata.annotations)
    spec = build_spec(obj)
    if obj.kind == "Pod":
        return Pod(metadata=meta, spec=spec, status=PodStatus(tick_created=state.tick))
    if obj.kind == "Ingress":
        return Ingress(metadata=meta, rules=spec)
    if obj.kind in _DATA_KINDS:
        return _DATA_ENTITIES[obj.kind](metadata=meta, data=spec)
    if obj.kind == "Namespace":
        return Namespace(metadata=meta)
    if obj.kind == "StorageClass":
        return StorageClass(metadata=meta, **spec)
    return _SPEC_ENTITIES[obj.kind](metadata=meta, spec=spec)
