"""Tests for kubesim.commands.manifest: YAML loading, validation and entity building."""

from __future__ import annotations

import pytest

from kubesim.commands.manifest import build_entity, load_manifest
from kubesim.errors import ManifestError
from kubesim.models.resources import (
    ConcurrencyPolicy,
    ConfigMap,
    CronJob,
    DaemonSet,
    Deployment,
    HorizontalPodAutoscaler,
    Job,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    PodPhase,
    ReclaimPolicy,
    RestartPolicy,
    Service,
    StatefulSet,
    StorageClass,
    StrategyType,
    Volume,
)
from kubesim.scenarios.storage import DB_MANIFEST
from kubesim.store.cluster import ClusterState

_DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  labels:
    app: web
spec:
  replicas: 3
  selector:
    matchLabels:
      app: web
  strategy:
    type: RollingUpdate
    rollingUpdate:
      maxSurge: 25%
      maxUnavailable: 0
  template:
    metadata:
      labels:
        app: web
    spec:
      containers:
        - name: web
          image: web-app:1.0
          envFrom:
            - configMapRef:
                name: app-config
"""

_CONFIGMAP = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: app-config
data:
  LOG_LEVEL: info
"""

_JOB = """
apiVersion: batch/v1
kind: Job
metadata:
  name: batch
spec:
  completions: 3
  parallelism: 2
  backoffLimit: 2
  template:
    spec:
      restartPolicy: OnFailure
      containers:
        - name: task
          image: busybox
"""

_CRONJOB = """
apiVersion: batch/v1
kind: CronJob
metadata:
  name: backup
spec:
  schedule: "*/2 * * * *"
  concurrencyPolicy: Forbid
  jobTemplate:
    spec:
      template:
        spec:
          containers:
            - image: busybox
"""

_HPA = """
apiVersion: autoscaling/v1
kind: HorizontalPodAutoscaler
metadata:
  name: web
spec:
  scaleTargetRef:
    apiVersion: apps/v1
    kind: Deployment
    name: web
  minReplicas: 2
  maxReplicas: 8
  targetCPUUtilizationPercentage: 50
"""


_CLAIM = """
kind: PersistentVolumeClaim
metadata:
  name: data
spec:
  storageClassName: fast
  resources:
    requests:
      storage: 5Gi
"""

_VOLUME = """
kind: PersistentVolume
metadata:
  name: pv-a
spec:
  capacity:
    storage: 10Gi
  storageClassName: fast
"""

_STORAGE_CLASS = """
apiVersion: storage.k8s.io/v1
kind: StorageClass
metadata:
  name: fast
reclaimPolicy: Retain
"""


def _entity(text: str) -> object:
    [obj] = load_manifest(text)
    return build_entity(obj, ClusterState())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadManifest:
    def test_multi_document(self) -> None:
        objects = load_manifest(_CONFIGMAP + "---" + _DEPLOYMENT)
        assert [o.kind for o in objects] == ["ConfigMap", "Deployment"]

    def test_blank_documents_skipped(self) -> None:
        assert len(load_manifest("---\n" + _CONFIGMAP + "---\n")) == 1

    def test_namespace_defaults(self) -> None:
        [obj] = load_manifest(_CONFIGMAP)
        assert obj.metadata.namespace == "default"

    def test_string_data_merged(self) -> None:
        text = "kind: Secret\nmetadata:\n  name: creds\nstringData:\n  PASSWORD: hunter2\n"
        [obj] = load_manifest(text)
        assert obj.data == {"PASSWORD": "hunter2"}


class TestManifestErrors:
    @pytest.mark.parametrize(
        ("text", "message"),
        [
            ("", "Manifest is empty"),
            ("---\n", "Manifest is empty"),
            ("kind: [unclosed", "Invalid YAML"),
            ("- just\n- a list\n", "not a mapping"),
            ("kind: Widget\nmetadata:\n  name: w\n", "unsupported kind"),
            ("kind: ConfigMap\nmetadata:\n  name: Bad_Name\n", "DNS subdomain"),
            ("kind: Deployment\nmetadata:\n  name: web\n", "spec is required"),
        ],
    )
    def test_rejected(self, text: str, message: str) -> None:
        with pytest.raises(ManifestError, match=message):
            load_manifest(text)

    def test_selector_must_match_template(self) -> None:
        with pytest.raises(ManifestError, match="selector does not match template labels"):
            load_manifest(_DEPLOYMENT.replace("matchLabels:\n      app: web", "matchLabels:\n      app: api"))

    def test_hpa_bounds(self) -> None:
        with pytest.raises(ManifestError, match="maxReplicas must be >= minReplicas"):
            load_manifest(_HPA.replace("maxReplicas: 8", "maxReplicas: 1"))

    def test_job_rejects_always_restart(self) -> None:
        with pytest.raises(ManifestError, match="restartPolicy Never or OnFailure"):
            load_manifest(_JOB.replace("OnFailure", "Always"))

    def test_stateful_set_rejects_recreate(self) -> None:
        text = DB_MANIFEST.replace("  serviceName: db\n", "  serviceName: db\n  updateStrategy:\n    type: Recreate\n")
        with pytest.raises(ManifestError, match="RollingUpdate or OnDelete"):
            load_manifest(text)

    def test_volume_needs_capacity(self) -> None:
        with pytest.raises(ManifestError, match="capacity.storage is required"):
            load_manifest(_VOLUME.replace("    storage: 10Gi\n", "    size: 10Gi\n"))

    def test_claim_quantity_checked(self) -> None:
        with pytest.raises(ManifestError, match="invalid storage quantity"):
            load_manifest(_CLAIM.replace("5Gi", "lots"))

    def test_error_names_document(self) -> None:
        with pytest.raises(ManifestError, match="Document 2") as info:
            load_manifest(_CONFIGMAP + "---\nkind: Widget\nmetadata:\n  name: w\n")
        assert info.value.document == 1


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class TestBuildEntity:
    def test_deployment(self) -> None:
        dep = _entity(_DEPLOYMENT)
        assert isinstance(dep, Deployment)
        assert dep.spec.replicas == 3
        assert dep.spec.selector == {"app": "web"}
        assert dep.spec.template.spec.image == "web-app:1.0"
        assert dep.spec.template.spec.env_from[0].kind == "ConfigMap"
        assert dep.spec.strategy.type == StrategyType.ROLLING_UPDATE
        assert dep.spec.strategy.max_surge == "25%"
        assert dep.spec.strategy.max_unavailable == 0

    def test_config_map(self) -> None:
        cm = _entity(_CONFIGMAP)
        assert isinstance(cm, ConfigMap)
        assert cm.data == {"LOG_LEVEL": "info"}

    def test_job(self) -> None:
        job = _entity(_JOB)
        assert isinstance(job, Job)
        assert (job.spec.completions, job.spec.parallelism, job.spec.backoff_limit) == (3, 2, 2)
        assert job.spec.restart_policy == RestartPolicy.ON_FAILURE

    def test_cron_job(self) -> None:
        cj = _entity(_CRONJOB)
        assert isinstance(cj, CronJob)
        assert cj.spec.schedule == "*/2 * * * *"
        assert cj.spec.concurrency_policy == ConcurrencyPolicy.FORBID
        assert cj.spec.job_template.restart_policy == RestartPolicy.NEVER

    def test_hpa(self) -> None:
        hpa = _entity(_HPA)
        assert isinstance(hpa, HorizontalPodAutoscaler)
        assert hpa.spec.scale_target_ref.name == "web"
        assert (hpa.spec.min_replicas, hpa.spec.max_replicas) == (2, 8)
        assert hpa.spec.target_cpu_utilization_percentage == 50

    def test_daemon_set(self) -> None:
        text = _DEPLOYMENT.replace("kind: Deployment", "kind: DaemonSet")
        ds = _entity(text)
        assert isinstance(ds, DaemonSet)
        assert ds.spec.selector == {"app": "web"}

    def test_service(self) -> None:
        text = "kind: Service\nmetadata:\n  name: web\nspec:\n  selector:\n    app: web\n  ports:\n    - port: 8080\n"
        svc = _entity(text)
        assert isinstance(svc, Service)
        assert svc.spec.port == 8080

    def test_pod(self) -> None:
        text = "kind: Pod\nmetadata:\n  name: debug\nspec:\n  containers:\n    - image: busybox\n"
        pod = _entity(text)
        assert isinstance(pod, Pod)
        assert pod.status.phase == PodPhase.PENDING
        assert pod.spec.image == "busybox"

    def test_pod_claim_volumes(self) -> None:
        text = (
            "kind: Pod\nmetadata:\n  name: db\nspec:\n  containers:\n    - image: postgres:16\n"
            "  volumes:\n    - name: data\n      persistentVolumeClaim:\n        claimName: data-db\n"
            "    - name: scratch\n"
        )
        pod = _entity(text)
        assert isinstance(pod, Pod)
        assert pod.spec.volumes == [Volume(name="data", claim_name="data-db")]

    def test_stateful_set(self) -> None:
        sts = _entity(DB_MANIFEST)
        assert isinstance(sts, StatefulSet)
        assert sts.spec.replicas == 3
        assert sts.spec.service_name == "db"
        assert sts.spec.update_strategy.type == StrategyType.ROLLING_UPDATE
        [template] = sts.spec.volume_claim_templates
        assert template.name == "data"
        assert (template.spec.storage_class_name, template.spec.storage) == ("standard", "1Gi")

    def test_claim(self) -> None:
        claim = _entity(_CLAIM)
        assert isinstance(claim, PersistentVolumeClaim)
        assert claim.metadata.namespace == "default"
        assert (claim.spec.storage_class_name, claim.spec.storage) == ("fast", "5Gi")
        assert claim.spec.volume_name is None

    def test_volume_is_cluster_scoped(self) -> None:
        pv = _entity(_VOLUME)
        assert isinstance(pv, PersistentVolume)
        assert pv.metadata.namespace == ""
        assert pv.spec.capacity == "10Gi"
        assert pv.spec.reclaim_policy == ReclaimPolicy.RETAIN

    def test_storage_class_fields_at_top_level(self) -> None:
        sc = _entity(_STORAGE_CLASS)
        assert isinstance(sc, StorageClass)
        assert sc.metadata.namespace == ""
        assert sc.provisioner == "kubesim.io/hostpath"
        assert sc.reclaim_policy == ReclaimPolicy.RETAIN
