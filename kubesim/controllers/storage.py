"""Persistent volume controller: claim binding, dynamic provisioning, reclaim.

Runs first in the tick so that a claim bound here can be scheduled in the
same tick. A Pending claim binds to the first Available volume, in store
order, with the same storage class and enough capacity. Failing that, a
claim whose class exists gets a freshly provisioned volume named after the
claim's UID. Otherwise the claim stays Pending and a FailedBinding warning
is recorded once per distinct message.

A Bound volume whose claim is gone or terminating becomes Released. A
Released volume with the Delete reclaim policy is deleted; Retain keeps it
Released until it is removed by hand.
"""

from __future__ import annotations

import re

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.models.resources import (
    PersistentVolume,
    PersistentVolumeClaim,
    PersistentVolumeSpec,
    PersistentVolumeStatus,
    Pod,
    ReclaimPolicy,
    VolumePhase,
)
from kubesim.observability.logging import get_logger
from kubesim.store.cluster import ClusterState

_logger = get_logger("volume_controller")

_QUANTITY_RE = re.compile(r"^(\d+)(Ki|Mi|Gi|Ti|k|M|G|T)?$")
_UNITS = {
    None: 1,
    "k": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
}


def parse_quantity(value: str) -> int:
    """Bytes in a storage quantity such as ``"10Gi"`` or ``"500M"``."""
    match = _QUANTITY_RE.match(value.strip())
    if match is None:
        raise ValueError(f"invalid storage quantity: {value!r}")
    return int(match.group(1)) * _UNITS[match.group(2)]


def claim_key(claim: PersistentVolumeClaim) -> str:
    return f"{claim.metadata.namespace}/{claim.metadata.name}"


def unbound_claim(state: ClusterState, pod: Pod) -> str | None:
    """Why ``pod`` cannot be placed yet because of its claims, or None."""
    for volume in pod.spec.volumes:
        claim = state.find("PersistentVolumeClaim", volume.claim_name, pod.metadata.namespace)
        if claim is None:
            return f'persistentvolumeclaim "{volume.claim_name}" not found'
        if claim.metadata.terminating:
            return f'persistentvolumeclaim "{volume.claim_name}" is being deleted'
        if not claim.bound:
            return "pod has unbound immediate PersistentVolumeClaims"
    return None


class VolumeController(Controller):
    name = "volume_controller"

    def _reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for pv in list(state.persistent_volumes):
            if pv.metadata.terminating:
                continue
            if pv.status.phase == VolumePhase.BOUND:
                self._check_released(state, pv)
            if pv.status.phase == VolumePhase.RELEASED:
                self._reclaim(state, pv)

        for claim in state.persistent_volume_claims:
            if claim.metadata.terminating or claim.status.phase == VolumePhase.BOUND:
                continue
            self._bind(state, claim)

    # -----------------------------------------------------------------------
    # Binding
    # -----------------------------------------------------------------------

    def _bind(self, state: ClusterState, claim: PersistentVolumeClaim) -> None:
        pv = self._find_volume(state, claim)
        if pv is not None:
            self._attach(state, claim, pv)
            self._normal(state, "Bound", claim, f"Bound to volume {pv.metadata.name}")
            _logger.info("claim_bound", claim=claim_key(claim), volume=pv.metadata.name)
            return

        storage_class = claim.spec.storage_class_name
        if storage_class and state.find("StorageClass", storage_class, "") is not None:
            pv = self._provision(state, claim)
            self._attach(state, claim, pv)
            self._normal(
                state,
                "ProvisioningSucceeded",
                claim,
                f"Successfully provisioned volume {pv.metadata.name} using {storage_class}",
            )
            _logger.info("volume_provisioned", claim=claim_key(claim), volume=pv.metadata.name)
            return

        if storage_class:
            message = f'storageclass.storage.k8s.io "{storage_class}" not found'
        else:
            message = "no persistent volumes available for this claim and no storage class is set"
        if claim.status.message != message:
            claim.status.message = message
            self._warning(state, "FailedBinding", claim, message)
            _logger.info("claim_pending", claim=claim_key(claim), message=message)

    @staticmethod
    def _find_volume(state: ClusterState, claim: PersistentVolumeClaim) -> PersistentVolume | None:
        wanted = parse_quantity(claim.spec.storage)
        for pv in state.persistent_volumes:
            if (
                not pv.metadata.terminating
                and pv.status.phase == VolumePhase.AVAILABLE
                and pv.spec.claim_ref is None
                and pv.spec.storage_class_name == claim.spec.storage_class_name
                and parse_quantity(pv.spec.capacity) >= wanted
            ):
                return pv
        return None

    def _provision(self, state: ClusterState, claim: PersistentVolumeClaim) -> PersistentVolume:
        storage_class = state.find("StorageClass", claim.spec.storage_class_name, "")
        pv = PersistentVolume(
            metadata=state.new_meta("PersistentVolume", f"pvc-{claim.metadata.uid}", ""),
            spec=PersistentVolumeSpec(
                capacity=claim.spec.storage,
                storage_class_name=claim.spec.storage_class_name,
                reclaim_policy=storage_class.reclaim_policy,
            ),
            status=PersistentVolumeStatus(phase=VolumePhase.AVAILABLE),
        )
        self._created(state, pv)
        return pv

    def _attach(self, state: ClusterState, claim: PersistentVolumeClaim, pv: PersistentVolume) -> None:
        pv.spec.claim_ref = claim_key(claim)
        pv.status.phase = VolumePhase.BOUND
        claim.spec.volume_name = pv.metadata.name
        claim.status.phase = VolumePhase.BOUND
        claim.status.message = None
        self._updated(pv)
        self._updated(claim)

    # -----------------------------------------------------------------------
    # Release and reclaim
    # -----------------------------------------------------------------------

    def _check_released(self, state: ClusterState, pv: PersistentVolume) -> None:
        namespace, _, name = (pv.spec.claim_ref or "").partition("/")
        claim = state.find("PersistentVolumeClaim", name, namespace)
        # A claim recreated under the same name does not inherit the volume.
        if claim is not None and not claim.metadata.terminating and claim.spec.volume_name == pv.metadata.name:
            return
        pv.status.phase = VolumePhase.RELEASED
        self._updated(pv)
        self._normal(state, "VolumeReleased", pv, f"Claim {pv.spec.claim_ref} was deleted")
        _logger.info("volume_released", volume=pv.metadata.name, claim=pv.spec.claim_ref)

    def _reclaim(self, state: ClusterState, pv: PersistentVolume) -> None:
        if pv.spec.reclaim_policy != ReclaimPolicy.DELETE:
            return
        self._deleted(state, pv)
        self._normal(state, "VolumeDeleted", pv, f"Deleted volume {pv.metadata.name} (reclaim policy Delete)")
        _logger.info("volume_deleted", volume=pv.metadata.name)
