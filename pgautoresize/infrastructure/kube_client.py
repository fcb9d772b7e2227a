"""Kubernetes access for volume claims and cluster status."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import kubernetes
from kubernetes import client, config

from pgautoresize.infrastructure.interfaces import ClusterStatusStore, VolumePatcher
from pgautoresize.models.models import (
    ClusterSpec,
    ClusterStatus,
    InstanceDiskStatus,
    VolumeClaim,
    VolumeRole,
)
from pgautoresize.models.quantity import format_bytes, to_bytes
from pgautoresize.reconciler.errors import PatchFailed, StatusUpdateError

logger = logging.getLogger(__name__)

CLUSTER_GROUP = "postgresql.cnpg.io"
CLUSTER_VERSION = "v1"
CLUSTER_PLURAL = "clusters"

CLUSTER_LABEL = "cnpg.io/cluster"
INSTANCE_LABEL = "cnpg.io/instanceName"
PVC_ROLE_LABEL = "cnpg.io/pvcRole"
TABLESPACE_LABEL = "cnpg.io/tablespaceName"

STATUS_WRITE_ATTEMPTS = 3

PVC_ROLES = {
    "PG_DATA": VolumeRole.DATA,
    "PG_WAL": VolumeRole.WAL,
    "PG_TABLESPACE": VolumeRole.TABLESPACE,
}


def load_kube_config() -> None:
    """Use the in-cluster service account, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def claim_from_pvc(pvc: Any) -> Optional[VolumeClaim]:
    """Convert a V1PersistentVolumeClaim, or None if it is not a database volume."""
    labels = pvc.metadata.labels or {}
    role = PVC_ROLES.get(labels.get(PVC_ROLE_LABEL, ""))
    requests = (pvc.spec.resources.requests or {}) if pvc.spec.resources else {}
    if role is None or "storage" not in requests:
        return None
    return VolumeClaim(
        name=pvc.metadata.name,
        instance=labels.get(INSTANCE_LABEL, ""),
        role=role,
        requested_bytes=to_bytes(requests["storage"]),
        tablespace=labels.get(TABLESPACE_LABEL, "") if role == VolumeRole.TABLESPACE else "",
    )


class KubeVolumePatcher(VolumePatcher):
    """Grows volume claims through the core API."""

    def __init__(self, core_api: Optional[client.CoreV1Api] = None):
        self._core_api = core_api or client.CoreV1Api()

    async def set_requested_size(self, namespace: str, pvc_name: str, size_bytes: int) -> None:
        body = {"spec": {"resources": {"requests": {"storage": format_bytes(size_bytes)}}}}
        try:
            await asyncio.to_thread(
                self._core_api.patch_namespaced_persistent_volume_claim,
                name=pvc_name,
                namespace=namespace,
                body=body,
            )
        except kubernetes.client.rest.ApiException as e:
            raise PatchFailed(pvc_name, e.reason or str(e), status=e.status)
        logger.info(f"Requested {format_bytes(size_bytes)} for {namespace}/{pvc_name}")


class KubeClusterStatusStore(ClusterStatusStore):
    """Reads Cluster resources and persists their auto-resize status."""

    def __init__(self, namespace: str = "default",
                 custom_api: Optional[client.CustomObjectsApi] = None,
                 core_api: Optional[client.CoreV1Api] = None):
        self.namespace = namespace
        self._custom_api = custom_api or client.CustomObjectsApi()
        self._core_api = core_api or client.CoreV1Api()

    async def _get_object(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(
                self._custom_api.get_namespaced_custom_object,
                group=CLUSTER_GROUP,
                version=CLUSTER_VERSION,
                namespace=self.namespace,
                plural=CLUSTER_PLURAL,
                name=name,
            )
        except kubernetes.client.rest.ApiException as e:
            if e.status == 404:
                return None
            raise

    async def _patch_status(self, name: str, status: Dict[str, Any],
                            resource_version: Optional[str] = None) -> bool:
        """Patch the status subresource.

        With a resource_version the patch only applies to that revision of
        the object. Returns False on a conflict.
        """
        body: Dict[str, Any] = {"status": status}
        if resource_version is not None:
            body["metadata"] = {"resourceVersion": resource_version}
        try:
            await asyncio.to_thread(
                self._custom_api.patch_namespaced_custom_object_status,
                group=CLUSTER_GROUP,
                version=CLUSTER_VERSION,
                namespace=self.namespace,
                plural=CLUSTER_PLURAL,
                name=name,
                body=body,
            )
        except kubernetes.client.rest.ApiException as e:
            if e.status == 409:
                return False
            raise StatusUpdateError(
                f"Failed to update status of cluster {name}: {e.reason}"
            )
        return True

    async def list_clusters(self) -> List[ClusterSpec]:
        result = await asyncio.to_thread(
            self._custom_api.list_namespaced_custom_object,
            group=CLUSTER_GROUP,
            version=CLUSTER_VERSION,
            namespace=self.namespace,
            plural=CLUSTER_PLURAL,
        )
        return [
            ClusterSpec.from_dict(item["metadata"]["name"], self.namespace, item.get("spec") or {})
            for item in result.get("items", [])
        ]

    async def get_cluster(self, name: str) -> Optional[ClusterSpec]:
        obj = await self._get_object(name)
        if obj is None:
            return None
        return ClusterSpec.from_dict(name, self.namespace, obj.get("spec") or {})

    async def read_status(self, name: str) -> ClusterStatus:
        obj = await self._get_object(name)
        if obj is None:
            return ClusterStatus()
        status = ClusterStatus.from_dict(obj.get("status"))
        status.resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        return status

    async def write_status(self, name: str, status: ClusterStatus) -> None:
        """Persist status, merging onto a concurrently written revision.

        Instance samplers patch the same status subresource, so on a
        conflict the latest revision is read back and the events and
        conditions of this pass are merged onto it.
        """
        for attempt in range(1, STATUS_WRITE_ATTEMPTS + 1):
            if await self._patch_status(name, status.to_dict(), status.resource_version):
                return
            logger.warning(
                f"Conflict updating status of cluster {name} "
                f"(attempt {attempt}/{STATUS_WRITE_ATTEMPTS}), merging onto latest"
            )
            status = status.merged_onto(await self.read_status(name))
        raise StatusUpdateError(
            f"Failed to update status of cluster {name}: "
            f"conflict persisted after {STATUS_WRITE_ATTEMPTS} attempts"
        )

    async def read_instance_statuses(self, name: str) -> List[InstanceDiskStatus]:
        obj = await self._get_object(name)
        if obj is None:
            return []
        instances = ((obj.get("status") or {}).get("diskStatus") or {}).get("instances") or {}
        return [InstanceDiskStatus.from_dict(data) for _, data in sorted(instances.items())]

    async def publish_instance_status(self, name: str, status: InstanceDiskStatus) -> None:
        patch = {"diskStatus": {"instances": {status.pod_name: status.to_dict()}}}
        if not await self._patch_status(name, patch):
            raise StatusUpdateError(f"Conflict publishing disk status of {status.pod_name}")

    async def list_volume_claims(self, cluster: ClusterSpec) -> List[VolumeClaim]:
        pvcs = await asyncio.to_thread(
            self._core_api.list_namespaced_persistent_volume_claim,
            namespace=cluster.namespace,
            label_selector=f"{CLUSTER_LABEL}={cluster.name}",
        )
        claims = []
        for pvc in pvcs.items:
            claim = claim_from_pvc(pvc)
            if claim is not None:
                claims.append(claim)
        return claims
