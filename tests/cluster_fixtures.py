"""Shared cluster state builders and test doubles for the reconcile tests."""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.cluster.store import InMemoryStore, ObjectKey
from src.common import components, names

FAKE_CERT = base64.b64encode(b"-----BEGIN CERTIFICATE-----\nZmFrZQ==\n-----END CERTIFICATE-----\n").decode("ascii")


def installation(
    variant: str = names.ENTERPRISE_VARIANT,
    registry: Optional[str] = None,
    computed_registry: Optional[str] = None,
    pull_secrets: Sequence[str] = (),
    image_path: Optional[str] = None,
    image_prefix: Optional[str] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"variant": variant}
    if registry is not None:
        spec["registry"] = registry
    if pull_secrets:
        spec["imagePullSecrets"] = [{"name": name} for name in pull_secrets]
    if image_path is not None:
        spec["imagePath"] = image_path
    if image_prefix is not None:
        spec["imagePrefix"] = image_prefix
    status: Dict[str, Any] = {"variant": variant}
    if computed_registry is not None:
        status["computed"] = {"registry": computed_registry}
    return {
        "apiVersion": names.OPERATOR_API_VERSION,
        "kind": names.INSTALLATION_KIND,
        "metadata": {"name": names.INSTALLATION_NAME},
        "spec": spec,
        "status": status,
    }


def intrusion_detection(component_resources: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    spec: Dict[str, Any] = {}
    if component_resources is not None:
        spec["componentResources"] = component_resources
    return {
        "apiVersion": names.OPERATOR_API_VERSION,
        "kind": names.INTRUSION_DETECTION_KIND,
        "metadata": {"name": names.INTRUSION_DETECTION_NAME},
        "spec": spec,
    }


def api_server(state: str = names.STATUS_READY) -> Dict[str, Any]:
    return {
        "apiVersion": names.OPERATOR_API_VERSION,
        "kind": names.APISERVER_KIND,
        "metadata": {"name": names.APISERVER_NAME},
        "status": {"state": state},
    }


def license_key(features: Sequence[str] = (names.THREAT_DEFENSE_FEATURE,)) -> Dict[str, Any]:
    return {
        "apiVersion": names.CALICO_API_VERSION,
        "kind": names.LICENSE_KEY_KIND,
        "metadata": {"name": names.LICENSE_KEY_NAME},
        "status": {"features": list(features)},
    }


def image_set(images: Sequence[Tuple[str, str]], release: str = components.ENTERPRISE_RELEASE) -> Dict[str, Any]:
    return {
        "apiVersion": names.OPERATOR_API_VERSION,
        "kind": names.IMAGESET_KIND,
        "metadata": {"name": components.image_set_name(release)},
        "spec": {"images": [{"image": image, "digest": digest} for image, digest in images]},
    }


def es_cluster_config_map(namespace: str = names.OPERATOR_NAMESPACE) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": names.ES_CLUSTER_CONFIG_MAP, "namespace": namespace},
        "data": {"clusterName": "cluster", "replicas": "1", "shards": "5"},
    }


def secret(name: str, namespace: str = names.OPERATOR_NAMESPACE, data: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "type": "Opaque",
        "data": data if data is not None else {"username": "dXNlcg==", "password": "cGFzcw=="},
    }


def es_public_cert(namespace: str = names.OPERATOR_NAMESPACE) -> Dict[str, Any]:
    return secret(names.ES_PUBLIC_CERT_SECRET, namespace, {"tls.crt": FAKE_CERT})


def management_cluster() -> Dict[str, Any]:
    return {
        "apiVersion": names.OPERATOR_API_VERSION,
        "kind": names.MANAGEMENT_CLUSTER_KIND,
        "metadata": {"name": "tigera-secure"},
    }


def management_cluster_connection() -> Dict[str, Any]:
    return {
        "apiVersion": names.OPERATOR_API_VERSION,
        "kind": names.MANAGEMENT_CLUSTER_CONNECTION_KIND,
        "metadata": {"name": "tigera-secure"},
    }


def deep_packet_inspection(name: str = "sample-dpi", namespace: str = "storefront") -> Dict[str, Any]:
    return {
        "apiVersion": names.CALICO_API_VERSION,
        "kind": names.DPI_KIND,
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"selector": "k8s-app == 'storefront'"},
    }


ES_USER_SECRETS = (names.ES_INTRUSION_DETECTION_USER_SECRET, names.ES_AD_JOB_USER_SECRET)


def ready_cluster(
    *,
    with_installer_secret: bool = True,
    with_license: bool = True,
    features: Sequence[str] = (names.THREAT_DEFENSE_FEATURE,),
    extra: Sequence[Dict[str, Any]] = (),
    installation_obj: Optional[Dict[str, Any]] = None,
    intrusion_detection_obj: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Every input a standalone enterprise cluster needs for a healthy pass."""

    objects: List[Dict[str, Any]] = [
        installation_obj or installation(),
        api_server(),
        es_cluster_config_map(),
        es_public_cert(),
        intrusion_detection_obj or intrusion_detection(),
    ]
    objects.extend(secret(name) for name in ES_USER_SECRETS)
    if with_installer_secret:
        objects.append(secret(names.ES_INSTALLER_ACCESS_SECRET))
    if with_license:
        objects.append(license_key(features))
    objects.extend(extra)
    return objects


class RecordingStatus:
    """Status sink double that records every call."""

    def __init__(self) -> None:
        self.degraded_calls: List[Tuple[str, str]] = []
        self.cleared = 0
        self.deployments: List[ObjectKey] = []
        self.daemonsets: List[ObjectKey] = []
        self.statefulsets: List[ObjectKey] = []
        self.cronjobs: List[ObjectKey] = []

    def add_deployments(self, refs: Sequence[ObjectKey]) -> None:
        self.deployments = list(refs)

    def add_daemonsets(self, refs: Sequence[ObjectKey]) -> None:
        self.daemonsets = list(refs)

    def add_statefulsets(self, refs: Sequence[ObjectKey]) -> None:
        self.statefulsets = list(refs)

    def add_cronjobs(self, refs: Sequence[ObjectKey]) -> None:
        self.cronjobs = list(refs)

    def set_degraded(self, reason: str, message: str) -> None:
        self.degraded_calls.append((reason, message))

    def clear_degraded(self) -> None:
        self.cleared += 1

    def is_available(self) -> bool:
        return not self.degraded_calls


class CountingStore(InMemoryStore):
    """In-memory store that counts writes and can fail chosen objects."""

    def __init__(self, objects: Sequence[Dict[str, Any]] = ()) -> None:
        self.creates: List[ObjectKey] = []
        self.updates: List[ObjectKey] = []
        self.deletes: List[ObjectKey] = []
        self.fail_on: Dict[Tuple[str, str], Exception] = {}
        super().__init__(objects)
        self.reset_counts()

    def reset_counts(self) -> None:
        self.creates = []
        self.updates = []
        self.deletes = []

    def _maybe_fail(self, kind: str, name: str) -> None:
        exc = self.fail_on.get((kind, name))
        if exc is not None:
            raise exc

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = obj.get("metadata") or {}
        self._maybe_fail(obj.get("kind", ""), meta.get("name", ""))
        created = super().create(obj)
        self.creates.append((obj.get("apiVersion", ""), obj.get("kind", ""), meta.get("namespace") or "", meta.get("name", "")))
        return created

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = obj.get("metadata") or {}
        self._maybe_fail(obj.get("kind", ""), meta.get("name", ""))
        updated = super().update(obj)
        self.updates.append((obj.get("apiVersion", ""), obj.get("kind", ""), meta.get("namespace") or "", meta.get("name", "")))
        return updated

    def delete(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> None:
        super().delete(api_version, kind, namespace, name)
        self.deletes.append((api_version, kind, namespace or "", name))


def find(store: InMemoryStore, api_version: str, kind: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
    for obj in store.list(api_version, kind, namespace):
        if obj["metadata"]["name"] == name:
            return obj
    return None


def container(workload: Dict[str, Any], name: str) -> Dict[str, Any]:
    spec = workload.get("spec", {}).get("template", {}).get("spec") or workload["template"]["spec"]
    for candidate in spec["containers"]:
        if candidate["name"] == name:
            return candidate
    raise AssertionError(f"container {name} not found")
