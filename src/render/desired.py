from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from src.cluster.store import ObjectKey, object_key
from src.common import names

WORKLOAD_KINDS = ("Deployment", "DaemonSet", "StatefulSet", "CronJob")

# Fields the API server owns; stripped when an object is copied between namespaces.
_SERVER_METADATA = ("resourceVersion", "uid", "creationTimestamp", "generation", "managedFields", "selfLink", "ownerReferences")


@dataclass
class DesiredObjectSet:
    """Ordered objects to create or update, then ordered objects to remove."""

    objects: List[Dict[str, Any]] = field(default_factory=list)
    removals: List[ObjectKey] = field(default_factory=list)

    def add(self, *objs: Dict[str, Any]) -> None:
        self.objects.extend(objs)

    def remove(self, api_version: str, kind: str, namespace: str, name: str) -> None:
        self.removals.append((api_version, kind, namespace, name))

    def keys(self) -> List[ObjectKey]:
        return [object_key(obj) for obj in self.objects]

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [obj for obj in self.objects if obj.get("kind") == kind]

    def workload_refs(self) -> Dict[str, List[ObjectKey]]:
        """Workload references grouped per kind, for status registration."""

        refs: Dict[str, List[ObjectKey]] = {kind: [] for kind in WORKLOAD_KINDS}
        for obj in self.objects:
            kind = obj.get("kind")
            if kind in refs:
                refs[kind].append(object_key(obj))
        return refs

    def __len__(self) -> int:
        return len(self.objects)


def metadata(name: str, namespace: str = "", labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"name": name}
    if namespace:
        meta["namespace"] = namespace
    merged = {names.MANAGED_BY_LABEL: names.MANAGED_BY_VALUE}
    merged.update(labels or {})
    meta["labels"] = merged
    return meta


def copy_secret(secret: Dict[str, Any], namespace: str) -> Dict[str, Any]:
    source_meta = secret.get("metadata") or {}
    copied: Dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": source_meta.get("name"), "namespace": namespace},
        "type": secret.get("type", "Opaque"),
        "data": copy.deepcopy(secret.get("data") or {}),
    }
    for key in ("labels", "annotations"):
        if source_meta.get(key):
            copied["metadata"][key] = copy.deepcopy(source_meta[key])
    for key in _SERVER_METADATA:
        copied["metadata"].pop(key, None)
    return copied


def namespace_object(name: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": metadata(name)}


def service_account(name: str, namespace: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": metadata(name, namespace)}


def pull_secret_refs(secrets: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [{"name": (s.get("metadata") or {}).get("name")} for s in secrets]


__all__ = [
    "DesiredObjectSet",
    "WORKLOAD_KINDS",
    "copy_secret",
    "metadata",
    "namespace_object",
    "pull_secret_refs",
    "service_account",
]
