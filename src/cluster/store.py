"""Cluster object store interface and an in-memory implementation.

Objects are plain Kubernetes-style dicts. Cluster-scoped objects use an empty
namespace.
"""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import yaml

ObjectKey = Tuple[str, str, str, str]


class StoreError(Exception):
    """Raised when the cluster object store rejects or fails a request."""


class NotFoundError(StoreError):
    """The requested object (or its API) does not exist."""


class ConflictError(StoreError):
    """The object already exists, or the update carried a stale resourceVersion."""


class ObjectStore(Protocol):
    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        ...

    def list(self, api_version: str, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        ...

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def delete(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> None:
        ...


def object_key(obj: Dict[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise StoreError(f"{obj.get('kind', 'object')} is missing metadata.name")
    return (
        str(obj.get("apiVersion", "")),
        str(obj.get("kind", "")),
        str(metadata.get("namespace") or ""),
        str(name),
    )


def describe(key: ObjectKey) -> str:
    _, kind, namespace, name = key
    return f"{kind}/{namespace}/{name}" if namespace else f"{kind}/{name}"


def get_or_none(
    store: ObjectStore, api_version: str, kind: str, namespace: Optional[str], name: str
) -> Optional[Dict[str, Any]]:
    try:
        return store.get(api_version, kind, namespace, name)
    except NotFoundError:
        return None


class InMemoryStore:
    """Thread-safe dict-backed object store with optimistic concurrency."""

    def __init__(self, objects: Optional[Iterable[Dict[str, Any]]] = None) -> None:
        self._objects: Dict[ObjectKey, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._versions = itertools.count(1)
        for obj in objects or ():
            self.create(obj)

    @classmethod
    def from_manifests(cls, paths: Iterable[Path]) -> "InMemoryStore":
        documents: List[Dict[str, Any]] = []
        for path in paths:
            with Path(path).open("r", encoding="utf-8") as handle:
                for doc in yaml.safe_load_all(handle):
                    if doc is None:
                        continue
                    if not isinstance(doc, dict):
                        raise StoreError(f"{path}: manifest documents must be mappings")
                    documents.append(doc)
        return cls(documents)

    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        key = (api_version, kind, namespace or "", name)
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(f"{describe(key)} not found")
            return copy.deepcopy(stored)

    def list(self, api_version: str, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(obj)
                for key, obj in sorted(self._objects.items())
                if key[0] == api_version and key[1] == kind and (namespace is None or key[2] == namespace)
            ]

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        key = object_key(obj)
        with self._lock:
            if key in self._objects:
                raise ConflictError(f"{describe(key)} already exists")
            stored = copy.deepcopy(obj)
            metadata = stored.setdefault("metadata", {})
            metadata["resourceVersion"] = str(next(self._versions))
            metadata.setdefault("uid", str(uuid.uuid4()))
            metadata.setdefault(
                "creationTimestamp", datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            )
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        key = object_key(obj)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{describe(key)} not found")
            expected = (obj.get("metadata") or {}).get("resourceVersion")
            if expected and expected != current["metadata"]["resourceVersion"]:
                raise ConflictError(
                    f"{describe(key)} was modified (resourceVersion {expected} is stale)"
                )
            stored = copy.deepcopy(obj)
            metadata = stored.setdefault("metadata", {})
            metadata["uid"] = current["metadata"].get("uid")
            metadata["creationTimestamp"] = current["metadata"].get("creationTimestamp")
            metadata["resourceVersion"] = str(next(self._versions))
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def delete(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> None:
        key = (api_version, kind, namespace or "", name)
        with self._lock:
            if self._objects.pop(key, None) is None:
                raise NotFoundError(f"{describe(key)} not found")

    def dump(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(obj) for _, obj in sorted(self._objects.items())]

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


__all__ = [
    "ConflictError",
    "InMemoryStore",
    "NotFoundError",
    "ObjectKey",
    "ObjectStore",
    "StoreError",
    "describe",
    "get_or_none",
    "object_key",
]
