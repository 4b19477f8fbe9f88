"""Polling watchers that latch API readiness flags and detect input changes."""

from __future__ import annotations

import hashlib
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from src.cluster.store import ObjectStore, StoreError, object_key
from src.common import names
from src.common.readiness import ReadyFlag

logger = logging.getLogger(__name__)

# Inputs whose changes should trigger a pass.
WATCHED_KINDS: Tuple[Tuple[str, str, Optional[str]], ...] = (
    (names.OPERATOR_API_VERSION, names.INTRUSION_DETECTION_KIND, None),
    (names.OPERATOR_API_VERSION, names.INSTALLATION_KIND, None),
    (names.OPERATOR_API_VERSION, names.IMAGESET_KIND, None),
    (names.OPERATOR_API_VERSION, names.APISERVER_KIND, None),
    (names.OPERATOR_API_VERSION, names.MANAGEMENT_CLUSTER_KIND, None),
    (names.OPERATOR_API_VERSION, names.MANAGEMENT_CLUSTER_CONNECTION_KIND, None),
    (names.CALICO_API_VERSION, names.LICENSE_KEY_KIND, None),
    (names.CALICO_API_VERSION, names.DPI_KIND, None),
    ("v1", "Secret", names.OPERATOR_NAMESPACE),
    ("v1", "ConfigMap", names.OPERATOR_NAMESPACE),
)


class ApiWatcher:
    """Marks ``flag`` ready the first time the API for ``kind`` can be listed."""

    def __init__(self, store: ObjectStore, flag: ReadyFlag, api_version: str, kind: str) -> None:
        self.store = store
        self.flag = flag
        self.api_version = api_version
        self.kind = kind

    def poll(self) -> bool:
        """Return True when this poll flipped the flag."""

        if self.flag.is_ready():
            return False
        try:
            self.store.list(self.api_version, self.kind)
        except StoreError as exc:
            logger.debug("%s API not ready yet: %s", self.kind, exc)
            return False
        self.flag.mark_ready()
        logger.info("%s API is ready", self.kind)
        return True


def license_api_watcher(store: ObjectStore, flag: ReadyFlag) -> ApiWatcher:
    return ApiWatcher(store, flag, names.CALICO_API_VERSION, names.LICENSE_KEY_KIND)


def dpi_api_watcher(store: ObjectStore, flag: ReadyFlag) -> ApiWatcher:
    return ApiWatcher(store, flag, names.CALICO_API_VERSION, names.DPI_KIND)


class ChangeDetector:
    """Fingerprints watched inputs by key and resourceVersion between polls."""

    def __init__(self, store: ObjectStore, watched: Sequence[Tuple[str, str, Optional[str]]] = WATCHED_KINDS) -> None:
        self.store = store
        self.watched = list(watched)
        self._fingerprint: Optional[str] = None

    def _current(self) -> str:
        digest = hashlib.sha256()
        for api_version, kind, namespace in self.watched:
            try:
                items = self.store.list(api_version, kind, namespace)
            except StoreError:
                digest.update(f"{kind}:unavailable;".encode("utf-8"))
                continue
            for line in sorted(_versions(items)):
                digest.update(line.encode("utf-8"))
        return digest.hexdigest()

    def poll(self) -> bool:
        """Return True when any watched input changed since the previous poll."""

        current = self._current()
        changed = current != self._fingerprint
        self._fingerprint = current
        return changed


def _versions(items: Iterable[dict]) -> List[str]:
    lines: List[str] = []
    for item in items:
        _, kind, namespace, name = object_key(item)
        version = (item.get("metadata") or {}).get("resourceVersion", "")
        lines.append(f"{kind}/{namespace}/{name}@{version};")
    return lines


__all__ = ["ApiWatcher", "ChangeDetector", "WATCHED_KINDS", "dpi_api_watcher", "license_api_watcher"]
