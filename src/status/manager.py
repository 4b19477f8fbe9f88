"""Status sink interface and a per-kind health aggregator."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from src.cluster.store import NotFoundError, ObjectKey, ObjectStore, StoreError

logger = logging.getLogger(__name__)


class StatusSink(Protocol):
    def add_deployments(self, refs: Sequence[ObjectKey]) -> None:
        ...

    def add_daemonsets(self, refs: Sequence[ObjectKey]) -> None:
        ...

    def add_statefulsets(self, refs: Sequence[ObjectKey]) -> None:
        ...

    def add_cronjobs(self, refs: Sequence[ObjectKey]) -> None:
        ...

    def set_degraded(self, reason: str, message: str) -> None:
        ...

    def clear_degraded(self) -> None:
        ...

    def is_available(self) -> bool:
        ...


@dataclass(frozen=True)
class KindRollup:
    kind: str
    ready: int
    total: int

    def __str__(self) -> str:
        return f"{self.ready}/{self.total} {self.kind.lower()}s ready"


def _ready(kind: str, obj: Dict[str, Any]) -> bool:
    status = obj.get("status") or {}
    spec = obj.get("spec") or {}
    if kind == "Deployment" or kind == "StatefulSet":
        wanted = spec.get("replicas", 1)
        return int(status.get("readyReplicas") or 0) >= int(wanted)
    if kind == "DaemonSet":
        desired = int(status.get("desiredNumberScheduled") or 0)
        return int(status.get("numberAvailable") or 0) >= desired
    if kind == "CronJob":
        return not spec.get("suspend", False)
    return True


class StatusManager:
    """Keeps the current degraded condition and the workloads to roll up per kind."""

    KINDS = ("Deployment", "DaemonSet", "StatefulSet", "CronJob")

    def __init__(self, component: str = "intrusion-detection") -> None:
        self.component = component
        self._lock = threading.Lock()
        self._refs: Dict[str, List[ObjectKey]] = {kind: [] for kind in self.KINDS}
        self._degraded: Optional[Tuple[str, str]] = None

    def _set_refs(self, kind: str, refs: Sequence[ObjectKey]) -> None:
        with self._lock:
            self._refs[kind] = list(refs)

    def add_deployments(self, refs: Sequence[ObjectKey]) -> None:
        self._set_refs("Deployment", refs)

    def add_daemonsets(self, refs: Sequence[ObjectKey]) -> None:
        self._set_refs("DaemonSet", refs)

    def add_statefulsets(self, refs: Sequence[ObjectKey]) -> None:
        self._set_refs("StatefulSet", refs)

    def add_cronjobs(self, refs: Sequence[ObjectKey]) -> None:
        self._set_refs("CronJob", refs)

    def set_degraded(self, reason: str, message: str) -> None:
        with self._lock:
            self._degraded = (reason, message)
        logger.warning("%s degraded: %s %s", self.component, reason, message)

    def clear_degraded(self) -> None:
        with self._lock:
            was = self._degraded
            self._degraded = None
        if was is not None:
            logger.info("%s no longer degraded", self.component)

    def is_available(self) -> bool:
        with self._lock:
            return self._degraded is None

    @property
    def degraded(self) -> Optional[Tuple[str, str]]:
        with self._lock:
            return self._degraded

    def refs(self, kind: str) -> List[ObjectKey]:
        with self._lock:
            return list(self._refs.get(kind, []))

    def rollup(self, store: ObjectStore) -> List[KindRollup]:
        """Count ready workloads per registered kind."""

        rollups: List[KindRollup] = []
        for kind in self.KINDS:
            refs = self.refs(kind)
            if not refs:
                continue
            ready = 0
            for api_version, ref_kind, namespace, name in refs:
                try:
                    obj = store.get(api_version, ref_kind, namespace, name)
                except NotFoundError:
                    continue
                except StoreError as exc:
                    logger.debug("Could not read %s %s/%s: %s", ref_kind, namespace, name, exc)
                    continue
                if _ready(kind, obj):
                    ready += 1
            rollups.append(KindRollup(kind=kind, ready=ready, total=len(refs)))
        return rollups

    def snapshot(self, store: Optional[ObjectStore] = None) -> Dict[str, Any]:
        degraded = self.degraded
        data: Dict[str, Any] = {
            "component": self.component,
            "available": degraded is None,
            "degraded": None if degraded is None else {"reason": degraded[0], "message": degraded[1]},
        }
        if store is not None:
            data["workloads"] = {r.kind: {"ready": r.ready, "total": r.total} for r in self.rollup(store)}
        return data


__all__ = ["KindRollup", "StatusManager", "StatusSink"]
