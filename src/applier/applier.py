"""Idempotent create-or-update of a desired object set against live cluster state."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jsonpatch

from src.cluster.store import ConflictError, NotFoundError, ObjectKey, ObjectStore, StoreError, describe, object_key
from src.common.errors import ApplyError
from src.render.desired import DesiredObjectSet
from src.status.manager import StatusSink

logger = logging.getLogger(__name__)

FieldPath = Tuple[str, ...]

_LABELS: FieldPath = ("metadata", "labels")
_ANNOTATIONS: FieldPath = ("metadata", "annotations")
_WORKLOAD_FIELDS = (_LABELS, _ANNOTATIONS, ("spec",))

# Fields compared (and written) per kind. Anything else on the live object is server-owned.
COMPARED_FIELDS: Dict[str, Tuple[FieldPath, ...]] = {
    "Deployment": _WORKLOAD_FIELDS,
    "DaemonSet": _WORKLOAD_FIELDS,
    "StatefulSet": _WORKLOAD_FIELDS,
    "Job": _WORKLOAD_FIELDS,
    "CronJob": _WORKLOAD_FIELDS,
    "PodTemplate": (_LABELS, _ANNOTATIONS, ("template",)),
    "Secret": (_LABELS, ("data",), ("type",)),
    "ConfigMap": (_LABELS, ("data",)),
    "Service": (_LABELS, ("spec",)),
    "Namespace": (_LABELS,),
    "ServiceAccount": (_LABELS,),
}
_MERGED_FIELDS = {_LABELS, _ANNOTATIONS}

# Kinds whose compared fields cannot be updated in place.
RECREATE_KINDS = frozenset({"Job"})

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
RECREATED = "recreated"
DELETED = "deleted"


@dataclass
class ApplyReport:
    actions: List[Tuple[ObjectKey, str]] = field(default_factory=list)
    failures: List[Tuple[str, Exception]] = field(default_factory=list)

    def keys_with(self, action: str) -> List[ObjectKey]:
        return [key for key, done in self.actions if done == action]

    @property
    def ok(self) -> bool:
        return not self.failures


# Records the compared fields of the last write so dropped fields can be told from server defaults.
LAST_APPLIED_ANNOTATION = "operator.tigera.io/last-applied"


def _lookup(obj: Dict[str, Any], path: FieldPath) -> Tuple[bool, Any]:
    current: Any = obj
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _assign(obj: Dict[str, Any], path: FieldPath, value: Any) -> None:
    current = obj
    for part in path[:-1]:
        current = current.setdefault(part, {})
    current[path[-1]] = value


def _pointer_exists(doc: Any, pointer: str) -> bool:
    current = doc
    for raw in pointer.split("/")[1:]:
        part = raw.replace("~1", "/").replace("~0", "~")
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return False
    return True


def _fields_for(obj: Dict[str, Any]) -> Tuple[FieldPath, ...]:
    return COMPARED_FIELDS.get(obj.get("kind", ""), _WORKLOAD_FIELDS)


def _shape(value: Any) -> Any:
    # Leaves are dropped so Secret data never lands in an annotation.
    if isinstance(value, dict):
        return {key: _shape(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_shape(item) for item in value]
    return True


def last_applied_snapshot(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Key structure of the compared fields of ``obj``, without the values."""

    snapshot: Dict[str, Any] = {}
    for path in _fields_for(obj):
        present, value = _lookup(obj, path)
        if not present:
            continue
        value = _shape(value)
        if path == _ANNOTATIONS and isinstance(value, dict):
            value.pop(LAST_APPLIED_ANNOTATION, None)
        _assign(snapshot, path, value)
    return snapshot


def with_last_applied(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``obj`` annotated with the snapshot of its compared fields."""

    stamped = copy.deepcopy(obj)
    snapshot = json.dumps(last_applied_snapshot(obj), sort_keys=True, separators=(",", ":"))
    annotations = stamped.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[LAST_APPLIED_ANNOTATION] = snapshot
    return stamped


def read_last_applied(live: Dict[str, Any]) -> Dict[str, Any]:
    raw = ((live.get("metadata") or {}).get("annotations") or {}).get(LAST_APPLIED_ANNOTATION)
    if not isinstance(raw, str):
        return {}
    try:
        loaded = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring unreadable %s annotation", LAST_APPLIED_ANNOTATION)
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _is_server_default(op: Dict[str, Any], applied: Any) -> bool:
    # A key present only on the live object was defaulted by the server,
    # unless this operator wrote it on a previous pass.
    if op.get("op") != "remove":
        return False
    pointer = op.get("path", "")
    last = pointer.rsplit("/", 1)[-1]
    if last.isdigit():
        return False
    return not _pointer_exists(applied, pointer)


def diverges(live: Any, desired: Any, applied: Any = None) -> bool:
    if isinstance(live, (dict, list)) and isinstance(desired, type(live)):
        patch = jsonpatch.make_patch(live, desired)
        return any(not _is_server_default(op, applied) for op in patch.patch)
    return live != desired


def divergent_fields(
    live: Dict[str, Any], desired: Dict[str, Any], applied: Optional[Dict[str, Any]] = None
) -> List[FieldPath]:
    last = applied if applied is not None else read_last_applied(live)
    changed: List[FieldPath] = []
    for path in _fields_for(desired):
        wanted_present, wanted = _lookup(desired, path)
        if not wanted_present:
            continue
        live_present, current = _lookup(live, path)
        _, previous = _lookup(last, path)
        if not live_present or diverges(current, wanted, previous):
            changed.append(path)
    return changed


def merge_into_live(
    live: Dict[str, Any], desired: Dict[str, Any], applied: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Overlay the compared fields of ``desired`` onto ``live``, keeping resourceVersion.

    Labels and annotations are merged; keys written on the previous pass and no
    longer desired are dropped.
    """

    last = applied if applied is not None else read_last_applied(live)
    merged = copy.deepcopy(live)
    for path in _fields_for(desired):
        present, wanted = _lookup(desired, path)
        if not present:
            continue
        value = copy.deepcopy(wanted)
        if path in _MERGED_FIELDS:
            _, current = _lookup(merged, path)
            _, previous = _lookup(last, path)
            combined = dict(current or {})
            for stale in set(previous or {}) - set(value or {}):
                combined.pop(stale, None)
            combined.update(value or {})
            value = combined
        _assign(merged, path, value)
    return merged


class Applier:
    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def apply(self, desired: DesiredObjectSet) -> ApplyReport:
        """Apply every object in order, then every removal; failures never stop the walk."""

        report = ApplyReport()
        for obj in desired.objects:
            key = object_key(obj)
            try:
                action = self.apply_object(obj)
            except StoreError as exc:
                logger.warning("Failed to apply %s: %s", describe(key), exc)
                report.failures.append((describe(key), exc))
                continue
            report.actions.append((key, action))
        for key in desired.removals:
            try:
                if self.remove(key):
                    report.actions.append((key, DELETED))
            except StoreError as exc:
                logger.warning("Failed to delete %s: %s", describe(key), exc)
                report.failures.append((describe(key), exc))
        return report

    def apply_object(self, obj: Dict[str, Any]) -> str:
        obj = with_last_applied(obj)
        api_version, kind, namespace, name = object_key(obj)
        try:
            live = self.store.get(api_version, kind, namespace, name)
        except NotFoundError:
            try:
                self.store.create(copy.deepcopy(obj))
            except ConflictError:
                # Created concurrently; fall through to compare-and-update.
                live = self.store.get(api_version, kind, namespace, name)
            else:
                logger.info("Created %s", describe((api_version, kind, namespace, name)))
                return CREATED
        return self._reconcile_live(live, obj)

    def _reconcile_live(self, live: Dict[str, Any], obj: Dict[str, Any]) -> str:
        key = object_key(obj)
        applied = read_last_applied(live)
        changed = divergent_fields(live, obj, applied)
        if not changed:
            logger.debug("%s is up to date", describe(key))
            return UNCHANGED
        if key[1] in RECREATE_KINDS:
            self.store.delete(*key)
            self.store.create(copy.deepcopy(obj))
            logger.info("Recreated %s (changed: %s)", describe(key), _render_paths(changed))
            return RECREATED
        self.store.update(merge_into_live(live, obj, applied))
        logger.info("Updated %s (changed: %s)", describe(key), _render_paths(changed))
        return UPDATED

    def remove(self, key: ObjectKey) -> bool:
        try:
            self.store.delete(*key)
        except NotFoundError:
            return False
        logger.info("Deleted %s", describe(key))
        return True


def _render_paths(paths: Sequence[FieldPath]) -> str:
    return ", ".join(".".join(path) for path in paths)


def register_workloads(status: StatusSink, desired: DesiredObjectSet) -> None:
    refs = desired.workload_refs()
    status.add_deployments(refs["Deployment"])
    status.add_daemonsets(refs["DaemonSet"])
    status.add_statefulsets(refs["StatefulSet"])
    status.add_cronjobs(refs["CronJob"])


def apply_and_report(
    store: ObjectStore,
    desired: DesiredObjectSet,
    status: StatusSink,
    *,
    clear_on_success: bool = True,
    applier: Optional[Applier] = None,
) -> ApplyReport:
    """Apply ``desired`` and publish health; raise ApplyError when any object failed.

    The first failure becomes the degraded (reason, message) pair.
    """

    register_workloads(status, desired)
    report = (applier or Applier(store)).apply(desired)
    if report.failures:
        key, exc = report.failures[0]
        status.set_degraded(f"Error creating or updating {key}", str(exc))
        raise ApplyError(report.failures)
    if clear_on_success:
        status.clear_degraded()
    return report


__all__ = [
    "ApplyReport",
    "Applier",
    "COMPARED_FIELDS",
    "CREATED",
    "DELETED",
    "LAST_APPLIED_ANNOTATION",
    "RECREATED",
    "UNCHANGED",
    "UPDATED",
    "apply_and_report",
    "divergent_fields",
    "diverges",
    "last_applied_snapshot",
    "merge_into_live",
    "read_last_applied",
    "register_workloads",
    "with_last_applied",
]
