"""Per-component resource requirements carried on the IntrusionDetection resource."""

from __future__ import annotations

import copy
from typing import Any, Dict, List

COMPONENT_DEEP_PACKET_INSPECTION = "DeepPacketInspection"
COMPONENT_INTRUSION_DETECTION_CONTROLLER = "IntrusionDetectionController"
COMPONENT_ANOMALY_DETECTION_API = "AnomalyDetectionAPI"

KNOWN_COMPONENTS = (
    COMPONENT_DEEP_PACKET_INSPECTION,
    COMPONENT_INTRUSION_DETECTION_CONTROLLER,
    COMPONENT_ANOMALY_DETECTION_API,
)

DPI_DEFAULT_CPU_REQUEST = "100m"
DPI_DEFAULT_CPU_LIMIT = "1"
DPI_DEFAULT_MEMORY_REQUEST = "100Mi"
DPI_DEFAULT_MEMORY_LIMIT = "1Gi"

# Only components listed here get defaults persisted back to the resource.
DEFAULT_REQUIREMENTS: Dict[str, Dict[str, Dict[str, str]]] = {
    COMPONENT_DEEP_PACKET_INSPECTION: {
        "limits": {"cpu": DPI_DEFAULT_CPU_LIMIT, "memory": DPI_DEFAULT_MEMORY_LIMIT},
        "requests": {"cpu": DPI_DEFAULT_CPU_REQUEST, "memory": DPI_DEFAULT_MEMORY_REQUEST},
    },
}


def _entries(intrusion_detection: Dict[str, Any]) -> List[Any]:
    spec = intrusion_detection.get("spec") or {}
    entries = spec.get("componentResources")
    return entries if isinstance(entries, list) else []


def validate_component_resources(intrusion_detection: Dict[str, Any]) -> List[str]:
    problems: List[str] = []
    spec = intrusion_detection.get("spec") or {}
    raw = spec.get("componentResources")
    if raw is not None and not isinstance(raw, list):
        return ["spec.componentResources must be a list"]
    seen = set()
    for index, entry in enumerate(_entries(intrusion_detection)):
        if not isinstance(entry, dict):
            problems.append(f"spec.componentResources[{index}] must be an object")
            continue
        name = entry.get("componentName")
        if name not in KNOWN_COMPONENTS:
            problems.append(f"spec.componentResources[{index}].componentName {name!r} is not a valid component")
        elif name in seen:
            problems.append(f"spec.componentResources[{index}].componentName {name!r} is repeated")
        seen.add(name)
        requirements = entry.get("resourceRequirements")
        if requirements is not None and not isinstance(requirements, dict):
            problems.append(f"spec.componentResources[{index}].resourceRequirements must be an object")
    return problems


def fill_component_defaults(intrusion_detection: Dict[str, Any]) -> bool:
    """Fill absent default requirements in place; return True when the resource changed.

    Entries with a non-null ``resourceRequirements`` are left untouched.
    """

    spec = intrusion_detection.setdefault("spec", {})
    entries = spec.get("componentResources")
    if not isinstance(entries, list):
        entries = []
    changed = False
    for name, defaults in DEFAULT_REQUIREMENTS.items():
        match = next((e for e in entries if isinstance(e, dict) and e.get("componentName") == name), None)
        if match is None:
            entries.append({"componentName": name, "resourceRequirements": copy.deepcopy(defaults)})
            changed = True
        elif match.get("resourceRequirements") is None:
            match["resourceRequirements"] = copy.deepcopy(defaults)
            changed = True
    if changed:
        spec["componentResources"] = entries
    return changed


def component_requirements(intrusion_detection: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Map component identity to its resource requirements, keyed by name not position."""

    resolved: Dict[str, Dict[str, Any]] = {}
    for entry in _entries(intrusion_detection):
        if not isinstance(entry, dict):
            continue
        name = entry.get("componentName")
        requirements = entry.get("resourceRequirements")
        if isinstance(name, str) and isinstance(requirements, dict):
            resolved[name] = copy.deepcopy(requirements)
    return resolved


__all__ = [
    "COMPONENT_ANOMALY_DETECTION_API",
    "COMPONENT_DEEP_PACKET_INSPECTION",
    "COMPONENT_INTRUSION_DETECTION_CONTROLLER",
    "DEFAULT_REQUIREMENTS",
    "KNOWN_COMPONENTS",
    "component_requirements",
    "fill_component_defaults",
    "validate_component_resources",
]
