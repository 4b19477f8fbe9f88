"""Component image catalog and image reference resolution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

ENTERPRISE_RELEASE = "v3.15.0"
DEFAULT_REGISTRY = "quay.io/"
DIGEST_PREFIX = "sha256:"


class ImageResolutionError(ValueError):
    """Raised when a component has neither a default version nor an override digest."""


@dataclass(frozen=True)
class Component:
    name: str
    image: str
    version: str


INTRUSION_DETECTION_CONTROLLER = Component(
    name="intrusion-detection-controller",
    image="tigera/intrusion-detection-controller",
    version=ENTERPRISE_RELEASE,
)
ELASTIC_TSEE_INSTALLER = Component(
    name="intrusion-detection-job-installer",
    image="tigera/intrusion-detection-job-installer",
    version=ENTERPRISE_RELEASE,
)
DEEP_PACKET_INSPECTION = Component(
    name="deep-packet-inspection",
    image="tigera/deep-packet-inspection",
    version=ENTERPRISE_RELEASE,
)
ANOMALY_DETECTION_JOBS = Component(
    name="anomaly-detection-jobs",
    image="tigera/anomaly_detection_jobs",
    version=ENTERPRISE_RELEASE,
)
ANOMALY_DETECTION_API = Component(
    name="anomaly-detection-api",
    image="tigera/anomaly-detection-api",
    version=ENTERPRISE_RELEASE,
)

ENTERPRISE_COMPONENTS = (
    INTRUSION_DETECTION_CONTROLLER,
    ELASTIC_TSEE_INSTALLER,
    DEEP_PACKET_INSPECTION,
    ANOMALY_DETECTION_JOBS,
    ANOMALY_DETECTION_API,
)

_KNOWN_IMAGES = {component.image for component in ENTERPRISE_COMPONENTS}


def image_set_name(release: str = ENTERPRISE_RELEASE) -> str:
    return f"enterprise-{release}"


def normalise_registry(registry: Optional[str]) -> str:
    value = (registry or "").strip()
    if value and not value.endswith("/"):
        value = f"{value}/"
    return value


def select_registry(
    declared: Optional[str],
    computed: Optional[str],
    default: str = DEFAULT_REGISTRY,
) -> str:
    """Pick the registry prefix: declared beats computed, computed beats the default."""

    for candidate in (declared, computed):
        value = normalise_registry(candidate)
        if value:
            return value
    return normalise_registry(default)


def image_set_digests(image_set: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Flatten an ImageSet object into a canonical-image -> digest catalog."""

    if not image_set:
        return {}
    images = (image_set.get("spec") or {}).get("images") or []
    catalog: Dict[str, str] = {}
    for entry in images:
        if not isinstance(entry, Mapping):
            continue
        image = entry.get("image")
        digest = entry.get("digest")
        if isinstance(image, str) and isinstance(digest, str):
            catalog[image] = digest
    return catalog


def validate_image_set(image_set: Mapping[str, Any]) -> List[str]:
    """Return a list of problems with the ImageSet; empty when it is usable."""

    problems: List[str] = []
    images = (image_set.get("spec") or {}).get("images")
    if images is None:
        return problems
    if not isinstance(images, list):
        return ["spec.images must be a list"]
    seen = set()
    for index, entry in enumerate(images):
        if not isinstance(entry, Mapping):
            problems.append(f"spec.images[{index}] must be an object")
            continue
        image = entry.get("image")
        digest = entry.get("digest")
        if image not in _KNOWN_IMAGES:
            problems.append(f"unknown image {image!r}")
        elif image in seen:
            problems.append(f"image {image!r} listed more than once")
        seen.add(image)
        if not isinstance(digest, str) or not digest.startswith(DIGEST_PREFIX):
            problems.append(f"digest for {image!r} must start with {DIGEST_PREFIX!r}")
    return problems


def _rewrite_image(image: str, image_path: Optional[str], image_prefix: Optional[str]) -> str:
    path, _, leaf = image.rpartition("/")
    if image_path:
        path = image_path.strip("/")
    if image_prefix:
        leaf = f"{image_prefix}{leaf}"
    return f"{path}/{leaf}" if path else leaf


def get_reference(
    component: Component,
    registry: str,
    *,
    image_path: Optional[str] = None,
    image_prefix: Optional[str] = None,
    digests: Optional[Mapping[str, str]] = None,
) -> str:
    """Resolve the fully qualified image reference for ``component``.

    A catalog digest for the canonical image pins the reference and the default
    version is ignored. The catalog is keyed by the unrewritten image name.
    """

    image = _rewrite_image(component.image, image_path, image_prefix)
    digest = (digests or {}).get(component.image)
    if digest:
        return f"{registry}{image}@{digest}"
    if not component.version:
        raise ImageResolutionError(
            f"no version or digest available for image {component.image}"
        )
    return f"{registry}{image}:{component.version}"


def unresolvable(
    components: Iterable[Component], digests: Optional[Mapping[str, str]] = None
) -> List[str]:
    catalog = digests or {}
    return [c.image for c in components if not c.version and not catalog.get(c.image)]


__all__ = [
    "ANOMALY_DETECTION_API",
    "ANOMALY_DETECTION_JOBS",
    "Component",
    "DEEP_PACKET_INSPECTION",
    "DEFAULT_REGISTRY",
    "ELASTIC_TSEE_INSTALLER",
    "ENTERPRISE_COMPONENTS",
    "ENTERPRISE_RELEASE",
    "INTRUSION_DETECTION_CONTROLLER",
    "ImageResolutionError",
    "get_reference",
    "image_set_digests",
    "image_set_name",
    "normalise_registry",
    "select_registry",
    "unresolvable",
    "validate_image_set",
]
