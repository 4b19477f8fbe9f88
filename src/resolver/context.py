from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from src.cluster.certificates import KeyPair


class Topology(str, Enum):
    STANDALONE = "Standalone"
    MANAGEMENT = "ManagementCluster"
    MANAGED = "ManagedCluster"


@dataclass(frozen=True)
class InstallationInfo:
    variant: str
    registry: str
    image_path: Optional[str] = None
    image_prefix: Optional[str] = None
    pull_secrets: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class EsClusterConfig:
    cluster_name: str
    replicas: int
    shards: int


def _frozen(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class RenderContext:
    """Snapshot of every external input needed to compose one pass.

    A context with ``feature_active`` False is complete as well: nothing past the
    license check is consulted and the composer renders nothing for it.
    """

    installation: InstallationInfo
    license_features: FrozenSet[str]
    feature_active: bool
    topology: Topology = Topology.STANDALONE
    digests: Mapping[str, str] = field(default_factory=lambda: _frozen(None))
    es_cluster: Optional[EsClusterConfig] = None
    es_public_cert: Optional[KeyPair] = None
    ad_api_key_pair: Optional[KeyPair] = None
    es_secrets: Tuple[Dict[str, Any], ...] = ()
    dpi_resources: Tuple[Dict[str, Any], ...] = ()
    component_resources: Mapping[str, Dict[str, Any]] = field(default_factory=lambda: _frozen(None))
    operator_namespace: str = "tigera-operator"

    def __post_init__(self) -> None:
        object.__setattr__(self, "digests", _frozen(self.digests))
        object.__setattr__(self, "component_resources", _frozen(self.component_resources))

    @property
    def managed(self) -> bool:
        return self.topology is Topology.MANAGED

    @property
    def management(self) -> bool:
        return self.topology is Topology.MANAGEMENT


__all__ = ["EsClusterConfig", "InstallationInfo", "RenderContext", "Topology"]
