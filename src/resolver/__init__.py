"""Precondition resolution: external cluster state -> RenderContext."""

from .context import EsClusterConfig, InstallationInfo, RenderContext, Topology
from .preconditions import PreconditionResolver

__all__ = [
    "EsClusterConfig",
    "InstallationInfo",
    "PreconditionResolver",
    "RenderContext",
    "Topology",
]
