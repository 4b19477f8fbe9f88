"""Resource composition: RenderContext -> DesiredObjectSet.

Composition is pure; it never reads or writes the cluster.
"""

from __future__ import annotations

from src.common import names
from src.resolver.context import RenderContext

from .desired import DesiredObjectSet
from .dpi import render_dpi
from .intrusion_detection import AD_JOB_MODES, NAMESPACE, render_intrusion_detection


def teardown(desired: DesiredObjectSet) -> None:
    """Schedule removal of the workloads a licensed pass would have created."""

    desired.remove("apps/v1", "Deployment", NAMESPACE, names.CONTROLLER_NAME)
    desired.remove("batch/v1", "Job", NAMESPACE, names.INSTALLER_JOB_NAME)
    for mode in AD_JOB_MODES:
        desired.remove("v1", "PodTemplate", NAMESPACE, f"{names.AD_JOB_POD_TEMPLATE_BASE_NAME}.{mode}")
    desired.remove("apps/v1", "Deployment", NAMESPACE, names.AD_API_NAME)
    desired.remove("v1", "Service", NAMESPACE, names.AD_API_NAME)
    desired.remove("apps/v1", "DaemonSet", names.DPI_NAMESPACE, names.DPI_NAME)


def compose(ctx: RenderContext) -> DesiredObjectSet:
    desired = DesiredObjectSet()
    if not ctx.feature_active:
        teardown(desired)
        return desired
    render_intrusion_detection(ctx, desired)
    render_dpi(ctx, desired)
    return desired


__all__ = ["DesiredObjectSet", "compose", "teardown"]
