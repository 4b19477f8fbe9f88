from __future__ import annotations

import copy
from typing import Any, Dict

from src.common import components, names
from src.common.resources import COMPONENT_DEEP_PACKET_INSPECTION, DEFAULT_REQUIREMENTS
from src.resolver.context import RenderContext

from .desired import DesiredObjectSet, copy_secret, metadata, namespace_object, pull_secret_refs, service_account
from .intrusion_detection import image


def render_dpi(ctx: RenderContext, desired: DesiredObjectSet) -> None:
    """Render the packet inspection daemon set, or list it for removal when unused."""

    if not ctx.dpi_resources:
        desired.remove("apps/v1", "DaemonSet", names.DPI_NAMESPACE, names.DPI_NAME)
        return
    desired.add(namespace_object(names.DPI_NAMESPACE))
    for secret in ctx.installation.pull_secrets:
        desired.add(copy_secret(secret, names.DPI_NAMESPACE))
    desired.add(service_account(names.DPI_NAME, names.DPI_NAMESPACE))
    desired.add(dpi_daemonset(ctx))


def dpi_daemonset(ctx: RenderContext) -> Dict[str, Any]:
    labels = {"k8s-app": names.DPI_NAME}
    resources = ctx.component_resources.get(COMPONENT_DEEP_PACKET_INSPECTION)
    if resources is None:
        resources = DEFAULT_REQUIREMENTS[COMPONENT_DEEP_PACKET_INSPECTION]
    container = {
        "name": names.DPI_NAME,
        "image": image(ctx, components.DEEP_PACKET_INSPECTION),
        "resources": copy.deepcopy(resources),
        "env": [
            {"name": "NODENAME", "valueFrom": {"fieldRef": {"fieldPath": "spec.nodeName"}}},
            {"name": "CLUSTER_NAME", "value": ctx.es_cluster.cluster_name},
        ],
        "securityContext": {"capabilities": {"add": ["NET_ADMIN", "NET_RAW"]}},
        "volumeMounts": [{"name": "snort-alerts", "mountPath": "/var/log/calico/snort-alerts"}],
    }
    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": metadata(names.DPI_NAME, names.DPI_NAMESPACE, labels),
        "spec": {
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "serviceAccountName": names.DPI_NAME,
                    "hostNetwork": True,
                    "dnsPolicy": "ClusterFirstWithHostNet",
                    "tolerations": [{"operator": "Exists"}],
                    "imagePullSecrets": pull_secret_refs(ctx.installation.pull_secrets),
                    "containers": [container],
                    "volumes": [
                        {
                            "name": "snort-alerts",
                            "hostPath": {"path": "/var/log/calico/snort-alerts", "type": "DirectoryOrCreate"},
                        }
                    ],
                },
            },
        },
    }


__all__ = ["dpi_daemonset", "render_dpi"]
