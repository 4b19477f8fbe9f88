"""Intrusion detection workloads: controller, installer job, AD job templates and AD API."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from src.common import components, names
from src.common.resources import (
    COMPONENT_ANOMALY_DETECTION_API,
    COMPONENT_INTRUSION_DETECTION_CONTROLLER,
)
from src.resolver.context import RenderContext

from .desired import (
    DesiredObjectSet,
    copy_secret,
    metadata,
    namespace_object,
    pull_secret_refs,
    service_account,
)

NAMESPACE = names.INTRUSION_DETECTION_NAMESPACE
ES_GATEWAY_HOST = "tigera-secure-es-gateway-http.tigera-elasticsearch.svc"
GUARDIAN_HOST = "tigera-guardian.tigera-guardian.svc"
ES_PORT = "9200"
ES_CA_MOUNT = "/etc/ssl/elastic"
AD_API_TLS_MOUNT = "/certs/https"
AD_JOBS_SERVICE_ACCOUNT = "anomaly-detectors"
AD_JOB_MODES = ("training", "detection")


def image(ctx: RenderContext, component: components.Component) -> str:
    return components.get_reference(
        component,
        ctx.installation.registry,
        image_path=ctx.installation.image_path,
        image_prefix=ctx.installation.image_prefix,
        digests=ctx.digests,
    )


def render_intrusion_detection(ctx: RenderContext, desired: DesiredObjectSet) -> None:
    desired.add(namespace_object(NAMESPACE))
    for secret in ctx.installation.pull_secrets:
        desired.add(copy_secret(secret, NAMESPACE))
    for secret in ctx.es_secrets:
        desired.add(copy_secret(secret, NAMESPACE))
    desired.add(ctx.es_public_cert.secret(NAMESPACE))
    desired.add(ctx.ad_api_key_pair.secret(ctx.operator_namespace))
    desired.add(ctx.ad_api_key_pair.secret(NAMESPACE))

    desired.add(service_account(names.CONTROLLER_NAME, NAMESPACE))
    desired.add(controller_deployment(ctx))

    if ctx.managed:
        # The data store is not reachable from a managed cluster.
        desired.remove("batch/v1", "Job", NAMESPACE, names.INSTALLER_JOB_NAME)
    else:
        desired.add(service_account(names.INSTALLER_JOB_NAME, NAMESPACE))
        desired.add(installer_job(ctx))

    desired.add(service_account(AD_JOBS_SERVICE_ACCOUNT, NAMESPACE))
    for mode in AD_JOB_MODES:
        desired.add(ad_job_pod_template(ctx, mode))

    desired.add(service_account(names.AD_API_NAME, NAMESPACE))
    desired.add(ad_api_service())
    desired.add(ad_api_deployment(ctx))


def _es_host(ctx: RenderContext) -> str:
    return GUARDIAN_HOST if ctx.managed else ES_GATEWAY_HOST


def _es_env(ctx: RenderContext, user_secret: str) -> List[Dict[str, Any]]:
    return [
        {"name": "CLUSTER_NAME", "value": ctx.es_cluster.cluster_name},
        {"name": "ELASTIC_HOST", "value": _es_host(ctx)},
        {"name": "ELASTIC_PORT", "value": ES_PORT},
        {"name": "ELASTIC_CA", "value": f"{ES_CA_MOUNT}/tls.crt"},
        {
            "name": "ELASTIC_USER",
            "valueFrom": {"secretKeyRef": {"name": user_secret, "key": "username"}},
        },
        {
            "name": "ELASTIC_PASSWORD",
            "valueFrom": {"secretKeyRef": {"name": user_secret, "key": "password"}},
        },
    ]


def _es_ca_volume() -> Dict[str, Any]:
    return {"name": "elastic-ca", "secret": {"secretName": names.ES_PUBLIC_CERT_SECRET}}


def _es_ca_mount() -> Dict[str, Any]:
    return {"name": "elastic-ca", "mountPath": ES_CA_MOUNT, "readOnly": True}


def _container(
    name: str,
    image_ref: str,
    env: List[Dict[str, Any]],
    mounts: List[Dict[str, Any]],
    resources: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    container: Dict[str, Any] = {
        "name": name,
        "image": image_ref,
        "env": env,
        "volumeMounts": mounts,
        "securityContext": {"allowPrivilegeEscalation": False, "runAsNonRoot": True},
    }
    if resources is not None:
        container["resources"] = copy.deepcopy(resources)
    return container


def _pod_spec(
    ctx: RenderContext,
    service_account_name: str,
    containers: List[Dict[str, Any]],
    volumes: List[Dict[str, Any]],
    restart_policy: Optional[str] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "serviceAccountName": service_account_name,
        "imagePullSecrets": pull_secret_refs(ctx.installation.pull_secrets),
        "containers": containers,
        "volumes": volumes,
    }
    if restart_policy:
        spec["restartPolicy"] = restart_policy
    return spec


def controller_deployment(ctx: RenderContext) -> Dict[str, Any]:
    labels = {"k8s-app": names.CONTROLLER_NAME}
    env = _es_env(ctx, names.ES_INTRUSION_DETECTION_USER_SECRET)
    if ctx.management:
        env.append({"name": "MULTI_CLUSTER_FORWARDING_ENDPOINT", "value": "https://tigera-manager.tigera-manager.svc:9443"})
    container = _container(
        names.CONTROLLER_CONTAINER,
        image(ctx, components.INTRUSION_DETECTION_CONTROLLER),
        env,
        [_es_ca_mount()],
        ctx.component_resources.get(COMPONENT_INTRUSION_DETECTION_CONTROLLER),
    )
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata(names.CONTROLLER_NAME, NAMESPACE, labels),
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": _pod_spec(ctx, names.CONTROLLER_NAME, [container], [_es_ca_volume()]),
            },
        },
    }


def installer_job(ctx: RenderContext) -> Dict[str, Any]:
    labels = {"job-name": names.INSTALLER_JOB_NAME}
    env = _es_env(ctx, names.ES_INSTALLER_ACCESS_SECRET)
    env.extend(
        [
            {"name": "ELASTIC_REPLICAS", "value": str(ctx.es_cluster.replicas)},
            {"name": "ELASTIC_SHARDS", "value": str(ctx.es_cluster.shards)},
        ]
    )
    container = _container(
        names.INSTALLER_CONTAINER,
        image(ctx, components.ELASTIC_TSEE_INSTALLER),
        env,
        [_es_ca_mount()],
    )
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": metadata(names.INSTALLER_JOB_NAME, NAMESPACE, labels),
        "spec": {
            "backoffLimit": 6,
            "template": {
                "metadata": {"labels": labels},
                "spec": _pod_spec(ctx, names.INSTALLER_JOB_NAME, [container], [_es_ca_volume()], "OnFailure"),
            },
        },
    }


def ad_job_pod_template(ctx: RenderContext, mode: str) -> Dict[str, Any]:
    name = f"{names.AD_JOB_POD_TEMPLATE_BASE_NAME}.{mode}"
    labels = {"tigera.io.detector-cycle": mode}
    env = _es_env(ctx, names.ES_AD_JOB_USER_SECRET)
    env.append({"name": "AD_CYCLE", "value": mode})
    container = _container(
        names.AD_JOB_CONTAINER,
        image(ctx, components.ANOMALY_DETECTION_JOBS),
        env,
        [_es_ca_mount()],
    )
    return {
        "apiVersion": "v1",
        "kind": "PodTemplate",
        "metadata": metadata(name, NAMESPACE, labels),
        "template": {
            "metadata": {"labels": labels},
            "spec": _pod_spec(ctx, AD_JOBS_SERVICE_ACCOUNT, [container], [_es_ca_volume()], "OnFailure"),
        },
    }


def ad_api_service() -> Dict[str, Any]:
    labels = {"k8s-app": names.AD_API_NAME}
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata(names.AD_API_NAME, NAMESPACE, labels),
        "spec": {
            "selector": labels,
            "ports": [
                {"name": "https", "port": names.AD_API_PORT, "targetPort": names.AD_API_PORT, "protocol": "TCP"}
            ],
        },
    }


def ad_api_deployment(ctx: RenderContext) -> Dict[str, Any]:
    labels = {"k8s-app": names.AD_API_NAME}
    env = [
        {"name": "LISTEN_ADDR", "value": f":{names.AD_API_PORT}"},
        {"name": "TLS_CERT", "value": f"{AD_API_TLS_MOUNT}/tls.crt"},
        {"name": "TLS_KEY", "value": f"{AD_API_TLS_MOUNT}/tls.key"},
    ]
    container = _container(
        names.AD_API_NAME,
        image(ctx, components.ANOMALY_DETECTION_API),
        env,
        [{"name": "tls", "mountPath": AD_API_TLS_MOUNT, "readOnly": True}],
        ctx.component_resources.get(COMPONENT_ANOMALY_DETECTION_API),
    )
    container["ports"] = [{"containerPort": names.AD_API_PORT, "name": "https"}]
    volumes = [{"name": "tls", "secret": {"secretName": names.AD_API_TLS_SECRET}}]
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata(names.AD_API_NAME, NAMESPACE, labels),
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": _pod_spec(ctx, names.AD_API_NAME, [container], volumes),
            },
        },
    }


__all__ = [
    "ad_api_deployment",
    "ad_api_service",
    "ad_job_pod_template",
    "controller_deployment",
    "installer_job",
    "render_intrusion_detection",
]
