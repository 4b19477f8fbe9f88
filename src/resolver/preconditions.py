"""Gather every external input for a pass into a RenderContext, in a fixed order.

The first missing or not-ready input ends resolution with a typed failure; the
data-store secret check reports every missing secret at once. Nothing here
writes to the cluster.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from src.cluster.certificates import CertificateManager, KeyPair
from src.cluster.store import NotFoundError, ObjectStore, StoreError
from src.common import components, names
from src.common.errors import DeferredPrecondition, FatalPrecondition
from src.common.resources import component_requirements

from .context import EsClusterConfig, InstallationInfo, RenderContext, Topology

logger = logging.getLogger(__name__)

SECRETS_NOT_READY = "Elasticsearch secrets are not available yet, waiting until they become available"


class PreconditionResolver:
    def __init__(
        self,
        store: ObjectStore,
        *,
        operator_namespace: str = names.OPERATOR_NAMESPACE,
        default_registry: str = components.DEFAULT_REGISTRY,
        license_requeue_seconds: float = 10.0,
        secret_wait_requeue_seconds: float = 0.0,
        certificates: Optional[CertificateManager] = None,
    ) -> None:
        self.store = store
        self.operator_namespace = operator_namespace
        self.default_registry = default_registry
        self.license_requeue_seconds = license_requeue_seconds
        self.secret_wait_requeue_seconds = secret_wait_requeue_seconds
        self.certificates = certificates or CertificateManager(store, operator_namespace)

    def resolve(self, intrusion_detection: Dict[str, Any]) -> RenderContext:
        installation = self._installation()
        digests = self._image_digests()
        self._api_server_ready()
        features = self._license_features()
        if names.THREAT_DEFENSE_FEATURE not in features:
            return RenderContext(
                installation=installation,
                license_features=features,
                feature_active=False,
                digests=digests,
                operator_namespace=self.operator_namespace,
            )

        topology = self._topology()
        es_cluster = self._es_cluster_config()
        es_secrets = self._es_secrets(topology)
        es_public_cert, ad_api_key_pair = self._tls()
        dpi_resources = self._dpi_resources()

        return RenderContext(
            installation=installation,
            license_features=features,
            feature_active=True,
            topology=topology,
            digests=digests,
            es_cluster=es_cluster,
            es_public_cert=es_public_cert,
            ad_api_key_pair=ad_api_key_pair,
            es_secrets=es_secrets,
            dpi_resources=dpi_resources,
            component_resources=component_requirements(intrusion_detection),
            operator_namespace=self.operator_namespace,
        )

    def _get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.store.get(api_version, kind, namespace, name)
        except NotFoundError:
            return None
        except StoreError as exc:
            raise FatalPrecondition(f"Error querying {kind} {name}", str(exc)) from exc

    def _installation(self) -> InstallationInfo:
        installation = self._get(
            names.OPERATOR_API_VERSION, names.INSTALLATION_KIND, None, names.INSTALLATION_NAME
        )
        if installation is None:
            raise FatalPrecondition("Installation not found", "")
        spec = installation.get("spec") or {}
        status = installation.get("status") or {}
        computed = status.get("computed") or {}
        variant = status.get("variant") or spec.get("variant") or ""
        if variant != names.ENTERPRISE_VARIANT:
            raise DeferredPrecondition(f"Waiting for network to be {names.ENTERPRISE_VARIANT}", "")

        pull_secrets = self._pull_secrets(spec.get("imagePullSecrets") or [])
        return InstallationInfo(
            variant=variant,
            registry=components.select_registry(
                spec.get("registry"), computed.get("registry"), self.default_registry
            ),
            image_path=spec.get("imagePath") or None,
            image_prefix=spec.get("imagePrefix") or None,
            pull_secrets=pull_secrets,
        )

    def _pull_secrets(self, refs: List[Any]) -> Tuple[Dict[str, Any], ...]:
        found: List[Dict[str, Any]] = []
        missing: List[str] = []
        for ref in refs:
            name = ref.get("name") if isinstance(ref, dict) else None
            if not name:
                continue
            secret = self._get("v1", "Secret", self.operator_namespace, name)
            if secret is None:
                missing.append(name)
            else:
                found.append(secret)
        if missing:
            raise FatalPrecondition("Error retrieving pull secrets", _not_found("secrets", missing))
        return tuple(found)

    def _image_digests(self) -> Dict[str, str]:
        image_set = self._get(
            names.OPERATOR_API_VERSION, names.IMAGESET_KIND, None, components.image_set_name()
        )
        digests: Dict[str, str] = {}
        if image_set is not None:
            problems = components.validate_image_set(image_set)
            if problems:
                raise FatalPrecondition("Error validating ImageSet", "; ".join(problems))
            digests = components.image_set_digests(image_set)
        missing = components.unresolvable(components.ENTERPRISE_COMPONENTS, digests)
        if missing:
            raise FatalPrecondition("Error resolving images", f"no version or digest for {', '.join(missing)}")
        return digests

    def _api_server_ready(self) -> None:
        api_server = self._get(
            names.OPERATOR_API_VERSION, names.APISERVER_KIND, None, names.APISERVER_NAME
        )
        state = ((api_server or {}).get("status") or {}).get("state")
        if state != names.STATUS_READY:
            raise DeferredPrecondition("Waiting for Tigera API server to be ready", "")

    def _license_features(self) -> frozenset:
        license_key = self._get(
            names.CALICO_API_VERSION, names.LICENSE_KEY_KIND, None, names.LICENSE_KEY_NAME
        )
        if license_key is None:
            raise DeferredPrecondition(
                "License not found",
                f'licensekeys "{names.LICENSE_KEY_NAME}" not found',
                requeue_after=self.license_requeue_seconds,
            )
        features = (license_key.get("status") or {}).get("features") or []
        return frozenset(f for f in features if isinstance(f, str))

    def _topology(self) -> Topology:
        management = self._any_exists(names.MANAGEMENT_CLUSTER_KIND)
        connection = self._any_exists(names.MANAGEMENT_CLUSTER_CONNECTION_KIND)
        if management and connection:
            raise FatalPrecondition(
                "Invalid cluster topology",
                "ManagementCluster and ManagementClusterConnection cannot both be present",
            )
        if connection:
            return Topology.MANAGED
        if management:
            return Topology.MANAGEMENT
        return Topology.STANDALONE

    def _any_exists(self, kind: str) -> bool:
        try:
            return bool(self.store.list(names.OPERATOR_API_VERSION, kind))
        except NotFoundError:
            return False
        except StoreError as exc:
            raise FatalPrecondition(f"Error querying {kind}", str(exc)) from exc

    def _es_cluster_config(self) -> EsClusterConfig:
        config_map = self._get("v1", "ConfigMap", self.operator_namespace, names.ES_CLUSTER_CONFIG_MAP)
        if config_map is None:
            raise FatalPrecondition(
                "Failed to get the elasticsearch cluster configuration",
                _not_found("configmaps", [names.ES_CLUSTER_CONFIG_MAP]),
            )
        data = config_map.get("data") or {}
        try:
            return EsClusterConfig(
                cluster_name=str(data["clusterName"]),
                replicas=int(data["replicas"]),
                shards=int(data["shards"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise FatalPrecondition(
                "Failed to get the elasticsearch cluster configuration",
                f"configmap {names.ES_CLUSTER_CONFIG_MAP} is malformed: {exc}",
            ) from exc

    def _es_secrets(self, topology: Topology) -> Tuple[Dict[str, Any], ...]:
        required = [names.ES_INTRUSION_DETECTION_USER_SECRET, names.ES_AD_JOB_USER_SECRET]
        if topology is not Topology.MANAGED:
            required.append(names.ES_INSTALLER_ACCESS_SECRET)
        found: List[Dict[str, Any]] = []
        missing: List[str] = []
        for name in required:
            secret = self._get("v1", "Secret", self.operator_namespace, name)
            if secret is None:
                missing.append(name)
            else:
                found.append(secret)
        if missing:
            raise DeferredPrecondition(
                SECRETS_NOT_READY,
                _not_found("secrets", missing),
                requeue_after=self.secret_wait_requeue_seconds,
            )
        return tuple(found)

    def _tls(self) -> Tuple[KeyPair, KeyPair]:
        try:
            es_public_cert = self.certificates.get_certificate(names.ES_PUBLIC_CERT_SECRET)
        except StoreError as exc:
            raise FatalPrecondition("Failed to get Elasticsearch certificate", str(exc)) from exc
        if es_public_cert is None:
            raise FatalPrecondition(
                "Failed to get Elasticsearch certificate",
                _not_found("secrets", [names.ES_PUBLIC_CERT_SECRET]),
            )
        dns_names = _service_dns_names(names.AD_API_NAME, names.INTRUSION_DETECTION_NAMESPACE)
        try:
            key_pair = self.certificates.get_or_create_key_pair(names.AD_API_TLS_SECRET, dns_names)
        except (StoreError, ValueError) as exc:
            raise FatalPrecondition("Error creating TLS certificate", str(exc)) from exc
        if key_pair.created:
            logger.info("Issued new key pair %s for %s", names.AD_API_TLS_SECRET, ", ".join(dns_names))
        return es_public_cert, key_pair

    def _dpi_resources(self) -> Tuple[Dict[str, Any], ...]:
        try:
            return tuple(self.store.list(names.CALICO_API_VERSION, names.DPI_KIND))
        except NotFoundError:
            return ()
        except StoreError as exc:
            raise FatalPrecondition("Error querying DeepPacketInspection resources", str(exc)) from exc


def _not_found(resource: str, missing: List[str]) -> str:
    quoted = ", ".join(f'"{name}"' for name in missing)
    return f"{resource} {quoted} not found"


def _service_dns_names(service: str, namespace: str) -> List[str]:
    return [
        service,
        f"{service}.{namespace}",
        f"{service}.{namespace}.svc",
        f"{service}.{namespace}.svc.cluster.local",
    ]


__all__ = ["PreconditionResolver", "SECRETS_NOT_READY"]
