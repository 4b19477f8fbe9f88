from __future__ import annotations

import logging
import os
import random
import ssl
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .store import ConflictError, NotFoundError, StoreError

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

# (apiVersion, kind) -> (plural, namespaced)
_RESOURCES: Dict[Tuple[str, str], Tuple[str, bool]] = {
    ("v1", "Namespace"): ("namespaces", False),
    ("v1", "Secret"): ("secrets", True),
    ("v1", "ConfigMap"): ("configmaps", True),
    ("v1", "Service"): ("services", True),
    ("v1", "ServiceAccount"): ("serviceaccounts", True),
    ("v1", "PodTemplate"): ("podtemplates", True),
    ("apps/v1", "Deployment"): ("deployments", True),
    ("apps/v1", "DaemonSet"): ("daemonsets", True),
    ("apps/v1", "StatefulSet"): ("statefulsets", True),
    ("batch/v1", "Job"): ("jobs", True),
    ("batch/v1", "CronJob"): ("cronjobs", True),
    ("operator.tigera.io/v1", "Installation"): ("installations", False),
    ("operator.tigera.io/v1", "IntrusionDetection"): ("intrusiondetections", False),
    ("operator.tigera.io/v1", "ImageSet"): ("imagesets", False),
    ("operator.tigera.io/v1", "APIServer"): ("apiservers", False),
    ("operator.tigera.io/v1", "ManagementCluster"): ("managementclusters", False),
    ("operator.tigera.io/v1", "ManagementClusterConnection"): ("managementclusterconnections", False),
    ("crd.projectcalico.org/v1", "LicenseKey"): ("licensekeys", False),
    ("crd.projectcalico.org/v1", "DeepPacketInspection"): ("deeppacketinspections", True),
}


@dataclass
class KubeClientOptions:
    server: str
    token: Optional[str] = None
    ca_file: Optional[str] = None
    timeout_seconds: float = 10.0
    retries: int = 2
    seed: Optional[int] = None


class KubeClient:
    """Kubernetes REST implementation of the object store protocol with retries and backoff."""

    def __init__(self, options: KubeClientOptions, transport: Optional[httpx.BaseTransport] = None) -> None:
        if not options.server or not options.server.startswith("http"):
            raise ValueError("Kubernetes API server URL must start with http or https")
        self.server = options.server.rstrip("/")
        self.retries = max(0, int(options.retries))
        self._rng = random.Random(options.seed) if options.seed is not None else random.Random()
        headers = {"Accept": "application/json"}
        if options.token:
            headers["Authorization"] = f"Bearer {options.token}"
        verify: Any = ssl.create_default_context(cafile=options.ca_file) if options.ca_file else True
        self._client = httpx.Client(
            base_url=self.server,
            headers=headers,
            timeout=options.timeout_seconds,
            verify=verify,
            transport=transport,
        )

    @classmethod
    def in_cluster(cls, timeout_seconds: float = 10.0, retries: int = 2) -> "KubeClient":
        host = os.getenv("KUBERNETES_SERVICE_HOST")
        port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
        if not host:
            raise RuntimeError("KUBERNETES_SERVICE_HOST not set; not running inside a cluster")
        token_path = SERVICE_ACCOUNT_DIR / "token"
        ca_path = SERVICE_ACCOUNT_DIR / "ca.crt"
        options = KubeClientOptions(
            server=f"https://{host}:{port}",
            token=token_path.read_text(encoding="utf-8").strip() if token_path.exists() else None,
            ca_file=str(ca_path) if ca_path.exists() else None,
            timeout_seconds=timeout_seconds,
            retries=retries,
        )
        return cls(options)

    def close(self) -> None:
        self._client.close()

    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        return self._request("GET", self._path(api_version, kind, namespace, name))

    def list(self, api_version: str, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        data = self._request("GET", self._path(api_version, kind, namespace))
        items = data.get("items") or []
        # List responses omit apiVersion/kind on items.
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind, namespace, _ = self._identity(obj)
        return self._request("POST", self._path(api_version, kind, namespace), json=obj)

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind, namespace, name = self._identity(obj)
        return self._request("PUT", self._path(api_version, kind, namespace, name), json=obj)

    def delete(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> None:
        self._request(
            "DELETE",
            self._path(api_version, kind, namespace, name),
            json={"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": "Background"},
        )

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                response = self._client.request(method, path, json=json)
            except httpx.TransportError as exc:
                if attempt >= self.retries:
                    raise StoreError(f"{method} {path} failed: {exc}") from exc
                delay = self._backoff_seconds(attempt)
                logger.warning("%s %s failed (%s); retrying in %.2fs", method, path, exc, delay)
                time.sleep(delay)
                attempt += 1
                continue
            except httpx.HTTPError as exc:
                raise StoreError(f"{method} {path} failed: {exc}") from exc
            return self._decode(method, path, response)

    @staticmethod
    def _decode(method: str, path: str, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code == 404:
            raise NotFoundError(_status_message(response) or f"{path} not found")
        if response.status_code == 409:
            raise ConflictError(_status_message(response) or f"{path} conflict")
        if response.status_code >= 400:
            detail = _status_message(response) or response.text
            raise StoreError(f"{method} {path} returned {response.status_code}: {detail}")
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise StoreError(f"{method} {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise StoreError(f"{method} {path} returned a non-object body")
        return data

    def _backoff_seconds(self, attempt: int) -> float:
        base = 0.2 * (2 ** attempt)
        return base + self._rng.uniform(0, base)

    @staticmethod
    def _identity(obj: Dict[str, Any]) -> Tuple[str, str, Optional[str], str]:
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise StoreError("object is missing metadata.name")
        return obj.get("apiVersion", ""), obj.get("kind", ""), metadata.get("namespace"), name

    @staticmethod
    def _path(api_version: str, kind: str, namespace: Optional[str], name: Optional[str] = None) -> str:
        try:
            plural, namespaced = _RESOURCES[(api_version, kind)]
        except KeyError as exc:
            raise StoreError(f"unsupported resource {api_version} {kind}") from exc
        prefix = "/api/v1" if api_version == "v1" else f"/apis/{api_version}"
        parts = [prefix]
        if namespaced and namespace:
            parts.append(f"namespaces/{namespace}")
        parts.append(plural)
        if name:
            parts.append(name)
        return "/".join(parts)


def _status_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return None


__all__ = ["KubeClient", "KubeClientOptions"]
