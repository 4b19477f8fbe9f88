"""Well-known resource names shared by the resolver, renderer and reconciler."""

from __future__ import annotations

OPERATOR_NAMESPACE = "tigera-operator"
INTRUSION_DETECTION_NAMESPACE = "tigera-intrusion-detection"
DPI_NAMESPACE = "tigera-dpi"

# Owned and dependency custom resources
OPERATOR_API_VERSION = "operator.tigera.io/v1"
CALICO_API_VERSION = "crd.projectcalico.org/v1"

INTRUSION_DETECTION_KIND = "IntrusionDetection"
INTRUSION_DETECTION_NAME = "tigera-secure"
INSTALLATION_KIND = "Installation"
INSTALLATION_NAME = "default"
IMAGESET_KIND = "ImageSet"
APISERVER_KIND = "APIServer"
APISERVER_NAME = "tigera-secure"
MANAGEMENT_CLUSTER_KIND = "ManagementCluster"
MANAGEMENT_CLUSTER_CONNECTION_KIND = "ManagementClusterConnection"
LICENSE_KEY_KIND = "LicenseKey"
LICENSE_KEY_NAME = "default"
DPI_KIND = "DeepPacketInspection"

ENTERPRISE_VARIANT = "TigeraSecureEnterprise"
CALICO_VARIANT = "Calico"
STATUS_READY = "Ready"
THREAT_DEFENSE_FEATURE = "threat-defense"

# Workload names
CONTROLLER_NAME = "intrusion-detection-controller"
CONTROLLER_CONTAINER = "controller"
INSTALLER_JOB_NAME = "intrusion-detection-es-job-installer"
INSTALLER_CONTAINER = "elasticsearch-job-installer"
AD_JOB_POD_TEMPLATE_BASE_NAME = "tigera.io.detectors"
AD_JOB_CONTAINER = "adjobs"
AD_API_NAME = "anomaly-detection-api"
AD_API_TLS_SECRET = "anomaly-detection-api-tls"
AD_API_PORT = 8080
DPI_NAME = "tigera-dpi"

# Data store configuration and credentials
ES_CLUSTER_CONFIG_MAP = "tigera-secure-elasticsearch"
ES_PUBLIC_CERT_SECRET = "tigera-secure-es-http-certs-public"
ES_INTRUSION_DETECTION_USER_SECRET = "tigera-ee-intrusion-detection-elasticsearch-access"
ES_AD_JOB_USER_SECRET = "tigera-ee-ad-job-elasticsearch-access"
ES_INSTALLER_ACCESS_SECRET = "tigera-ee-installer-elasticsearch-access"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "intrusion-operator"
