"""TLS key pair provisioning backed by Kubernetes secrets."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .store import ObjectStore, get_or_none

logger = logging.getLogger(__name__)

TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY = "tls.key"
CERT_VALIDITY_DAYS = 825


@dataclass(frozen=True)
class KeyPair:
    name: str
    cert_pem: bytes
    key_pem: Optional[bytes] = None
    created: bool = False

    def secret(self, namespace: str) -> Dict[str, Any]:
        data = {TLS_CERT_KEY: base64.b64encode(self.cert_pem).decode("ascii")}
        if self.key_pem is not None:
            data[TLS_PRIVATE_KEY] = base64.b64encode(self.key_pem).decode("ascii")
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": self.name, "namespace": namespace},
            "type": "kubernetes.io/tls" if self.key_pem is not None else "Opaque",
            "data": data,
        }


def _decode_secret_field(secret: Dict[str, Any], field: str) -> Optional[bytes]:
    value = (secret.get("data") or {}).get(field)
    if not isinstance(value, str) or not value:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except ValueError:
        return None


def _dns_names(cert_pem: bytes) -> List[str]:
    cert = x509.load_pem_x509_certificate(cert_pem)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


def generate_self_signed(name: str, dns_names: Sequence[str]) -> KeyPair:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, dns_names[0] if dns_names else name)])
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=CERT_VALIDITY_DAYS))
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(dns) for dns in dns_names]),
            critical=False,
        )
    cert = builder.sign(key, hashes.SHA256())
    return KeyPair(
        name=name,
        cert_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        ),
        created=True,
    )


class CertificateManager:
    """Looks up TLS material in the store; issues self-signed key pairs when absent.

    Nothing is written here. A newly issued pair is returned with ``created`` set
    and is persisted by rendering its secret into the desired object set.
    """

    def __init__(self, store: ObjectStore, namespace: str) -> None:
        self.store = store
        self.namespace = namespace

    def get_or_create_key_pair(self, secret_name: str, dns_names: Sequence[str]) -> KeyPair:
        secret = get_or_none(self.store, "v1", "Secret", self.namespace, secret_name)
        if secret is not None:
            cert_pem = _decode_secret_field(secret, TLS_CERT_KEY)
            key_pem = _decode_secret_field(secret, TLS_PRIVATE_KEY)
            if cert_pem and key_pem:
                try:
                    present = set(_dns_names(cert_pem))
                except ValueError:
                    logger.warning("Secret %s/%s holds an unreadable certificate; reissuing", self.namespace, secret_name)
                else:
                    if set(dns_names) <= present:
                        return KeyPair(name=secret_name, cert_pem=cert_pem, key_pem=key_pem)
                    logger.info("Certificate in %s/%s lacks DNS names %s; reissuing", self.namespace, secret_name, sorted(set(dns_names) - present))
        return generate_self_signed(secret_name, dns_names)

    def get_certificate(self, secret_name: str) -> Optional[KeyPair]:
        secret = get_or_none(self.store, "v1", "Secret", self.namespace, secret_name)
        if secret is None:
            return None
        cert_pem = _decode_secret_field(secret, TLS_CERT_KEY)
        if not cert_pem:
            return None
        return KeyPair(name=secret_name, cert_pem=cert_pem)


__all__ = ["CertificateManager", "KeyPair", "generate_self_signed"]
