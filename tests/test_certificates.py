import unittest

from src.cluster.certificates import CertificateManager, generate_self_signed
from src.cluster.store import InMemoryStore
from tests.cluster_fixtures import es_public_cert

NAMESPACE = "tigera-operator"
DNS_NAMES = ["anomaly-detection-api", "anomaly-detection-api.tigera-intrusion-detection"]


class CertificateManagerTests(unittest.TestCase):
    def test_issues_key_pair_when_secret_absent(self) -> None:
        store = InMemoryStore()
        pair = CertificateManager(store, NAMESPACE).get_or_create_key_pair("ad-tls", DNS_NAMES)
        self.assertTrue(pair.created)
        self.assertIn(b"BEGIN CERTIFICATE", pair.cert_pem)
        self.assertIsNotNone(pair.key_pem)
        self.assertEqual(len(store), 0)

    def test_reuses_stored_pair_covering_names(self) -> None:
        issued = generate_self_signed("ad-tls", DNS_NAMES)
        store = InMemoryStore([issued.secret(NAMESPACE)])
        pair = CertificateManager(store, NAMESPACE).get_or_create_key_pair("ad-tls", DNS_NAMES)
        self.assertFalse(pair.created)
        self.assertEqual(pair.cert_pem, issued.cert_pem)

    def test_reissues_when_names_missing(self) -> None:
        issued = generate_self_signed("ad-tls", DNS_NAMES[:1])
        store = InMemoryStore([issued.secret(NAMESPACE)])
        pair = CertificateManager(store, NAMESPACE).get_or_create_key_pair("ad-tls", DNS_NAMES)
        self.assertTrue(pair.created)
        self.assertNotEqual(pair.cert_pem, issued.cert_pem)

    def test_tls_secret_shape(self) -> None:
        secret = generate_self_signed("ad-tls", DNS_NAMES).secret("tigera-intrusion-detection")
        self.assertEqual(secret["type"], "kubernetes.io/tls")
        self.assertEqual(set(secret["data"]), {"tls.crt", "tls.key"})
        self.assertEqual(secret["metadata"], {"name": "ad-tls", "namespace": "tigera-intrusion-detection"})

    def test_get_certificate(self) -> None:
        store = InMemoryStore([es_public_cert()])
        manager = CertificateManager(store, NAMESPACE)
        cert = manager.get_certificate("tigera-secure-es-http-certs-public")
        self.assertIsNotNone(cert)
        self.assertIsNone(cert.key_pem)
        self.assertEqual(cert.secret("x")["type"], "Opaque")
        self.assertIsNone(manager.get_certificate("absent"))


if __name__ == "__main__":
    unittest.main()
