"""
Shared pytest fixtures for the fluentd certificate reloader tests.

- FakeCluster: stands in for ClusterClient with canned pods / certificates
- pod / certificate factories built on the real kubernetes client models
- self-signed DER certificates for the TLS decoding path
"""

import datetime as dt
import os
import sys
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID
from kubernetes import client

# Scripts live under python/
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "python"))

import fluentd_cert_reloader as fcr  # noqa: E402


class FakeCluster:
    """Records calls and returns canned control-plane data."""

    def __init__(self, pods=None, certificates=None, pod_error=None, cert_error=None):
        self.pods = pods or []
        self.certificates = certificates or []
        self.pod_error = pod_error
        self.cert_error = cert_error
        self.calls: List[tuple] = []

    def list_pods(self, namespace, label_selector):
        self.calls.append(("list_pods", namespace, label_selector))
        if self.pod_error:
            raise self.pod_error
        return self.pods

    def list_certificates(self, namespace):
        self.calls.append(("list_certificates", namespace))
        if self.cert_error:
            raise self.cert_error
        return self.certificates


def make_pod(name: str, ip: Optional[str], statefulset: bool = True) -> client.V1Pod:
    labels = {"app": "logging"}
    if statefulset:
        labels[fcr.STATEFULSET_POD_LABEL] = name
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace="logging", labels=labels),
        status=client.V1PodStatus(pod_ip=ip),
    )


def make_certificate(name: str, not_after: Optional[str] = "2024-03-01T00:00:00Z",
                     renewal_time: Optional[str] = "2024-01-31T00:00:00Z") -> Dict[str, Any]:
    status = {}
    if not_after is not None:
        status["notAfter"] = not_after
    if renewal_time is not None:
        status["renewalTime"] = renewal_time
    return {
        "apiVersion": "cert-manager.io/v1",
        "kind": "Certificate",
        "metadata": {"name": name, "namespace": "logging"},
        "status": status,
    }


def make_der_certificate(not_after: dt.datetime, issuer_cn: str = "Test CA",
                         subject_cn: str = "logging.example.com") -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example"),
        x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn),
    ])
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - dt.timedelta(days=90))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(Encoding.DER)


def make_response(status_code: int = 200, text: str = "", reason: str = "OK") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.reason = reason
    return resp


def utc(*args) -> dt.datetime:
    return dt.datetime(*args, tzinfo=dt.timezone.utc)


@pytest.fixture
def three_replicas():
    return [
        make_pod("fluentd-0", "10.0.0.1"),
        make_pod("fluentd-1", "10.0.0.2"),
        make_pod("fluentd-2", "10.0.0.3"),
    ]


@pytest.fixture
def reloader_config():
    return fcr.ReloaderConfig(namespace="logging", service_hostname="logging.example.com", cert_name="fluentd-tls")


@pytest.fixture
def http_ok():
    http = MagicMock()
    http.get.return_value = make_response(200, "ok")
    return http
