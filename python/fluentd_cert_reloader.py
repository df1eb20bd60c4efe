#!/usr/bin/env python3
"""
Fluentd Certificate Reloader

Detects a fluentd StatefulSet that keeps serving a stale TLS certificate after
cert-manager rotated it, and triggers a graceful config reload on every replica.

Flow (one pass per invocation, meant to run as a CronJob):
  1. Discover fluentd replica IPs (pods labelled app=<namespace> that belong to a StatefulSet)
  2. TLS handshake against the public hostname, read the served expiry + issuer
  3. Look up the cert-manager Certificate named $FLUENTD_CERT_NAME
  4. If the served expiry != Certificate status.notAfter, GET
     http://<ip>:24444/api/config.gracefulReload on each replica, in order

Any failure aborts the run; the next scheduled run starts over.

Environment (required):
  FLUENTD_NAMESPACE     Namespace holding the fluentd pods and the Certificate
  FLUENTD_SERVICE_URL   Public hostname to probe (no scheme, no port)
  FLUENTD_CERT_NAME     Name of the cert-manager Certificate (case-insensitive)

Flags:
  --dry-run             Report a mismatch but do not send reload requests
  --reload-timeout      Per-request reload timeout in seconds (default 5)
  --verbose             Debug logging

Exit codes:
  0 certificate valid, reload done, or dry run
  1 configuration / API / probe / reload error

Usage:
  FLUENTD_NAMESPACE=logging FLUENTD_SERVICE_URL=logging.example.com \
  FLUENTD_CERT_NAME=fluentd-tls python fluentd_cert_reloader.py --dry-run
"""
from __future__ import annotations
import argparse
import datetime as dt
import logging
import os
import socket
import ssl
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests
from cryptography import x509
from kubernetes import client, config
from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as TransportError

log = logging.getLogger("fluentd_cert_reloader")

ENV_NAMESPACE = "FLUENTD_NAMESPACE"
ENV_SERVICE_URL = "FLUENTD_SERVICE_URL"
ENV_CERT_NAME = "FLUENTD_CERT_NAME"

STATEFULSET_POD_LABEL = "statefulset.kubernetes.io/pod-name"

CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"
CERT_MANAGER_PLURAL = "certificates"

TLS_PORT = 443
RELOAD_PORT = 24444
RELOAD_PATH = "/api/config.gracefulReload"
RELOAD_TIMEOUT = 5.0

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ReloaderError(Exception):
    """Base for every error that ends a run."""


class ConfigurationError(ReloaderError):
    pass


class DiscoveryError(ReloaderError):
    pass


class ProbeError(ReloaderError):
    pass


class CertificateLookupError(ReloaderError):
    pass


class CertificateNotFoundError(ReloaderError):
    pass


class ReloadError(ReloaderError):
    pass


@dataclass(frozen=True)
class ReloaderConfig:
    namespace: str
    service_hostname: str
    cert_name: str


@dataclass(frozen=True)
class LiveCertificate:
    not_after: dt.datetime
    issuer: str


@dataclass(frozen=True)
class CertificateRecord:
    name: str
    not_after: Optional[dt.datetime]
    renewal_time: Optional[dt.datetime]


def load_config(environ: Mapping[str, str] = os.environ) -> ReloaderConfig:
    values = {}
    missing = []
    for key in (ENV_NAMESPACE, ENV_SERVICE_URL, ENV_CERT_NAME):
        val = (environ.get(key) or "").strip()
        if not val:
            missing.append(key)
        values[key] = val
    if missing:
        raise ConfigurationError(f"{', '.join(missing)} is not set")
    return ReloaderConfig(
        namespace=values[ENV_NAMESPACE],
        service_hostname=values[ENV_SERVICE_URL],
        cert_name=values[ENV_CERT_NAME],
    )


def load_kube_config():
    """Try regular kubeconfig then in-cluster."""
    try:
        config.load_kube_config()
    except config.ConfigException:
        try:
            config.load_incluster_config()
        except config.ConfigException as e:
            raise ConfigurationError(f"no usable Kubernetes credentials: {e}") from e


class ClusterClient:
    """The two control-plane reads a run needs."""

    def __init__(self, core: client.CoreV1Api, custom: client.CustomObjectsApi):
        self.core = core
        self.custom = custom

    @classmethod
    def from_environment(cls) -> "ClusterClient":
        load_kube_config()
        return cls(client.CoreV1Api(), client.CustomObjectsApi())

    def list_pods(self, namespace: str, label_selector: str) -> List[client.V1Pod]:
        return self.core.list_namespaced_pod(namespace, label_selector=label_selector).items

    def list_certificates(self, namespace: str) -> List[Dict[str, Any]]:
        resp = self.custom.list_namespaced_custom_object(
            CERT_MANAGER_GROUP, CERT_MANAGER_VERSION, namespace, CERT_MANAGER_PLURAL
        )
        return resp.get("items", [])


def parse_rfc3339(ts: Optional[str]) -> Optional[dt.datetime]:
    if not ts:
        return None
    # Kubernetes timestamps are RFC3339, often ending with 'Z'
    if ts.endswith('Z'):
        ts = ts[:-1] + '+00:00'
    dt_obj = dt.datetime.fromisoformat(ts)
    if dt_obj.tzinfo is None:
        dt_obj = dt_obj.replace(tzinfo=dt.timezone.utc)
    return dt_obj.astimezone(dt.timezone.utc)


def discover_replicas(cluster: ClusterClient, namespace: str) -> List[str]:
    selector = f"app={namespace}"
    try:
        pods = cluster.list_pods(namespace, selector)
    except (ApiException, TransportError, OSError) as e:
        raise DiscoveryError(f"failed to get fluentd pods in {namespace}: {e}") from e

    ips: List[str] = []
    for pod in pods:
        name = pod.metadata.name
        labels = pod.metadata.labels or {}
        if STATEFULSET_POD_LABEL not in labels:
            log.info("Pod is not from statefulset, skipping %s", name)
            continue
        pod_ip = pod.status.pod_ip if pod.status else None
        if not pod_ip:
            log.info("Pod %s has no IP assigned yet, skipping", name)
            continue
        ips.append(pod_ip)
    log.debug("Discovered %d fluentd replicas: %s", len(ips), ips)
    return ips


def parse_certificate(der: bytes) -> LiveCertificate:
    cert = x509.load_der_x509_certificate(der)
    return LiveCertificate(not_after=cert.not_valid_after_utc, issuer=cert.issuer.rfc4514_string())


def probe_certificate(hostname: str, port: int = TLS_PORT, timeout: Optional[float] = None) -> LiveCertificate:
    ctx = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
                der = ssock.getpeercert(binary_form=True)
    except ssl.CertificateError as e:
        # hostname mismatch or untrusted chain
        raise ProbeError(f"certificate verification failed for {hostname}: {e}") from e
    except OSError as e:
        raise ProbeError(f"{hostname}:{port} doesn't serve a usable TLS certificate: {e}") from e
    if not der:
        raise ProbeError(f"{hostname}:{port} presented no certificate")

    try:
        live = parse_certificate(der)
    except ValueError as e:
        raise ProbeError(f"{hostname}:{port} served an undecodable certificate: {e}") from e
    log.info("Issuer: %s", live.issuer)
    log.info("Expiry: %s", live.not_after.strftime("%A, %d-%b-%y %H:%M:%S %Z"))
    return live


def find_certificate(cluster: ClusterClient, namespace: str, name: str) -> CertificateRecord:
    try:
        items = cluster.list_certificates(namespace)
    except (ApiException, TransportError, OSError) as e:
        raise CertificateLookupError(f"failed to list certificates in {namespace}: {e}") from e

    wanted = name.lower()
    for item in items:
        cert_name = (item.get("metadata") or {}).get("name", "")
        if cert_name.lower() != wanted:
            log.info("Certificate %s is not fluentd certificate", cert_name)
            continue

        log.info("Found certificate %s", cert_name)
        status = item.get("status") or {}
        try:
            return CertificateRecord(
                name=cert_name,
                not_after=parse_rfc3339(status.get("notAfter")),
                renewal_time=parse_rfc3339(status.get("renewalTime")),
            )
        except ValueError as e:
            raise CertificateLookupError(f"certificate {cert_name} has a malformed status: {e}") from e

    raise CertificateNotFoundError(f"certificate {name} not found in namespace {namespace}")


def reload_url(ip: str) -> str:
    return f"http://{ip}:{RELOAD_PORT}{RELOAD_PATH}"


def reload_replicas(addresses: List[str], http=requests, timeout: float = RELOAD_TIMEOUT) -> None:
    """GET the graceful reload endpoint on each replica; stop at the first failure.

    ``http`` is anything with a requests-compatible ``get`` (the module or a Session).
    """
    for ip in addresses:
        log.info("Reloading fluentd config on %s", ip)
        url = reload_url(ip)
        try:
            resp = http.get(url, timeout=timeout)
        except requests.RequestException as e:
            raise ReloadError(f"failed to send reload request to {ip}: {e}") from e
        if resp.status_code >= 400:
            raise ReloadError(f"failed to reload fluentd config on {ip}: {resp.status_code} {resp.reason}")
        log.info("Response: %s", resp.text)


def reconcile(
    live: LiveCertificate,
    record: CertificateRecord,
    addresses: List[str],
    http=requests,
    timeout: float = RELOAD_TIMEOUT,
    dry_run: bool = False,
) -> bool:
    """Return True when the replicas were (or, in dry run, would be) reloaded."""
    log.info("Certificate will expire on %s", live.not_after.isoformat())
    if record.not_after is not None and record.not_after == live.not_after:
        renewal = record.renewal_time.isoformat() if record.renewal_time else "unknown"
        log.info("Certificate will be renewed on %s", renewal)
        log.info("Certificate is valid.")
        return False

    recorded = record.not_after.isoformat() if record.not_after else "unknown"
    log.warning("Certificate is not valid")
    log.warning("Certificate should expire on %s but it expires on %s", recorded, live.not_after.isoformat())
    if dry_run:
        log.info("Dry run, not reloading %d replicas: %s", len(addresses), ", ".join(addresses) or "-")
        return True
    reload_replicas(addresses, http=http, timeout=timeout)
    return True


def run(
    cfg: ReloaderConfig,
    cluster: ClusterClient,
    probe=probe_certificate,
    http=requests,
    reload_timeout: float = RELOAD_TIMEOUT,
    dry_run: bool = False,
) -> bool:
    addresses = discover_replicas(cluster, cfg.namespace)
    live = probe(cfg.service_hostname)
    record = find_certificate(cluster, cfg.namespace, cfg.cert_name)
    return reconcile(live, record, addresses, http=http, timeout=reload_timeout, dry_run=dry_run)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Reload fluentd when it serves a stale TLS certificate")
    p.add_argument("--dry-run", action="store_true", help="Detect a mismatch but do not reload")
    p.add_argument("--reload-timeout", type=float, default=RELOAD_TIMEOUT,
                   help=f"Per-replica reload timeout in seconds (default {RELOAD_TIMEOUT:g})")
    p.add_argument("--verbose", action="store_true", help="Debug logging")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    try:
        cfg = load_config()
        cluster = ClusterClient.from_environment()
        reloaded = run(cfg, cluster, probe=probe_certificate, reload_timeout=args.reload_timeout,
                       dry_run=args.dry_run)
    except ReloaderError as e:
        log.error("%s: %s", type(e).__name__, e)
        return 1
    if reloaded and not args.dry_run:
        log.info("Fluentd config reloaded on all replicas")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)
