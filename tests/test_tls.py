"""Unit tests for the ingress certificate inspection."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kwoctl.config import TLSCheckConfig
from kwoctl.providers import KubectlError
from kwoctl.tls import (
    CERT_RESOLVER_ANNOTATION,
    TLSCheckSeverity,
    TLSInspector,
    parse_certificate,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
DOMAIN = "shop.acme.example.com"


@pytest.fixture(scope="module")
def signing_key() -> rsa.RSAPrivateKey:
    """Return one RSA key shared by every generated certificate."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _create_self_signed_cert(
    key: rsa.RSAPrivateKey,
    *,
    dns_names: tuple[str, ...] = (DOMAIN,),
    common_name: str = DOMAIN,
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from or NOW - timedelta(days=10))
        .not_valid_after(valid_to or NOW + timedelta(days=80))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(value) for value in dns_names]),
            critical=False,
        )
    cert = builder.sign(key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def _seed_ingress(cluster: Any, resolver: str | None = "letsencrypt-cloudflare") -> None:
    annotations = {CERT_RESOLVER_ANNOTATION: resolver} if resolver else {}
    cluster.seed(
        {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": {"name": "shop", "namespace": "acme", "annotations": annotations},
            "spec": {"rules": [{"host": DOMAIN}]},
        }
    )


def _inspector(cluster: Any, pem: str, **settings: Any) -> TLSInspector:
    return TLSInspector(
        cluster,
        TLSCheckConfig(**settings),
        fetch=lambda domain, port, timeout: pem,
        clock=lambda: NOW,
    )


def _severities(report: Any) -> dict[str, TLSCheckSeverity]:
    return {finding.check: finding.severity for finding in report.findings}


def test_inspect_passes_for_routed_domain(
    cluster: Any,
    signing_key: rsa.RSAPrivateKey,
) -> None:
    """A routed domain with a registered resolver and valid certificate passes."""
    _seed_ingress(cluster)
    captured: list[tuple[str, int, float]] = []

    def fetch(domain: str, port: int, timeout: float) -> str:
        captured.append((domain, port, timeout))
        return _create_self_signed_cert(signing_key)

    inspector = TLSInspector(cluster, TLSCheckConfig(), fetch=fetch, clock=lambda: NOW)
    report = inspector.inspect(f" {DOMAIN.upper()} ", known_resolvers={"letsencrypt-cloudflare"})

    assert report.passed is True
    assert report.status is TLSCheckSeverity.OK
    assert report.ingress == "acme/shop"
    assert report.cert_resolver == "letsencrypt-cloudflare"
    assert captured == [(DOMAIN, 443, 5.0)]
    payload = report.to_dict()
    assert payload["status"] == "ok"
    assert payload["certificate"]["dnsNames"] == [DOMAIN]  # type: ignore[index]
    assert [item["check"] for item in payload["findings"]] == [  # type: ignore[union-attr]
        "ingress",
        "resolver",
        "expiry",
    ]


def test_near_expiry_is_a_warning(cluster: Any, signing_key: rsa.RSAPrivateKey) -> None:
    """Certificates inside the warning window pass with a warning."""
    _seed_ingress(cluster)
    pem = _create_self_signed_cert(signing_key, valid_to=NOW + timedelta(days=5, hours=1))

    report = _inspector(cluster, pem, warn_expiry_days=14).inspect(DOMAIN)

    assert report.passed is True
    assert report.status is TLSCheckSeverity.WARNING
    expiry = [finding for finding in report.findings if finding.check == "expiry"][0]
    assert "5 day(s) remaining" in expiry.message


@pytest.mark.parametrize(
    ("valid_from", "valid_to", "message"),
    [
        (NOW - timedelta(days=90), NOW - timedelta(days=1), "expired"),
        (NOW + timedelta(days=1), NOW + timedelta(days=90), "not valid before"),
    ],
)
def test_out_of_window_certificate_fails(
    cluster: Any,
    signing_key: rsa.RSAPrivateKey,
    valid_from: datetime,
    valid_to: datetime,
    message: str,
) -> None:
    """Expired and not-yet-valid certificates are errors."""
    _seed_ingress(cluster)
    pem = _create_self_signed_cert(signing_key, valid_from=valid_from, valid_to=valid_to)

    report = _inspector(cluster, pem).inspect(DOMAIN)

    assert report.passed is False
    expiry = [finding for finding in report.findings if finding.check == "expiry"][0]
    assert expiry.severity is TLSCheckSeverity.ERROR
    assert message in expiry.message


def test_hostname_mismatch_fails(cluster: Any, signing_key: rsa.RSAPrivateKey) -> None:
    """Traefik's default certificate does not cover the routed domain."""
    _seed_ingress(cluster)
    pem = _create_self_signed_cert(
        signing_key, dns_names=("default.traefik.invalid",), common_name="TRAEFIK DEFAULT CERT"
    )

    report = _inspector(cluster, pem).inspect(DOMAIN)

    assert report.passed is False
    assert _severities(report)["hostname"] is TLSCheckSeverity.ERROR


def test_wildcard_and_common_name_coverage(signing_key: rsa.RSAPrivateKey) -> None:
    """Wildcards cover one label; the CN is used when no SAN is present."""
    wildcard = parse_certificate(
        _create_self_signed_cert(signing_key, dns_names=("*.acme.example.com",))
    )
    assert wildcard.covers(DOMAIN) is True
    assert wildcard.covers("a.shop.acme.example.com") is False
    assert wildcard.covers("acme.example.com") is False

    bare = parse_certificate(_create_self_signed_cert(signing_key, dns_names=()))
    assert bare.dns_names == (DOMAIN,)
    assert bare.covers(DOMAIN) is True


def test_missing_ingress_and_unreachable_host(cluster: Any) -> None:
    """No ingress and no reachable listener are both errors."""

    def refuse(domain: str, port: int, timeout: float) -> str:
        raise ConnectionRefusedError(111, "Connection refused")

    inspector = TLSInspector(cluster, TLSCheckConfig(port=8443), fetch=refuse, clock=lambda: NOW)
    report = inspector.inspect(DOMAIN)

    assert report.ingress is None
    assert report.certificate is None
    messages = [finding.message for finding in report.findings]
    assert messages[0] == f"no ingress routes {DOMAIN}."
    assert messages[1].startswith(f"cannot retrieve certificate from {DOMAIN}:8443")
    assert report.to_dict()["certificate"] is None


def test_unregistered_resolver_fails(cluster: Any, signing_key: rsa.RSAPrivateKey) -> None:
    """An ingress naming a resolver Traefik does not have is an error."""
    _seed_ingress(cluster, resolver="letsencrypt-route53")

    report = _inspector(cluster, _create_self_signed_cert(signing_key)).inspect(
        DOMAIN, known_resolvers={"letsencrypt-cloudflare"}
    )

    assert report.passed is False
    resolver = [finding for finding in report.findings if finding.check == "resolver"][0]
    assert resolver.severity is TLSCheckSeverity.ERROR
    assert "letsencrypt-route53" in resolver.message


def test_ingress_without_resolver_is_a_warning(
    cluster: Any,
    signing_key: rsa.RSAPrivateKey,
) -> None:
    """Without a resolver annotation Traefik serves its default certificate."""
    _seed_ingress(cluster, resolver=None)

    report = _inspector(cluster, _create_self_signed_cert(signing_key)).inspect(DOMAIN)

    assert report.cert_resolver is None
    assert _severities(report)["resolver"] is TLSCheckSeverity.WARNING
    assert report.passed is True


def test_listing_failure_and_garbage_certificate(cluster: Any) -> None:
    """Cluster and parse failures are reported as findings, not raised."""
    cluster.fail_on("list", "ingress", KubectlError("connection refused"))

    report = _inspector(cluster, "not a certificate").inspect(DOMAIN)

    assert [finding.check for finding in report.findings] == ["ingress", "certificate"]
    assert report.findings[0].message.startswith("cannot list ingresses")
    assert report.findings[1].message.startswith("unreadable certificate")
    assert report.status is TLSCheckSeverity.ERROR
