"""TLS helpers backing ``kwoctl check-tls``.

A domain is traced from the ingress that routes it, through the Traefik
certificate resolver annotated on that ingress, to the certificate Traefik
actually serves for it.
"""
from __future__ import annotations

import ssl
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from cryptography import x509
from cryptography.x509.oid import NameOID

from .config import TLSCheckConfig
from .providers.kubectl import KubectlError, KubectlProvider

CERT_RESOLVER_ANNOTATION = "traefik.ingress.kubernetes.io/router.tls.certresolver"

CertificateFetcher = Callable[[str, int, float], str]


class TLSCheckSeverity(Enum):
    """Severities for TLS findings."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSFinding:
    """Individual check outcome."""

    check: str
    severity: TLSCheckSeverity
    message: str


@dataclass(frozen=True)
class CertificateDetails:
    """The parts of a served certificate an operator cares about."""

    subject: str
    issuer: str
    dns_names: tuple[str, ...]
    not_valid_before: datetime
    not_valid_after: datetime

    def covers(self, domain: str) -> bool:
        """Return True when *domain* matches a SAN entry (wildcards included)."""
        domain = domain.lower()
        for name in self.dns_names:
            name = name.lower()
            if name == domain:
                return True
            if name.startswith("*.") and domain.partition(".")[2] == name[2:]:
                return True
        return False


@dataclass
class TLSReport:
    """Aggregate result of inspecting one domain."""

    domain: str
    ingress: str | None = None
    cert_resolver: str | None = None
    certificate: CertificateDetails | None = None
    findings: list[TLSFinding] = field(default_factory=list)

    @property
    def status(self) -> TLSCheckSeverity:
        """Return the worst severity among the findings."""
        severities = {finding.severity for finding in self.findings}
        if TLSCheckSeverity.ERROR in severities:
            return TLSCheckSeverity.ERROR
        if TLSCheckSeverity.WARNING in severities:
            return TLSCheckSeverity.WARNING
        return TLSCheckSeverity.OK

    @property
    def passed(self) -> bool:
        """Return True when no finding is an error."""
        return self.status is not TLSCheckSeverity.ERROR

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        certificate: dict[str, object] | None = None
        if self.certificate is not None:
            certificate = {
                "subject": self.certificate.subject,
                "issuer": self.certificate.issuer,
                "dnsNames": list(self.certificate.dns_names),
                "notValidBefore": self.certificate.not_valid_before.isoformat(),
                "notValidAfter": self.certificate.not_valid_after.isoformat(),
            }
        return {
            "domain": self.domain,
            "status": self.status.value,
            "ingress": self.ingress,
            "certResolver": self.cert_resolver,
            "certificate": certificate,
            "findings": [
                {
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                }
                for finding in self.findings
            ],
        }


def fetch_certificate(domain: str, port: int, timeout: float) -> str:
    """Return the PEM certificate served for *domain* (SNI), without verifying it."""
    return ssl.get_server_certificate((domain, port), timeout=timeout)


def parse_certificate(pem: str | bytes) -> CertificateDetails:
    """Parse a PEM (or DER) certificate into :class:`CertificateDetails`."""
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    try:
        cert = x509.load_pem_x509_certificate(data)
    except ValueError:
        cert = x509.load_der_x509_certificate(data)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        dns_names = tuple(san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        dns_names = tuple(str(attr.value) for attr in common_names)
    return CertificateDetails(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        dns_names=dns_names,
        not_valid_before=cert.not_valid_before_utc,
        not_valid_after=cert.not_valid_after_utc,
    )


class TLSInspector:
    """Resolve the ingress, resolver and served certificate for a domain."""

    def __init__(
        self,
        kubectl: KubectlProvider,
        settings: TLSCheckConfig,
        *,
        fetch: CertificateFetcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialise the inspector with the cluster client and check settings."""
        self._kubectl = kubectl
        self._settings = settings
        self._fetch = fetch or fetch_certificate
        self._clock = clock or (lambda: datetime.now(UTC))

    def find_ingress(self, domain: str) -> dict[str, Any] | None:
        """Return the first ingress (any namespace) with a rule for *domain*."""
        for ingress in self._kubectl.list_objects("ingress", all_namespaces=True):
            rules = (ingress.get("spec") or {}).get("rules") or []
            if any(isinstance(rule, Mapping) and rule.get("host") == domain for rule in rules):
                return ingress
        return None

    def inspect(self, domain: str, known_resolvers: Collection[str] | None = None) -> TLSReport:
        """Build the report for *domain*.

        When *known_resolvers* is given, an ingress pointing at any other
        resolver is flagged since Traefik has no such resolver to issue from.
        """
        domain = domain.strip().lower()
        report = TLSReport(domain=domain)
        try:
            ingress = self.find_ingress(domain)
        except KubectlError as exc:
            report.findings.append(
                TLSFinding("ingress", TLSCheckSeverity.ERROR, f"cannot list ingresses: {exc}")
            )
            ingress = None
        else:
            if ingress is None:
                report.findings.append(
                    TLSFinding("ingress", TLSCheckSeverity.ERROR, f"no ingress routes {domain}.")
                )
        if ingress is not None:
            metadata = ingress.get("metadata") or {}
            report.ingress = f"{metadata.get('namespace')}/{metadata.get('name')}"
            report.findings.append(
                TLSFinding("ingress", TLSCheckSeverity.OK, f"routed by {report.ingress}")
            )
            annotations = metadata.get("annotations") or {}
            report.cert_resolver = annotations.get(CERT_RESOLVER_ANNOTATION) or None
            if report.cert_resolver is None:
                report.findings.append(
                    TLSFinding(
                        "resolver",
                        TLSCheckSeverity.WARNING,
                        "ingress names no certificate resolver; Traefik serves its default.",
                    )
                )
            elif known_resolvers is not None and report.cert_resolver not in known_resolvers:
                report.findings.append(
                    TLSFinding(
                        "resolver",
                        TLSCheckSeverity.ERROR,
                        f"resolver '{report.cert_resolver}' is not registered.",
                    )
                )
            else:
                report.findings.append(
                    TLSFinding("resolver", TLSCheckSeverity.OK, report.cert_resolver)
                )

        try:
            pem = self._fetch(domain, self._settings.port, self._settings.timeout)
            report.certificate = parse_certificate(pem)
        except OSError as exc:
            report.findings.append(
                TLSFinding(
                    "certificate",
                    TLSCheckSeverity.ERROR,
                    f"cannot retrieve certificate from {domain}:{self._settings.port}: {exc}",
                )
            )
            return report
        except ValueError as exc:
            report.findings.append(
                TLSFinding("certificate", TLSCheckSeverity.ERROR, f"unreadable certificate: {exc}")
            )
            return report

        self._check_certificate(report, report.certificate)
        return report

    def _check_certificate(self, report: TLSReport, cert: CertificateDetails) -> None:
        now = self._clock()
        if not cert.covers(report.domain):
            report.findings.append(
                TLSFinding(
                    "hostname",
                    TLSCheckSeverity.ERROR,
                    f"certificate does not cover {report.domain} "
                    f"(names: {', '.join(cert.dns_names) or 'none'})",
                )
            )
        if cert.not_valid_before > now:
            report.findings.append(
                TLSFinding(
                    "expiry",
                    TLSCheckSeverity.ERROR,
                    f"certificate not valid before {cert.not_valid_before.isoformat()}",
                )
            )
        elif cert.not_valid_after <= now:
            report.findings.append(
                TLSFinding(
                    "expiry",
                    TLSCheckSeverity.ERROR,
                    f"certificate expired on {cert.not_valid_after.isoformat()}",
                )
            )
        else:
            days_remaining = (cert.not_valid_after - now).days
            severity = (
                TLSCheckSeverity.WARNING
                if days_remaining <= self._settings.warn_expiry_days
                else TLSCheckSeverity.OK
            )
            report.findings.append(
                TLSFinding(
                    "expiry",
                    severity,
                    f"valid until {cert.not_valid_after.isoformat()} "
                    f"({days_remaining} day(s) remaining)",
                )
            )


__all__ = [
    "CERT_RESOLVER_ANNOTATION",
    "CertificateDetails",
    "TLSCheckSeverity",
    "TLSFinding",
    "TLSInspector",
    "TLSReport",
    "fetch_certificate",
    "parse_certificate",
]
