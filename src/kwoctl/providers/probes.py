"""Live credential probes against the systems that consume kwoctl credentials."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import httpx

HTTPClientFactory = Callable[..., httpx.Client]

CLOUDFLARE_VERIFY_URL = "https://api.cloudflare.com/client/v4/user/tokens/verify"


class ProbeOutcome(str, Enum):
    """Result categories for a live probe."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a single live probe."""

    outcome: ProbeOutcome
    detail: str

    @property
    def passed(self) -> bool:
        """Return True unless the probe actively failed."""
        return self.outcome is not ProbeOutcome.FAILED


class CredentialProbe:
    """HTTP probes for DNS provider tokens and registry basic auth."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        verify_tls: bool = True,
        http_client_factory: HTTPClientFactory = httpx.Client,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._verify_tls = verify_tls
        self._http_client_factory = http_client_factory

    def dns_provider(self, provider: str, credentials: dict[str, str]) -> ProbeResult:
        """Verify DNS provider credentials where the provider offers an API for it."""
        if provider != "cloudflare":
            return ProbeResult(
                ProbeOutcome.SKIPPED,
                f"no live verification available for {provider}; presence checked only",
            )
        token = credentials.get("CF_DNS_API_TOKEN", "")
        try:
            with self._http_client_factory(
                timeout=self._timeout_seconds,
                verify=self._verify_tls,
            ) as client:
                response = client.get(
                    CLOUDFLARE_VERIFY_URL,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as exc:
            return ProbeResult(ProbeOutcome.FAILED, f"cloudflare API unreachable: {exc}")
        if response.status_code == 200:
            return ProbeResult(ProbeOutcome.PASSED, "cloudflare token verified")
        return ProbeResult(
            ProbeOutcome.FAILED,
            f"cloudflare rejected the token (HTTP {response.status_code})",
        )

    def registry(self, domain: str, username: str, password: str) -> ProbeResult:
        """Authenticate against ``https://<domain>/v2/`` with basic auth."""
        url = f"https://{domain}/v2/"
        try:
            with self._http_client_factory(
                timeout=self._timeout_seconds,
                verify=self._verify_tls,
            ) as client:
                response = client.get(url, auth=(username, password))
        except httpx.HTTPError as exc:
            return ProbeResult(ProbeOutcome.FAILED, f"registry unreachable at {url}: {exc}")
        if response.status_code == 200:
            return ProbeResult(ProbeOutcome.PASSED, f"authenticated against {url}")
        return ProbeResult(
            ProbeOutcome.FAILED,
            f"registry rejected credentials (HTTP {response.status_code})",
        )


__all__ = ["CredentialProbe", "ProbeOutcome", "ProbeResult"]
