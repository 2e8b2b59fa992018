"""Naming rules and the DNS provider registry.

Everything in this module is pure: mutating commands call into it before any
store is touched so validation failures never leave partial state behind.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import InvalidNameError, UnsupportedProviderError

NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
MAX_NAME_LENGTH = 63
RESOLVER_PREFIX = "letsencrypt"
RESERVED_NAMESPACES = frozenset({"default", "kube-system", "kube-public", "kube-node-lease"})


@dataclass(frozen=True, slots=True)
class DnsProvider:
    """A DNS-01 challenge provider supported by the ingress controller."""

    name: str
    display_name: str
    credential_keys: tuple[str, ...]

    @property
    def docs_url(self) -> str:
        """Return the upstream documentation page for the provider."""
        return f"https://go-acme.github.io/lego/dns/{self.name}/"


PROVIDERS: dict[str, DnsProvider] = {
    provider.name: provider
    for provider in (
        DnsProvider("cloudflare", "Cloudflare", ("CF_DNS_API_TOKEN",)),
        DnsProvider(
            "ovh",
            "OVH",
            (
                "OVH_ENDPOINT",
                "OVH_APPLICATION_KEY",
                "OVH_APPLICATION_SECRET",
                "OVH_CONSUMER_KEY",
            ),
        ),
        DnsProvider(
            "route53",
            "AWS Route53",
            ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION"),
        ),
        DnsProvider("digitalocean", "DigitalOcean", ("DO_AUTH_TOKEN",)),
    )
}

RESOLVER_PATTERN = re.compile(
    rf"^{RESOLVER_PREFIX}-({'|'.join(PROVIDERS)})(-[a-z0-9]([a-z0-9-]*[a-z0-9])?)?$"
)


def validate_entity_name(name: str, *, kind: str = "entity") -> str:
    """Validate a tenant/admin-deployer/registry name and return it normalised."""
    normalised = name.strip()
    if not normalised:
        raise InvalidNameError(f"{kind} name must be a non-empty string.")
    if len(normalised) > MAX_NAME_LENGTH:
        raise InvalidNameError(
            f"{kind} name '{normalised}' exceeds {MAX_NAME_LENGTH} characters."
        )
    if not NAME_PATTERN.match(normalised):
        raise InvalidNameError(
            f"{kind} name '{normalised}' must be lowercase alphanumeric with internal "
            "hyphens only."
        )
    if kind == "tenant" and normalised in RESERVED_NAMESPACES:
        raise InvalidNameError(f"'{normalised}' is a reserved system namespace.")
    return normalised


def validate_suffix(suffix: str | None) -> str | None:
    """Validate an optional resolver suffix; empty input means no suffix."""
    if suffix is None:
        return None
    normalised = suffix.strip()
    if not normalised:
        return None
    if not NAME_PATTERN.match(normalised):
        raise InvalidNameError(
            f"suffix '{normalised}' must be lowercase alphanumeric with internal "
            "hyphens only."
        )
    return normalised


def get_provider(name: str) -> DnsProvider:
    """Return the registered provider called *name*."""
    provider = PROVIDERS.get(name.strip().lower())
    if provider is None:
        supported = ", ".join(sorted(PROVIDERS))
        raise UnsupportedProviderError(
            f"unsupported DNS provider '{name}' (supported: {supported})."
        )
    return provider


def resolver_name(provider: str, suffix: str | None = None) -> str:
    """Return the canonical certificate resolver name for a binding."""
    resolved = get_provider(provider)
    checked_suffix = validate_suffix(suffix)
    name = f"{RESOLVER_PREFIX}-{resolved.name}"
    if checked_suffix:
        name = f"{name}-{checked_suffix}"
    if len(name) > MAX_NAME_LENGTH:
        raise InvalidNameError(f"resolver name '{name}' exceeds {MAX_NAME_LENGTH} characters.")
    return name


def parse_resolver_name(name: str) -> tuple[str, str | None]:
    """Split a canonical resolver name into ``(provider, suffix)``."""
    normalised = name.strip()
    match = RESOLVER_PATTERN.match(normalised)
    if match is None:
        raise InvalidNameError(
            f"'{normalised}' is not a valid resolver name "
            f"(expected {RESOLVER_PREFIX}-<provider>[-<suffix>])."
        )
    provider = match.group(1)
    suffix_part = match.group(2)
    return provider, suffix_part[1:] if suffix_part else None


__all__ = [
    "DnsProvider",
    "MAX_NAME_LENGTH",
    "NAME_PATTERN",
    "PROVIDERS",
    "RESERVED_NAMESPACES",
    "get_provider",
    "parse_resolver_name",
    "resolver_name",
    "validate_entity_name",
    "validate_suffix",
]
