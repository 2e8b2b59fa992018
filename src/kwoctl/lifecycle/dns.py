"""DNS resolver registrations feeding Traefik's ACME certificate resolvers."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, ClassVar

from ..errors import MissingCredentialError
from ..naming import PROVIDERS, get_provider, parse_resolver_name, resolver_name
from ..regenerator import TraefikConfigRegenerator
from ..stores import ConfigMapDocument, CredentialStore, MetadataStore, SecretDocument
from .base import (
    RESOURCE_MISSING,
    RESOURCE_OK,
    CheckResult,
    EntityController,
    OperationResult,
    TeardownStep,
)


def require_credentials(provider: str, values: Mapping[str, Any] | None) -> dict[str, str]:
    """Return the provider's credential values, rejecting missing or empty ones."""
    definition = get_provider(provider)
    supplied = dict(values or {})
    collected: dict[str, str] = {}
    for key in definition.credential_keys:
        value = str(supplied.get(key) or "").strip()
        if not value:
            raise MissingCredentialError(
                f"{definition.display_name} credential {key} is required and must not be empty."
            )
        collected[key] = value
    return collected


class DnsResolverController(EntityController):
    """``letsencrypt-<provider>[-<suffix>]`` resolver registrations."""

    kind: ClassVar[str] = "dns"
    delete_operation: ClassVar[str] = "remove"

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------
    @property
    def metadata(self) -> MetadataStore:
        config = self.context.config
        document = ConfigMapDocument(
            self.context.kubectl,
            config.stores.dns_config_map,
            config.cluster.namespace,
            config.stores.dns_config_key,
            compare_and_swap=config.stores.compare_and_swap,
        )
        return MetadataStore(document, kind="DNS resolver")

    @property
    def credentials(self) -> CredentialStore:
        """Return the shared provider credential Secret."""
        config = self.context.config
        return CredentialStore(
            SecretDocument(
                self.context.kubectl,
                config.stores.dns_secret,
                config.cluster.namespace,
                compare_and_swap=config.stores.compare_and_swap,
            )
        )

    def regenerator(self) -> TraefikConfigRegenerator:
        """Return the Traefik resolver publisher bound to this context."""
        config = self.context.config
        return TraefikConfigRegenerator(
            self.context.kubectl,
            self.metadata,
            settings=config.traefik,
            readiness=config.readiness,
            namespace=config.cluster.namespace,
            credentials_secret=config.stores.dns_secret,
            cluster_config_map=config.cluster.config_map,
            sleep=self.context.sleep,
        )

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    def canonical_name(self, name: str, spec: Mapping[str, Any]) -> str:
        return resolver_name(name, spec.get("suffix"))

    def validate_existing_name(self, name: str) -> str:
        candidate = name.strip()
        if candidate.lower() in PROVIDERS:
            return resolver_name(candidate)
        parse_resolver_name(candidate)
        return candidate

    def archive_label(self, name: str) -> str:
        return f"dns-{name}"

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------
    def validate_spec(self, name: str, spec: Mapping[str, Any]) -> None:
        provider, _ = parse_resolver_name(name)
        require_credentials(provider, spec.get("credentials"))

    def derive_credential(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: dict[str, Any],
        result: OperationResult,
    ) -> None:
        provider, _ = parse_resolver_name(name)
        values = require_credentials(provider, spec.get("credentials"))
        self.credentials.put(values)
        artifacts["credentialKeys"] = sorted(values)

    def build_record(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: Mapping[str, Any],
    ) -> dict[str, Any]:
        provider, suffix = parse_resolver_name(name)
        definition = get_provider(provider)
        return {
            "provider": provider,
            "suffix": suffix,
            "displayName": definition.display_name,
            "docsUrl": definition.docs_url,
            "credentialKeys": list(definition.credential_keys),
        }

    def resource_refs(self, name: str, spec: Mapping[str, Any]) -> list[dict[str, str]]:
        config = self.context.config
        return [
            {
                "kind": "Secret",
                "name": config.stores.dns_secret,
                "namespace": config.cluster.namespace,
            },
            {
                "kind": "HelmChartConfig",
                "name": config.traefik.helm_chart_config,
                "namespace": config.cluster.namespace,
            },
        ]

    def validate_mutation(
        self,
        name: str,
        record: Mapping[str, Any],
        mutation: Mapping[str, Any],
    ) -> None:
        require_credentials(str(record.get("provider")), mutation.get("credentials"))

    def apply_update(
        self,
        name: str,
        record: dict[str, Any],
        mutation: Mapping[str, Any],
        result: OperationResult,
    ) -> dict[str, Any]:
        values = require_credentials(str(record.get("provider")), mutation.get("credentials"))
        self.credentials.put(values)
        self._step(result, "credentials.replace", "success", ", ".join(sorted(values)))
        return record

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------
    def archive_sources(self, name: str, record: Mapping[str, Any]) -> dict[str, Any]:
        config = self.context.config
        keys = list(record.get("credentialKeys") or [])
        return {
            "metadata": lambda: record,
            "credentials": lambda: self.credentials.get_many(keys),
            "manifests": {
                "helmchartconfig": lambda: self.context.kubectl.get_yaml(
                    "helmchartconfig",
                    config.traefik.helm_chart_config,
                    namespace=config.cluster.namespace,
                ),
            },
        }

    def teardown_steps(self, name: str, record: Mapping[str, Any]) -> list[TeardownStep]:
        return [TeardownStep("credentials", lambda: self._release_credentials(name, record))]

    def _release_credentials(self, name: str, record: Mapping[str, Any]) -> bool:
        # Resolvers of one provider share its canonical keys; keep those still in use.
        in_use: set[str] = set()
        for other, other_record in self.metadata.list():
            if other != name:
                in_use.update(other_record.get("credentialKeys") or [])
        releasable = [key for key in record.get("credentialKeys") or [] if key not in in_use]
        if not releasable:
            return False
        return bool(self.credentials.remove(releasable))

    def after_delete(self, name: str, result: OperationResult) -> None:
        if not self.metadata.list():
            self._warn(
                result,
                "resolvers",
                "no certificate resolvers remain; Traefik keeps serving existing "
                "certificates but cannot issue new ones.",
            )

    # ------------------------------------------------------------------
    # Downstream
    # ------------------------------------------------------------------
    def regenerate(self, result: OperationResult) -> None:
        regenerator = self.regenerator()
        result.regeneration = regenerator.publish()
        entries = ", ".join(result.regeneration.entries) or "minimal (no resolvers)"
        self._step(result, "traefik.publish", "success", entries)
        regenerator.reload()
        self._step(result, "traefik.reload", "success")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def live_status(self, name: str, record: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        keys = list(record.get("credentialKeys") or [])
        present = self.credentials.exists(keys)
        return (RESOURCE_OK if present else RESOURCE_MISSING), {}

    def check_entity(self, name: str, record: Mapping[str, Any]) -> CheckResult:
        result = CheckResult(kind=self.kind, name=name)
        provider = str(record.get("provider"))
        keys = list(record.get("credentialKeys") or [])
        values = self.credentials.get_many(keys)
        missing = [key for key in keys if key not in values]
        result.add(
            "credentials",
            not missing,
            f"missing: {', '.join(missing)}" if missing else f"{len(keys)} key(s) present",
        )
        if missing:
            return result
        decoded = {key: value.decode("utf-8", errors="replace") for key, value in values.items()}
        probe = self.context.probes.dns_provider(provider, decoded)
        result.add("provider-api", probe.passed, f"{probe.outcome.value}: {probe.detail}")
        published = self.regenerator().published_resolvers()
        result.add(
            "traefik",
            published is not None and name in published,
            "resolver published" if published and name in published
            else "resolver absent from HelmChartConfig",
        )
        return result


__all__ = ["DnsResolverController", "require_credentials"]
