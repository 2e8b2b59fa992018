"""Private image registry credential sets and the k3s registry auth file."""
from __future__ import annotations

import re
import secrets
import string
from collections.abc import Mapping
from typing import Any, ClassVar

import yaml

from ..errors import MissingCredentialError, NotFoundError
from ..regenerator import RegistryAuthRegenerator
from ..stores import ConfigMapDocument, CredentialStore, MetadataStore, SecretDocument
from .base import (
    RESOURCE_MISSING,
    RESOURCE_OK,
    CheckResult,
    EntityController,
    OperationResult,
    TeardownStep,
)
from .dns import DnsResolverController

CREDENTIAL_KEYS = ("htpasswd", "username", "password")
DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}(:\d+)?$)[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*(:\d+)?$"
)
_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int) -> str:
    """Return a random alphanumeric password of *length* characters."""
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


class RegistryController(EntityController):
    """Registry credential sets, one ``<name>-auth`` Secret each."""

    kind: ClassVar[str] = "registry"

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------
    @property
    def metadata(self) -> MetadataStore:
        config = self.context.config
        document = ConfigMapDocument(
            self.context.kubectl,
            config.stores.registry_config_map,
            config.cluster.namespace,
            config.stores.registry_config_key,
            compare_and_swap=config.stores.compare_and_swap,
        )
        return MetadataStore(document, kind="registry")

    def credentials(self, secret_name: str) -> CredentialStore:
        """Return the auth Secret *secret_name* as a credential store."""
        config = self.context.config
        return CredentialStore(
            SecretDocument(
                self.context.kubectl,
                secret_name,
                config.cluster.namespace,
                compare_and_swap=config.stores.compare_and_swap,
            )
        )

    def regenerator(self) -> RegistryAuthRegenerator:
        """Return the ``registries.yaml`` publisher bound to this context."""
        config = self.context.config
        return RegistryAuthRegenerator(
            self.context.kubectl,
            self.metadata,
            self.credentials,
            self.context.templates,
            self.context.systemd,
            settings=config.registry,
            namespace=config.cluster.namespace,
        )

    @staticmethod
    def secret_name(name: str, record: Mapping[str, Any] | None = None) -> str:
        """Return the auth Secret name recorded for (or derived from) *name*."""
        return str((record or {}).get("secretName") or f"{name}-auth")

    def archive_label(self, name: str) -> str:
        if name == self.context.config.registry.default_name:
            return "registry"
        return f"registry-{name}"

    # ------------------------------------------------------------------
    # Create / rotate
    # ------------------------------------------------------------------
    def validate_spec(self, name: str, spec: Mapping[str, Any]) -> None:
        domain = str(spec.get("domain") or "").strip().lower()
        if not domain:
            raise MissingCredentialError(
                "registry domain is required (set REGISTRY_DOMAIN or answer the prompt)."
            )
        if not DOMAIN_PATTERN.match(domain):
            raise MissingCredentialError(f"registry domain '{domain}' is not a valid host name.")
        username = str(spec.get("username") or self.context.config.registry.default_username)
        if not username.strip() or ":" in username:
            raise MissingCredentialError("registry username must be non-empty without ':'.")
        resolver = str(spec.get("cert_resolver") or "").strip()
        if resolver and DnsResolverController(self.context).metadata.find(resolver) is None:
            raise NotFoundError(
                f"certificate resolver '{resolver}' not found; register it with 'kwoctl dns add'."
            )

    def derive_credential(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: dict[str, Any],
        result: OperationResult,
    ) -> None:
        username = str(spec.get("username") or self.context.config.registry.default_username)
        store = self.credentials(self.secret_name(name))
        existing = store.get_many(CREDENTIAL_KEYS)
        if (
            len(existing) == len(CREDENTIAL_KEYS)
            and existing["username"].decode("utf-8", errors="replace") == username
        ):
            # Re-run after a partial create: keep the password already handed out.
            self._step(result, "password", "skipped", "reusing existing credential")
            artifacts["secretName"] = self.secret_name(name)
            return
        password = generate_password(self.context.config.registry.password_length)
        self._store_credentials(store, username, password)
        artifacts["secretName"] = self.secret_name(name)

    def _store_credentials(self, store: CredentialStore, username: str, password: str) -> None:
        entry = self.context.htpasswd.generate(username, password)
        store.put({"htpasswd": entry + "\n", "username": username, "password": password})

    def build_record(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: Mapping[str, Any],
    ) -> dict[str, Any]:
        resolver = str(spec.get("cert_resolver") or "").strip()
        return {
            "domain": str(spec.get("domain")).strip().lower(),
            "username": str(spec.get("username") or self.context.config.registry.default_username),
            "certResolverRef": resolver or None,
            "secretName": artifacts.get("secretName") or self.secret_name(name),
        }

    def resource_refs(self, name: str, spec: Mapping[str, Any]) -> list[dict[str, str]]:
        return [
            {
                "kind": "Secret",
                "name": self.secret_name(name),
                "namespace": self.context.config.cluster.namespace,
            }
        ]

    def update_operation(self, mutation: Mapping[str, Any]) -> str:
        return "rotate"

    def apply_update(
        self,
        name: str,
        record: dict[str, Any],
        mutation: Mapping[str, Any],
        result: OperationResult,
    ) -> dict[str, Any]:
        store = self.credentials(self.secret_name(name, record))
        previous = store.get_many(["password"]).get("password", b"").decode("utf-8", "replace")
        length = self.context.config.registry.password_length
        password = generate_password(length)
        while password == previous:
            password = generate_password(length)
        self._store_credentials(store, str(record.get("username")), password)
        self._step(result, "password.rotate", "success", self.secret_name(name, record))
        return record

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------
    def archive_sources(self, name: str, record: Mapping[str, Any]) -> dict[str, Any]:
        secret = self.secret_name(name, record)
        config = self.context.config
        files = {}
        if config.registry.registries_file.exists():
            files["registries.yaml"] = config.registry.registries_file
        return {
            "metadata": lambda: record,
            "credentials": lambda: self.credentials(secret).get_many(CREDENTIAL_KEYS),
            "manifests": {
                "secret": lambda: self.context.kubectl.get_yaml(
                    "secret", secret, namespace=config.cluster.namespace
                ),
            },
            "files": files,
        }

    def teardown_steps(self, name: str, record: Mapping[str, Any]) -> list[TeardownStep]:
        secret = self.secret_name(name, record)
        namespace = self.context.config.cluster.namespace
        return [
            TeardownStep(
                "secret", lambda: self.context.kubectl.delete("secret", secret, namespace=namespace)
            )
        ]

    # ------------------------------------------------------------------
    # Downstream
    # ------------------------------------------------------------------
    def regenerate(self, result: OperationResult) -> None:
        regenerator = self.regenerator()
        result.regeneration = regenerator.publish()
        for warning in result.regeneration.warnings:
            self._warn(result, "registries.publish", warning)
        entries = ", ".join(result.regeneration.entries) or "no registries"
        self._step(result, "registries.publish", "success", f"{regenerator.path}: {entries}")
        regenerator.reload()
        self._step(result, "registries.reload", "success")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def get_credentials(self, name: str) -> dict[str, str]:
        """Return the registry login for *name* (domain, username, password)."""
        canonical = self.validate_existing_name(name)
        record = self.metadata.get(canonical)
        store = self.credentials(self.secret_name(canonical, record))
        password = store.get("password").decode("utf-8")
        return {
            "name": canonical,
            "domain": str(record.get("domain")),
            "username": str(record.get("username")),
            "password": password,
        }

    def status(self, name: str | None = None) -> list[dict[str, Any]]:
        """Return per-registry deployment status (secret, auth file, pods)."""
        if name is not None:
            canonical = self.validate_existing_name(name)
            entries = [(canonical, self.metadata.get(canonical))]
        else:
            entries = self.metadata.list()
        published = self._published_domains()
        config = self.context.config
        pods = self.context.kubectl.list_objects(
            "pods", namespace=config.cluster.namespace, selector=config.registry.pod_selector
        )
        running = sum(
            1 for pod in pods if (pod.get("status") or {}).get("phase") == "Running"
        )
        rows = []
        for entry, record in entries:
            secret = self.secret_name(entry, record)
            rows.append(
                {
                    "name": entry,
                    "domain": record.get("domain"),
                    "username": record.get("username"),
                    "certResolverRef": record.get("certResolverRef"),
                    "secret": self.credentials(secret).exists(CREDENTIAL_KEYS),
                    "registriesFile": record.get("domain") in published,
                    "podsRunning": running,
                }
            )
        return rows

    def _published_domains(self) -> set[str]:
        path = self.context.config.registry.registries_file
        try:
            content = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError):
            return set()
        configs = content.get("configs") if isinstance(content, dict) else None
        return set(configs or {})

    def live_status(self, name: str, record: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        present = self.credentials(self.secret_name(name, record)).exists(CREDENTIAL_KEYS)
        return (RESOURCE_OK if present else RESOURCE_MISSING), {}

    def check_entity(self, name: str, record: Mapping[str, Any]) -> CheckResult:
        result = CheckResult(kind=self.kind, name=name)
        secret = self.secret_name(name, record)
        values = self.credentials(secret).get_many(CREDENTIAL_KEYS)
        missing = [key for key in CREDENTIAL_KEYS if key not in values]
        result.add(
            "credentials",
            not missing,
            f"secret {secret} missing: {', '.join(missing)}" if missing else f"secret {secret}",
        )
        domain = str(record.get("domain"))
        result.add(
            "registries-file",
            domain in self._published_domains(),
            str(self.context.config.registry.registries_file),
        )
        if "password" in values:
            probe = self.context.probes.registry(
                domain,
                str(record.get("username")),
                values["password"].decode("utf-8", errors="replace"),
            )
            result.add("registry-auth", probe.passed, f"{probe.outcome.value}: {probe.detail}")
        return result


__all__ = ["CREDENTIAL_KEYS", "RegistryController", "generate_password"]
