"""Downstream configuration derived from entity metadata.

Two documents are derived wholesale, never patched incrementally:

* the Traefik ``HelmChartConfig`` whose ``certificatesResolvers`` mirror the
  active DNS resolver entities, and
* k3s' ``registries.yaml`` carrying the auth for every registry entity.

``publish`` rewrites the derived document from the full entity list;
``reload`` signals the consuming service. Reload failures surface as
:class:`~kwoctl.errors.DownstreamReloadError` and never undo a publish.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import ReadinessConfig, RegistryConfig, TraefikConfig
from .errors import DownstreamReloadError, KwoError, NotFoundError, ReadinessTimeoutError
from .polling import wait_for
from .providers.kubectl import KubectlError, KubectlProvider
from .providers.systemd import SystemdError, SystemdProvider
from .stores import CredentialStore, MetadataStore
from .templates import TemplateEngine, TemplateRenderError

LOGGER = logging.getLogger(__name__)

HELM_CHART_CONFIG_API = "helm.cattle.io/v1"
REGISTRIES_TEMPLATE = "k3s/registries.yaml.j2"


@dataclass(slots=True)
class RegenerationResult:
    """What a publish run produced."""

    target: str
    entries: list[str] = field(default_factory=list)
    minimal: bool = False
    changed: bool = True
    warnings: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable description."""
        return {
            "target": self.target,
            "entries": list(self.entries),
            "minimal": self.minimal,
            "changed": self.changed,
            "warnings": list(self.warnings),
        }


class TraefikConfigRegenerator:
    """Rebuild Traefik's certificate resolvers from the DNS resolver entities."""

    def __init__(
        self,
        kubectl: KubectlProvider,
        resolvers: MetadataStore,
        *,
        settings: TraefikConfig,
        readiness: ReadinessConfig,
        namespace: str,
        credentials_secret: str,
        cluster_config_map: str,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._kubectl = kubectl
        self._resolvers = resolvers
        self._settings = settings
        self._readiness = readiness
        self._namespace = namespace
        self._credentials_secret = credentials_secret
        self._cluster_config_map = cluster_config_map
        self._sleep = sleep

    def acme_email(self) -> str | None:
        """Return the ACME account email from config or the cluster ConfigMap."""
        if self._settings.acme_email:
            return self._settings.acme_email
        try:
            config_map = self._kubectl.get(
                "configmap", self._cluster_config_map, namespace=self._namespace
            )
        except KubectlError as exc:
            LOGGER.warning("cannot read %s: %s", self._cluster_config_map, exc)
            return None
        value = ((config_map or {}).get("data") or {}).get("acme-email")
        return str(value) if value else None

    def build_values(
        self,
        resolvers: list[tuple[str, dict[str, Any]]],
        email: str | None,
    ) -> dict[str, Any]:
        """Return the chart values for *resolvers* (minimal when empty)."""
        values: dict[str, Any] = {
            "persistence": {"enabled": True},
            "ports": {
                "web": {
                    "redirections": {
                        "entryPoint": {
                            "to": "websecure",
                            "scheme": "https",
                            "permanent": True,
                        }
                    }
                },
                "websecure": {"tls": {"enabled": True}},
            },
        }
        if not resolvers:
            return values
        values["certificatesResolvers"] = {
            name: {
                "acme": {
                    "email": email,
                    "storage": f"/data/acme-{name}.json",
                    "dnsChallenge": {
                        "provider": record.get("provider"),
                        "resolvers": list(self._settings.dns_resolvers),
                    },
                }
            }
            for name, record in resolvers
        }
        values["envFrom"] = [{"secretRef": {"name": self._credentials_secret}}]
        return values

    def build_manifest(self, values: dict[str, Any]) -> dict[str, Any]:
        """Wrap chart *values* in a ``HelmChartConfig`` manifest."""
        return {
            "apiVersion": HELM_CHART_CONFIG_API,
            "kind": "HelmChartConfig",
            "metadata": {
                "name": self._settings.helm_chart_config,
                "namespace": self._namespace,
                "labels": {"app.kubernetes.io/managed-by": "kwoctl"},
            },
            "spec": {"valuesContent": yaml.safe_dump(values, sort_keys=False)},
        }

    def publish(self) -> RegenerationResult:
        """Publish the configuration computed from every active resolver."""
        resolvers = [
            (name, record)
            for name, record in self._resolvers.list()
            if record.get("status", "active") == "active"
        ]
        email = self.acme_email() if resolvers else None
        if resolvers and not email:
            raise DownstreamReloadError(
                "no ACME email configured (set traefik.acme_email or "
                f"'acme-email' in ConfigMap {self._cluster_config_map}); "
                "certificate resolvers were not published."
            )
        manifest = self.build_manifest(self.build_values(resolvers, email))
        try:
            self._kubectl.apply(manifest)
        except KubectlError as exc:
            raise DownstreamReloadError(
                f"failed to publish HelmChartConfig {self._settings.helm_chart_config}: {exc}"
            ) from exc
        names = [name for name, _ in resolvers]
        LOGGER.info("published %d certificate resolver(s): %s", len(names), ", ".join(names))
        return RegenerationResult(
            target=f"HelmChartConfig {self._namespace}/{self._settings.helm_chart_config}",
            entries=names,
            minimal=not names,
        )

    def published_resolvers(self) -> list[str] | None:
        """Return resolver names currently published, or ``None`` when unpublished."""
        obj = self._kubectl.get(
            "helmchartconfig", self._settings.helm_chart_config, namespace=self._namespace
        )
        if obj is None:
            return None
        content = (obj.get("spec") or {}).get("valuesContent") or ""
        values = yaml.safe_load(content) or {}
        resolvers = values.get("certificatesResolvers") or {}
        return sorted(resolvers)

    def reload(self) -> None:
        """Restart Traefik and wait (bounded) for the rollout to settle."""
        deployment = self._settings.deployment
        try:
            self._kubectl.rollout_restart("deployment", deployment, namespace=self._namespace)
            self._kubectl.delete_selected(
                "pods", self._settings.pod_selector, namespace=self._namespace
            )
        except KubectlError as exc:
            raise DownstreamReloadError(f"failed to restart {deployment}: {exc}") from exc
        try:
            wait_for(
                lambda: self._kubectl.rollout_status(
                    "deployment",
                    deployment,
                    namespace=self._namespace,
                    timeout=self._readiness.interval,
                ),
                what=f"deployment/{deployment} rollout",
                attempts=self._readiness.attempts,
                interval=self._readiness.interval,
                sleep=self._sleep,
            )
        except ReadinessTimeoutError as exc:
            raise DownstreamReloadError(f"{deployment} did not become ready: {exc}") from exc


class RegistryAuthRegenerator:
    """Rebuild k3s ``registries.yaml`` from every registry entity."""

    def __init__(
        self,
        kubectl: KubectlProvider,
        registries: MetadataStore,
        credentials_for: Callable[[str], CredentialStore],
        templates: TemplateEngine,
        systemd: SystemdProvider,
        *,
        settings: RegistryConfig,
        namespace: str,
    ) -> None:
        self._kubectl = kubectl
        self._registries = registries
        self._credentials_for = credentials_for
        self._templates = templates
        self._systemd = systemd
        self._settings = settings
        self._namespace = namespace

    @property
    def path(self) -> Path:
        """Return the registries file path."""
        return self._settings.registries_file

    def publish(self) -> RegenerationResult:
        """Render the registries file from all active registry entities."""
        result = RegenerationResult(target=str(self.path))
        entries: list[dict[str, str]] = []
        for name, record in self._registries.list():
            if record.get("status", "active") != "active":
                continue
            secret_name = str(record.get("secretName") or f"{name}-auth")
            try:
                password = self._credentials_for(secret_name).get("password").decode("utf-8")
            except NotFoundError as exc:
                result.warnings.append(f"registry '{name}' skipped: {exc}")
                continue
            except KwoError as exc:
                raise DownstreamReloadError(
                    f"left {self.path} unchanged: cannot read credentials of "
                    f"registry '{name}': {exc}"
                ) from exc
            entries.append(
                {
                    "domain": str(record.get("domain")),
                    "username": str(record.get("username")),
                    "password": password,
                }
            )
            result.entries.append(name)
        result.minimal = not entries
        try:
            result.changed = self._templates.render_to_path(
                REGISTRIES_TEMPLATE,
                self.path,
                {"registries": entries},
                mode=0o600,
            )
        except TemplateRenderError as exc:
            raise DownstreamReloadError(f"failed to write {self.path}: {exc}") from exc
        return result

    def reload(self) -> None:
        """Restart registry pods and k3s so the new auth is picked up."""
        errors: list[str] = []
        try:
            self._kubectl.delete_selected(
                "pods", self._settings.pod_selector, namespace=self._namespace
            )
        except KubectlError as exc:
            errors.append(f"registry pods: {exc}")
        try:
            self._systemd.restart(self._settings.k3s_service)
        except SystemdError as exc:
            errors.append(f"{self._settings.k3s_service}: {exc}")
        if errors:
            raise DownstreamReloadError("; ".join(errors))


__all__ = [
    "RegenerationResult",
    "RegistryAuthRegenerator",
    "TraefikConfigRegenerator",
]
