"""Service-account backed entities: tenants and admin deployers.

Both variants provision a principal (ServiceAccount), a policy (Role or
ClusterRole), a binding, and a long-lived token Secret, then derive a
kubeconfig for the account from the populated token.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar

import yaml

from .. import __version__
from ..errors import KwoError, ReadinessTimeoutError
from ..polling import wait_for
from ..providers import KubectlError
from ..stores import CredentialStore, Document, FileDocument, MetadataStore, SecretDocument
from .base import (
    RESOURCE_MISSING,
    RESOURCE_OK,
    CheckResult,
    EntityController,
    OperationResult,
)

LOGGER = logging.getLogger(__name__)

KUBECONFIG_TEMPLATE = "kubeconfig/kubeconfig.yaml.j2"
TOKEN_KEY = "token"
TOKEN_SECRET_TYPE = "kubernetes.io/service-account-token"
MANAGED_LABELS = {"app.kubernetes.io/managed-by": "kwoctl"}

TENANT_RULES: list[dict[str, list[str]]] = [
    {
        "apiGroups": [""],
        "resources": [
            "pods",
            "pods/log",
            "pods/portforward",
            "services",
            "endpoints",
            "secrets",
            "configmaps",
            "persistentvolumeclaims",
        ],
        "verbs": ["*"],
    },
    {
        "apiGroups": ["apps"],
        "resources": ["deployments", "statefulsets", "daemonsets", "replicasets"],
        "verbs": ["*"],
    },
    {"apiGroups": ["batch"], "resources": ["jobs", "cronjobs"], "verbs": ["*"]},
    {
        "apiGroups": ["networking.k8s.io"],
        "resources": ["ingresses", "networkpolicies"],
        "verbs": ["*"],
    },
    {
        "apiGroups": ["autoscaling"],
        "resources": ["horizontalpodautoscalers"],
        "verbs": ["*"],
    },
]


class AccountController(EntityController):
    """Lifecycle shared by every ServiceAccount-backed variant."""

    metadata_file: ClassVar[str] = ""
    probe_args: ClassVar[tuple[str, ...]] = ("auth", "can-i", "get", "pods")

    # ------------------------------------------------------------------
    # Variant naming
    # ------------------------------------------------------------------
    def account_namespace(self, name: str) -> str:
        raise NotImplementedError

    def service_account(self, name: str) -> str:
        raise NotImplementedError

    def token_secret(self, name: str) -> str:
        raise NotImplementedError

    def context_namespace(self, name: str) -> str | None:
        return None

    def kubeconfig_path(self, name: str) -> Path:
        return self.context.config.kubeconfig_dir / f"{self.archive_label(name)}-kubeconfig.yaml"

    def user_name(self, name: str) -> str:
        return f"{name}-deployer"

    def record_fields(self, name: str) -> dict[str, Any]:
        return {}

    def manifest_snapshots(self, name: str) -> dict[str, Any]:
        return {}

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------
    @property
    def metadata(self) -> MetadataStore:
        config = self.context.config
        document = FileDocument(
            config.metadata_dir / self.metadata_file,
            compare_and_swap=config.stores.compare_and_swap,
        )
        return MetadataStore(document, kind=self.kind)

    def credentials(self, name: str) -> CredentialStore:
        """Return the token Secret of *name* as a credential store."""
        return CredentialStore(
            SecretDocument(
                self.context.kubectl,
                self.token_secret(name),
                self.account_namespace(name),
                secret_type=TOKEN_SECRET_TYPE,
                compare_and_swap=self.context.config.stores.compare_and_swap,
            )
        )

    # ------------------------------------------------------------------
    # Provisioning helpers
    # ------------------------------------------------------------------
    def _ensure(self, manifest: dict[str, Any]) -> str:
        self.context.kubectl.apply(manifest)
        meta = manifest["metadata"]
        where = f"{meta['namespace']}/" if meta.get("namespace") else ""
        return f"{manifest['kind']} {where}{meta['name']}"

    def _service_account_manifest(self, name: str) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {
                "name": self.service_account(name),
                "namespace": self.account_namespace(name),
                "labels": dict(MANAGED_LABELS),
            },
        }

    def _token_secret_manifest(self, name: str) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": TOKEN_SECRET_TYPE,
            "metadata": {
                "name": self.token_secret(name),
                "namespace": self.account_namespace(name),
                "labels": dict(MANAGED_LABELS),
                "annotations": {
                    "kubernetes.io/service-account.name": self.service_account(name),
                },
            },
        }

    def _wait_for_token(self, name: str, *, previous: bytes | None = None) -> str:
        store = self.credentials(name)
        readiness = self.context.config.readiness

        def _token() -> bytes | None:
            token = store.get_many([TOKEN_KEY]).get(TOKEN_KEY)
            if not token or token == previous:
                return None
            return token

        token = wait_for(
            _token,
            what=f"token in secret {self.token_secret(name)}",
            attempts=readiness.attempts,
            interval=readiness.interval,
            sleep=self.context.sleep,
        )
        return token.decode("utf-8")

    def _cluster_endpoint(self) -> tuple[str, str | None]:
        cluster = self.context.config.cluster
        kubectl = self.context.kubectl
        server = cluster.api_server
        if not server:
            config_map = kubectl.get("configmap", cluster.config_map, namespace=cluster.namespace)
            server = ((config_map or {}).get("data") or {}).get("api-server")
        view = kubectl.config_view()
        clusters = view.get("clusters") or []
        entry = (clusters[0].get("cluster") or {}) if clusters else {}
        server = server or entry.get("server")
        if not server:
            raise KubectlError("kubectl config view reported no API server address")
        return str(server), entry.get("certificate-authority-data")

    def _write_kubeconfig(self, name: str, token: str, result: OperationResult) -> dict[str, Any]:
        server, ca_data = self._cluster_endpoint()
        cluster_name = self.context.config.cluster.cluster_name
        path = self.kubeconfig_path(name)
        context = {
            "tool_version": __version__,
            "user_name": self.user_name(name),
            "cluster_name": cluster_name,
            "server": server,
            "ca_data": ca_data,
            "context_name": f"{name}@{cluster_name}",
            "namespace": self.context_namespace(name),
            "token": token,
        }
        self.context.templates.render_to_path(KUBECONFIG_TEMPLATE, path, context, mode=0o600)
        profile = yaml.safe_load(self.context.templates.render_to_string(KUBECONFIG_TEMPLATE,
                                                                        context))
        json_path = path.with_suffix(".json")
        FileDocument(json_path, mode=0o600, compact=True).write(profile, base=Document())
        self._step(result, "kubeconfig.write", "success", str(path))
        result.artifacts["kubeconfig"] = str(path)
        result.artifacts["kubeconfigJson"] = str(json_path)

        readiness = self.context.config.readiness
        try:
            wait_for(
                lambda: self.context.kubectl.probe(path, self.probe_args),
                what=f"kubeconfig {path.name} to authenticate",
                attempts=readiness.attempts,
                interval=readiness.interval,
                sleep=self.context.sleep,
            )
        except ReadinessTimeoutError as exc:
            self._warn(result, "kubeconfig.probe", str(exc))
        else:
            self._step(result, "kubeconfig.probe", "success")
        return {"kubeconfigPath": str(path), "apiServer": server}

    # ------------------------------------------------------------------
    # Strategy
    # ------------------------------------------------------------------
    def derive_credential(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: dict[str, Any],
        result: OperationResult,
    ) -> None:
        self._ensure(self._token_secret_manifest(name))
        token = self._wait_for_token(name)
        artifacts.update(self._write_kubeconfig(name, token, result))

    def build_record(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: Mapping[str, Any],
    ) -> dict[str, Any]:
        record = {
            "serviceAccount": self.service_account(name),
            "kubeconfigPath": artifacts.get("kubeconfigPath"),
            "apiServer": artifacts.get("apiServer"),
            "tokenSecret": self.token_secret(name),
        }
        record.update(self.record_fields(name))
        return record

    def update_operation(self, mutation: Mapping[str, Any]) -> str:
        return "rotate-token"

    def apply_update(
        self,
        name: str,
        record: dict[str, Any],
        mutation: Mapping[str, Any],
        result: OperationResult,
    ) -> dict[str, Any]:
        previous = self.credentials(name).get_many([TOKEN_KEY]).get(TOKEN_KEY)
        self.context.kubectl.delete(
            "secret", self.token_secret(name), namespace=self.account_namespace(name)
        )
        self._step(result, "token.revoke", "success", self.token_secret(name))
        self._ensure(self._token_secret_manifest(name))
        token = self._wait_for_token(name, previous=previous)
        self._step(result, "token.issue", "success", self.token_secret(name))
        record.update(self._write_kubeconfig(name, token, result))
        return record

    def archive_sources(self, name: str, record: Mapping[str, Any]) -> dict[str, Any]:
        files = {
            path.name: path for path in self.local_files(name, record) if path.exists()
        }
        return {
            "metadata": lambda: record,
            "credentials": lambda: self.credentials(name).get_many([TOKEN_KEY, "ca.crt"]),
            "manifests": self.manifest_snapshots(name),
            "files": files,
        }

    def local_files(self, name: str, record: Mapping[str, Any]) -> list[Path]:
        path = Path(str(record.get("kubeconfigPath") or self.kubeconfig_path(name)))
        return [path, path.with_suffix(".json")]

    def live_status(self, name: str, record: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        present = self.context.kubectl.exists(
            "serviceaccount", self.service_account(name), namespace=self.account_namespace(name)
        )
        return (RESOURCE_OK if present else RESOURCE_MISSING), {}

    def check_entity(self, name: str, record: Mapping[str, Any]) -> CheckResult:
        result = CheckResult(kind=self.kind, name=name)
        try:
            has_token = self.credentials(name).exists([TOKEN_KEY])
        except KwoError as exc:
            result.add("token", False, str(exc))
            has_token = False
        else:
            result.add(
                "token",
                has_token,
                f"secret {self.token_secret(name)}" + ("" if has_token else " has no token"),
            )
        path = Path(str(record.get("kubeconfigPath") or self.kubeconfig_path(name)))
        result.add("kubeconfig", path.is_file(), str(path))
        if has_token and path.is_file():
            try:
                accepted = self.context.kubectl.probe(path, self.probe_args)
            except KubectlError as exc:
                result.add("api-probe", False, str(exc))
            else:
                verdict = "accepted" if accepted else "rejected"
                result.add("api-probe", accepted, f"API server {verdict} the token")
        return result


__all__ = ["AccountController", "TENANT_RULES", "TOKEN_KEY"]
