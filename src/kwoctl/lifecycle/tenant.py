"""Tenant accounts: one namespace with a namespaced deployer identity."""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar

from .accounts import MANAGED_LABELS, TENANT_RULES, AccountController
from .base import RESOURCE_MISSING, RESOURCE_OK, ProvisionStep, TeardownStep

SERVICE_ACCOUNT = "deployer"
ROLE = "tenant-deployer"
ROLE_BINDING = "deployer-binding"
TOKEN_SECRET = "deployer-token"

_WORKLOAD_KINDS = ("pods", "deployments", "services", "ingresses")


class TenantController(AccountController):
    """Namespace-scoped deployer accounts."""

    kind: ClassVar[str] = "tenant"
    metadata_file: ClassVar[str] = "tenants.json"

    def account_namespace(self, name: str) -> str:
        return name

    def service_account(self, name: str) -> str:
        return SERVICE_ACCOUNT

    def token_secret(self, name: str) -> str:
        return TOKEN_SECRET

    def context_namespace(self, name: str) -> str | None:
        return name

    def kubeconfig_path(self, name: str) -> Path:
        return self.context.config.kubeconfig_dir / f"{name}-kubeconfig.yaml"

    def record_fields(self, name: str) -> dict[str, Any]:
        return {"namespace": name, "role": ROLE, "roleBinding": ROLE_BINDING}

    def resource_refs(self, name: str, spec: Mapping[str, Any]) -> list[dict[str, str]]:
        return [
            {"kind": "Namespace", "name": name},
            {"kind": "ServiceAccount", "name": SERVICE_ACCOUNT, "namespace": name},
            {"kind": "Role", "name": ROLE, "namespace": name},
            {"kind": "RoleBinding", "name": ROLE_BINDING, "namespace": name},
            {"kind": "Secret", "name": TOKEN_SECRET, "namespace": name},
        ]

    def provision_steps(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: dict[str, Any],
    ) -> list[ProvisionStep]:
        return [
            ProvisionStep("namespace", lambda: self._ensure(_namespace_manifest(name))),
            ProvisionStep(
                "serviceaccount", lambda: self._ensure(self._service_account_manifest(name))
            ),
            ProvisionStep("role", lambda: self._ensure(_role_manifest(name))),
            ProvisionStep("rolebinding", lambda: self._ensure(_role_binding_manifest(name))),
        ]

    def teardown_steps(self, name: str, record: Mapping[str, Any]) -> list[TeardownStep]:
        kubectl = self.context.kubectl
        return [
            TeardownStep(
                "secret", lambda: kubectl.delete("secret", TOKEN_SECRET, namespace=name)
            ),
            TeardownStep(
                "rolebinding", lambda: kubectl.delete("rolebinding", ROLE_BINDING, namespace=name)
            ),
            TeardownStep("role", lambda: kubectl.delete("role", ROLE, namespace=name)),
            TeardownStep(
                "serviceaccount",
                lambda: kubectl.delete("serviceaccount", SERVICE_ACCOUNT, namespace=name),
            ),
            TeardownStep("namespace", lambda: kubectl.delete("namespace", name)),
        ]

    def manifest_snapshots(self, name: str) -> dict[str, Any]:
        kubectl = self.context.kubectl
        return {
            "resources": lambda: kubectl.get_yaml(
                "all,ingress,secrets,configmaps", namespace=name
            ),
            "role": lambda: kubectl.get_yaml("role", ROLE, namespace=name),
            "rolebinding": lambda: kubectl.get_yaml("rolebinding", ROLE_BINDING, namespace=name),
        }

    def live_status(self, name: str, record: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        kubectl = self.context.kubectl
        if not kubectl.exists("namespace", name):
            return RESOURCE_MISSING, {}
        details = {
            kind: len(kubectl.list_objects(kind, namespace=name)) for kind in _WORKLOAD_KINDS
        }
        present = kubectl.exists("serviceaccount", SERVICE_ACCOUNT, namespace=name)
        return (RESOURCE_OK if present else RESOURCE_MISSING), details


def _namespace_manifest(name: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": name,
            "labels": {**MANAGED_LABELS, "kwo.io/tenant": name},
        },
    }


def _role_manifest(name: str) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": {"name": ROLE, "namespace": name, "labels": dict(MANAGED_LABELS)},
        "rules": [dict(rule) for rule in TENANT_RULES],
    }


def _role_binding_manifest(name: str) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {"name": ROLE_BINDING, "namespace": name, "labels": dict(MANAGED_LABELS)},
        "subjects": [{"kind": "ServiceAccount", "name": SERVICE_ACCOUNT, "namespace": name}],
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "Role",
            "name": ROLE,
        },
    }


__all__ = ["TenantController"]
