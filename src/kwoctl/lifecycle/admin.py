"""Admin deployers: cluster-wide accounts for platform automation."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, ClassVar

from .accounts import MANAGED_LABELS, TENANT_RULES, AccountController
from .base import ProvisionStep, TeardownStep

ADMIN_EXTRA_RULES: list[dict[str, list[str]]] = [
    {
        "apiGroups": [""],
        "resources": ["namespaces"],
        "verbs": ["get", "list", "watch", "create", "delete", "patch", "update"],
    },
    {
        "apiGroups": ["traefik.io"],
        "resources": [
            "middlewares",
            "middlewaretcps",
            "ingressroutes",
            "traefikservices",
            "tlsoptions",
        ],
        "verbs": ["*"],
    },
]


class AdminDeployerController(AccountController):
    """ServiceAccount + ClusterRole identities living in the system namespace."""

    kind: ClassVar[str] = "admin-deployer"
    metadata_file: ClassVar[str] = "admin-deployers.json"
    probe_args: ClassVar[tuple[str, ...]] = ("get", "namespaces")

    def account_namespace(self, name: str) -> str:
        return self.context.config.cluster.namespace

    def service_account(self, name: str) -> str:
        return f"admin-deployer-{name}"

    def cluster_role(self, name: str) -> str:
        return self.service_account(name)

    def binding(self, name: str) -> str:
        return f"{self.service_account(name)}-binding"

    def token_secret(self, name: str) -> str:
        return f"{self.service_account(name)}-token"

    def record_fields(self, name: str) -> dict[str, Any]:
        return {"clusterRole": self.cluster_role(name), "clusterRoleBinding": self.binding(name)}

    def resource_refs(self, name: str, spec: Mapping[str, Any]) -> list[dict[str, str]]:
        namespace = self.account_namespace(name)
        return [
            {"kind": "ServiceAccount", "name": self.service_account(name), "namespace": namespace},
            {"kind": "ClusterRole", "name": self.cluster_role(name)},
            {"kind": "ClusterRoleBinding", "name": self.binding(name)},
            {"kind": "Secret", "name": self.token_secret(name), "namespace": namespace},
        ]

    def provision_steps(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: dict[str, Any],
    ) -> list[ProvisionStep]:
        return [
            ProvisionStep(
                "serviceaccount", lambda: self._ensure(self._service_account_manifest(name))
            ),
            ProvisionStep("clusterrole", lambda: self._ensure(self._cluster_role_manifest(name))),
            ProvisionStep(
                "clusterrolebinding", lambda: self._ensure(self._binding_manifest(name))
            ),
        ]

    def teardown_steps(self, name: str, record: Mapping[str, Any]) -> list[TeardownStep]:
        kubectl = self.context.kubectl
        namespace = self.account_namespace(name)
        return [
            TeardownStep(
                "clusterrolebinding",
                lambda: kubectl.delete("clusterrolebinding", self.binding(name)),
            ),
            TeardownStep(
                "clusterrole", lambda: kubectl.delete("clusterrole", self.cluster_role(name))
            ),
            TeardownStep(
                "secret",
                lambda: kubectl.delete("secret", self.token_secret(name), namespace=namespace),
            ),
            TeardownStep(
                "serviceaccount",
                lambda: kubectl.delete(
                    "serviceaccount", self.service_account(name), namespace=namespace
                ),
            ),
        ]

    def manifest_snapshots(self, name: str) -> dict[str, Any]:
        kubectl = self.context.kubectl
        return {
            "clusterrole": lambda: kubectl.get_yaml("clusterrole", self.cluster_role(name)),
            "clusterrolebinding": lambda: kubectl.get_yaml(
                "clusterrolebinding", self.binding(name)
            ),
        }

    def _cluster_role_manifest(self, name: str) -> dict[str, Any]:
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": self.cluster_role(name), "labels": dict(MANAGED_LABELS)},
            "rules": [dict(rule) for rule in (*TENANT_RULES, *ADMIN_EXTRA_RULES)],
        }

    def _binding_manifest(self, name: str) -> dict[str, Any]:
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRoleBinding",
            "metadata": {"name": self.binding(name), "labels": dict(MANAGED_LABELS)},
            "subjects": [
                {
                    "kind": "ServiceAccount",
                    "name": self.service_account(name),
                    "namespace": self.account_namespace(name),
                }
            ],
            "roleRef": {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "ClusterRole",
                "name": self.cluster_role(name),
            },
        }


__all__ = ["ADMIN_EXTRA_RULES", "AdminDeployerController"]
