"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import base64
import copy
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx
import pytest
import yaml

from kwoctl import cli
from kwoctl.archive import ArchiveManager
from kwoctl.config import AppConfig, load_config
from kwoctl.lifecycle import ControllerContext
from kwoctl.providers import (
    CredentialProbe,
    KubectlConflictError,
    KubectlNotFoundError,
    SystemdError,
)
from kwoctl.templates import TemplateEngine

SYSTEM_NAMESPACE = "kube-system"
API_SERVER = "https://10.0.0.1:6443"
CA_DATA = base64.b64encode(b"fake-ca").decode("ascii")
ACME_EMAIL = "ops@example.com"

CLUSTER_SCOPED = {"namespace", "clusterrole", "clusterrolebinding"}
KIND_ALIASES = {
    "pods": "pod",
    "deployments": "deployment",
    "services": "service",
    "ingresses": "ingress",
    "secrets": "secret",
    "configmaps": "configmap",
}


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _matches(obj: Mapping[str, Any], selector: str | None) -> bool:
    if not selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for requirement in selector.split(","):
        key, _, value = requirement.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeCluster:
    """In-memory stand-in for :class:`kwoctl.providers.KubectlProvider`."""

    def __init__(self) -> None:
        """Start with an empty object table."""
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, ...]] = []
        self.rollout_ready = True
        self.probe_ok = True
        self._version = 0
        self._tokens = 0

    # -- test helpers ---------------------------------------------------
    def fail_on(self, verb: str, kind: str, exc: Exception) -> None:
        """Make *verb* on *kind* raise *exc* until cleared."""
        self.failures[(verb, self._kind(kind))] = exc

    def clear_failures(self) -> None:
        """Remove every injected failure."""
        self.failures.clear()

    def seed(self, manifest: Mapping[str, Any]) -> dict[str, Any]:
        """Store *manifest* directly, bypassing failure hooks."""
        return self._store(copy.deepcopy(dict(manifest)))

    def secret_data(self, name: str, namespace: str = SYSTEM_NAMESPACE) -> dict[str, str]:
        """Return the decoded data of a Secret."""
        obj = self.get("secret", name, namespace=namespace) or {}
        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (obj.get("data") or {}).items()
        }

    def names(self, kind: str, namespace: str | None = None) -> list[str]:
        """Return sorted object names of *kind* (optionally within *namespace*)."""
        kind = self._kind(kind)
        return sorted(
            name
            for (stored_kind, stored_ns, name) in self.objects
            if stored_kind == kind and (namespace is None or stored_ns == namespace)
        )

    # -- provider surface -----------------------------------------------
    def get(self, kind: str, name: str, *, namespace: str | None = None) -> dict[str, Any] | None:
        """Return a copy of the stored object or ``None``."""
        self._maybe_fail("get", kind)
        obj = self.objects.get(self._key(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def list_objects(
        self,
        kind: str,
        *,
        namespace: str | None = None,
        selector: str | None = None,
        all_namespaces: bool = False,
    ) -> list[dict[str, Any]]:
        """Return stored objects of *kind* in *namespace* matching *selector*."""
        self._maybe_fail("list", kind)
        kind = self._kind(kind)
        return [
            copy.deepcopy(obj)
            for (stored_kind, stored_ns, _), obj in sorted(self.objects.items())
            if stored_kind == kind
            and (all_namespaces or namespace is None or stored_ns == namespace)
            and _matches(obj, selector)
        ]

    def exists(self, kind: str, name: str, *, namespace: str | None = None) -> bool:
        """Return True when the object is stored."""
        return self.get(kind, name, namespace=namespace) is not None

    def get_yaml(
        self,
        kinds: str,
        name: str | None = None,
        *,
        namespace: str | None = None,
    ) -> str:
        """Dump the selected objects as YAML."""
        self.calls.append(("get_yaml", kinds, name or ""))
        if name is not None:
            obj = self.get(kinds, name, namespace=namespace)
            if obj is None:
                raise KubectlNotFoundError(f'{kinds} "{name}" not found')
            return yaml.safe_dump(obj)
        items = [obj for (_, ns, _), obj in sorted(self.objects.items()) if ns == namespace]
        return yaml.safe_dump({"kind": "List", "items": items})

    def config_view(self) -> dict[str, Any]:
        """Return a minified kubeconfig for the admin context."""
        return {
            "clusters": [
                {
                    "name": "default",
                    "cluster": {"server": API_SERVER, "certificate-authority-data": CA_DATA},
                }
            ]
        }

    def apply(self, manifest: Mapping[str, object]) -> dict[str, Any]:
        """Create or merge *manifest*."""
        body = copy.deepcopy(dict(manifest))
        self._maybe_fail("apply", str(body["kind"]))
        self.calls.append(("apply", self._kind(str(body["kind"])), body["metadata"]["name"]))
        existing = self.objects.get(self._manifest_key(body))
        if existing is not None and "data" not in body and "data" in existing:
            body["data"] = copy.deepcopy(existing["data"])
        return self._store(body)

    def create(self, manifest: Mapping[str, object]) -> dict[str, Any]:
        """Create *manifest*, refusing existing objects."""
        body = copy.deepcopy(dict(manifest))
        self._maybe_fail("create", str(body["kind"]))
        self.calls.append(("create", self._kind(str(body["kind"])), body["metadata"]["name"]))
        if self._manifest_key(body) in self.objects:
            raise KubectlConflictError("Error from server (AlreadyExists)")
        return self._store(body)

    def replace(self, manifest: Mapping[str, object]) -> dict[str, Any]:
        """Replace *manifest*, honouring ``resourceVersion`` preconditions."""
        body = copy.deepcopy(dict(manifest))
        self._maybe_fail("replace", str(body["kind"]))
        self.calls.append(("replace", self._kind(str(body["kind"])), body["metadata"]["name"]))
        existing = self.objects.get(self._manifest_key(body))
        if existing is None:
            raise KubectlNotFoundError("Error from server (NotFound)")
        expected = body["metadata"].get("resourceVersion")
        if expected is not None and expected != existing["metadata"]["resourceVersion"]:
            raise KubectlConflictError("Error from server (Conflict): the object has been modified")
        return self._store(body)

    def delete(self, kind: str, name: str, *, namespace: str | None = None) -> bool:
        """Delete an object (namespaces cascade)."""
        self._maybe_fail("delete", kind)
        self.calls.append(("delete", self._kind(kind), name))
        removed = self.objects.pop(self._key(kind, namespace, name), None)
        if self._kind(kind) == "namespace":
            for key in [key for key in self.objects if key[1] == name]:
                del self.objects[key]
        return removed is not None

    def delete_selected(
        self,
        kind: str,
        selector: str,
        *,
        namespace: str | None = None,
    ) -> None:
        """Record a label-selected delete."""
        self._maybe_fail("delete", kind)
        self.calls.append(("delete_selected", self._kind(kind), selector))

    def rollout_restart(self, kind: str, name: str, *, namespace: str | None = None) -> None:
        """Record a rollout restart."""
        self._maybe_fail("restart", kind)
        self.calls.append(("rollout_restart", kind, name))

    def rollout_status(
        self,
        kind: str,
        name: str,
        *,
        namespace: str | None = None,
        timeout: float = 10.0,
    ) -> bool:
        """Report whether the rollout settled."""
        return self.rollout_ready

    def stream_logs(
        self,
        *,
        namespace: str,
        pod: str | None = None,
        selector: str | None = None,
        tail: int | None = None,
        follow: bool = False,
    ) -> int:
        """Record a log stream request."""
        self.calls.append(
            ("logs", namespace, pod or f"-l {selector}", str(tail), str(follow))
        )
        return 0

    def probe(self, kubeconfig: Path, args: Any) -> bool:
        """Pretend to run a command with *kubeconfig*."""
        self.calls.append(("probe", str(kubeconfig), " ".join(args)))
        return self.probe_ok

    # -- internals ------------------------------------------------------
    @staticmethod
    def _kind(kind: str) -> str:
        lowered = kind.lower()
        return KIND_ALIASES.get(lowered, lowered)

    def _key(self, kind: str, namespace: str | None, name: str) -> tuple[str, str | None, str]:
        kind = self._kind(kind)
        return kind, None if kind in CLUSTER_SCOPED else namespace, name

    def _manifest_key(self, body: Mapping[str, Any]) -> tuple[str, str | None, str]:
        meta = body["metadata"]
        return self._key(str(body["kind"]), meta.get("namespace"), meta["name"])

    def _maybe_fail(self, verb: str, kind: str) -> None:
        exc = self.failures.get((verb, self._kind(kind)))
        if exc is not None:
            raise exc

    def _store(self, body: dict[str, Any]) -> dict[str, Any]:
        self._version += 1
        body["metadata"]["resourceVersion"] = str(self._version)
        if body.get("type") == "kubernetes.io/service-account-token":
            data = body.setdefault("data", {})
            if "token" not in data:
                self._tokens += 1
                data["token"] = _encode(f"token-{self._tokens}")
                data["ca.crt"] = _encode("fake-ca")
        self.objects[self._manifest_key(body)] = body
        return copy.deepcopy(body)


class FakeSystemd:
    """Records unit restarts instead of calling ``systemctl``."""

    def __init__(self) -> None:
        """Start with no restarts recorded."""
        self.restarts: list[str] = []
        self.journals: list[tuple[str, int | None, bool]] = []
        self.fail = False
        self.active = True

    def restart(self, unit: str) -> None:
        """Record *unit* or raise when failures are enabled."""
        if self.fail:
            raise SystemdError(f"systemctl restart {unit} failed (exit 1): unit not found")
        self.restarts.append(unit)

    def is_active(self, unit: str) -> bool:
        """Return the configured unit state."""
        return self.active

    def active_since(self, unit: str) -> str | None:
        """Return a fixed start timestamp while the unit is active."""
        return "Mon 2026-10-12 08:00:00 UTC" if self.active else None

    def journal(self, unit: str, *, lines: int | None = None, follow: bool = False) -> int:
        """Record a journal request."""
        self.journals.append((unit, lines, follow))
        return 0


class FakeHtpasswd:
    """Produces deterministic ``user:hash`` lines."""

    def generate(self, username: str, password: str) -> str:
        """Return a fake bcrypt entry embedding the password length."""
        return f"{username}:$2y$05$fake{len(password)}"


@pytest.fixture
def cluster() -> FakeCluster:
    """Return a fake cluster seeded with the orchestrator ConfigMap."""
    fake = FakeCluster()
    fake.seed(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "kwo-config", "namespace": SYSTEM_NAMESPACE},
            "data": {"acme-email": ACME_EMAIL},
        }
    )
    return fake


@pytest.fixture
def systemd() -> FakeSystemd:
    """Return a recording systemd stand-in."""
    return FakeSystemd()


@pytest.fixture
def htpasswd() -> FakeHtpasswd:
    """Return a deterministic htpasswd stand-in."""
    return FakeHtpasswd()


@pytest.fixture
def http_requests() -> list[httpx.Request]:
    """Collect requests seen by the probe transport."""
    return []


@pytest.fixture
def probes(http_requests: list[httpx.Request]) -> CredentialProbe:
    """Return probes whose HTTP traffic is answered with ``200 OK``."""

    def handler(request: httpx.Request) -> httpx.Response:
        http_requests.append(request)
        return httpx.Response(200, json={"success": True})

    transport = httpx.MockTransport(handler)
    return CredentialProbe(
        timeout_seconds=1.0,
        http_client_factory=lambda **kwargs: httpx.Client(transport=transport, **kwargs),
    )


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Write a config file rooted in *tmp_path* and return its path."""
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "require_root": False,
                "state_dir": str(tmp_path / "state"),
                "logs_dir": str(tmp_path / "logs"),
                "templates_dir": str(tmp_path / "templates"),
                "registry": {"registries_file": str(tmp_path / "k3s" / "registries.yaml")},
                "readiness": {"attempts": 2, "interval": 0},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def app_config(config_path: Path) -> AppConfig:
    """Return the resolved configuration for the test file."""
    return load_config(config_file=config_path, env={})


@pytest.fixture
def context(
    app_config: AppConfig,
    cluster: FakeCluster,
    systemd: FakeSystemd,
    htpasswd: FakeHtpasswd,
    probes: CredentialProbe,
) -> ControllerContext:
    """Return controller collaborators wired to the fakes."""
    return ControllerContext(
        config=app_config,
        kubectl=cluster,  # type: ignore[arg-type]
        archives=ArchiveManager(app_config.archive_dir),
        templates=TemplateEngine.with_overrides(None),
        systemd=systemd,  # type: ignore[arg-type]
        htpasswd=htpasswd,  # type: ignore[arg-type]
        probes=probes,
        sleep=lambda _: None,
    )


@pytest.fixture
def cli_env(
    monkeypatch: pytest.MonkeyPatch,
    config_path: Path,
    cluster: FakeCluster,
    systemd: FakeSystemd,
    htpasswd: FakeHtpasswd,
    probes: CredentialProbe,
) -> dict[str, str]:
    """Route the CLI's providers to the fakes and return its environment."""
    monkeypatch.setattr(cli, "KubectlProvider", lambda **_: cluster)
    monkeypatch.setattr(cli, "SystemdProvider", lambda **_: systemd)
    monkeypatch.setattr(cli, "HtpasswdProvider", lambda **_: htpasswd)
    monkeypatch.setattr(cli, "CredentialProbe", lambda **_: probes)
    for variable in (
        "CF_DNS_API_TOKEN",
        "NON_INTERACTIVE",
        "REGISTRY_DOMAIN",
        "REGISTRY_USERNAME",
        "REGISTRY_CERT_RESOLVER",
    ):
        monkeypatch.delenv(variable, raising=False)
    return {"KWOCTL_CONFIG_FILE": str(config_path)}
