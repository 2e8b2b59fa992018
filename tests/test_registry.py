"""Tests for registry credential sets and the k3s registry auth file."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import yaml

from kwoctl.errors import (
    DownstreamReloadError,
    MissingCredentialError,
    NotFoundError,
    StoreUnavailableError,
)
from kwoctl.lifecycle import ControllerContext, DnsResolverController, RegistryController
from kwoctl.lifecycle.registry import generate_password
from kwoctl.providers import KubectlError, KubectlForbiddenError

DOMAIN = "registry.example.com"


def _registries(context: ControllerContext) -> dict[str, Any]:
    path: Path = context.config.registry.registries_file
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def _create(context: ControllerContext, name: str = "registry", **spec: Any) -> Any:
    spec.setdefault("domain", DOMAIN)
    return RegistryController(context).create(name, spec)


def test_create_registry_writes_secret_and_auth_file(
    context: ControllerContext,
    cluster: Any,
    systemd: Any,
) -> None:
    """A new registry gets an auth Secret, a registries.yaml entry and a k3s restart."""
    result = _create(context)

    secret = cluster.secret_data("registry-auth")
    assert secret["username"] == "docker"
    assert len(secret["password"]) == 32
    assert secret["htpasswd"].startswith("docker:$2y$")
    assert secret["htpasswd"].endswith("\n")

    auth = _registries(context)["configs"][DOMAIN]["auth"]
    assert auth == {"username": "docker", "password": secret["password"]}
    path = context.config.registry.registries_file
    assert oct(path.stat().st_mode & 0o777) == "0o600"

    assert systemd.restarts == ["k3s"]
    assert ("delete_selected", "pod", "app=registry") in cluster.calls
    record = RegistryController(context).get("registry")
    assert record["domain"] == DOMAIN
    assert record["secretName"] == "registry-auth"
    assert record["certResolverRef"] is None
    assert secret["password"] not in json.dumps(record)
    assert result.regeneration is not None and result.regeneration.entries == ["registry"]


def test_create_with_known_cert_resolver(context: ControllerContext) -> None:
    """A registered resolver may be referenced; unknown ones are rejected up front."""
    with pytest.raises(NotFoundError, match="letsencrypt-cloudflare"):
        _create(context, cert_resolver="letsencrypt-cloudflare")

    DnsResolverController(context).create(
        "cloudflare", {"credentials": {"CF_DNS_API_TOKEN": "cf-token"}}
    )
    _create(context, cert_resolver="letsencrypt-cloudflare")

    record = RegistryController(context).get("registry")
    assert record["certResolverRef"] == "letsencrypt-cloudflare"


@pytest.mark.parametrize("domain", ["", "   ", "not a host", "bad_host.example.com"])
def test_invalid_domain_is_missing_credential(
    context: ControllerContext,
    cluster: Any,
    domain: str,
) -> None:
    """An absent or malformed domain aborts before anything is written."""
    with pytest.raises(MissingCredentialError):
        _create(context, domain=domain)

    assert cluster.get("secret", "registry-auth", namespace="kube-system") is None


def test_username_with_colon_is_rejected(context: ControllerContext) -> None:
    """Usernames cannot contain the htpasswd separator."""
    with pytest.raises(MissingCredentialError, match="username"):
        _create(context, username="ci:bot")


def test_rerun_after_partial_create_reuses_password(
    context: ControllerContext,
    cluster: Any,
) -> None:
    """A create that failed after the Secret was written keeps the same password."""
    cluster.fail_on("create", "configmap", KubectlError("etcd leader changed"))

    with pytest.raises(StoreUnavailableError):
        _create(context)
    first = cluster.secret_data("registry-auth")["password"]

    cluster.clear_failures()
    result = _create(context)

    assert cluster.secret_data("registry-auth")["password"] == first
    assert {"name": "password", "status": "skipped",
            "detail": "reusing existing credential"} in result.steps


def test_rotate_archives_old_password(context: ControllerContext, cluster: Any) -> None:
    """Rotation archives the previous credentials and publishes only the new ones."""
    _create(context)
    old = cluster.secret_data("registry-auth")["password"]

    result = RegistryController(context).update("registry", {})

    bundle = result.archive
    assert bundle is not None and bundle.path is not None
    assert bundle.bundle_id.startswith("registry-rotate-")
    archived = json.loads((bundle.path / "credentials.json").read_text())
    assert archived["password"] == old
    assert (bundle.path / "files" / "registries.yaml").exists()

    new = cluster.secret_data("registry-auth")["password"]
    assert new != old
    content = context.config.registry.registries_file.read_text(encoding="utf-8")
    assert new in content
    assert old not in content


def test_failed_rotation_keeps_its_archive(context: ControllerContext, cluster: Any) -> None:
    """The old password is archived before the Secret write that fails."""
    _create(context)
    old = cluster.secret_data("registry-auth")["password"]
    cluster.fail_on("replace", "secret", KubectlError("connection refused"))

    with pytest.raises(StoreUnavailableError):
        RegistryController(context).update("registry", {})

    bundles = context.archives.list_bundles("registry")
    assert len(bundles) == 1
    assert str(bundles[0]["id"]).startswith("registry-rotate-")
    archived = json.loads((Path(bundles[0]["path"]) / "credentials.json").read_text())
    assert archived["password"] == old
    assert cluster.secret_data("registry-auth")["password"] == old


def test_named_registry_uses_own_secret_and_label(context: ControllerContext, cluster: Any) -> None:
    """Non-default registries get ``<name>-auth`` and a ``registry-<name>`` label."""
    _create(context)
    _create(context, "mirror", domain="mirror.example.com:5000", username="ci")

    assert cluster.secret_data("mirror-auth")["username"] == "ci"
    assert set(_registries(context)["configs"]) == {DOMAIN, "mirror.example.com:5000"}

    result = RegistryController(context).delete("mirror", force=True)

    assert result.archive is not None
    assert result.archive.bundle_id.startswith("registry-mirror-remove-")
    assert set(_registries(context)["configs"]) == {DOMAIN}


def test_delete_last_registry_publishes_empty_configs(
    context: ControllerContext,
    cluster: Any,
) -> None:
    """Removing every registry leaves a minimal registries.yaml."""
    _create(context)

    result = RegistryController(context).delete("registry", force=True)

    assert cluster.get("secret", "registry-auth", namespace="kube-system") is None
    assert _registries(context) == {"configs": {}}
    assert result.regeneration is not None and result.regeneration.minimal is True


@pytest.mark.parametrize(
    "error",
    [KubectlError("connection refused"), KubectlForbiddenError("secrets is forbidden")],
)
def test_unreadable_credentials_leave_auth_file_untouched(
    context: ControllerContext,
    cluster: Any,
    systemd: Any,
    error: KubectlError,
) -> None:
    """Only a missing Secret drops a registry; read failures abort the rewrite."""
    _create(context)
    before = context.config.registry.registries_file.read_text(encoding="utf-8")
    cluster.fail_on("get", "secret", error)

    with pytest.raises(DownstreamReloadError, match="unchanged"):
        RegistryController(context).regenerator().publish()

    assert context.config.registry.registries_file.read_text(encoding="utf-8") == before
    assert DOMAIN in _registries(context)["configs"]
    assert systemd.restarts == ["k3s"]


def test_missing_secret_is_skipped_with_warning(
    context: ControllerContext,
    cluster: Any,
) -> None:
    """A registry whose Secret is gone is left out of the file with a warning."""
    _create(context)
    cluster.delete("secret", "registry-auth", namespace="kube-system")

    result = RegistryController(context).regenerator().publish()

    assert result.entries == []
    assert any("skipped" in warning for warning in result.warnings)
    assert _registries(context) == {"configs": {}}


def test_k3s_restart_failure_is_a_warning(context: ControllerContext, systemd: Any) -> None:
    """The entity is kept when k3s cannot be restarted; the failure is reported."""
    systemd.fail = True

    result = _create(context)

    assert any("k3s" in warning for warning in result.warnings)
    assert RegistryController(context).metadata.find("registry") is not None
    assert DOMAIN in _registries(context)["configs"]


def test_get_credentials_and_status(context: ControllerContext, cluster: Any) -> None:
    """Credentials and deployment status are reported per registry."""
    _create(context)
    cluster.seed(
        {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": "registry-0", "namespace": "kube-system",
                         "labels": {"app": "registry"}},
            "status": {"phase": "Running"},
        }
    )
    controller = RegistryController(context)

    login = controller.get_credentials("registry")
    rows = controller.status()

    assert login["domain"] == DOMAIN
    assert login["username"] == "docker"
    assert login["password"] == cluster.secret_data("registry-auth")["password"]
    assert rows == [
        {
            "name": "registry",
            "domain": DOMAIN,
            "username": "docker",
            "certResolverRef": None,
            "secret": True,
            "registriesFile": True,
            "podsRunning": 1,
        }
    ]
    with pytest.raises(NotFoundError):
        controller.get_credentials("ghost")


def test_check_probes_registry_with_basic_auth(
    context: ControllerContext,
    http_requests: list[Any],
) -> None:
    """Checks cover the Secret, the auth file and a live login."""
    _create(context)

    results = RegistryController(context).check("registry")

    assert results[0].passed is True
    assert [item.name for item in results[0].checks] == [
        "credentials",
        "registries-file",
        "registry-auth",
    ]
    assert str(http_requests[0].url) == f"https://{DOMAIN}/v2/"
    assert http_requests[0].headers["Authorization"].startswith("Basic ")


def test_check_detects_unpublished_registry(context: ControllerContext) -> None:
    """A registries.yaml that lost the entry fails the check."""
    _create(context)
    context.config.registry.registries_file.write_text("configs: {}\n", encoding="utf-8")

    results = RegistryController(context).check()

    failed = [item.name for item in results[0].checks if not item.passed]
    assert failed == ["registries-file"]


def test_generated_passwords_are_alphanumeric() -> None:
    """Passwords are drawn from letters and digits at the requested length."""
    password = generate_password(48)

    assert len(password) == 48
    assert password.isalnum()
