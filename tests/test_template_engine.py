"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from kwoctl.templates import TemplateEngine, TemplateRenderError


def _kubeconfig_context(**overrides: object) -> dict[str, object]:
    context: dict[str, object] = {
        "tool_version": "0.3.0",
        "user_name": "acme-deployer",
        "cluster_name": "k3s-web-orchestrator",
        "server": "https://10.0.0.1:6443",
        "ca_data": "Y2E=",
        "context_name": "acme@k3s-web-orchestrator",
        "namespace": "acme",
        "token": "abc.def",
    }
    context.update(overrides)
    return context


def test_kubeconfig_template_renders_valid_yaml() -> None:
    """The built-in kubeconfig template produces a loadable profile."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("kubeconfig/kubeconfig.yaml.j2", _kubeconfig_context())
    profile = yaml.safe_load(output)

    assert profile["current-context"] == "acme@k3s-web-orchestrator"
    assert profile["clusters"][0]["cluster"]["server"] == "https://10.0.0.1:6443"
    assert profile["clusters"][0]["cluster"]["certificate-authority-data"] == "Y2E="
    assert profile["contexts"][0]["context"]["namespace"] == "acme"
    assert profile["users"][0]["user"]["token"] == "abc.def"


def test_kubeconfig_template_omits_optional_fields() -> None:
    """Cluster-wide profiles carry no namespace and may lack CA data."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "kubeconfig/kubeconfig.yaml.j2", _kubeconfig_context(namespace=None, ca_data=None)
    )
    profile = yaml.safe_load(output)

    assert "namespace" not in profile["contexts"][0]["context"]
    assert "certificate-authority-data" not in profile["clusters"][0]["cluster"]


def test_registries_template_quotes_credentials() -> None:
    """Passwords with YAML-significant characters survive rendering."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "k3s/registries.yaml.j2",
        {
            "registries": [
                {"domain": "registry.example.com", "username": "docker", "password": 'a"b: #c'}
            ]
        },
    )
    content = yaml.safe_load(output)

    auth = content["configs"]["registry.example.com"]["auth"]
    assert auth == {"username": "docker", "password": 'a"b: #c'}


def test_registries_template_minimal_when_empty() -> None:
    """No registries renders an empty ``configs`` mapping."""
    engine = TemplateEngine.with_overrides(None)

    content = yaml.safe_load(engine.render_to_string("k3s/registries.yaml.j2", {"registries": []}))

    assert content == {"configs": {}}


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "kube" / "acme-kubeconfig.yaml"

    changed = engine.render_to_path(
        "kubeconfig/kubeconfig.yaml.j2", destination, _kubeconfig_context(), mode=0o600
    )

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path(
        "kubeconfig/kubeconfig.yaml.j2", destination, _kubeconfig_context(), mode=0o600
    )
    assert changed_again is False


def test_overrides_take_precedence(tmp_path: Path) -> None:
    """Operator templates shadow the packaged ones."""
    override_dir = tmp_path / "templates" / "k3s"
    override_dir.mkdir(parents=True)
    (override_dir / "registries.yaml.j2").write_text("custom: {{ registries | length }}\n")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    output = engine.render_to_string("k3s/registries.yaml.j2", {"registries": [1, 2]})

    assert output == "custom: 2\n"


def test_missing_variables_raise_render_error() -> None:
    """Strict undefined variables surface as TemplateRenderError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError, match="kubeconfig.yaml.j2"):
        engine.render_to_string("kubeconfig/kubeconfig.yaml.j2", {"server": "x"})
