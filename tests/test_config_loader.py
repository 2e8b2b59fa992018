"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from kwoctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/kwo")
    assert config.metadata_dir == Path("/var/lib/kwo/metadata")
    assert config.kubeconfig_dir == Path("/var/lib/kwo/kubeconfigs")
    assert config.archive_dir == Path("/var/lib/kwo/archive")
    assert config.require_root is True
    assert config.cluster.namespace == "kube-system"
    assert config.stores.write_mode == "last-write-wins"
    assert config.stores.compare_and_swap is False
    assert config.registry.registries_file == Path("/etc/rancher/k3s/registries.yaml")
    assert config.readiness.attempts == 30


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "kwo.yml"
    cfg.write_text(
        "state_dir: {root}\n"
        "cluster:\n"
        "  api_server: https://k3s.example:6443\n"
        "stores:\n"
        "  write_mode: compare-and-swap\n"
        "traefik:\n"
        "  acme_email: ops@example.com\n"
        "  dns_resolvers: ['9.9.9.9:53']\n".format(root=str(tmp_path / "state"))
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.state_dir == tmp_path / "state"
    assert config.metadata_dir == tmp_path / "state" / "metadata"
    assert config.cluster.api_server == "https://k3s.example:6443"
    assert config.stores.compare_and_swap is True
    assert config.traefik.acme_email == "ops@example.com"
    assert config.traefik.dns_resolvers == ("9.9.9.9:53",)


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "kwo.yml"
    cfg.write_text("readiness:\n  attempts: 10\n")
    env = {
        "KWOCTL_CONFIG_FILE": str(cfg),
        "KWOCTL_READINESS__ATTEMPTS": "60",
        "KWOCTL_REQUIRE_ROOT": "false",
        "KWOCTL_ARCHIVE_DIR": str(tmp_path / "archive"),
        "KWOCTL_REGISTRY__DEFAULT_USERNAME": "builder",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.readiness.attempts == 60
    assert config.require_root is False
    assert config.archive_dir == tmp_path / "archive"
    assert config.registry.default_username == "builder"


def test_explicit_overrides_win_over_env(tmp_path: Path) -> None:
    """Programmatic overrides beat the environment."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"KWOCTL_STORES__WRITE_MODE": "compare-and-swap"},
        overrides={"stores": {"write_mode": "last-write-wins"}},
    )

    assert config.stores.compare_and_swap is False


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("bogus: 1\n", "Unknown configuration keys"),
        ("stores:\n  colour: blue\n", "Unknown stores configuration keys"),
        ("stores:\n  write_mode: eventual\n", "Unsupported stores.write_mode"),
        ("require_root: maybe\n", "require_root must be a boolean"),
        ("readiness:\n  attempts: 0\n", "greater than zero"),
        ("readiness:\n  interval: -1\n", "must not be negative"),
        ("registry:\n  password_length: 8\n", "at least 16"),
        ("tls:\n  port: 70000\n", "tls.port"),
        ("tls:\n  warn_expiry_days: -1\n", "must not be negative"),
        ("- just\n- a list\n", "mapping at the top level"),
    ],
)
def test_invalid_configuration_is_rejected(tmp_path: Path, content: str, message: str) -> None:
    """Malformed configuration raises ConfigError with a helpful message."""
    cfg = tmp_path / "kwo.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The resolved config renders to plain JSON-friendly values."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    payload = config.to_dict()

    assert payload["stores"]["dns_secret"] == "dns-credentials"  # type: ignore[index]
    assert payload["registry"]["registries_file"] == "/etc/rancher/k3s/registries.yaml"  # type: ignore[index]


def test_tls_section_overrides(tmp_path: Path) -> None:
    """The TLS check settings can be tuned from the config file."""
    cfg = tmp_path / "kwo.yml"
    cfg.write_text("tls:\n  port: 8443\n  timeout: 2.5\n  warn_expiry_days: 30\n")

    config = load_config(config_file=cfg, env={})

    assert (config.tls.port, config.tls.timeout, config.tls.warn_expiry_days) == (8443, 2.5, 30)
    assert config.to_dict()["tls"] == {"port": 8443, "timeout": 2.5, "warn_expiry_days": 30}
