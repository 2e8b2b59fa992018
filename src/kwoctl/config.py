"""Configuration loader for kwoctl.

This module centralises the logic for reading configuration values from
multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/kwo/config.yml`` (or an override path).
3. Environment variables prefixed with ``KWOCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export KWOCTL_STORES__WRITE_MODE=compare-and-swap
    export KWOCTL_READINESS__ATTEMPTS=60

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "KWOCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

WRITE_MODE_LAST_WRITE_WINS = "last-write-wins"
WRITE_MODE_COMPARE_AND_SWAP = "compare-and-swap"
ALLOWED_WRITE_MODES = {WRITE_MODE_LAST_WRITE_WINS, WRITE_MODE_COMPARE_AND_SWAP}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ClusterConfig:
    """How kwoctl reaches the k3s control plane."""

    kubectl_bin: str = "kubectl"
    namespace: str = "kube-system"
    cluster_name: str = "k3s-web-orchestrator"
    config_map: str = "kwo-config"
    api_server: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kubectl_bin": self.kubectl_bin,
            "namespace": self.namespace,
            "cluster_name": self.cluster_name,
            "config_map": self.config_map,
            "api_server": self.api_server,
        }


@dataclass(frozen=True)
class StoresConfig:
    """Names of the shared documents backing metadata and credentials."""

    write_mode: str = WRITE_MODE_LAST_WRITE_WINS
    dns_config_map: str = "kwo-dns-providers"
    dns_config_key: str = "providers.json"
    dns_secret: str = "dns-credentials"
    registry_config_map: str = "kwo-registries"
    registry_config_key: str = "registries.json"

    @property
    def compare_and_swap(self) -> bool:
        """Return True when conditional writes are enabled."""
        return self.write_mode == WRITE_MODE_COMPARE_AND_SWAP

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "write_mode": self.write_mode,
            "dns_config_map": self.dns_config_map,
            "dns_config_key": self.dns_config_key,
            "dns_secret": self.dns_secret,
            "registry_config_map": self.registry_config_map,
            "registry_config_key": self.registry_config_key,
        }


@dataclass(frozen=True)
class TraefikConfig:
    """Ingress controller configuration regenerated from DNS resolvers."""

    helm_chart_config: str = "traefik"
    deployment: str = "traefik"
    pod_selector: str = "app.kubernetes.io/name=traefik"
    acme_email: str | None = None
    dns_resolvers: tuple[str, ...] = ("1.1.1.1:53", "8.8.8.8:53")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "helm_chart_config": self.helm_chart_config,
            "deployment": self.deployment,
            "pod_selector": self.pod_selector,
            "acme_email": self.acme_email,
            "dns_resolvers": list(self.dns_resolvers),
        }


@dataclass(frozen=True)
class RegistryConfig:
    """Private image registry integration settings."""

    default_name: str = "registry"
    default_username: str = "docker"
    registries_file: Path = Path("/etc/rancher/k3s/registries.yaml")
    k3s_service: str = "k3s"
    htpasswd_bin: str = "htpasswd"
    pod_selector: str = "app=registry"
    password_length: int = 32

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "default_name": self.default_name,
            "default_username": self.default_username,
            "registries_file": str(self.registries_file),
            "k3s_service": self.k3s_service,
            "htpasswd_bin": self.htpasswd_bin,
            "pod_selector": self.pod_selector,
            "password_length": self.password_length,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin, "journalctl_bin": self.journalctl_bin}


@dataclass(frozen=True)
class ReadinessConfig:
    """Bounded polling used while waiting on external systems."""

    attempts: int = 30
    interval: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "interval": self.interval}


@dataclass(frozen=True)
class ProbesConfig:
    """Live credential probe settings."""

    timeout: float = 10.0
    verify_tls: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "verify_tls": self.verify_tls}


@dataclass(frozen=True)
class TLSCheckConfig:
    """Settings for inspecting certificates served by Traefik."""

    port: int = 443
    timeout: float = 5.0
    warn_expiry_days: int = 14

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "port": self.port,
            "timeout": self.timeout,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for kwoctl."""

    config_file: Path
    state_dir: Path
    metadata_dir: Path
    kubeconfig_dir: Path
    archive_dir: Path
    logs_dir: Path
    templates_dir: Path
    require_root: bool
    cluster: ClusterConfig
    stores: StoresConfig
    traefik: TraefikConfig
    registry: RegistryConfig
    systemd: SystemdConfig
    readiness: ReadinessConfig
    probes: ProbesConfig
    tls: TLSCheckConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "metadata_dir": str(self.metadata_dir),
            "kubeconfig_dir": str(self.kubeconfig_dir),
            "archive_dir": str(self.archive_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "require_root": self.require_root,
            "cluster": self.cluster.to_dict(),
            "stores": self.stores.to_dict(),
            "traefik": self.traefik.to_dict(),
            "registry": self.registry.to_dict(),
            "systemd": self.systemd.to_dict(),
            "readiness": self.readiness.to_dict(),
            "probes": self.probes.to_dict(),
            "tls": self.tls.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/kwo/config.yml",
    "state_dir": "/var/lib/kwo",
    "metadata_dir": None,  # derived from state_dir when absent
    "kubeconfig_dir": None,
    "archive_dir": None,
    "logs_dir": "/var/log/kwo",
    "templates_dir": "/etc/kwo/templates",
    "require_root": True,
    "cluster": {
        "kubectl_bin": "kubectl",
        "namespace": "kube-system",
        "cluster_name": "k3s-web-orchestrator",
        "config_map": "kwo-config",
        "api_server": None,
    },
    "stores": {
        "write_mode": WRITE_MODE_LAST_WRITE_WINS,
        "dns_config_map": "kwo-dns-providers",
        "dns_config_key": "providers.json",
        "dns_secret": "dns-credentials",
        "registry_config_map": "kwo-registries",
        "registry_config_key": "registries.json",
    },
    "traefik": {
        "helm_chart_config": "traefik",
        "deployment": "traefik",
        "pod_selector": "app.kubernetes.io/name=traefik",
        "acme_email": None,
        "dns_resolvers": ["1.1.1.1:53", "8.8.8.8:53"],
    },
    "registry": {
        "default_name": "registry",
        "default_username": "docker",
        "registries_file": "/etc/rancher/k3s/registries.yaml",
        "k3s_service": "k3s",
        "htpasswd_bin": "htpasswd",
        "pod_selector": "app=registry",
        "password_length": 32,
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
    "readiness": {
        "attempts": 30,
        "interval": 2.0,
    },
    "probes": {
        "timeout": 10.0,
        "verify_tls": True,
    },
    "tls": {
        "port": 443,
        "timeout": 5.0,
        "warn_expiry_days": 14,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in (
        "cluster", "stores", "traefik", "registry", "systemd", "readiness", "probes", "tls"
    )
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    stores = _as_dict(raw.get("stores"), "stores")
    write_mode = stores.get("write_mode")
    if write_mode is not None and str(write_mode) not in ALLOWED_WRITE_MODES:
        allowed_modes = ", ".join(sorted(ALLOWED_WRITE_MODES))
        raise ConfigError(
            f"Unsupported stores.write_mode '{write_mode}'. Allowed: {allowed_modes}."
        )

    require_root = raw.get("require_root")
    if require_root is not None and not isinstance(require_root, bool):
        raise ConfigError("require_root must be a boolean.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))

    metadata_dir = _derived_path(raw.get("metadata_dir"), state_dir / "metadata")
    kubeconfig_dir = _derived_path(raw.get("kubeconfig_dir"), state_dir / "kubeconfigs")
    archive_dir = _derived_path(raw.get("archive_dir"), state_dir / "archive")

    cluster_mapping = _as_dict(raw.get("cluster"), "cluster")
    api_server_value = cluster_mapping.get("api_server")
    cluster = ClusterConfig(
        kubectl_bin=str(cluster_mapping.get("kubectl_bin", "kubectl")),
        namespace=str(cluster_mapping.get("namespace", "kube-system")),
        cluster_name=str(cluster_mapping.get("cluster_name", "k3s-web-orchestrator")),
        config_map=str(cluster_mapping.get("config_map", "kwo-config")),
        api_server=str(api_server_value) if api_server_value else None,
    )

    stores_mapping = _as_dict(raw.get("stores"), "stores")
    stores = StoresConfig(
        write_mode=str(stores_mapping.get("write_mode", WRITE_MODE_LAST_WRITE_WINS)),
        dns_config_map=str(stores_mapping.get("dns_config_map", "kwo-dns-providers")),
        dns_config_key=str(stores_mapping.get("dns_config_key", "providers.json")),
        dns_secret=str(stores_mapping.get("dns_secret", "dns-credentials")),
        registry_config_map=str(stores_mapping.get("registry_config_map", "kwo-registries")),
        registry_config_key=str(stores_mapping.get("registry_config_key", "registries.json")),
    )

    traefik_mapping = _as_dict(raw.get("traefik"), "traefik")
    acme_email_value = traefik_mapping.get("acme_email")
    resolvers_value = traefik_mapping.get("dns_resolvers")
    dns_resolvers = (
        tuple(str(item) for item in _as_sequence(resolvers_value, "traefik.dns_resolvers"))
        if resolvers_value is not None
        else TraefikConfig().dns_resolvers
    )
    traefik = TraefikConfig(
        helm_chart_config=str(traefik_mapping.get("helm_chart_config", "traefik")),
        deployment=str(traefik_mapping.get("deployment", "traefik")),
        pod_selector=str(
            traefik_mapping.get("pod_selector", "app.kubernetes.io/name=traefik")
        ),
        acme_email=str(acme_email_value) if acme_email_value else None,
        dns_resolvers=dns_resolvers,
    )

    registry_mapping = _as_dict(raw.get("registry"), "registry")
    password_length = _expect_int(
        registry_mapping.get("password_length"), "registry.password_length", default=32
    )
    if password_length < 16:
        raise ConfigError("registry.password_length must be at least 16.")
    registry = RegistryConfig(
        default_name=str(registry_mapping.get("default_name", "registry")),
        default_username=str(registry_mapping.get("default_username", "docker")),
        registries_file=_to_path(
            registry_mapping.get("registries_file", "/etc/rancher/k3s/registries.yaml")
        ),
        k3s_service=str(registry_mapping.get("k3s_service", "k3s")),
        htpasswd_bin=str(registry_mapping.get("htpasswd_bin", "htpasswd")),
        pod_selector=str(registry_mapping.get("pod_selector", "app=registry")),
        password_length=password_length,
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
    )

    readiness_mapping = _as_dict(raw.get("readiness"), "readiness")
    attempts = _expect_int(readiness_mapping.get("attempts"), "readiness.attempts", default=30)
    if attempts <= 0:
        raise ConfigError("readiness.attempts must be greater than zero.")
    readiness = ReadinessConfig(
        attempts=attempts,
        interval=_expect_non_negative_float(
            readiness_mapping.get("interval"), "readiness.interval", default=2.0
        ),
    )

    probes_mapping = _as_dict(raw.get("probes"), "probes")
    probes = ProbesConfig(
        timeout=_expect_positive_float(
            probes_mapping.get("timeout"), "probes.timeout", default=10.0
        ),
        verify_tls=bool(probes_mapping.get("verify_tls", True)),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    tls_port = _expect_int(tls_mapping.get("port"), "tls.port", default=443)
    if not 0 < tls_port < 65536:
        raise ConfigError("tls.port must be between 1 and 65535.")
    warn_days = _expect_int(
        tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=14
    )
    if warn_days < 0:
        raise ConfigError("tls.warn_expiry_days must not be negative.")
    tls = TLSCheckConfig(
        port=tls_port,
        timeout=_expect_positive_float(tls_mapping.get("timeout"), "tls.timeout", default=5.0),
        warn_expiry_days=warn_days,
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        metadata_dir=metadata_dir,
        kubeconfig_dir=kubeconfig_dir,
        archive_dir=archive_dir,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        require_root=bool(raw.get("require_root", True)),
        cluster=cluster,
        stores=stores,
        traefik=traefik,
        registry=registry,
        systemd=systemd,
        readiness=readiness,
        probes=probes,
        tls=tls,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _derived_path(value: object | None, default: Path) -> Path:
    return _to_path(value) if value else default


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ALLOWED_WRITE_MODES",
    "AppConfig",
    "ClusterConfig",
    "ConfigError",
    "ProbesConfig",
    "ReadinessConfig",
    "RegistryConfig",
    "StoresConfig",
    "SystemdConfig",
    "TLSCheckConfig",
    "TraefikConfig",
    "WRITE_MODE_COMPARE_AND_SWAP",
    "WRITE_MODE_LAST_WRITE_WINS",
    "load_config",
]
