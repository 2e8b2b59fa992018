"""Platform overview assembled for ``kwoctl status``."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from . import __version__
from .errors import KwoError
from .lifecycle import (
    CONTROLLERS,
    STATUS_ACTIVE,
    STATUS_ALL,
    ControllerContext,
    DnsResolverController,
)
from .providers import KubectlError, SystemdError

STATE_UNKNOWN = "unknown"


@dataclass(slots=True)
class ComponentState:
    """State of one platform component."""

    name: str
    state: str
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {"name": self.name, "state": self.state, "detail": self.detail}


@dataclass(slots=True)
class EntityCounts:
    """Active and archived entity counts of one variant."""

    active: int = 0
    archived: int = 0

    @property
    def total(self) -> int:
        """Return every entity ever recorded."""
        return self.active + self.archived


@dataclass(slots=True)
class PlatformStatus:
    """Snapshot of the orchestrator's moving parts."""

    version: str
    api_server: str
    components: list[ComponentState] = field(default_factory=list)
    resolvers: list[str] = field(default_factory=list)
    entities: dict[str, EntityCounts] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        """Return True when k3s and Traefik are running and nothing was unreadable."""
        return not self.warnings and all(
            component.state in {"active", "Running"} for component in self.components
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "apiServer": self.api_server,
            "healthy": self.healthy,
            "components": [component.to_dict() for component in self.components],
            "resolvers": list(self.resolvers),
            "entities": {
                kind: {"active": counts.active, "archived": counts.archived, "total": counts.total}
                for kind, counts in self.entities.items()
            },
            "warnings": list(self.warnings),
        }


def collect_status(context: ControllerContext) -> PlatformStatus:
    """Gather the overview; unreadable parts become warnings, never errors."""
    status = PlatformStatus(version=__version__, api_server=_api_server(context))
    status.components.append(_k3s_state(context, status))
    status.components.append(_traefik_state(context, status))

    for controller_cls in CONTROLLERS.values():
        controller = controller_cls(context)
        try:
            views = controller.list(STATUS_ALL)
        except (KwoError, KubectlError) as exc:
            status.warnings.append(f"{controller.kind}: {exc}")
            continue
        counts = EntityCounts()
        for view in views:
            if view.status == STATUS_ACTIVE:
                counts.active += 1
            else:
                counts.archived += 1
        status.entities[controller.kind] = counts
        if isinstance(controller, DnsResolverController):
            status.resolvers = sorted(view.name for view in views if view.status == STATUS_ACTIVE)
    return status


def _api_server(context: ControllerContext) -> str:
    cluster = context.config.cluster
    if cluster.api_server:
        return cluster.api_server
    try:
        config_map = context.kubectl.get(
            "configmap", cluster.config_map, namespace=cluster.namespace
        )
    except KubectlError:
        return STATE_UNKNOWN
    value = ((config_map or {}).get("data") or {}).get("api-server")
    return str(value) if value else STATE_UNKNOWN


def _k3s_state(context: ControllerContext, status: PlatformStatus) -> ComponentState:
    unit = context.config.registry.k3s_service
    try:
        if not context.systemd.is_active(unit):
            return ComponentState(unit, "inactive")
        return ComponentState(unit, "active", context.systemd.active_since(unit))
    except SystemdError as exc:
        status.warnings.append(f"{unit}: {exc}")
        return ComponentState(unit, STATE_UNKNOWN)


def _traefik_state(context: ControllerContext, status: PlatformStatus) -> ComponentState:
    config = context.config
    try:
        pods = context.kubectl.list_objects(
            "pods", namespace=config.cluster.namespace, selector=config.traefik.pod_selector
        )
    except KubectlError as exc:
        status.warnings.append(f"traefik: {exc}")
        return ComponentState("traefik", STATE_UNKNOWN)
    if not pods:
        return ComponentState("traefik", "NotFound")
    phases = [str((pod.get("status") or {}).get("phase") or STATE_UNKNOWN) for pod in pods]
    running = phases.count("Running")
    state = "Running" if running else phases[0]
    return ComponentState("traefik", state, f"{running}/{len(pods)} pod(s) running")


__all__ = [
    "ComponentState",
    "EntityCounts",
    "PlatformStatus",
    "collect_status",
]
