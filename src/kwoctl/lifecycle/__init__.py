"""Entity lifecycle controllers, one per managed variant."""
from __future__ import annotations

from ..polling import wait_for
from .admin import AdminDeployerController
from .base import (
    STATUS_ACTIVE,
    STATUS_ALL,
    STATUS_ARCHIVED,
    STATUS_FILTERS,
    CheckResult,
    ControllerContext,
    EntityController,
    EntityView,
    OperationResult,
    ProvisionStep,
    TeardownStep,
)
from .dns import DnsResolverController, require_credentials
from .registry import RegistryController
from .tenant import TenantController

CONTROLLERS: dict[str, type[EntityController]] = {
    TenantController.kind: TenantController,
    AdminDeployerController.kind: AdminDeployerController,
    DnsResolverController.kind: DnsResolverController,
    RegistryController.kind: RegistryController,
}

__all__ = [
    "AdminDeployerController",
    "CONTROLLERS",
    "CheckResult",
    "ControllerContext",
    "DnsResolverController",
    "EntityController",
    "EntityView",
    "OperationResult",
    "ProvisionStep",
    "RegistryController",
    "STATUS_ACTIVE",
    "STATUS_ALL",
    "STATUS_ARCHIVED",
    "STATUS_FILTERS",
    "TeardownStep",
    "TenantController",
    "require_credentials",
    "wait_for",
]
