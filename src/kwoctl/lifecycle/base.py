"""Shared create/update/delete/list/check template for every entity variant.

Variants subclass :class:`EntityController` and supply a small strategy:
ordered idempotent ``ensure`` steps, a ``derive credential`` step, teardown
steps in reverse order, archive captures, and an optional downstream
regeneration hook. The template methods here own the ordering guarantees:

* names are validated before any store is touched;
* an existing entity blocks create, a missing one blocks update/delete;
* archiving always precedes the mutation it protects;
* failed provisioning is reported, never rolled back;
* teardown and regeneration problems become warnings, not failures.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from .. import __version__
from ..archive import ArchiveBundle, ArchiveManager
from ..config import AppConfig
from ..errors import (
    AlreadyExistsError,
    ConfirmationDeclinedError,
    DownstreamReloadError,
    KwoError,
    PrivilegeError,
    ProvisioningError,
    UsageError,
)
from ..logging import resolve_actor
from ..naming import validate_entity_name
from ..providers import (
    CredentialProbe,
    HtpasswdError,
    HtpasswdProvider,
    KubectlError,
    KubectlForbiddenError,
    KubectlProvider,
    SystemdError,
    SystemdProvider,
)
from ..regenerator import RegenerationResult
from ..stores import MetadataStore
from ..templates import TemplateEngine, TemplateRenderError

LOGGER = logging.getLogger(__name__)

PROVIDER_ERRORS = (KubectlError, SystemdError, HtpasswdError, TemplateRenderError, OSError)

STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"
STATUS_ALL = "all"
STATUS_FILTERS = (STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_ALL)

RESOURCE_OK = "ok"
RESOURCE_MISSING = "missing"
RESOURCE_UNKNOWN = "unknown"

StepObserver = Callable[..., None]
ConfirmGate = Callable[[str], bool]


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclass(slots=True)
class ControllerContext:
    """Collaborators shared by every controller in one CLI invocation."""

    config: AppConfig
    kubectl: KubectlProvider
    archives: ArchiveManager
    templates: TemplateEngine
    systemd: SystemdProvider
    htpasswd: HtpasswdProvider
    probes: CredentialProbe
    sleep: Callable[[float], None] = time.sleep


@dataclass(slots=True)
class ProvisionStep:
    """One idempotent create-or-replace action."""

    name: str
    ensure: Callable[[], object]


@dataclass(slots=True)
class TeardownStep:
    """One independent best-effort removal action."""

    name: str
    remove: Callable[[], object]


@dataclass(slots=True)
class OperationResult:
    """Outcome of a lifecycle operation, rendered by the CLI."""

    kind: str
    name: str
    action: str
    record: dict[str, Any] | None = None
    steps: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    archive: ArchiveBundle | None = None
    regeneration: RegenerationResult | None = None
    artifacts: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable description."""
        return {
            "kind": self.kind,
            "name": self.name,
            "action": self.action,
            "record": self.record,
            "steps": list(self.steps),
            "warnings": list(self.warnings),
            "archive": self.archive.to_payload() if self.archive else None,
            "regeneration": self.regeneration.to_payload() if self.regeneration else None,
            "artifacts": dict(self.artifacts),
        }


@dataclass(slots=True)
class EntityView:
    """One row of a ``list`` result."""

    name: str
    status: str
    resource_status: str
    record: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    archive_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable description."""
        payload: dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "resourceStatus": self.resource_status,
            "metadata": self.record,
        }
        if self.details:
            payload["details"] = dict(self.details)
        if self.archive_id:
            payload["archive"] = self.archive_id
        return payload


@dataclass(slots=True)
class CheckItem:
    """A single verification within an entity check."""

    name: str
    passed: bool
    detail: str = ""


@dataclass(slots=True)
class CheckResult:
    """Verification results for one entity."""

    kind: str
    name: str
    checks: list[CheckItem] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """Return True when every individual check passed."""
        return all(item.passed for item in self.checks)

    def add(self, name: str, passed: bool, detail: str = "") -> None:
        """Append a verification outcome."""
        self.checks.append(CheckItem(name=name, passed=passed, detail=detail))

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable description."""
        return {
            "kind": self.kind,
            "name": self.name,
            "passed": self.passed,
            "checks": [
                {"name": item.name, "passed": item.passed, "detail": item.detail}
                for item in self.checks
            ],
        }


class EntityController:
    """Template for the uniform entity lifecycle."""

    kind: ClassVar[str] = "entity"
    delete_operation: ClassVar[str] = "remove"

    def __init__(
        self,
        context: ControllerContext,
        *,
        observer: StepObserver | None = None,
    ) -> None:
        self.context = context
        self._observer = observer

    # ------------------------------------------------------------------
    # Strategy hooks
    # ------------------------------------------------------------------
    @property
    def metadata(self) -> MetadataStore:
        """Return the metadata store for this variant."""
        raise NotImplementedError

    def canonical_name(self, name: str, spec: Mapping[str, Any]) -> str:
        """Return the validated entity name a create call will use."""
        return validate_entity_name(name, kind=self.kind)

    def validate_existing_name(self, name: str) -> str:
        """Validate a name passed to update/delete/check."""
        return validate_entity_name(name, kind=self.kind)

    def validate_spec(self, name: str, spec: Mapping[str, Any]) -> None:
        """Reject incomplete create input before any store is touched."""

    def provision_steps(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: dict[str, Any],
    ) -> list[ProvisionStep]:
        """Return ensure steps in creation order (principal, policy, binding)."""
        return []

    def derive_credential(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: dict[str, Any],
        result: OperationResult,
    ) -> None:
        """Produce the entity's derived credential (token, password, ...)."""

    def build_record(
        self,
        name: str,
        spec: Mapping[str, Any],
        artifacts: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Return the variant-specific metadata fields."""
        return {}

    def resource_refs(self, name: str, spec: Mapping[str, Any]) -> list[dict[str, str]]:
        """Return the backing objects owned by the entity."""
        return []

    def validate_mutation(
        self,
        name: str,
        record: Mapping[str, Any],
        mutation: Mapping[str, Any],
    ) -> None:
        """Reject an update before anything is archived or changed."""

    def apply_update(
        self,
        name: str,
        record: dict[str, Any],
        mutation: Mapping[str, Any],
        result: OperationResult,
    ) -> dict[str, Any]:
        """Apply *mutation* and return the updated record."""
        raise NotImplementedError

    def update_operation(self, mutation: Mapping[str, Any]) -> str:
        """Return the archive operation label for *mutation*."""
        return "update"

    def teardown_steps(self, name: str, record: Mapping[str, Any]) -> list[TeardownStep]:
        """Return removal steps in reverse creation order."""
        return []

    def local_files(self, name: str, record: Mapping[str, Any]) -> list[Path]:
        """Return per-entity local files removed on delete."""
        return []

    def archive_label(self, name: str) -> str:
        """Return the archive bundle label for *name*."""
        return f"{self.kind}-{name}"

    def archive_sources(self, name: str, record: Mapping[str, Any]) -> dict[str, Any]:
        """Return keyword arguments for :meth:`ArchiveManager.archive`."""
        return {"metadata": lambda: record}

    def regenerate(self, result: OperationResult) -> None:
        """Republish downstream configuration; no-op for most variants."""

    def after_delete(self, name: str, result: OperationResult) -> None:
        """Hook run after a successful delete."""

    def live_status(self, name: str, record: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        """Return the secondary resource status and optional details."""
        return RESOURCE_UNKNOWN, {}

    def check_entity(self, name: str, record: Mapping[str, Any]) -> CheckResult:
        """Verify one entity without mutating anything."""
        return CheckResult(kind=self.kind, name=name)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    def get(self, name: str) -> dict[str, Any]:
        """Return the metadata record for *name*."""
        return self.metadata.get(self.validate_existing_name(name))

    def create(self, name: str, spec: Mapping[str, Any] | None = None) -> OperationResult:
        """Validate, provision, persist, and regenerate a new entity."""
        spec = dict(spec or {})
        canonical = self.canonical_name(name, spec)
        self.validate_spec(canonical, spec)
        result = OperationResult(kind=self.kind, name=canonical, action="create")

        if self.metadata.find(canonical) is not None:
            raise AlreadyExistsError(f"{self.metadata.kind} '{canonical}' already exists.")

        artifacts: dict[str, Any] = {}
        steps = self.provision_steps(canonical, spec, artifacts)
        steps.append(
            ProvisionStep(
                "credential",
                lambda: self.derive_credential(canonical, spec, artifacts, result),
            )
        )
        completed: list[str] = []
        for step in steps:
            self._run_step(step, completed, result)

        record = self.build_record(canonical, spec, artifacts)
        record.update(
            {
                "name": canonical,
                "createdAt": _now_iso(),
                "createdBy": resolve_actor(),
                "toolVersion": __version__,
                "status": STATUS_ACTIVE,
            }
        )
        record.setdefault("resourceRefs", self.resource_refs(canonical, spec))
        result.record = self.metadata.put(canonical, record)
        self._step(result, "metadata.put", "success", self.metadata.describe())

        self._regenerate(result)
        return result

    def update(self, name: str, mutation: Mapping[str, Any]) -> OperationResult:
        """Archive then mutate an existing entity."""
        canonical = self.validate_existing_name(name)
        record = self.metadata.get(canonical)
        self.validate_mutation(canonical, record, mutation)
        result = OperationResult(kind=self.kind, name=canonical, action="update")

        result.archive = self._archive(canonical, record, self.update_operation(mutation), result)

        try:
            updated = self.apply_update(canonical, dict(record), mutation, result)
        except KubectlForbiddenError as exc:
            raise PrivilegeError(f"update of {self.kind} '{canonical}' forbidden: {exc}") from exc
        except PROVIDER_ERRORS as exc:
            self._step(result, "update.apply", "error", str(exc))
            raise ProvisioningError("update.apply", str(exc)) from exc
        result.record = self.metadata.put(canonical, updated)
        self._step(result, "metadata.put", "success", self.metadata.describe())

        self._regenerate(result)
        return result

    def delete(
        self,
        name: str,
        *,
        archive: bool = True,
        force: bool = False,
        confirm: ConfirmGate | None = None,
    ) -> OperationResult:
        """Archive (unless suppressed) and remove an entity."""
        canonical = self.validate_existing_name(name)
        record = self.metadata.get(canonical)
        result = OperationResult(kind=self.kind, name=canonical, action="delete", record=record)

        if not force:
            prompt = f"Delete {self.kind} '{canonical}' and all of its resources?"
            if confirm is None or not confirm(prompt):
                raise ConfirmationDeclinedError(f"deletion of {self.kind} '{canonical}' declined.")

        if archive:
            result.archive = self._archive(canonical, record, self.delete_operation, result)
        else:
            self._step(result, "archive", "skipped", "archiving suppressed by operator")

        for step in self.teardown_steps(canonical, record):
            try:
                removed = step.remove()
            except (KwoError, *PROVIDER_ERRORS) as exc:
                message = f"{step.name}: {exc}"
                result.warnings.append(message)
                self._step(result, step.name, "warning", str(exc))
                continue
            status = "skipped" if removed is False else "success"
            self._step(result, step.name, status, None if removed is not False else "absent")

        self.metadata.remove(canonical)
        self._step(result, "metadata.remove", "success", self.metadata.describe())

        for path in self.local_files(canonical, record):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                result.warnings.append(f"could not remove {path}: {exc}")
                self._step(result, "file.remove", "warning", f"{path}: {exc}")
                continue
            self._step(result, "file.remove", "success", str(path))

        self.after_delete(canonical, result)
        self._regenerate(result)
        return result

    def list(self, status: str = STATUS_ACTIVE) -> list[EntityView]:
        """Return entities matching *status* (``active``, ``archived`` or ``all``)."""
        if status not in STATUS_FILTERS:
            raise UsageError(
                f"unknown status filter '{status}' (expected one of {', '.join(STATUS_FILTERS)})."
            )
        records = self.metadata.list()
        views: list[EntityView] = []
        if status in (STATUS_ACTIVE, STATUS_ALL):
            for name, record in records:
                if record.get("status", STATUS_ACTIVE) != STATUS_ACTIVE:
                    continue
                resource_status, details = self._safe_live_status(name, record)
                views.append(
                    EntityView(
                        name=name,
                        status=STATUS_ACTIVE,
                        resource_status=resource_status,
                        record=record,
                        details=details,
                    )
                )
        if status in (STATUS_ARCHIVED, STATUS_ALL):
            # a name re-created after deletion is reported as active only
            views.extend(self._archived_views({name for name, _ in records}))
        return views

    def check(self, name: str | None = None) -> list[CheckResult]:
        """Verify one entity, or every active entity when *name* is omitted."""
        if name is not None:
            canonical = self.validate_existing_name(name)
            return [self._safe_check(canonical, self.metadata.get(canonical))]
        return [self._safe_check(entry, record) for entry, record in self.metadata.list()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _step(self, result: OperationResult, name: str, status: str, detail: object = None) -> None:
        entry: dict[str, Any] = {"name": name, "status": status}
        if detail is not None:
            entry["detail"] = detail
        result.steps.append(entry)
        if self._observer is not None:
            self._observer(name, status=status, detail=detail)

    def _warn(self, result: OperationResult, step: str, message: str) -> None:
        result.warnings.append(message)
        self._step(result, step, "warning", message)

    def _run_step(
        self,
        step: ProvisionStep,
        completed: list[str],
        result: OperationResult,
    ) -> None:
        try:
            detail = step.ensure()
        except KubectlForbiddenError as exc:
            self._step(result, step.name, "error", str(exc))
            raise PrivilegeError(
                f"step '{step.name}' forbidden by the API server "
                f"(already applied: {', '.join(completed) or 'nothing'}): {exc}"
            ) from exc
        except KwoError as exc:
            self._step(result, step.name, "error", str(exc))
            raise
        except PROVIDER_ERRORS as exc:
            self._step(result, step.name, "error", str(exc))
            raise ProvisioningError(step.name, str(exc), completed) from exc
        completed.append(step.name)
        self._step(result, step.name, "success", detail if isinstance(detail, str) else None)

    def _archive(
        self,
        name: str,
        record: Mapping[str, Any],
        operation: str,
        result: OperationResult,
    ) -> ArchiveBundle:
        sources = self.archive_sources(name, record)
        bundle = self.context.archives.archive(
            self.archive_label(name),
            operation,
            entity={"kind": self.kind, "name": name},
            **sources,
        )
        if bundle.path is None:
            self._warn(result, "archive", f"archive bundle could not be created: "
                                          f"{bundle.skipped.get('bundle', 'unknown error')}")
        elif bundle.skipped:
            skipped = ", ".join(sorted(bundle.skipped))
            self._step(result, "archive", "warning", f"{bundle.bundle_id} (skipped: {skipped})")
        else:
            self._step(result, "archive", "success", bundle.bundle_id)
        return bundle

    def _regenerate(self, result: OperationResult) -> None:
        try:
            self.regenerate(result)
        except DownstreamReloadError as exc:
            self._warn(result, "regenerate", str(exc))

    def _safe_live_status(
        self,
        name: str,
        record: Mapping[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        try:
            return self.live_status(name, record)
        except (KwoError, *PROVIDER_ERRORS) as exc:
            LOGGER.debug("live status for %s '%s' unavailable: %s", self.kind, name, exc)
            return RESOURCE_UNKNOWN, {}

    def _safe_check(self, name: str, record: Mapping[str, Any]) -> CheckResult:
        try:
            return self.check_entity(name, record)
        except (KwoError, *PROVIDER_ERRORS) as exc:
            result = CheckResult(kind=self.kind, name=name)
            result.add("check", False, str(exc))
            return result

    def _archived_views(self, active_names: set[str]) -> list[EntityView]:
        views: dict[str, EntityView] = {}
        for bundle in self.context.archives.list_bundles():
            entity = bundle.get("entity") or {}
            if entity.get("kind") != self.kind or bundle.get("operation") != self.delete_operation:
                continue
            name = str(entity.get("name") or "")
            if not name or name in active_names or name in views:
                continue
            record = self.context.archives.read_json(Path(bundle["path"]), "metadata.json") or {}
            views[name] = EntityView(
                name=name,
                status=STATUS_ARCHIVED,
                resource_status=RESOURCE_MISSING,
                record=record if isinstance(record, dict) else {},
                archive_id=str(bundle.get("id")),
            )
        return [views[name] for name in sorted(views)]


__all__ = [
    "CheckItem",
    "CheckResult",
    "ControllerContext",
    "EntityController",
    "EntityView",
    "OperationResult",
    "PROVIDER_ERRORS",
    "ProvisionStep",
    "RESOURCE_MISSING",
    "RESOURCE_OK",
    "RESOURCE_UNKNOWN",
    "STATUS_ACTIVE",
    "STATUS_ALL",
    "STATUS_ARCHIVED",
    "STATUS_FILTERS",
    "TeardownStep",
]
