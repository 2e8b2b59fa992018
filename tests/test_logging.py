"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from kwoctl.logging import StructuredLogger, resolve_actor


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("tenant add", args={"name": "acme"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("dns add") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("dns list") as op:
        op.success("done", changed=0)


def test_operation_records_steps_and_actor(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Each operation writes one JSON line with its steps and the operator."""
    monkeypatch.setenv("SUDO_USER", "alice")
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("tenant add", args={"name": "acme"}, target={"kind": "tenant"}) as op:
        op.add_step("namespace", detail="Namespace acme")
        op.add_step("kubeconfig.probe", status="warning", detail="timed out")
        op.success("created", changed=1, backups=["tenant-acme-remove-20250101-000000"])

    lines = logger._operations_log_path.read_text(encoding="utf-8").splitlines()  # type: ignore[attr-defined]
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["command"] == "tenant add"
    assert record["actor"] == "alice"
    assert record["target"] == {"kind": "tenant"}
    assert [step["name"] for step in record["steps"]] == ["namespace", "kubeconfig.probe"]
    assert record["steps"][1]["status"] == "warning"
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 1
    assert resolve_actor() == "alice"


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and propagated."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="kaboom"):
        with logger.operation("registry add"):
            raise ValueError("kaboom")

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    assert record["result"]["status"] == "error"
    assert "kaboom" in record["result"]["message"]
    assert record["result"]["context"] == {"type": "ValueError"}


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warning context values are rendered JSON-safe."""
    logger = StructuredLogger(tmp_path / "logs")

    class Resolver:
        def __str__(self) -> str:
            return "letsencrypt-ovh"

    with logger.operation("dns remove", args={"name": "ovh"}) as op:
        op.warning(
            "warned",
            warnings=("no certificate resolvers remain",),
            errors=("traefik rollout pending",),
            changed=1,
            backups=["dns-letsencrypt-ovh-remove-20250101-000000"],
            context={"archive": Path("/var/lib/kwoctl/archive"), "resolver": Resolver()},
        )

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["no certificate resolvers remain"]
    assert result["errors"] == ["traefik rollout pending"]
    assert result["backups"] == ["dns-letsencrypt-ovh-remove-20250101-000000"]
    assert result["context"] == {"archive": "/var/lib/kwoctl/archive", "resolver": "letsencrypt-ovh"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """A declined removal records its message as the only error."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("tenant remove") as op:
        op.error("declined", errors=None, rc=3, context={"keys": {"token"}})

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["declined"]
    assert result["rc"] == 3
    assert result["context"] == {"keys": "{'token'}"}
