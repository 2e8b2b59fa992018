"""Structured operation logging for kwoctl.

Two sinks are maintained under the configured log directory:

``kwoctl.log``
    Human readable log fed through the standard :mod:`logging` module. Every
    ``kwoctl.*`` logger propagates here, so modules simply use
    ``logging.getLogger(__name__)``.
``operations.jsonl``
    One JSON object per CLI operation: who ran what, which steps ran with
    which outcome, and the final result. This is the audit trail operators
    grep when a multi-step provisioning run was interrupted.

Logging must never break the command it observes: when the directory cannot
be created or a write fails the logger disables itself and carries on.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

HUMAN_LOG_NAME = "kwoctl.log"
OPERATIONS_LOG_NAME = "operations.jsonl"
ROOT_LOGGER_NAME = "kwoctl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def resolve_actor() -> str:
    """Return the operator name recorded in logs and metadata."""
    for variable in ("SUDO_USER", "USER", "LOGNAME"):
        value = os.environ.get(variable)
        if value:
            return value
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd database
        return f"uid:{os.getuid()}"


@dataclass(slots=True)
class OperationScope:
    """Collects the steps and result of one CLI operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object] | None
    actor: str
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: str = field(default_factory=_now_iso)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    _start: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str = "success", detail: object | None = None) -> None:
        """Record a named step and its outcome."""
        entry: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            entry["detail"] = _sanitise(detail)
        self.steps.append(entry)
        level = logging.WARNING if status in {"warning", "error"} else logging.INFO
        logging.getLogger(f"{ROOT_LOGGER_NAME}.ops").log(
            level, "%s %s: %s%s", self.command, name, status, f" ({detail})" if detail else ""
        )

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings) if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or []],
            "errors": [str(item) for item in errors or []],
            "backups": [str(item) for item in backups or []],
            "context": _sanitise(dict(context)) if context else {},
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to ``operations.jsonl``."""
        return {
            "id": self.operation_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target) if self.target is not None else None,
            "actor": self.actor,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._start) * 1000),
            "steps": list(self.steps),
            "result": self.result or {"status": "unknown"},
        }


class StructuredLogger:
    """Write human and JSONL operation logs under *log_dir*."""

    def __init__(self, log_dir: Path, *, level: int = logging.INFO) -> None:
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self._log_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_human_handler(level)

    @property
    def enabled(self) -> bool:
        """Return True while log writes are still being attempted."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
            actor=resolve_actor(),
        )
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", context={"type": type(exc).__name__})
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False

    def _attach_human_handler(self, level: int) -> None:
        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(level)
        for existing in list(root.handlers):
            if not isinstance(existing, RotatingFileHandler):
                continue
            if existing.baseFilename == os.path.abspath(self._human_log_path):
                return
            # One human log per process; a new logger directory replaces the old one.
            root.removeHandler(existing)
            existing.close()
        try:
            handler = RotatingFileHandler(
                self._human_log_path,
                maxBytes=5 * 1024 * 1024,
                backupCount=3,
                encoding="utf-8",
            )
        except OSError:
            return
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        root.addHandler(handler)


__all__ = ["OperationScope", "StructuredLogger", "resolve_actor"]
