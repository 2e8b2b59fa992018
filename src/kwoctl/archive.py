"""Archive bundles captured before destructive operations.

A bundle is a directory ``<root>/<label>-<operation>-<YYYYmmdd-HHMMSS>``
holding the entity's metadata record, its credential values in cleartext,
optional manifest snapshots, copies of local files, and a ``manifest.json``
describing what was captured. Directories are ``0700`` and files ``0600``.

Archiving is a side channel: each capture step is independent and a failing
step is recorded as skipped and logged, never raised. Even when the bundle
directory itself cannot be created the caller gets a bundle back (with
``path=None``) and continues with the operation the operator asked for.
"""
from __future__ import annotations

import base64
import json
import logging
import os
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from . import __version__

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
MANIFEST_NAME = "manifest.json"
DIR_MODE = 0o700
FILE_MODE = 0o600

Capture = Callable[[], Any]


@dataclass(slots=True)
class ArchiveBundle:
    """Result of one archive run."""

    bundle_id: str
    label: str
    operation: str
    created_at: str
    path: Path | None = None
    entity: dict[str, Any] = field(default_factory=dict)
    captured: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        """Return True when every capture step succeeded."""
        return self.path is not None and not self.skipped

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable description of the bundle."""
        return {
            "id": self.bundle_id,
            "label": self.label,
            "operation": self.operation,
            "createdAt": self.created_at,
            "path": str(self.path) if self.path is not None else None,
            "entity": dict(self.entity),
            "captured": list(self.captured),
            "skipped": dict(self.skipped),
            "toolVersion": __version__,
        }


class ArchiveManager:
    """Write best-effort archive bundles under *root*."""

    def __init__(
        self,
        root: Path,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self._root = Path(root).expanduser()
        self._clock = clock

    @property
    def root(self) -> Path:
        """Return the archive root directory."""
        return self._root

    def archive(
        self,
        label: str,
        operation: str,
        *,
        entity: Mapping[str, Any] | None = None,
        metadata: Capture | None = None,
        credentials: Capture | None = None,
        manifests: Mapping[str, Capture] | None = None,
        files: Mapping[str, Path] | None = None,
    ) -> ArchiveBundle:
        """Capture a bundle; never raises for capture failures."""
        now = self._clock()
        bundle = ArchiveBundle(
            bundle_id=f"{label}-{operation}-{now.strftime(TIMESTAMP_FORMAT)}",
            label=label,
            operation=operation,
            created_at=now.isoformat(timespec="seconds").replace("+00:00", "Z"),
            entity=dict(entity or {}),
        )
        try:
            bundle.path = self._create_bundle_dir(bundle)
        except OSError as exc:
            LOGGER.warning("archive %s: cannot create bundle directory: %s", bundle.bundle_id, exc)
            bundle.skipped["bundle"] = str(exc)
            return bundle

        if metadata is not None:
            self._capture(bundle, "metadata", lambda: self._write_json(
                bundle, "metadata.json", _require(metadata())
            ))
        if credentials is not None:
            self._capture(bundle, "credentials", lambda: self._write_json(
                bundle, "credentials.json", _decode_credentials(credentials())
            ))
        for name, capture in (manifests or {}).items():
            self._capture(
                bundle,
                f"manifest:{name}",
                lambda capture=capture, name=name: self._write_text(
                    bundle, Path("manifests") / f"{name}.yaml", _as_text(capture())
                ),
            )
        for name, source in (files or {}).items():
            self._capture(
                bundle,
                f"file:{name}",
                lambda source=source, name=name: self._copy_file(bundle, source, name),
            )

        try:
            self._write_json(bundle, MANIFEST_NAME, bundle.to_payload())
        except OSError as exc:
            LOGGER.warning("archive %s: cannot write manifest: %s", bundle.bundle_id, exc)
            bundle.skipped["manifest"] = str(exc)
        return bundle

    def list_bundles(self, prefix: str | None = None) -> list[dict[str, Any]]:
        """Return bundle manifests, newest first, optionally filtered by label prefix."""
        if not self._root.is_dir():
            return []
        bundles: list[dict[str, Any]] = []
        for entry in self._root.iterdir():
            if not entry.is_dir():
                continue
            manifest_path = entry / MANIFEST_NAME
            try:
                payload = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                payload = {"id": entry.name, "label": None, "operation": None}
            if not isinstance(payload, dict):
                continue
            payload.setdefault("id", entry.name)
            payload["path"] = str(entry)
            label = str(payload.get("label") or entry.name)
            if prefix and not label.startswith(prefix):
                continue
            bundles.append(payload)
        bundles.sort(key=lambda item: (str(item.get("createdAt") or ""), str(item["id"])),
                     reverse=True)
        return bundles

    def read_json(self, bundle_path: Path, name: str) -> Any:
        """Return a JSON member of a bundle, or ``None`` when unavailable."""
        try:
            return json.loads((Path(bundle_path) / name).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    # ------------------------------------------------------------------
    def _create_bundle_dir(self, bundle: ArchiveBundle) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        os.chmod(self._root, DIR_MODE)
        candidate = self._root / bundle.bundle_id
        counter = 1
        while True:
            try:
                candidate.mkdir(mode=DIR_MODE)
                break
            except FileExistsError:
                candidate = self._root / f"{bundle.bundle_id}-{counter}"
                counter += 1
        os.chmod(candidate, DIR_MODE)
        bundle.bundle_id = candidate.name
        return candidate

    def _capture(self, bundle: ArchiveBundle, step: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001 - capture steps are best-effort
            LOGGER.warning("archive %s: skipped %s: %s", bundle.bundle_id, step, exc)
            bundle.skipped[step] = str(exc) or type(exc).__name__
            return
        bundle.captured.append(step)

    def _write_json(self, bundle: ArchiveBundle, relative: str, payload: Any) -> None:
        text = json.dumps(payload, indent=2, sort_keys=True) + "\n"
        self._write_text(bundle, Path(relative), text)

    def _write_text(self, bundle: ArchiveBundle, relative: Path, text: str) -> None:
        assert bundle.path is not None
        destination = bundle.path / relative
        if destination.parent != bundle.path:
            destination.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(destination, FILE_MODE)

    def _copy_file(self, bundle: ArchiveBundle, source: Path, name: str) -> None:
        assert bundle.path is not None
        destination = bundle.path / "files" / name
        destination.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        os.chmod(destination, FILE_MODE)


def _decode_credentials(values: Mapping[str, Any] | None) -> dict[str, str]:
    if not values:
        raise ValueError("no credential values present")
    decoded: dict[str, str] = {}
    for key, value in values.items():
        if isinstance(value, bytes):
            try:
                decoded[key] = value.decode("utf-8")
            except UnicodeDecodeError:
                decoded[key] = "base64:" + base64.b64encode(value).decode("ascii")
        else:
            decoded[key] = str(value)
    return decoded


def _require(value: Any) -> Any:
    if value is None:
        raise ValueError("record not present")
    return value


def _as_text(value: Any) -> str:
    if value is None or value == "":
        raise ValueError("nothing to capture")
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, sort_keys=True) + "\n"


__all__ = ["ArchiveBundle", "ArchiveManager"]
