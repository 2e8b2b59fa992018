"""Whole-document backends behind the metadata and credential stores.

Every backend supports exactly two operations: read the entire document and
replace the entire document. ``read`` returns a :class:`Document` carrying a
version token (a ``resourceVersion`` for cluster objects, a content digest for
local files). ``write`` receives the document it was derived from so that,
when compare-and-swap mode is enabled, a concurrent change is detected and
refused instead of silently overwritten.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from ..errors import (
    ConcurrentModificationError,
    PrivilegeError,
    StoreUnavailableError,
)
from ..providers.kubectl import (
    KubectlConflictError,
    KubectlError,
    KubectlForbiddenError,
    KubectlProvider,
)

LOGGER = logging.getLogger(__name__)
MANAGED_BY_LABEL = {"app.kubernetes.io/managed-by": "kwoctl"}


@dataclass(frozen=True, slots=True)
class Document:
    """A snapshot of one backing document."""

    data: dict[str, Any] = field(default_factory=dict)
    version: str | None = None
    raw: dict[str, Any] | None = None

    @property
    def exists(self) -> bool:
        """Return True when the document was present at read time."""
        return self.version is not None


class DocumentBackend(Protocol):
    """Interface shared by all whole-document backends."""

    def describe(self) -> str:
        """Return a human readable identifier for messages."""

    def read(self) -> Document:
        """Return the current document."""

    def write(self, data: Mapping[str, Any], *, base: Document) -> None:
        """Replace the document with *data*, derived from *base*."""


class _ClusterDocument:
    """Shared plumbing for ConfigMap and Secret documents."""

    kind = ""

    def __init__(
        self,
        kubectl: KubectlProvider,
        name: str,
        namespace: str,
        *,
        compare_and_swap: bool = False,
    ) -> None:
        self._kubectl = kubectl
        self._name = name
        self._namespace = namespace
        self._compare_and_swap = compare_and_swap

    @property
    def name(self) -> str:
        """Return the backing object name."""
        return self._name

    def describe(self) -> str:
        """Return ``kind namespace/name``."""
        return f"{self.kind} {self._namespace}/{self._name}"

    def _fetch(self) -> dict[str, Any] | None:
        try:
            return self._kubectl.get(self.kind.lower(), self._name, namespace=self._namespace)
        except KubectlForbiddenError as exc:
            raise PrivilegeError(f"cannot read {self.describe()}: {exc}") from exc
        except KubectlError as exc:
            raise StoreUnavailableError(f"cannot read {self.describe()}: {exc}") from exc

    def _store(self, manifest: dict[str, Any], base: Document) -> None:
        try:
            if self._compare_and_swap:
                if base.exists:
                    manifest["metadata"]["resourceVersion"] = base.version
                    self._kubectl.replace(manifest)
                else:
                    self._kubectl.create(manifest)
                return
            if base.exists:
                self._kubectl.replace(manifest)
                return
            try:
                self._kubectl.create(manifest)
            except KubectlConflictError:
                # Created by someone else since our read; last write wins.
                self._kubectl.replace(manifest)
        except KubectlConflictError as exc:
            raise ConcurrentModificationError(
                f"{self.describe()} changed since it was read; re-run the command."
            ) from exc
        except KubectlForbiddenError as exc:
            raise PrivilegeError(f"cannot write {self.describe()}: {exc}") from exc
        except KubectlError as exc:
            raise StoreUnavailableError(f"cannot write {self.describe()}: {exc}") from exc

    def _base_manifest(self, base: Document) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self._name, "namespace": self._namespace}
        labels = dict(MANAGED_BY_LABEL)
        if base.raw is not None:
            existing_meta = base.raw.get("metadata") or {}
            labels = {**dict(existing_meta.get("labels") or {}), **labels}
            annotations = existing_meta.get("annotations")
            if annotations:
                metadata["annotations"] = dict(annotations)
        metadata["labels"] = labels
        return {"apiVersion": "v1", "kind": self.kind, "metadata": metadata}


class ConfigMapDocument(_ClusterDocument):
    """A JSON document stored under one key of a ConfigMap."""

    kind = "ConfigMap"

    def __init__(
        self,
        kubectl: KubectlProvider,
        name: str,
        namespace: str,
        key: str,
        *,
        compare_and_swap: bool = False,
    ) -> None:
        super().__init__(kubectl, name, namespace, compare_and_swap=compare_and_swap)
        self._key = key

    def describe(self) -> str:
        """Return ``ConfigMap namespace/name[key]``."""
        return f"{super().describe()}[{self._key}]"

    def read(self) -> Document:
        """Return the parsed JSON document (empty when missing)."""
        obj = self._fetch()
        if obj is None:
            return Document()
        raw_text = (obj.get("data") or {}).get(self._key) or "{}"
        try:
            data = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise StoreUnavailableError(f"{self.describe()} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"{self.describe()} must hold a JSON object.")
        version = str((obj.get("metadata") or {}).get("resourceVersion") or "0")
        return Document(data=data, version=version, raw=obj)

    def write(self, data: Mapping[str, Any], *, base: Document) -> None:
        """Replace the key's JSON payload, keeping any sibling keys."""
        manifest = self._base_manifest(base)
        siblings = dict((base.raw or {}).get("data") or {})
        siblings[self._key] = json.dumps(dict(data), indent=2, sort_keys=True)
        manifest["data"] = siblings
        self._store(manifest, base)


class SecretDocument(_ClusterDocument):
    """A Secret whose ``data`` mapping holds base64 encoded values."""

    kind = "Secret"

    def __init__(
        self,
        kubectl: KubectlProvider,
        name: str,
        namespace: str,
        *,
        secret_type: str = "Opaque",
        compare_and_swap: bool = False,
    ) -> None:
        super().__init__(kubectl, name, namespace, compare_and_swap=compare_and_swap)
        self._secret_type = secret_type

    def read(self) -> Document:
        """Return the Secret's encoded ``data`` mapping (empty when missing)."""
        obj = self._fetch()
        if obj is None:
            return Document()
        data = obj.get("data") or {}
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"{self.describe()} has malformed data.")
        version = str((obj.get("metadata") or {}).get("resourceVersion") or "0")
        return Document(data=dict(data), version=version, raw=obj)

    def write(self, data: Mapping[str, Any], *, base: Document) -> None:
        """Replace the Secret's data mapping."""
        manifest = self._base_manifest(base)
        manifest["type"] = (base.raw or {}).get("type") or self._secret_type
        manifest["data"] = dict(data)
        self._store(manifest, base)


class FileDocument:
    """A JSON document in a local file, replaced atomically.

    ``compact`` writes a single line in key order, the way ``jq -c`` does.
    """

    def __init__(
        self,
        path: Path,
        *,
        compare_and_swap: bool = False,
        mode: int = 0o640,
        compact: bool = False,
    ) -> None:
        self._path = Path(path).expanduser()
        self._compare_and_swap = compare_and_swap
        self._mode = mode
        self._compact = compact

    @property
    def path(self) -> Path:
        """Return the backing file path."""
        return self._path

    def describe(self) -> str:
        """Return the file path."""
        return str(self._path)

    def read(self) -> Document:
        """Return the parsed document (empty when the file is missing)."""
        try:
            content = self._path.read_bytes()
        except FileNotFoundError:
            return Document()
        except OSError as exc:
            raise StoreUnavailableError(f"cannot read {self._path}: {exc}") from exc
        try:
            data = json.loads(content.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreUnavailableError(f"{self._path} is corrupted: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"{self._path} must hold a JSON object.")
        return Document(data=data, version=_digest(content))

    def write(self, data: Mapping[str, Any], *, base: Document) -> None:
        """Atomically replace the file with *data*."""
        if self._compare_and_swap:
            current = self._current_version()
            if current != base.version:
                raise ConcurrentModificationError(
                    f"{self._path} changed since it was read; re-run the command."
                )
        if self._compact:
            payload = json.dumps(deepcopy(dict(data)), separators=(",", ":")) + "\n"
        else:
            payload = json.dumps(deepcopy(dict(data)), indent=2, sort_keys=True) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self._path.parent), prefix=f".{self._path.name}."
            )
        except OSError as exc:
            raise StoreUnavailableError(f"cannot write {self._path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.chmod(tmp_path, self._mode)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise StoreUnavailableError(f"cannot write {self._path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        LOGGER.debug("wrote %s (%d bytes)", self._path, len(payload))

    def _current_version(self) -> str | None:
        try:
            return _digest(self._path.read_bytes())
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailableError(f"cannot read {self._path}: {exc}") from exc


def _digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


__all__ = [
    "ConfigMapDocument",
    "Document",
    "DocumentBackend",
    "FileDocument",
    "SecretDocument",
]
