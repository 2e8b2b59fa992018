"""Metadata store adapter: ``mapping[name -> record]`` over one document."""
from __future__ import annotations

from collections.abc import Callable, Mapping
from copy import deepcopy
from datetime import UTC, datetime
from typing import Any

from ..errors import NotFoundError, StoreUnavailableError
from .documents import Document, DocumentBackend


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class MetadataStore:
    """CRUD over entity metadata records held in a single shared document.

    Every mutation is a read-modify-write of the whole document. Depending on
    the backend's write mode a concurrent writer's change is either silently
    overwritten (last-write-wins) or rejected (compare-and-swap).
    """

    def __init__(
        self,
        backend: DocumentBackend,
        *,
        kind: str,
        clock: Callable[[], str] = _now_iso,
    ) -> None:
        self._backend = backend
        self._kind = kind
        self._clock = clock

    @property
    def kind(self) -> str:
        """Return the entity kind this store holds."""
        return self._kind

    def describe(self) -> str:
        """Return the backing document description."""
        return self._backend.describe()

    def get(self, name: str) -> dict[str, Any]:
        """Return the record for *name* or raise :class:`NotFoundError`."""
        record = self.find(name)
        if record is None:
            raise NotFoundError(f"{self._kind} '{name}' not found.")
        return record

    def find(self, name: str) -> dict[str, Any] | None:
        """Return the record for *name*, or ``None`` when absent."""
        records = self._records(self._backend.read())
        record = records.get(name)
        return deepcopy(record) if record is not None else None

    def put(self, name: str, record: Mapping[str, Any]) -> dict[str, Any]:
        """Insert or replace *name*; returns the stored record."""
        document = self._backend.read()
        records = self._records(document)
        stored = deepcopy(dict(record))
        existing = records.get(name)
        if existing is not None and "createdAt" not in stored and "createdAt" in existing:
            stored["createdAt"] = existing["createdAt"]
        stored["lastModified"] = self._clock()
        records[name] = stored
        self._backend.write(records, base=document)
        return deepcopy(stored)

    def remove(self, name: str) -> dict[str, Any]:
        """Delete *name* and return the removed record."""
        document = self._backend.read()
        records = self._records(document)
        if name not in records:
            raise NotFoundError(f"{self._kind} '{name}' not found.")
        removed = records.pop(name)
        self._backend.write(records, base=document)
        return removed

    def list(self) -> list[tuple[str, dict[str, Any]]]:
        """Return ``(name, record)`` pairs sorted by name."""
        records = self._records(self._backend.read())
        return [(name, deepcopy(records[name])) for name in sorted(records)]

    def _records(self, document: Document) -> dict[str, Any]:
        records: dict[str, Any] = {}
        for name, record in document.data.items():
            if not isinstance(record, dict):
                raise StoreUnavailableError(
                    f"{self._backend.describe()} holds a malformed record for '{name}'."
                )
            records[str(name)] = record
        return records


__all__ = ["MetadataStore"]
