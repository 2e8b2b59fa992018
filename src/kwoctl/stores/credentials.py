"""Credential store adapter over a Secret-like document of base64 values."""
from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable, Mapping

from ..errors import NotFoundError, StoreUnavailableError
from .documents import DocumentBackend


def encode_value(value: bytes | str) -> str:
    """Return the base64 text stored for *value*."""
    raw = value.encode("utf-8") if isinstance(value, str) else value
    return base64.b64encode(raw).decode("ascii")


def decode_value(encoded: str) -> bytes:
    """Return the bytes behind a stored base64 value."""
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise StoreUnavailableError(f"credential value is not valid base64: {exc}") from exc


class CredentialStore:
    """Opaque key/value secret material, kept apart from metadata."""

    def __init__(self, backend: DocumentBackend) -> None:
        self._backend = backend

    def describe(self) -> str:
        """Return the backing document description."""
        return self._backend.describe()

    def keys(self) -> list[str]:
        """Return the keys currently present, sorted."""
        return sorted(self._backend.read().data)

    def exists(self, keys: Iterable[str]) -> bool:
        """Return True only when every key in *keys* is present."""
        present = self._backend.read().data
        return all(key in present for key in keys)

    def get(self, key: str) -> bytes:
        """Return the decoded value for *key*."""
        data = self._backend.read().data
        if key not in data:
            raise NotFoundError(f"credential '{key}' not found in {self.describe()}.")
        return decode_value(str(data[key]))

    def get_many(self, keys: Iterable[str]) -> dict[str, bytes]:
        """Return the decoded values of the keys in *keys* that are present."""
        data = self._backend.read().data
        return {key: decode_value(str(data[key])) for key in keys if key in data}

    def put(self, values: Mapping[str, bytes | str]) -> None:
        """Merge *values* into the document."""
        if not values:
            return
        document = self._backend.read()
        data = dict(document.data)
        for key, value in values.items():
            data[key] = encode_value(value)
        self._backend.write(data, base=document)

    def remove(self, keys: Iterable[str]) -> list[str]:
        """Remove *keys*; returns the keys that were actually present."""
        document = self._backend.read()
        data = dict(document.data)
        removed = [key for key in keys if data.pop(key, None) is not None]
        if removed:
            self._backend.write(data, base=document)
        return removed


__all__ = ["CredentialStore", "decode_value", "encode_value"]
