"""Metadata and credential stores built on whole-document backends."""
from __future__ import annotations

from .credentials import CredentialStore, decode_value, encode_value
from .documents import (
    ConfigMapDocument,
    Document,
    DocumentBackend,
    FileDocument,
    SecretDocument,
)
from .metadata import MetadataStore

__all__ = [
    "ConfigMapDocument",
    "CredentialStore",
    "Document",
    "DocumentBackend",
    "FileDocument",
    "MetadataStore",
    "SecretDocument",
    "decode_value",
    "encode_value",
]
