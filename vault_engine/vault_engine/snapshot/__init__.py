"""Snapshot construction and integrity verification."""

from __future__ import annotations

from vault_engine.snapshot.builder import Diagnostics, SnapshotBuilder
from vault_engine.snapshot.checksum import sha256_file
from vault_engine.snapshot.verifier import load_manifest, verify

__all__ = [
    "Diagnostics",
    "SnapshotBuilder",
    "load_manifest",
    "sha256_file",
    "verify",
]
