"""Snapshot models for capturing point-in-time environment state.

A snapshot directory holds a compressed database dump, a compressed archive
of the application's data root, copies of the deployment configuration and,
for cross-environment migrations, the source environment's encryption key.
``manifest.json`` records one SHA-256 digest per contained file; the
``diagnostics`` section is free text for humans and is never parsed.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

MANIFEST_NAME = "manifest.json"
INCOMPLETE_MARKER = ".incomplete"
DATABASE_DUMP_NAME = "database.sql.gz"
DATA_ARCHIVE_NAME = "n8n_data.tar.gz"
ENCRYPTION_KEY_NAME = "encryption_key.txt"
MANIFEST_FORMAT_VERSION = "1"

# Directory names are the UTC creation time; lexical order == age order.
SNAPSHOT_ID_FORMAT = "%Y%m%d_%H%M%S"


class SnapshotKind(str, Enum):
    """Why the snapshot was taken."""

    BACKUP = "backup"
    MIGRATION = "migration"


class ManifestEntry(BaseModel):
    """Integrity record for a single file within a snapshot."""

    path: str = Field(
        ...,
        min_length=1,
        description="POSIX path relative to the snapshot directory.",
    )
    size: int = Field(
        ...,
        gt=0,
        description="File size in bytes; zero-length artifacts are never recorded.",
    )
    sha256: str = Field(
        ...,
        min_length=64,
        max_length=64,
        description="Hex SHA-256 digest of the file contents.",
    )


class Manifest(BaseModel):
    """Structured table of contents for a snapshot directory."""

    format_version: str = MANIFEST_FORMAT_VERSION
    snapshot_id: str = Field(..., min_length=1)
    kind: SnapshotKind = SnapshotKind.BACKUP
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    host: str = ""
    source_environment: str = ""
    tool_versions: dict[str, str] = Field(default_factory=dict)
    files: list[ManifestEntry] = Field(default_factory=list)
    row_counts: dict[str, int | None] = Field(
        default_factory=dict,
        description="Informational row counts captured at backup time.",
    )
    diagnostics: str = Field(
        default="",
        description="Free-text service status for human diagnosis only.",
    )
    has_encryption_key: bool = False

    def entry(self, path: str) -> ManifestEntry | None:
        for item in self.files:
            if item.path == path:
                return item
        return None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"


class Snapshot(BaseModel):
    """A snapshot directory paired with its parsed manifest."""

    path: Path
    manifest: Manifest

    @property
    def snapshot_id(self) -> str:
        return self.manifest.snapshot_id

    @property
    def kind(self) -> SnapshotKind:
        return self.manifest.kind

    @property
    def database_dump(self) -> Path:
        return self.path / DATABASE_DUMP_NAME

    @property
    def data_archive(self) -> Path | None:
        if self.manifest.entry(DATA_ARCHIVE_NAME) is None:
            return None
        return self.path / DATA_ARCHIVE_NAME

    @property
    def encryption_key_file(self) -> Path | None:
        if self.manifest.entry(ENCRYPTION_KEY_NAME) is None:
            return None
        return self.path / ENCRYPTION_KEY_NAME

    @property
    def total_size(self) -> int:
        return sum(item.size for item in self.manifest.files)


class SnapshotSources(BaseModel):
    """Where the builder reads the environment's state from."""

    database_dump_cmd: list[str] = Field(
        ...,
        min_length=1,
        description="Argv whose stdout is a plain-SQL database dump.",
    )
    data_root: Path | None = Field(
        default=None,
        description="Application data directory to archive; None to skip.",
    )
    config_root: Path | None = Field(
        default=None,
        description="Base directory that config file paths are relative to.",
    )
    config_files: list[str] = Field(
        default_factory=list,
        description="Required configuration files, relative to config_root.",
    )
    optional_config_files: list[str] = Field(
        default_factory=list,
        description="Configuration files copied only when present.",
    )


def snapshot_id_for(moment: datetime) -> str:
    """Return the directory name for a snapshot created at *moment*."""
    return moment.astimezone(UTC).strftime(SNAPSHOT_ID_FORMAT)
