"""Snapshot builder: dump, archive, copy, checksum, manifest.

The builder produces a self-contained, timestamped snapshot directory.  A
``.incomplete`` marker is written first and removed only after the manifest
is durably on disk, so a crash or a failed step leaves a directory that the
verifier rejects and the retention sweeper leaves alone for a grace period.

Each artifact's write stream is closed before its digest is computed, so a
checksum never observes a partially flushed file.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, Field

from vault_engine.errors import (
    EmptyArtifactError,
    EmptyDumpError,
    SnapshotBuildError,
    SnapshotExistsError,
)
from vault_engine.models.snapshot import (
    DATA_ARCHIVE_NAME,
    DATABASE_DUMP_NAME,
    ENCRYPTION_KEY_NAME,
    INCOMPLETE_MARKER,
    MANIFEST_NAME,
    Manifest,
    ManifestEntry,
    Snapshot,
    SnapshotKind,
    SnapshotSources,
    snapshot_id_for,
)
from vault_engine.runner import ProcessRunner
from vault_engine.snapshot.archive import create_tarball, gzip_file
from vault_engine.snapshot.checksum import sha256_file

logger = logging.getLogger(__name__)

_RAW_DUMP_NAME = "database.sql"


class Diagnostics(BaseModel):
    """Informational data gathered for the manifest; never load-bearing."""

    text: str = ""
    row_counts: dict[str, int | None] = Field(default_factory=dict)
    tool_versions: dict[str, str] = Field(default_factory=dict)


DiagnosticsCollector = Callable[[], Diagnostics]


class SnapshotBuilder:
    """Build snapshot directories from an environment's live state.

    Parameters
    ----------
    runner:
        Process runner used for the dump command.
    command_timeout:
        Timeout in seconds applied to the dump command.
    """

    def __init__(self, runner: ProcessRunner, command_timeout: float) -> None:
        self._runner = runner
        self._command_timeout = command_timeout

    def build(
        self,
        backup_root: Path,
        sources: SnapshotSources,
        *,
        kind: SnapshotKind = SnapshotKind.BACKUP,
        source_environment: str = "",
        encryption_key: str | None = None,
        diagnostics: DiagnosticsCollector | None = None,
        now: datetime | None = None,
    ) -> Snapshot:
        """Produce a new snapshot under *backup_root*.

        Raises
        ------
        SnapshotExistsError
            A snapshot with the same timestamp already exists.
        EmptyDumpError
            The dump command succeeded but wrote zero bytes.
        EmptyArtifactError
            Any other produced file (config copy, key file) is empty.
        CommandError
            The dump command failed or timed out.
        """
        created_at = now or datetime.now(UTC)
        snapshot_id = snapshot_id_for(created_at)
        snapshot_dir = backup_root / snapshot_id

        backup_root.mkdir(parents=True, exist_ok=True)
        try:
            snapshot_dir.mkdir()
        except FileExistsError as exc:
            raise SnapshotExistsError(snapshot_dir) from exc
        (snapshot_dir / INCOMPLETE_MARKER).write_text(created_at.isoformat() + "\n", encoding="utf-8")
        logger.info("Building %s snapshot %s", kind.value, snapshot_dir)

        artifacts: list[str] = [self._dump_database(snapshot_dir, sources.database_dump_cmd)]
        if sources.data_root is not None:
            artifacts.append(self._archive_data_root(snapshot_dir, sources.data_root))
        artifacts.extend(self._copy_config_files(snapshot_dir, sources))
        if kind == SnapshotKind.MIGRATION:
            artifacts.append(self._write_encryption_key(snapshot_dir, encryption_key))

        entries = [self._entry_for(snapshot_dir, rel) for rel in artifacts]
        collected = _collect_diagnostics(diagnostics)

        manifest = Manifest(
            snapshot_id=snapshot_id,
            kind=kind,
            created_at=created_at,
            host=socket.gethostname(),
            source_environment=source_environment,
            tool_versions=collected.tool_versions,
            files=entries,
            row_counts=collected.row_counts,
            diagnostics=collected.text,
            has_encryption_key=any(e.path == ENCRYPTION_KEY_NAME for e in entries),
        )
        _write_atomic(snapshot_dir / MANIFEST_NAME, manifest.to_json())
        (snapshot_dir / INCOMPLETE_MARKER).unlink()

        logger.info(
            "Snapshot %s complete: %d files, %d bytes",
            snapshot_id,
            len(entries),
            sum(e.size for e in entries),
            extra={"snapshot": snapshot_id},
        )
        return Snapshot(path=snapshot_dir, manifest=manifest)

    # -- steps --------------------------------------------------------------

    def _dump_database(self, snapshot_dir: Path, dump_cmd: list[str]) -> str:
        raw = snapshot_dir / _RAW_DUMP_NAME
        logger.info("Dumping database")
        self._runner.run(dump_cmd, timeout=self._command_timeout, stdout_path=raw)

        if not raw.exists() or raw.stat().st_size == 0:
            raw.unlink(missing_ok=True)
            raise EmptyDumpError(raw)

        gzip_file(raw, snapshot_dir / DATABASE_DUMP_NAME)
        raw.unlink()
        return DATABASE_DUMP_NAME

    def _archive_data_root(self, snapshot_dir: Path, data_root: Path) -> str:
        if not data_root.is_dir():
            raise SnapshotBuildError(f"data root does not exist: {data_root}")
        logger.info("Archiving data root %s", data_root)
        create_tarball(data_root, snapshot_dir / DATA_ARCHIVE_NAME)
        return DATA_ARCHIVE_NAME

    def _copy_config_files(self, snapshot_dir: Path, sources: SnapshotSources) -> list[str]:
        copied: list[str] = []
        wanted = [(rel, True) for rel in sources.config_files]
        wanted += [(rel, False) for rel in sources.optional_config_files]
        if wanted and sources.config_root is None:
            raise ValueError("config files were requested without a config_root")

        for rel, required in wanted:
            rel_path = _safe_relative(rel)
            src = sources.config_root / rel_path  # type: ignore[operator]
            if not src.is_file():
                if required:
                    raise SnapshotBuildError(f"required config file missing: {src}")
                logger.info("Optional config file not present, skipping: %s", src)
                continue
            dst = snapshot_dir / rel_path
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
            copied.append(rel_path.as_posix())
        return copied

    def _write_encryption_key(self, snapshot_dir: Path, encryption_key: str | None) -> str:
        target = snapshot_dir / ENCRYPTION_KEY_NAME
        if not encryption_key:
            raise EmptyArtifactError(target, "migration snapshot requires a non-empty encryption key")
        # Verbatim: no trailing newline, no normalisation.
        with target.open("w", encoding="utf-8", newline="") as fh:
            fh.write(encryption_key)
        target.chmod(0o600)
        return ENCRYPTION_KEY_NAME

    @staticmethod
    def _entry_for(snapshot_dir: Path, rel: str) -> ManifestEntry:
        path = snapshot_dir / rel
        size = path.stat().st_size
        if size == 0:
            raise EmptyArtifactError(path)
        return ManifestEntry(path=rel, size=size, sha256=sha256_file(path))


def _safe_relative(rel: str) -> PurePosixPath:
    """Reject absolute paths and parent traversal in configured file names."""
    candidate = PurePosixPath(rel)
    if candidate.is_absolute() or ".." in candidate.parts or not candidate.parts:
        raise ValueError(f"config file path must be relative and inside the config root: {rel!r}")
    return candidate


def _collect_diagnostics(collector: DiagnosticsCollector | None) -> Diagnostics:
    if collector is None:
        return Diagnostics()
    try:
        return collector()
    except Exception as exc:  # noqa: BLE001
        # Best effort: the snapshot stays valid.
        logger.warning("Diagnostics collection failed: %s", exc)
        return Diagnostics(text=f"N/A ({exc})")


def _write_atomic(path: Path, content: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)
