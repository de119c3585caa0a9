"""Scheduled backups of the compose-hosted environment.

Wires :class:`~vault_engine.snapshot.SnapshotBuilder` to the live stack: the
database is dumped through ``docker compose exec``, the data root and
deployment configuration are archived, and a human-readable diagnostics
section (service status, disk usage, database size, row counts) is attached
to the manifest.  The finished snapshot is verified before it is returned.
"""

from __future__ import annotations

import logging
import shutil
import threading
from datetime import UTC, datetime
from pathlib import Path

from vault_engine.compose import ComposeClient
from vault_engine.config import Settings
from vault_engine.database import PostgresClient
from vault_engine.errors import CommandError
from vault_engine.locking import snapshot_lock
from vault_engine.models.snapshot import Snapshot, SnapshotKind, SnapshotSources, snapshot_id_for
from vault_engine.prober import await_ready
from vault_engine.snapshot.builder import Diagnostics, SnapshotBuilder
from vault_engine.snapshot.verifier import verify

logger = logging.getLogger(__name__)


def backup_sources(settings: Settings, database: PostgresClient) -> SnapshotSources:
    return SnapshotSources(
        database_dump_cmd=database.dump_command(),
        data_root=settings.data_root,
        config_root=settings.compose_dir,
        config_files=settings.config_files,
        optional_config_files=settings.optional_config_files,
    )


def _format_bytes(num: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if abs(num) < 1024:
            return f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} PiB"


def _disk_usage(path: Path) -> str:
    try:
        usage = shutil.disk_usage(path)
    except OSError as exc:
        return f"N/A ({exc})"
    return f"total {_format_bytes(usage.total)}, used {_format_bytes(usage.used)}, free {_format_bytes(usage.free)}"


def collect_diagnostics(settings: Settings, compose: ComposeClient, database: PostgresClient) -> Diagnostics:
    """Gather informational state; every probe falls back to ``N/A``."""
    versions = compose.tool_versions()

    try:
        services = compose.ps().rstrip() or "N/A"
    except CommandError as exc:
        logger.warning("Could not read service status: %s", exc)
        services = "N/A"

    try:
        db_size = database.database_size() or "N/A"
    except CommandError as exc:
        logger.warning("Could not read database size: %s", exc)
        db_size = "N/A"

    counts, _ = database.row_counts(settings.count_tables)
    count_lines = [f"  {table}: {'N/A' if value is None else value}" for table, value in counts.items()]

    text = "\n".join(
        [
            f"Environment: {settings.env}",
            f"Docker: {versions.get('docker', 'N/A')}",
            f"Docker Compose: {versions.get('docker_compose', 'N/A')}",
            "",
            "Services:",
            services,
            "",
            f"Disk usage ({settings.backup_root}): {_disk_usage(settings.backup_root)}",
            f"Database size: {db_size}",
            "Row counts:",
            *count_lines,
        ]
    )
    return Diagnostics(text=text, row_counts=counts, tool_versions=versions)


def run_backup(
    settings: Settings,
    builder: SnapshotBuilder,
    compose: ComposeClient,
    database: PostgresClient,
    *,
    cancel_event: threading.Event | None = None,
    now: datetime | None = None,
) -> Snapshot:
    """Build and verify a backup snapshot under ``settings.backup_root``.

    The database must answer ``pg_isready`` first; a database that never
    does raises :class:`~vault_engine.errors.ReadinessTimeoutError` before
    any snapshot directory exists.  The snapshot's lock is held for the
    whole build so a concurrent sweep never removes it half-written.
    """
    await_ready(
        database.is_ready,
        settings.probe_max_attempts,
        settings.probe_interval_seconds,
        cancel_event=cancel_event,
        label="database",
    )

    created_at = now or datetime.now(UTC)
    target = settings.backup_root / snapshot_id_for(created_at)
    with snapshot_lock(target, owner="backup"):
        snapshot = builder.build(
            settings.backup_root,
            backup_sources(settings, database),
            kind=SnapshotKind.BACKUP,
            source_environment=settings.env,
            diagnostics=lambda: collect_diagnostics(settings, compose, database),
            now=created_at,
        )
        return verify(snapshot.path)
