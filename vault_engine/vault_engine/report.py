"""Operator-facing reports and snapshot listings.

Reports are plain text meant to be read on the host after a run, and never
contain key material.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError

from vault_engine.config import Settings
from vault_engine.models.restore import RestoreReport, RestoreState
from vault_engine.models.snapshot import INCOMPLETE_MARKER, MANIFEST_NAME, Manifest, Snapshot
from vault_engine.retention import is_snapshot_candidate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Restore report
# ---------------------------------------------------------------------------


def _rollback_hint(report: RestoreReport, settings: Settings) -> list[str]:
    if report.safety_dump_path is None:
        return ["No safety dump was taken; roll back from an earlier snapshot:", "  stackvault list"]
    return [
        "To roll the database back to its pre-restore state:",
        f"  cd {settings.compose_dir}",
        f"  docker compose stop {settings.app_service}",
        f"  gunzip -c {report.safety_dump_path} | "
        f"docker compose exec -T {settings.db_service} psql -U {settings.db_user} -d {settings.db_name}",
        f"  docker compose up -d {settings.app_service}",
    ]


def render_restore_report(report: RestoreReport, settings: Settings) -> str:
    lines = [
        "stackvault restore report",
        "=" * 40,
        f"Snapshot:        {report.snapshot_path}",
        f"Snapshot ID:     {report.snapshot_id or 'N/A'}",
        f"Environment:     {settings.env}",
        f"Started:         {report.started_at.isoformat()}",
        f"Finished:        {report.finished_at.isoformat() if report.finished_at else 'N/A'}",
        f"Final state:     {report.state.value}",
        f"Key check:       {'SKIPPED' if report.secret_check_skipped else 'enforced'}",
        f"Data modified:   {'yes' if report.data_modified else 'no'}",
        f"Safety dump:     {report.safety_dump_path or 'none'}",
        "",
        "States:",
    ]
    lines += [f"  {t.entered_at.isoformat()}  {t.state.value}" for t in report.history]

    lines += ["", "Row counts:"]
    if report.row_counts:
        lines += [f"  {table}: {'N/A' if n is None else n}" for table, n in report.row_counts.items()]
    else:
        lines.append("  (not collected)")

    if report.warnings:
        lines += ["", "Warnings:"]
        lines += [f"  - {w}" for w in report.warnings]

    if report.error:
        lines += ["", f"Error: {report.error}"]

    if report.state == RestoreState.FAILED and report.data_modified:
        lines += [
            "",
            "The target database was overwritten before the failure.",
            *_rollback_hint(report, settings),
        ]
    elif report.state == RestoreState.VERIFIED:
        lines += ["", *_rollback_hint(report, settings)]

    return "\n".join(lines) + "\n"


def write_restore_report(report: RestoreReport, settings: Settings, path: Path | None = None) -> Path:
    """Write the rendered report; defaults to ``<backup_root>/reports/``."""
    if path is None:
        stamp = (report.finished_at or datetime.now(UTC)).strftime("%Y%m%d_%H%M%S")
        name = report.snapshot_id or report.snapshot_path.name
        path = settings.report_dir / f"restore_{name}_{stamp}.txt"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_restore_report(report, settings), encoding="utf-8")
    logger.info("Restore report written to %s", path)
    return path


# ---------------------------------------------------------------------------
# Backup instructions
# ---------------------------------------------------------------------------


def restore_instructions(snapshot: Snapshot, settings: Settings) -> str:
    """Commands an operator can run to restore *snapshot* into this host."""
    lines = [
        f"stackvault restore {snapshot.path}",
        "",
        "Manual equivalent:",
        f"  cd {settings.compose_dir} && docker compose stop {settings.app_service}",
        f"  gunzip -c {snapshot.database_dump} | "
        f"docker compose exec -T {settings.db_service} psql -U {settings.db_user} -d {settings.db_name}",
    ]
    if snapshot.data_archive is not None:
        lines.append(f"  tar -xzf {snapshot.data_archive} -C {settings.data_root.parent}")
    lines.append(f"  docker compose up -d {settings.app_service}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class SnapshotSummary(BaseModel):
    """One row of ``stackvault list``."""

    snapshot_id: str
    path: Path
    status: str  # complete | incomplete | unreadable
    kind: str | None = None
    created_at: datetime | None = None
    age_days: float
    size_bytes: int | None = None
    has_encryption_key: bool = False


def _summarise(snapshot_dir: Path, now: datetime) -> SnapshotSummary:
    modified = datetime.fromtimestamp(snapshot_dir.stat().st_mtime, tz=UTC)
    summary = SnapshotSummary(
        snapshot_id=snapshot_dir.name,
        path=snapshot_dir,
        status="incomplete",
        age_days=round((now - modified).total_seconds() / 86400, 2),
    )
    manifest_path = snapshot_dir / MANIFEST_NAME
    if (snapshot_dir / INCOMPLETE_MARKER).exists() or not manifest_path.is_file():
        return summary

    try:
        manifest = Manifest.model_validate(json.loads(manifest_path.read_text(encoding="utf-8")))
    except (OSError, ValueError, ValidationError) as exc:
        logger.debug("Unreadable manifest in %s: %s", snapshot_dir, exc)
        return summary.model_copy(update={"status": "unreadable"})

    return summary.model_copy(
        update={
            "status": "complete",
            "snapshot_id": manifest.snapshot_id,
            "kind": manifest.kind.value,
            "created_at": manifest.created_at,
            "age_days": round((now - manifest.created_at).total_seconds() / 86400, 2),
            "size_bytes": sum(e.size for e in manifest.files),
            "has_encryption_key": manifest.has_encryption_key,
        }
    )


def list_snapshots(root: Path, *, now: datetime | None = None) -> list[SnapshotSummary]:
    """Summarise every snapshot directory under *root*, newest first.

    Only the manifest is read; checksums are not recomputed.
    """
    if not root.is_dir():
        return []
    current = now or datetime.now(UTC)
    summaries = [_summarise(d, current) for d in root.iterdir() if is_snapshot_candidate(d)]
    return sorted(summaries, key=lambda s: s.path.name, reverse=True)
