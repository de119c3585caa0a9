"""Tests for cli/cli/display.py -- Rich output formatting.

Rendered output is captured via a Console writing to a StringIO buffer with
colour disabled, so assertions run against plain text.
"""

from __future__ import annotations

import io
from datetime import UTC, datetime
from pathlib import Path

import pytest
from rich.console import Console
from vault_engine.errors import ChecksumMismatch, RestoreFailedError, SecretMismatchError, VerificationError
from vault_engine.models.restore import RestoreReport, RestoreState
from vault_engine.models.snapshot import Manifest, ManifestEntry, Snapshot
from vault_engine.report import SnapshotSummary
from vault_engine.retention import SweepResult

from cli.display import (
    _STATUS_COLOURS,
    _coloured_status,
    display_backup_result,
    display_restore_failure,
    display_secret_mismatch,
    display_snapshot_list,
    display_sweep_result,
    display_verification_failure,
    format_size,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _capture_console() -> tuple[Console, io.StringIO]:
    buf = io.StringIO()
    console = Console(file=buf, no_color=True, highlight=False, width=160)
    return console, buf


def _snapshot() -> Snapshot:
    manifest = Manifest(
        snapshot_id="20250301_120000",
        files=[
            ManifestEntry(path="database.sql.gz", size=2048, sha256="a" * 64),
            ManifestEntry(path=".env", size=120, sha256="b" * 64),
        ],
        row_counts={"workflow_entity": 42, "execution_entity": None},
    )
    return Snapshot(path=Path("/mnt/data/backups/20250301_120000"), manifest=manifest)


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


class TestFormatting:
    @pytest.mark.parametrize(
        ("size", "expected"),
        [(None, "-"), (0, "0 B"), (512, "512 B"), (2048, "2.0 KiB"), (5 * 1024 * 1024, "5.0 MiB")],
    )
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

    def test_known_status_colours(self):
        for status, colour in _STATUS_COLOURS.items():
            assert _coloured_status(status) == f"[{colour}]{status}[/{colour}]"

    def test_unknown_status_is_white(self):
        assert _coloured_status("weird") == "[white]weird[/white]"


# ---------------------------------------------------------------------------
# Backup / verify / list / sweep
# ---------------------------------------------------------------------------


class TestSnapshotDisplays:
    def test_backup_result(self):
        console, buf = _capture_console()
        display_backup_result(console, _snapshot(), "stackvault restore /x [literal]", swept=2)
        out = buf.getvalue()
        assert "Backup Complete" in out
        assert "database.sql.gz" in out
        assert "workflow_entity=42" in out
        assert "execution_entity=N/A" in out
        assert "deleted 2 expired" in out
        assert "stackvault restore /x [literal]" in out

    def test_backup_result_without_sweep(self):
        console, buf = _capture_console()
        display_backup_result(console, _snapshot(), "stackvault restore /x")
        assert "Retention sweep" not in buf.getvalue()

    def test_verification_failure_lists_every_problem(self):
        error = VerificationError(
            Path("/b/20250301_120000"),
            "missing",
            missing=["n8n_data.tar.gz"],
            empty=["database.sql.gz"],
            mismatches=[ChecksumMismatch(path=".env", expected="e" * 8, actual="f" * 8)],
        )
        console, buf = _capture_console()
        display_verification_failure(console, error)
        out = buf.getvalue()
        assert "INVALID (missing)" in out
        assert "n8n_data.tar.gz" in out
        assert "database.sql.gz" in out
        assert "checksum mismatch" in out
        assert "eeeeeeee" in out

    def test_snapshot_list(self):
        summaries = [
            SnapshotSummary(
                snapshot_id="20250301_120000",
                path=Path("/b/20250301_120000"),
                status="complete",
                kind="migration",
                created_at=datetime(2025, 3, 1, 12, 0, tzinfo=UTC),
                age_days=3.25,
                size_bytes=4096,
                has_encryption_key=True,
            ),
            SnapshotSummary(
                snapshot_id="20250228_000000",
                path=Path("/b/20250228_000000"),
                status="incomplete",
                age_days=4.0,
            ),
        ]
        console, buf = _capture_console()
        display_snapshot_list(console, summaries)
        out = buf.getvalue()
        assert "20250301_120000" in out
        assert "migration" in out
        assert "incomplete" in out
        assert "4.0 KiB" in out
        assert "2 snapshot(s)" in out

    def test_empty_list(self):
        console, buf = _capture_console()
        display_snapshot_list(console, [])
        assert "No snapshots found" in buf.getvalue()

    def test_sweep_result(self):
        result = SweepResult(
            deleted=[Path("/b/20200101_000000")],
            skipped_locked=[Path("/b/20200102_000000")],
            failed={Path("/b/20200103_000000"): "Permission denied"},
        )
        console, buf = _capture_console()
        display_sweep_result(console, result, 30)
        out = buf.getvalue()
        assert "Deleted 1 snapshot(s) older than 30 day(s)" in out
        assert "Skipped 20200102_000000" in out
        assert "Could not delete 20200103_000000: Permission denied" in out


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class TestRestoreDisplays:
    def test_secret_mismatch_shows_both_keys(self):
        console, buf = _capture_console()
        display_secret_mismatch(console, SecretMismatchError("snap-key", "live-key"))
        out = buf.getvalue()
        assert "Encryption Key Mismatch" in out
        assert "snap-key" in out
        assert "live-key" in out

    def test_failure_after_data_modified(self):
        report = RestoreReport(
            snapshot_path=Path("/b/20250301_120000"),
            state=RestoreState.FAILED,
            data_modified=True,
            safety_dump_path=Path("/b/safety/pre_restore_20250302_000000.sql.gz"),
            warnings=["row count for execution_entity unavailable"],
        )
        error = RestoreFailedError(
            RestoreState.APPLICATION_STARTING, RuntimeError("app not ready"), report, data_modified=True
        )
        console, buf = _capture_console()
        display_restore_failure(console, error, Path("/b/reports/restore.txt"))
        out = buf.getvalue()
        assert "FAILED during APPLICATION_STARTING" in out
        assert "already overwritten" in out
        assert "pre_restore_20250302_000000.sql.gz" in out
        assert "Warning: row count for execution_entity unavailable" in out
        assert "/b/reports/restore.txt" in out

    def test_failure_before_data_modified(self):
        report = RestoreReport(snapshot_path=Path("/b/x"), state=RestoreState.FAILED)
        error = RestoreFailedError(RestoreState.VALIDATING, RuntimeError("bad manifest"), report, data_modified=False)
        console, buf = _capture_console()
        display_restore_failure(console, error, None)
        out = buf.getvalue()
        assert "No target data was modified" in out
        assert "Report written" not in out
