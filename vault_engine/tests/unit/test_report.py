"""Unit tests for vault_engine.report."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from vault_engine.models.restore import RestoreReport, RestoreState, StateTransition
from vault_engine.models.snapshot import INCOMPLETE_MARKER, MANIFEST_NAME, SnapshotKind
from vault_engine.report import list_snapshots, render_restore_report, restore_instructions, write_restore_report


def _report(state: RestoreState, **kwargs) -> RestoreReport:
    history = [StateTransition(state=s) for s in (RestoreState.IDLE, RestoreState.VALIDATING, state)]
    return RestoreReport(
        snapshot_path=Path("/mnt/data/backups/20250301_120000"),
        snapshot_id="20250301_120000",
        state=state,
        history=history,
        finished_at=datetime(2025, 3, 2, 8, 0, tzinfo=UTC),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Restore report
# ---------------------------------------------------------------------------


class TestRenderRestoreReport:
    def test_verified_report(self, settings):
        report = _report(
            RestoreState.VERIFIED,
            data_modified=True,
            safety_dump_path=Path("/mnt/data/backups/safety/pre_restore_x.sql.gz"),
            row_counts={"workflow_entity": 42, "execution_entity": None},
        )
        text = render_restore_report(report, settings)
        assert "Final state:     VERIFIED" in text
        assert "workflow_entity: 42" in text
        assert "execution_entity: N/A" in text
        assert "gunzip -c /mnt/data/backups/safety/pre_restore_x.sql.gz" in text

    def test_failed_after_modification_shows_rollback(self, settings):
        report = _report(
            RestoreState.FAILED,
            data_modified=True,
            error="command failed (exit 3): psql",
            safety_dump_path=Path("/mnt/data/backups/safety/pre_restore_x.sql.gz"),
        )
        text = render_restore_report(report, settings)
        assert "Data modified:   yes" in text
        assert "overwritten before the failure" in text
        assert "Error: command failed (exit 3): psql" in text

    def test_failed_without_safety_dump_points_to_snapshots(self, settings):
        report = _report(RestoreState.FAILED, data_modified=True)
        assert "stackvault list" in render_restore_report(report, settings)

    def test_failed_before_modification_has_no_rollback(self, settings):
        report = _report(RestoreState.FAILED, error="encryption key mismatch")
        text = render_restore_report(report, settings)
        assert "Data modified:   no" in text
        assert "overwritten" not in text
        assert "roll the database back" not in text

    def test_warnings_listed(self, settings):
        report = _report(RestoreState.VERIFIED, warnings=["safety dump failed, continuing without one: boom"])
        assert "  - safety dump failed" in render_restore_report(report, settings)

    def test_skipped_key_check_flagged(self, settings):
        report = _report(RestoreState.VERIFIED, secret_check_skipped=True)
        assert "Key check:       SKIPPED" in render_restore_report(report, settings)


class TestWriteRestoreReport:
    def test_default_location(self, settings):
        path = write_restore_report(_report(RestoreState.VERIFIED), settings)
        assert path == settings.report_dir / "restore_20250301_120000_20250302_080000.txt"
        assert path.read_text(encoding="utf-8").startswith("stackvault restore report")

    def test_explicit_path(self, settings, tmp_path):
        target = tmp_path / "nested" / "report.txt"
        assert write_restore_report(_report(RestoreState.FAILED), settings, target) == target
        assert target.exists()

    def test_report_never_contains_key(self, build_snapshot, settings, active_key):
        snapshot = build_snapshot(kind=SnapshotKind.MIGRATION, key=active_key)
        report = _report(RestoreState.VERIFIED).model_copy(update={"snapshot_path": snapshot.path})
        assert active_key not in write_restore_report(report, settings).read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Instructions and listing
# ---------------------------------------------------------------------------


class TestRestoreInstructions:
    def test_mentions_restore_command_and_archive(self, build_snapshot, settings):
        snapshot = build_snapshot()
        text = restore_instructions(snapshot, settings)
        assert f"stackvault restore {snapshot.path}" in text
        assert f"tar -xzf {snapshot.data_archive}" in text


class TestListSnapshots:
    def test_missing_root(self, tmp_path):
        assert list_snapshots(tmp_path / "absent") == []

    def test_newest_first_with_status(self, build_snapshot, settings, active_key):
        first = build_snapshot()
        second = build_snapshot(kind=SnapshotKind.MIGRATION, key=active_key)
        broken = settings.backup_root / "20250301_130000"
        broken.mkdir()
        (broken / INCOMPLETE_MARKER).write_text("", encoding="utf-8")
        unreadable = settings.backup_root / "20250301_140000"
        unreadable.mkdir()
        (unreadable / MANIFEST_NAME).write_text("{", encoding="utf-8")
        (settings.backup_root / "reports").mkdir()

        rows = list_snapshots(settings.backup_root, now=datetime(2025, 3, 11, 12, 0, tzinfo=UTC))

        assert [r.snapshot_id for r in rows] == [
            "20250301_140000",
            "20250301_130000",
            second.snapshot_id,
            first.snapshot_id,
        ]
        by_id = {r.snapshot_id: r for r in rows}
        assert by_id["20250301_140000"].status == "unreadable"
        assert by_id["20250301_130000"].status == "incomplete"
        assert by_id[first.snapshot_id].status == "complete"
        assert by_id[first.snapshot_id].kind == "backup"
        assert by_id[first.snapshot_id].size_bytes == first.total_size
        assert by_id[first.snapshot_id].age_days == pytest.approx(10.0, abs=0.01)
        assert by_id[second.snapshot_id].has_encryption_key is True

    def test_listing_does_not_modify(self, build_snapshot, settings):
        snapshot = build_snapshot()
        before = sorted(p.name for p in snapshot.path.iterdir())
        list_snapshots(settings.backup_root)
        assert sorted(p.name for p in snapshot.path.iterdir()) == before
