"""stackvault CLI application -- Typer-based operator interface.

Provides commands to back up, verify, restore, list and sweep snapshots of
the n8n compose stack, and to export a Kubernetes-hosted instance for
migration.  Human-readable output goes to *stderr* via Rich; machine-readable
output (``--json``) goes to *stdout* and metrics events to an optional JSONL
file so that scripts and cron jobs can compose cleanly.

Exit codes: ``0`` success, ``1`` operation failed, ``2`` snapshot invalid,
``3`` encryption key mismatch or missing, ``130`` cancelled by the operator.
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
from rich.console import Console
from rich.markup import escape

from cli.display import (
    display_backup_result,
    display_export_result,
    display_restore_failure,
    display_restore_report,
    display_secret_mismatch,
    display_snapshot_list,
    display_sweep_result,
    display_verification_failure,
    display_verification_ok,
)

if TYPE_CHECKING:
    from vault_engine.compose import ComposeClient
    from vault_engine.config import Settings
    from vault_engine.database import PostgresClient
    from vault_engine.models.restore import RestoreReport
    from vault_engine.retention import SweepResult
    from vault_engine.runner import SubprocessRunner

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="stackvault",
    help="stackvault - backup, restore and migration for the n8n compose stack",
    no_args_is_help=True,
)
console = Console(stderr=True)

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_SECRET = 3
EXIT_CANCELLED = 130

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_metrics_file: Path | None = None
_verbose: bool = False


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    metrics_file: Path | None = typer.Option(
        None,
        "--metrics-file",
        help="Write metrics events to this file (JSONL).",
        envvar="STACKVAULT_METRICS_FILE",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log engine progress to stderr.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _metrics_file, _verbose  # noqa: PLW0603
    _json_output = json_mode
    _metrics_file = metrics_file
    _verbose = verbose


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_metrics(event: str, data: dict[str, Any]) -> None:
    """Append a timestamped metrics event to the metrics file, if configured.

    Failures never propagate: metrics emission must not break the command.
    Callers never pass key material.
    """
    if _metrics_file is None:
        return
    record = {
        "event": event,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": data,
    }
    try:
        with _metrics_file.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, sort_keys=True, default=str) + "\n")
    except OSError:
        # Read-only filesystem, disk full, permission denied, etc.
        pass


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _load_settings() -> Settings:
    """Load settings and configure logging; invalid configuration exits 1."""
    from pydantic import ValidationError

    from vault_engine.config import load_settings
    from vault_engine.logging_config import configure_logging

    try:
        settings = load_settings()
    except ValidationError as exc:
        console.print(f"[red]Invalid configuration: {escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_FAILED) from exc

    level = logging.DEBUG if settings.debug else logging.INFO if _verbose else logging.WARNING
    configure_logging(level, structured=settings.structured_logging)
    return settings


def _stack(settings: Settings) -> tuple[SubprocessRunner, ComposeClient, PostgresClient]:
    """Build the process runner and the compose/database clients for *settings*."""
    from vault_engine.compose import ComposeClient
    from vault_engine.database import PostgresClient
    from vault_engine.runner import SubprocessRunner

    runner = SubprocessRunner()
    compose = ComposeClient(runner, settings.compose_dir, settings.compose_file)
    database = PostgresClient(
        compose,
        settings.db_service,
        settings.db_user,
        settings.db_name,
        timeout=settings.command_timeout_seconds,
    )
    return runner, compose, database


@contextmanager
def _cancellation() -> Iterator[threading.Event]:
    """Route SIGINT/SIGTERM into an event for the duration of the block."""
    cancel = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        console.print("\n[yellow]Cancelling; the environment is left as it is now...[/yellow]")
        cancel.set()

    previous = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _sweep(settings: Settings, days: int) -> SweepResult:
    from vault_engine.retention import RetentionPolicy, RetentionSweeper

    policy = RetentionPolicy.from_days(days, settings.incomplete_retention_hours)
    return RetentionSweeper(policy).sweep(settings.backup_root)


def _save_report(report: RestoreReport, settings: Settings) -> Path | None:
    from vault_engine.report import write_restore_report

    try:
        return write_restore_report(report, settings)
    except OSError as exc:
        console.print(f"[yellow]Could not write restore report: {escape(str(exc))}[/yellow]")
        return None


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------


@app.command()
def backup(
    retention_days: int | None = typer.Option(
        None,
        "--retention-days",
        min=0,
        help="Delete snapshots older than this many days after the backup. Defaults to STACKVAULT_RETENTION_DAYS.",
    ),
    no_sweep: bool = typer.Option(
        False,
        "--no-sweep",
        help="Skip the retention sweep after the backup.",
    ),
) -> None:
    """Snapshot the running stack, verify it, then sweep expired snapshots."""
    from vault_engine.backup import run_backup
    from vault_engine.errors import OperationCancelled, VaultError
    from vault_engine.report import restore_instructions
    from vault_engine.snapshot.builder import SnapshotBuilder

    settings = _load_settings()
    runner, compose, database = _stack(settings)
    builder = SnapshotBuilder(runner, settings.command_timeout_seconds)

    _emit_metrics("backup.started", {"backup_root": str(settings.backup_root), "env": settings.env})

    with _cancellation() as cancel:
        try:
            with console.status("Creating snapshot...", spinner="dots"):
                snapshot = run_backup(settings, builder, compose, database, cancel_event=cancel)
        except OperationCancelled as exc:
            console.print("[yellow]Backup cancelled before the database dump started.[/yellow]")
            _emit_metrics("backup.cancelled", {})
            raise typer.Exit(code=EXIT_CANCELLED) from exc
        except (VaultError, OSError) as exc:
            if cancel.is_set():
                console.print("[yellow]Backup cancelled; the partial snapshot is left marked incomplete.[/yellow]")
                _emit_metrics("backup.cancelled", {})
                raise typer.Exit(code=EXIT_CANCELLED) from exc
            console.print(f"[red]Backup failed: {escape(str(exc))}[/red]")
            _emit_metrics("backup.error", {"error": str(exc), "type": type(exc).__name__})
            raise typer.Exit(code=EXIT_FAILED) from exc

    swept: int | None = None
    if not no_sweep:
        days = retention_days if retention_days is not None else settings.retention_days
        swept = _sweep(settings, days).count

    _emit_metrics(
        "backup.completed",
        {
            "snapshot_id": snapshot.snapshot_id,
            "files": len(snapshot.manifest.files),
            "size_bytes": snapshot.total_size,
            "swept": swept,
        },
    )

    if _json_output:
        _write_json(
            {
                "snapshot": str(snapshot.path),
                "manifest": snapshot.manifest.model_dump(mode="json"),
                "swept": swept,
            }
        )
    else:
        display_backup_result(console, snapshot, restore_instructions(snapshot, settings), swept)


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------


@app.command("verify")
def verify_snapshot(
    snapshot_path: Path = typer.Argument(
        ...,
        help="Path to the snapshot directory.",
        resolve_path=True,
    ),
) -> None:
    """Check a snapshot's manifest, file presence, sizes and checksums."""
    from vault_engine.errors import VerificationError
    from vault_engine.snapshot.verifier import verify

    try:
        snapshot = verify(snapshot_path)
    except VerificationError as exc:
        _emit_metrics("verify.failed", {"snapshot": str(snapshot_path), "kind": exc.kind})
        if _json_output:
            _write_json(
                {
                    "valid": False,
                    "snapshot": str(snapshot_path),
                    "kind": exc.kind,
                    "detail": exc.detail,
                    "missing": exc.missing,
                    "empty": exc.empty,
                    "mismatches": [
                        {"path": m.path, "expected": m.expected, "actual": m.actual} for m in exc.mismatches
                    ],
                }
            )
        else:
            display_verification_failure(console, exc)
        raise typer.Exit(code=EXIT_INVALID) from exc

    _emit_metrics("verify.passed", {"snapshot_id": snapshot.snapshot_id, "files": len(snapshot.manifest.files)})
    if _json_output:
        _write_json({"valid": True, "snapshot": str(snapshot.path), "snapshot_id": snapshot.snapshot_id})
    else:
        display_verification_ok(console, snapshot)


# ---------------------------------------------------------------------------
# restore
# ---------------------------------------------------------------------------


@app.command()
def restore(
    snapshot_path: Path = typer.Argument(
        ...,
        help="Path to the snapshot directory to restore.",
        resolve_path=True,
    ),
    skip_secret_check: bool = typer.Option(
        False,
        "--skip-secret-check",
        help="Skip the encryption key comparison (same-environment disaster recovery only).",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation before overwriting the target.",
    ),
) -> None:
    """Restore a snapshot into the configured environment, overwriting its database."""
    from vault_engine.errors import (
        ConcurrentOperationError,
        MissingEncryptionKeyError,
        OperationCancelled,
        RestoreFailedError,
        SecretMismatchError,
    )
    from vault_engine.restore import RestoreExecutor

    settings = _load_settings()

    if not yes:
        confirmed = typer.confirm(
            f"Restore {snapshot_path} into '{settings.env}'? The target database will be overwritten.",
            default=False,
            err=True,
        )
        if not confirmed:
            console.print("[yellow]Restore aborted.[/yellow]")
            raise typer.Exit(code=EXIT_CANCELLED)

    _, compose, database = _stack(settings)
    _emit_metrics(
        "restore.started",
        {"snapshot": str(snapshot_path), "env": settings.env, "skip_secret_check": skip_secret_check},
    )

    with _cancellation() as cancel:
        executor = RestoreExecutor(settings, compose, database, cancel_event=cancel)
        try:
            report = executor.run(snapshot_path, skip_secret_check=skip_secret_check)
        except ConcurrentOperationError as exc:
            console.print(f"[red]Restore refused: {escape(str(exc))}[/red]")
            _emit_metrics("restore.refused", {"snapshot": str(snapshot_path), "lock": str(exc.lock_path)})
            raise typer.Exit(code=EXIT_FAILED) from exc
        except OperationCancelled as exc:
            reached = exc.state.value if exc.state is not None else "unknown"
            console.print(
                f"[yellow]Restore cancelled in state {reached}. Inspect the environment before retrying.[/yellow]"
            )
            _emit_metrics("restore.cancelled", {"snapshot": str(snapshot_path), "state": reached})
            raise typer.Exit(code=EXIT_CANCELLED) from exc
        except RestoreFailedError as exc:
            report_path = _save_report(exc.report, settings)
            _emit_metrics(
                "restore.failed",
                {
                    "snapshot": str(snapshot_path),
                    "state": exc.failed_state.value,
                    "data_modified": exc.data_modified,
                    "error": str(exc.cause),
                },
            )
            if isinstance(exc.cause, (SecretMismatchError, MissingEncryptionKeyError)):
                if _json_output:
                    # The report carries only the redacted error text, never the keys.
                    _write_json({**exc.report.model_dump(mode="json"), "error_type": type(exc.cause).__name__})
                if isinstance(exc.cause, SecretMismatchError):
                    display_secret_mismatch(console, exc.cause)
                else:
                    console.print(f"[red]Encryption key check failed: {escape(str(exc.cause))}[/red]")
                raise typer.Exit(code=EXIT_SECRET) from exc
            if _json_output:
                _write_json(exc.report.model_dump(mode="json"))
            else:
                display_restore_failure(console, exc, report_path)
            raise typer.Exit(code=EXIT_FAILED) from exc

    report_path = _save_report(report, settings)
    _emit_metrics(
        "restore.completed",
        {"snapshot_id": report.snapshot_id, "row_counts": report.row_counts, "warnings": len(report.warnings)},
    )
    if _json_output:
        _write_json(report.model_dump(mode="json"))
    else:
        display_restore_report(console, report, report_path)


# ---------------------------------------------------------------------------
# sweep
# ---------------------------------------------------------------------------


@app.command()
def sweep(
    older_than_days: int | None = typer.Option(
        None,
        "--older-than-days",
        min=0,
        help="Age threshold in days. Defaults to STACKVAULT_RETENTION_DAYS.",
    ),
) -> None:
    """Delete snapshots older than the retention window and print how many went."""
    settings = _load_settings()
    days = older_than_days if older_than_days is not None else settings.retention_days

    result = _sweep(settings, days)

    _emit_metrics(
        "sweep.completed",
        {
            "deleted": result.count,
            "skipped_locked": len(result.skipped_locked),
            "failed": len(result.failed),
            "older_than_days": days,
        },
    )
    if _json_output:
        _write_json(
            {
                "deleted": result.count,
                "deleted_paths": [str(p) for p in result.deleted],
                "skipped_locked": [str(p) for p in result.skipped_locked],
                "failed": {str(p): reason for p, reason in result.failed.items()},
            }
        )
    else:
        display_sweep_result(console, result, days)


# ---------------------------------------------------------------------------
# export
# ---------------------------------------------------------------------------


@app.command("export")
def export_kubernetes(
    namespace: str | None = typer.Option(
        None,
        "--namespace",
        "-n",
        help="Source namespace. Defaults to STACKVAULT_KUBE_NAMESPACE.",
    ),
    output_dir: Path | None = typer.Option(
        None,
        "--output-dir",
        "-o",
        help="Directory to write the migration snapshot into. Defaults to the backup root.",
    ),
    encryption_key_file: Path | None = typer.Option(
        None,
        "--encryption-key-file",
        help="File holding N8N_ENCRYPTION_KEY when it cannot be read from the cluster.",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    context: str | None = typer.Option(
        None,
        "--context",
        help="kubeconfig context to use.",
    ),
) -> None:
    """Export a Kubernetes-hosted n8n as a verified migration snapshot."""
    from vault_engine.errors import VaultError
    from vault_engine.kube import KubeClient
    from vault_engine.migration import export_from_kubernetes
    from vault_engine.runner import SubprocessRunner
    from vault_engine.snapshot.builder import SnapshotBuilder

    settings = _load_settings()
    ns = namespace or settings.kube_namespace
    output_root = output_dir or settings.backup_root

    key: str | None = None
    if encryption_key_file is not None:
        # A trailing newline from an editor or ``echo`` is not part of the key.
        key = encryption_key_file.read_text(encoding="utf-8").rstrip("\r\n")

    runner = SubprocessRunner()
    kube = KubeClient(runner, ns, context)
    builder = SnapshotBuilder(runner, settings.command_timeout_seconds)

    _emit_metrics("export.started", {"namespace": ns, "output_dir": str(output_root)})
    try:
        with console.status(f"Exporting namespace {ns}...", spinner="dots"):
            snapshot = export_from_kubernetes(settings, kube, builder, output_root, encryption_key=key)
    except (VaultError, OSError) as exc:
        console.print(f"[red]Export failed: {escape(str(exc))}[/red]")
        _emit_metrics("export.error", {"namespace": ns, "error": str(exc)})
        raise typer.Exit(code=EXIT_FAILED) from exc

    _emit_metrics("export.completed", {"snapshot_id": snapshot.snapshot_id, "namespace": ns})
    if _json_output:
        _write_json({"snapshot": str(snapshot.path), "manifest": snapshot.manifest.model_dump(mode="json")})
    else:
        display_export_result(console, snapshot)


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


@app.command("list")
def list_command() -> None:
    """List snapshots under the backup root, newest first."""
    from vault_engine.report import list_snapshots

    settings = _load_settings()
    summaries = list_snapshots(settings.backup_root)

    if _json_output:
        _write_json([s.model_dump(mode="json") for s in summaries])
    else:
        display_snapshot_list(console, summaries)
