"""Rich output formatting for the stackvault CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from vault_engine.errors import RestoreFailedError, SecretMismatchError, VerificationError
    from vault_engine.models.restore import RestoreReport
    from vault_engine.models.snapshot import Snapshot
    from vault_engine.report import SnapshotSummary
    from vault_engine.retention import SweepResult


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "complete": "green",
    "incomplete": "yellow",
    "unreadable": "red",
    "VERIFIED": "green",
    "FAILED": "red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def format_size(num_bytes: int | None) -> str:
    """Human-readable binary size (``1.5 MiB``); ``-`` when unknown."""
    if num_bytes is None:
        return "-"
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def _file_table(snapshot: Snapshot) -> Table:
    table = Table(show_lines=False, pad_edge=True, expand=False)
    table.add_column("File", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("SHA-256", style="dim")
    for entry in snapshot.manifest.files:
        table.add_row(entry.path, format_size(entry.size), entry.sha256[:16] + "...")
    return table


def display_backup_result(
    console: Console,
    snapshot: Snapshot,
    instructions: str,
    swept: int | None = None,
) -> None:
    """Render a finished backup with its file table and restore instructions.

    Parameters
    ----------
    console:
        Rich console to write to.
    snapshot:
        The verified snapshot.
    instructions:
        Restore commands for this snapshot.
    swept:
        Number of expired snapshots deleted afterwards; ``None`` if the sweep
        was skipped.
    """
    header = [
        f"[bold]Snapshot:[/bold] {snapshot.snapshot_id}",
        f"[bold]Path:[/bold]     {snapshot.path}",
        f"[bold]Size:[/bold]     {format_size(snapshot.total_size)}",
    ]
    console.print(Panel("\n".join(header), title="Backup Complete", border_style="green"))
    console.print(_file_table(snapshot))

    if snapshot.manifest.row_counts:
        counts = ", ".join(
            f"{table}={'N/A' if n is None else n}" for table, n in snapshot.manifest.row_counts.items()
        )
        console.print(f"[dim]Row counts: {counts}[/dim]")

    if swept is not None:
        console.print(f"Retention sweep deleted [bold]{swept}[/bold] expired snapshot(s).")

    console.print("\n[bold]To restore:[/bold]")
    console.print(escape(instructions))


def display_verification_ok(console: Console, snapshot: Snapshot) -> None:
    console.print(
        f"[green]✓[/green] Snapshot [bold]{snapshot.snapshot_id}[/bold] is valid "
        f"({len(snapshot.manifest.files)} files, {format_size(snapshot.total_size)})"
    )


def display_verification_failure(console: Console, error: VerificationError) -> None:
    """Render every problem a failed verification found, grouped by category."""
    console.print(f"[red bold]Snapshot is INVALID ({error.kind})[/red bold]: {escape(str(error.snapshot_path))}")
    if error.detail:
        console.print(f"  {escape(error.detail)}")

    if not (error.missing or error.empty or error.mismatches):
        return

    table = Table(title="Verification Problems", show_lines=False, pad_edge=True, expand=False)
    table.add_column("File", style="bold")
    table.add_column("Problem")
    table.add_column("Expected", style="dim")
    table.add_column("Actual", style="dim")
    for path in error.missing:
        table.add_row(path, "[red]missing[/red]", "-", "-")
    for path in error.empty:
        table.add_row(path, "[red]empty[/red]", "-", "-")
    for mismatch in error.mismatches:
        table.add_row(mismatch.path, "[red]checksum mismatch[/red]", mismatch.expected, mismatch.actual)
    console.print(table)


def display_snapshot_list(console: Console, summaries: list[SnapshotSummary]) -> None:
    if not summaries:
        console.print("[dim]No snapshots found.[/dim]")
        return

    table = Table(title="Snapshots", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Snapshot", style="bold")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Age (days)", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Key", justify="center")

    for summary in summaries:
        table.add_row(
            summary.snapshot_id,
            summary.kind or "-",
            _coloured_status(summary.status),
            f"{summary.age_days:.1f}",
            format_size(summary.size_bytes),
            "✓" if summary.has_encryption_key else "",
        )

    console.print(table)
    console.print(f"\n[bold]{len(summaries)}[/bold] snapshot(s)")


def display_sweep_result(console: Console, result: SweepResult, days: int) -> None:
    console.print(f"Deleted [bold]{result.count}[/bold] snapshot(s) older than {days} day(s).")
    for path in result.skipped_locked:
        console.print(f"[yellow]Skipped {path.name}: in use by another operation[/yellow]")
    for path, reason in result.failed.items():
        console.print(f"[red]Could not delete {path.name}: {escape(reason)}[/red]")


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


def display_secret_mismatch(console: Console, error: SecretMismatchError) -> None:
    """Show both keys so the operator can reconcile them by hand.

    Only ever called with the local stderr console.
    """
    body = "\n".join(
        [
            "The snapshot was taken under a different N8N_ENCRYPTION_KEY than the",
            "target environment uses.  Restoring it would leave every stored",
            "credential permanently undecryptable.",
            "",
            f"[bold]Snapshot key:[/bold] {escape(error.snapshot_key)}",
            f"[bold]Active key:[/bold]   {escape(error.active_key)}",
            "",
            "Set N8N_ENCRYPTION_KEY in the target .env to the snapshot key,",
            "restart the stack, and run the restore again.",
        ]
    )
    console.print(Panel(body, title="Encryption Key Mismatch", border_style="red"))


def display_restore_report(console: Console, report: RestoreReport, report_path: Path | None) -> None:
    lines = [
        f"[bold]Snapshot:[/bold]    {report.snapshot_id or report.snapshot_path}",
        f"[bold]State:[/bold]       {_coloured_status(report.state.value)}",
        f"[bold]Safety dump:[/bold] {report.safety_dump_path or 'none'}",
    ]
    if report.secret_check_skipped:
        lines.append("[yellow]Encryption key check was skipped.[/yellow]")
    console.print(Panel("\n".join(lines), title="Restore", border_style="green"))

    if report.row_counts:
        table = Table(title="Row Counts", show_lines=False, pad_edge=True, expand=False)
        table.add_column("Table", style="bold")
        table.add_column("Rows", justify="right")
        for name, count in report.row_counts.items():
            table.add_row(name, "N/A" if count is None else str(count))
        console.print(table)

    for warning in report.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")
    if report_path is not None:
        console.print(f"\nReport written to [bold]{report_path}[/bold]")


def display_restore_failure(console: Console, error: RestoreFailedError, report_path: Path | None) -> None:
    console.print(f"[red bold]Restore FAILED during {error.failed_state.value}[/red bold]")
    console.print(f"  {escape(str(error.cause))}")
    if error.data_modified:
        console.print(
            "[red]The target database was already overwritten; the environment needs manual follow-up.[/red]"
        )
        if error.report.safety_dump_path is not None:
            console.print(f"  Pre-restore safety dump: [bold]{error.report.safety_dump_path}[/bold]")
    else:
        console.print("[green]No target data was modified.[/green]")
    for warning in error.report.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")
    if report_path is not None:
        console.print(f"\nReport written to [bold]{report_path}[/bold]")


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def display_export_result(console: Console, snapshot: Snapshot) -> None:
    header = [
        f"[bold]Snapshot:[/bold] {snapshot.snapshot_id}",
        f"[bold]Source:[/bold]   {snapshot.manifest.source_environment}",
        f"[bold]Path:[/bold]     {snapshot.path}",
    ]
    console.print(Panel("\n".join(header), title="Migration Export Complete", border_style="green"))
    console.print(_file_table(snapshot))
    console.print(
        "\n[yellow]encryption_key.txt holds the source N8N_ENCRYPTION_KEY. "
        "Keep the snapshot private and set the same key on the target before restoring.[/yellow]"
    )
    console.print(
        f"Next: [bold]stackvault verify {snapshot.path}[/bold], transfer it, then "
        "[bold]stackvault restore <path>[/bold] on the target."
    )
