"""Exception taxonomy for backup, verification, and restore operations.

Every component raises one of these typed errors instead of returning
sentinel values, so the CLI can map each failure to a distinct exit code
and an operator-facing message that names the specific sub-reason.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vault_engine.models.restore import RestoreReport, RestoreState


class VaultError(Exception):
    """Base class for every failure raised by the vault engine."""


# ---------------------------------------------------------------------------
# External commands
# ---------------------------------------------------------------------------


class CommandError(VaultError):
    """An external command exited non-zero or could not be started."""

    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str = "") -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"command failed (exit {returncode}): {' '.join(self.args_list)}{detail}")


class CommandTimeoutError(CommandError):
    """An external command exceeded its timeout and was killed."""

    def __init__(self, args: Sequence[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(args, None, f"timed out after {timeout:g}s")


# ---------------------------------------------------------------------------
# Snapshot construction / verification
# ---------------------------------------------------------------------------


class EmptyArtifactError(VaultError):
    """A produced snapshot file is zero-length and must never be shipped."""

    def __init__(self, path: Path, message: str | None = None) -> None:
        self.path = path
        super().__init__(message or f"artifact is empty: {path}")


class EmptyDumpError(EmptyArtifactError):
    """The database dump command succeeded but wrote nothing."""

    def __init__(self, path: Path) -> None:
        super().__init__(
            path,
            f"database dump is empty: {path} (is the database reachable?)",
        )


class SnapshotBuildError(VaultError):
    """A snapshot source (data root, required config file) is unavailable."""


class SnapshotExistsError(VaultError):
    """A snapshot directory with the same timestamp already exists."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"snapshot directory already exists: {path}")


@dataclass(frozen=True)
class ChecksumMismatch:
    """A single file whose on-disk digest differs from the manifest."""

    path: str
    expected: str
    actual: str


class VerificationError(VaultError):
    """A snapshot failed integrity verification.

    ``kind`` names the first failing category (``incomplete``, ``manifest``,
    ``missing``, ``empty``, ``checksum``); the list attributes carry every
    problem found so operators can triage without re-running checks.
    """

    def __init__(
        self,
        snapshot_path: Path,
        kind: str,
        *,
        detail: str = "",
        missing: Sequence[str] = (),
        empty: Sequence[str] = (),
        mismatches: Sequence[ChecksumMismatch] = (),
    ) -> None:
        self.snapshot_path = snapshot_path
        self.kind = kind
        self.detail = detail
        self.missing = list(missing)
        self.empty = list(empty)
        self.mismatches = list(mismatches)
        super().__init__(self._describe())

    def _describe(self) -> str:
        parts: list[str] = []
        if self.detail:
            parts.append(self.detail)
        if self.missing:
            parts.append(f"missing: {', '.join(self.missing)}")
        if self.empty:
            parts.append(f"empty: {', '.join(self.empty)}")
        if self.mismatches:
            parts.append(f"checksum mismatch: {', '.join(m.path for m in self.mismatches)}")
        return f"snapshot {self.snapshot_path} failed verification ({self.kind}): " + "; ".join(parts)


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class SecretMismatchError(VaultError):
    """The snapshot's encryption key differs from the target environment's.

    Both values are kept as attributes so the CLI can show them on the local
    console.  ``str()`` is redacted: loggers and metrics sinks
    only ever see this message, never the key material.
    """

    def __init__(self, snapshot_key: str, active_key: str) -> None:
        self.snapshot_key = snapshot_key
        self.active_key = active_key
        super().__init__("encryption key mismatch between snapshot and target environment")


class MissingEncryptionKeyError(VaultError):
    """An encryption key needed for the consistency check is not available."""


# ---------------------------------------------------------------------------
# Waiting / locking / cancellation
# ---------------------------------------------------------------------------


class ReadinessTimeoutError(VaultError):
    """A readiness check never succeeded within its bounded attempts."""

    def __init__(self, label: str, attempts: int) -> None:
        self.label = label
        self.attempts = attempts
        super().__init__(f"{label} not ready after {attempts} attempts")


class ConcurrentOperationError(VaultError):
    """An advisory lock is already held by another invocation."""

    def __init__(self, lock_path: Path, holder: str = "") -> None:
        self.lock_path = lock_path
        self.holder = holder
        suffix = f" (held by {holder})" if holder else ""
        super().__init__(f"another operation holds {lock_path}{suffix}")


class OperationCancelled(Exception):
    """The operator interrupted a running operation.

    Not a :class:`VaultError`: cancellation is a decision, not a failure.
    ``state`` records how far a restore got so the operator can inspect the
    environment before deciding what to do next.
    """

    def __init__(self, message: str = "operation cancelled", state: RestoreState | None = None) -> None:
        self.state = state
        super().__init__(message)


# ---------------------------------------------------------------------------
# Restore / export
# ---------------------------------------------------------------------------


class RestoreFailedError(VaultError):
    """A restore reached the terminal FAILED state."""

    def __init__(
        self,
        failed_state: RestoreState,
        cause: BaseException,
        report: RestoreReport,
        *,
        data_modified: bool,
    ) -> None:
        self.failed_state = failed_state
        self.cause = cause
        self.report = report
        self.data_modified = data_modified
        touched = "target data WAS modified" if data_modified else "target data untouched"
        super().__init__(f"restore failed during {failed_state.value} ({touched}): {cause}")


class ExportError(VaultError):
    """The Kubernetes source environment could not be exported."""
