"""Snapshot retention policy and age-based cleanup.

Defines the retention windows applied to the snapshot root:

- **Complete snapshots**: deleted once older than ``max_age``.
- **Incomplete snapshots** (build marker present or manifest missing): kept
  for at least ``incomplete_min_age`` so a failed build stays available for
  debugging, and otherwise follow ``max_age`` like any other snapshot.

Snapshots whose lock is held by an in-flight restore or export are skipped.
Per-snapshot deletion failures are logged and collected; one stuck directory
never blocks cleanup of the rest.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from vault_engine.config import RESERVED_DIR_NAMES
from vault_engine.errors import ConcurrentOperationError
from vault_engine.locking import snapshot_lock
from vault_engine.models.snapshot import INCOMPLETE_MARKER, MANIFEST_NAME

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """Configurable retention windows for snapshot directories.

    Parameters
    ----------
    max_age:
        Age after which a complete snapshot is deleted.
    incomplete_min_age:
        Minimum age before an incomplete snapshot may be deleted.
    """

    max_age: timedelta = timedelta(days=30)
    incomplete_min_age: timedelta = timedelta(hours=72)

    @classmethod
    def from_days(cls, days: int, incomplete_hours: int = 72) -> RetentionPolicy:
        if days < 0:
            raise ValueError(f"retention days must not be negative, got {days}")
        return cls(max_age=timedelta(days=days), incomplete_min_age=timedelta(hours=incomplete_hours))


@dataclass
class SweepResult:
    """What a sweep did, per snapshot directory."""

    deleted: list[Path] = field(default_factory=list)
    skipped_locked: list[Path] = field(default_factory=list)
    failed: dict[Path, str] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.deleted)


def is_incomplete(snapshot_dir: Path) -> bool:
    return (snapshot_dir / INCOMPLETE_MARKER).exists() or not (snapshot_dir / MANIFEST_NAME).exists()


def is_snapshot_candidate(path: Path) -> bool:
    if path.name.startswith(".") or path.name in RESERVED_DIR_NAMES:
        return False
    return path.is_dir() and not path.is_symlink()


class RetentionSweeper:
    """Deletes snapshot directories that have aged out of the policy."""

    def __init__(self, policy: RetentionPolicy | None = None) -> None:
        self._policy = policy or RetentionPolicy()

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    def eligible(self, snapshot_dir: Path, now: datetime) -> bool:
        """Return true when *snapshot_dir* is past its retention window."""
        modified = datetime.fromtimestamp(snapshot_dir.stat().st_mtime, tz=UTC)
        age = now - modified
        threshold = self._policy.max_age
        if is_incomplete(snapshot_dir):
            threshold = max(threshold, self._policy.incomplete_min_age)
        return age > threshold

    def sweep(self, root_dir: Path, *, now: datetime | None = None) -> SweepResult:
        """Delete every eligible immediate subdirectory of *root_dir*.

        Hidden directories and the safety-dump and report directories are
        never considered.  Calling this repeatedly with nothing eligible is
        a no-op returning an empty result.
        """
        result = SweepResult()
        if not root_dir.is_dir():
            logger.info("Snapshot root %s does not exist; nothing to sweep", root_dir)
            return result

        current = now or datetime.now(UTC)
        cutoff = current - self._policy.max_age
        logger.info("Sweeping %s (cutoff: %s)", root_dir, cutoff.isoformat())

        for candidate in sorted(root_dir.iterdir()):
            if not is_snapshot_candidate(candidate):
                continue
            try:
                if not self.eligible(candidate, current):
                    continue
            except OSError as exc:
                result.failed[candidate] = str(exc)
                logger.warning("Cannot inspect %s: %s", candidate, exc)
                continue

            lock = snapshot_lock(candidate, owner="retention sweep")
            try:
                lock.acquire()
            except ConcurrentOperationError as exc:
                result.skipped_locked.append(candidate)
                logger.info("Skipping %s: %s", candidate, exc)
                continue

            try:
                shutil.rmtree(candidate)
            except OSError as exc:
                result.failed[candidate] = str(exc)
                logger.warning("Failed to delete %s: %s", candidate, exc)
            else:
                result.deleted.append(candidate)
                lock.path.unlink(missing_ok=True)
                logger.info("Deleted expired snapshot %s", candidate.name)
            finally:
                lock.release()

        logger.info(
            "Sweep of %s complete: %d deleted, %d locked, %d failed",
            root_dir,
            result.count,
            len(result.skipped_locked),
            len(result.failed),
        )
        return result
