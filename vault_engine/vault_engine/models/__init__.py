"""Domain models for the vault engine."""

from vault_engine.models.restore import (
    RESTORE_SEQUENCE,
    RestoreReport,
    RestoreState,
    StateTransition,
)
from vault_engine.models.snapshot import (
    Manifest,
    ManifestEntry,
    Snapshot,
    SnapshotKind,
    SnapshotSources,
)

__all__ = [
    "Manifest",
    "ManifestEntry",
    "RESTORE_SEQUENCE",
    "RestoreReport",
    "RestoreState",
    "Snapshot",
    "SnapshotKind",
    "SnapshotSources",
    "StateTransition",
]
