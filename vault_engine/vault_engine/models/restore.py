"""Restore run models.

A restore is a strictly forward pipeline.  ``RestoreReport`` accumulates the
states visited, best-effort warnings and post-restore row counts so the CLI
can render an operator report whether the run ends VERIFIED or FAILED.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class RestoreState(str, Enum):
    """Lifecycle state of a restore run."""

    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    APPLICATION_STOPPED = "APPLICATION_STOPPED"
    DATABASE_RESTORING = "DATABASE_RESTORING"
    DATABASE_RESTORED = "DATABASE_RESTORED"
    APPLICATION_STARTING = "APPLICATION_STARTING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


# Forward order of the non-terminal pipeline; FAILED is reachable from any.
RESTORE_SEQUENCE: tuple[RestoreState, ...] = (
    RestoreState.IDLE,
    RestoreState.VALIDATING,
    RestoreState.APPLICATION_STOPPED,
    RestoreState.DATABASE_RESTORING,
    RestoreState.DATABASE_RESTORED,
    RestoreState.APPLICATION_STARTING,
    RestoreState.VERIFIED,
)


class StateTransition(BaseModel):
    """One entry in a restore's state history."""

    state: RestoreState
    entered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RestoreReport(BaseModel):
    """Outcome and diagnostics of a single restore run."""

    snapshot_path: Path
    snapshot_id: str = ""
    state: RestoreState = RestoreState.IDLE
    history: list[StateTransition] = Field(default_factory=list)
    secret_check_skipped: bool = False
    safety_dump_path: Path | None = None
    data_modified: bool = False
    row_counts: dict[str, int | None] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def visited(self) -> list[RestoreState]:
        return [t.state for t in self.history]

    @property
    def failed_from(self) -> RestoreState | None:
        """The last non-terminal state before FAILED, if the run failed."""
        if self.state != RestoreState.FAILED or len(self.history) < 2:
            return None
        return self.history[-2].state
