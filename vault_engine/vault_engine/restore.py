"""Restore executor: a forward-only state machine over one snapshot.

The pipeline runs ``IDLE -> VALIDATING -> APPLICATION_STOPPED ->
DATABASE_RESTORING -> DATABASE_RESTORED -> APPLICATION_STARTING ->
VERIFIED``.  Any failure moves the run to the terminal ``FAILED`` state and
raises :class:`~vault_engine.errors.RestoreFailedError`; there is no
automatic rollback.  A retry is a fresh :meth:`RestoreExecutor.run` call.

Exclusive access to the target database while it is overwritten comes from
stopping the application, its only other writer.  The environment and
snapshot locks only keep two invocations of this tool apart.
"""

from __future__ import annotations

import logging
import tarfile
import tempfile
import threading
from collections.abc import Callable
from contextlib import ExitStack
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn, TypeVar

from vault_engine.compose import ComposeClient
from vault_engine.config import Settings
from vault_engine.database import PostgresClient
from vault_engine.errors import (
    EmptyDumpError,
    OperationCancelled,
    RestoreFailedError,
    VaultError,
)
from vault_engine.locking import environment_lock, snapshot_lock
from vault_engine.models.restore import RestoreReport, RestoreState, StateTransition
from vault_engine.models.snapshot import SNAPSHOT_ID_FORMAT, Snapshot
from vault_engine.prober import await_ready, http_health_check
from vault_engine.secret_gate import gate_snapshot
from vault_engine.snapshot.archive import extract_tarball, gunzip_file, gzip_file
from vault_engine.snapshot.verifier import verify

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# Errors that fail the current state.  Anything else is a bug and propagates.
_STEP_ERRORS = (VaultError, OSError, tarfile.TarError)


class RestoreExecutor:
    """Restore a verified snapshot into the configured environment.

    Parameters
    ----------
    settings:
        Target environment description.
    compose:
        Client for the target compose project.
    database:
        Client for the target database service.
    cancel_event:
        Set by the caller (typically a signal handler) to stop the run
        between states, during a readiness wait, or before the database
        replay and data extraction.
    health_check:
        Application readiness predicate; defaults to an HTTP probe of
        ``settings.health_url``.
    """

    def __init__(
        self,
        settings: Settings,
        compose: ComposeClient,
        database: PostgresClient,
        *,
        cancel_event: threading.Event | None = None,
        health_check: Callable[[], bool] | None = None,
    ) -> None:
        self._settings = settings
        self._compose = compose
        self._database = database
        self._cancel_event = cancel_event
        self._health_check = health_check or http_health_check(settings.health_url, settings.http_timeout)

    def run(self, snapshot_path: Path, *, skip_secret_check: bool = False) -> RestoreReport:
        """Execute the full restore pipeline against *snapshot_path*.

        Raises
        ------
        ConcurrentOperationError
            Another restore holds the environment or snapshot lock.  The
            run never left IDLE.
        RestoreFailedError
            A state failed; ``data_modified`` tells whether the database
            replay had already begun.
        OperationCancelled
            The cancel event was set; ``state`` is the state reached.
        """
        report = RestoreReport(snapshot_path=snapshot_path, secret_check_skipped=skip_secret_check)
        self._enter(report, RestoreState.IDLE)

        owner = f"restore of {snapshot_path.name}"
        with ExitStack() as locks:
            locks.enter_context(environment_lock(self._settings.lock_dir, owner=owner))
            locks.enter_context(snapshot_lock(snapshot_path, owner=owner))
            self._run_pipeline(report, snapshot_path, skip_secret_check)

        return report

    # -- pipeline -----------------------------------------------------------

    def _run_pipeline(self, report: RestoreReport, snapshot_path: Path, skip_secret_check: bool) -> None:
        snapshot = self._step(
            report,
            RestoreState.VALIDATING,
            lambda: self._validate(report, snapshot_path, skip_secret_check),
        )
        self._step(report, RestoreState.APPLICATION_STOPPED, lambda: self._compose.stop(self._settings.app_service))
        self._step(report, RestoreState.DATABASE_RESTORING, lambda: self._restore_database(report, snapshot))
        self._step(report, RestoreState.DATABASE_RESTORED, lambda: self._collect_row_counts(report))
        self._step(report, RestoreState.APPLICATION_STARTING, self._start_application)

        self._enter(report, RestoreState.VERIFIED)
        report.finished_at = datetime.now(UTC)
        logger.info(
            "Restore of %s verified",
            report.snapshot_id or snapshot_path,
            extra={"snapshot": report.snapshot_id},
        )

    def _step(self, report: RestoreReport, state: RestoreState, action: Callable[[], _T]) -> _T:
        self._raise_if_cancelled(report)
        self._enter(report, state)
        try:
            return action()
        except OperationCancelled as exc:
            exc.state = report.state
            report.error = str(exc)
            report.finished_at = datetime.now(UTC)
            raise
        except _STEP_ERRORS as exc:
            if self._cancelled():
                report.error = "cancelled"
                report.finished_at = datetime.now(UTC)
                raise OperationCancelled(f"cancelled during {state.value}", state=state) from exc
            self._fail(report, exc)

    def _validate(self, report: RestoreReport, snapshot_path: Path, skip_secret_check: bool) -> Snapshot:
        snapshot = verify(snapshot_path)
        report.snapshot_id = snapshot.snapshot_id
        if skip_secret_check:
            logger.warning("Encryption key check skipped for %s", snapshot.snapshot_id)
        else:
            gate_snapshot(snapshot, self._settings)
        return snapshot

    def _restore_database(self, report: RestoreReport, snapshot: Snapshot) -> None:
        db = self._database
        self._compose.start(db.service)
        await_ready(
            db.is_ready,
            self._settings.probe_max_attempts,
            self._settings.probe_interval_seconds,
            cancel_event=self._cancel_event,
            label="database",
        )

        report.safety_dump_path = self._safety_dump(report)
        self._raise_if_cancelled(report)

        self._settings.backup_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=".restore-", dir=self._settings.backup_root) as scratch:
            sql_path = Path(scratch) / "database.sql"
            gunzip_file(snapshot.database_dump, sql_path)
            self._raise_if_cancelled(report)
            report.data_modified = True
            logger.info("Replaying database dump from %s", snapshot.snapshot_id)
            db.replay(sql_path)

        if snapshot.data_archive is not None:
            self._raise_if_cancelled(report)
            data_root = self._settings.data_root
            extract_tarball(snapshot.data_archive, data_root.parent, root_name=data_root.name)

    def _safety_dump(self, report: RestoreReport) -> Path | None:
        stamp = datetime.now(UTC).strftime(SNAPSHOT_ID_FORMAT)
        raw = self._settings.safety_dir / f"pre_restore_{stamp}.sql"
        target = raw.with_name(raw.name + ".gz")
        try:
            raw.parent.mkdir(parents=True, exist_ok=True)
            self._database.dump_to(raw)
            if raw.stat().st_size == 0:
                raise EmptyDumpError(raw)
            gzip_file(raw, target)
        except (VaultError, OSError) as exc:
            target.unlink(missing_ok=True)
            if self._cancelled():
                raise OperationCancelled(f"cancelled during {report.state.value}", state=report.state) from exc
            message = f"safety dump failed, continuing without one: {exc}"
            report.warnings.append(message)
            logger.warning("Safety dump failed, continuing without one: %s", exc)
            return None
        finally:
            raw.unlink(missing_ok=True)
        logger.info("Safety dump written to %s", target)
        return target

    def _collect_row_counts(self, report: RestoreReport) -> None:
        counts, warnings = self._database.row_counts(self._settings.count_tables)
        report.row_counts = counts
        report.warnings.extend(warnings)

    def _start_application(self) -> None:
        self._compose.start(self._settings.app_service)
        await_ready(
            self._health_check,
            self._settings.probe_max_attempts,
            self._settings.probe_interval_seconds,
            cancel_event=self._cancel_event,
            label="application",
        )

    # -- bookkeeping --------------------------------------------------------

    @staticmethod
    def _enter(report: RestoreReport, state: RestoreState) -> None:
        report.state = state
        report.history.append(StateTransition(state=state))
        logger.info("Restore state -> %s", state.value)

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _raise_if_cancelled(self, report: RestoreReport) -> None:
        if self._cancelled():
            report.error = "cancelled"
            report.finished_at = datetime.now(UTC)
            raise OperationCancelled(f"cancelled in {report.state.value}", state=report.state)

    def _fail(self, report: RestoreReport, exc: BaseException) -> NoReturn:
        failed_state = report.state
        report.error = str(exc)
        self._enter(report, RestoreState.FAILED)
        report.finished_at = datetime.now(UTC)
        logger.error(
            "Restore failed during %s (data modified: %s): %s",
            failed_state.value,
            report.data_modified,
            exc,
            extra={"snapshot": report.snapshot_id},
        )
        raise RestoreFailedError(failed_state, exc, report, data_modified=report.data_modified) from exc
