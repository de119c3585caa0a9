"""PostgreSQL operations executed inside the compose database container.

Dump, replay, readiness, and scalar queries are issued through
``docker compose exec -T <db_service>`` so the host never needs a local
PostgreSQL client.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from vault_engine.compose import ComposeClient
from vault_engine.errors import CommandError

logger = logging.getLogger(__name__)

_READY_TIMEOUT = 15.0
_QUERY_TIMEOUT = 60.0

# Table identifiers are interpolated into SQL text; only plain names pass.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def _validate_identifier(name: str) -> None:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")


class PostgresClient:
    """Database-level operations against the stack's PostgreSQL service."""

    def __init__(
        self,
        compose: ComposeClient,
        service: str,
        user: str,
        database: str,
        *,
        timeout: float,
    ) -> None:
        self._compose = compose
        self._service = service
        self._user = user
        self._database = database
        self._timeout = timeout

    @property
    def service(self) -> str:
        return self._service

    def _pg_dump_args(self) -> list[str]:
        return ["pg_dump", "-U", self._user, "--clean", "--if-exists", self._database]

    def dump_command(self) -> list[str]:
        """Argv that writes a plain-SQL dump of the database to stdout.

        ``--clean --if-exists`` makes the dump self-overwriting on replay.
        """
        return self._compose.exec_args(self._service, self._pg_dump_args())

    def dump_to(self, path: Path) -> None:
        """Write a plain-SQL dump to *path*."""
        self._compose.exec(
            self._service,
            self._pg_dump_args(),
            timeout=self._timeout,
            stdout_path=path,
        )

    def replay(self, sql_path: Path) -> None:
        """Feed *sql_path* to ``psql``, aborting on the first SQL error."""
        self._compose.exec(
            self._service,
            ["psql", "-U", self._user, "-d", self._database, "-v", "ON_ERROR_STOP=1", "-q"],
            timeout=self._timeout,
            stdin_path=sql_path,
        )

    def is_ready(self) -> bool:
        """``pg_isready`` check; any command failure counts as not ready."""
        try:
            self._compose.exec(self._service, ["pg_isready", "-U", self._user], timeout=_READY_TIMEOUT)
        except CommandError as exc:
            logger.debug("pg_isready not ready yet: %s", exc)
            return False
        return True

    def scalar(self, sql: str) -> str:
        """Run *sql* and return the single unaligned tuple-only result."""
        result = self._compose.exec(
            self._service,
            ["psql", "-U", self._user, "-d", self._database, "-t", "-A", "-c", sql],
            timeout=_QUERY_TIMEOUT,
        )
        return result.stdout.strip()

    def count_rows(self, table: str) -> int:
        _validate_identifier(table)
        raw = self.scalar(f"SELECT COUNT(*) FROM {table};")
        try:
            return int(raw)
        except ValueError as exc:
            raise CommandError(["psql", "count", table], 0, f"unexpected count output: {raw!r}") from exc

    def row_counts(self, tables: list[str]) -> tuple[dict[str, int | None], list[str]]:
        """Best-effort row counts.

        Returns the counts (``None`` where a query failed) and a list of
        warning messages describing each failure.
        """
        counts: dict[str, int | None] = {}
        warnings: list[str] = []
        for table in tables:
            try:
                counts[table] = self.count_rows(table)
            except (CommandError, ValueError) as exc:
                counts[table] = None
                warnings.append(f"row count for {table} unavailable: {exc}")
                logger.warning("Row count for %s unavailable: %s", table, exc)
        return counts, warnings

    def database_size(self) -> str:
        _validate_identifier(self._database)
        return self.scalar(f"SELECT pg_size_pretty(pg_database_size('{self._database}'));")
