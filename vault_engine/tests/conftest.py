"""Shared fixtures for vault_engine tests.

Every test runs against a throwaway host layout under ``tmp_path`` that
mirrors the production VM: a ``docker/`` compose project with its ``.env``
and a ``data/`` volume holding ``n8n/`` (the data root) and ``backups/``
(the snapshot root).  External commands go to a
:class:`~vault_engine.testing.FakeStackRunner`.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from vault_engine.backup import backup_sources
from vault_engine.compose import ComposeClient
from vault_engine.config import Settings, load_settings
from vault_engine.database import PostgresClient
from vault_engine.models.snapshot import Snapshot, SnapshotKind
from vault_engine.snapshot.builder import SnapshotBuilder
from vault_engine.testing import FakeStackRunner

ACTIVE_KEY = "Zm9vYmFyLWVuY3J5cHRpb24ta2V5"


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("N8N_ENCRYPTION_KEY", "STACKVAULT_ENCRYPTION_KEY", "STACKVAULT_BACKUP_ROOT"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def active_key() -> str:
    return ACTIVE_KEY


@pytest.fixture
def source_tables() -> dict[str, int]:
    return {"workflow_entity": 42, "execution_entity": 1250, "credentials_entity": 7}


@pytest.fixture
def env_root(tmp_path: Path) -> Path:
    compose_dir = tmp_path / "docker"
    (compose_dir / "cloudflared").mkdir(parents=True)
    (compose_dir / "docker-compose.yml").write_text(
        "services:\n  n8n:\n    image: n8nio/n8n\n  postgres:\n    image: postgres:16\n",
        encoding="utf-8",
    )
    (compose_dir / ".env").write_text(
        f"N8N_ENCRYPTION_KEY={ACTIVE_KEY}\nPOSTGRES_USER=n8n\n",
        encoding="utf-8",
    )
    (compose_dir / "cloudflared" / "config.yml").write_text("tunnel: n8n\n", encoding="utf-8")

    data_root = tmp_path / "data" / "n8n"
    (data_root / "nodes").mkdir(parents=True)
    (data_root / "config").write_text('{"instanceId": "abc"}\n', encoding="utf-8")
    (data_root / "nodes" / "custom.js").write_text("module.exports = {};\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def settings(env_root: Path) -> Settings:
    return load_settings(
        _env_file=None,
        compose_dir=env_root / "docker",
        backup_root=env_root / "data" / "backups",
        data_root=env_root / "data" / "n8n",
        probe_max_attempts=3,
        probe_interval_seconds=0.01,
        command_timeout_seconds=60,
    )


@pytest.fixture
def clients() -> Callable[[FakeStackRunner, Settings], tuple[ComposeClient, PostgresClient]]:
    def _build(runner: FakeStackRunner, settings: Settings) -> tuple[ComposeClient, PostgresClient]:
        compose = ComposeClient(runner, settings.compose_dir, settings.compose_file)
        database = PostgresClient(
            compose,
            settings.db_service,
            settings.db_user,
            settings.db_name,
            timeout=settings.command_timeout_seconds,
        )
        return compose, database

    return _build


@pytest.fixture
def build_snapshot(settings: Settings, clients, source_tables):
    """Factory producing complete snapshots under ``settings.backup_root``.

    Each call gets a distinct timestamp so snapshot directories never collide.
    """
    seconds = itertools.count()

    def _build(
        tables: dict[str, int] | None = None,
        *,
        kind: SnapshotKind = SnapshotKind.BACKUP,
        key: str | None = None,
        now: datetime | None = None,
    ) -> Snapshot:
        runner = FakeStackRunner(source_tables if tables is None else tables)
        _, database = clients(runner, settings)
        builder = SnapshotBuilder(runner, command_timeout=60)
        moment = now or datetime(2025, 3, 1, 12, 0, tzinfo=UTC) + timedelta(seconds=next(seconds))
        return builder.build(
            settings.backup_root,
            backup_sources(settings, database),
            kind=kind,
            source_environment="test",
            encryption_key=key,
            now=moment,
        )

    return _build
