"""Shared fixtures for CLI tests.

Commands build their collaborators through ``cli.app._stack``; the ``stack``
fixture replaces it with clients backed by a
:class:`~vault_engine.testing.FakeStackRunner` so no command ever reaches
docker, kubectl or PostgreSQL.
"""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from rich.console import Console
from vault_engine.compose import ComposeClient
from vault_engine.database import PostgresClient
from vault_engine.testing import FakeStackRunner

CLI_KEY = "Y2xpLXRlc3QtZW5jcnlwdGlvbi1rZXk="


@pytest.fixture(autouse=True)
def _restore_logging():
    """``configure_logging`` replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def _wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep long snapshot paths on one line so output assertions stay simple."""
    monkeypatch.setattr("cli.app.console", Console(stderr=True, width=250))


@pytest.fixture
def cli_key() -> str:
    return CLI_KEY


@pytest.fixture
def host(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Host layout plus the STACKVAULT_* environment pointing at it."""
    compose_dir = tmp_path / "docker"
    compose_dir.mkdir()
    (compose_dir / "docker-compose.yml").write_text("services:\n  n8n: {}\n  postgres: {}\n", encoding="utf-8")
    (compose_dir / ".env").write_text(f"N8N_ENCRYPTION_KEY={CLI_KEY}\n", encoding="utf-8")

    data_root = tmp_path / "data" / "n8n"
    data_root.mkdir(parents=True)
    (data_root / "config").write_text('{"instanceId": "cli"}\n', encoding="utf-8")

    monkeypatch.chdir(tmp_path)
    for var in ("N8N_ENCRYPTION_KEY", "STACKVAULT_ENCRYPTION_KEY", "STACKVAULT_METRICS_FILE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("STACKVAULT_COMPOSE_DIR", str(compose_dir))
    monkeypatch.setenv("STACKVAULT_BACKUP_ROOT", str(tmp_path / "data" / "backups"))
    monkeypatch.setenv("STACKVAULT_DATA_ROOT", str(data_root))
    monkeypatch.setenv("STACKVAULT_PROBE_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("STACKVAULT_PROBE_INTERVAL_SECONDS", "0.01")
    return tmp_path


@pytest.fixture
def backup_root(host: Path) -> Path:
    return host / "data" / "backups"


@pytest.fixture
def fake_env() -> FakeStackRunner:
    return FakeStackRunner({"workflow_entity": 42, "execution_entity": 9, "credentials_entity": 2})


@pytest.fixture
def stack(fake_env: FakeStackRunner):
    """Patch ``cli.app._stack`` to hand out clients over *fake_env*."""

    def _build(settings):
        compose = ComposeClient(fake_env, settings.compose_dir, settings.compose_file)
        database = PostgresClient(
            compose,
            settings.db_service,
            settings.db_user,
            settings.db_name,
            timeout=settings.command_timeout_seconds,
        )
        return fake_env, compose, database

    with patch("cli.app._stack", side_effect=_build):
        yield fake_env


@pytest.fixture
def healthy_app():
    with patch("vault_engine.prober.httpx.get", return_value=MagicMock(is_success=True)) as get:
        yield get
