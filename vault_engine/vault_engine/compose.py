"""Thin ``docker compose`` client for the application stack.

Wraps the handful of compose sub-commands the orchestrator needs (status,
stop, start, exec) behind a small class so that callers never assemble
argument vectors by hand.  All calls go through the injected
:class:`~vault_engine.runner.ProcessRunner`.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from vault_engine.errors import CommandError
from vault_engine.runner import CommandResult, ProcessRunner

logger = logging.getLogger(__name__)

_STATUS_TIMEOUT = 60.0  # seconds, for ps / version / stop / up


class ComposeClient:
    """Operate on services of a single compose project.

    Parameters
    ----------
    runner:
        Process runner used for every invocation.
    project_dir:
        Directory holding the compose file and its ``.env``.
    compose_file:
        Compose file name, relative to *project_dir*.
    """

    def __init__(self, runner: ProcessRunner, project_dir: Path, compose_file: str = "docker-compose.yml") -> None:
        self._runner = runner
        self._project_dir = project_dir
        self._compose_file = compose_file

    @property
    def project_dir(self) -> Path:
        return self._project_dir

    def _base(self) -> list[str]:
        return [
            "docker",
            "compose",
            "--project-directory",
            str(self._project_dir),
            "-f",
            str(self._project_dir / self._compose_file),
        ]

    def ps(self) -> str:
        """Return the human-readable ``docker compose ps`` table."""
        return self._runner.run([*self._base(), "ps"], timeout=_STATUS_TIMEOUT).stdout

    def running_services(self) -> list[str]:
        """Return names of services currently in the ``running`` state."""
        result = self._runner.run(
            [*self._base(), "ps", "--services", "--filter", "status=running"],
            timeout=_STATUS_TIMEOUT,
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def stop(self, service: str) -> None:
        logger.info("Stopping service %s", service)
        self._runner.run([*self._base(), "stop", service], timeout=_STATUS_TIMEOUT)

    def start(self, service: str) -> None:
        logger.info("Starting service %s", service)
        self._runner.run([*self._base(), "up", "-d", service], timeout=_STATUS_TIMEOUT)

    def exec_args(self, service: str, command: Sequence[str]) -> list[str]:
        """Return the argv that runs *command* inside *service* without a TTY."""
        return [*self._base(), "exec", "-T", service, *command]

    def exec(
        self,
        service: str,
        command: Sequence[str],
        *,
        timeout: float,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        return self._runner.run(
            self.exec_args(service, command),
            timeout=timeout,
            stdin_path=stdin_path,
            stdout_path=stdout_path,
        )

    def tool_versions(self) -> dict[str, str]:
        """Best-effort docker / compose versions for the manifest."""
        versions: dict[str, str] = {}
        for name, args in (
            ("docker", ["docker", "--version"]),
            ("docker_compose", ["docker", "compose", "version"]),
        ):
            try:
                versions[name] = self._runner.run(args, timeout=_STATUS_TIMEOUT).stdout.strip()
            except CommandError as exc:
                logger.warning("Could not determine %s version: %s", name, exc)
                versions[name] = "N/A"
        return versions
