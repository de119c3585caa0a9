"""Process runner abstraction for external command-line collaborators.

Every interaction with ``docker``, ``kubectl`` and the database CLIs goes
through a :class:`ProcessRunner` so that orchestration logic can be tested
with a fake runner returning canned output, and so that every invocation is
bounded by an explicit timeout.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from vault_engine.errors import CommandError, CommandTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a completed external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""


class ProcessRunner(Protocol):
    """Structural interface for running external commands.

    Implementations raise :class:`CommandError` on non-zero exit and
    :class:`CommandTimeoutError` when *timeout* elapses; they never return a
    failed result.
    """

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        cwd: Path | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run *args* to completion.

        Parameters
        ----------
        args:
            Argument vector; never interpreted by a shell.
        timeout:
            Seconds before the process is killed.
        cwd:
            Working directory for the process.
        stdin_path:
            When given, the file is streamed to the process's stdin.
        stdout_path:
            When given, stdout is streamed into this file instead of being
            captured; ``CommandResult.stdout`` is then empty.
        env:
            Full environment override for the child process.
        """
        ...


class SubprocessRunner:
    """:class:`ProcessRunner` backed by :func:`subprocess.run`."""

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        cwd: Path | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        logger.debug("Running: %s", " ".join(argv))

        stdin_fh = stdin_path.open("rb") if stdin_path is not None else subprocess.DEVNULL
        stdout_fh = stdout_path.open("wb") if stdout_path is not None else subprocess.PIPE
        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                stdin=stdin_fh,
                stdout=stdout_fh,
                stderr=subprocess.PIPE,
                timeout=timeout,
                env=dict(env) if env is not None else None,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(argv, timeout) from exc
        except FileNotFoundError as exc:
            raise CommandError(argv, None, f"executable not found: {argv[0]}") from exc
        finally:
            # Close our handles before anyone checksums the output file.
            if stdin_path is not None:
                stdin_fh.close()  # type: ignore[union-attr]
            if stdout_path is not None:
                stdout_fh.close()  # type: ignore[union-attr]

        stdout = "" if stdout_path is not None else _decode(proc.stdout)
        stderr = _decode(proc.stderr)
        if proc.returncode != 0:
            raise CommandError(argv, proc.returncode, stderr)
        return CommandResult(args=tuple(argv), returncode=proc.returncode, stdout=stdout, stderr=stderr)


def _decode(raw: bytes | None) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace")
