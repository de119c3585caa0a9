"""In-memory stand-ins for the external collaborators.

:class:`FakeStackRunner` implements :class:`~vault_engine.runner.ProcessRunner`
and emulates just enough of ``docker compose``, ``pg_dump``, ``psql``,
``pg_isready`` and ``kubectl`` for the orchestration code to run end to end
without containers.  The emulated database is a mapping of table name to row
count; a dump serialises that mapping and a replay replaces it, so a
backup-then-restore cycle carries row counts across environments.
"""

from __future__ import annotations

import base64
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

from vault_engine.errors import CommandError, CommandTimeoutError
from vault_engine.runner import CommandResult

_ROWS_PREFIX = "-- rows: "
_COUNT_RE = re.compile(r"^SELECT COUNT\(\*\) FROM (\w+);$")


class FakeStackRunner:
    """Scriptable :class:`ProcessRunner` emulating one environment.

    Parameters
    ----------
    tables:
        Initial database contents as ``{table: row_count}``.
    secrets:
        Kubernetes secrets as ``{secret_name: {key: plain_value}}``.
    pods:
        Pod names returned by ``kubectl get pods``.
    deployments:
        Deployment names returned by ``kubectl get deployments``.
    """

    def __init__(
        self,
        tables: Mapping[str, int] | None = None,
        *,
        secrets: Mapping[str, Mapping[str, str]] | None = None,
        pods: Sequence[str] = (),
        deployments: Sequence[str] = (),
    ) -> None:
        self.tables: dict[str, int] = dict(tables or {})
        self.secrets = {name: dict(data) for name, data in (secrets or {}).items()}
        self.pods = list(pods)
        self.deployments = list(deployments)
        self.pod_env: dict[str, dict[str, str]] = {}
        self.calls: list[list[str]] = []
        self.empty_dump = False
        self.db_ready = True
        self._failures: dict[str, int] = {}
        self._timeouts: set[str] = set()

    # -- scripting ------------------------------------------------------------

    def fail(self, fragment: str, returncode: int = 1) -> None:
        """Make every command whose joined argv contains *fragment* exit non-zero."""
        self._failures[fragment] = returncode

    def time_out(self, fragment: str) -> None:
        self._timeouts.add(fragment)

    def clear_failures(self) -> None:
        self._failures.clear()
        self._timeouts.clear()

    def called(self, fragment: str) -> bool:
        return any(fragment in " ".join(call) for call in self.calls)

    # -- ProcessRunner ----------------------------------------------------------

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
        self.calls.append(argv)
        joined = " ".join(argv)

        for fragment in self._timeouts:
            if fragment in joined:
                raise CommandTimeoutError(argv, timeout)
        for fragment, code in self._failures.items():
            if fragment in joined:
                raise CommandError(argv, code, f"simulated failure ({fragment})")

        stdout = self._dispatch(argv, stdin_path)
        if stdout_path is not None:
            stdout_path.write_text(stdout, encoding="utf-8")
            stdout = ""
        return CommandResult(args=tuple(argv), returncode=0, stdout=stdout, stderr="")

    def _dispatch(self, argv: list[str], stdin_path: Path | None) -> str:
        if argv[0] == "kubectl":
            return self._kubectl(argv)
        if argv == ["docker", "--version"]:
            return "Docker version 27.3.1, build ce12230\n"
        if argv == ["docker", "compose", "version"]:
            return "Docker Compose version v2.29.7\n"
        if "pg_dump" in argv:
            return "" if self.empty_dump else self.dump()
        if "pg_isready" in argv:
            if not self.db_ready:
                raise CommandError(argv, 2, "no response")
            return "/var/run/postgresql:5432 - accepting connections\n"
        if "psql" in argv and stdin_path is not None:
            self.replay(stdin_path.read_text(encoding="utf-8"))
            return ""
        if "psql" in argv and "-c" in argv:
            return self._query(argv, argv[argv.index("-c") + 1])
        if "ps" in argv:
            return "NAME       STATUS\nn8n        running\npostgres   running\n"
        return ""

    # -- emulated PostgreSQL ------------------------------------------------------

    def dump(self) -> str:
        lines = ["-- PostgreSQL database dump"]
        for table, rows in sorted(self.tables.items()):
            lines.append(f"DROP TABLE IF EXISTS public.{table};")
            lines.append(f"{_ROWS_PREFIX}{table} {rows}")
        return "\n".join(lines) + "\n"

    def replay(self, sql: str) -> None:
        restored: dict[str, int] = {}
        for line in sql.splitlines():
            if line.startswith(_ROWS_PREFIX):
                table, rows = line[len(_ROWS_PREFIX) :].split()
                restored[table] = int(rows)
        self.tables = restored

    def _query(self, argv: list[str], sql: str) -> str:
        match = _COUNT_RE.match(sql)
        if match:
            table = match.group(1)
            if table not in self.tables:
                raise CommandError(argv, 1, f'relation "{table}" does not exist')
            return f"{self.tables[table]}\n"
        if "pg_size_pretty" in sql:
            return "9876 kB\n"
        return ""

    # -- emulated kubectl -------------------------------------------------------

    def _kubectl(self, argv: list[str]) -> str:
        if "exec" in argv and "pg_dump" in argv:
            return "" if self.empty_dump else self.dump()
        if "exec" in argv and "printenv" in argv:
            pod = argv[argv.index("exec") + 1]
            value = self.pod_env.get(pod, {}).get(argv[-1])
            if value is None:
                raise CommandError(argv, 1, "")
            return value + "\n"
        if "secret" in argv:
            name = argv[argv.index("secret") + 1]
            if name not in self.secrets:
                raise CommandError(argv, 1, f'secrets "{name}" not found')
            key = argv[-1].removeprefix("jsonpath={.data.").removesuffix("}")
            value = self.secrets[name].get(key)
            return base64.b64encode(value.encode("utf-8")).decode("ascii") if value is not None else ""
        if "pods" in argv:
            if "-l" in argv:
                selector = argv[argv.index("-l") + 1].split("=", 1)[-1]
                matching = [p for p in self.pods if p.startswith(selector)]
                if not matching:
                    raise CommandError(argv, 1, "array index out of bounds")
                return matching[0]
            return "".join(f"pod/{p}\n" for p in self.pods)
        if "deployments" in argv:
            return "".join(f"deployment.apps/{d}\n" for d in self.deployments)
        if "-o" in argv and argv[argv.index("-o") + 1] == "yaml":
            return f"apiVersion: apps/v1\nkind: Deployment\nmetadata:\n  name: {argv[argv.index('get') + 1]}\n"
        if "version" in argv:
            return "Client Version: v1.31.0\n"
        return ""
