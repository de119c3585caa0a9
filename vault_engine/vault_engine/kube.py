"""``kubectl`` adapter for the Kubernetes-hosted source environment.

Only read operations are issued against the cluster: discovery of the
application deployment and database pod, secret lookup, and a ``pg_dump``
run through ``kubectl exec``.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Sequence

from vault_engine.config import ENCRYPTION_KEY_VAR
from vault_engine.errors import CommandError, ExportError
from vault_engine.runner import ProcessRunner

logger = logging.getLogger(__name__)

_QUERY_TIMEOUT = 60.0


class KubeClient:
    """Namespace-scoped ``kubectl`` operations.

    Parameters
    ----------
    runner:
        Process runner used for every invocation.
    namespace:
        Namespace holding the application and its database.
    context:
        Optional kubeconfig context; the current context when ``None``.
    """

    def __init__(self, runner: ProcessRunner, namespace: str, context: str | None = None) -> None:
        self._runner = runner
        self._namespace = namespace
        self._context = context

    @property
    def namespace(self) -> str:
        return self._namespace

    def _base(self) -> list[str]:
        args = ["kubectl"]
        if self._context:
            args += ["--context", self._context]
        return args

    def _ns(self) -> list[str]:
        return [*self._base(), "-n", self._namespace]

    def _query(self, args: Sequence[str]) -> str:
        return self._runner.run(list(args), timeout=_QUERY_TIMEOUT).stdout

    def check_access(self) -> None:
        """Fail with :class:`ExportError` unless the cluster and namespace are reachable."""
        try:
            self._query([*self._base(), "cluster-info"])
        except CommandError as exc:
            raise ExportError(f"cannot connect to Kubernetes cluster: {exc}") from exc
        try:
            self._query([*self._base(), "get", "namespace", self._namespace])
        except CommandError as exc:
            raise ExportError(f"namespace {self._namespace!r} does not exist") from exc

    def secret_value(self, secret: str, key: str) -> str | None:
        """Return the decoded ``data.<key>`` of *secret*, or ``None``."""
        try:
            raw = self._query([*self._ns(), "get", "secret", secret, "-o", f"jsonpath={{.data.{key}}}"]).strip()
        except CommandError:
            logger.debug("Secret %s not readable in %s", secret, self._namespace)
            return None
        if not raw:
            return None
        try:
            return base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning("Secret %s key %s is not valid base64 text", secret, key)
            return None

    def pod_env(self, pod: str, name: str) -> str | None:
        """Return environment variable *name* as seen inside *pod*."""
        try:
            value = self._query([*self._ns(), "exec", pod, "--", "printenv", name])
        except CommandError:
            return None
        return value.rstrip("\n") or None

    def find_encryption_key(self, secret_names: Sequence[str], app_pod: str | None = None) -> str | None:
        """Locate the active ``N8N_ENCRYPTION_KEY``.

        Tries each secret in *secret_names* in order, then the environment of
        *app_pod*.
        """
        for name in secret_names:
            key = self.secret_value(name, ENCRYPTION_KEY_VAR)
            if key:
                logger.info("Encryption key found in secret %s", name)
                return key
        if app_pod:
            key = self.pod_env(app_pod, ENCRYPTION_KEY_VAR)
            if key:
                logger.info("Encryption key found in environment of pod %s", app_pod)
                return key
        return None

    def find_deployment(self, match: str) -> str | None:
        """First deployment whose resource name contains *match* (``deployment.apps/<name>``)."""
        for line in self._query([*self._ns(), "get", "deployments", "-o", "name"]).splitlines():
            if match in line:
                return line.strip()
        return None

    def deployment_yaml(self, deployment: str) -> str:
        return self._query([*self._ns(), "get", deployment, "-o", "yaml"])

    def find_pod(self, match: str, label_selector: str | None = None) -> str | None:
        """Name of the first pod matching *label_selector*, else whose name contains *match*."""
        if label_selector:
            try:
                name = self._query(
                    [*self._ns(), "get", "pods", "-l", label_selector, "-o", "jsonpath={.items[0].metadata.name}"]
                ).strip()
            except CommandError:
                name = ""
            if name:
                return name
        for line in self._query([*self._ns(), "get", "pods", "-o", "name"]).splitlines():
            if match.lower() in line.lower():
                return line.strip().split("/", 1)[-1]
        return None

    def find_database_credentials(self, pod: str, candidates: Sequence[tuple[str, str]]) -> tuple[str, str] | None:
        """First ``(user, database)`` pair in *candidates* that PostgreSQL in *pod* accepts."""
        for user, database in candidates:
            try:
                self._query([*self._ns(), "exec", pod, "--", "psql", "-U", user, "-d", database, "-tAc", "SELECT 1"])
            except CommandError:
                logger.debug("Database %s not reachable as %s in pod %s", database, user, pod)
                continue
            return user, database
        return None

    def dump_command(self, pod: str, user: str, database: str) -> list[str]:
        """Argv running ``pg_dump`` inside *pod* with the dump on stdout."""
        return [*self._ns(), "exec", pod, "--", "pg_dump", "-U", user, "--clean", "--if-exists", database]

    def version(self) -> str:
        try:
            return self._query([*self._base(), "version", "--client"]).strip() or "N/A"
        except CommandError:
            return "N/A"
