"""Export a Kubernetes-hosted environment as a migration snapshot.

The export is the source half of a cross-environment move: it captures the
database through ``kubectl exec ... pg_dump``, the application deployment
manifest, and the active encryption key, and packs them into a verified
``migration`` snapshot that the restore executor can apply to the compose
stack once its key has been reconciled.
"""

from __future__ import annotations

import logging
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from vault_engine.config import Settings
from vault_engine.errors import ExportError
from vault_engine.kube import KubeClient
from vault_engine.locking import snapshot_lock
from vault_engine.models.snapshot import Snapshot, SnapshotKind, SnapshotSources, snapshot_id_for
from vault_engine.snapshot.builder import Diagnostics, SnapshotBuilder
from vault_engine.snapshot.verifier import verify

logger = logging.getLogger(__name__)

DEPLOYMENT_FILE = "k8s/n8n-deployment.yaml"
_APP_MATCH = "n8n"
_APP_LABEL = "app=n8n"
_DB_MATCH = "postgres"
_FALLBACK_DB_CREDENTIALS = [("n8n", "n8n"), ("postgres", "n8n"), ("n8n", "postgres"), ("postgres", "postgres")]


def export_from_kubernetes(
    settings: Settings,
    kube: KubeClient,
    builder: SnapshotBuilder,
    output_root: Path,
    *,
    encryption_key: str | None = None,
    now: datetime | None = None,
) -> Snapshot:
    """Build and verify a migration snapshot of the cluster environment.

    Parameters
    ----------
    encryption_key:
        Key supplied by the operator.  When ``None`` it is looked up in the
        configured secrets and then in the application pod's environment.

    Raises
    ------
    ExportError
        The cluster is unreachable, no key can be found, no database pod
        exists, or the pod accepts none of the candidate credentials (the
        configured pair first, then the usual ``n8n``/``postgres`` pairs).
    """
    kube.check_access()
    logger.info("Exporting from namespace %s", kube.namespace)

    app_pod = kube.find_pod(_APP_MATCH, label_selector=_APP_LABEL)
    key = encryption_key or kube.find_encryption_key(settings.kube_secret_names, app_pod)
    if not key:
        raise ExportError(
            f"no {_APP_MATCH} encryption key found in secrets {', '.join(settings.kube_secret_names)} "
            "or the application pod; pass --encryption-key-file"
        )

    db_pod = kube.find_pod(_DB_MATCH)
    if db_pod is None:
        raise ExportError(f"no PostgreSQL pod found in namespace {kube.namespace}")
    logger.info("Using database pod %s", db_pod)

    candidates = list(dict.fromkeys([(settings.kube_db_user, settings.kube_db_name), *_FALLBACK_DB_CREDENTIALS]))
    credentials = kube.find_database_credentials(db_pod, candidates)
    if credentials is None:
        tried = ", ".join(f"{user}@{database}" for user, database in candidates)
        raise ExportError(f"pod {db_pod} accepted none of the database credentials tried: {tried}")
    db_user, db_name = credentials
    logger.info("Dumping database %s as %s", db_name, db_user)

    deployment = kube.find_deployment(_APP_MATCH)
    if deployment is None:
        logger.warning("No %s deployment found; the snapshot will carry no deployment manifest", _APP_MATCH)

    created_at = now or datetime.now(UTC)
    target = output_root / snapshot_id_for(created_at)

    with tempfile.TemporaryDirectory(prefix="stackvault-k8s-") as staging_dir:
        staging = Path(staging_dir)
        if deployment is not None:
            manifest_path = staging / DEPLOYMENT_FILE
            manifest_path.parent.mkdir(parents=True)
            manifest_path.write_text(kube.deployment_yaml(deployment), encoding="utf-8")

        sources = SnapshotSources(
            database_dump_cmd=kube.dump_command(db_pod, db_user, db_name),
            config_root=staging,
            optional_config_files=[DEPLOYMENT_FILE],
        )

        def _diagnostics() -> Diagnostics:
            text = "\n".join(
                [
                    f"Namespace: {kube.namespace}",
                    f"Deployment: {deployment or 'N/A'}",
                    f"Application pod: {app_pod or 'N/A'}",
                    f"Database pod: {db_pod}",
                    f"Database: {db_name} (user {db_user})",
                ]
            )
            return Diagnostics(text=text, tool_versions={"kubectl": kube.version()})

        with snapshot_lock(target, owner="kubernetes export"):
            snapshot = builder.build(
                output_root,
                sources,
                kind=SnapshotKind.MIGRATION,
                source_environment=f"kubernetes:{kube.namespace}",
                encryption_key=key,
                diagnostics=_diagnostics,
                now=created_at,
            )
            return verify(snapshot.path)
