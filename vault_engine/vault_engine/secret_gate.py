"""Encryption-key consistency gate.

n8n encrypts stored credentials with ``N8N_ENCRYPTION_KEY``.  Restoring a
database produced under a different key leaves every credential record
permanently undecryptable, so the key carried by a migration snapshot must
equal the target environment's active key before anything destructive runs.

Key material never passes through :mod:`logging`.
"""

from __future__ import annotations

import logging

from vault_engine.config import Settings, read_compose_env_key
from vault_engine.errors import MissingEncryptionKeyError, SecretMismatchError
from vault_engine.models.snapshot import Snapshot

logger = logging.getLogger(__name__)


def check_secret_match(snapshot_key: str, active_key: str) -> None:
    """Raise :class:`SecretMismatchError` unless the keys are byte-identical.

    No normalisation is applied: surrounding whitespace or case differences
    are mismatches.
    """
    if snapshot_key != active_key:
        logger.error("Encryption key mismatch: snapshot key differs from target environment key")
        raise SecretMismatchError(snapshot_key=snapshot_key, active_key=active_key)
    logger.info("Encryption key verified: snapshot and target keys match")


def read_snapshot_key(snapshot: Snapshot) -> str:
    """Return the encryption key recorded in *snapshot*, verbatim."""
    key_file = snapshot.encryption_key_file
    if key_file is None:
        raise MissingEncryptionKeyError(
            f"snapshot {snapshot.snapshot_id} carries no encryption key; "
            "pass --skip-secret-check only for a same-environment restore"
        )
    with key_file.open("r", encoding="utf-8", newline="") as fh:
        return fh.read()


def resolve_active_key(settings: Settings) -> str:
    """Return the target environment's active encryption key.

    Resolution order: the ``encryption_key`` setting (``STACKVAULT_ENCRYPTION_KEY``
    or ``N8N_ENCRYPTION_KEY``), then ``N8N_ENCRYPTION_KEY`` in the compose
    project's ``.env`` file.
    """
    if settings.encryption_key is not None:
        return settings.encryption_key.get_secret_value()
    key = read_compose_env_key(settings.compose_env_file)
    if key:
        return key
    raise MissingEncryptionKeyError(
        f"no active encryption key: set N8N_ENCRYPTION_KEY or add it to {settings.compose_env_file}"
    )


def gate_snapshot(snapshot: Snapshot, settings: Settings) -> None:
    """Run the full consistency check for restoring *snapshot* into *settings*' environment."""
    check_secret_match(read_snapshot_key(snapshot), resolve_active_key(settings))
