"""Read-only integrity verification of snapshot directories.

A snapshot is trusted for restore or transfer only after :func:`verify`
accepts it.  Every problem found in one pass is reported together on the
raised :class:`~vault_engine.errors.VerificationError`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path, PurePosixPath

from pydantic import ValidationError

from vault_engine.errors import ChecksumMismatch, VerificationError
from vault_engine.models.snapshot import INCOMPLETE_MARKER, MANIFEST_NAME, Manifest, Snapshot
from vault_engine.snapshot.checksum import sha256_file

logger = logging.getLogger(__name__)


def load_manifest(snapshot_path: Path) -> Manifest:
    """Parse ``manifest.json``; any problem is a ``manifest`` verification failure."""
    manifest_path = snapshot_path / MANIFEST_NAME
    if not manifest_path.is_file():
        raise VerificationError(snapshot_path, "manifest", detail=f"{MANIFEST_NAME} not found")
    try:
        payload = json.loads(manifest_path.read_text(encoding="utf-8"))
        return Manifest.model_validate(payload)
    except (OSError, ValueError, ValidationError) as exc:
        raise VerificationError(snapshot_path, "manifest", detail=f"unreadable {MANIFEST_NAME}: {exc}") from exc


def _is_contained(rel: str) -> bool:
    candidate = PurePosixPath(rel)
    return bool(candidate.parts) and not candidate.is_absolute() and ".." not in candidate.parts


def verify(snapshot_path: Path) -> Snapshot:
    """Validate *snapshot_path* and return the parsed snapshot.

    Checks, in order: no ``.incomplete`` marker remains; the manifest parses
    and only names paths inside the snapshot; every declared file exists;
    none is empty; every SHA-256 matches.

    Raises
    ------
    VerificationError
        With ``kind`` set to the first failing category and the ``missing``,
        ``empty`` and ``mismatches`` lists populated.
    """
    if not snapshot_path.is_dir():
        raise VerificationError(snapshot_path, "manifest", detail="snapshot directory not found")

    if (snapshot_path / INCOMPLETE_MARKER).exists():
        raise VerificationError(snapshot_path, "incomplete", detail="snapshot build did not finish")

    manifest = load_manifest(snapshot_path)

    escaping = [e.path for e in manifest.files if not _is_contained(e.path)]
    if escaping:
        raise VerificationError(
            snapshot_path,
            "manifest",
            detail=f"manifest references paths outside the snapshot: {', '.join(escaping)}",
        )
    if not manifest.files:
        raise VerificationError(snapshot_path, "manifest", detail="manifest lists no files")

    missing: list[str] = []
    empty: list[str] = []
    mismatches: list[ChecksumMismatch] = []

    for entry in manifest.files:
        path = snapshot_path / entry.path
        if not path.is_file():
            missing.append(entry.path)
            continue
        if path.stat().st_size == 0:
            empty.append(entry.path)
            continue
        actual = sha256_file(path)
        if actual != entry.sha256:
            mismatches.append(ChecksumMismatch(path=entry.path, expected=entry.sha256, actual=actual))

    if missing or empty or mismatches:
        kind = "missing" if missing else "empty" if empty else "checksum"
        raise VerificationError(
            snapshot_path,
            kind,
            missing=missing,
            empty=empty,
            mismatches=mismatches,
        )

    logger.info("Snapshot %s verified (%d files)", manifest.snapshot_id, len(manifest.files))
    return Snapshot(path=snapshot_path, manifest=manifest)
