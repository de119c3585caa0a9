"""gzip and tar helpers shared by snapshot construction and restore."""

from __future__ import annotations

import gzip
import logging
import shutil
import tarfile
from pathlib import Path

logger = logging.getLogger(__name__)


def gzip_file(src: Path, dst: Path) -> None:
    """Compress *src* into *dst*; both streams are closed on return."""
    with src.open("rb") as fin, gzip.open(dst, "wb") as fout:
        shutil.copyfileobj(fin, fout)


def gunzip_file(src: Path, dst: Path) -> None:
    with gzip.open(src, "rb") as fin, dst.open("wb") as fout:
        shutil.copyfileobj(fin, fout)


def create_tarball(source_dir: Path, archive: Path) -> None:
    """Write a gzip tarball of *source_dir* with members rooted at its basename."""
    with tarfile.open(archive, "w:gz") as tf:
        tf.add(source_dir, arcname=source_dir.name)


def _reroot(name: str, root_name: str) -> str:
    _, sep, rest = name.partition("/")
    return f"{root_name}/{rest}" if sep and rest else root_name


def extract_tarball(archive: Path, dest: Path, *, root_name: str | None = None) -> int:
    """Extract *archive* over *dest* and return the number of members.

    Extraction is additive: files already under *dest* that the archive does
    not contain are left in place.  The ``data`` filter rejects absolute
    paths, parent traversal and links pointing outside *dest*.

    When *root_name* is given, the top-level directory of every member is
    renamed to it, so an archive of ``n8n/`` lands in ``dest/<root_name>/``.
    """

    def _filter(member: tarfile.TarInfo, path: str) -> tarfile.TarInfo | None:
        member = tarfile.data_filter(member, path)
        if root_name is None or member is None:
            return member
        changes = {"name": _reroot(member.name, root_name)}
        if member.islnk():
            changes["linkname"] = _reroot(member.linkname, root_name)
        return member.replace(**changes, deep=False)

    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:gz") as tf:
        members = tf.getmembers()
        tf.extractall(dest, members=members, filter=_filter)
    logger.info("Extracted %d archive members into %s", len(members), dest)
    return len(members)
