"""Snapshot archive helpers (zip containers and snapshot file naming)."""

from __future__ import annotations

import logging
import zipfile
from datetime import datetime
from pathlib import Path, PurePosixPath

from instance_provisioner.engine.errors import SnapshotError

logger = logging.getLogger(__name__)

DATABASE_SUFFIX = ".database.sql"
STORAGE_SUFFIX = ".storage.zip"


def snapshot_tag(instance_id: str, now: datetime | None = None) -> str:
    """``<YYYYMMDDHHMMSS>.<instance-id>``, the stem of every snapshot file."""
    now = now or datetime.now()
    return f"{now:%Y%m%d%H%M%S}.{instance_id}"


def find_member(archive: Path, suffix: str) -> str:
    """Return the single file member of *archive* whose name contains *suffix*."""
    try:
        with zipfile.ZipFile(archive) as zf:
            names = [i.filename for i in zf.infolist() if not i.is_dir() and suffix in i.filename]
    except (OSError, zipfile.BadZipFile) as exc:
        raise SnapshotError(f'Unable to read snapshot "{archive}": {exc}') from exc

    if not names:
        raise SnapshotError(f'Snapshot "{archive}" has no "*{suffix}" member.')
    if len(names) > 1:
        raise SnapshotError(f'Snapshot "{archive}" has more than one "*{suffix}" member: {names}')
    return names[0]


def extract_member(archive: Path, member: str, destination: Path) -> Path:
    """Extract one member into *destination* and return the extracted file path."""
    if PurePosixPath(member).is_absolute() or ".." in PurePosixPath(member).parts:
        raise SnapshotError(f'Refusing to extract unsafe member "{member}".')
    try:
        with zipfile.ZipFile(archive) as zf:
            zf.extract(member, destination)
    except (OSError, KeyError, zipfile.BadZipFile) as exc:
        raise SnapshotError(f'Unable to unzip archive file "{member}" from snapshot.') from exc

    path = destination / member
    if not path.is_file():
        raise SnapshotError(f'Extracted file "{member}" missing or unreadable.')
    return path


def archive_tree(root: Path, target: Path) -> bool:
    """Zip everything under *root* into *target*, keeping relative paths.

    Directories get their own entries so empty ones survive a round trip.
    """
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(root.rglob("*")):
                rel = path.relative_to(root).as_posix()
                if path.is_dir():
                    zf.writestr(zipfile.ZipInfo(rel + "/"), b"")
                else:
                    zf.write(path, rel)
    except OSError as exc:
        logger.error("Unable to archive %s into %s: %s", root, target, exc)
        return False
    logger.debug("Archived %s into %s", root, target)
    return True
