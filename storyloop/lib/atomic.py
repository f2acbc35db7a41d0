"""Atomic persistence for requirement documents.

Every mutating write goes through commit():

1. copy the current file to a timestamped backup (write-once),
2. write the new content to a temporary sibling and fsync it,
3. os.replace() the temporary file over the target.

Step 3 is the only point at which readers can see new content, so a crash
at any earlier point leaves the original file byte-identical. The writer
never takes locks itself; callers hold the document lock for the duration
of the commit.
"""

import json
import logging
import os
import tempfile
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from storyloop.lib.constants import BACKUP_SUFFIX, TMP_SUFFIX
from storyloop.runner.locking import holds_lock

logger = logging.getLogger(__name__)


class WriteFailure(Exception):
    """Temp write or rename failed. The original document is untouched."""

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"Failed to write {path}: {message}")


@dataclass
class CommitResult:
    success: bool
    backup_path: Path | None = None
    error: WriteFailure | None = None


def backup_path_for(path: Path, when: datetime | None = None) -> Path:
    """Deterministic backup name: <name>.<UTC timestamp>.bak next to the original."""
    when = when or datetime.now(timezone.utc)
    stamp = when.strftime("%Y%m%dT%H%M%S%fZ")
    return path.with_name(f"{path.name}.{stamp}{BACKUP_SUFFIX}")


def _create_backup(path: Path) -> Path:
    data = path.read_bytes()
    backup = backup_path_for(path)
    n = 0
    while True:
        try:
            # Exclusive create: an existing backup is never overwritten
            with open(backup, "xb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            return backup
        except FileExistsError:
            n += 1
            backup = backup.with_name(f"{backup.name[:-len(BACKUP_SUFFIX)]}-{n}{BACKUP_SUFFIX}")


def _write_temp(path: Path, data: bytes) -> Path:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=TMP_SUFFIX)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    return Path(tmp)


def _fsync_dir(directory: Path) -> None:
    # Makes the rename itself durable. Not supported on every platform.
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"[WRITE] directory fsync unsupported for {directory}: {e}")
    finally:
        os.close(fd)


def commit(
    path: Path,
    content: str | bytes,
    owner: str | None = None,
    backup: bool = True,
) -> CommitResult:
    """Atomically replace path with content.

    Args:
        path: Document to write
        content: New full content (str is encoded as UTF-8)
        owner: If given, refuse to write unless this owner holds the document lock
        backup: Copy the current content aside first. Only derived files skip this.

    Returns:
        CommitResult. On failure `error` is a WriteFailure and the original
        file is unchanged; any backup taken is kept for rollback.
    """
    path = Path(path)
    data = content.encode("utf-8") if isinstance(content, str) else content

    if owner is not None and not holds_lock(path, owner):
        error = WriteFailure(path, f"lock is not held by {owner}")
        logger.error(f"[WRITE] {error}")
        return CommitResult(success=False, error=error)

    backup_path = None
    if backup and path.exists():
        try:
            backup_path = _create_backup(path)
        except OSError as e:
            error = WriteFailure(path, f"backup failed: {e}")
            logger.error(f"[WRITE] {error}")
            return CommitResult(success=False, error=error)

    tmp = None
    try:
        tmp = _write_temp(path, data)
        os.replace(tmp, path)
        tmp = None
    except OSError as e:
        error = WriteFailure(path, str(e))
        logger.error(f"[WRITE] {error}" + (f" (backup kept at {backup_path})" if backup_path else ""))
        return CommitResult(success=False, backup_path=backup_path, error=error)
    finally:
        if tmp is not None:
            with suppress(OSError):
                tmp.unlink()

    _fsync_dir(path.parent)
    logger.debug(f"[WRITE] committed {path} ({len(data)} bytes)")
    return CommitResult(success=True, backup_path=backup_path)


def dump_document(data: dict) -> str:
    """Canonical on-disk JSON form of a document."""
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def commit_json(path: Path, data: dict, owner: str | None = None) -> CommitResult:
    """Serialize data and commit it. Serialization errors raise before any write."""
    return commit(path, dump_document(data), owner=owner)


def list_backups(path: Path) -> list[Path]:
    """Backups of path, oldest first."""
    path = Path(path)
    prefix = f"{path.name}."
    return sorted(
        p for p in path.parent.glob(f"*{BACKUP_SUFFIX}")
        if p.name.startswith(prefix) and p.name != path.name
    )


def prune_backups(path: Path, keep: int) -> list[Path]:
    """Delete all but the newest `keep` backups of path. Returns removed paths."""
    if keep < 1:
        raise ValueError("keep must be at least 1")
    backups = list_backups(path)
    removed = backups[:-keep]
    for backup in removed:
        backup.unlink()
        logger.debug(f"[WRITE] pruned backup {backup}")
    return removed


def restore_backup(path: Path, backup: Path, owner: str | None = None) -> CommitResult:
    """Roll path back to a backup's content. The current content is itself backed up first."""
    logger.info(f"[WRITE] restoring {path} from {backup}")
    return commit(path, Path(backup).read_bytes(), owner=owner)
