"""
Lock management for requirement documents.

Each document has an advisory lock side-file next to it (<doc>.lock). The
lock is taken with an exclusive create, so two processes can never both
believe they created it. The file records who holds it and since when;
a lock older than the staleness timeout is presumed abandoned and may be
reclaimed by the next acquirer.

acquire() never blocks. Retry and backoff are the caller's business.

Reclaim is not airtight. Two processes that both judge the same lock stale
can race: the slower one moves the winner's fresh lock aside, and if a
third process locks the path before it is put back, the winner no longer
holds the lock it acquired. The atomic writer checks holds_lock() before
every commit, so such a writer is refused rather than clobbering the
document.
"""

import atexit
import json
import logging
import os
import secrets
import signal
import socket
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from storyloop.lib.constants import LOCK_SUFFIX
from storyloop.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)


class LockContention(Exception):
    """Another owner holds a live lock on the document."""

    def __init__(self, path: Path, holder: "LockInfo | None" = None):
        self.path = path
        self.holder = holder
        who = f" (held by {holder.owner})" if holder else ""
        super().__init__(f"Document is locked: {path}{who}")


@dataclass
class LockInfo:
    """Contents of a lock side-file."""
    owner: str
    pid: int
    host: str
    acquired_at: float
    readable: bool = True  # False if the side-file was empty or corrupt

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.acquired_at

    def is_stale(self, stale_after: float, now: float | None = None) -> bool:
        return self.age(now) > stale_after


def lock_path_for(path: Path) -> Path:
    """Lock side-file for a document path."""
    path = Path(path)
    return path.with_name(path.name + LOCK_SUFFIX)


def default_owner_token() -> str:
    """Owner identity for this process: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{secrets.token_hex(4)}"


def _read_lock(lock_file: Path) -> LockInfo | None:
    """Read a lock side-file. Returns None if it does not exist."""
    try:
        raw = lock_file.read_text()
        mtime = lock_file.stat().st_mtime
    except FileNotFoundError:
        return None

    try:
        data = json.loads(raw)
        validate(data, "lock")
    except (json.JSONDecodeError, ValidationError) as e:
        # Creator may have died between create and write; age it by mtime
        logger.debug(f"[LOCK] unreadable lock file {lock_file}: {e}")
        return LockInfo(owner="", pid=-1, host="", acquired_at=mtime, readable=False)

    return LockInfo(
        owner=data["owner"],
        pid=data["pid"],
        host=data["host"],
        acquired_at=data["acquired_at"],
    )


def get_lock_info(path: Path) -> LockInfo | None:
    """Current lock holder for a document, for diagnostics."""
    return _read_lock(lock_path_for(path))


def _create_lock(lock_file: Path, owner: str) -> bool:
    """Exclusive-create the side-file. False if it already exists."""
    try:
        fd = os.open(lock_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        return False

    payload = {
        "owner": owner,
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "acquired_at": time.time(),
    }
    with os.fdopen(fd, "w") as f:
        f.write(json.dumps(payload))
        f.flush()
        os.fsync(f.fileno())
    return True


def _take_lock_file(lock_file: Path, expected: LockInfo) -> bool:
    """Remove lock_file only if it still holds the lock described by expected.

    The file is first renamed to a private tombstone, so concurrent removers
    cannot both act on the same lock. If the tombstone turns out to hold a
    different lock (someone re-acquired in between), it is put back.
    """
    tombstone = lock_file.with_name(f"{lock_file.name}.{secrets.token_hex(6)}.reclaim")
    try:
        os.rename(lock_file, tombstone)
    except FileNotFoundError:
        return False

    taken = _read_lock(tombstone)
    same = (
        taken is not None
        and taken.owner == expected.owner
        and taken.acquired_at == expected.acquired_at
    )
    if not same:
        try:
            os.link(tombstone, lock_file)
        except FileExistsError:
            # A third process already locked the path; the moved lock's owner lost it
            logger.warning(f"[LOCK] could not restore lock {lock_file} held by {taken.owner if taken else '?'}")
        os.unlink(tombstone)
        return False

    os.unlink(tombstone)
    return True


def acquire(
    path: Path,
    owner: str,
    stale_after: float,
    on_reclaim: Callable[[LockInfo], None] | None = None,
) -> bool:
    """Try to lock a document. Never blocks.

    Args:
        path: Document path (the lock lives next to it)
        owner: Caller's owner token
        stale_after: Seconds after which another owner's lock is reclaimed
        on_reclaim: Called with the old holder's LockInfo when a stale lock is reclaimed

    Returns:
        True if the caller now holds the lock, False if a live lock of
        another owner exists.
    """
    lock_file = lock_path_for(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    if _create_lock(lock_file, owner):
        logger.debug(f"[LOCK] {owner} acquired {path}")
        return True

    holder = _read_lock(lock_file)
    if holder is None:
        # Released between our create and read; one more exclusive attempt
        return _create_lock(lock_file, owner)

    if holder.readable and holder.owner == owner:
        return True

    if not holder.is_stale(stale_after):
        logger.debug(f"[LOCK] {path} held by {holder.owner or '(unreadable)'}")
        return False

    if not _take_lock_file(lock_file, holder):
        return False

    logger.warning(
        f"[LOCK] Reclaimed stale lock on {path} from {holder.owner or '(unreadable)'} "
        f"(age {holder.age():.0f}s > {stale_after:.0f}s)"
    )
    if on_reclaim:
        on_reclaim(holder)

    if not _create_lock(lock_file, owner):
        return False
    # A concurrent reclaimer may have moved our fresh lock aside already
    return holds_lock(path, owner)


def release(path: Path, owner: str) -> bool:
    """Release a document lock. No-op returning False unless owner holds it."""
    lock_file = lock_path_for(path)
    holder = _read_lock(lock_file)
    if holder is None or not holder.readable or holder.owner != owner:
        if holder is not None:
            logger.warning(f"[LOCK] {owner} tried to release {path} held by {holder.owner or '(unreadable)'}")
        return False

    released = _take_lock_file(lock_file, holder)
    if released:
        logger.debug(f"[LOCK] {owner} released {path}")
    return released


def is_locked(path: Path, stale_after: float | None = None) -> bool:
    """True if a lock side-file exists (and, when stale_after is given, is live)."""
    holder = get_lock_info(path)
    if holder is None:
        return False
    if stale_after is None:
        return True
    return not holder.is_stale(stale_after)


def holds_lock(path: Path, owner: str) -> bool:
    """True if owner currently holds the document lock."""
    holder = get_lock_info(path)
    return holder is not None and holder.readable and holder.owner == owner


@contextmanager
def document_lock(path: Path, owner: str, stale_after: float):
    """
    Acquire a document lock, yield, release on exit.

    Raises:
        LockContention: If another owner holds a live lock
    """
    if not acquire(path, owner, stale_after):
        raise LockContention(Path(path), get_lock_info(path))

    def cleanup():
        release(path, owner)

    atexit.register(cleanup)
    # Signal handlers can only be installed from the main thread
    in_main_thread = threading.current_thread() is threading.main_thread()
    if in_main_thread:
        original_sigterm = signal.signal(signal.SIGTERM, lambda *_: sys.exit(1))
        original_sigint = signal.signal(signal.SIGINT, lambda *_: sys.exit(1))

    try:
        yield
    finally:
        atexit.unregister(cleanup)
        if in_main_thread:
            signal.signal(signal.SIGTERM, original_sigterm)
            signal.signal(signal.SIGINT, original_sigint)
        cleanup()