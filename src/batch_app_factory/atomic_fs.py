from __future__ import annotations

import json
import logging
import os
import random
import tempfile
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_SUFFIX = ".lock"
DEFAULT_LOCK_STALE_SEC = 30.0
DEFAULT_LOCK_MAX_WAIT_SEC = 10.0
_BACKOFF_MIN_SEC = 0.08
_BACKOFF_MAX_SEC = 0.2


# ---------------------------------------------------------------------------
# Atomic write / safe read
# ---------------------------------------------------------------------------

def write_atomic(path: Path, data: Any, *, indent: int = 2) -> None:
    """Write *data* to *path* atomically.

    Strings are written verbatim; anything else is serialized as JSON.  The
    content goes to a temporary file in the same directory which is then
    renamed (``os.replace``) into place, so a concurrent reader sees either the
    complete old document or the complete new one.
    """
    content = data if isinstance(data, str) else json.dumps(data, indent=indent, default=str)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_safe(path: Path, fallback: Any = None) -> Any:
    """Read and decode a JSON document; never raises.

    Returns *fallback* (called first if it is callable) when the file is
    missing, unreadable, or does not contain valid JSON.
    """
    try:
        text = path.read_text(encoding="utf-8")
        return json.loads(text)
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        if not isinstance(exc, FileNotFoundError):
            logger.debug("read_safe falling back for %s: %s", path, exc)
        return fallback() if callable(fallback) else fallback


# ---------------------------------------------------------------------------
# Advisory lock (create-if-absent marker with staleness)
# ---------------------------------------------------------------------------

def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + LOCK_SUFFIX)


def _try_create_marker(lock_path: Path, owner: str) -> bool:
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps({"owner": owner, "pid": os.getpid(), "acquiredAt": time.time()}))
            handle.flush()
    except BaseException:
        lock_path.unlink(missing_ok=True)
        raise
    return True


def _reclaim_if_stale(lock_path: Path, stale_sec: float) -> bool:
    """Remove a marker older than *stale_sec*. Returns True if the caller should retry at once."""
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return True
    if age <= stale_sec:
        return False

    # Move the marker aside first so only one waiter wins the reclaim.
    tombstone = lock_path.with_name(f"{lock_path.name}.stale-{uuid.uuid4().hex[:8]}")
    try:
        os.rename(lock_path, tombstone)
    except FileNotFoundError:
        return True
    try:
        moved_age = time.time() - tombstone.stat().st_mtime
    except FileNotFoundError:
        return True
    if moved_age <= stale_sec:
        # The stale marker was replaced between our stat and rename: put the live one back.
        _restore_marker(tombstone, lock_path)
        return False
    tombstone.unlink(missing_ok=True)
    logger.warning("Reclaimed stale lock %s (age %.1fs)", lock_path, age)
    return True


def _restore_marker(tombstone: Path, lock_path: Path) -> None:
    try:
        os.link(tombstone, lock_path)
    except FileExistsError:
        logger.warning("Could not restore live lock %s; another waiter already holds it", lock_path)
    finally:
        tombstone.unlink(missing_ok=True)


def _release_marker(lock_path: Path, owner: str) -> None:
    try:
        meta = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        # Already released or reclaimed.
        return
    if isinstance(meta, dict) and meta.get("owner") == owner:
        lock_path.unlink(missing_ok=True)
    else:
        logger.warning("Lock %s no longer owned by %s; leaving it in place", lock_path, owner)


@contextmanager
def file_lock(
    path: Path,
    *,
    max_wait_sec: float = DEFAULT_LOCK_MAX_WAIT_SEC,
    stale_sec: float = DEFAULT_LOCK_STALE_SEC,
) -> Iterator[str]:
    """Hold an exclusive advisory lock on *path* for the duration of the context.

    The lock is a ``<path>.lock`` sidecar created with ``O_CREAT | O_EXCL``
    and stamped with a random owner id.  Contention is retried with a small
    randomized backoff; a marker older than *stale_sec* is treated as left
    behind by a crashed holder and reclaimed.  The marker is removed on every
    exit path, but only if it still carries our owner id.

    Yields:
        The owner id written into the marker.

    Raises:
        LockTimeoutError: If the lock is not acquired within *max_wait_sec*.
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    owner = uuid.uuid4().hex
    started = time.monotonic()

    while not _try_create_marker(lock_path, owner):
        if _reclaim_if_stale(lock_path, stale_sec):
            continue
        waited = time.monotonic() - started
        if waited > max_wait_sec:
            raise LockTimeoutError(
                f"Lock timeout: could not acquire {lock_path} within {max_wait_sec:g}s",
                lock_path=str(lock_path),
                waited_sec=waited,
            )
        time.sleep(random.uniform(_BACKOFF_MIN_SEC, _BACKOFF_MAX_SEC))

    try:
        yield owner
    finally:
        _release_marker(lock_path, owner)


def with_lock(
    path: Path,
    fn: Callable[[], T],
    *,
    max_wait_sec: float = DEFAULT_LOCK_MAX_WAIT_SEC,
    stale_sec: float = DEFAULT_LOCK_STALE_SEC,
) -> T:
    """Run *fn* while holding the advisory lock on *path* and return its result."""
    with file_lock(path, max_wait_sec=max_wait_sec, stale_sec=stale_sec):
        return fn()
