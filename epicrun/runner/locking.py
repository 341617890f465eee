"""
Lock management for epic runs.

Uses flock on <state_dir>/locks/epic-<id>.lock so two executors never run
the same epic at once. Lock files are never deleted: removing them lets two
processes hold "exclusive" locks on different inodes with the same path.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


def lock_path(state_dir: Path, epic_id: str) -> Path:
    return Path(state_dir) / "locks" / f"epic-{epic_id}.lock"


def is_epic_locked(state_dir: Path, epic_id: str) -> bool:
    """Whether another process currently holds the epic lock."""
    lock_file = lock_path(state_dir, epic_id)
    if not lock_file.exists():
        return False
    try:
        fd = open(lock_file, 'r')
    except OSError:
        return False
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.flock(fd, fcntl.LOCK_UN)
        return False
    except BlockingIOError:
        return True
    finally:
        fd.close()


@contextmanager
def _acquire_lock(lock_file: Path, timeout: int, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    start = time.time()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.time() - start >= timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(1)

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        # Process exit releases the flock too; signal cleanup is ShutdownGuard's job
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            fd.close()


@contextmanager
def epic_lock(state_dir: Path, epic_id: str, timeout: int = 10):
    """
    Acquire the per-epic lock, yield, release on exit.

    Raises:
        LockTimeout: if another executor holds the lock for longer than timeout
    """
    with _acquire_lock(lock_path(state_dir, epic_id), timeout, f"lock for epic {epic_id}"):
        yield
