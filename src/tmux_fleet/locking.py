"""File locking built on fcntl.flock."""
from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def acquire_lock(path: Path, blocking: bool = True) -> int | None:
    """Take an exclusive lock on ``path``.

    Returns the open descriptor, or None when ``blocking`` is False and another
    holder owns the lock. Each call opens its own descriptor, so two threads of
    the same process exclude each other too.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    flags = fcntl.LOCK_EX
    if not blocking:
        flags |= fcntl.LOCK_NB
    try:
        fcntl.flock(fd, flags)
    except BlockingIOError:
        os.close(fd)
        return None
    except OSError:
        os.close(fd)
        raise
    return fd


def release_lock(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@contextmanager
def locked(path: Path, blocking: bool = True) -> Iterator[bool]:
    """Hold the lock for the duration of the block; yields whether it was acquired."""
    fd = acquire_lock(path, blocking=blocking)
    try:
        yield fd is not None
    finally:
        if fd is not None:
            release_lock(fd)
