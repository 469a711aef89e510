"""Exclusive advisory locks on directories."""

from __future__ import annotations

import errno
import fcntl
import logging
import os
from contextlib import contextmanager
from typing import IO, Iterator, Union

logger = logging.getLogger(__name__)


def flock(fd: Union[int, IO], flags: int) -> None:
    """Apply ``fcntl.flock`` with ``flags`` to ``fd``, retrying when interrupted."""
    while True:
        try:
            fcntl.flock(fd, flags)
            return
        except InterruptedError:
            continue
        except OSError as exc:
            if exc.errno == errno.EINTR:
                continue
            raise


@contextmanager
def dir_lock(path: Union[str, os.PathLike]) -> Iterator[None]:
    """Hold an exclusive lock on directory ``path`` for the duration of the block."""
    fd = os.open(path, os.O_RDONLY)
    try:
        try:
            flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to lock {os.fspath(path)!r}: {exc}") from exc
        try:
            yield
        finally:
            try:
                flock(fd, fcntl.LOCK_UN)
            except OSError as exc:
                logger.error("failed to unlock %r: %s", os.fspath(path), exc)
    finally:
        os.close(fd)