"""Exclusive, non-blocking runner lock.

Only one sync runner may work a mailbox label at a time. The lock is a
:class:`filelock.FileLock` whose file name is the SHA-1 of the lock key, so
keys with slashes or spaces in the label stay filesystem safe. Acquisition is
try-once: contention is reported as ``False``, never as an exception.

The lock spans every process that sees the same ``lock_dir``, which means a
single host or a shared filesystem.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from listarchive.errors import LockBackendError


logger = logging.getLogger(__name__)


def lock_key_for_label(label: str) -> str:
    """Return the lock key used by the runner for ``label``."""
    return f"imap_idle:{label}"


class AdvisoryLock:
    """Session-scoped exclusive lock keyed by an arbitrary string."""

    def __init__(self, key: str, lock_dir: Path) -> None:
        self.key = key
        self.digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        self.path = Path(lock_dir) / f"imap_idle-{self.digest}.lock"
        self._lock: Optional[FileLock] = None

    @property
    def is_held(self) -> bool:
        return self._lock is not None and self._lock.is_locked

    def acquire(self) -> bool:
        """Try to take the lock once.

        Returns:
            True when the lock is now held by this session, False when another
            holder has it

        Raises:
            LockBackendError: If the lock file cannot be created or opened
        """
        if self.is_held:
            return True
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(self.path), timeout=0)
            lock.acquire()
        except Timeout:
            logger.info(
                f"Lock {self.key} is held elsewhere",
                extra={"lock_key": self.key, "lock_path": str(self.path)},
            )
            return False
        except OSError as exc:
            raise LockBackendError(
                f"Cannot use lock file {self.path}: {exc}",
                details={"lock_key": self.key, "lock_path": str(self.path)},
            ) from exc
        self._lock = lock
        logger.debug(f"Lock {self.key} acquired", extra={"lock_key": self.key})
        return True

    def release(self) -> None:
        """Release the lock if held. Safe to call repeatedly."""
        if self._lock is None:
            return
        try:
            self._lock.release()
        except OSError as exc:
            logger.warning(f"Error releasing lock {self.key}", exc_info=exc)
        finally:
            self._lock = None

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


__all__ = ["AdvisoryLock", "lock_key_for_label"]
