"""Scoped exclusive locks (per site, per host) backed by portalocker.

Each key maps to one lock file under ``locks_dir``. A thread lock serialises
threads of this process; the OS-level file lock serialises processes.
Re-entrant acquisition from the owning thread only bumps a depth counter.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType

import portalocker

from .exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")


class ScopedLock:
    """Exclusive lock on one key. Supports context manager protocol."""

    def __init__(self, lock_path: Path, timeout: float = 30.0) -> None:
        self._lock_path = lock_path
        self._timeout = timeout
        self._mu = threading.RLock()
        self._file_lock: portalocker.Lock | None = None
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._lock_path

    @property
    def is_acquired(self) -> bool:
        return self._depth > 0

    def acquire(self) -> None:
        """Acquire the lock, blocking up to the configured timeout."""
        if not self._mu.acquire(timeout=self._timeout):
            raise LockTimeoutError(
                f"Thread lock timeout after {self._timeout}s on {self._lock_path}"
            )

        if self._depth > 0:
            self._depth += 1
            return

        try:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock = portalocker.Lock(
                str(self._lock_path),
                mode="w",
                timeout=self._timeout,
                flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
            )
            fh = lock.acquire()
            # PID for crash diagnostics.
            fh.write(str(os.getpid()))
            fh.flush()
        except portalocker.LockException as exc:
            self._mu.release()
            raise LockTimeoutError(
                f"File lock timeout after {self._timeout}s on {self._lock_path}"
            ) from exc
        except OSError as exc:
            self._mu.release()
            raise LockTimeoutError(
                f"Cannot open lock file {self._lock_path}: {exc}"
            ) from exc

        self._file_lock = lock
        self._depth = 1
        logger.debug("Lock acquired: %s (pid=%d)", self._lock_path, os.getpid())

    def release(self) -> None:
        """Release one level of the lock. Safe to call when not held."""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0 and self._file_lock is not None:
                # The lock file stays on disk: unlinking it would let another
                # process lock a fresh inode while this one is still held.
                self._file_lock.release()
                self._file_lock = None
                logger.debug("Lock released: %s", self._lock_path)
        finally:
            self._mu.release()

    def __enter__(self) -> ScopedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


class LockRegistry:
    """Hands out one :class:`ScopedLock` per site and per host."""

    def __init__(self, locks_dir: Path, timeout: float = 30.0) -> None:
        self._locks_dir = locks_dir
        self._timeout = timeout
        self._locks: dict[str, ScopedLock] = {}
        self._guard = threading.Lock()

    def _get(self, scope: str, key: str) -> ScopedLock:
        name = f"{scope}-{_UNSAFE_CHARS_RE.sub('_', key)}.lock"
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = ScopedLock(self._locks_dir / name, timeout=self._timeout)
                self._locks[name] = lock
            return lock

    @contextmanager
    def site(self, site_id: str) -> Iterator[ScopedLock]:
        """Per-site mutual exclusion for Enable, Disable and Purge."""
        with self._get("site", site_id) as lock:
            yield lock

    @contextmanager
    def host(self, host_id: str) -> Iterator[ScopedLock]:
        """Host-scoped critical section around the shared daemon configuration."""
        with self._get("host", host_id) as lock:
            yield lock
