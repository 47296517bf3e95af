"""
Per-run mutual exclusion.

Serializes answer/advance calls on one run inside a process. Entries are
reference counted and dropped once no caller holds or waits on them.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator


class RunLockRegistry:
    """Thread-safe registry of one lock per run id."""

    def __init__(self):
        self._lock = threading.RLock()
        self._locks: dict[str, threading.RLock] = {}
        self._waiters: dict[str, int] = {}

    @contextmanager
    def hold(self, run_id: str) -> Generator[None, None, None]:
        """Hold the lock for ``run_id`` for the duration of the block."""
        with self._lock:
            run_lock = self._locks.get(run_id)
            if run_lock is None:
                run_lock = threading.RLock()
                self._locks[run_id] = run_lock
            self._waiters[run_id] = self._waiters.get(run_id, 0) + 1

        try:
            with run_lock:
                yield
        finally:
            with self._lock:
                self._waiters[run_id] -= 1
                if self._waiters[run_id] == 0:
                    del self._waiters[run_id]
                    del self._locks[run_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)
