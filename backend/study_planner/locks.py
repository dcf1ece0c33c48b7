"""Per-user write serialization shared by on-demand generation, rebalancing, and the weekly cycle."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Generator


class UserLockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id: str) -> Generator[None, None, None]:
        lock = self.lock_for(user_id)
        with lock:
            yield


user_locks = UserLockRegistry()

__all__ = ["UserLockRegistry", "user_locks"]
