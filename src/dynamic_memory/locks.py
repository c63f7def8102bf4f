"""Per-session re-entrant locks. Sessions never wait on each other."""

import threading
import weakref
from contextlib import contextmanager


class SessionLocks:
    def __init__(self):
        self._guard = threading.Lock()
        # A lock lives only while some caller holds or waits on it
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def hold(self, session_id: str):
        with self.get(session_id):
            yield

    def __len__(self) -> int:
        return len(self._locks)
