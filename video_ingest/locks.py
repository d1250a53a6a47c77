from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock


class SessionLocks:
    """One mutex per session id, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._locks: dict[str, Lock] = {}
        self._holders: dict[str, int] = {}
        self._guard = Lock()

    def _acquire_entry(self, session_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = Lock()
                self._locks[session_id] = lock
            self._holders[session_id] = self._holders.get(session_id, 0) + 1
            return lock

    def _release_entry(self, session_id: str) -> None:
        with self._guard:
            remaining = self._holders.get(session_id, 0) - 1
            if remaining <= 0:
                self._holders.pop(session_id, None)
                self._locks.pop(session_id, None)
            else:
                self._holders[session_id] = remaining

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        lock = self._acquire_entry(session_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(session_id)

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)
