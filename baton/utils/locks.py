"""
Per-key in-process locks.

A chain's token/holder pair is only ever mutated while holding that chain's
lock; unrelated chains never wait on each other.
"""
import threading
from contextlib import ExitStack, contextmanager

from baton.errors import StorageUnavailable


class KeyedLocks:

    def __init__(self, timeout=2.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks = {}

    def _checkout(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry

    def _checkin(self, key, entry):
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key):
        entry = self._checkout(key)
        acquired = entry[0].acquire(timeout=self.timeout)
        try:
            if not acquired:
                raise StorageUnavailable(f'Timed out waiting for {key}')
            yield
        finally:
            if acquired:
                entry[0].release()
            self._checkin(key, entry)

    @contextmanager
    def hold_all(self, keys):
        """Hold several keys at once, always acquired in sorted order."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self):
        with self._guard:
            return len(self._locks)
