"""
Product Authentication Registry - Per-Fingerprint Concurrency Control

This module serializes mutating operations on a single fingerprint with
reference-counted keyed locks, and records lock metrics for monitoring.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .exceptions import LockTimeoutError


class LockMetrics:
    """Lock performance metrics."""

    def __init__(self):
        self.acquisition_count = 0
        self.contention_count = 0
        self.timeout_count = 0
        self.total_wait_time = 0.0
        self.max_wait_time = 0.0
        self.active_locks = 0
        self.last_acquisition: Optional[datetime] = None
        self.lock_history = deque(maxlen=100)

    def record_acquisition(self, key: str, wait_time: float, contended: bool) -> None:
        """Record lock acquisition metrics."""
        self.acquisition_count += 1
        self.total_wait_time += wait_time
        self.max_wait_time = max(self.max_wait_time, wait_time)
        self.active_locks += 1
        self.last_acquisition = datetime.now(timezone.utc)

        if contended:
            self.contention_count += 1

        self.lock_history.append({
            'key': key,
            'timestamp': self.last_acquisition,
            'wait_time': wait_time,
            'contended': contended,
            'thread_id': threading.get_ident()
        })

    def record_release(self) -> None:
        self.active_locks = max(0, self.active_locks - 1)

    def record_timeout(self) -> None:
        self.timeout_count += 1

    def get_contention_ratio(self) -> float:
        if self.acquisition_count == 0:
            return 0.0
        return self.contention_count / self.acquisition_count

    def get_average_wait_time(self) -> float:
        if self.acquisition_count == 0:
            return 0.0
        return self.total_wait_time / self.acquisition_count


class _KeyedLockEntry:
    __slots__ = ('lock', 'refs')

    def __init__(self):
        self.lock = RLock()
        self.refs = 0


class KeyedLockManager:
    """
    Mutual exclusion scoped to a key (a fingerprint).

    Locks are re-entrant for the holding thread, created on first use and
    discarded once no thread holds or waits for them.
    """

    def __init__(self, name: str = "fingerprints", timeout: float = 30.0):
        self.name = name
        self.timeout = timeout
        self._entries: Dict[str, _KeyedLockEntry] = {}
        self._guard = Lock()
        self._metrics = LockMetrics()

    def _checkout(self, key: str) -> _KeyedLockEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _KeyedLockEntry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _KeyedLockEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs <= 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def acquire(self, key: str, timeout: Optional[float] = None) -> _KeyedLockEntry:
        """
        Acquire the lock for a key.

        Raises:
            LockTimeoutError: If the lock is not obtained within the timeout
        """
        timeout = self.timeout if timeout is None else timeout
        entry = self._checkout(key)
        start_time = time.time()

        contended = not entry.lock.acquire(blocking=False)
        if contended and not entry.lock.acquire(timeout=timeout):
            self._checkin(key, entry)
            with self._guard:
                self._metrics.record_timeout()
            raise LockTimeoutError(
                f"Timed out waiting for {self.name} lock",
                fingerprint=key,
                timeout=timeout
            )

        with self._guard:
            self._metrics.record_acquisition(key, time.time() - start_time, contended)
        return entry

    def release(self, key: str, entry: _KeyedLockEntry) -> None:
        entry.lock.release()
        with self._guard:
            self._metrics.record_release()
        self._checkin(key, entry)

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for one key for the duration of the block."""
        entry = self.acquire(key, timeout)
        try:
            yield
        finally:
            self.release(key, entry)

    @contextmanager
    def hold_many(self, keys: Iterable[str], timeout: Optional[float] = None) -> Iterator[List[str]]:
        """Hold several keys, acquired in sorted order to avoid lock-order deadlocks."""
        ordered = sorted(set(keys))
        held = []
        try:
            for key in ordered:
                held.append((key, self.acquire(key, timeout)))
            yield ordered
        finally:
            for key, entry in reversed(held):
                self.release(key, entry)

    def is_locked(self, key: str) -> bool:
        """True while any thread holds or waits for the key."""
        with self._guard:
            return key in self._entries

    def get_metrics(self) -> Dict[str, Any]:
        with self._guard:
            return {
                'name': self.name,
                'tracked_keys': len(self._entries),
                'acquisition_count': self._metrics.acquisition_count,
                'contention_count': self._metrics.contention_count,
                'timeout_count': self._metrics.timeout_count,
                'contention_ratio': self._metrics.get_contention_ratio(),
                'average_wait_time': self._metrics.get_average_wait_time(),
                'max_wait_time': self._metrics.max_wait_time,
                'active_locks': self._metrics.active_locks,
                'last_acquisition': self._metrics.last_acquisition
            }
