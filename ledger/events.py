"""
Product Authentication Registry - Role Event Listener

Polls the ledger for RoleAssigned notifications on a daemon thread and hands
each one to a subscriber (the authorization gate's mirror).
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from registry.exceptions import RegistryError

from .base import Ledger, RoleAssignedEvent


class RoleEventListener:
    """Polling subscription to the ledger's RoleAssigned feed."""

    def __init__(
        self,
        ledger: Ledger,
        callback: Callable[[RoleAssignedEvent], Any],
        poll_interval: float = 5.0,
        cursor: Any = None
    ):
        self.ledger = ledger
        self.callback = callback
        self.poll_interval = poll_interval
        self.cursor = cursor
        self.logger = logging.getLogger(__name__)

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self._poll_lock = threading.Lock()

        self._stats = {
            "polling_cycles": 0,
            "events_delivered": 0,
            "poll_failures": 0,
            "last_poll_time": None
        }

    def poll_once(self) -> int:
        """
        Fetch and deliver notifications after the current cursor.

        Returns:
            Number of events delivered

        Raises:
            LedgerUnavailableError: If the ledger cannot be polled
        """
        with self._poll_lock:
            events, next_cursor = self.ledger.role_events_since(self.cursor)
            for event in events:
                self.callback(event)
            self.cursor = next_cursor
            self._stats["polling_cycles"] += 1
            self._stats["events_delivered"] += len(events)
            self._stats["last_poll_time"] = time.time()
            if events:
                self.logger.debug(f"Delivered {len(events)} role notification(s), cursor now {next_cursor}")
            return len(events)

    def start(self) -> None:
        """Start the polling thread."""
        if self._running:
            return
        self._running = True
        self._wake.clear()
        self._thread = threading.Thread(target=self._polling_worker, name="role-event-listener", daemon=True)
        self._thread.start()
        self.logger.info(f"Role event listener started (interval: {self.poll_interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the polling thread."""
        self._running = False
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout if timeout is not None else self.poll_interval + 1)
            self._thread = None
        self.logger.info("Role event listener stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _polling_worker(self) -> None:
        while self._running:
            try:
                self.poll_once()
            except RegistryError as e:
                self._stats["poll_failures"] += 1
                self.logger.warning(f"Role event poll failed: {e}")
            except Exception as e:
                self._stats["poll_failures"] += 1
                self.logger.error(f"Role event listener error: {e}", exc_info=True)
            self._wake.wait(self.poll_interval)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "cursor": self.cursor, "running": self._running}
