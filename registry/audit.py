"""
Product Authentication Registry - Audit Trail

Records every mutating registry operation with its actor, outcome and
duration. Events are kept in a bounded in-memory buffer and, when a log
directory is configured, appended to a daily JSON-lines file.
"""

import json
import logging
import threading
import time
import uuid
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Iterator, List, Optional

from .exceptions import RegistryError, UnauthorizedError, ValidationError


class AuditResult(Enum):
    """Audit event result types."""
    APPROVED = "approved"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class AuditEvent:
    """One audited registry operation."""
    event_id: str
    timestamp: float
    operation: str
    result: AuditResult
    actor: Optional[str] = None
    fingerprint: Optional[str] = None
    duration_ms: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.event_id:
            self.event_id = f"audit_{int(time.time() * 1000000)}_{uuid.uuid4().hex[:8]}"
        if not self.timestamp:
            self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['result'] = self.result.value
        return data


class AuditRecord:
    """Mutable handle for the operation being audited; callers attach outcome context."""

    def __init__(self):
        self.fingerprint: Optional[str] = None
        self.context: Dict[str, Any] = {}


class AuditLogger:
    """
    Audit logging for registry mutations.

    Use the audit() context manager around an operation: it times the block
    and records approved, rejected (validation or authorization refused) or
    error (anything else raised) before re-raising.
    """

    def __init__(self, log_directory: Optional[str] = None, max_memory_events: int = 1000):
        self.logger = logging.getLogger(__name__)
        self.log_directory = Path(log_directory).expanduser() if log_directory else None
        if self.log_directory:
            self.log_directory.mkdir(parents=True, exist_ok=True)

        self.events: Deque[AuditEvent] = deque(maxlen=max_memory_events)
        self._lock = threading.Lock()
        self.stats = {
            "events_logged": 0,
            "write_errors": 0,
            "start_time": time.time(),
        }
        self.operation_counts: Dict[str, int] = defaultdict(int)

    def log_event(
        self,
        operation: str,
        result: AuditResult,
        actor: Optional[str] = None,
        fingerprint: Optional[str] = None,
        **kwargs
    ) -> AuditEvent:
        """Record a single audit event."""
        event = AuditEvent(
            event_id="",
            timestamp=time.time(),
            operation=operation,
            result=result,
            actor=actor,
            fingerprint=fingerprint,
            **kwargs
        )

        with self._lock:
            self.events.append(event)
            self.stats["events_logged"] += 1
            self.operation_counts[operation] += 1
            if result != AuditResult.APPROVED:
                self.operation_counts[f"{operation}_failed"] += 1

        level = logging.INFO if result == AuditResult.APPROVED else logging.WARNING
        self.logger.log(level, f"audit {operation} {result.value} actor={actor} fingerprint={fingerprint}")

        if self.log_directory:
            self._write_event(event)
        return event

    @contextmanager
    def audit(self, operation: str, actor: Optional[str] = None, fingerprint: Optional[str] = None) -> Iterator[AuditRecord]:
        """Time and record the enclosed operation."""
        record = AuditRecord()
        record.fingerprint = fingerprint
        start = time.time()
        try:
            yield record
        except (ValidationError, UnauthorizedError) as e:
            self._log_failure(operation, actor, record, start, AuditResult.REJECTED, e)
            raise
        except RegistryError as e:
            self._log_failure(operation, actor, record, start, AuditResult.ERROR, e)
            raise
        else:
            self.log_event(
                operation,
                AuditResult.APPROVED,
                actor=actor,
                fingerprint=record.fingerprint,
                duration_ms=(time.time() - start) * 1000,
                context=record.context
            )

    def _log_failure(self, operation, actor, record, start, result, error: RegistryError) -> None:
        self.log_event(
            operation,
            result,
            actor=actor,
            fingerprint=record.fingerprint or error.context.get('fingerprint'),
            duration_ms=(time.time() - start) * 1000,
            error_code=error.code,
            error_message=error.message,
            context=record.context
        )

    def recent_events(
        self,
        limit: int = 50,
        operation: Optional[str] = None,
        result: Optional[AuditResult] = None
    ) -> List[AuditEvent]:
        """Most recent events first, optionally filtered."""
        with self._lock:
            events = list(self.events)
        events.reverse()
        if operation:
            events = [e for e in events if e.operation == operation]
        if result:
            events = [e for e in events if e.result == result]
        return events[:limit]

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self.stats,
                "uptime_seconds": time.time() - self.stats["start_time"],
                "stored_events": len(self.events),
                "operation_counts": dict(self.operation_counts),
                "log_directory": str(self.log_directory) if self.log_directory else None,
            }

    def _write_event(self, event: AuditEvent) -> None:
        """Append a single event to today's JSON-lines file."""
        log_file = self.log_directory / f"audit_{datetime.now(timezone.utc).strftime('%Y%m%d')}.jsonl"
        try:
            with open(log_file, 'a') as f:
                json.dump(event.to_dict(), f, default=str)
                f.write('\n')
        except OSError as e:
            with self._lock:
                self.stats["write_errors"] += 1
            self.logger.error(f"Failed to write audit event: {e}")
