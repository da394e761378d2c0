"""
Product Authentication Registry - History Reconstruction

Turns the ledger's per-product lifecycle record into a typed, ordered
timeline. A typed event feed is used when the ledger provides one; otherwise
event types are inferred from the position of each bare timestamp.
"""

import logging
from typing import List, Optional

from ledger.base import Ledger, LedgerProductEvent
from .exceptions import NotFoundError, RegistryError, wrap_ledger_error
from .fingerprint import normalize_fingerprint
from .schema import HistoryEvent, HistoryEventType
from .storage import MetadataCache


logger = logging.getLogger(__name__)


def infer_event_type(index: int) -> HistoryEventType:
    """Position-based typing for bare timestamps: first is registration, then odd/even alternate."""
    if index == 0:
        return HistoryEventType.REGISTRATION
    if index % 2 == 0:
        return HistoryEventType.OWNERSHIP_TRANSFER
    return HistoryEventType.STATUS_UPDATE


class HistoryReconstructor:
    """Builds HistoryEvent timelines from ledger data."""

    def __init__(self, ledger: Ledger, cache: Optional[MetadataCache] = None):
        self.ledger = ledger
        self.cache = cache

    def reconstruct(self, fingerprint: str) -> List[HistoryEvent]:
        """
        Reconstruct the lifecycle timeline of a product.

        Args:
            fingerprint: Product fingerprint

        Returns:
            Events ordered by non-decreasing timestamp

        Raises:
            ValidationError: Malformed fingerprint
            NotFoundError: Fingerprint not on the ledger
            LedgerUnavailableError: Ledger unreachable
        """
        fingerprint = normalize_fingerprint(fingerprint)
        try:
            if not self.ledger.product_exists(fingerprint):
                raise NotFoundError("Product not registered", fingerprint=fingerprint)
            typed = self.ledger.product_events(fingerprint)
            if typed is not None:
                events = [self._from_typed(event) for event in typed]
            else:
                events = self._from_timestamps(fingerprint, self.ledger.history_of(fingerprint))
        except NotFoundError:
            raise
        except RegistryError as e:
            raise wrap_ledger_error(e, "reconstruct", fingerprint)

        return self._ordered(fingerprint, events)

    def _from_typed(self, event: LedgerProductEvent) -> HistoryEvent:
        if event.type == HistoryEventType.REGISTRATION:
            return HistoryEvent(type=event.type, timestamp=event.timestamp, address=event.address)
        if event.type == HistoryEventType.OWNERSHIP_TRANSFER:
            return HistoryEvent(
                type=event.type,
                timestamp=event.timestamp,
                from_address=event.from_address,
                to_address=event.to_address
            )
        return HistoryEvent(type=event.type, timestamp=event.timestamp, status=event.status)

    def _from_timestamps(self, fingerprint: str, timestamps: List[int]) -> List[HistoryEvent]:
        registrant = None
        if self.cache is not None:
            entry = self.cache.get(fingerprint)
            registrant = entry.registered_by if entry else None

        events = []
        for index, timestamp in enumerate(timestamps):
            event_type = infer_event_type(index)
            events.append(HistoryEvent(
                type=event_type,
                timestamp=timestamp,
                address=registrant if event_type == HistoryEventType.REGISTRATION else None,
                inferred=True
            ))
        return events

    def _ordered(self, fingerprint: str, events: List[HistoryEvent]) -> List[HistoryEvent]:
        timestamps = [event.timestamp for event in events]
        if timestamps != sorted(timestamps):
            logger.warning(f"Ledger history for {fingerprint} is out of order; sorting by timestamp")
            # sorted() is stable, so same-second events keep ledger order
            return sorted(events, key=lambda event: event.timestamp)
        return events
