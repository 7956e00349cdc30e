"""Canonical in-memory collection and the engine that writes to it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from live_board.events import Connected, Created, Deleted, StreamEvent, Updated
from live_board.models import Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Change:
    """What a single write did to the collection."""

    record_id: Optional[str] = None
    inserted: bool = False
    updated: bool = False
    removed: bool = False
    reason: str = "update"

    @property
    def changed(self) -> bool:
        return self.inserted or self.updated or self.removed


NO_CHANGE = Change()


class ReconciliationEngine:
    """Sole writer of a view's canonical collection.

    Upserts overwrite unconditionally: each payload is a full snapshot, so the
    last one applied for an id wins and re-applying an event is harmless.
    """

    def __init__(
        self,
        record_type: type,
        on_change: Optional[Callable[[Change], None]] = None,
    ):
        self.record_type = record_type
        self.on_change = on_change
        self._records: Dict[str, Record] = {}
        self._applied_count = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def get(self, record_id: str) -> Optional[Record]:
        return self._records.get(record_id)

    def snapshot(self) -> Dict[str, Record]:
        """Return a shallow copy; records themselves are immutable."""
        return dict(self._records)

    def apply(self, event: StreamEvent, reason: str = "stream") -> Change:
        if isinstance(event, Connected):
            return NO_CHANGE

        if isinstance(event, Deleted):
            if event.record is not None and not isinstance(event.record, self.record_type):
                return NO_CHANGE
            change = self._remove(event.record_id, reason)
        elif isinstance(event, (Created, Updated)):
            if not isinstance(event.record, self.record_type):
                logger.debug(f"Ignoring {event.event_type} for {type(event.record).__name__}")
                return NO_CHANGE
            change = self._upsert(event.record, reason)
        else:
            raise TypeError(f"Unsupported event: {event!r}")

        self._applied_count += 1
        self._notify(change)
        return change

    def upsert(self, record: Record, reason: str = "update") -> Change:
        """Write path shared with optimistic edits and server confirmations."""

        change = self._upsert(record, reason)
        self._notify(change)
        return change

    def remove(self, record_id: str, reason: str = "update") -> Change:
        change = self._remove(record_id, reason)
        self._notify(change)
        return change

    def seed(self, records: Iterable[Record], reason: str = "fetch") -> None:
        """Replace the collection wholesale with a freshly fetched page."""

        self._records = {record.id: record for record in records}
        self._notify(Change(updated=True, reason=reason))

    def clear(self) -> None:
        self._records = {}

    def _upsert(self, record: Record, reason: str) -> Change:
        existed = record.id in self._records
        self._records[record.id] = record
        return Change(record_id=record.id, inserted=not existed, updated=existed, reason=reason)

    def _remove(self, record_id: str, reason: str) -> Change:
        if self._records.pop(record_id, None) is None:
            return Change(record_id=record_id, reason=reason)
        return Change(record_id=record_id, removed=True, reason=reason)

    def _notify(self, change: Change) -> None:
        if self.on_change is not None:
            self.on_change(change)

    def get_stats(self) -> dict:
        return {
            "record_type": self.record_type.__name__,
            "records": len(self._records),
            "applied_events": self._applied_count,
        }
