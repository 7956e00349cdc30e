"""Decode Server-Sent Events from the tracker into typed record events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional, Tuple, Union

from live_board.models import Issue, Project, Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Connected:
    """Handshake sent when a stream opens; never reaches the engine."""

    message: str


@dataclass(frozen=True)
class Created:
    record_id: str
    record: Record
    event_type: str = ""


@dataclass(frozen=True)
class Updated:
    record_id: str
    record: Record
    event_type: str = ""


@dataclass(frozen=True)
class Deleted:
    record_id: str
    record: Optional[Record] = None
    event_type: str = ""


RecordEvent = Union[Created, Updated, Deleted]
StreamEvent = Union[Connected, Created, Updated, Deleted]

# event type -> (variant, record type)
EVENT_CATALOG = {
    "issue.created": (Created, Issue),
    "issue.updated": (Updated, Issue),
    "issue.status.changed": (Updated, Issue),
    "issue.priority.changed": (Updated, Issue),
    "issue.assigned": (Updated, Issue),
    "issue.deleted": (Deleted, Issue),
    # Membership changes decide whether a project is visible to this user.
    "project.member.added": (Created, Project),
    "project.member.removed": (Deleted, Project),
    "project.updated": (Updated, Project),
    "project.deleted": (Deleted, Project),
}

EVENT_TYPES = ("connected",) + tuple(EVENT_CATALOG)


def decode(event_type: str, data: str) -> Optional[StreamEvent]:
    """Turn one named SSE message into a typed event.

    Returns None for anything that cannot be decoded; the caller keeps
    reading the stream.
    """

    if event_type == "connected":
        return Connected(message=data)

    entry = EVENT_CATALOG.get(event_type)
    if entry is None:
        logger.warning(f"Dropping unknown event type: {event_type}")
        return None
    variant, record_type = entry

    try:
        payload = json.loads(data)
    except (TypeError, json.JSONDecodeError) as e:
        logger.warning(f"Dropping malformed {event_type} payload: {e}")
        return None

    if variant is Deleted and not isinstance(payload, dict):
        # Deletions may carry only the identifier.
        record_id = _bare_id(payload)
        if record_id is None:
            logger.warning(f"Dropping {event_type} without an id")
            return None
        return Deleted(record_id=record_id, event_type=event_type)

    if not isinstance(payload, dict):
        logger.warning(f"Dropping {event_type}: expected an object, got {type(payload).__name__}")
        return None

    try:
        record = record_type.from_dict(payload)
    except (TypeError, ValueError, AttributeError, KeyError) as e:
        logger.warning(f"Dropping undecodable {event_type} payload: {e}")
        return None

    return variant(record_id=record.id, record=record, event_type=event_type)


def _bare_id(payload: Any) -> Optional[str]:
    if isinstance(payload, bool) or not isinstance(payload, (str, int)):
        return None
    text = str(payload).strip()
    return text or None


def iter_sse_messages(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """Frame raw SSE lines into ``(event, data)`` pairs.

    A message ends at a blank line. Multiple ``data:`` lines are joined
    with newlines, comment lines start with ``:``, and a message without
    an ``event:`` field is named ``message``.
    """

    framer = SseFramer()
    for line in lines:
        message = framer.feed(line)
        if message is not None:
            yield message


class SseFramer:
    """Incremental SSE framer; feed it one line at a time."""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: list[str] = []

    def feed(self, line: str) -> Optional[Tuple[str, str]]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        # id/retry fields are not used by the tracker
        return None

    def _dispatch(self) -> Optional[Tuple[str, str]]:
        if not self._data and self._event is None:
            return None
        message = (self._event or "message", "\n".join(self._data))
        self._event = None
        self._data = []
        return message
