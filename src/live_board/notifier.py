"""Fan out view-change notifications to local UI subscribers.

Each browser connected to the local dashboard gets its own queue; a slow
subscriber is dropped instead of holding up the others.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import AsyncGenerator, Optional

logger = logging.getLogger(__name__)


class ViewNotifier:
    """Coordinates view-updated events between views and subscribers."""

    def __init__(self, queue_size: int = 100):
        self._subscribers: list[asyncio.Queue] = []
        self._queue_size = queue_size
        self._last_update: Optional[datetime] = None
        self._update_count = 0

    async def subscribe(self) -> AsyncGenerator[dict, None]:
        """Subscribe to view events.

        Yields:
            Event dictionaries with type, timestamp, and optional data.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)

        try:
            yield {
                "type": "heartbeat",
                "timestamp": datetime.now().isoformat(),
            }

            while True:
                event = await queue.get()
                yield event

        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def publish(self, view: str, reason: str = "update", **data) -> None:
        """Queue a ``view:updated`` event for every subscriber.

        Args:
            view: Name of the view that changed (e.g. "board", "projects").
            reason: What caused it ("stream", "fetch", "mutation", ...).
        """
        self._last_update = datetime.now()
        self._update_count += 1

        event = {
            "type": "view:updated",
            "timestamp": self._last_update.isoformat(),
            "view": view,
            "reason": reason,
            "count": self._update_count,
        }
        event.update(data)

        dead_queues = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping subscriber")
                dead_queues.append(queue)

        for queue in dead_queues:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def get_stats(self) -> dict:
        return {
            "subscribers": len(self._subscribers),
            "last_update": self._last_update.isoformat() if self._last_update else None,
            "update_count": self._update_count,
        }
