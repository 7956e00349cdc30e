"""Live Server-Sent Event connections, at most one per subscription key.

A view owns one StreamRegistry; tearing the view down closes every channel
it opened.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from live_board.events import SseFramer, StreamEvent, decode

logger = logging.getLogger(__name__)

ALL_ISSUES_KEY = "all-issues"
USER_EVENTS_KEY = "user-events"


def project_key(project_id: str) -> str:
    return f"project-{project_id}"


class AuthenticationMissingError(Exception):
    """No credential is available to open a stream."""


class StreamClosedError(Exception):
    """A stream terminated and will not deliver further events."""


@dataclass(frozen=True)
class ReconnectPolicy:
    """Multiplicative backoff between reconnect attempts.

    ``max_attempts=0`` means a failed stream stays closed.
    """

    initial_delay: float = 5.0
    factor: float = 1.8
    max_delay: float = 60.0
    max_attempts: int = 0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        base = min(self.initial_delay * (self.factor ** attempt), self.max_delay)
        if self.jitter:
            base += random.uniform(0, base * self.jitter)
        return base


def _default_client() -> httpx.AsyncClient:
    # Streams stay open indefinitely, so only the connect phase times out.
    return httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))


def with_token(url: str, token: str) -> str:
    """Append the bearer token as a query parameter; EventSource-style
    transports cannot send an Authorization header."""

    separator = "&" if "?" in url else "?"
    return f"{url}{separator}token={quote(token, safe='')}"


class EventChannel:
    """One live SSE connection delivering decoded events to a handler."""

    def __init__(
        self,
        key: str,
        url: str,
        on_event: Callable[[StreamEvent], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        on_reconnect: Optional[Callable[[], None]] = None,
        on_terminated: Optional[Callable[[EventChannel], None]] = None,
        client_factory: Callable[[], httpx.AsyncClient] = _default_client,
        reconnect: Optional[ReconnectPolicy] = None,
    ):
        self.key = key
        self._url = url
        self._on_event = on_event
        self._on_error = on_error
        self._on_reconnect = on_reconnect
        self._on_terminated = on_terminated
        self._client_factory = client_factory
        self._reconnect = reconnect or ReconnectPolicy()

        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._connected = asyncio.Event()
        self._attempt = 0
        self._connect_count = 0
        self._event_count = 0
        self._dropped_count = 0
        self._last_event: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name=f"sse:{self.key}")

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def close(self) -> None:
        """Cancel the stream and release its connection."""

        self._closed = True
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        error: StreamClosedError
        while True:
            try:
                await self._consume()
                error = StreamClosedError(f"Stream {self.key} ended by server")
            except asyncio.CancelledError:
                logger.info(f"SSE connection closed: {self.key}")
                raise
            except StreamClosedError as e:
                error = e
            except httpx.HTTPError as e:
                error = StreamClosedError(f"Stream {self.key} failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error on {self.key}: {e}", exc_info=True)
                error = StreamClosedError(f"Stream {self.key} failed: {e}")

            self._last_error = str(error)
            self._connected.clear()
            if self._attempt >= self._reconnect.max_attempts:
                break

            delay = self._reconnect.delay(self._attempt)
            self._attempt += 1
            logger.warning(
                f"SSE connection error: {self.key}; reconnecting in {delay:.1f}s "
                f"(attempt {self._attempt}/{self._reconnect.max_attempts})"
            )
            await asyncio.sleep(delay)

        logger.error(f"SSE connection error: {self.key}: {error}")
        self._closed = True
        if self._on_terminated is not None:
            self._on_terminated(self)
        if self._on_error is not None:
            self._on_error(error)

    async def _consume(self) -> None:
        async with self._client_factory() as client:
            async with client.stream(
                "GET", self._url, headers={"Accept": "text/event-stream"}
            ) as response:
                if response.status_code != 200:
                    raise StreamClosedError(
                        f"Stream {self.key} rejected with HTTP {response.status_code}"
                    )
                self._handle_open()

                framer = SseFramer()
                async for line in response.aiter_lines():
                    message = framer.feed(line)
                    if message is None:
                        continue
                    event = decode(*message)
                    if event is None:
                        self._dropped_count += 1
                        continue
                    self._deliver(event)

    def _handle_open(self) -> None:
        reconnected = self._connect_count > 0
        self._connect_count += 1
        self._attempt = 0
        self._connected.set()
        logger.info(f"SSE connection opened: {self.key}")
        if reconnected and self._on_reconnect is not None:
            self._on_reconnect()

    def _deliver(self, event: StreamEvent) -> None:
        self._event_count += 1
        self._last_event = datetime.now()
        try:
            self._on_event(event)
        except Exception as e:
            # A failing handler must not cost the rest of the stream.
            self._dropped_count += 1
            logger.error(f"Error handling event on {self.key}: {e}", exc_info=True)

    def get_stats(self) -> dict:
        return {
            "key": self.key,
            "running": self.running,
            "connected": self._connected.is_set(),
            "connect_count": self._connect_count,
            "event_count": self._event_count,
            "dropped_count": self._dropped_count,
            "last_event": self._last_event.isoformat() if self._last_event else None,
            "last_error": self._last_error,
        }


class StreamRegistry:
    """Owns the live channels for one view, keyed by subscription scope."""

    def __init__(
        self,
        base_url: str,
        credentials: Callable[[], Optional[str]],
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        reconnect: Optional[ReconnectPolicy] = None,
    ):
        """Initialize the registry.

        Args:
            base_url: Stream root, e.g. ``http://localhost:8080/api/sse``.
            credentials: Returns the bearer token, or None when signed out.
            client_factory: Builds the HTTP client for each connection.
            reconnect: Backoff policy applied to every channel.
        """
        self.base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._client_factory = client_factory or _default_client
        self._reconnect = reconnect or ReconnectPolicy()
        self._channels: Dict[str, EventChannel] = {}

    async def open(
        self,
        key: str,
        path: str,
        on_event: Callable[[StreamEvent], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        on_reconnect: Optional[Callable[[], None]] = None,
    ) -> EventChannel:
        """Open a channel for ``key``, superseding any live one.

        Raises:
            AuthenticationMissingError: No token is available; nothing is opened.
        """
        token = self._credentials()
        if not token:
            raise AuthenticationMissingError("No authentication token found")

        await self.close(key)

        channel = EventChannel(
            key=key,
            url=with_token(f"{self.base_url}{path}", token),
            on_event=on_event,
            on_error=on_error,
            on_reconnect=on_reconnect,
            on_terminated=self._forget,
            client_factory=self._client_factory,
            reconnect=self._reconnect,
        )
        self._channels[key] = channel
        channel.start()
        return channel

    async def subscribe_all_issues(self, on_event, on_error=None, on_reconnect=None) -> EventChannel:
        return await self.open(ALL_ISSUES_KEY, "/issues", on_event, on_error, on_reconnect)

    async def subscribe_project_issues(
        self, project_id: str, on_event, on_error=None, on_reconnect=None
    ) -> EventChannel:
        path = f"/issues?projectId={quote(str(project_id), safe='')}"
        return await self.open(project_key(project_id), path, on_event, on_error, on_reconnect)

    async def subscribe_user_events(self, on_event, on_error=None, on_reconnect=None) -> EventChannel:
        return await self.open(USER_EVENTS_KEY, "/user", on_event, on_error, on_reconnect)

    async def close(self, key: str) -> None:
        channel = self._channels.pop(key, None)
        if channel is not None:
            await channel.close()

    async def close_all(self) -> None:
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            await channel.close()

    def _forget(self, channel: EventChannel) -> None:
        # Only drop the entry if it still belongs to this channel; a newer
        # channel may have superseded it under the same key.
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]

    def get(self, key: str) -> Optional[EventChannel]:
        return self._channels.get(key)

    def keys(self) -> List[str]:
        return list(self._channels)

    def active_count(self) -> int:
        return len(self._channels)

    def get_stats(self) -> dict:
        return {
            "active": self.active_count(),
            "channels": [channel.get_stats() for channel in self._channels.values()],
        }
