"""List and board views kept live by fetches, stream events and local edits.

A view owns its canonical collection and its stream registry. Activation
fetches the first page and opens the stream; teardown closes every
connection and discards the collection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from live_board.api_client import ApiError, TrackerApi
from live_board.events import Connected, Created, Deleted, StreamEvent
from live_board.materialize import MaterializedView, materialize, matches, summarize
from live_board.models import FilterCriteria, Issue, IssueStatus, Page, Project, SortCriteria
from live_board.optimistic import Mutation, MutationState, OptimisticCoordinator
from live_board.pagination import PaginationController
from live_board.reconcile import Change, ReconciliationEngine
from live_board.streams import AuthenticationMissingError, EventChannel, StreamRegistry

logger = logging.getLogger(__name__)

Listener = Callable[["LiveView", str], None]


class LiveView:
    """Shared machinery for a paginated, stream-updated collection view."""

    name = "view"
    record_type: type = Issue
    load_error = "Failed to load records"

    def __init__(
        self,
        api: TrackerApi,
        registry: StreamRegistry,
        page_size: int = 20,
        sort: Optional[SortCriteria] = None,
        criteria: Optional[FilterCriteria] = None,
        fallback_interval: float = 60.0,
    ):
        self.api = api
        self.registry = registry
        self.engine = ReconciliationEngine(self.record_type, on_change=self._on_change)
        self.pagination = PaginationController(
            fetch_page=self._fetch_page,
            on_page=self._on_page,
            on_error=self._on_fetch_error,
            page_size=page_size,
            sort=sort,
            criteria=criteria,
        )
        self.error: Optional[str] = None
        self.stream_state = "idle"
        self._fallback_interval = fallback_interval
        self._fallback_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        self._view = MaterializedView()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def activate(self) -> None:
        if self._active:
            return
        self._active = True
        logger.info(f"Activating {self.name} view")
        await self.pagination.refresh()
        await self._connect()

    async def teardown(self) -> None:
        if not self._active:
            return
        self._active = False
        self._stop_fallback()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        await self.registry.close_all()
        self.engine.clear()
        self._view = MaterializedView()
        self.stream_state = "closed"
        logger.info(f"Tore down {self.name} view")

    async def _connect(self) -> None:
        self.stream_state = "connecting"
        try:
            await self._open_stream()
        except AuthenticationMissingError as e:
            self.stream_state = "unauthenticated"
            self.error = str(e)
            logger.error(f"Cannot open {self.name} stream: {e}")
            self._emit("stream")

    async def _open_stream(self) -> EventChannel:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback run after every re-derivation."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def render(self) -> MaterializedView:
        return self._view

    def state(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "view": self.name,
            "matched": [record.to_dict() for record in self._view.matched],
            "error": self.error,
            "stream": self.stream_state,
            "active": self._active,
        }
        data.update(self.pagination.to_dict())
        return data

    def _rederive(self, reason: str) -> None:
        self._view = materialize(
            self.engine.snapshot(), self.pagination.criteria, self.pagination.sort
        )
        self._emit(reason)

    def _emit(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, reason)
            except Exception as e:
                logger.error(f"Error in {self.name} listener: {e}", exc_info=True)

    def _on_change(self, change: Change) -> None:
        if self._active:
            self._rederive(change.reason)

    # ------------------------------------------------------------------
    # Fetches
    # ------------------------------------------------------------------

    async def _fetch_page(self, criteria, sort, page, size) -> Page:
        raise NotImplementedError

    def _on_page(self, page: Page) -> None:
        if not self._active:
            return
        self.error = None
        self.engine.seed(page.content)

    def _on_fetch_error(self, exc: Exception) -> None:
        if not self._active:
            return
        # Keep showing the previous collection.
        self.error = exc.message if isinstance(exc, ApiError) else self.load_error
        self._emit("error")

    async def refresh(self) -> bool:
        return await self.pagination.refresh()

    async def set_filter(self, criteria: FilterCriteria) -> bool:
        return await self.pagination.set_filter(criteria)

    async def set_sort(self, sort: SortCriteria) -> bool:
        return await self.pagination.set_sort(sort)

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    def handle_event(self, event: StreamEvent) -> Change:
        if not self._active:
            return Change()
        if isinstance(event, Connected):
            self.stream_state = "live"
            self._emit("stream")
            return Change()

        criteria = self.pagination.criteria
        previous = self.engine.get(event.record_id)
        change = self.engine.apply(event)

        if change.inserted and isinstance(event, Created) and matches(event.record, criteria):
            self.pagination.record_inserted()
        elif change.removed and isinstance(event, Deleted) and matches(previous, criteria):
            self.pagination.record_removed()
        return change

    def handle_stream_error(self, exc: Exception) -> None:
        if not self._active:
            return
        logger.warning(f"{self.name} stream offline: {exc}")
        self.stream_state = "offline"
        self._emit("stream")
        self._start_fallback()

    def handle_reconnect(self) -> None:
        if not self._active:
            return
        self.stream_state = "live"
        self._stop_fallback()
        # Anything sent while disconnected is lost; resync from the server.
        self._spawn(self.pagination.refresh())

    def _start_fallback(self) -> None:
        if self._fallback_task is not None or self._fallback_interval <= 0:
            return
        self._fallback_task = asyncio.create_task(self._fallback_loop())

    def _stop_fallback(self) -> None:
        if self._fallback_task is not None:
            self._fallback_task.cancel()
            self._fallback_task = None

    async def _fallback_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self._fallback_interval)
            if not self._active:
                break
            await self.pagination.refresh()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def get_stats(self) -> dict:
        return {
            "view": self.name,
            "active": self._active,
            "stream": self.stream_state,
            "engine": self.engine.get_stats(),
            "registry": self.registry.get_stats(),
        }


class IssueBoardView(LiveView):
    """Issue list plus status board, optionally scoped to one project."""

    name = "board"
    record_type = Issue
    load_error = "Failed to load issues"

    def __init__(self, api: TrackerApi, registry: StreamRegistry, **kwargs):
        super().__init__(api, registry, **kwargs)
        self.coordinator = OptimisticCoordinator(
            engine=self.engine,
            update=self.api.update_issue,
            resync=self.pagination.refresh,
            is_active=lambda: self._active,
        )
        self._stream_project: Optional[str] = None

    async def _fetch_page(self, criteria, sort, page, size) -> Page:
        return await self.api.list_issues(criteria, sort, page=page, size=size)

    async def _open_stream(self) -> EventChannel:
        project_id = self.pagination.criteria.project_id
        self._stream_project = project_id
        callbacks = dict(
            on_event=self.handle_event,
            on_error=self.handle_stream_error,
            on_reconnect=self.handle_reconnect,
        )
        if project_id:
            return await self.registry.subscribe_project_issues(project_id, **callbacks)
        return await self.registry.subscribe_all_issues(**callbacks)

    async def set_filter(self, criteria: FilterCriteria) -> bool:
        loaded = await super().set_filter(criteria)
        if self._active and criteria.project_id != self._stream_project:
            # Switch stream scope along with the project filter.
            await self.registry.close_all()
            await self._connect()
        return loaded

    async def move(self, record_id: str, status: IssueStatus) -> Mutation:
        """Drag a card to another column."""

        mutation = await self.coordinator.move(record_id, status)
        if mutation.state is MutationState.ROLLED_BACK and self._active:
            self.error = mutation.error
            self._emit("error")
        return mutation

    async def update(self, record_id: str, changes: Dict[str, Any]) -> Mutation:
        mutation = await self.coordinator.mutate(record_id, changes)
        if mutation.state is MutationState.ROLLED_BACK and self._active:
            self.error = mutation.error
            self._emit("error")
        return mutation

    def state(self) -> Dict[str, Any]:
        data = super().state()
        data["partitions"] = self._view.partitions.to_dict()
        data["summary"] = summarize(self._view)
        data["pending"] = [mutation.to_dict() for mutation in self.coordinator.pending()]
        return data


class ProjectListView(LiveView):
    """Projects visible to the signed-in user, kept live by user events."""

    name = "projects"
    record_type = Project
    load_error = "Failed to load projects"

    async def _fetch_page(self, criteria, sort, page, size) -> Page:
        return await self.api.list_projects(criteria, sort, page=page, size=size)

    async def _open_stream(self) -> EventChannel:
        return await self.registry.subscribe_user_events(
            on_event=self.handle_event,
            on_error=self.handle_stream_error,
            on_reconnect=self.handle_reconnect,
        )
