"""Page, filter and sort state for a list view, and the fetches they trigger."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from live_board.models import FilterCriteria, Page, PageState, SortCriteria

logger = logging.getLogger(__name__)

PageFetcher = Callable[[FilterCriteria, SortCriteria, int, int], Awaitable[Page]]


class PaginationController:
    """Tracks the current page and criteria and refetches when they change.

    A fetched page replaces the canonical collection wholesale (via
    ``on_page``); a failed fetch leaves everything as it was and reports
    through ``on_error``.
    """

    def __init__(
        self,
        fetch_page: PageFetcher,
        on_page: Callable[[Page], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        page_size: int = 20,
        sort: Optional[SortCriteria] = None,
        criteria: Optional[FilterCriteria] = None,
    ):
        self._fetch_page = fetch_page
        self._on_page = on_page
        self._on_error = on_error
        self.state = PageState(size=page_size)
        self.sort = sort or SortCriteria()
        self.criteria = criteria or FilterCriteria()
        self.loading = False
        self._fetch_seq = 0

    # ------------------------------------------------------------------
    # Criteria changes (always back to the first page)
    # ------------------------------------------------------------------

    async def set_filter(self, criteria: FilterCriteria) -> bool:
        self.criteria = criteria
        return await self._reset_and_fetch()

    async def set_search(self, search: Optional[str]) -> bool:
        text = (search or "").strip() or None
        self.criteria = replace(self.criteria, search=text)
        return await self._reset_and_fetch()

    async def set_sort(self, sort: SortCriteria) -> bool:
        self.sort = sort
        return await self._reset_and_fetch()

    async def clear_filters(self, keep_project: bool = False) -> bool:
        project_id = self.criteria.project_id if keep_project else None
        self.criteria = FilterCriteria(project_id=project_id)
        return await self._reset_and_fetch()

    async def _reset_and_fetch(self) -> bool:
        self.state.number = 0
        return await self.refresh()

    # ------------------------------------------------------------------
    # Navigation (out of range is ignored)
    # ------------------------------------------------------------------

    async def next_page(self) -> bool:
        if self.state.number >= self.state.total_pages - 1:
            return False
        return await self._load(self.state.number + 1)

    async def previous_page(self) -> bool:
        if self.state.number <= 0:
            return False
        return await self._load(self.state.number - 1)

    async def go_to(self, page: int) -> bool:
        if page < 0 or page >= max(self.state.total_pages, 1):
            return False
        return await self._load(page)

    async def refresh(self) -> bool:
        """Refetch the current page."""
        return await self._load(self.state.number)

    # ------------------------------------------------------------------
    # Streamed count adjustments
    # ------------------------------------------------------------------

    def record_inserted(self) -> None:
        self.state.total_elements += 1

    def record_removed(self) -> None:
        self.state.total_elements = max(self.state.total_elements - 1, 0)

    async def _load(self, page: int) -> bool:
        self._fetch_seq += 1
        seq = self._fetch_seq
        self.loading = True
        criteria, sort, size = self.criteria, self.sort, self.state.size
        logger.info(f"Fetching page {page} (sort={sort.to_param()}, filter={criteria.to_params()})")

        try:
            result = await self._fetch_page(criteria, sort, page, size)
        except Exception as e:
            if seq != self._fetch_seq:
                return False
            self.loading = False
            logger.error(f"Error loading page {page}: {e}")
            if self._on_error is None:
                raise
            self._on_error(e)
            return False

        if seq != self._fetch_seq:
            # A newer fetch was started while this one was in flight.
            logger.debug(f"Discarding stale page {page}")
            return False

        self.loading = False
        self.state = PageState(
            number=result.number,
            size=result.size or size,
            total_elements=result.total_elements,
            total_pages=result.total_pages,
        )
        self._on_page(result)
        return True

    def to_dict(self) -> dict:
        return {
            "page": self.state.to_dict(),
            "filter": self.criteria.to_dict(),
            "sort": self.sort.to_param(),
            "loading": self.loading,
        }
