"""REST client for the tracker's issue and project endpoints."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from live_board.models import FilterCriteria, Issue, Page, Project, SortCriteria

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Request failed"


class ApiError(Exception):
    """A failed tracker request, carrying the user-facing message."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


def error_message(payload: Any, default: str = GENERIC_ERROR) -> str:
    """Pick the server's own explanation out of an error body when it has one."""

    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


class TrackerApi:
    """Thin async wrapper over the tracker REST API."""

    def __init__(
        self,
        base_url: str,
        credentials: Callable[[], Optional[str]],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root, e.g. ``http://localhost:8080/api``.
            credentials: Returns the current bearer token, or None.
            client: Pre-built client; left open by ``aclose()``.
            timeout: Request timeout in seconds for the default client.
            transport: Transport for the default client (tests use a mock).
        """
        self.base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._client = client or httpx.AsyncClient(timeout=timeout, transport=transport)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    async def list_issues(
        self,
        criteria: FilterCriteria,
        sort: SortCriteria,
        page: int = 0,
        size: int = 20,
    ) -> Page:
        params = {"page": str(page), "size": str(size), "sort": sort.to_param()}
        params.update(criteria.to_params())
        data = await self._request("GET", "/issues", params=params)
        return Page.from_dict(data, record_type=Issue)

    async def get_issue(self, issue_id: str) -> Issue:
        return Issue.from_dict(await self._request("GET", f"/issues/{issue_id}"))

    async def create_issue(self, fields: Dict[str, Any]) -> Issue:
        return Issue.from_dict(await self._request("POST", "/issues", json=fields))

    async def update_issue(self, issue_id: str, changes: Dict[str, Any]) -> Issue:
        data = await self._request("PUT", f"/issues/{issue_id}", json=changes)
        return Issue.from_dict(data)

    async def delete_issue(self, issue_id: str) -> None:
        await self._request("DELETE", f"/issues/{issue_id}")

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def list_projects(
        self,
        criteria: FilterCriteria,
        sort: SortCriteria,
        page: int = 0,
        size: int = 20,
    ) -> Page:
        """Return the user's projects as a single page.

        The projects endpoint is not paginated, so the whole list comes back
        as page 0.
        """
        data = await self._request("GET", "/projects")
        items: List[Dict[str, Any]] = data if isinstance(data, list) else data.get("content", [])
        projects = [Project.from_dict(item) for item in items]
        return Page(
            content=projects,
            number=0,
            size=len(projects),
            total_elements=len(projects),
            total_pages=1 if projects else 0,
        )

    async def get_project(self, project_id: str) -> Project:
        return Project.from_dict(await self._request("GET", f"/projects/{project_id}"))

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._credentials()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise ApiError(f"Unable to reach the server: {e}") from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            message = error_message(payload, default=f"HTTP {response.status_code}")
            logger.error(f"{method} {path} returned {response.status_code}: {message}")
            raise ApiError(message, status_code=response.status_code, payload=payload)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()
