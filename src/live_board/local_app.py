"""Local web surface exposing the live issue board and project list."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional, Set, cast
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from live_board.api_client import TrackerApi
from live_board.config import LiveBoardConfig, load_config
from live_board.models import FilterCriteria, IssueStatus, SortCriteria
from live_board.notifier import ViewNotifier
from live_board.streams import StreamRegistry
from live_board.views import IssueBoardView, LiveView, ProjectListView

logger = logging.getLogger(__name__)

app = FastAPI(title="Live Board (Local)")

# Views live for the lifetime of the app; each owns its own stream registry.
_views: Dict[str, LiveView] = {}
_apis: List[TrackerApi] = []
_notifier = ViewNotifier()

# Tests swap in an httpx.MockTransport here.
_transport: Optional[httpx.AsyncBaseTransport] = None

CSRF_HEADER = "X-Live-Board-CSRF"
CSRF_TOKEN = secrets.token_urlsafe(32)
ALLOWED_HOSTS = {"127.0.0.1:8090", "localhost:8090", "testserver"}

HEALTHY_STREAM_STATES = {"live"}
DEGRADED_STREAM_STATES = {"connecting", "offline", "idle"}


def build_views(
    config: LiveBoardConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, LiveView]:
    """Create the board and project views with their own registries."""

    def client_factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=transport, timeout=httpx.Timeout(10.0, read=None)
        )

    api = TrackerApi(config.api_url, credentials=config.credential, transport=transport)
    _apis.append(api)

    def registry() -> StreamRegistry:
        return StreamRegistry(
            config.stream_url,
            credentials=config.credential,
            client_factory=client_factory,
            reconnect=config.reconnect_policy(),
        )

    common = dict(
        page_size=config.page_size,
        sort=config.sort_criteria(),
        fallback_interval=config.fallback_interval,
    )
    board = IssueBoardView(
        api, registry(), criteria=FilterCriteria(project_id=config.project_id), **common
    )
    projects = ProjectListView(api, registry(), **common)
    return {board.name: board, projects.name: projects}


def _publish(view: LiveView, reason: str) -> None:
    _notifier.publish(view.name, reason=reason, stream=view.stream_state)


def _get_view(name: str) -> LiveView:
    view = _views.get(name)
    if view is None or not view.active:
        raise HTTPException(status_code=503, detail=f"View '{name}' is not active")
    return view


def _get_board() -> IssueBoardView:
    return cast(IssueBoardView, _get_view(IssueBoardView.name))


def _origin_from_url(value: str | None) -> str | None:
    if not value:
        return None
    try:
        parsed = urlparse(value)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def _expected_origins(request: Request) -> Set[str]:
    host = request.headers.get("host")
    allowed_hosts = set(ALLOWED_HOSTS)
    if host:
        allowed_hosts.add(host)
    origins: Set[str] = set()
    for entry in allowed_hosts:
        origins.add(f"http://{entry}")
        origins.add(f"https://{entry}")
    return origins


def _require_same_origin(request: Request) -> None:
    allowed_origins = _expected_origins(request)

    origin = _origin_from_url(request.headers.get("origin"))
    if origin and origin not in allowed_origins:
        raise HTTPException(status_code=403, detail="Cross-origin request blocked")

    referer = _origin_from_url(request.headers.get("referer"))
    if referer and referer not in allowed_origins:
        raise HTTPException(status_code=403, detail="Cross-site request blocked")


def _require_authorized_post(request: Request) -> None:
    _require_same_origin(request)

    token = request.headers.get(CSRF_HEADER)
    if token != CSRF_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid or missing CSRF token")


def _build_health_response(
    view_stats: List[Dict[str, Any]],
    notifier_stats: Dict[str, Any],
) -> Dict[str, Any]:
    """Grade each view's stream and roll the grades up into one status."""

    reasons: List[str] = []
    views: List[Dict[str, Any]] = []
    overall = "OK"

    for stats in view_stats:
        issues: List[str] = []
        status = "OK"
        stream = stats.get("stream")

        if not stats.get("active"):
            status = "ERROR"
            issues.append("View not active")
        elif stream in HEALTHY_STREAM_STATES:
            pass
        elif stream in DEGRADED_STREAM_STATES:
            status = "DEGRADED"
            issues.append(f"Stream {stream}; serving last fetched data")
        else:
            status = "ERROR"
            issues.append(f"Stream {stream}")

        for channel in stats.get("registry", {}).get("channels", []):
            if channel.get("last_error"):
                issues.append(f"Last stream error: {channel['last_error']}")

        if status != "OK":
            reasons.append(f"{stats.get('view')}: {status.lower()}")
        if status == "ERROR" or (status == "DEGRADED" and overall == "OK"):
            overall = status

        views.append(dict(stats, status=status, issues=issues))

    return {
        "status": overall,
        "reasons": reasons,
        "timestamp": datetime.now().isoformat(),
        "views": views,
        "notifier": notifier_stats,
    }


@app.get("/api/session")
async def get_session(request: Request) -> JSONResponse:
    """Hand the CSRF token to same-origin clients.

    POST endpoints expect it back in the ``X-Live-Board-CSRF`` header.
    """

    _require_same_origin(request)
    return JSONResponse(
        {"csrfToken": CSRF_TOKEN, "csrfHeader": CSRF_HEADER},
        headers={"Cache-Control": "no-store"},
    )


@app.get("/api/board")
async def get_board() -> JSONResponse:
    """Return the issue list, board columns and page state."""

    return JSONResponse(_get_board().state())


@app.get("/api/projects")
async def get_projects() -> JSONResponse:
    """Return the project list."""

    return JSONResponse(_get_view(ProjectListView.name).state())


@app.post("/api/filter")
async def update_filter(payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Replace the filter criteria and refetch from the first page."""

    _require_authorized_post(request)

    view = _get_view(payload.get("view") or IssueBoardView.name)
    try:
        criteria = FilterCriteria.from_dict(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await view.set_filter(criteria)
    return JSONResponse(view.state())


@app.post("/api/sort")
async def update_sort(payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Change sort order, e.g. ``{"sort": "priority,desc"}``."""

    _require_authorized_post(request)

    view = _get_view(payload.get("view") or IssueBoardView.name)
    try:
        sort = SortCriteria.parse(payload.get("sort"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await view.set_sort(sort)
    return JSONResponse(view.state())


@app.post("/api/page")
async def change_page(payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Navigate pages: ``next``, ``previous`` or ``goto`` with ``page``."""

    _require_authorized_post(request)

    view = _get_view(payload.get("view") or IssueBoardView.name)
    action = payload.get("action")
    if action == "next":
        await view.pagination.next_page()
    elif action == "previous":
        await view.pagination.previous_page()
    elif action == "goto":
        page = payload.get("page")
        if not isinstance(page, int):
            raise HTTPException(status_code=400, detail="page must be an integer")
        await view.pagination.go_to(page)
    else:
        raise HTTPException(status_code=400, detail="action must be next, previous or goto")

    return JSONResponse(view.state())


@app.post("/api/refresh")
async def refresh(payload: Dict[str, Any], request: Request) -> JSONResponse:
    _require_authorized_post(request)

    view = _get_view(payload.get("view") or IssueBoardView.name)
    await view.refresh()
    return JSONResponse(view.state())


@app.post("/api/issues/{issue_id}/status")
async def move_issue(issue_id: str, payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Move an issue to another board column."""

    _require_authorized_post(request)

    try:
        status = IssueStatus(str(payload.get("status") or "").upper())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid status") from exc

    board = _get_board()
    try:
        mutation = await board.move(issue_id, status)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Issue {issue_id} is not on the board") from exc

    return JSONResponse({
        "status": "ok" if mutation.error is None else "error",
        "mutation": mutation.to_dict(),
        "board": board.state(),
    })


@app.get("/api/events")
async def events_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of view updates.

    Clients connect here to learn when the board or project list changed
    and re-read the corresponding endpoint.
    """

    async def event_generator() -> AsyncGenerator[str, None]:
        """Generate SSE-formatted events."""
        try:
            async for event in _notifier.subscribe():
                if await request.is_disconnected():
                    break

                yield f"data: {json.dumps(event)}\n\n"

        except asyncio.CancelledError:
            logger.info("SSE client disconnected")
            raise

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@app.get("/api/health")
async def health_check() -> JSONResponse:
    """Health check endpoint with per-view stream status."""

    view_stats = [view.get_stats() for view in _views.values()]
    return JSONResponse(_build_health_response(view_stats, _notifier.get_stats()))


@app.on_event("startup")
async def startup_event():
    """Build and activate the views."""
    config = load_config()
    _views.update(build_views(config, transport=_transport))

    for view in _views.values():
        view.subscribe(_publish)
        try:
            await view.activate()
            logger.info(f"Activated {view.name} view")
        except Exception as e:
            logger.error(f"Failed to activate {view.name} view: {e}")

    logger.info(f"Live board initialized with {len(_views)} view(s)")


@app.on_event("shutdown")
async def shutdown_event():
    """Tear down views and close their connections."""
    logger.info(f"Tearing down {len(_views)} view(s)...")

    for view in _views.values():
        try:
            await view.teardown()
        except Exception as e:
            logger.error(f"Error tearing down {view.name}: {e}")

    for api in _apis:
        await api.aclose()

    _views.clear()
    _apis.clear()
    logger.info("Live board shutdown complete")


def run() -> None:
    """Convenience entry point for running with `python -m`."""

    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "live_board.local_app:app",
        host="127.0.0.1",
        port=8090,
    )


if __name__ == "__main__":
    run()
