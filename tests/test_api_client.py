"""Tests for the tracker REST client."""

import asyncio
import json

import httpx
import pytest

from live_board.api_client import ApiError, TrackerApi, error_message
from live_board.models import FilterCriteria, IssuePriority, IssueStatus, SortCriteria


def _api(handler, token="secret"):
    return TrackerApi(
        "http://tracker.test/api/",
        credentials=lambda: token,
        transport=httpx.MockTransport(handler),
    )


def test_list_issues_sends_page_sort_and_filters():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={
            "content": [{"id": 9, "title": "Crash", "status": "OPEN", "priority": "HIGH"}],
            "number": 1,
            "size": 20,
            "totalElements": 21,
            "totalPages": 2,
        })

    async def scenario():
        api = _api(handler)
        try:
            return await api.list_issues(
                FilterCriteria(project_id="p-1", status=IssueStatus.OPEN, search="crash"),
                SortCriteria("priority", descending=True),
                page=1,
            )
        finally:
            await api.aclose()

    page = asyncio.run(scenario())

    params = dict(seen["url"].params)
    assert seen["url"].path == "/api/issues"
    assert params == {
        "page": "1",
        "size": "20",
        "sort": "priority,desc",
        "projectId": "p-1",
        "status": "OPEN",
        "search": "crash",
    }
    assert seen["auth"] == "Bearer secret"
    assert page.number == 1
    assert page.total_pages == 2
    assert page.content[0].id == "9"
    assert page.content[0].priority is IssuePriority.HIGH


def test_update_issue_puts_changes_and_returns_server_copy():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PUT"
        assert request.url.path == "/api/issues/3"
        body = json.loads(request.content)
        return httpx.Response(200, json={"id": 3, "title": "Card", "status": body["status"],
                                         "updatedAt": "2025-02-01T00:00:00"})

    async def scenario():
        return await _api(handler).update_issue("3", {"status": "CLOSED"})

    issue = asyncio.run(scenario())
    assert issue.status is IssueStatus.CLOSED
    assert issue.updated_at == "2025-02-01T00:00:00"


def test_error_body_message_is_surfaced():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "You don't have access to this project"})

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(_api(handler).get_issue("1"))

    assert excinfo.value.status_code == 403
    assert excinfo.value.message == "You don't have access to this project"


def test_transport_failure_becomes_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(_api(handler).delete_issue("1"))

    assert excinfo.value.status_code is None


def test_delete_without_body_returns_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    assert asyncio.run(_api(handler).delete_issue("1")) is None


def test_projects_come_back_as_single_page():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "authorization" not in request.headers
        return httpx.Response(200, json=[
            {"id": "a", "name": "Alpha", "members": [{"user": {"id": "u1"}}]},
            {"id": "b", "name": "Beta"},
        ])

    page = asyncio.run(_api(handler, token=None).list_projects(FilterCriteria(), SortCriteria()))

    assert [project.name for project in page.content] == ["Alpha", "Beta"]
    assert page.content[0].member_ids == ("u1",)
    assert page.total_pages == 1


def test_error_message_falls_back_to_default():
    assert error_message({"error": "Bad Request"}) == "Bad Request"
    assert error_message({"message": "  "}, default="nope") == "nope"
    assert error_message(None) == "Request failed"
