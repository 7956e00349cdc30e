"""End-to-end tests for live views against a fake tracker."""

import asyncio
import json

import httpx

from live_board.api_client import TrackerApi
from live_board.models import FilterCriteria, IssueStatus
from live_board.optimistic import MutationState
from live_board.streams import ReconnectPolicy, StreamRegistry
from live_board.views import IssueBoardView, ProjectListView


def _issue(issue_id, status="OPEN", priority="MEDIUM", project="p-1", created="2025-01-01T00:00:00"):
    return {
        "id": issue_id,
        "projectId": project,
        "title": f"Issue {issue_id}",
        "status": status,
        "priority": priority,
        "createdAt": created,
    }


class _FakeTracker:
    """REST and SSE endpoints backed by in-memory data."""

    def __init__(self, issues=(), projects=()):
        self.issues = {issue["id"]: issue for issue in issues}
        self.projects = list(projects)
        self.events = asyncio.Queue()
        self.fail_updates = False
        self.close_streams = False
        self.fetches = 0
        self.stream_urls = []

    def push(self, event_type, payload):
        data = payload if isinstance(payload, str) else json.dumps(payload)
        self.events.put_nowait(f"event: {event_type}\ndata: {data}\n\n".encode())

    def rest(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path == "/api/issues":
            self.fetches += 1
            project = request.url.params.get("projectId")
            items = [
                issue for issue in self.issues.values()
                if project is None or issue["projectId"] == project
            ]
            return httpx.Response(200, json={
                "content": items, "number": 0, "size": 20,
                "totalElements": len(items), "totalPages": 1,
            })
        if request.method == "GET" and path == "/api/projects":
            self.fetches += 1
            return httpx.Response(200, json=self.projects)
        if request.method == "PUT" and path.startswith("/api/issues/"):
            if self.fail_updates:
                return httpx.Response(409, json={"message": "Issue was modified"})
            issue_id = path.rsplit("/", 1)[-1]
            self.issues[issue_id] = dict(
                self.issues[issue_id], **json.loads(request.content), updatedAt="from-server"
            )
            return httpx.Response(200, json=self.issues[issue_id])
        return httpx.Response(404, json={"message": "Not found"})

    def stream(self, request: httpx.Request) -> httpx.Response:
        self.stream_urls.append(str(request.url))

        async def body():
            yield b"event: connected\ndata: Connected to issue updates\n\n"
            while not self.close_streams:
                try:
                    frame = await asyncio.wait_for(self.events.get(), timeout=0.02)
                except asyncio.TimeoutError:
                    continue
                yield frame

        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


def _parts(tracker, token="secret", reconnect=None):
    api = TrackerApi(
        "http://tracker.test/api",
        credentials=lambda: token,
        transport=httpx.MockTransport(tracker.rest),
    )
    registry = StreamRegistry(
        "http://tracker.test/api/sse",
        credentials=lambda: token,
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(tracker.stream)),
        reconnect=reconnect or ReconnectPolicy(max_attempts=0),
    )
    return api, registry


def _board(tracker, **kwargs):
    token = kwargs.pop("token", "secret")
    reconnect = kwargs.pop("reconnect", None)
    api, registry = _parts(tracker, token=token, reconnect=reconnect)
    return IssueBoardView(api, registry, **kwargs)


async def _until(condition, attempts=200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def _ids(records):
    return [record.id for record in records]


def test_activate_seeds_board_and_goes_live():
    tracker = _FakeTracker([_issue("1"), _issue("2", status="CLOSED")])

    async def scenario():
        view = _board(tracker)
        await view.activate()
        await _until(lambda: view.stream_state == "live")
        state = view.state()
        await view.teardown()
        return state

    state = asyncio.run(scenario())

    assert [issue["id"] for issue in state["partitions"]["open"]] == ["1"]
    assert [issue["id"] for issue in state["partitions"]["closed"]] == ["2"]
    assert state["page"]["totalElements"] == 2
    assert state["summary"]["total"] == 2
    assert tracker.stream_urls == ["http://tracker.test/api/sse/issues?token=secret"]


def test_stream_events_update_board_and_totals():
    tracker = _FakeTracker([_issue("1", priority="HIGH")])

    async def scenario():
        view = _board(tracker)
        await view.activate()
        await _until(lambda: view.stream_state == "live")

        tracker.push("issue.status.changed", _issue("1", status="IN_PROGRESS", priority="HIGH"))
        await _until(lambda: _ids(view.render().partitions.in_progress) == ["1"])
        assert _ids(view.render().partitions.open) == []

        tracker.push("issue.created", _issue("2", created="2025-02-01T00:00:00"))
        await _until(lambda: len(view.render().matched) == 2)
        assert view.pagination.state.total_elements == 2
        assert _ids(view.render().matched) == ["2", "1"]

        tracker.push("issue.deleted", "404")
        tracker.push("issue.updated", "{garbage")
        tracker.push("issue.deleted", _issue("2"))
        await _until(lambda: len(view.render().matched) == 1)
        assert view.pagination.state.total_elements == 1
        assert view.stream_state == "live"

        await view.teardown()

    asyncio.run(scenario())


def test_successful_move_keeps_server_copy():
    tracker = _FakeTracker([_issue("3")])

    async def scenario():
        view = _board(tracker)
        await view.activate()
        mutation = await view.move("3", IssueStatus.CLOSED)
        issue = view.engine.get("3")
        await view.teardown()
        return mutation, issue

    mutation, issue = asyncio.run(scenario())

    assert mutation.state is MutationState.COMMITTED
    assert issue.status is IssueStatus.CLOSED
    assert issue.updated_at == "from-server"


def test_failed_move_resyncs_from_server():
    tracker = _FakeTracker([_issue("3")])

    async def scenario():
        view = _board(tracker)
        await view.activate()
        # Someone else moved the card meanwhile; our update is rejected.
        tracker.issues["3"] = _issue("3", status="IN_PROGRESS")
        tracker.fail_updates = True
        fetches_before = tracker.fetches
        mutation = await view.move("3", IssueStatus.CLOSED)
        result = (mutation, view.engine.get("3"), view.error, tracker.fetches - fetches_before)
        await view.teardown()
        return result

    mutation, issue, error, refetches = asyncio.run(scenario())

    assert mutation.state is MutationState.ROLLED_BACK
    assert issue.status is IssueStatus.IN_PROGRESS
    assert error == "Issue was modified"
    assert refetches == 1


def test_teardown_closes_connections_and_ignores_late_events():
    tracker = _FakeTracker([_issue("1")])

    async def scenario():
        view = _board(tracker)
        await view.activate()
        await _until(lambda: view.stream_state == "live")
        await view.teardown()
        change = view.handle_event(object())
        return view, change

    view, change = asyncio.run(scenario())

    assert view.registry.active_count() == 0
    assert view.render().matched == ()
    assert not change.changed
    assert view.state()["stream"] == "closed"


def test_missing_token_keeps_fetched_data_and_reports_error():
    tracker = _FakeTracker([_issue("1")])

    async def scenario():
        view = _board(tracker, token=None)
        await view.activate()
        state = view.state()
        await view.teardown()
        return state

    state = asyncio.run(scenario())

    assert state["stream"] == "unauthenticated"
    assert state["error"] == "No authentication token found"
    assert [issue["id"] for issue in state["matched"]] == ["1"]
    assert tracker.stream_urls == []


def test_project_filter_switches_stream_scope():
    tracker = _FakeTracker([_issue("1", project="p-1"), _issue("2", project="p-2")])

    async def scenario():
        view = _board(tracker)
        await view.activate()
        await view.set_filter(FilterCriteria(project_id="p-2"))
        await _until(lambda: len(tracker.stream_urls) == 2)
        keys = view.registry.keys()
        matched = _ids(view.render().matched)
        await view.teardown()
        return keys, matched

    keys, matched = asyncio.run(scenario())

    assert keys == ["project-p-2"]
    assert matched == ["2"]
    assert tracker.stream_urls[-1] == "http://tracker.test/api/sse/issues?projectId=p-2&token=secret"


def test_stream_loss_falls_back_to_polling():
    tracker = _FakeTracker([_issue("1")])

    async def scenario():
        view = _board(tracker, fallback_interval=0.02)
        await view.activate()
        await _until(lambda: view.stream_state == "live")
        tracker.close_streams = True
        await _until(lambda: view.stream_state == "offline")

        tracker.issues["9"] = _issue("9")
        await _until(lambda: "9" in _ids(view.render().matched))
        await view.teardown()
        return view

    view = asyncio.run(scenario())
    assert view.registry.active_count() == 0


def test_reconnect_triggers_resync():
    tracker = _FakeTracker([_issue("1")])
    policy = ReconnectPolicy(initial_delay=0.01, factor=1.0, max_delay=0.01, max_attempts=3, jitter=0)

    async def scenario():
        view = _board(tracker, reconnect=policy)
        await view.activate()
        await _until(lambda: view.stream_state == "live")

        # An issue created without a stream event is only learned through
        # the resync fetch that follows the reconnect.
        tracker.issues["7"] = _issue("7")
        tracker.close_streams = True
        await _until(lambda: len(tracker.stream_urls) >= 2)
        tracker.close_streams = False
        await _until(lambda: "7" in _ids(view.render().matched))
        await view.teardown()

    asyncio.run(scenario())


def test_project_list_follows_membership_events():
    tracker = _FakeTracker(projects=[{"id": "a", "name": "Alpha"}])

    async def scenario():
        api, registry = _parts(tracker)
        view = ProjectListView(api, registry)
        await view.activate()
        await _until(lambda: view.stream_state == "live")

        tracker.push("project.member.added", {"id": "b", "name": "Beta"})
        await _until(lambda: len(view.render().matched) == 2)
        tracker.push("project.member.removed", {"id": "a", "name": "Alpha"})
        tracker.push("issue.created", _issue("1"))
        await _until(lambda: _ids(view.render().matched) == ["b"])

        state = view.state()
        await view.teardown()
        return state

    state = asyncio.run(scenario())

    assert state["view"] == "projects"
    assert tracker.stream_urls == ["http://tracker.test/api/sse/user?token=secret"]
    assert "partitions" not in state


def test_notifications_carry_the_reason_of_each_write():
    tracker = _FakeTracker([_issue("1"), _issue("2")])

    class _SlowApi(TrackerApi):
        async def update_issue(self, issue_id, changes):
            # A stream event lands while the update is in flight.
            tracker.push("issue.updated", dict(_issue("2"), title="Renamed elsewhere"))
            await _until(lambda: view.engine.get("2").title == "Renamed elsewhere")
            return await super().update_issue(issue_id, changes)

    api = _SlowApi(
        "http://tracker.test/api",
        credentials=lambda: "secret",
        transport=httpx.MockTransport(tracker.rest),
    )
    _, registry = _parts(tracker)
    view = IssueBoardView(api, registry)
    reasons = []
    view.subscribe(lambda changed, reason: reasons.append(reason))

    async def scenario():
        await view.activate()
        await _until(lambda: view.stream_state == "live")
        await view.move("1", IssueStatus.CLOSED)
        await view.teardown()

    asyncio.run(scenario())

    writes = [reason for reason in reasons if reason in ("fetch", "mutation", "stream")]
    assert writes[0] == "fetch"
    assert writes[-3:] == ["mutation", "stream", "mutation"]
