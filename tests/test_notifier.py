"""Tests for view-updated fan-out."""

import asyncio

from live_board.notifier import ViewNotifier


def test_subscriber_receives_heartbeat_then_updates():
    notifier = ViewNotifier()

    async def scenario():
        stream = notifier.subscribe()
        first = await stream.__anext__()
        notifier.publish("board", reason="stream", stream="live")
        second = await stream.__anext__()
        await stream.aclose()
        return first, second

    first, second = asyncio.run(scenario())

    assert first["type"] == "heartbeat"
    assert second["type"] == "view:updated"
    assert second["view"] == "board"
    assert second["reason"] == "stream"
    assert second["stream"] == "live"
    assert notifier.get_stats()["subscribers"] == 0
    assert notifier.get_stats()["update_count"] == 1


def test_slow_subscriber_is_dropped():
    notifier = ViewNotifier(queue_size=1)

    async def scenario():
        stream = notifier.subscribe()
        await stream.__anext__()
        notifier.publish("board")
        notifier.publish("board")
        subscribers = notifier.get_stats()["subscribers"]
        await stream.aclose()
        return subscribers

    assert asyncio.run(scenario()) == 0
