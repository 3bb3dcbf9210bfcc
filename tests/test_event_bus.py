"""
Unit tests for the in-process event bus.
"""
import asyncio
import json

import pytest

from sitescan.core.event_bus import ALL_SCANS_CHANNEL, _EventBus, scan_channel


@pytest.mark.unit
class TestEventBus:

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self):
        bus = _EventBus()
        queue = bus.subscribe("scan_abc")

        delivered = bus.publish("scan_abc", "scan_progress", {"progress": 50})

        assert delivered == 1
        event = queue.get_nowait()
        assert event["type"] == "scan_progress"
        assert event["data"] == {"progress": 50}

    def test_publish_without_subscribers(self):
        assert _EventBus().publish("nobody", "scan_progress", {}) == 0

    @pytest.mark.asyncio
    async def test_scan_event_goes_to_both_channels(self):
        bus = _EventBus()
        all_queue = bus.subscribe(ALL_SCANS_CHANNEL)
        one_queue = bus.subscribe(scan_channel("abc"))

        assert bus.publish_scan_event("abc", "scan_started", {"scan_id": "abc"}) == 2
        assert all_queue.qsize() == 1
        assert one_queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_slow_subscriber_dropped(self):
        bus = _EventBus()
        bus.subscribe("c", max_queue_size=1)
        bus.publish("c", "e", {})
        bus.publish("c", "e", {})
        assert bus.active_channels == {}

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = _EventBus()
        queue = bus.subscribe("c")
        bus.unsubscribe("c", queue)
        assert bus.active_channels == {}

    @pytest.mark.asyncio
    async def test_stream_formats_sse(self):
        bus = _EventBus()
        stream = bus.subscribe_stream("c")

        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        bus.publish("c", "site_updated", {"site_id": "s1", "status": "completed"})
        chunk = await asyncio.wait_for(pending, timeout=1)

        assert chunk.startswith("event: site_updated\n")
        payload = json.loads(chunk.split("data: ", 1)[1])
        assert payload == {"site_id": "s1", "status": "completed"}
        await stream.aclose()
        assert bus.active_channels == {}
