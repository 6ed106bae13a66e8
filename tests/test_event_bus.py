"""Tests for the campaign event log."""

import pytest

from dialer.services import event_bus

WORKSPACE_ID = "ws_events"
OTHER_WORKSPACE = "ws_other"


@pytest.fixture(autouse=True)
def _clear():
    event_bus.clear_all()
    yield
    event_bus.clear_all()


class TestEventBus:

    def test_publish_returns_event(self):
        evt = event_bus.publish(WORKSPACE_ID, event_bus.EventType.CALL_STARTED, {"campaign_id": "c1"})
        assert evt["type"] == "campaign.call_started"
        assert evt["workspace_id"] == WORKSPACE_ID
        assert evt["payload"] == {"campaign_id": "c1"}
        assert "timestamp" in evt

    def test_recent_events_newest_first(self):
        for i in range(5):
            event_bus.publish(WORKSPACE_ID, "campaign.call_ended", {"n": i})
        recent = event_bus.get_recent_events(WORKSPACE_ID, limit=3)
        assert [e["payload"]["n"] for e in recent] == [4, 3, 2]

    def test_workspace_isolation(self):
        event_bus.publish(WORKSPACE_ID, "campaign.started", {})
        assert event_bus.get_recent_events(OTHER_WORKSPACE) == []

    def test_filter_by_campaign(self):
        event_bus.publish(WORKSPACE_ID, "campaign.started", {"campaign_id": "a"})
        event_bus.publish(WORKSPACE_ID, "campaign.started", {"campaign_id": "b"})
        events = event_bus.get_recent_events(WORKSPACE_ID, campaign_id="a")
        assert len(events) == 1
        assert events[0]["payload"]["campaign_id"] == "a"

    def test_history_is_bounded(self):
        for i in range(event_bus.MAX_HISTORY + 20):
            event_bus.publish(WORKSPACE_ID, "campaign.call_ended", {"n": i})
        events = event_bus.get_recent_events(WORKSPACE_ID, limit=500)
        assert len(events) == event_bus.MAX_HISTORY
        assert events[-1]["payload"]["n"] == 20

    def test_events_since(self):
        first = event_bus.publish(WORKSPACE_ID, "campaign.started", {"n": 1})
        event_bus.publish(WORKSPACE_ID, "campaign.paused", {"n": 2})
        later = event_bus.get_events_since(WORKSPACE_ID, first["timestamp"])
        assert all(e["timestamp"] > first["timestamp"] for e in later)
        assert all(e["payload"]["n"] == 2 for e in later)
