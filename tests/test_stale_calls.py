"""Tests for stale call cleanup."""

from datetime import timedelta

from dialer.models.database import CallOutcome, CampaignStatus, RecipientCallStatus
from dialer.services import event_bus
from dialer.services.database import utcnow
from dialer.services.stale_calls import (
    check_and_complete_campaign,
    cleanup_all_active_campaigns,
    cleanup_stale_calls,
)


def _set_calling(store, recipient, minutes_ago):
    store.update_recipient(recipient.id, {
        "call_status": RecipientCallStatus.CALLING,
        "external_call_id": f"ext-{recipient.id}",
        "call_started_at": utcnow() - timedelta(minutes=minutes_ago),
    })


class TestCleanupStaleCalls:

    def test_fails_old_calls(self, store, make_campaign):
        campaign = make_campaign(recipients=3)
        old, recent, _ = store.list_recipients(campaign.id)
        _set_calling(store, old, minutes_ago=8)
        _set_calling(store, recent, minutes_ago=1)

        result = cleanup_stale_calls(campaign.id, store=store)

        assert result.success is True
        assert result.found == 1
        assert result.updated == 1
        assert result.campaign_completed is False

        row = store.get_recipient(old.id)
        assert row.call_status == RecipientCallStatus.FAILED
        assert row.call_outcome == CallOutcome.ERROR
        assert row.last_error == "Call timed out - no response received within 5 minutes"
        assert store.get_recipient(recent.id).call_status == RecipientCallStatus.CALLING

        updated = store.get_campaign(campaign.id)
        assert updated.completed_calls == 1
        assert updated.failed_calls == 1
        assert event_bus.get_recent_events(campaign.workspace_id)[0]["type"] == "campaign.stale_calls_cleaned"

    def test_custom_threshold(self, store, make_campaign):
        campaign = make_campaign(recipients=1)
        recipient = store.list_recipients(campaign.id)[0]
        _set_calling(store, recipient, minutes_ago=8)

        result = cleanup_stale_calls(campaign.id, threshold_minutes=10, store=store)

        assert result.updated == 0
        assert store.get_recipient(recipient.id).call_status == RecipientCallStatus.CALLING

    def test_completes_campaign_when_last_call_was_stale(self, store, make_campaign):
        campaign = make_campaign(recipients=1)
        _set_calling(store, store.list_recipients(campaign.id)[0], minutes_ago=30)

        result = cleanup_stale_calls(campaign.id, store=store)

        assert result.campaign_completed is True
        assert store.get_campaign(campaign.id).status == CampaignStatus.COMPLETED

    def test_store_errors_are_reported(self, store, make_campaign, monkeypatch):
        campaign = make_campaign(recipients=1)

        def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "list_calling_started_before", broken)
        result = cleanup_stale_calls(campaign.id, store=store)

        assert result.success is False
        assert result.error == "database unavailable"


class TestCheckAndCompleteCampaign:

    def test_pending_recipients_keep_campaign_open(self, store, make_campaign):
        campaign = make_campaign(recipients=1)
        assert check_and_complete_campaign(campaign.id, store) is False
        assert store.get_campaign(campaign.id).status == CampaignStatus.ACTIVE

    def test_only_active_campaigns_complete(self, store, make_campaign):
        campaign = make_campaign(status=CampaignStatus.PAUSED, recipients=0)
        assert check_and_complete_campaign(campaign.id, store) is False
        assert store.get_campaign(campaign.id).status == CampaignStatus.PAUSED

    def test_completes_finished_campaign(self, store, make_campaign):
        campaign = make_campaign(recipients=0)
        assert check_and_complete_campaign(campaign.id, store) is True
        assert store.get_campaign(campaign.id).status == CampaignStatus.COMPLETED


class TestCleanupAllActiveCampaigns:

    def test_processes_every_active_campaign(self, store, make_campaign):
        first = make_campaign(recipients=2, name="First")
        second = make_campaign(recipients=1, name="Second")
        make_campaign(status=CampaignStatus.PAUSED, recipients=1, name="Paused")

        for recipient in store.list_recipients(first.id):
            _set_calling(store, recipient, minutes_ago=20)
        _set_calling(store, store.list_recipients(second.id)[0], minutes_ago=20)

        result = cleanup_all_active_campaigns(store)

        assert result.success is True
        assert result.campaigns_processed == 2
        assert result.total_stale_recipients == 3
        assert result.total_campaigns_completed == 2
