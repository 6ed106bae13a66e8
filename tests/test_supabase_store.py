"""Tests for the Supabase-backed store's query building."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from dialer.errors import StoreError
from dialer.models.database import (
    BusinessHoursConfig,
    BusinessHoursTimeSlot,
    CallRecipient,
    CampaignStatus,
    ProviderIntegration,
    RecipientCallStatus,
    VoiceProvider,
)
from dialer.services.database import SupabaseCampaignStore

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

CAMPAIGN_ROW = {
    "id": "camp-1",
    "workspace_id": "ws-1",
    "agent_id": "agent-1",
    "name": "Recalls",
    "status": "active",
}

RECIPIENT_ROW = {
    "id": "rec-1",
    "campaign_id": "camp-1",
    "workspace_id": "ws-1",
    "phone_number": "+61400000001",
}

_BUILDER_METHODS = (
    "select", "insert", "update", "upsert", "delete", "eq", "in_", "is_",
    "lt", "lte", "gt", "gte", "order", "limit", "range",
)


def _client(data=None, count=None):
    """A Supabase client mock whose query builder chains back to itself."""
    query = MagicMock()
    for name in _BUILDER_METHODS:
        getattr(query, name).return_value = query
    query.not_ = query
    query.execute.return_value = MagicMock(data=data if data is not None else [], count=count)

    client = MagicMock()
    client.table.return_value = query
    client.rpc.return_value = query
    return client, query


def _tables(client):
    return [c.args[0] for c in client.table.call_args_list]


# ──────────────────────────────────────────────────────────────────
# Provider integrations
# ──────────────────────────────────────────────────────────────────

class TestProviderIntegration:

    def test_reads_through_workspace_assignment(self):
        client, query = _client(data=[{
            "workspace_id": "ws-1",
            "provider": "vapi",
            "partner_integration": {
                "id": "pi-1",
                "api_keys": {"default_secret_key": "sk-vapi"},
                "config": {"shared_outbound_phone_number_id": "phone-9"},
                "is_active": True,
            },
        }])

        integration = SupabaseCampaignStore(client).get_provider_integration("ws-1", VoiceProvider.VAPI)

        assert _tables(client) == ["workspace_integration_assignments"]
        assert "partner_integration:partner_integrations(" in query.select.call_args.args[0]
        query.eq.assert_any_call("workspace_id", "ws-1")
        query.eq.assert_any_call("provider", "vapi")
        assert integration.id == "pi-1"
        assert integration.workspace_id == "ws-1"
        assert integration.api_keys == {"default_secret_key": "sk-vapi"}
        assert integration.config["shared_outbound_phone_number_id"] == "phone-9"
        assert integration.is_active is True

    def test_embedded_list_is_flattened(self):
        client, _ = _client(data=[{
            "partner_integration": [{"id": "pi-2", "api_keys": {}, "config": None, "is_active": False}],
        }])
        integration = SupabaseCampaignStore(client).get_provider_integration("ws-1", VoiceProvider.RETELL)
        assert integration.provider == VoiceProvider.RETELL
        assert integration.config == {}
        assert integration.is_active is False

    def test_no_assignment(self):
        client, _ = _client(data=[])
        assert SupabaseCampaignStore(client).get_provider_integration("ws-1", VoiceProvider.VAPI) is None

    def test_assignment_without_integration(self):
        client, _ = _client(data=[{"partner_integration": None}])
        assert SupabaseCampaignStore(client).get_provider_integration("ws-1", VoiceProvider.VAPI) is None

    def test_save_writes_integration_then_assignment(self):
        client, query = _client(data=[{"id": "ws-1", "slug": "acme", "partner_id": "partner-1"}])
        integration = ProviderIntegration(
            id="pi-1", workspace_id="ws-1", api_keys={"default_secret_key": "sk"},
        )

        SupabaseCampaignStore(client).save_provider_integration(integration)

        assert _tables(client) == ["workspaces", "partner_integrations", "workspace_integration_assignments"]
        partner_row = query.upsert.call_args_list[0].args[0]
        assert partner_row["partner_id"] == "partner-1"
        assert partner_row["provider"] == "vapi"
        assignment_call = query.upsert.call_args_list[1]
        assert assignment_call.args[0] == {
            "workspace_id": "ws-1",
            "provider": "vapi",
            "partner_integration_id": "pi-1",
        }
        assert assignment_call.kwargs == {"on_conflict": "workspace_id,provider"}

    def test_save_needs_partner(self):
        client, _ = _client(data=[{"id": "ws-1", "slug": "acme", "partner_id": None}])
        with pytest.raises(StoreError):
            SupabaseCampaignStore(client).save_provider_integration(ProviderIntegration(workspace_id="ws-1"))


# ──────────────────────────────────────────────────────────────────
# Campaigns
# ──────────────────────────────────────────────────────────────────

class TestCampaignQueries:

    def test_get_campaign_skips_deleted_and_scopes_workspace(self):
        client, query = _client(data=[CAMPAIGN_ROW])

        campaign = SupabaseCampaignStore(client).get_campaign("camp-1", "ws-1")

        assert _tables(client) == ["call_campaigns"]
        query.is_.assert_called_with("deleted_at", "null")
        query.eq.assert_any_call("id", "camp-1")
        query.eq.assert_any_call("workspace_id", "ws-1")
        assert campaign.status == CampaignStatus.ACTIVE

    def test_complete_only_while_active(self):
        client, query = _client(data=[CAMPAIGN_ROW])

        assert SupabaseCampaignStore(client).complete_campaign_if_active("camp-1") is True

        payload = query.update.call_args.args[0]
        assert payload["status"] == "completed"
        assert isinstance(payload["completed_at"], str)
        query.eq.assert_any_call("id", "camp-1")
        query.eq.assert_any_call("status", "active")

    def test_complete_noop_when_not_active(self):
        client, _ = _client(data=[])
        assert SupabaseCampaignStore(client).complete_campaign_if_active("camp-1") is False

    def test_increment_stats_rpc(self):
        client, _ = _client()

        SupabaseCampaignStore(client).increment_campaign_stats("camp-1", completed=1, failed=1)

        client.rpc.assert_called_once_with("increment_campaign_stats", {
            "p_campaign_id": "camp-1",
            "p_completed": 1,
            "p_successful": 0,
            "p_failed": 1,
        })

    def test_increment_stats_failure(self):
        client, query = _client()
        query.execute.side_effect = RuntimeError("function does not exist")
        with pytest.raises(StoreError, match="increment_campaign_stats failed"):
            SupabaseCampaignStore(client).increment_campaign_stats("camp-1", completed=1)

    def test_update_serialises_nested_config(self):
        client, query = _client(data=[CAMPAIGN_ROW])
        hours = BusinessHoursConfig(
            enabled=True, schedule={"monday": [BusinessHoursTimeSlot(start="09:00", end="17:00")]},
        )

        SupabaseCampaignStore(client).update_campaign("camp-1", {
            "business_hours_config": hours,
            "status": CampaignStatus.PAUSED,
        })

        payload = query.update.call_args.args[0]
        assert payload["business_hours_config"]["schedule"]["monday"] == [{"start": "09:00", "end": "17:00"}]
        assert payload["status"] == "paused"
        assert isinstance(payload["updated_at"], str)

    def test_due_scheduled_campaigns(self):
        client, query = _client(data=[{**CAMPAIGN_ROW, "status": "scheduled"}])

        due = SupabaseCampaignStore(client).list_due_scheduled_campaigns(NOW)

        query.eq.assert_any_call("status", "scheduled")
        query.lte.assert_called_with("scheduled_start_at", NOW.isoformat())
        query.is_.assert_called_with("deleted_at", "null")
        assert [c.id for c in due] == ["camp-1"]

    def test_naive_row_timestamps_read_as_utc(self):
        client, _ = _client(data=[{**CAMPAIGN_ROW, "scheduled_start_at": "2024-01-01T10:00:00"}])
        campaign = SupabaseCampaignStore(client).get_campaign("camp-1")
        assert campaign.scheduled_start_at == NOW


# ──────────────────────────────────────────────────────────────────
# Recipients
# ──────────────────────────────────────────────────────────────────

class TestRecipientQueries:

    def test_add_recipients_ignores_duplicates(self):
        client, query = _client(data=[RECIPIENT_ROW])
        recipient = CallRecipient(campaign_id="camp-1", workspace_id="ws-1", phone_number="+61400000001")

        inserted = SupabaseCampaignStore(client).add_recipients([recipient])

        assert _tables(client) == ["call_recipients"]
        rows = query.upsert.call_args.args[0]
        assert rows[0]["phone_number"] == "+61400000001"
        assert rows[0]["call_status"] == "pending"
        assert query.upsert.call_args.kwargs == {
            "on_conflict": "campaign_id,phone_number",
            "ignore_duplicates": True,
        }
        assert [r.id for r in inserted] == ["rec-1"]

    def test_add_nothing_skips_query(self):
        client, _ = _client()
        assert SupabaseCampaignStore(client).add_recipients([]) == []
        client.table.assert_not_called()

    def test_count_active_calls(self):
        client, query = _client(count=2)

        count = SupabaseCampaignStore(client).count_active_calls(NOW, workspace_id="ws-1")

        assert count == 2
        query.select.assert_called_with("id", count="exact", head=True)
        query.eq.assert_any_call("call_status", "calling")
        query.eq.assert_any_call("workspace_id", "ws-1")
        query.gt.assert_called_with("call_started_at", NOW.isoformat())

    def test_count_active_calls_error_counts_zero(self):
        client, query = _client()
        query.execute.side_effect = RuntimeError("timeout")
        assert SupabaseCampaignStore(client).count_active_calls(NOW, campaign_id="camp-1") == 0

    def test_count_recipients_by_status(self):
        client, query = _client(count=5)

        count = SupabaseCampaignStore(client).count_recipients("camp-1", [RecipientCallStatus.PENDING])

        assert count == 5
        query.in_.assert_called_with("call_status", ["pending"])

    def test_next_pending_oldest_first(self):
        client, query = _client(data=[RECIPIENT_ROW])

        pending = SupabaseCampaignStore(client).next_pending_recipients("camp-1", 3)

        query.eq.assert_any_call("call_status", "pending")
        query.order.assert_called_with("created_at")
        query.limit.assert_called_with(3)
        assert pending[0].phone_number == "+61400000001"

    def test_stale_calling_query(self):
        client, query = _client(data=[])

        SupabaseCampaignStore(client).list_calling_started_before("camp-1", NOW)

        query.eq.assert_any_call("call_status", "calling")
        query.lt.assert_called_with("call_started_at", NOW.isoformat())
