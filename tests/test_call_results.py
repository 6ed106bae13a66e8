"""Tests for call outcome mapping and webhook result recording."""

from datetime import datetime, timezone

import pytest

from dialer.models.database import (
    CallOutcome,
    CampaignStatus,
    RecipientCallStatus,
    VoiceProvider,
)
from dialer.services import event_bus
from dialer.services.call_queue import ProviderConfig
from dialer.services.call_results import (
    duration_between,
    map_retell_disconnection_reason,
    map_vapi_ended_reason,
    record_call_result,
)

CONFIG = ProviderConfig(VoiceProvider.VAPI, "sk-vapi", "asst-1", phone_number_id="vapi-phone-1")


class TestVapiEndedReason:

    def test_answered(self):
        assert map_vapi_ended_reason("customer-ended-call") == CallOutcome.ANSWERED
        assert map_vapi_ended_reason("assistant-ended-call") == CallOutcome.ANSWERED
        assert map_vapi_ended_reason("exceeded-max-cost") == CallOutcome.ANSWERED

    def test_no_answer(self):
        assert map_vapi_ended_reason("customer-did-not-answer") == CallOutcome.NO_ANSWER

    def test_busy_before_error(self):
        assert map_vapi_ended_reason("customer-busy") == CallOutcome.BUSY
        assert map_vapi_ended_reason("twilio-failed-to-connect-call-busy") == CallOutcome.BUSY

    def test_voicemail(self):
        assert map_vapi_ended_reason("voicemail") == CallOutcome.VOICEMAIL
        assert map_vapi_ended_reason("machine-detected") == CallOutcome.VOICEMAIL

    def test_errors(self):
        assert map_vapi_ended_reason("pipeline-error-openai-llm-failed") == CallOutcome.ERROR
        assert map_vapi_ended_reason("assistant-request-failed") == CallOutcome.ERROR

    def test_declined(self):
        assert map_vapi_ended_reason("call-cancelled") == CallOutcome.DECLINED

    def test_silence_timeout_depends_on_conversation(self):
        assert map_vapi_ended_reason("silence-timed-out", 5) == CallOutcome.NO_ANSWER
        assert map_vapi_ended_reason("silence-timed-out", 30) == CallOutcome.ANSWERED
        assert map_vapi_ended_reason("silence-timed-out", 5, has_transcript=True) == CallOutcome.ANSWERED

    def test_missing_reason_uses_duration(self):
        assert map_vapi_ended_reason(None, 45) == CallOutcome.ANSWERED
        assert map_vapi_ended_reason(None, 3) == CallOutcome.NO_ANSWER
        assert map_vapi_ended_reason("") == CallOutcome.NO_ANSWER

    def test_unknown_reason_uses_heuristics(self):
        assert map_vapi_ended_reason("something-new", 60) == CallOutcome.ANSWERED
        assert map_vapi_ended_reason("something-new", 2, has_transcript=True) == CallOutcome.ANSWERED
        assert map_vapi_ended_reason("something-new", 2) == CallOutcome.NO_ANSWER


class TestRetellDisconnectionReason:

    def test_dial_outcomes(self):
        assert map_retell_disconnection_reason("dial_no_answer") == CallOutcome.NO_ANSWER
        assert map_retell_disconnection_reason("dial_busy") == CallOutcome.BUSY
        assert map_retell_disconnection_reason("dial_failed") == CallOutcome.INVALID_NUMBER
        assert map_retell_disconnection_reason("invalid_destination") == CallOutcome.INVALID_NUMBER

    def test_voicemail(self):
        assert map_retell_disconnection_reason("voicemail_reached") == CallOutcome.VOICEMAIL
        assert map_retell_disconnection_reason("user_hangup", 30, in_voicemail=True) == CallOutcome.VOICEMAIL

    def test_errors(self):
        assert map_retell_disconnection_reason("error_llm_websocket_open") == CallOutcome.ERROR

    def test_hangups_are_answered(self):
        assert map_retell_disconnection_reason("user_hangup") == CallOutcome.ANSWERED
        assert map_retell_disconnection_reason("agent_hangup") == CallOutcome.ANSWERED
        assert map_retell_disconnection_reason("call_transfer") == CallOutcome.ANSWERED

    def test_inactivity(self):
        assert map_retell_disconnection_reason("inactivity", 5) == CallOutcome.NO_ANSWER
        assert map_retell_disconnection_reason("inactivity", 40) == CallOutcome.ANSWERED

    def test_unknown(self):
        assert map_retell_disconnection_reason(None, 20) == CallOutcome.ANSWERED
        assert map_retell_disconnection_reason("registered_call_timeout") == CallOutcome.NO_ANSWER


class TestDurationBetween:

    def test_whole_seconds(self):
        start = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)
        end = datetime(2024, 5, 1, 10, 1, 30, 900000, tzinfo=timezone.utc)
        assert duration_between(start, end) == 90

    def test_missing_or_epoch_timestamps(self):
        end = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert duration_between(None, end) == 0
        assert duration_between(datetime(1970, 1, 1, tzinfo=timezone.utc), end) == 0

    def test_never_negative(self):
        start = datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc)
        end = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert duration_between(start, end) == 0


class TestRecordCallResult:

    async def _started_campaign(self, manager, make_campaign, recipients):
        campaign = make_campaign(recipients=recipients)
        await manager.start_next_calls(campaign.id, campaign.workspace_id, CONFIG, initial=True)
        return campaign

    @pytest.mark.asyncio
    async def test_unknown_call_is_ignored(self, manager, make_campaign):
        await self._started_campaign(manager, make_campaign, 1)
        result = record_call_result("not-a-campaign-call", CallOutcome.ANSWERED, manager=manager)
        assert result.handled is False
        assert result.follow_up is None

    @pytest.mark.asyncio
    async def test_answered_call_completes_recipient(self, store, manager, make_campaign):
        campaign = await self._started_campaign(manager, make_campaign, 4)

        result = record_call_result("call-1", CallOutcome.ANSWERED, 42, 0.12, manager=manager)

        assert result.handled is True
        assert result.call_status == RecipientCallStatus.COMPLETED
        recipient = store.get_recipient(result.recipient_id)
        assert recipient.call_status == RecipientCallStatus.COMPLETED
        assert recipient.call_outcome == CallOutcome.ANSWERED
        assert recipient.call_duration_seconds == 42
        assert recipient.call_cost == 0.12
        assert recipient.call_ended_at is not None

        updated = store.get_campaign(campaign.id)
        assert updated.completed_calls == 1
        assert updated.successful_calls == 1
        assert updated.failed_calls == 0
        assert event_bus.get_recent_events(campaign.workspace_id)[0]["type"] == "campaign.call_ended"

    @pytest.mark.asyncio
    async def test_unanswered_call_fails_recipient(self, store, manager, make_campaign):
        campaign = await self._started_campaign(manager, make_campaign, 4)

        result = record_call_result("call-2", CallOutcome.VOICEMAIL, manager=manager)

        assert result.call_status == RecipientCallStatus.FAILED
        updated = store.get_campaign(campaign.id)
        assert updated.completed_calls == 1
        assert updated.failed_calls == 1

    @pytest.mark.asyncio
    async def test_follow_up_starts_next_call(self, store, manager, provider, make_campaign):
        campaign = await self._started_campaign(manager, make_campaign, 4)
        assert len(provider.requests) == 3

        result = record_call_result("call-1", CallOutcome.ANSWERED, manager=manager)
        assert result.follow_up is not None

        started = await result.follow_up()
        assert started.started == 1
        assert started.remaining == 0
        assert len(provider.requests) == 4
        assert store.count_recipients(campaign.id, [RecipientCallStatus.PENDING]) == 0

    @pytest.mark.asyncio
    async def test_follow_up_swallows_errors(self, manager, make_campaign, monkeypatch):
        await self._started_campaign(manager, make_campaign, 4)
        result = record_call_result("call-1", CallOutcome.ANSWERED, manager=manager)

        async def broken(*args, **kwargs):
            raise RuntimeError("provider down")

        monkeypatch.setattr(manager, "on_call_ended", broken)
        assert await result.follow_up() is None

    @pytest.mark.asyncio
    async def test_duplicate_webhook_changes_nothing(self, store, manager, make_campaign):
        campaign = await self._started_campaign(manager, make_campaign, 4)
        record_call_result("call-1", CallOutcome.ANSWERED, 42, manager=manager)

        again = record_call_result("call-1", CallOutcome.NO_ANSWER, 0, manager=manager)

        assert again.handled is False
        assert again.duplicate is True
        assert again.follow_up is None
        assert again.call_outcome == CallOutcome.ANSWERED
        assert store.get_campaign(campaign.id).completed_calls == 1

    @pytest.mark.asyncio
    async def test_last_call_completes_campaign(self, store, manager, make_campaign):
        campaign = await self._started_campaign(manager, make_campaign, 2)

        first = record_call_result("call-1", CallOutcome.ANSWERED, manager=manager)
        assert first.campaign_completed is False

        last = record_call_result("call-2", CallOutcome.NO_ANSWER, manager=manager)
        assert last.campaign_completed is True
        assert last.follow_up is None
        final = store.get_campaign(campaign.id)
        assert final.status == CampaignStatus.COMPLETED
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_paused_campaign_records_without_follow_up(self, store, manager, make_campaign):
        campaign = await self._started_campaign(manager, make_campaign, 4)
        store.update_campaign(campaign.id, {"status": CampaignStatus.PAUSED})

        result = record_call_result("call-1", CallOutcome.ANSWERED, manager=manager)

        assert result.handled is True
        assert result.follow_up is None
        assert store.get_campaign(campaign.id).status == CampaignStatus.PAUSED

    @pytest.mark.asyncio
    async def test_other_workspace_is_ignored(self, store, manager, make_campaign):
        await self._started_campaign(manager, make_campaign, 1)

        result = record_call_result("call-1", CallOutcome.ANSWERED, workspace_id="someone-else", manager=manager)

        assert result.handled is False
        assert store.get_recipient_by_external_call_id("call-1").call_status == RecipientCallStatus.CALLING
