"""Recording call outcomes from provider webhooks.

When a campaign call ends the recipient is finalised, campaign counters
are bumped, and either the campaign completes or the next call is
started (the webhook-driven chain).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from loguru import logger

from dialer.models.database import (
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    CallOutcome,
    CampaignStatus,
    RecipientCallStatus,
)
from dialer.services import event_bus
from dialer.services.call_queue import CallQueueManager, StartCallsResult, get_queue_manager
from dialer.services.database import utcnow
from dialer.services.event_bus import EventType


# ──────────────────────────────────────────────────────────────────
# Outcome mapping
# ──────────────────────────────────────────────────────────────────

def map_vapi_ended_reason(
    ended_reason: str | None,
    duration_seconds: float | None = None,
    has_transcript: bool = False,
) -> CallOutcome:
    """Map a Vapi ``endedReason`` onto a call outcome.

    Order matters: "dial-busy-or-failed" is busy, not error.
    """
    duration = duration_seconds or 0

    if not ended_reason:
        return CallOutcome.ANSWERED if duration > 10 else CallOutcome.NO_ANSWER

    reason = ended_reason.lower()

    if any(r in reason for r in (
        "customer-ended-call", "assistant-ended-call", "max-duration-reached", "exceeded-max-cost",
    )):
        return CallOutcome.ANSWERED

    if any(r in reason for r in ("customer-did-not-answer", "no-answer", "no_answer")):
        return CallOutcome.NO_ANSWER

    if "busy" in reason:
        return CallOutcome.BUSY

    if any(r in reason for r in ("voicemail", "machine-detected", "answering-machine")):
        return CallOutcome.VOICEMAIL

    if any(r in reason for r in ("failed", "error", "websocket")):
        return CallOutcome.ERROR

    if "cancelled" in reason or "canceled" in reason:
        return CallOutcome.DECLINED

    # Answered, but nobody spoke
    if "silence-timed-out" in reason:
        if has_transcript or duration > 15:
            return CallOutcome.ANSWERED
        return CallOutcome.NO_ANSWER

    if has_transcript or duration > 10:
        logger.info(f"Unknown endedReason '{ended_reason}', assuming answered from duration/transcript")
        return CallOutcome.ANSWERED

    logger.info(f"Unknown endedReason '{ended_reason}', assuming no_answer")
    return CallOutcome.NO_ANSWER


def map_retell_disconnection_reason(
    reason: str | None,
    duration_seconds: float | None = None,
    in_voicemail: bool = False,
    has_transcript: bool = False,
) -> CallOutcome:
    """Map a Retell ``disconnection_reason`` onto a call outcome."""
    duration = duration_seconds or 0

    if reason == "dial_no_answer":
        return CallOutcome.NO_ANSWER
    if reason == "dial_busy":
        return CallOutcome.BUSY
    if reason in ("dial_failed", "invalid_destination"):
        return CallOutcome.INVALID_NUMBER
    if reason == "voicemail_reached" or in_voicemail:
        return CallOutcome.VOICEMAIL
    if reason and reason.startswith("error_"):
        return CallOutcome.ERROR
    if reason in ("user_hangup", "agent_hangup", "call_transfer", "max_duration_reached", "inactivity"):
        if reason == "inactivity" and not (has_transcript or duration > 15):
            return CallOutcome.NO_ANSWER
        return CallOutcome.ANSWERED

    if has_transcript or duration > 10:
        return CallOutcome.ANSWERED
    return CallOutcome.NO_ANSWER


def duration_between(started_at: datetime | None, ended_at: datetime | None) -> int:
    """Whole seconds between two provider timestamps.

    Providers occasionally send epoch-zero timestamps; anything before
    2000 is treated as missing.
    """
    if started_at is None or ended_at is None:
        return 0
    if started_at.year <= 2000 or ended_at.year <= 2000:
        return 0
    return max(0, int((ended_at - started_at).total_seconds()))


# ──────────────────────────────────────────────────────────────────
# Recording results
# ──────────────────────────────────────────────────────────────────

FollowUp = Callable[[], Awaitable[StartCallsResult | None]]


@dataclass
class CallResultOutcome:
    """What recording a call result did."""

    handled: bool
    recipient_id: str | None = None
    campaign_id: str | None = None
    call_status: RecipientCallStatus | None = None
    call_outcome: CallOutcome | None = None
    duplicate: bool = False
    campaign_completed: bool = False
    follow_up: FollowUp | None = None  # start the next call; run after responding


def record_call_result(
    external_call_id: str,
    outcome: CallOutcome,
    duration_seconds: float | None = None,
    cost: float | None = None,
    workspace_id: str | None = None,
    manager: CallQueueManager | None = None,
) -> CallResultOutcome:
    """Finalise the recipient behind a provider call id.

    Calls that do not belong to a campaign (or to *workspace_id*, when
    given) are ignored. A repeated webhook for a recipient that is
    already final changes nothing.
    """
    manager = manager or get_queue_manager()
    store = manager.store

    recipient = store.get_recipient_by_external_call_id(external_call_id)
    if recipient is None:
        logger.debug(f"No campaign recipient for call {external_call_id}")
        return CallResultOutcome(handled=False)
    if workspace_id and recipient.workspace_id != workspace_id:
        logger.warning(f"Call {external_call_id} belongs to another workspace, ignoring")
        return CallResultOutcome(handled=False)

    if recipient.call_status in TERMINAL_STATUSES:
        logger.info(f"Duplicate result for call {external_call_id} (recipient {recipient.id} already {recipient.call_status.value})")
        return CallResultOutcome(
            handled=False,
            recipient_id=recipient.id,
            campaign_id=recipient.campaign_id,
            call_status=recipient.call_status,
            call_outcome=recipient.call_outcome,
            duplicate=True,
        )

    successful = outcome == CallOutcome.ANSWERED
    final_status = RecipientCallStatus.COMPLETED if successful else RecipientCallStatus.FAILED
    store.update_recipient(recipient.id, {
        "call_status": final_status,
        "call_outcome": outcome,
        "call_ended_at": utcnow(),
        "call_duration_seconds": duration_seconds or 0,
        "call_cost": cost or 0,
    })
    store.increment_campaign_stats(
        recipient.campaign_id,
        completed=1,
        successful=1 if successful else 0,
        failed=0 if successful else 1,
    )
    logger.info(f"Recipient {recipient.id} finalised: status={final_status.value} outcome={outcome.value}")
    event_bus.publish(recipient.workspace_id, EventType.CALL_ENDED, {
        "campaign_id": recipient.campaign_id,
        "recipient_id": recipient.id,
        "call_id": external_call_id,
        "outcome": outcome.value,
    })

    result = CallResultOutcome(
        handled=True,
        recipient_id=recipient.id,
        campaign_id=recipient.campaign_id,
        call_status=final_status,
        call_outcome=outcome,
    )

    campaign = store.get_campaign(recipient.campaign_id)
    if campaign is None or campaign.status != CampaignStatus.ACTIVE:
        # Paused or cancelled: the in-flight call is recorded, the chain stops
        return result

    remaining = store.count_recipients(campaign.id, IN_PROGRESS_STATUSES)
    if remaining == 0:
        if store.complete_campaign_if_active(campaign.id):
            logger.info(f"Campaign {campaign.id} completed, all recipients processed")
            event_bus.publish(campaign.workspace_id, EventType.CAMPAIGN_COMPLETED, {"campaign_id": campaign.id})
            result.campaign_completed = True
        return result

    config = manager.resolve_provider_config(campaign.id)
    if config is None:
        logger.error(f"Could not resolve provider config for campaign {campaign.id}; chain stalled until cron")
        return result

    campaign_id, workspace_id = campaign.id, campaign.workspace_id

    async def start_next() -> StartCallsResult | None:
        try:
            started = await manager.on_call_ended(campaign_id, workspace_id, config)
        except Exception:
            logger.exception(f"Failed to start next call for campaign {campaign_id}")
            return None
        logger.info(f"Next call for campaign {campaign_id}: started={started.started} remaining={started.remaining}")
        return started

    result.follow_up = start_next
    return result
