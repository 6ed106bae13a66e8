"""Stale call cleanup.

Recovers recipients stuck in ``calling`` because the provider never
delivered an end-of-call webhook.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from loguru import logger

from dialer.config import settings
from dialer.models.database import (
    IN_PROGRESS_STATUSES,
    CallOutcome,
    CampaignStatus,
    RecipientCallStatus,
)
from dialer.services import event_bus
from dialer.services.database import CampaignStore, get_store, utcnow
from dialer.services.event_bus import EventType


@dataclass
class StaleCallCleanupResult:
    success: bool
    campaign_id: str
    found: int = 0
    updated: int = 0
    campaign_completed: bool = False
    error: str | None = None


@dataclass
class BulkCleanupResult:
    success: bool
    campaigns_processed: int = 0
    total_stale_recipients: int = 0
    total_campaigns_completed: int = 0


def check_and_complete_campaign(campaign_id: str, store: CampaignStore | None = None) -> bool:
    """Complete an active campaign with no recipients left in progress."""
    store = store or get_store()

    in_progress = store.count_recipients(campaign_id, IN_PROGRESS_STATUSES)
    if in_progress > 0:
        logger.debug(f"Campaign {campaign_id} still has {in_progress} recipients in progress")
        return False

    campaign = store.get_campaign(campaign_id)
    if campaign is None or campaign.status != CampaignStatus.ACTIVE:
        return False

    if not store.complete_campaign_if_active(campaign_id):
        return False
    logger.info(f"Campaign {campaign_id} has no more recipients to process, marked completed")
    event_bus.publish(campaign.workspace_id, EventType.CAMPAIGN_COMPLETED, {"campaign_id": campaign_id})
    return True


def cleanup_stale_calls(
    campaign_id: str,
    threshold_minutes: int | None = None,
    store: CampaignStore | None = None,
) -> StaleCallCleanupResult:
    """Fail ``calling`` recipients older than the threshold.

    Each one counts as a completed, failed call on the campaign.
    """
    store = store or get_store()
    minutes = threshold_minutes if threshold_minutes is not None else settings.stale_call_threshold_minutes
    cutoff = utcnow() - timedelta(minutes=minutes)

    try:
        stale = store.list_calling_started_before(campaign_id, cutoff)
        logger.debug(f"Campaign {campaign_id}: {len(stale)} calls older than {minutes} minutes")

        updated = 0
        for recipient in stale:
            row = store.update_recipient(recipient.id, {
                "call_status": RecipientCallStatus.FAILED,
                "call_outcome": CallOutcome.ERROR,
                "call_ended_at": utcnow(),
                "last_error": f"Call timed out - no response received within {minutes} minutes",
            })
            if row is not None:
                updated += 1
                logger.warning(f"Recipient {recipient.id} ({recipient.phone_number}) timed out, marked failed")

        if updated:
            store.increment_campaign_stats(campaign_id, completed=updated, failed=updated)
            campaign = store.get_campaign(campaign_id)
            if campaign is not None:
                event_bus.publish(campaign.workspace_id, EventType.STALE_CALLS_CLEANED, {
                    "campaign_id": campaign_id,
                    "count": updated,
                })

        completed = check_and_complete_campaign(campaign_id, store)
    except Exception as e:
        logger.error(f"Stale call cleanup failed for campaign {campaign_id}: {e}")
        return StaleCallCleanupResult(success=False, campaign_id=campaign_id, error=str(e))

    if stale:
        logger.info(f"Stale cleanup for campaign {campaign_id}: {updated}/{len(stale)} recipients updated")
    return StaleCallCleanupResult(
        success=True,
        campaign_id=campaign_id,
        found=len(stale),
        updated=updated,
        campaign_completed=completed,
    )


def cleanup_all_active_campaigns(store: CampaignStore | None = None) -> BulkCleanupResult:
    """Run stale cleanup over every active campaign."""
    store = store or get_store()
    try:
        campaigns = store.list_campaigns(statuses=[CampaignStatus.ACTIVE])
    except Exception as e:
        logger.error(f"Could not list active campaigns for stale cleanup: {e}")
        return BulkCleanupResult(success=False)

    logger.info(f"Stale cleanup: checking {len(campaigns)} active campaigns")
    result = BulkCleanupResult(success=True, campaigns_processed=len(campaigns))
    for campaign in campaigns:
        cleanup = cleanup_stale_calls(campaign.id, store=store)
        result.total_stale_recipients += cleanup.updated
        if cleanup.campaign_completed:
            result.total_campaigns_completed += 1
    return result
