"""Time-driven campaign jobs run from the cron endpoints.

- start scheduled campaigns whose start time has passed
- cancel draft campaigns past their expiry date
- delete wizard drafts that were never finished
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from loguru import logger

from dialer.config import settings
from dialer.models.database import Campaign, CampaignStatus, RecipientCallStatus
from dialer.services import event_bus
from dialer.services.business_hours import (
    format_next_window,
    is_within_business_hours,
    next_business_hours_window,
)
from dialer.services.call_queue import CallQueueManager, get_queue_manager
from dialer.services.database import CampaignStore, get_store, utcnow
from dialer.services.event_bus import EventType


# ──────────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────────

@dataclass
class ScheduledCampaignDetail:
    campaign_id: str
    campaign_name: str
    status: str  # "started" | "skipped" | "error"
    reason: str | None = None
    calls_started: int = 0


@dataclass
class StartScheduledResult:
    success: bool = True
    started_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[ScheduledCampaignDetail] = field(default_factory=list)


@dataclass
class CleanupResult:
    success: bool = True
    count: int = 0
    errors: list[str] = field(default_factory=list)


# ──────────────────────────────────────────────────────────────────
# Scheduled starts
# ──────────────────────────────────────────────────────────────────

def _skip_reason(manager: CallQueueManager, campaign: Campaign) -> str | None:
    agent = manager.store.get_agent(campaign.agent_id)
    if agent is None:
        return "Campaign has no associated agent"
    if not agent.is_active:
        return "Agent is not active"
    if not agent.external_agent_id:
        return "Agent not synced with voice provider"

    tz_name = campaign.effective_timezone or "UTC"
    if not is_within_business_hours(campaign.business_hours_config, tz_name):
        window = next_business_hours_window(campaign.business_hours_config, tz_name)
        if window is None:
            return "Outside business hours"
        return f"Outside business hours. Next window: {format_next_window(window, tz_name)}"

    if manager.store.count_recipients(campaign.id, [RecipientCallStatus.PENDING]) == 0:
        return "No pending recipients"
    return None


async def start_scheduled_campaigns(manager: CallQueueManager | None = None) -> StartScheduledResult:
    """Activate scheduled campaigns that are due and seed their call chain.

    Campaigns outside business hours stay scheduled and are picked up by
    a later run.
    """
    manager = manager or get_queue_manager()
    store = manager.store
    result = StartScheduledResult()

    try:
        due = store.list_due_scheduled_campaigns(utcnow())
    except Exception as e:
        logger.error(f"Failed to fetch scheduled campaigns: {e}")
        result.success = False
        result.errors.append(f"Failed to fetch scheduled campaigns: {e}")
        return result

    if not due:
        logger.debug("No scheduled campaigns ready to start")
        return result

    logger.info(f"Found {len(due)} scheduled campaign(s) ready to start")

    for campaign in due:
        detail = ScheduledCampaignDetail(campaign.id, campaign.name, "started")
        result.details.append(detail)

        reason = _skip_reason(manager, campaign)
        if reason is not None:
            detail.status, detail.reason = "skipped", reason
            result.skipped_count += 1
            logger.info(f"Skipping scheduled campaign {campaign.id}: {reason}")
            continue

        config = manager.resolve_provider_config(campaign.id)
        if config is None:
            detail.status, detail.reason = "skipped", "Provider integration not configured"
            result.skipped_count += 1
            logger.info(f"Skipping scheduled campaign {campaign.id}: no provider config")
            continue

        try:
            now = utcnow()
            store.update_campaign(campaign.id, {"status": CampaignStatus.ACTIVE, "started_at": now})
            event_bus.publish(campaign.workspace_id, EventType.CAMPAIGN_STARTED, {
                "campaign_id": campaign.id,
                "scheduled": True,
            })
            started = await manager.start_next_calls(campaign.id, campaign.workspace_id, config, initial=True)
        except Exception as e:
            detail.status, detail.reason = "error", str(e)
            result.errors.append(f"Campaign {campaign.name} ({campaign.id}): {e}")
            logger.error(f"Error starting scheduled campaign {campaign.id}: {e}")
            continue

        detail.calls_started = started.started
        result.started_count += 1
        logger.info(f"Started scheduled campaign {campaign.id}: {started.started} calls initiated")

    result.success = not result.errors
    logger.info(
        f"Scheduled start complete: started={result.started_count} "
        f"skipped={result.skipped_count} errors={len(result.errors)}"
    )
    return result


# ──────────────────────────────────────────────────────────────────
# Expiry and draft cleanup
# ──────────────────────────────────────────────────────────────────

def cleanup_expired_campaigns(store: CampaignStore | None = None) -> CleanupResult:
    """Cancel draft campaigns whose expiry date has passed."""
    store = store or get_store()
    result = CleanupResult()

    try:
        expired = store.list_expired_drafts(utcnow())
    except Exception as e:
        logger.error(f"Failed to fetch expired campaigns: {e}")
        return CleanupResult(success=False, errors=[f"Failed to fetch expired campaigns: {e}"])

    for campaign in expired:
        try:
            store.update_campaign(campaign.id, {"status": CampaignStatus.CANCELLED})
        except Exception as e:
            logger.error(f"Failed to cancel expired campaign {campaign.id}: {e}")
            result.errors.append(f"Campaign {campaign.name} ({campaign.id}): {e}")
            continue
        result.count += 1
        logger.info(f"Cancelled expired campaign: {campaign.name} ({campaign.id})")

    result.success = not result.errors
    return result


def cleanup_old_incomplete_drafts(store: CampaignStore | None = None) -> CleanupResult:
    """Delete wizard drafts never completed within the retention period."""
    store = store or get_store()
    result = CleanupResult()
    cutoff = utcnow() - timedelta(hours=settings.draft_retention_hours)

    try:
        drafts = store.list_incomplete_drafts_before(cutoff)
    except Exception as e:
        logger.error(f"Failed to fetch incomplete drafts: {e}")
        return CleanupResult(success=False, errors=[f"Failed to fetch incomplete drafts: {e}"])

    for campaign in drafts:
        try:
            store.delete_campaign(campaign.id)
        except Exception as e:
            logger.error(f"Failed to delete draft {campaign.id}: {e}")
            result.errors.append(f"Draft {campaign.id}: {e}")
            continue
        result.count += 1

    if result.count:
        logger.info(f"Deleted {result.count} incomplete draft(s) older than {settings.draft_retention_hours}h")
    result.success = not result.errors
    return result


def campaigns_expiring_soon(hours: int = 24, store: CampaignStore | None = None) -> list[Campaign]:
    """Draft campaigns that expire within the next *hours*."""
    store = store or get_store()
    now = utcnow()
    return store.list_drafts_expiring_between(now, now + timedelta(hours=hours))
