"""Cron endpoints.

Run from an external scheduler (every minute for ``/campaigns``, hourly
for ``/master``). Each job runs independently; one failing job is
reported in ``errors`` without stopping the others.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends
from loguru import logger

from dialer.middleware.auth import verify_cron_secret
from dialer.models.database import CampaignStatus, CronRunResponse
from dialer.services.campaign_service import CampaignService
from dialer.services.call_queue import get_queue_manager
from dialer.services.scheduler import (
    campaigns_expiring_soon,
    cleanup_expired_campaigns,
    cleanup_old_incomplete_drafts,
    start_scheduled_campaigns,
)
from dialer.services.stale_calls import cleanup_all_active_campaigns

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(verify_cron_secret)])


async def restart_stuck_campaigns(service: CampaignService) -> dict:
    """Run the process-stuck fallback for every workspace with active campaigns."""
    workspace_ids = sorted({c.workspace_id for c in service.store.list_campaigns(statuses=[CampaignStatus.ACTIVE])})
    processed = started = 0
    for workspace_id in workspace_ids:
        workspace = service.store.get_workspace(workspace_id)
        if workspace is None:
            logger.warning(f"Active campaigns reference missing workspace {workspace_id}")
            continue
        result = await service.process_stuck(workspace)
        processed += result.processed
        started += result.total_started
    return {"workspaces": len(workspace_ids), "campaigns_processed": processed, "calls_started": started}


@router.post("/campaigns", response_model=CronRunResponse)
async def process_campaigns():
    """Stale-call cleanup, scheduled starts, and stuck-chain restarts."""
    started_at = time.monotonic()
    manager = get_queue_manager()
    results: dict = {}
    errors: list[str] = []

    try:
        stale = cleanup_all_active_campaigns(manager.store)
        results["stale_cleanup"] = {
            "success": stale.success,
            "campaigns_processed": stale.campaigns_processed,
            "stale_recipients": stale.total_stale_recipients,
            "campaigns_completed": stale.total_campaigns_completed,
        }
    except Exception as e:
        logger.error(f"Cron stale cleanup failed: {e}")
        errors.append(f"stale_cleanup: {e}")

    try:
        scheduled = await start_scheduled_campaigns(manager)
        results["scheduled_starts"] = {
            "started": scheduled.started_count,
            "skipped": scheduled.skipped_count,
            "details": [
                {"campaign_id": d.campaign_id, "status": d.status, "reason": d.reason, "calls_started": d.calls_started}
                for d in scheduled.details
            ],
        }
        errors.extend(scheduled.errors)
    except Exception as e:
        logger.error(f"Cron scheduled start failed: {e}")
        errors.append(f"scheduled_starts: {e}")

    try:
        results["stuck_restarts"] = await restart_stuck_campaigns(CampaignService(manager))
    except Exception as e:
        logger.error(f"Cron stuck restart failed: {e}")
        errors.append(f"stuck_restarts: {e}")

    duration_ms = int((time.monotonic() - started_at) * 1000)
    logger.info(f"Campaign cron finished in {duration_ms}ms with {len(errors)} error(s)")
    return CronRunResponse(success=not errors, duration_ms=duration_ms, results=results, errors=errors)


@router.post("/master", response_model=CronRunResponse)
async def master_cron():
    """Expired-draft cancellation and old incomplete-draft cleanup."""
    started_at = time.monotonic()
    results: dict = {}
    errors: list[str] = []

    try:
        expired = cleanup_expired_campaigns()
        results["expired_campaigns"] = {"cancelled": expired.count}
        errors.extend(expired.errors)
    except Exception as e:
        logger.error(f"Cron expired-campaign cleanup failed: {e}")
        errors.append(f"expired_campaigns: {e}")

    try:
        drafts = cleanup_old_incomplete_drafts()
        results["incomplete_drafts"] = {"deleted": drafts.count}
        errors.extend(drafts.errors)
    except Exception as e:
        logger.error(f"Cron incomplete-draft cleanup failed: {e}")
        errors.append(f"incomplete_drafts: {e}")

    try:
        results["expiring_soon"] = [c.id for c in campaigns_expiring_soon()]
    except Exception as e:
        logger.error(f"Cron expiring-soon lookup failed: {e}")
        errors.append(f"expiring_soon: {e}")

    duration_ms = int((time.monotonic() - started_at) * 1000)
    logger.info(f"Master cron finished in {duration_ms}ms with {len(errors)} error(s)")
    return CronRunResponse(success=not errors, duration_ms=duration_ms, results=results, errors=errors)
