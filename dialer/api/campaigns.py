"""Workspace campaign API routes.

CRUD, recipients, and the lifecycle actions (start, pause, resume,
terminate) plus the process-stuck polling fallback.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from dialer.middleware.auth import get_workspace
from dialer.models.database import (
    CallRecipient,
    CampaignActionResponse,
    CampaignCreate,
    CampaignResponse,
    CampaignStatus,
    CampaignUpdate,
    ProcessStuckResponse,
    RecipientCallStatus,
    RecipientCreate,
    RecipientImport,
    RecipientImportResult,
    StartCampaignResponse,
    StuckStatusResponse,
    TestCallRequest,
    TestCallResponse,
    Workspace,
)
from dialer.services import event_bus
from dialer.services.campaign_service import CampaignService

router = APIRouter(prefix="/w/{workspace_slug}/campaigns", tags=["Campaigns"])


def get_campaign_service() -> CampaignService:
    return CampaignService()


# ──────────────────────────────────────────────────────────────────
# Stuck campaign fallback
# ──────────────────────────────────────────────────────────────────

@router.get("/process-stuck", response_model=StuckStatusResponse)
async def stuck_campaign_status(
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    """Report active campaigns and whether their call chain has stalled."""
    return service.stuck_status(workspace)


@router.post("/process-stuck", response_model=ProcessStuckResponse)
async def process_stuck_campaigns(
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    """Restart stalled call chains. Safe to poll every 30 seconds."""
    return await service.process_stuck(workspace)


# ──────────────────────────────────────────────────────────────────
# CRUD Endpoints
# ──────────────────────────────────────────────────────────────────

@router.get("", response_model=list[CampaignResponse])
async def list_all_campaigns(
    status_filter: CampaignStatus | None = Query(None, alias="status"),
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    return [service.to_response(c) for c in service.list_campaigns(workspace, status_filter)]


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_new_campaign(
    body: CampaignCreate,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    return service.to_response(service.create_campaign(workspace, body))


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_single_campaign(
    campaign_id: str,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    return service.to_response(service.get_campaign(workspace, campaign_id))


@router.patch("/{campaign_id}", response_model=CampaignResponse)
async def update_existing_campaign(
    campaign_id: str,
    body: CampaignUpdate,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    return service.to_response(service.update_campaign(workspace, campaign_id, body))


@router.delete("/{campaign_id}")
async def delete_existing_campaign(
    campaign_id: str,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    """Delete a campaign, terminating it first if it is running."""
    terminated = service.delete_campaign(workspace, campaign_id)
    return {"success": True, "terminated": terminated}


# ──────────────────────────────────────────────────────────────────
# Recipients
# ──────────────────────────────────────────────────────────────────

@router.get("/{campaign_id}/recipients", response_model=list[CallRecipient])
async def list_campaign_recipients(
    campaign_id: str,
    status_filter: RecipientCallStatus | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    return service.list_recipients(workspace, campaign_id, status_filter, limit=limit, offset=offset)


@router.post("/{campaign_id}/recipients", response_model=CallRecipient, status_code=status.HTTP_201_CREATED)
async def add_campaign_recipient(
    campaign_id: str,
    body: RecipientCreate,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    return service.add_recipient(workspace, campaign_id, body)


@router.post(
    "/{campaign_id}/recipients/import",
    response_model=RecipientImportResult,
    status_code=status.HTTP_201_CREATED,
)
async def import_campaign_recipients(
    campaign_id: str,
    body: RecipientImport,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    """Bulk import; numbers already in the campaign count as duplicates."""
    return service.import_recipients(workspace, campaign_id, body.recipients)


@router.delete("/{campaign_id}/recipients")
async def delete_campaign_recipients(
    campaign_id: str,
    recipient_id: str | None = Query(None),
    delete_all: bool = Query(False),
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    deleted = service.delete_recipients(workspace, campaign_id, recipient_id, delete_all)
    return {"success": True, "deleted": deleted}


# ──────────────────────────────────────────────────────────────────
# Lifecycle
# ──────────────────────────────────────────────────────────────────

@router.post("/{campaign_id}/start", response_model=StartCampaignResponse)
async def start_campaign(
    campaign_id: str,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    """Start a campaign: place the first few calls and let webhooks do the rest."""
    return await service.start_campaign(workspace, campaign_id)


@router.post("/{campaign_id}/pause", response_model=CampaignActionResponse)
async def pause_campaign(
    campaign_id: str,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    campaign = service.pause_campaign(workspace, campaign_id)
    return CampaignActionResponse(
        campaign=service.to_response(campaign),
        message="Campaign paused. Calls in progress will finish.",
    )


@router.post("/{campaign_id}/resume", response_model=CampaignActionResponse)
async def resume_campaign(
    campaign_id: str,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    campaign, started = await service.resume_campaign(workspace, campaign_id)
    return CampaignActionResponse(
        campaign=service.to_response(campaign),
        message=f"Campaign resumed. {started.started} calls initiated, {started.remaining} queued.",
        calls_started=started.started,
    )


@router.post("/{campaign_id}/terminate", response_model=CampaignActionResponse)
async def terminate_campaign(
    campaign_id: str,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    campaign = service.terminate_campaign(workspace, campaign_id)
    return CampaignActionResponse(campaign=service.to_response(campaign), message="Campaign terminated")


@router.post("/{campaign_id}/test-call", response_model=TestCallResponse)
async def place_test_call(
    campaign_id: str,
    body: TestCallRequest,
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    return await service.test_call(workspace, campaign_id, body.phone_number, body.variables)


@router.get("/{campaign_id}/events")
async def campaign_events(
    campaign_id: str,
    since: str | None = Query(None, description="ISO 8601 timestamp"),
    limit: int = Query(20, ge=1, le=100),
    workspace: Workspace = Depends(get_workspace),
    service: CampaignService = Depends(get_campaign_service),
):
    """Recent live-progress events for a campaign (newest first)."""
    service.get_campaign(workspace, campaign_id)
    if since:
        events = [
            e for e in event_bus.get_events_since(workspace.id, since, limit=100)
            if e["payload"].get("campaign_id") == campaign_id
        ]
        return {"events": list(reversed(events))[:limit]}
    return {"events": event_bus.get_recent_events(workspace.id, limit=limit, campaign_id=campaign_id)}
