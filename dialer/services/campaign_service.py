"""Campaign lifecycle operations behind the workspace API.

Route handlers call these with the resolved workspace; every failure is
raised as a DialerError and mapped onto an HTTP status by the API layer.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from dialer.config import settings
from dialer.errors import (
    CampaignNotFound,
    InvalidCampaignState,
    ProviderCallError,
    ProviderConfigError,
    RecipientNotFound,
    ValidationFailed,
)
from dialer.models.database import (
    TERMINAL_STATUSES,
    CallRecipient,
    Campaign,
    CampaignCreate,
    CampaignHealth,
    CampaignResponse,
    CampaignScheduleType,
    CampaignStatus,
    CampaignUpdate,
    ProcessStuckResponse,
    RecipientCallStatus,
    RecipientCreate,
    RecipientImportResult,
    StartCampaignResponse,
    StuckCampaignResult,
    StuckStatusResponse,
    TestCallResponse,
    Workspace,
    check_schedule_window,
)
from dialer.services import event_bus
from dialer.services.business_hours import is_within_business_hours, outside_hours_message
from dialer.services.call_queue import (
    CallQueueManager,
    ProviderConfig,
    StartCallsResult,
    get_queue_manager,
)
from dialer.services.database import CampaignStore, utcnow
from dialer.services.event_bus import EventType
from dialer.services.phone import normalize_recipient_number
from dialer.services.providers import OutboundCallRequest, provider_registry
from dialer.services.stale_calls import cleanup_stale_calls


class CampaignService:
    """Workspace-scoped campaign operations."""

    def __init__(self, manager: CallQueueManager | None = None) -> None:
        self.manager = manager or get_queue_manager()

    @property
    def store(self) -> CampaignStore:
        return self.manager.store

    # ── Helpers ──────────────────────────────────────────────────

    def _get(self, workspace: Workspace, campaign_id: str) -> Campaign:
        campaign = self.store.get_campaign(campaign_id, workspace.id)
        if campaign is None:
            raise CampaignNotFound(campaign_id)
        return campaign

    def to_response(self, campaign: Campaign) -> CampaignResponse:
        data = campaign.model_dump()
        data["pending_calls"] = self.store.count_recipients(campaign.id, [RecipientCallStatus.PENDING])
        return CampaignResponse(**data)

    def _check_agent(self, workspace: Workspace, agent_id: str) -> None:
        if self.store.get_agent(agent_id, workspace.id) is None:
            raise ValidationFailed("Agent not found or does not belong to this workspace")

    def _require_dialable_agent(self, campaign: Campaign) -> None:
        agent = self.store.get_agent(campaign.agent_id, campaign.workspace_id)
        if agent is None or not agent.is_active:
            raise InvalidCampaignState("Campaign agent is not active")
        if not agent.external_agent_id:
            raise InvalidCampaignState("Agent has not been synced with the voice provider")
        if agent.provider.value not in provider_registry.providers:
            raise ProviderConfigError(f"Outbound campaigns are not supported for {agent.provider.value} agents")

    def _require_provider_config(self, campaign: Campaign) -> ProviderConfig:
        config = self.manager.resolve_provider_config(campaign.id)
        if config is None:
            agent = self.store.get_agent(campaign.agent_id)
            provider = agent.provider.value if agent else "Provider"
            raise ProviderConfigError(
                f"{provider} integration not configured properly. Check that the integration "
                f"has API keys and a shared outbound phone number configured."
            )
        return config

    def _pending(self, campaign_id: str) -> int:
        return self.store.count_recipients(campaign_id, [RecipientCallStatus.PENDING])

    def _refresh_total(self, campaign_id: str) -> None:
        self.store.update_campaign(campaign_id, {"total_recipients": self.store.count_recipients(campaign_id)})

    # ── CRUD ─────────────────────────────────────────────────────

    def list_campaigns(self, workspace: Workspace, status: CampaignStatus | None = None) -> list[Campaign]:
        return self.store.list_campaigns(workspace.id, [status] if status else None)

    def get_campaign(self, workspace: Workspace, campaign_id: str) -> Campaign:
        return self._get(workspace, campaign_id)

    def create_campaign(self, workspace: Workspace, data: CampaignCreate) -> Campaign:
        self._check_agent(workspace, data.agent_id)
        if data.schedule_type == CampaignScheduleType.SCHEDULED and data.scheduled_start_at is None:
            raise ValidationFailed("Scheduled campaigns need a scheduled_start_at")
        campaign = Campaign(
            workspace_id=workspace.id,
            timezone=data.timezone or settings.default_timezone,
            **data.model_dump(exclude={"timezone"}),
        )
        created = self.store.create_campaign(campaign)
        logger.info(f"Campaign created: {created.id} ({created.name}) in workspace {workspace.slug}")
        return created

    def update_campaign(self, workspace: Workspace, campaign_id: str, data: CampaignUpdate) -> Campaign:
        existing = self._get(workspace, campaign_id)
        updates: dict[str, Any] = {field: getattr(data, field) for field in data.model_fields_set}
        if "agent_id" in updates:
            self._check_agent(workspace, updates["agent_id"])
        try:
            check_schedule_window(
                updates.get("scheduled_start_at", existing.scheduled_start_at),
                updates.get("scheduled_expires_at", existing.scheduled_expires_at),
            )
        except ValueError as e:
            raise ValidationFailed(str(e)) from e

        new_status = updates.get("status")
        if new_status == CampaignStatus.ACTIVE and existing.status == CampaignStatus.DRAFT:
            updates["started_at"] = utcnow()
        if new_status in (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED):
            updates["completed_at"] = utcnow()

        return self.store.update_campaign(campaign_id, updates) or existing

    def delete_campaign(self, workspace: Workspace, campaign_id: str) -> bool:
        """Delete a campaign and its recipients. Returns True if it was running."""
        campaign = self._get(workspace, campaign_id)
        terminated = campaign.status in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED)
        if terminated:
            self.terminate_campaign(workspace, campaign_id)
        self.store.delete_campaign(campaign_id)
        logger.info(f"Campaign deleted: {campaign_id}{' (terminated first)' if terminated else ''}")
        return terminated

    # ── Lifecycle ────────────────────────────────────────────────

    async def start_campaign(self, workspace: Workspace, campaign_id: str) -> StartCampaignResponse:
        """Activate a campaign and seed its call chain.

        Returns as soon as the initial batch is placed; webhooks carry the
        campaign from there.
        """
        campaign = self._get(workspace, campaign_id)

        if campaign.status == CampaignStatus.ACTIVE:
            raise InvalidCampaignState("Campaign is already active")
        if campaign.status in (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED):
            raise InvalidCampaignState("Cannot start a completed or cancelled campaign")
        if campaign.status == CampaignStatus.SCHEDULED:
            raise InvalidCampaignState("Scheduled campaigns start automatically at the scheduled time")
        if campaign.status not in (CampaignStatus.READY, CampaignStatus.DRAFT):
            raise InvalidCampaignState(f"Cannot start campaign with status: {campaign.status.value}")

        self._require_dialable_agent(campaign)
        config = self._require_provider_config(campaign)

        recipient_count = self._pending(campaign_id)
        if recipient_count == 0:
            raise InvalidCampaignState("No pending recipients to call. Add recipients first.")

        tz_name = campaign.effective_timezone or settings.default_timezone
        hours = campaign.business_hours_config
        if hours and hours.enabled and not is_within_business_hours(hours, tz_name):
            logger.info(f"Campaign {campaign_id} start blocked: outside business hours ({tz_name})")
            raise InvalidCampaignState(outside_hours_message(hours, tz_name))

        updated = self.store.update_campaign(campaign_id, {
            "status": CampaignStatus.ACTIVE,
            "started_at": utcnow(),
        })
        logger.info(f"Campaign {campaign_id} is now active")
        event_bus.publish(workspace.id, EventType.CAMPAIGN_STARTED, {"campaign_id": campaign_id})

        started = await self.manager.start_next_calls(campaign_id, workspace.id, config, initial=True)

        return StartCampaignResponse(
            campaign=self.to_response(self.store.get_campaign(campaign_id) or updated),
            recipient_count=recipient_count,
            initial_calls_started=started.started,
            initial_calls_failed=started.failed,
            remaining_in_queue=started.remaining,
            max_concurrent_calls=settings.max_concurrent_calls_per_campaign,
            message=f"Campaign started! {started.started} calls initiated, {started.remaining} queued.",
            warnings=started.errors[:5],
        )

    def pause_campaign(self, workspace: Workspace, campaign_id: str) -> Campaign:
        """Stop starting new calls. Calls in flight finish normally."""
        campaign = self._get(workspace, campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise InvalidCampaignState("Only active campaigns can be paused")
        updated = self.store.update_campaign(campaign_id, {"status": CampaignStatus.PAUSED})
        event_bus.publish(workspace.id, EventType.CAMPAIGN_PAUSED, {"campaign_id": campaign_id})
        logger.info(f"Campaign {campaign_id} paused")
        return updated

    async def resume_campaign(self, workspace: Workspace, campaign_id: str) -> tuple[Campaign, StartCallsResult]:
        campaign = self._get(workspace, campaign_id)
        if campaign.status != CampaignStatus.PAUSED:
            raise InvalidCampaignState("Only paused campaigns can be resumed")

        self._require_dialable_agent(campaign)
        config = self._require_provider_config(campaign)
        if self._pending(campaign_id) == 0:
            raise InvalidCampaignState("No pending recipients to resume calls for")

        self.store.update_campaign(campaign_id, {"status": CampaignStatus.ACTIVE})
        event_bus.publish(workspace.id, EventType.CAMPAIGN_RESUMED, {"campaign_id": campaign_id})
        logger.info(f"Campaign {campaign_id} resumed")

        started = await self.manager.start_next_calls(campaign_id, workspace.id, config, initial=True)
        return self.store.get_campaign(campaign_id), started

    def terminate_campaign(self, workspace: Workspace, campaign_id: str) -> Campaign:
        campaign = self._get(workspace, campaign_id)
        if campaign.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
            raise InvalidCampaignState("Only active or paused campaigns can be terminated")
        updated = self.store.update_campaign(campaign_id, {
            "status": CampaignStatus.CANCELLED,
            "completed_at": utcnow(),
        })
        self.manager.forget_campaign(campaign_id)
        event_bus.publish(workspace.id, EventType.CAMPAIGN_CANCELLED, {"campaign_id": campaign_id})
        logger.info(f"Campaign {campaign_id} terminated")
        return updated

    # ── Stuck chains ─────────────────────────────────────────────

    async def process_stuck(self, workspace: Workspace) -> ProcessStuckResponse:
        """Restart call chains that stalled because webhooks never arrived.

        Stale calls are failed first; campaigns that still have calls in
        ``calling`` are left to their webhooks.
        """
        campaigns = [
            c for c in self.store.list_campaigns(workspace.id, [CampaignStatus.ACTIVE])
            if self._pending(c.id) > 0
        ]
        if not campaigns:
            return ProcessStuckResponse(message="No stuck campaigns found")

        results: list[StuckCampaignResult] = []
        for campaign in campaigns:
            pending = self._pending(campaign.id)
            entry = StuckCampaignResult(campaign_id=campaign.id, campaign_name=campaign.name, remaining=pending)
            results.append(entry)

            cleanup = cleanup_stale_calls(campaign.id, store=self.store)
            entry.stale_cleaned = cleanup.updated

            calling = self.store.count_recipients(campaign.id, [RecipientCallStatus.CALLING])
            if calling > 0:
                entry.error = f"Has {calling} active calls - webhook chain active"
                continue

            try:
                config = self.manager.resolve_provider_config(campaign.id)
                if config is None:
                    entry.error = "Could not resolve provider config"
                    continue

                started = await self.manager.start_next_calls(campaign.id, workspace.id, config, initial=True)
            except Exception as e:
                logger.error(f"Error processing stuck campaign {campaign.id}: {e}")
                entry.error = str(e)
                continue

            entry.started, entry.failed, entry.remaining = started.started, started.failed, started.remaining
            logger.info(f"Restarted stuck campaign {campaign.id}: {started.started} started")

        total_started = sum(r.started for r in results)
        total_failed = sum(r.failed for r in results)
        return ProcessStuckResponse(
            message=f"Processed {len(campaigns)} campaigns: {total_started} calls started, {total_failed} failed",
            processed=len(campaigns),
            total_started=total_started,
            total_failed=total_failed,
            results=results,
        )

    def stuck_status(self, workspace: Workspace) -> StuckStatusResponse:
        health: list[CampaignHealth] = []
        for campaign in self.store.list_campaigns(workspace.id, [CampaignStatus.ACTIVE]):
            pending = self._pending(campaign.id)
            calling = self.store.count_recipients(campaign.id, [RecipientCallStatus.CALLING])
            finished = self.store.count_recipients(campaign.id, TERMINAL_STATUSES)
            total = campaign.total_recipients
            health.append(CampaignHealth(
                id=campaign.id,
                name=campaign.name,
                status=campaign.status,
                total_recipients=total,
                pending_calls=pending,
                completed_calls=campaign.completed_calls,
                failed_calls=campaign.failed_calls,
                calling_count=calling,
                is_stuck=pending > 0 and calling == 0,
                progress=round(finished / total * 100) if total > 0 else 0,
            ))
        return StuckStatusResponse(
            active_campaigns=len(health),
            stuck_campaigns=sum(1 for h in health if h.is_stuck),
            campaigns=health,
        )

    # ── Test call ────────────────────────────────────────────────

    async def test_call(
        self,
        workspace: Workspace,
        campaign_id: str,
        phone_number: str,
        variables: dict[str, str] | None = None,
    ) -> TestCallResponse:
        """Place one call with the campaign's agent, outside the queue."""
        campaign = self._get(workspace, campaign_id)
        self._require_dialable_agent(campaign)
        config = self._require_provider_config(campaign)

        provider = self.manager.provider_factory(config)
        result = await provider.create_outbound_call(OutboundCallRequest(
            agent_id=config.agent_id,
            customer_number=normalize_recipient_number(phone_number),
            phone_number_id=config.phone_number_id,
            from_number=config.from_number,
            variables=variables or {},
            metadata={"campaign_id": campaign_id, "test_call": True},
        ))
        if not result.success:
            logger.error(f"Test call for campaign {campaign_id} failed: {result.error}")
            raise ProviderCallError(result.error or "Failed to create test call", result.status_code)

        logger.info(f"Test call placed for campaign {campaign_id}: {result.call_id}")
        return TestCallResponse(success=True, provider=config.provider, call_id=result.call_id)

    # ── Recipients ───────────────────────────────────────────────

    def list_recipients(
        self,
        workspace: Workspace,
        campaign_id: str,
        status: RecipientCallStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CallRecipient]:
        self._get(workspace, campaign_id)
        return self.store.list_recipients(campaign_id, status, limit=limit, offset=offset)

    def _build_recipient(self, workspace: Workspace, campaign_id: str, data: RecipientCreate) -> CallRecipient:
        return CallRecipient(
            campaign_id=campaign_id,
            workspace_id=workspace.id,
            **{**data.model_dump(), "phone_number": normalize_recipient_number(data.phone_number)},
        )

    def add_recipient(self, workspace: Workspace, campaign_id: str, data: RecipientCreate) -> CallRecipient:
        self._get(workspace, campaign_id)
        inserted = self.store.add_recipients([self._build_recipient(workspace, campaign_id, data)])
        if not inserted:
            raise ValidationFailed("This phone number already exists in this campaign")
        self._refresh_total(campaign_id)
        return inserted[0]

    def import_recipients(
        self, workspace: Workspace, campaign_id: str, recipients: list[RecipientCreate]
    ) -> RecipientImportResult:
        """Bulk add recipients; numbers already in the campaign are skipped."""
        self._get(workspace, campaign_id)
        records = [self._build_recipient(workspace, campaign_id, r) for r in recipients]
        inserted = self.store.add_recipients(records)
        self._refresh_total(campaign_id)
        logger.info(f"Imported {len(inserted)}/{len(records)} recipients into campaign {campaign_id}")
        return RecipientImportResult(
            imported=len(inserted),
            total=len(records),
            duplicates=len(records) - len(inserted),
        )

    def delete_recipients(
        self,
        workspace: Workspace,
        campaign_id: str,
        recipient_id: str | None = None,
        delete_all: bool = False,
    ) -> int:
        campaign = self._get(workspace, campaign_id)
        if campaign.status == CampaignStatus.ACTIVE:
            raise InvalidCampaignState("Cannot delete recipients from an active campaign")

        if delete_all:
            deleted = self.store.delete_all_recipients(campaign_id)
        elif recipient_id:
            if not self.store.delete_recipient(campaign_id, recipient_id):
                raise RecipientNotFound(recipient_id)
            deleted = 1
        else:
            raise ValidationFailed("Please specify recipient_id or delete_all=true")

        self._refresh_total(campaign_id)
        return deleted
