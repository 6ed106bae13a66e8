"""In-memory campaign store.

Mirrors the Supabase tables with plain dicts so the dialer can run
without a database (local development, tests). Returned rows are
copies; writes go through the update methods, like the real tables.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from dialer.models.database import (
    Agent,
    CallRecipient,
    Campaign,
    CampaignStatus,
    PhoneNumber,
    ProviderIntegration,
    RecipientCallStatus,
    VoiceProvider,
    Workspace,
)
from dialer.services.database import CampaignStore, utcnow


def _copy(row: Any) -> Any:
    return row.model_copy(deep=True) if row is not None else None


class InMemoryCampaignStore(CampaignStore):

    def __init__(self) -> None:
        self._workspaces: dict[str, Workspace] = {}
        self._agents: dict[str, Agent] = {}
        self._phone_numbers: dict[str, PhoneNumber] = {}
        self._integrations: dict[tuple[str, str], ProviderIntegration] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._recipients: dict[str, CallRecipient] = {}

    def clear(self) -> None:
        """Drop every row (for tests)."""
        for table in (
            self._workspaces, self._agents, self._phone_numbers,
            self._integrations, self._campaigns, self._recipients,
        ):
            table.clear()

    # ── Workspace resources ──────────────────────────────────────

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return _copy(self._workspaces.get(workspace_id))

    def get_workspace_by_slug(self, slug: str) -> Workspace | None:
        for ws in self._workspaces.values():
            if ws.slug == slug:
                return _copy(ws)
        return None

    def save_workspace(self, workspace: Workspace) -> Workspace:
        self._workspaces[workspace.id] = _copy(workspace)
        return workspace

    def get_agent(self, agent_id: str, workspace_id: str | None = None) -> Agent | None:
        agent = self._agents.get(agent_id)
        if agent is None or (workspace_id and agent.workspace_id != workspace_id):
            return None
        return _copy(agent)

    def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = _copy(agent)
        return agent

    def get_phone_number(self, phone_number_id: str) -> PhoneNumber | None:
        return _copy(self._phone_numbers.get(phone_number_id))

    def save_phone_number(self, phone: PhoneNumber) -> PhoneNumber:
        self._phone_numbers[phone.id] = _copy(phone)
        return phone

    def get_provider_integration(
        self, workspace_id: str, provider: VoiceProvider
    ) -> ProviderIntegration | None:
        return _copy(self._integrations.get((workspace_id, provider.value)))

    def save_provider_integration(self, integration: ProviderIntegration) -> ProviderIntegration:
        self._integrations[(integration.workspace_id, integration.provider.value)] = _copy(integration)
        return integration

    # ── Campaigns ────────────────────────────────────────────────

    def create_campaign(self, campaign: Campaign) -> Campaign:
        self._campaigns[campaign.id] = _copy(campaign)
        return _copy(campaign)

    def get_campaign(self, campaign_id: str, workspace_id: str | None = None) -> Campaign | None:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None or campaign.deleted_at is not None:
            return None
        if workspace_id and campaign.workspace_id != workspace_id:
            return None
        return _copy(campaign)

    def list_campaigns(
        self,
        workspace_id: str | None = None,
        statuses: Iterable[CampaignStatus] | None = None,
    ) -> list[Campaign]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            c for c in self._campaigns.values()
            if c.deleted_at is None
            and (workspace_id is None or c.workspace_id == workspace_id)
            and (wanted is None or c.status in wanted)
        ]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return [_copy(c) for c in rows]

    def update_campaign(self, campaign_id: str, updates: dict[str, Any]) -> Campaign | None:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            return None
        for key, value in updates.items():
            if hasattr(campaign, key):
                setattr(campaign, key, value)
        campaign.updated_at = utcnow()
        return _copy(campaign)

    def complete_campaign_if_active(self, campaign_id: str) -> bool:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None or campaign.status != CampaignStatus.ACTIVE:
            return False
        now = utcnow()
        campaign.status = CampaignStatus.COMPLETED
        campaign.completed_at = now
        campaign.updated_at = now
        return True

    def delete_campaign(self, campaign_id: str) -> bool:
        removed = self._campaigns.pop(campaign_id, None)
        self.delete_all_recipients(campaign_id)
        return removed is not None

    def increment_campaign_stats(
        self, campaign_id: str, completed: int = 0, successful: int = 0, failed: int = 0
    ) -> None:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            return
        campaign.completed_calls += completed
        campaign.successful_calls += successful
        campaign.failed_calls += failed
        campaign.updated_at = utcnow()

    def list_due_scheduled_campaigns(self, now: datetime) -> list[Campaign]:
        return [
            _copy(c) for c in self._campaigns.values()
            if c.deleted_at is None
            and c.status == CampaignStatus.SCHEDULED
            and c.scheduled_start_at is not None
            and c.scheduled_start_at <= now
        ]

    def list_expired_drafts(self, now: datetime) -> list[Campaign]:
        return [
            _copy(c) for c in self._campaigns.values()
            if c.deleted_at is None
            and c.status == CampaignStatus.DRAFT
            and c.scheduled_expires_at is not None
            and c.scheduled_expires_at < now
        ]

    def list_drafts_expiring_between(self, start: datetime, end: datetime) -> list[Campaign]:
        return [
            _copy(c) for c in self._campaigns.values()
            if c.deleted_at is None
            and c.status == CampaignStatus.DRAFT
            and c.scheduled_expires_at is not None
            and start <= c.scheduled_expires_at <= end
        ]

    def list_incomplete_drafts_before(self, cutoff: datetime) -> list[Campaign]:
        return [
            _copy(c) for c in self._campaigns.values()
            if c.status == CampaignStatus.DRAFT
            and not c.wizard_completed
            and c.created_at < cutoff
        ]

    # ── Recipients ───────────────────────────────────────────────

    def add_recipients(self, recipients: list[CallRecipient]) -> list[CallRecipient]:
        existing = {(r.campaign_id, r.phone_number) for r in self._recipients.values()}
        inserted: list[CallRecipient] = []
        for recipient in recipients:
            key = (recipient.campaign_id, recipient.phone_number)
            if key in existing:
                continue
            existing.add(key)
            self._recipients[recipient.id] = _copy(recipient)
            inserted.append(_copy(recipient))
        return inserted

    def list_recipients(
        self,
        campaign_id: str,
        status: RecipientCallStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CallRecipient]:
        rows = [
            r for r in self._recipients.values()
            if r.campaign_id == campaign_id and (status is None or r.call_status == status)
        ]
        rows.sort(key=lambda r: r.created_at)
        return [_copy(r) for r in rows[offset:offset + limit]]

    def get_recipient(self, recipient_id: str) -> CallRecipient | None:
        return _copy(self._recipients.get(recipient_id))

    def get_recipient_by_external_call_id(self, external_call_id: str) -> CallRecipient | None:
        for r in self._recipients.values():
            if r.external_call_id == external_call_id:
                return _copy(r)
        return None

    def update_recipient(self, recipient_id: str, updates: dict[str, Any]) -> CallRecipient | None:
        recipient = self._recipients.get(recipient_id)
        if recipient is None:
            return None
        for key, value in updates.items():
            if hasattr(recipient, key):
                setattr(recipient, key, value)
        recipient.updated_at = utcnow()
        return _copy(recipient)

    def delete_recipient(self, campaign_id: str, recipient_id: str) -> bool:
        recipient = self._recipients.get(recipient_id)
        if recipient is None or recipient.campaign_id != campaign_id:
            return False
        del self._recipients[recipient_id]
        return True

    def delete_all_recipients(self, campaign_id: str) -> int:
        doomed = [rid for rid, r in self._recipients.items() if r.campaign_id == campaign_id]
        for rid in doomed:
            del self._recipients[rid]
        return len(doomed)

    def count_recipients(
        self, campaign_id: str, statuses: Iterable[RecipientCallStatus] | None = None
    ) -> int:
        wanted = set(statuses) if statuses is not None else None
        return sum(
            1 for r in self._recipients.values()
            if r.campaign_id == campaign_id and (wanted is None or r.call_status in wanted)
        )

    def count_active_calls(
        self,
        started_after: datetime,
        campaign_id: str | None = None,
        workspace_id: str | None = None,
    ) -> int:
        return sum(
            1 for r in self._recipients.values()
            if r.call_status == RecipientCallStatus.CALLING
            and r.call_started_at is not None
            and r.call_started_at > started_after
            and (campaign_id is None or r.campaign_id == campaign_id)
            and (workspace_id is None or r.workspace_id == workspace_id)
        )

    def list_calling_started_before(self, campaign_id: str, cutoff: datetime) -> list[CallRecipient]:
        return [
            _copy(r) for r in self._recipients.values()
            if r.campaign_id == campaign_id
            and r.call_status == RecipientCallStatus.CALLING
            and r.call_started_at is not None
            and r.call_started_at < cutoff
        ]

    def next_pending_recipients(self, campaign_id: str, limit: int) -> list[CallRecipient]:
        return self.list_recipients(campaign_id, RecipientCallStatus.PENDING, limit=limit)
