"""Campaign data access.

`CampaignStore` lists every query the dialer runs. `SupabaseCampaignStore`
wraps the Supabase service-role client; `InMemoryCampaignStore` (see
memory_store.py) backs local development and tests. `get_store()` picks one
from settings.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from loguru import logger
from pydantic import BaseModel
from supabase import Client, create_client

from dialer.config import settings
from dialer.errors import StoreError
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

_supabase: Client | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_values(statuses: Iterable[RecipientCallStatus | str] | None) -> list[str] | None:
    if statuses is None:
        return None
    return [s.value if isinstance(s, Enum) else s for s in statuses]


class CampaignStore(ABC):
    """Every read and write the dialer makes against its tables."""

    # ── Workspace resources ──────────────────────────────────────

    @abstractmethod
    def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    @abstractmethod
    def get_workspace_by_slug(self, slug: str) -> Workspace | None: ...

    @abstractmethod
    def save_workspace(self, workspace: Workspace) -> Workspace: ...

    @abstractmethod
    def get_agent(self, agent_id: str, workspace_id: str | None = None) -> Agent | None: ...

    @abstractmethod
    def save_agent(self, agent: Agent) -> Agent: ...

    @abstractmethod
    def get_phone_number(self, phone_number_id: str) -> PhoneNumber | None: ...

    @abstractmethod
    def save_phone_number(self, phone: PhoneNumber) -> PhoneNumber: ...

    @abstractmethod
    def get_provider_integration(
        self, workspace_id: str, provider: VoiceProvider
    ) -> ProviderIntegration | None: ...

    @abstractmethod
    def save_provider_integration(self, integration: ProviderIntegration) -> ProviderIntegration: ...

    # ── Campaigns ────────────────────────────────────────────────

    @abstractmethod
    def create_campaign(self, campaign: Campaign) -> Campaign: ...

    @abstractmethod
    def get_campaign(self, campaign_id: str, workspace_id: str | None = None) -> Campaign | None:
        """Fetch a non-deleted campaign, optionally scoped to a workspace."""

    @abstractmethod
    def list_campaigns(
        self,
        workspace_id: str | None = None,
        statuses: Iterable[CampaignStatus] | None = None,
    ) -> list[Campaign]: ...

    @abstractmethod
    def update_campaign(self, campaign_id: str, updates: dict[str, Any]) -> Campaign | None: ...

    @abstractmethod
    def complete_campaign_if_active(self, campaign_id: str) -> bool:
        """Mark a campaign completed only while it is still active."""

    @abstractmethod
    def delete_campaign(self, campaign_id: str) -> bool:
        """Permanently delete a campaign and its recipients."""

    @abstractmethod
    def increment_campaign_stats(
        self, campaign_id: str, completed: int = 0, successful: int = 0, failed: int = 0
    ) -> None: ...

    @abstractmethod
    def list_due_scheduled_campaigns(self, now: datetime) -> list[Campaign]: ...

    @abstractmethod
    def list_expired_drafts(self, now: datetime) -> list[Campaign]: ...

    @abstractmethod
    def list_drafts_expiring_between(self, start: datetime, end: datetime) -> list[Campaign]: ...

    @abstractmethod
    def list_incomplete_drafts_before(self, cutoff: datetime) -> list[Campaign]: ...

    # ── Recipients ───────────────────────────────────────────────

    @abstractmethod
    def add_recipients(self, recipients: list[CallRecipient]) -> list[CallRecipient]:
        """Insert recipients, skipping duplicates on (campaign_id, phone_number)."""

    @abstractmethod
    def list_recipients(
        self,
        campaign_id: str,
        status: RecipientCallStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CallRecipient]: ...

    @abstractmethod
    def get_recipient(self, recipient_id: str) -> CallRecipient | None: ...

    @abstractmethod
    def get_recipient_by_external_call_id(self, external_call_id: str) -> CallRecipient | None: ...

    @abstractmethod
    def update_recipient(self, recipient_id: str, updates: dict[str, Any]) -> CallRecipient | None: ...

    @abstractmethod
    def delete_recipient(self, campaign_id: str, recipient_id: str) -> bool: ...

    @abstractmethod
    def delete_all_recipients(self, campaign_id: str) -> int: ...

    @abstractmethod
    def count_recipients(
        self, campaign_id: str, statuses: Iterable[RecipientCallStatus] | None = None
    ) -> int:
        """Count a campaign's recipients; all of them when *statuses* is None."""

    @abstractmethod
    def count_active_calls(
        self,
        started_after: datetime,
        campaign_id: str | None = None,
        workspace_id: str | None = None,
    ) -> int:
        """Count "calling" recipients whose call started after *started_after*."""

    @abstractmethod
    def list_calling_started_before(self, campaign_id: str, cutoff: datetime) -> list[CallRecipient]: ...

    @abstractmethod
    def next_pending_recipients(self, campaign_id: str, limit: int) -> list[CallRecipient]:
        """Oldest pending recipients first."""


# ──────────────────────────────────────────────────────────────────
# Supabase
# ──────────────────────────────────────────────────────────────────

def get_client() -> Client:
    """Get or create the Supabase client."""
    global _supabase
    if _supabase is None:
        _supabase = create_client(settings.supabase_url, settings.supabase_service_key)
    return _supabase


def _to_row(data: dict[str, Any]) -> dict[str, Any]:
    """Serialize datetimes and enums for PostgREST."""
    row: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            row[key] = value.isoformat()
        elif isinstance(value, BaseModel):
            row[key] = value.model_dump(mode="json")
        elif isinstance(value, Enum):
            row[key] = value.value
        else:
            row[key] = value
    return row


class SupabaseCampaignStore(CampaignStore):
    """PostgREST-backed store using the service-role client."""

    def __init__(self, client: Client | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    def _one(self, table: str, model: type, **filters: Any) -> Any:
        query = self.client.table(table).select("*")
        for column, value in filters.items():
            query = query.eq(column, value)
        result = query.limit(1).execute()
        if result.data:
            return model(**result.data[0])
        return None

    def _upsert(self, table: str, model_obj: Any) -> Any:
        data = _to_row(model_obj.model_dump(mode="json"))
        result = self.client.table(table).upsert(data).execute()
        return type(model_obj)(**result.data[0])

    # Workspace resources

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self._one("workspaces", Workspace, id=workspace_id)

    def get_workspace_by_slug(self, slug: str) -> Workspace | None:
        return self._one("workspaces", Workspace, slug=slug)

    def save_workspace(self, workspace: Workspace) -> Workspace:
        return self._upsert("workspaces", workspace)

    def get_agent(self, agent_id: str, workspace_id: str | None = None) -> Agent | None:
        filters: dict[str, Any] = {"id": agent_id}
        if workspace_id:
            filters["workspace_id"] = workspace_id
        return self._one("ai_agents", Agent, **filters)

    def save_agent(self, agent: Agent) -> Agent:
        return self._upsert("ai_agents", agent)

    def get_phone_number(self, phone_number_id: str) -> PhoneNumber | None:
        return self._one("phone_numbers", PhoneNumber, id=phone_number_id)

    def save_phone_number(self, phone: PhoneNumber) -> PhoneNumber:
        return self._upsert("phone_numbers", phone)

    def get_provider_integration(
        self, workspace_id: str, provider: VoiceProvider
    ) -> ProviderIntegration | None:
        """Resolve the partner integration assigned to a workspace for *provider*."""
        result = (
            self.client.table("workspace_integration_assignments")
            .select(
                "workspace_id, provider, "
                "partner_integration:partner_integrations(id, api_keys, config, is_active)"
            )
            .eq("workspace_id", workspace_id)
            .eq("provider", provider.value)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        partner = result.data[0].get("partner_integration")
        if isinstance(partner, list):
            partner = partner[0] if partner else None
        if not partner:
            return None
        return ProviderIntegration(
            id=partner["id"],
            workspace_id=workspace_id,
            provider=provider,
            api_keys=partner.get("api_keys") or {},
            config=partner.get("config") or {},
            is_active=partner.get("is_active", True),
        )

    def save_provider_integration(self, integration: ProviderIntegration) -> ProviderIntegration:
        """Upsert the partner integration and assign it to the workspace."""
        workspace = self.get_workspace(integration.workspace_id)
        if workspace is None or not workspace.partner_id:
            raise StoreError(f"Workspace {integration.workspace_id} has no partner to own the integration")
        self.client.table("partner_integrations").upsert({
            "id": integration.id,
            "partner_id": workspace.partner_id,
            "provider": integration.provider.value,
            "api_keys": integration.api_keys,
            "config": integration.config,
            "is_active": integration.is_active,
        }).execute()
        self.client.table("workspace_integration_assignments").upsert(
            {
                "workspace_id": integration.workspace_id,
                "provider": integration.provider.value,
                "partner_integration_id": integration.id,
            },
            on_conflict="workspace_id,provider",
        ).execute()
        return integration

    # Campaigns

    def create_campaign(self, campaign: Campaign) -> Campaign:
        data = _to_row(campaign.model_dump(mode="json"))
        result = self.client.table("call_campaigns").insert(data).execute()
        return Campaign(**result.data[0])

    def get_campaign(self, campaign_id: str, workspace_id: str | None = None) -> Campaign | None:
        query = (
            self.client.table("call_campaigns")
            .select("*")
            .eq("id", campaign_id)
            .is_("deleted_at", "null")
        )
        if workspace_id:
            query = query.eq("workspace_id", workspace_id)
        result = query.limit(1).execute()
        if result.data:
            return Campaign(**result.data[0])
        return None

    def list_campaigns(
        self,
        workspace_id: str | None = None,
        statuses: Iterable[CampaignStatus] | None = None,
    ) -> list[Campaign]:
        query = self.client.table("call_campaigns").select("*").is_("deleted_at", "null")
        if workspace_id:
            query = query.eq("workspace_id", workspace_id)
        if statuses is not None:
            query = query.in_("status", [s.value for s in statuses])
        result = query.order("created_at", desc=True).execute()
        return [Campaign(**row) for row in result.data]

    def update_campaign(self, campaign_id: str, updates: dict[str, Any]) -> Campaign | None:
        data = _to_row({**updates, "updated_at": utcnow()})
        result = self.client.table("call_campaigns").update(data).eq("id", campaign_id).execute()
        if result.data:
            return Campaign(**result.data[0])
        return None

    def complete_campaign_if_active(self, campaign_id: str) -> bool:
        now = utcnow()
        result = (
            self.client.table("call_campaigns")
            .update(_to_row({
                "status": CampaignStatus.COMPLETED,
                "completed_at": now,
                "updated_at": now,
            }))
            .eq("id", campaign_id)
            .eq("status", CampaignStatus.ACTIVE.value)
            .execute()
        )
        return len(result.data) > 0

    def delete_campaign(self, campaign_id: str) -> bool:
        # Recipients go with the campaign via ON DELETE CASCADE
        result = self.client.table("call_campaigns").delete().eq("id", campaign_id).execute()
        return len(result.data) > 0

    def increment_campaign_stats(
        self, campaign_id: str, completed: int = 0, successful: int = 0, failed: int = 0
    ) -> None:
        try:
            self.client.rpc("increment_campaign_stats", {
                "p_campaign_id": campaign_id,
                "p_completed": completed,
                "p_successful": successful,
                "p_failed": failed,
            }).execute()
        except Exception as e:
            raise StoreError(f"increment_campaign_stats failed: {e}") from e

    def list_due_scheduled_campaigns(self, now: datetime) -> list[Campaign]:
        result = (
            self.client.table("call_campaigns")
            .select("*")
            .eq("status", CampaignStatus.SCHEDULED.value)
            .lte("scheduled_start_at", now.isoformat())
            .is_("deleted_at", "null")
            .execute()
        )
        return [Campaign(**row) for row in result.data]

    def list_expired_drafts(self, now: datetime) -> list[Campaign]:
        result = (
            self.client.table("call_campaigns")
            .select("*")
            .eq("status", CampaignStatus.DRAFT.value)
            .not_.is_("scheduled_expires_at", "null")
            .lt("scheduled_expires_at", now.isoformat())
            .is_("deleted_at", "null")
            .execute()
        )
        return [Campaign(**row) for row in result.data]

    def list_drafts_expiring_between(self, start: datetime, end: datetime) -> list[Campaign]:
        result = (
            self.client.table("call_campaigns")
            .select("*")
            .eq("status", CampaignStatus.DRAFT.value)
            .gte("scheduled_expires_at", start.isoformat())
            .lte("scheduled_expires_at", end.isoformat())
            .is_("deleted_at", "null")
            .execute()
        )
        return [Campaign(**row) for row in result.data]

    def list_incomplete_drafts_before(self, cutoff: datetime) -> list[Campaign]:
        result = (
            self.client.table("call_campaigns")
            .select("*")
            .eq("status", CampaignStatus.DRAFT.value)
            .eq("wizard_completed", False)
            .lt("created_at", cutoff.isoformat())
            .execute()
        )
        return [Campaign(**row) for row in result.data]

    # Recipients

    def add_recipients(self, recipients: list[CallRecipient]) -> list[CallRecipient]:
        if not recipients:
            return []
        records = [_to_row(r.model_dump(mode="json")) for r in recipients]
        result = (
            self.client.table("call_recipients")
            .upsert(records, on_conflict="campaign_id,phone_number", ignore_duplicates=True)
            .execute()
        )
        return [CallRecipient(**row) for row in result.data or []]

    def list_recipients(
        self,
        campaign_id: str,
        status: RecipientCallStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CallRecipient]:
        query = self.client.table("call_recipients").select("*").eq("campaign_id", campaign_id)
        if status is not None:
            query = query.eq("call_status", status.value)
        result = (
            query.order("created_at")
            .range(offset, offset + limit - 1)
            .execute()
        )
        return [CallRecipient(**row) for row in result.data]

    def get_recipient(self, recipient_id: str) -> CallRecipient | None:
        return self._one("call_recipients", CallRecipient, id=recipient_id)

    def get_recipient_by_external_call_id(self, external_call_id: str) -> CallRecipient | None:
        return self._one("call_recipients", CallRecipient, external_call_id=external_call_id)

    def update_recipient(self, recipient_id: str, updates: dict[str, Any]) -> CallRecipient | None:
        data = _to_row({**updates, "updated_at": utcnow()})
        result = self.client.table("call_recipients").update(data).eq("id", recipient_id).execute()
        if result.data:
            return CallRecipient(**result.data[0])
        return None

    def delete_recipient(self, campaign_id: str, recipient_id: str) -> bool:
        result = (
            self.client.table("call_recipients")
            .delete()
            .eq("id", recipient_id)
            .eq("campaign_id", campaign_id)
            .execute()
        )
        return len(result.data) > 0

    def delete_all_recipients(self, campaign_id: str) -> int:
        result = self.client.table("call_recipients").delete().eq("campaign_id", campaign_id).execute()
        return len(result.data)

    def count_recipients(
        self, campaign_id: str, statuses: Iterable[RecipientCallStatus] | None = None
    ) -> int:
        query = (
            self.client.table("call_recipients")
            .select("id", count="exact", head=True)
            .eq("campaign_id", campaign_id)
        )
        values = _status_values(statuses)
        if values is not None:
            query = query.in_("call_status", values)
        result = query.execute()
        return result.count or 0

    def count_active_calls(
        self,
        started_after: datetime,
        campaign_id: str | None = None,
        workspace_id: str | None = None,
    ) -> int:
        query = (
            self.client.table("call_recipients")
            .select("id", count="exact", head=True)
            .eq("call_status", RecipientCallStatus.CALLING.value)
            .gt("call_started_at", started_after.isoformat())
        )
        if campaign_id:
            query = query.eq("campaign_id", campaign_id)
        if workspace_id:
            query = query.eq("workspace_id", workspace_id)
        try:
            result = query.execute()
        except Exception as e:
            logger.error(f"Active call count failed (campaign={campaign_id}, workspace={workspace_id}): {e}")
            return 0
        return result.count or 0

    def list_calling_started_before(self, campaign_id: str, cutoff: datetime) -> list[CallRecipient]:
        result = (
            self.client.table("call_recipients")
            .select("*")
            .eq("campaign_id", campaign_id)
            .eq("call_status", RecipientCallStatus.CALLING.value)
            .lt("call_started_at", cutoff.isoformat())
            .execute()
        )
        return [CallRecipient(**row) for row in result.data]

    def next_pending_recipients(self, campaign_id: str, limit: int) -> list[CallRecipient]:
        result = (
            self.client.table("call_recipients")
            .select("*")
            .eq("campaign_id", campaign_id)
            .eq("call_status", RecipientCallStatus.PENDING.value)
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return [CallRecipient(**row) for row in result.data]


# ──────────────────────────────────────────────────────────────────
# Store selection
# ──────────────────────────────────────────────────────────────────

_store: CampaignStore | None = None


def get_store() -> CampaignStore:
    """Return the process-wide store for the configured backend."""
    global _store
    if _store is None:
        if settings.storage_backend == "supabase":
            _store = SupabaseCampaignStore()
        else:
            from dialer.services.memory_store import InMemoryCampaignStore
            _store = InMemoryCampaignStore()
        logger.info(f"Campaign store initialised: {type(_store).__name__}")
    return _store


def set_store(store: CampaignStore | None) -> None:
    """Replace the process-wide store (tests, alternative backends)."""
    global _store
    _store = store
