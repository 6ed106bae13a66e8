"""Database models for the campaign dialer.

Rows live in Supabase (PostgreSQL); these Pydantic models mirror the
columns the dialer reads and writes.
Tables: workspaces, ai_agents, phone_numbers, partner_integrations (through
workspace_integration_assignments), call_campaigns, call_recipients
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AwareDatetime, BaseModel, EmailStr, Field, field_validator, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def _assume_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────────────────────────

class VoiceProvider(str, Enum):
    VAPI = "vapi"
    RETELL = "retell"
    SYNTHFLOW = "synthflow"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CampaignScheduleType(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class RecipientCallStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    CALLING = "calling"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CallOutcome(str, Enum):
    ANSWERED = "answered"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    VOICEMAIL = "voicemail"
    INVALID_NUMBER = "invalid_number"
    DECLINED = "declined"
    ERROR = "error"


# Recipients in these states still need work before a campaign can finish
IN_PROGRESS_STATUSES = (
    RecipientCallStatus.PENDING,
    RecipientCallStatus.QUEUED,
    RecipientCallStatus.CALLING,
)

TERMINAL_STATUSES = (
    RecipientCallStatus.COMPLETED,
    RecipientCallStatus.FAILED,
    RecipientCallStatus.SKIPPED,
)

DAYS_OF_WEEK = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ──────────────────────────────────────────────────────────────────
# Workspace resources
# ──────────────────────────────────────────────────────────────────

class Workspace(BaseModel):
    """A billing and resource boundary under a partner."""
    id: str = Field(default_factory=_uuid)
    slug: str
    name: str = ""
    partner_id: str | None = None

    model_config = {"from_attributes": True}


class Agent(BaseModel):
    """An AI voice agent synced to a voice provider."""
    id: str = Field(default_factory=_uuid)
    workspace_id: str
    name: str = "New Agent"
    provider: VoiceProvider = VoiceProvider.VAPI
    is_active: bool = True
    external_agent_id: str | None = None  # assistant id (Vapi) / agent id (Retell)
    external_phone_number: str | None = None
    assigned_phone_number_id: str | None = None

    model_config = {"from_attributes": True}


class PhoneNumber(BaseModel):
    """A phone number owned by a workspace."""
    id: str = Field(default_factory=_uuid)
    workspace_id: str
    phone_number: str  # E.164 format
    external_id: str | None = None  # provider-side phone number id

    model_config = {"from_attributes": True}


class ProviderIntegration(BaseModel):
    """A partner's voice provider credentials assigned to a workspace."""
    id: str = Field(default_factory=_uuid)
    workspace_id: str
    provider: VoiceProvider = VoiceProvider.VAPI
    api_keys: dict[str, Any] = Field(default_factory=dict)  # {"default_secret_key": ...}
    config: dict[str, Any] = Field(default_factory=dict)  # {"shared_outbound_phone_number_id": ...}
    is_active: bool = True

    model_config = {"from_attributes": True}


# ──────────────────────────────────────────────────────────────────
# Business hours
# ──────────────────────────────────────────────────────────────────

HHMM_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"


class BusinessHoursTimeSlot(BaseModel):
    start: str = Field(pattern=HHMM_PATTERN)  # "09:00"
    end: str = Field(pattern=HHMM_PATTERN)  # "17:00"


class BusinessHoursConfig(BaseModel):
    enabled: bool = False
    timezone: str | None = None
    schedule: dict[str, list[BusinessHoursTimeSlot]] = Field(default_factory=dict)

    def slots_for(self, day: str) -> list[BusinessHoursTimeSlot]:
        return sorted(self.schedule.get(day, []), key=lambda s: s.start)


# ──────────────────────────────────────────────────────────────────
# Campaigns
# ──────────────────────────────────────────────────────────────────

class Campaign(BaseModel):
    """A bulk outbound-calling job."""
    id: str = Field(default_factory=_uuid)
    workspace_id: str
    agent_id: str
    name: str
    description: str | None = None
    status: CampaignStatus = CampaignStatus.DRAFT
    schedule_type: CampaignScheduleType = CampaignScheduleType.IMMEDIATE
    scheduled_start_at: datetime | None = None
    scheduled_expires_at: datetime | None = None
    business_hours_config: BusinessHoursConfig | None = None
    timezone: str | None = None
    wizard_completed: bool = True

    # Counters
    total_recipients: int = 0
    completed_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator(
        "scheduled_start_at", "scheduled_expires_at", "created_at",
        "updated_at", "started_at", "completed_at", "deleted_at",
    )
    @classmethod
    def _utc_timestamps(cls, value: datetime | None) -> datetime | None:
        # Rows are compared against aware clocks; stored naive values are UTC.
        return _assume_utc(value)

    @property
    def effective_timezone(self) -> str | None:
        """Business-hours timezone wins over the campaign's own timezone."""
        if self.business_hours_config and self.business_hours_config.timezone:
            return self.business_hours_config.timezone
        return self.timezone


class CallRecipient(BaseModel):
    """One person to call within a campaign."""
    id: str = Field(default_factory=_uuid)
    campaign_id: str
    workspace_id: str
    phone_number: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    company: str | None = None
    custom_variables: dict[str, Any] = Field(default_factory=dict)

    call_status: RecipientCallStatus = RecipientCallStatus.PENDING
    call_outcome: CallOutcome | None = None
    attempts: int = 0
    last_attempt_at: datetime | None = None
    external_call_id: str | None = None
    call_started_at: datetime | None = None
    call_ended_at: datetime | None = None
    call_duration_seconds: float | None = None
    call_cost: float | None = None
    last_error: str | None = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = {"from_attributes": True}

    @property
    def full_name(self) -> str | None:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or None


# ──────────────────────────────────────────────────────────────────
# Campaign API Schemas
# ──────────────────────────────────────────────────────────────────

def check_schedule_window(start: datetime | None, expires: datetime | None) -> None:
    """Raise ValueError unless an expiry falls after the scheduled start."""
    if start is not None and expires is not None and expires <= start:
        raise ValueError("Expiry date must be after start date")


class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    agent_id: str
    description: str | None = Field(None, max_length=2000)
    schedule_type: CampaignScheduleType = CampaignScheduleType.IMMEDIATE
    scheduled_start_at: AwareDatetime | None = None
    scheduled_expires_at: AwareDatetime | None = None
    business_hours_config: BusinessHoursConfig | None = None
    timezone: str | None = None

    @model_validator(mode="after")
    def _check_window(self) -> CampaignCreate:
        check_schedule_window(self.scheduled_start_at, self.scheduled_expires_at)
        return self


class CampaignUpdate(BaseModel):
    """Update a campaign. All fields optional."""
    name: str | None = Field(None, min_length=1, max_length=255)
    agent_id: str | None = None
    description: str | None = Field(None, max_length=2000)
    status: CampaignStatus | None = None
    schedule_type: CampaignScheduleType | None = None
    scheduled_start_at: AwareDatetime | None = None
    scheduled_expires_at: AwareDatetime | None = None
    business_hours_config: BusinessHoursConfig | None = None
    timezone: str | None = None


class CampaignResponse(BaseModel):
    id: str
    workspace_id: str
    agent_id: str
    name: str
    description: str | None
    status: CampaignStatus
    schedule_type: CampaignScheduleType
    scheduled_start_at: datetime | None
    scheduled_expires_at: datetime | None
    timezone: str | None
    total_recipients: int
    pending_calls: int = 0
    completed_calls: int
    successful_calls: int
    failed_calls: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class RecipientCreate(BaseModel):
    phone_number: str = Field(min_length=1, max_length=50)
    first_name: str | None = Field(None, max_length=255)
    last_name: str | None = Field(None, max_length=255)
    email: EmailStr | None = None
    company: str | None = Field(None, max_length=255)
    custom_variables: dict[str, Any] = Field(default_factory=dict)

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, value: Any) -> Any:
        return None if value == "" else value

    @field_validator("phone_number")
    @classmethod
    def _has_digits(cls, value: str) -> str:
        if not any(ch.isdigit() for ch in value):
            raise ValueError("Phone number must contain digits")
        return value.strip()


class RecipientImport(BaseModel):
    recipients: list[RecipientCreate] = Field(min_length=1, max_length=10000)


class RecipientImportResult(BaseModel):
    imported: int
    total: int
    duplicates: int


class StartCampaignResponse(BaseModel):
    campaign: CampaignResponse
    recipient_count: int
    initial_calls_started: int
    initial_calls_failed: int
    remaining_in_queue: int
    max_concurrent_calls: int
    message: str
    warnings: list[str] = Field(default_factory=list)


class CampaignActionResponse(BaseModel):
    campaign: CampaignResponse
    message: str = ""
    calls_started: int = 0


class StuckCampaignResult(BaseModel):
    campaign_id: str
    campaign_name: str
    started: int = 0
    failed: int = 0
    remaining: int = 0
    stale_cleaned: int = 0
    error: str | None = None


class ProcessStuckResponse(BaseModel):
    message: str
    processed: int = 0
    total_started: int = 0
    total_failed: int = 0
    results: list[StuckCampaignResult] = Field(default_factory=list)


class CampaignHealth(BaseModel):
    id: str
    name: str
    status: CampaignStatus
    total_recipients: int
    pending_calls: int
    completed_calls: int
    failed_calls: int
    calling_count: int
    is_stuck: bool
    progress: int  # percent


class StuckStatusResponse(BaseModel):
    active_campaigns: int
    stuck_campaigns: int
    campaigns: list[CampaignHealth] = Field(default_factory=list)


class TestCallRequest(BaseModel):
    phone_number: str = Field(min_length=1, max_length=50)
    variables: dict[str, str] = Field(default_factory=dict)


class TestCallResponse(BaseModel):
    success: bool
    provider: VoiceProvider
    call_id: str | None = None
    error: str | None = None


class CronRunResponse(BaseModel):
    success: bool
    duration_ms: int
    results: dict[str, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
