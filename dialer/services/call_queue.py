"""Call queue manager: webhook-driven campaign dialing.

Provider concurrency limits count active calls (ringing + in-progress),
not API requests. So recipients wait in the database as ``pending`` and
only a few calls run at once:

1. A campaign start seeds the chain with a small batch of calls.
2. Each ended call (provider webhook) starts exactly one replacement.
3. Stale-call cleanup and the cron/process-stuck fallback restart chains
   whose webhooks were lost.

Concurrency is counted as ``calling`` rows started within the active
call window, per campaign and per workspace.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from loguru import logger

from dialer.config import settings
from dialer.models.database import (
    CallRecipient,
    CampaignStatus,
    RecipientCallStatus,
    VoiceProvider,
)
from dialer.services import event_bus
from dialer.services.database import CampaignStore, get_store, utcnow
from dialer.services.event_bus import EventType
from dialer.services.providers import (
    BaseCallProvider,
    OutboundCallRequest,
    provider_registry,
)


# ──────────────────────────────────────────────────────────────────
# Data classes
# ──────────────────────────────────────────────────────────────────

@dataclass
class ProviderConfig:
    """Credentials and ids needed to place calls for one campaign."""

    provider: VoiceProvider
    api_key: str
    agent_id: str  # assistant id (Vapi) / agent id (Retell)
    phone_number_id: str = ""  # Vapi
    from_number: str = ""  # Retell


@dataclass
class StartCallsResult:
    started: int = 0
    failed: int = 0
    remaining: int = 0
    errors: list[str] = field(default_factory=list)
    concurrency_hit: bool = False  # stopped on a transient provider error


@dataclass
class SingleCallResult:
    success: bool
    call_id: str | None = None
    error: str | None = None
    should_retry: bool = False


ProviderFactory = Callable[[ProviderConfig], BaseCallProvider]


def default_provider_factory(config: ProviderConfig) -> BaseCallProvider:
    return provider_registry.create(config.provider.value, api_key=config.api_key)


# ──────────────────────────────────────────────────────────────────
# Queue manager
# ──────────────────────────────────────────────────────────────────

class CallQueueManager:
    """Starts campaign calls while respecting provider concurrency limits.

    Cooldowns and locks are per process. Triggers for the same campaign
    are serialised so simultaneous webhooks cannot claim the same slot
    or the same pending recipient.
    """

    def __init__(
        self,
        store: CampaignStore | None = None,
        provider_factory: ProviderFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store or get_store()
        self.provider_factory = provider_factory or default_provider_factory
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._cooldowns: dict[str, float] = {}  # campaign_id → clock deadline
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Concurrency accounting ───────────────────────────────────

    def _active_cutoff(self) -> datetime:
        return utcnow() - timedelta(minutes=settings.active_call_window_minutes)

    def active_campaign_call_count(self, campaign_id: str) -> int:
        return self.store.count_active_calls(self._active_cutoff(), campaign_id=campaign_id)

    def active_workspace_call_count(self, workspace_id: str) -> int:
        return self.store.count_active_calls(self._active_cutoff(), workspace_id=workspace_id)

    def available_slots(self, campaign_id: str, workspace_id: str) -> int:
        """How many new calls may start, bounded by both limits."""
        campaign_slots = settings.max_concurrent_calls_per_campaign - self.active_campaign_call_count(campaign_id)
        workspace_slots = settings.max_concurrent_calls_total - self.active_workspace_call_count(workspace_id)
        return max(0, min(campaign_slots, workspace_slots))

    def next_pending_recipients(self, campaign_id: str, limit: int) -> list[CallRecipient]:
        if limit <= 0:
            return []
        return self.store.next_pending_recipients(campaign_id, limit)

    def pending_count(self, campaign_id: str) -> int:
        return self.store.count_recipients(campaign_id, [RecipientCallStatus.PENDING])

    # ── Cooldowns ────────────────────────────────────────────────

    def cooldown_remaining(self, campaign_id: str) -> float:
        """Seconds left in the campaign's cooldown (0 when none)."""
        until = self._cooldowns.get(campaign_id)
        if until is None:
            return 0.0
        remaining = until - self._clock()
        if remaining <= 0:
            self._cooldowns.pop(campaign_id, None)
            return 0.0
        return remaining

    def set_cooldown(self, campaign_id: str) -> None:
        self._cooldowns[campaign_id] = self._clock() + settings.concurrency_cooldown_ms / 1000

    def clear_cooldown(self, campaign_id: str) -> None:
        self._cooldowns.pop(campaign_id, None)

    def _lock_for(self, campaign_id: str) -> asyncio.Lock:
        lock = self._locks.get(campaign_id)
        if lock is None:
            lock = self._locks[campaign_id] = asyncio.Lock()
        return lock

    def forget_campaign(self, campaign_id: str) -> None:
        """Drop per-campaign state once a campaign stops dialling."""
        self._locks.pop(campaign_id, None)
        self._cooldowns.pop(campaign_id, None)

    # ── Provider config ──────────────────────────────────────────

    def resolve_provider_config(self, campaign_id: str) -> ProviderConfig | None:
        """Work out which provider account and number a campaign dials from.

        Returns None when the agent, integration, API key or outbound
        number is missing.
        """
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None:
            logger.error(f"[CallQueue] Campaign {campaign_id} not found while resolving provider config")
            return None

        agent = self.store.get_agent(campaign.agent_id)
        if agent is None or not agent.external_agent_id:
            logger.error(f"[CallQueue] Campaign {campaign_id} has no synced agent")
            return None

        provider = agent.provider or VoiceProvider.VAPI
        if provider.value not in provider_registry.providers:
            logger.error(f"[CallQueue] Provider {provider.value} has no outbound call support")
            return None

        integration = self.store.get_provider_integration(campaign.workspace_id, provider)
        if integration is None or not integration.is_active:
            logger.error(f"[CallQueue] No active {provider.value} integration for workspace {campaign.workspace_id}")
            return None

        api_key = integration.api_keys.get("default_secret_key")
        if not api_key:
            logger.error(f"[CallQueue] {provider.value} integration has no secret key")
            return None

        phone = (
            self.store.get_phone_number(agent.assigned_phone_number_id)
            if agent.assigned_phone_number_id
            else None
        )

        if provider == VoiceProvider.RETELL:
            from_number = (
                integration.config.get("shared_outbound_phone_number")
                or (phone.phone_number if phone else None)
                or agent.external_phone_number
            )
            if not from_number:
                logger.error(f"[CallQueue] No outbound number found for campaign {campaign_id}")
                return None
            return ProviderConfig(provider, api_key, agent.external_agent_id, from_number=from_number)

        phone_number_id = integration.config.get("shared_outbound_phone_number_id") or (
            phone.external_id if phone else None
        )
        if not phone_number_id:
            logger.error(f"[CallQueue] No phone number ID found for campaign {campaign_id}")
            return None

        logger.info(
            f"[CallQueue] Provider config resolved: provider={provider.value} "
            f"agent={agent.external_agent_id} phone={phone_number_id}"
        )
        return ProviderConfig(provider, api_key, agent.external_agent_id, phone_number_id=phone_number_id)

    # ── Starting calls ───────────────────────────────────────────

    async def start_single_call(self, recipient: CallRecipient, config: ProviderConfig) -> SingleCallResult:
        """Place one call and record the outcome on the recipient.

        Transient failures leave the recipient ``pending`` so a later
        trigger picks it up again.
        """
        now = utcnow()
        attempts = recipient.attempts + 1
        logger.info(f"[CallQueue] Starting call for {recipient.phone_number} (recipient: {recipient.id})")

        try:
            provider = self.provider_factory(config)
            result = await provider.create_outbound_call(
                OutboundCallRequest(
                    agent_id=config.agent_id,
                    customer_number=recipient.phone_number,
                    phone_number_id=config.phone_number_id,
                    from_number=config.from_number,
                    customer_name=recipient.full_name,
                    variables={k: str(v) for k, v in recipient.custom_variables.items()},
                    metadata={
                        "campaign_id": recipient.campaign_id,
                        "recipient_id": recipient.id,
                        "workspace_id": recipient.workspace_id,
                    },
                )
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.exception(f"[CallQueue] Call start raised for {recipient.phone_number}: {error}")
            self._mark_failed(recipient, error, attempts, now)
            return SingleCallResult(success=False, error=error)

        if not result.success or not result.call_id:
            error = result.error or "Failed to create call"
            if result.transient:
                logger.warning(f"[CallQueue] Transient error for {recipient.phone_number}, keeping pending: {error}")
                return SingleCallResult(success=False, error=error, should_retry=True)

            logger.error(f"[CallQueue] Permanent error for {recipient.phone_number}, marking failed: {error}")
            self._mark_failed(recipient, error, attempts, now)
            return SingleCallResult(success=False, error=error)

        self.store.update_recipient(recipient.id, {
            "call_status": RecipientCallStatus.CALLING,
            "external_call_id": result.call_id,
            "call_started_at": now,
            "attempts": attempts,
            "last_attempt_at": now,
        })
        event_bus.publish(recipient.workspace_id, EventType.CALL_STARTED, {
            "campaign_id": recipient.campaign_id,
            "recipient_id": recipient.id,
            "call_id": result.call_id,
        })
        logger.info(f"[CallQueue] Call started for {recipient.phone_number}: call_id={result.call_id}")
        return SingleCallResult(success=True, call_id=result.call_id)

    def _mark_failed(self, recipient: CallRecipient, error: str, attempts: int, now: datetime) -> None:
        self.store.update_recipient(recipient.id, {
            "call_status": RecipientCallStatus.FAILED,
            "last_error": error,
            "attempts": attempts,
            "last_attempt_at": now,
        })
        event_bus.publish(recipient.workspace_id, EventType.CALL_FAILED, {
            "campaign_id": recipient.campaign_id,
            "recipient_id": recipient.id,
            "error": error,
        })

    async def start_next_calls(
        self,
        campaign_id: str,
        workspace_id: str,
        config: ProviderConfig,
        initial: bool = False,
    ) -> StartCallsResult:
        """Start the next call(s) for a campaign.

        An initial start (campaign start, resume, stuck restart) seeds up
        to ``initial_concurrent_calls`` within the free slots. A webhook
        trigger replaces one ended call and retries transient failures
        before putting the campaign into cooldown.
        """
        async with self._lock_for(campaign_id):
            return await self._start_next_calls(campaign_id, workspace_id, config, initial)

    async def _start_next_calls(
        self,
        campaign_id: str,
        workspace_id: str,
        config: ProviderConfig,
        initial: bool,
    ) -> StartCallsResult:
        logger.info(f"[CallQueue] start_next_calls: campaign={campaign_id} initial={initial}")

        if not initial:
            remaining_s = self.cooldown_remaining(campaign_id)
            if remaining_s > 0:
                logger.info(f"[CallQueue] Campaign {campaign_id} in cooldown for {remaining_s:.1f}s, skipping")
                return StartCallsResult(
                    remaining=self.pending_count(campaign_id),
                    errors=[f"In cooldown for {math.ceil(remaining_s)}s after concurrency limit"],
                    concurrency_hit=True,
                )

        campaign = self.store.get_campaign(campaign_id)
        if campaign is None or campaign.status != CampaignStatus.ACTIVE:
            status = campaign.status.value if campaign else None
            logger.info(f"[CallQueue] Campaign {campaign_id} is not active (status: {status})")
            self.forget_campaign(campaign_id)
            return StartCallsResult(errors=["Campaign is not active"])

        if initial:
            slots = self.available_slots(campaign_id, workspace_id)
            to_start = min(settings.initial_concurrent_calls, slots)
            logger.info(f"[CallQueue] Initial start: {slots} slots available")
            if to_start <= 0:
                return StartCallsResult(
                    remaining=self.pending_count(campaign_id),
                    errors=["No slots available for initial start"],
                )
        else:
            to_start = settings.calls_to_start_on_webhook

        pending = self.next_pending_recipients(campaign_id, to_start)
        if not pending:
            calling = self.store.count_recipients(campaign_id, [RecipientCallStatus.CALLING])
            if calling == 0 and self.store.complete_campaign_if_active(campaign_id):
                logger.info(f"[CallQueue] Campaign {campaign_id} completed, no more recipients")
                self.forget_campaign(campaign_id)
                event_bus.publish(workspace_id, EventType.CAMPAIGN_COMPLETED, {"campaign_id": campaign_id})
            return StartCallsResult()

        result = StartCallsResult()
        max_retries = 0 if initial else settings.max_concurrency_retries

        for index, recipient in enumerate(pending):
            retries = 0
            while True:
                if retries > 0:
                    logger.info(
                        f"[CallQueue] Retry {retries}/{max_retries} for {recipient.phone_number} "
                        f"after {settings.retry_delay_ms}ms"
                    )
                    await self._sleep(settings.retry_delay_ms / 1000)

                outcome = await self.start_single_call(recipient, config)
                if outcome.success:
                    result.started += 1
                    self.clear_cooldown(campaign_id)
                    break
                if not outcome.should_retry:
                    result.failed += 1
                    if outcome.error:
                        result.errors.append(f"{recipient.phone_number}: {outcome.error}")
                    break

                retries += 1
                if retries > max_retries:
                    logger.warning(
                        f"[CallQueue] Exhausted {max_retries} retries for {recipient.phone_number}, entering cooldown"
                    )
                    result.concurrency_hit = True
                    self.set_cooldown(campaign_id)
                    result.errors.append(
                        f"{recipient.phone_number}: {outcome.error} "
                        f"(will retry after {settings.concurrency_cooldown_ms // 1000}s cooldown)"
                    )
                    break

            if result.concurrency_hit:
                break
            if index < len(pending) - 1:
                await self._sleep(settings.delay_between_calls_ms / 1000)

        result.remaining = self.pending_count(campaign_id)
        if result.failed > 0:
            self.store.increment_campaign_stats(campaign_id, failed=result.failed)

        logger.info(
            f"[CallQueue] Campaign {campaign_id}: started {result.started}, failed {result.failed}, "
            f"remaining {result.remaining}{' (concurrency limit hit)' if result.concurrency_hit else ''}"
        )
        return result

    async def on_call_ended(self, campaign_id: str, workspace_id: str, config: ProviderConfig) -> StartCallsResult:
        """Start the replacement for a call that just ended."""
        return await self.start_next_calls(campaign_id, workspace_id, config)


# ──────────────────────────────────────────────────────────────────
# Process-wide manager
# ──────────────────────────────────────────────────────────────────

_manager: CallQueueManager | None = None


def get_queue_manager() -> CallQueueManager:
    global _manager
    if _manager is None:
        _manager = CallQueueManager()
    return _manager


def set_queue_manager(manager: CallQueueManager | None) -> None:
    global _manager
    _manager = manager
