"""Shared fixtures: an in-memory store, a scripted provider and seed data."""

import asyncio

import pytest

from dialer.models.database import (
    Agent,
    CallRecipient,
    Campaign,
    CampaignStatus,
    PhoneNumber,
    ProviderIntegration,
    VoiceProvider,
    Workspace,
)
from dialer.services import event_bus
from dialer.services.auth import create_access_token
from dialer.services.call_queue import CallQueueManager, set_queue_manager
from dialer.services.database import set_store
from dialer.services.memory_store import InMemoryCampaignStore
from dialer.services.providers import BaseCallProvider, OutboundCallResult


class FakeProvider(BaseCallProvider):
    """Returns queued results in order, then succeeds with call-1, call-2, ..."""

    name = "fake"

    def __init__(self, results=None):
        super().__init__("sk-test", "https://provider.test")
        self.results = list(results or [])
        self.requests = []
        self._counter = 0

    async def create_outbound_call(self, request):
        self.requests.append(request)
        # Yield like a real HTTP call so concurrent triggers interleave
        await asyncio.sleep(0)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        self._counter += 1
        return OutboundCallResult(success=True, call_id=f"call-{self._counter}", status="queued")


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def store():
    store = InMemoryCampaignStore()
    set_store(store)
    set_queue_manager(None)
    event_bus.clear_all()
    yield store
    set_store(None)
    set_queue_manager(None)
    event_bus.clear_all()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def manager(store, provider, clock, sleep):
    manager = CallQueueManager(
        store=store,
        provider_factory=lambda config: provider,
        sleep=sleep,
        clock=clock,
    )
    set_queue_manager(manager)
    return manager


@pytest.fixture
def workspace(store):
    return store.save_workspace(Workspace(slug="acme", name="Acme Dental"))


@pytest.fixture
def vapi_agent(store, workspace):
    phone = store.save_phone_number(
        PhoneNumber(workspace_id=workspace.id, phone_number="+61370566663", external_id="vapi-phone-1")
    )
    store.save_provider_integration(
        ProviderIntegration(
            workspace_id=workspace.id,
            provider=VoiceProvider.VAPI,
            api_keys={"default_secret_key": "sk-vapi"},
        )
    )
    return store.save_agent(
        Agent(
            workspace_id=workspace.id,
            name="Receptionist",
            provider=VoiceProvider.VAPI,
            external_agent_id="asst-1",
            assigned_phone_number_id=phone.id,
        )
    )


@pytest.fixture
def make_campaign(store, workspace, vapi_agent):
    def _make(status=CampaignStatus.ACTIVE, recipients=3, agent=None, **fields):
        agent = agent or vapi_agent
        fields.setdefault("name", "Recall reminders")
        campaign = store.create_campaign(
            Campaign(workspace_id=workspace.id, agent_id=agent.id, status=status, **fields)
        )
        store.add_recipients([
            CallRecipient(
                campaign_id=campaign.id,
                workspace_id=workspace.id,
                phone_number=f"+614000{i:05d}",
                first_name=f"Patient{i}",
            )
            for i in range(recipients)
        ])
        store.update_campaign(campaign.id, {"total_recipients": recipients})
        return store.get_campaign(campaign.id)

    return _make


@pytest.fixture
def auth_headers(workspace):
    token = create_access_token("user-1", [workspace.slug])
    return {"Authorization": f"Bearer {token}"}
