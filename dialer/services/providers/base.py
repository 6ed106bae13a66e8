"""Base interface for voice provider call APIs.

Each provider (Vapi, Retell) implements `BaseCallProvider` so the call
queue can start outbound calls without knowing which vendor is behind
an agent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Transient error classification
# ---------------------------------------------------------------------------

_TRANSIENT_MARKERS = (
    # concurrency / rate limits
    "concurrency",
    "rate limit",
    "too many requests",
    "429",
    # provider-side 5xx
    "500",
    "502",
    "503",
    "504",
    "522",  # Cloudflare connection timeout
    "server error",
    "internal error",
    # timeouts and network
    "timeout",
    "timed out",
    "network",
    "econnrefused",
    "econnreset",
    "fetch failed",
    "connection",
)


def is_transient_error(error: str | None) -> bool:
    """True when a failed call start is worth retrying later.

    Transient failures keep the recipient pending; anything else
    (invalid number, bad credentials) fails the recipient.
    """
    if not error:
        return False
    lowered = error.lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


# ---------------------------------------------------------------------------
# Data classes for provider communication
# ---------------------------------------------------------------------------

@dataclass
class OutboundCallRequest:
    """Everything a provider needs to place one outbound call."""

    agent_id: str  # assistant id (Vapi) / agent id (Retell)
    customer_number: str
    phone_number_id: str = ""  # Vapi phone number id
    from_number: str = ""  # Retell caller id (E.164)
    customer_name: str | None = None
    variables: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OutboundCallResult:
    """Outcome of an outbound call request."""

    success: bool
    call_id: str | None = None
    status: str = ""
    error: str | None = None
    status_code: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def transient(self) -> bool:
        if self.success:
            return False
        if self.status_code is not None and (self.status_code == 429 or self.status_code >= 500):
            return True
        return is_transient_error(self.error)


# ---------------------------------------------------------------------------
# Abstract base class
# ---------------------------------------------------------------------------

class BaseCallProvider(ABC):
    """Abstract base class for voice provider call APIs."""

    name: str = "base"

    def __init__(self, api_key: str, base_url: str, timeout: float = 30.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @abstractmethod
    async def create_outbound_call(self, request: OutboundCallRequest) -> OutboundCallResult:
        """Place an outbound call. Never raises for HTTP or network errors."""
        ...

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
