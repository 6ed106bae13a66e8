"""In-memory event log for live campaign progress.

Scoped per workspace_id. A rolling history of the last MAX_HISTORY
events per workspace lets dashboards poll for what changed since their
last request.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from loguru import logger

# ── Event Types ──────────────────────────────────────────────────

class EventType(str, Enum):
    CAMPAIGN_STARTED = "campaign.started"
    CAMPAIGN_PAUSED = "campaign.paused"
    CAMPAIGN_RESUMED = "campaign.resumed"
    CAMPAIGN_CANCELLED = "campaign.cancelled"
    CAMPAIGN_COMPLETED = "campaign.completed"
    CALL_STARTED = "campaign.call_started"
    CALL_FAILED = "campaign.call_failed"
    CALL_ENDED = "campaign.call_ended"
    STALE_CALLS_CLEANED = "campaign.stale_calls_cleaned"


# ── Event Structure ──────────────────────────────────────────────

def _make_event(event_type: str, workspace_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": event_type,
        "workspace_id": workspace_id,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Store ────────────────────────────────────────────────────────

MAX_HISTORY = 100

# workspace_id → list[event]
_event_history: dict[str, list[dict[str, Any]]] = {}


def publish(
    workspace_id: str,
    event_type: str | EventType,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Record an event for a workspace. Returns the constructed event dict."""
    evt_type = event_type.value if isinstance(event_type, EventType) else event_type
    event = _make_event(evt_type, workspace_id, payload or {})

    history = _event_history.setdefault(workspace_id, [])
    history.append(event)
    if len(history) > MAX_HISTORY:
        _event_history[workspace_id] = history[-MAX_HISTORY:]

    logger.debug(f"Event {evt_type} for workspace {workspace_id}")
    return event


# ── History ──────────────────────────────────────────────────────

def get_recent_events(
    workspace_id: str,
    limit: int = 20,
    campaign_id: str | None = None,
) -> list[dict[str, Any]]:
    """Return the last *limit* events for a workspace (newest first).

    With *campaign_id*, only events whose payload names that campaign.
    """
    history = _event_history.get(workspace_id, [])
    if campaign_id is not None:
        history = [e for e in history if e["payload"].get("campaign_id") == campaign_id]
    return list(reversed(history[-limit:]))


def get_events_since(workspace_id: str, since_iso: str, limit: int = 50) -> list[dict[str, Any]]:
    """Return events newer than *since_iso* (ISO 8601 timestamp), oldest first."""
    history = _event_history.get(workspace_id, [])
    result = [e for e in history if e["timestamp"] > since_iso]
    return result[-limit:]


def clear_all() -> None:
    """Clear everything (for tests)."""
    _event_history.clear()
