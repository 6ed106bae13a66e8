"""Voice provider webhook handlers.

Providers call these when a campaign call changes state. An ended call
finalises its recipient and, while the campaign is active, triggers the
next call as a background task so the provider gets its 200 right away.

Processing failures are logged and still acknowledged: a non-2xx makes
providers retry, which would only replay the same result.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from loguru import logger

from dialer.services.call_results import (
    CallResultOutcome,
    duration_between,
    map_retell_disconnection_reason,
    map_vapi_ended_reason,
    record_call_result,
)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")
    return body


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _from_millis(value: Any) -> datetime | None:
    if not isinstance(value, (int, float)) or value <= 0:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _schedule_follow_up(result: CallResultOutcome, background_tasks: BackgroundTasks) -> None:
    if result.follow_up is not None:
        background_tasks.add_task(result.follow_up)


def _ack(result: CallResultOutcome | None, event: str) -> dict[str, Any]:
    if result is None:
        return {"received": True, "event": event}
    return {
        "received": True,
        "event": event,
        "handled": result.handled,
        "duplicate": result.duplicate,
        "campaign_completed": result.campaign_completed,
    }


# ──────────────────────────────────────────────────────────────────
# Vapi
# ──────────────────────────────────────────────────────────────────

def _vapi_call_result(message: dict[str, Any], workspace_id: str) -> CallResultOutcome | None:
    call = message.get("call")
    call_id = call.get("id") if isinstance(call, dict) else None
    if not call_id:
        logger.warning("Vapi webhook without call id")
        return None

    ended_reason = call.get("endedReason") or message.get("endedReason")

    duration = message.get("durationSeconds")
    if duration is None:
        duration = duration_between(
            _parse_iso(call.get("startedAt") or message.get("startedAt")),
            _parse_iso(call.get("endedAt") or message.get("endedAt")),
        )

    artifact = message.get("artifact") or {}
    transcript = artifact.get("transcript") or message.get("transcript")
    cost = call.get("cost") if call.get("cost") is not None else message.get("cost")

    outcome = map_vapi_ended_reason(ended_reason, duration, bool(transcript))
    logger.info(f"Vapi call {call_id} ended: reason={ended_reason or 'NOT PROVIDED'} outcome={outcome.value}")
    return record_call_result(call_id, outcome, duration, cost, workspace_id=workspace_id)


@router.post("/w/{workspace_id}/vapi")
async def vapi_webhook(workspace_id: str, request: Request, background_tasks: BackgroundTasks):
    """Handle Vapi server messages for a workspace.

    ``end-of-call-report`` (and a ``status-update`` with status
    ``ended``) record the call result; anything else is acknowledged.
    """
    body = await _json_body(request)
    message = body.get("message")
    if not isinstance(message, dict):
        logger.warning(f"Vapi webhook without a message object for workspace {workspace_id}")
        message = {}
    event = message.get("type", "unknown")

    is_end = event == "end-of-call-report" or (event == "status-update" and message.get("status") == "ended")
    if not is_end:
        logger.debug(f"Vapi webhook {event} acknowledged for workspace {workspace_id}")
        return _ack(None, event)

    try:
        result = _vapi_call_result(message, workspace_id)
    except Exception:
        logger.exception(f"Failed to process Vapi {event} for workspace {workspace_id}")
        return _ack(None, event)

    if result is not None:
        _schedule_follow_up(result, background_tasks)
    return _ack(result, event)


# ──────────────────────────────────────────────────────────────────
# Retell
# ──────────────────────────────────────────────────────────────────

def _retell_call_result(call: dict[str, Any], workspace_id: str) -> CallResultOutcome | None:
    call_id = call.get("call_id")
    if not call_id:
        logger.warning("Retell webhook without call_id")
        return None

    duration = duration_between(_from_millis(call.get("start_timestamp")), _from_millis(call.get("end_timestamp")))
    transcript = call.get("transcript") or call.get("transcript_object")
    analysis = call.get("call_analysis") or {}
    reason = call.get("disconnection_reason")

    cost = None
    call_cost = call.get("call_cost")
    if isinstance(call_cost, dict) and call_cost.get("combined_cost") is not None:
        cost = call_cost["combined_cost"] / 100  # cents

    outcome = map_retell_disconnection_reason(
        reason, duration, bool(analysis.get("in_voicemail")), bool(transcript)
    )
    logger.info(f"Retell call {call_id} ended: reason={reason} outcome={outcome.value}")
    return record_call_result(call_id, outcome, duration, cost, workspace_id=workspace_id)


@router.post("/w/{workspace_id}/retell")
async def retell_webhook(workspace_id: str, request: Request, background_tasks: BackgroundTasks):
    """Handle Retell call events for a workspace.

    ``call_ended`` records the result; ``call_started`` and
    ``call_analyzed`` are acknowledged.
    """
    body = await _json_body(request)
    event = body.get("event", "unknown")

    if event != "call_ended":
        logger.debug(f"Retell webhook {event} acknowledged for workspace {workspace_id}")
        return _ack(None, event)

    try:
        call = body.get("call")
        result = _retell_call_result(call if isinstance(call, dict) else {}, workspace_id)
    except Exception:
        logger.exception(f"Failed to process Retell {event} for workspace {workspace_id}")
        return _ack(None, event)

    if result is not None:
        _schedule_follow_up(result, background_tasks)
    return _ack(result, event)
