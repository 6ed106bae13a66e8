"""Vapi outbound call client.

Docs: https://docs.vapi.ai/api-reference/calls/create
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from dialer.config import settings
from dialer.services.phone import normalize_to_e164
from dialer.services.providers.base import (
    BaseCallProvider,
    OutboundCallRequest,
    OutboundCallResult,
)


def _error_message(response: httpx.Response) -> str:
    """Vapi returns validation errors as a list under ``message``."""
    try:
        data = response.json()
    except ValueError:
        data = {}
    message = data.get("message") if isinstance(data, dict) else None
    if isinstance(message, list):
        return ", ".join(str(m) for m in message)
    if message:
        return str(message)
    return f"VAPI API error: {response.status_code} {response.reason_phrase}"


class VapiCallProvider(BaseCallProvider):
    name = "vapi"

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(
            api_key,
            base_url or settings.vapi_base_url,
            timeout if timeout is not None else settings.provider_timeout_seconds,
        )

    def build_payload(self, request: OutboundCallRequest) -> dict[str, Any]:
        customer: dict[str, Any] = {"number": normalize_to_e164(request.customer_number)}
        if request.customer_name:
            customer["name"] = request.customer_name
        payload: dict[str, Any] = {
            "assistantId": request.agent_id,
            "phoneNumberId": request.phone_number_id,
            "customer": customer,
        }
        if request.variables:
            payload["assistantOverrides"] = {"variableValues": request.variables}
        if request.metadata:
            payload["metadata"] = request.metadata
        return payload

    async def create_outbound_call(self, request: OutboundCallRequest) -> OutboundCallResult:
        payload = self.build_payload(request)
        logger.info(
            f"Vapi: creating outbound call from {request.phone_number_id} "
            f"to {payload['customer']['number']}"
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/call",
                    headers=self._headers(),
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Vapi: create call request failed: {e}")
            return OutboundCallResult(success=False, error=str(e) or type(e).__name__)

        if resp.status_code >= 400:
            error = _error_message(resp)
            logger.error(f"Vapi: create call rejected ({resp.status_code}): {error}")
            return OutboundCallResult(success=False, error=error, status_code=resp.status_code)

        data = resp.json()
        logger.info(f"Vapi: outbound call created {data.get('id')} status={data.get('status')}")
        return OutboundCallResult(
            success=True,
            call_id=data.get("id"),
            status=data.get("status", ""),
            status_code=resp.status_code,
            raw=data,
        )
