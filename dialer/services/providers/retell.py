"""Retell outbound call client.

Docs: https://docs.retellai.com/api-references/create-phone-call
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


class RetellCallProvider(BaseCallProvider):
    name = "retell"

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(
            api_key,
            base_url or settings.retell_base_url,
            timeout if timeout is not None else settings.provider_timeout_seconds,
        )

    def build_payload(self, request: OutboundCallRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "from_number": normalize_to_e164(request.from_number),
            "to_number": normalize_to_e164(request.customer_number),
            "override_agent_id": request.agent_id,
        }
        variables = dict(request.variables)
        if request.customer_name and "customer_name" not in variables:
            variables["customer_name"] = request.customer_name
        if variables:
            # Retell only accepts string values for dynamic variables
            payload["retell_llm_dynamic_variables"] = {k: str(v) for k, v in variables.items()}
        if request.metadata:
            payload["metadata"] = request.metadata
        return payload

    async def create_outbound_call(self, request: OutboundCallRequest) -> OutboundCallResult:
        if not request.from_number:
            return OutboundCallResult(success=False, error="Retell calls require a from number")

        payload = self.build_payload(request)
        logger.info(f"Retell: creating outbound call {payload['from_number']} -> {payload['to_number']}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/v2/create-phone-call",
                    headers=self._headers(),
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Retell: create call request failed: {e}")
            return OutboundCallResult(success=False, error=str(e) or type(e).__name__)

        if resp.status_code >= 400:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            error = (
                (data.get("message") or data.get("error_message")) if isinstance(data, dict) else None
            ) or f"Retell API error: {resp.status_code} {resp.reason_phrase}"
            logger.error(f"Retell: create call rejected ({resp.status_code}): {error}")
            return OutboundCallResult(success=False, error=str(error), status_code=resp.status_code)

        data = resp.json()
        logger.info(f"Retell: outbound call created {data.get('call_id')} status={data.get('call_status')}")
        return OutboundCallResult(
            success=True,
            call_id=data.get("call_id"),
            status=data.get("call_status", ""),
            status_code=resp.status_code,
            raw=data,
        )
