"""Outbound call placement for campaigns."""

from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

import httpx

from .config import TelephonyConfig
from .contracts import CallAttemptRequest, CallAttemptResult
from .errors import CollaboratorRequestError, TransientCollaboratorFailure

logger = logging.getLogger(__name__)

# provider statuses meaning the call was accepted for dialing
ACCEPTED_STATUSES = {"queued", "scheduled", "ringing", "in-progress", "forwarding", "ended"}


class TelephonyClient(Protocol):
    async def place_call(self, request: CallAttemptRequest) -> CallAttemptResult: ...


class VapiTelephonyClient:
    """Places calls through the Vapi REST API."""

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or TelephonyConfig()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout)
            )
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _build_payload(self, request: CallAttemptRequest) -> Dict[str, Any]:
        customer: Dict[str, Any] = {"number": request.target.phone}
        if request.target.name:
            customer["name"] = request.target.name
        return {
            "assistantId": request.agent_id,
            "phoneNumberId": self._config.phone_number_id,
            "customer": customer,
            "metadata": {
                "campaign_id": request.campaign_id,
                "execution_id": request.execution_id,
                "target_id": request.target.id,
                "attempt": request.attempt_number,
                **request.target.metadata,
            },
        }

    async def place_call(self, request: CallAttemptRequest) -> CallAttemptResult:
        logger.info(
            f"Placing call to target {request.target.id} for campaign {request.campaign_id}"
        )
        try:
            response = await self._get_client().post(
                f"{self._config.base_url}/call",
                json=self._build_payload(request),
                headers={"Authorization": f"Bearer {self._config.api_key or ''}"},
            )
        except httpx.HTTPError as e:
            raise TransientCollaboratorFailure(
                f"Telephony request failed: {e!s}", target_id=request.target.id
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCollaboratorFailure(
                f"Telephony provider unavailable ({response.status_code})",
                target_id=request.target.id,
            )
        if response.status_code >= 400:
            raise CollaboratorRequestError(
                f"Telephony provider rejected call ({response.status_code}): {response.text}",
                target_id=request.target.id,
            )

        data = response.json()
        status = str(data.get("status", "queued"))
        return CallAttemptResult(
            success=status in ACCEPTED_STATUSES,
            duration_seconds=float(data.get("duration") or 0),
            outcome_code=status,
            provider_call_id=data.get("id"),
        )
