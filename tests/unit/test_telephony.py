import json

import httpx
import pytest

from opsflow.config import TelephonyConfig
from opsflow.contracts import CallAttemptRequest, CallTarget
from opsflow.errors import CollaboratorRequestError, TransientCollaboratorFailure
from opsflow.telephony import VapiTelephonyClient

CONFIG = TelephonyConfig(
    base_url="https://voice.test", api_key="vapi-key", phone_number_id="phone-1"
)


def _client(handler) -> VapiTelephonyClient:
    return VapiTelephonyClient(
        CONFIG, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


def _request() -> CallAttemptRequest:
    return CallAttemptRequest(
        campaign_id="camp-1",
        execution_id="run-1",
        agent_id="assistant-1",
        attempt_number=2,
        target=CallTarget(
            id="lead-1", phone="+15550001", name="Ada", metadata={"segment": "vip"}
        ),
    )


@pytest.mark.asyncio
async def test_place_call_sends_vapi_payload():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "call-9", "status": "queued"})

    result = await _client(handler).place_call(_request())

    assert result.success
    assert result.provider_call_id == "call-9"
    assert result.outcome_code == "queued"
    request = seen[0]
    assert str(request.url) == "https://voice.test/call"
    assert request.headers["Authorization"] == "Bearer vapi-key"
    body = json.loads(request.content)
    assert body["assistantId"] == "assistant-1"
    assert body["phoneNumberId"] == "phone-1"
    assert body["customer"] == {"number": "+15550001", "name": "Ada"}
    assert body["metadata"]["target_id"] == "lead-1"
    assert body["metadata"]["attempt"] == 2
    assert body["metadata"]["segment"] == "vip"


@pytest.mark.asyncio
async def test_unaccepted_status_is_an_unsuccessful_attempt():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "call-1", "status": "failed"})

    result = await _client(handler).place_call(_request())
    assert not result.success
    assert result.outcome_code == "failed"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, error",
    [
        (429, TransientCollaboratorFailure),
        (502, TransientCollaboratorFailure),
        (400, CollaboratorRequestError),
        (404, CollaboratorRequestError),
    ],
)
async def test_error_statuses(status_code, error):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text="nope")

    with pytest.raises(error):
        await _client(handler).place_call(_request())
