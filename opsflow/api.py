"""HTTP surface: provider webhooks, campaign control and domain events."""

from __future__ import annotations

import logging
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .contracts import DomainEvent
from .errors import (
    ConcurrencyConflict,
    InvalidAction,
    InvalidDefinition,
    InvalidPayload,
    InvalidSignature,
    NotFound,
    OpsflowError,
    TransientCollaboratorFailure,
)
from .runtime import Services, build_services

logger = logging.getLogger(__name__)

router = APIRouter()

_STATUS_BY_ERROR = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidSignature, status.HTTP_401_UNAUTHORIZED),
    (InvalidAction, status.HTTP_400_BAD_REQUEST),
    (InvalidDefinition, status.HTTP_400_BAD_REQUEST),
    (InvalidPayload, 422),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (TransientCollaboratorFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(error: OpsflowError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _handle_opsflow_error(request: Request, exc: OpsflowError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=code, content=exc.to_dict())


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


class ControlRequest(BaseModel):
    action: str


def _challenge(request: Request, services: Services) -> Optional[str]:
    for name in services.config.webhooks.challenge_params:
        value = request.query_params.get(name)
        if value is not None:
            return value
    return None


@router.get("/webhooks/{provider_id}")
async def webhook_challenge(provider_id: str, request: Request, services: ServicesDep):
    """Subscription verification: echo the challenge back verbatim."""
    challenge = _challenge(request, services)
    if challenge is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "missing_challenge"},
        )
    return PlainTextResponse(challenge)


@router.post("/webhooks/{provider_id}")
async def receive_webhook(provider_id: str, request: Request, services: ServicesDep):
    challenge = _challenge(request, services)
    if challenge is not None:
        return PlainTextResponse(challenge)

    provider = services.ingestor.provider(provider_id)
    body = await request.body()
    result = await services.ingestor.ingest(
        provider_id, body, request.headers.get(provider.signature_header)
    )
    code = (
        status.HTTP_200_OK
        if result.accepted
        else status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return JSONResponse(status_code=code, content=result.model_dump())


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def publish_event(event: DomainEvent, services: ServicesDep) -> Dict[str, Any]:
    execution_ids = await services.dispatcher.publish(event)
    return {"event_id": event.event_id, "execution_ids": execution_ids}


@router.post("/campaigns/{campaign_id}/control")
async def control_campaign(
    campaign_id: str, body: ControlRequest, services: ServicesDep
) -> Dict[str, Any]:
    execution = await services.campaigns.control(campaign_id, body.action)
    return execution.model_dump(mode="json")


@router.get("/campaigns/{campaign_id}/execution")
async def campaign_status(campaign_id: str, services: ServicesDep) -> Dict[str, Any]:
    return await services.campaigns.status(campaign_id)


@router.get("/workflow-executions/{execution_id}")
async def workflow_execution(execution_id: str, services: ServicesDep) -> Dict[str, Any]:
    execution = await services.repository.get_execution(execution_id)
    if execution is None:
        raise NotFound(f"Execution {execution_id} not found", execution_id=execution_id)
    steps = await services.repository.list_steps(execution_id)
    return {
        **execution.model_dump(mode="json"),
        "steps": [step.model_dump(mode="json") for step in steps],
    }


@router.get("/sync/abandoned")
async def abandoned_sync_records(
    services: ServicesDep, tenant_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    records = await services.sync.list_abandoned(tenant_id)
    return [record.model_dump(mode="json") for record in records]


@router.post("/sync/{record_id}/replay")
async def replay_sync_record(record_id: str, services: ServicesDep) -> Dict[str, Any]:
    record = await services.sync.replay(record_id)
    return record.model_dump(mode="json")


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="opsflow")
    app.state.services = services
    app.add_exception_handler(OpsflowError, _handle_opsflow_error)
    app.include_router(router)
    return app


def build_app() -> FastAPI:
    """ASGI factory for ``uvicorn opsflow.api:build_app --factory``."""
    return create_app(build_services())
