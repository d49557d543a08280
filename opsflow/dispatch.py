"""Trigger dispatcher and command worker for opsflow."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Protocol

from .constants import (
    ALL_TOPICS,
    TOPIC_CAMPAIGN_CONTROL,
    TOPIC_SYNC_ENTITY,
    TOPIC_WORKFLOW_EXECUTE,
    TOPIC_WORKFLOW_RESUME,
)
from .contracts import DomainEvent, OpsflowMessage, WorkflowDefinition
from .errors import ConcurrencyConflict, OpsflowError, TransientCollaboratorFailure
from .persistence import Repository
from .steps import evaluate_rules
from .transports import BaseTransport

if TYPE_CHECKING:
    from .campaigns import CampaignService
    from .execute import WorkflowEngine
    from .sync.service import SyncService

logger = logging.getLogger(__name__)

_EXECUTION_NAMESPACE = uuid.UUID("5b0c3f1e-8d4a-4c55-9a1e-6f0b7e2d9c41")


class EventPublisher(Protocol):
    async def publish(self, event: DomainEvent) -> List[str]: ...


def execution_id_for(event_id: str, definition_id: str) -> str:
    """Deterministic execution id so a redelivered event maps to the same run."""
    return str(uuid.uuid5(_EXECUTION_NAMESPACE, f"{event_id}:{definition_id}"))


def trigger_payload(event: DomainEvent) -> Dict[str, Any]:
    payload = dict(event.payload)
    payload.setdefault("event_id", event.event_id)
    payload.setdefault("event_type", event.type)
    payload.setdefault("tenant_id", event.tenant_id)
    if event.entity_id is not None:
        payload.setdefault("entity_id", event.entity_id)
    return payload


def matches(definition: WorkflowDefinition, event: DomainEvent) -> bool:
    if not definition.enabled:
        return False
    if definition.tenant_id != event.tenant_id:
        return False
    if definition.trigger.event_type != event.type:
        return False
    if not definition.trigger.conditions:
        return True
    return evaluate_rules(
        definition.trigger.conditions, definition.trigger.logic, trigger_payload(event)
    )


class TriggerDispatcher:
    """Turns domain events into queued workflow commands."""

    def __init__(self, repository: Repository, transport: BaseTransport) -> None:
        self._repository = repository
        self._transport = transport

    async def publish(self, event: DomainEvent) -> List[str]:
        """Enqueue one ``workflow.execute`` command per matching definition.

        Returns:
            The execution ids that were enqueued.
        """
        payload = trigger_payload(event)
        execution_ids = []
        for definition in await self._repository.list_definitions(event.tenant_id):
            if not matches(definition, event):
                continue
            execution_id = execution_id_for(event.event_id, definition.id)
            await self._transport.publish(
                TOPIC_WORKFLOW_EXECUTE,
                OpsflowMessage(
                    command="workflow.execute",
                    correlation_id=execution_id,
                    tenant_id=event.tenant_id,
                    payload={
                        "definition_id": definition.id,
                        "execution_id": execution_id,
                        "trigger_payload": payload,
                    },
                ),
            )
            execution_ids.append(execution_id)

        logger.info(
            f"Event {event.type} ({event.event_id}) for tenant {event.tenant_id} "
            f"triggered {len(execution_ids)} workflow(s)"
        )
        return execution_ids

    async def enqueue_resume(self, execution_id: str) -> None:
        await self._transport.publish(
            TOPIC_WORKFLOW_RESUME,
            OpsflowMessage(
                command="workflow.resume",
                correlation_id=execution_id,
                payload={"execution_id": execution_id},
            ),
        )

    async def enqueue_campaign_control(
        self, campaign_id: str, action: str, tenant_id: Optional[str] = None
    ) -> None:
        await self._transport.publish(
            TOPIC_CAMPAIGN_CONTROL,
            OpsflowMessage(
                command="campaign.control",
                correlation_id=campaign_id,
                tenant_id=tenant_id,
                payload={"campaign_id": campaign_id, "action": action},
            ),
        )

    async def enqueue_sync(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        provider_id: Optional[str] = None,
    ) -> None:
        await self._transport.publish(
            TOPIC_SYNC_ENTITY,
            OpsflowMessage(
                command="sync.entity",
                correlation_id=f"{entity_type}:{entity_id}",
                tenant_id=tenant_id,
                payload={
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "provider_id": provider_id,
                },
            ),
        )


class CommandWorker:
    """Consumes commands from the transport and hands them to the services.

    Caller errors are logged and acked since redelivery cannot fix them;
    transient failures are nacked for redelivery up to ``max_deliveries``.
    """

    def __init__(
        self,
        transport: BaseTransport,
        engine: "WorkflowEngine",
        campaigns: Optional["CampaignService"] = None,
        sync: Optional["SyncService"] = None,
        max_deliveries: int = 5,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self._campaigns = campaigns
        self._sync = sync
        self._max_deliveries = max_deliveries

    async def handle(self, message: OpsflowMessage) -> Any:
        payload = message.payload
        if message.command == "workflow.execute":
            return await self._engine.execute(
                payload["definition_id"],
                payload.get("trigger_payload") or {},
                execution_id=payload.get("execution_id"),
            )
        if message.command == "workflow.resume":
            return await self._engine.resume(payload["execution_id"])
        if message.command == "campaign.control":
            if self._campaigns is None:
                raise OpsflowError("Worker has no campaign service")
            return await self._campaigns.control(payload["campaign_id"], payload["action"])
        if message.command == "sync.entity":
            if self._sync is None:
                raise OpsflowError("Worker has no sync service")
            return await self._sync.sync_entity_to_crm(
                message.tenant_id,
                payload["entity_type"],
                payload["entity_id"],
                provider_id=payload.get("provider_id"),
            )
        raise OpsflowError(f"Unknown command {message.command}")

    async def start(
        self, topics: Iterable[str] = ALL_TOPICS, lifespan: Optional[float] = None
    ) -> None:
        """Consume every topic concurrently until ``lifespan`` elapses."""
        await asyncio.gather(*(self._consume(topic, lifespan) for topic in topics))

    async def _consume(self, topic: str, lifespan: Optional[float]) -> None:
        async for raw_message, message in self._transport.subscribe(
            topic, lifespan=lifespan
        ):
            try:
                await self.handle(message)
            except (TransientCollaboratorFailure, ConcurrencyConflict) as e:
                if message.attempt >= self._max_deliveries:
                    logger.error(
                        f"Dropping {message.command} {message.correlation_id} "
                        f"after {message.attempt} deliveries: {e}"
                    )
                    await self._transport.nack(raw_message, requeue=False)
                else:
                    logger.warning(
                        f"Retrying {message.command} {message.correlation_id} "
                        f"(delivery {message.attempt}): {e}"
                    )
                    await self._transport.nack(raw_message, requeue=True)
                continue
            except OpsflowError as e:
                logger.error(
                    f"Rejected {message.command} {message.correlation_id}: "
                    f"[{e.code}] {e}"
                )
                await self._transport.ack(raw_message)
                continue
            except Exception:
                logger.exception(
                    f"Unexpected error handling {message.command} {message.correlation_id}"
                )
                await self._transport.nack(raw_message, requeue=False)
                continue

            logger.debug(f"Handled {message.command} {message.correlation_id}")
            await self._transport.ack(raw_message)
