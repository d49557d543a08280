"""In-memory implementation of the repository."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, TypeVar

from pydantic import BaseModel

from ..contracts import (
    Campaign,
    CampaignExecution,
    EntityRecord,
    Integration,
    OAuthCredential,
    StepRecord,
    SyncRecord,
    SyncStatus,
    WebhookEvent,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStatus,
)
from ..errors import ConcurrencyConflict
from .repository import Repository

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(model: ModelT) -> ModelT:
    return model.model_copy(deep=True)


class InMemoryRepository(Repository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A single lock makes every
    compare-and-set atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: list[StepRecord] = []
        self._step_id = 0
        self._campaigns: Dict[str, Campaign] = {}
        self._campaign_executions: Dict[str, CampaignExecution] = {}
        self._integrations: Dict[Tuple[str, str], Integration] = {}
        self._credentials: Dict[str, OAuthCredential] = {}
        self._webhooks: Dict[Tuple[str, str], WebhookEvent] = {}
        self._sync_records: Dict[str, SyncRecord] = {}
        self._entities: Dict[Tuple[str, str, str], EntityRecord] = {}

    def _cas(self, table: Dict, key, model: ModelT, label: str) -> ModelT:
        stored = table.get(key)
        if stored is None:
            raise ConcurrencyConflict(f"{label} {key} does not exist")
        if stored.version != model.version:
            raise ConcurrencyConflict(
                f"{label} {key} changed concurrently",
                expected_version=model.version,
                actual_version=stored.version,
            )
        update = {"version": model.version + 1}
        if "updated_at" in type(model).model_fields:
            update["updated_at"] = datetime.now(timezone.utc)
        updated = model.model_copy(deep=True, update=update)
        table[key] = updated
        return _copy(updated)

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        return self._definitions.get(definition_id)

    async def list_definitions(
        self, tenant_id: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        return [
            d
            for d in self._definitions.values()
            if tenant_id is None or d.tenant_id == tenant_id
        ]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            if execution.id in self._executions:
                raise ConcurrencyConflict(f"execution {execution.id} already exists")
            self._executions[execution.id] = _copy(execution)
            return _copy(execution)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        wf = self._executions.get(execution_id)
        return _copy(wf) if wf else None

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            return self._cas(self._executions, execution.id, execution, "execution")

    async def list_executions(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowExecution]:
        return [
            _copy(e)
            for e in self._executions.values()
            if status is None or e.status == status
        ]

    async def list_due_waiting(
        self, now: datetime, limit: int = 100
    ) -> list[WorkflowExecution]:
        due = [
            _copy(e)
            for e in self._executions.values()
            if e.status == WorkflowStatus.WAITING
            and e.resume_at is not None
            and e.resume_at <= now
        ]
        due.sort(key=lambda e: e.resume_at)
        return due[:limit]

    # ------------------------------------------------------------------
    async def mark_step_started(
        self, execution_id: str, step_id: str, run: int = 1
    ) -> None:
        # ignore duplicate starts for the same run
        for step in self._steps:
            if (
                step.execution_id == execution_id
                and step.step_id == step_id
                and step.run == run
            ):
                return
        self._step_id += 1
        self._steps.append(
            StepRecord(
                id=self._step_id,
                execution_id=execution_id,
                step_id=step_id,
                run=run,
                status="running",
                started_at=datetime.now(timezone.utc),
            )
        )

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: dict | None = None,
        attempts: int = 1,
        error: str | None = None,
        run: int = 1,
    ) -> None:
        for step in self._steps:
            if (
                step.execution_id == execution_id
                and step.step_id == step_id
                and step.run == run
                and step.completed_at is None
            ):
                step.completed_at = datetime.now(timezone.utc)
                step.status = status
                step.output = output or {}
                step.attempts = attempts
                step.error = error
                break

    async def list_steps(self, execution_id: str) -> list[StepRecord]:
        return [_copy(s) for s in self._steps if s.execution_id == execution_id]

    # ------------------------------------------------------------------
    async def save_campaign(self, campaign: Campaign) -> None:
        self._campaigns[campaign.id] = _copy(campaign)

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        campaign = self._campaigns.get(campaign_id)
        return _copy(campaign) if campaign else None

    async def create_campaign_execution(
        self, execution: CampaignExecution
    ) -> CampaignExecution:
        async with self._lock:
            for existing in self._campaign_executions.values():
                if existing.campaign_id == execution.campaign_id and not existing.is_terminal:
                    raise ConcurrencyConflict(
                        f"campaign {execution.campaign_id} already has a live execution",
                        execution_id=existing.id,
                    )
            self._campaign_executions[execution.id] = _copy(execution)
            return _copy(execution)

    async def get_campaign_execution(
        self, execution_id: str
    ) -> CampaignExecution | None:
        execution = self._campaign_executions.get(execution_id)
        return _copy(execution) if execution else None

    async def get_latest_campaign_execution(
        self, campaign_id: str
    ) -> CampaignExecution | None:
        runs = await self.list_campaign_executions(campaign_id)
        return runs[-1] if runs else None

    async def update_campaign_execution(
        self, execution: CampaignExecution
    ) -> CampaignExecution:
        async with self._lock:
            return self._cas(
                self._campaign_executions, execution.id, execution, "campaign execution"
            )

    async def list_campaign_executions(
        self, campaign_id: Optional[str] = None
    ) -> list[CampaignExecution]:
        runs = [
            _copy(e)
            for e in self._campaign_executions.values()
            if campaign_id is None or e.campaign_id == campaign_id
        ]
        runs.sort(key=lambda e: e.started_at)
        return runs

    # ------------------------------------------------------------------
    async def save_integration(self, integration: Integration) -> Integration:
        key = (integration.tenant_id, integration.provider_id)
        async with self._lock:
            stored = self._integrations.get(key)
            version = stored.version + 1 if stored else integration.version
            updated = integration.model_copy(
                deep=True,
                update={"version": version, "updated_at": datetime.now(timezone.utc)},
            )
            self._integrations[key] = updated
            return _copy(updated)

    async def get_integration(
        self, tenant_id: str, provider_id: str
    ) -> Integration | None:
        integration = self._integrations.get((tenant_id, provider_id))
        return _copy(integration) if integration else None

    async def find_integration_by_account(
        self, provider_id: str, external_account_id: str
    ) -> Integration | None:
        for integration in self._integrations.values():
            if (
                integration.provider_id == provider_id
                and integration.external_account_id == external_account_id
            ):
                return _copy(integration)
        return None

    async def save_credential(self, credential: OAuthCredential) -> OAuthCredential:
        async with self._lock:
            stored = self._credentials.get(credential.ref)
            version = stored.version + 1 if stored else credential.version
            updated = credential.model_copy(update={"version": version})
            self._credentials[credential.ref] = updated
            return _copy(updated)

    async def get_credential(self, ref: str) -> OAuthCredential | None:
        credential = self._credentials.get(ref)
        return _copy(credential) if credential else None

    # ------------------------------------------------------------------
    async def insert_webhook_event(
        self, event: WebhookEvent
    ) -> tuple[WebhookEvent, bool]:
        key = (event.provider_id, event.external_event_id)
        async with self._lock:
            existing = self._webhooks.get(key)
            if existing is not None:
                return _copy(existing), False
            self._webhooks[key] = _copy(event)
            return _copy(event), True

    async def update_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        key = (event.provider_id, event.external_event_id)
        async with self._lock:
            return self._cas(self._webhooks, key, event, "webhook event")

    async def get_webhook_event(
        self, provider_id: str, external_event_id: str
    ) -> WebhookEvent | None:
        event = self._webhooks.get((provider_id, external_event_id))
        return _copy(event) if event else None

    async def list_webhook_events(self) -> list[WebhookEvent]:
        return [_copy(e) for e in self._webhooks.values()]

    # ------------------------------------------------------------------
    async def create_sync_record(self, record: SyncRecord) -> SyncRecord:
        async with self._lock:
            if record.id in self._sync_records:
                raise ConcurrencyConflict(f"sync record {record.id} already exists")
            self._sync_records[record.id] = _copy(record)
            return _copy(record)

    async def get_sync_record(self, record_id: str) -> SyncRecord | None:
        record = self._sync_records.get(record_id)
        return _copy(record) if record else None

    async def update_sync_record(self, record: SyncRecord) -> SyncRecord:
        async with self._lock:
            return self._cas(self._sync_records, record.id, record, "sync record")

    async def list_sync_records(
        self, status: Optional[SyncStatus] = None, tenant_id: Optional[str] = None
    ) -> list[SyncRecord]:
        return [
            _copy(r)
            for r in self._sync_records.values()
            if (status is None or r.status == status)
            and (tenant_id is None or r.tenant_id == tenant_id)
        ]

    async def list_due_sync_records(
        self, now: datetime, limit: int = 50
    ) -> list[SyncRecord]:
        due = [
            _copy(r)
            for r in self._sync_records.values()
            if r.status == SyncStatus.PENDING
            and r.next_retry_at is not None
            and r.next_retry_at <= now
        ]
        due.sort(key=lambda r: r.next_retry_at)
        return due[:limit]

    # ------------------------------------------------------------------
    async def get_entity(
        self, tenant_id: str, entity_type: str, entity_id: str
    ) -> EntityRecord | None:
        entity = self._entities.get((tenant_id, entity_type, entity_id))
        return _copy(entity) if entity else None

    async def find_entity_by_external_id(
        self, tenant_id: str, entity_type: str, external_id: str
    ) -> EntityRecord | None:
        for entity in self._entities.values():
            if (
                entity.tenant_id == tenant_id
                and entity.entity_type == entity_type
                and entity.external_id == external_id
            ):
                return _copy(entity)
        return None

    async def save_entity(self, entity: EntityRecord) -> EntityRecord:
        key = (entity.tenant_id, entity.entity_type, entity.entity_id)
        updated = entity.model_copy(
            deep=True, update={"updated_at": datetime.now(timezone.utc)}
        )
        self._entities[key] = updated
        return _copy(updated)
