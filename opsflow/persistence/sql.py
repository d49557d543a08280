"""SQL implementation of the repository (SQLite via aiosqlite, PostgreSQL via asyncpg)."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, col

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
from .models import (
    CampaignExecutionRow,
    CampaignRow,
    CredentialRow,
    EntityRow,
    IntegrationRow,
    StepHistoryRow,
    SyncRecordRow,
    WebhookEventRow,
    WorkflowDefinitionRow,
    WorkflowExecutionRow,
)
from .repository import Repository

ModelT = TypeVar("ModelT", bound=BaseModel)


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _bump(model: ModelT) -> ModelT:
    update_: dict[str, Any] = {"version": model.version + 1}
    if "updated_at" in type(model).model_fields:
        update_["updated_at"] = _now()
    return model.model_copy(update=update_)


class SQLRepository(Repository):
    """Persist engine state in a relational database through SQLAlchemy."""

    def __init__(self, database_url: str) -> None:
        kwargs: dict[str, Any] = {"echo": False, "future": True}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url.rstrip("/").endswith(
                "aiosqlite:"
            ):
                kwargs["poolclass"] = StaticPool
        self.database_url = database_url
        self.engine = create_async_engine(database_url, **kwargs)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Schema management
    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialized = True

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    # ------------------------------------------------------------------
    # Helper methods
    async def _insert(self, row: SQLModel, label: str) -> None:
        async with self.session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConcurrencyConflict(f"{label} already exists") from exc

    async def _upsert(self, row: SQLModel) -> None:
        async with self.session() as session:
            await session.merge(row)
            await session.commit()

    async def _cas(
        self,
        row_cls: Type[SQLModel],
        filters: list,
        model: ModelT,
        label: str,
        **columns: Any,
    ) -> ModelT:
        updated = _bump(model)
        async with self.session() as session:
            try:
                result = await session.execute(
                    update(row_cls)
                    .where(*filters, col(row_cls.version) == model.version)
                    .values(version=updated.version, data=_dump(updated), **columns)
                )
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConcurrencyConflict(f"{label} write violates a constraint") from exc
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"{label} changed concurrently", expected_version=model.version
            )
        return updated

    async def _scalars(self, statement) -> list:
        async with self.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def _scalar(self, statement):
        rows = await self._scalars(statement)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._upsert(
            WorkflowDefinitionRow(
                id=definition.id, tenant_id=definition.tenant_id, data=_dump(definition)
            )
        )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await self._scalar(
            select(WorkflowDefinitionRow).where(
                col(WorkflowDefinitionRow.id) == definition_id
            )
        )
        return WorkflowDefinition.model_validate(row.data) if row else None

    async def list_definitions(
        self, tenant_id: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        statement = select(WorkflowDefinitionRow)
        if tenant_id is not None:
            statement = statement.where(col(WorkflowDefinitionRow.tenant_id) == tenant_id)
        rows = await self._scalars(statement)
        return [WorkflowDefinition.model_validate(r.data) for r in rows]

    # ------------------------------------------------------------------
    # Workflow executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        await self._insert(
            WorkflowExecutionRow(
                id=execution.id,
                definition_id=execution.definition_id,
                tenant_id=execution.tenant_id,
                status=execution.status.value,
                resume_ts=_ts(execution.resume_at),
                version=execution.version,
                data=_dump(execution),
            ),
            f"execution {execution.id}",
        )
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await self._scalar(
            select(WorkflowExecutionRow).where(
                col(WorkflowExecutionRow.id) == execution_id
            )
        )
        return WorkflowExecution.model_validate(row.data) if row else None

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        return await self._cas(
            WorkflowExecutionRow,
            [col(WorkflowExecutionRow.id) == execution.id],
            execution,
            f"execution {execution.id}",
            status=execution.status.value,
            resume_ts=_ts(execution.resume_at),
        )

    async def list_executions(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowExecution]:
        statement = select(WorkflowExecutionRow)
        if status is not None:
            statement = statement.where(col(WorkflowExecutionRow.status) == status.value)
        rows = await self._scalars(statement)
        return [WorkflowExecution.model_validate(r.data) for r in rows]

    async def list_due_waiting(
        self, now: datetime, limit: int = 100
    ) -> list[WorkflowExecution]:
        rows = await self._scalars(
            select(WorkflowExecutionRow)
            .where(
                col(WorkflowExecutionRow.status) == WorkflowStatus.WAITING.value,
                col(WorkflowExecutionRow.resume_ts) <= now.timestamp(),
            )
            .order_by(col(WorkflowExecutionRow.resume_ts))
            .limit(limit)
        )
        return [WorkflowExecution.model_validate(r.data) for r in rows]

    # ------------------------------------------------------------------
    # Step history
    async def mark_step_started(
        self, execution_id: str, step_id: str, run: int = 1
    ) -> None:
        row = StepHistoryRow(
            execution_id=execution_id,
            step_id=step_id,
            run=run,
            status="running",
            started_at=_now(),
        )
        try:
            await self._insert(row, f"step {step_id} run {run}")
        except ConcurrencyConflict:
            # duplicate start for the same run
            return

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
        async with self.session() as session:
            await session.execute(
                update(StepHistoryRow)
                .where(
                    col(StepHistoryRow.execution_id) == execution_id,
                    col(StepHistoryRow.step_id) == step_id,
                    col(StepHistoryRow.run) == run,
                    col(StepHistoryRow.completed_at).is_(None),
                )
                .values(
                    completed_at=_now(),
                    status=status,
                    output=output or {},
                    attempts=attempts,
                    error=error,
                )
            )
            await session.commit()

    async def list_steps(self, execution_id: str) -> list[StepRecord]:
        rows = await self._scalars(
            select(StepHistoryRow)
            .where(col(StepHistoryRow.execution_id) == execution_id)
            .order_by(col(StepHistoryRow.id))
        )
        return [
            StepRecord(
                id=r.id,
                execution_id=r.execution_id,
                step_id=r.step_id,
                run=r.run,
                status=r.status,
                attempts=r.attempts,
                output=r.output,
                error=r.error,
                started_at=_aware(r.started_at),
                completed_at=_aware(r.completed_at),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Campaigns
    async def save_campaign(self, campaign: Campaign) -> None:
        await self._upsert(
            CampaignRow(id=campaign.id, tenant_id=campaign.tenant_id, data=_dump(campaign))
        )

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        row = await self._scalar(
            select(CampaignRow).where(col(CampaignRow.id) == campaign_id)
        )
        return Campaign.model_validate(row.data) if row else None

    async def create_campaign_execution(
        self, execution: CampaignExecution
    ) -> CampaignExecution:
        await self._insert(
            CampaignExecutionRow(
                id=execution.id,
                campaign_id=execution.campaign_id,
                active_key=None if execution.is_terminal else execution.campaign_id,
                status=execution.status.value,
                started_ts=execution.started_at.timestamp(),
                version=execution.version,
                data=_dump(execution),
            ),
            f"live execution for campaign {execution.campaign_id}",
        )
        return execution

    async def get_campaign_execution(
        self, execution_id: str
    ) -> CampaignExecution | None:
        row = await self._scalar(
            select(CampaignExecutionRow).where(
                col(CampaignExecutionRow.id) == execution_id
            )
        )
        return CampaignExecution.model_validate(row.data) if row else None

    async def get_latest_campaign_execution(
        self, campaign_id: str
    ) -> CampaignExecution | None:
        row = await self._scalar(
            select(CampaignExecutionRow)
            .where(col(CampaignExecutionRow.campaign_id) == campaign_id)
            .order_by(col(CampaignExecutionRow.started_ts).desc())
            .limit(1)
        )
        return CampaignExecution.model_validate(row.data) if row else None

    async def update_campaign_execution(
        self, execution: CampaignExecution
    ) -> CampaignExecution:
        return await self._cas(
            CampaignExecutionRow,
            [col(CampaignExecutionRow.id) == execution.id],
            execution,
            f"campaign execution {execution.id}",
            status=execution.status.value,
            active_key=None if execution.is_terminal else execution.campaign_id,
        )

    async def list_campaign_executions(
        self, campaign_id: Optional[str] = None
    ) -> list[CampaignExecution]:
        statement = select(CampaignExecutionRow).order_by(
            col(CampaignExecutionRow.started_ts)
        )
        if campaign_id is not None:
            statement = statement.where(
                col(CampaignExecutionRow.campaign_id) == campaign_id
            )
        rows = await self._scalars(statement)
        return [CampaignExecution.model_validate(r.data) for r in rows]

    # ------------------------------------------------------------------
    # Integrations & credentials
    async def save_integration(self, integration: Integration) -> Integration:
        existing = await self.get_integration(
            integration.tenant_id, integration.provider_id
        )
        stored = integration.model_copy(
            update={
                "version": existing.version + 1 if existing else integration.version,
                "updated_at": _now(),
            }
        )
        await self._upsert(
            IntegrationRow(
                tenant_id=stored.tenant_id,
                provider_id=stored.provider_id,
                external_account_id=stored.external_account_id,
                version=stored.version,
                data=_dump(stored),
            )
        )
        return stored

    async def get_integration(
        self, tenant_id: str, provider_id: str
    ) -> Integration | None:
        row = await self._scalar(
            select(IntegrationRow).where(
                col(IntegrationRow.tenant_id) == tenant_id,
                col(IntegrationRow.provider_id) == provider_id,
            )
        )
        return Integration.model_validate(row.data) if row else None

    async def find_integration_by_account(
        self, provider_id: str, external_account_id: str
    ) -> Integration | None:
        row = await self._scalar(
            select(IntegrationRow).where(
                col(IntegrationRow.provider_id) == provider_id,
                col(IntegrationRow.external_account_id) == external_account_id,
            )
        )
        return Integration.model_validate(row.data) if row else None

    async def save_credential(self, credential: OAuthCredential) -> OAuthCredential:
        existing = await self.get_credential(credential.ref)
        stored = credential.model_copy(
            update={"version": existing.version + 1 if existing else credential.version}
        )
        await self._upsert(
            CredentialRow(ref=stored.ref, version=stored.version, data=_dump(stored))
        )
        return stored

    async def get_credential(self, ref: str) -> OAuthCredential | None:
        row = await self._scalar(select(CredentialRow).where(col(CredentialRow.ref) == ref))
        return OAuthCredential.model_validate(row.data) if row else None

    # ------------------------------------------------------------------
    # Webhook events
    async def insert_webhook_event(
        self, event: WebhookEvent
    ) -> tuple[WebhookEvent, bool]:
        try:
            await self._insert(
                WebhookEventRow(
                    id=event.id,
                    provider_id=event.provider_id,
                    external_event_id=event.external_event_id,
                    status=event.status.value,
                    version=event.version,
                    data=_dump(event),
                ),
                f"webhook event {event.idempotency_key}",
            )
        except ConcurrencyConflict:
            existing = await self.get_webhook_event(
                event.provider_id, event.external_event_id
            )
            if existing is None:
                raise
            return existing, False
        return event, True

    async def update_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        return await self._cas(
            WebhookEventRow,
            [
                col(WebhookEventRow.provider_id) == event.provider_id,
                col(WebhookEventRow.external_event_id) == event.external_event_id,
            ],
            event,
            f"webhook event {event.idempotency_key}",
            status=event.status.value,
        )

    async def get_webhook_event(
        self, provider_id: str, external_event_id: str
    ) -> WebhookEvent | None:
        row = await self._scalar(
            select(WebhookEventRow).where(
                col(WebhookEventRow.provider_id) == provider_id,
                col(WebhookEventRow.external_event_id) == external_event_id,
            )
        )
        return WebhookEvent.model_validate(row.data) if row else None

    async def list_webhook_events(self) -> list[WebhookEvent]:
        rows = await self._scalars(select(WebhookEventRow))
        return [WebhookEvent.model_validate(r.data) for r in rows]

    # ------------------------------------------------------------------
    # Sync records
    async def create_sync_record(self, record: SyncRecord) -> SyncRecord:
        await self._insert(
            SyncRecordRow(
                id=record.id,
                tenant_id=record.tenant_id,
                status=record.status.value,
                next_retry_ts=_ts(record.next_retry_at),
                version=record.version,
                data=_dump(record),
            ),
            f"sync record {record.id}",
        )
        return record

    async def get_sync_record(self, record_id: str) -> SyncRecord | None:
        row = await self._scalar(
            select(SyncRecordRow).where(col(SyncRecordRow.id) == record_id)
        )
        return SyncRecord.model_validate(row.data) if row else None

    async def update_sync_record(self, record: SyncRecord) -> SyncRecord:
        return await self._cas(
            SyncRecordRow,
            [col(SyncRecordRow.id) == record.id],
            record,
            f"sync record {record.id}",
            status=record.status.value,
            next_retry_ts=_ts(record.next_retry_at),
        )

    async def list_sync_records(
        self, status: Optional[SyncStatus] = None, tenant_id: Optional[str] = None
    ) -> list[SyncRecord]:
        statement = select(SyncRecordRow)
        if status is not None:
            statement = statement.where(col(SyncRecordRow.status) == status.value)
        if tenant_id is not None:
            statement = statement.where(col(SyncRecordRow.tenant_id) == tenant_id)
        rows = await self._scalars(statement)
        return [SyncRecord.model_validate(r.data) for r in rows]

    async def list_due_sync_records(
        self, now: datetime, limit: int = 50
    ) -> list[SyncRecord]:
        rows = await self._scalars(
            select(SyncRecordRow)
            .where(
                col(SyncRecordRow.status) == SyncStatus.PENDING.value,
                col(SyncRecordRow.next_retry_ts) <= now.timestamp(),
            )
            .order_by(col(SyncRecordRow.next_retry_ts))
            .limit(limit)
        )
        return [SyncRecord.model_validate(r.data) for r in rows]

    # ------------------------------------------------------------------
    # Local entities
    async def get_entity(
        self, tenant_id: str, entity_type: str, entity_id: str
    ) -> EntityRecord | None:
        row = await self._scalar(
            select(EntityRow).where(
                col(EntityRow.tenant_id) == tenant_id,
                col(EntityRow.entity_type) == entity_type,
                col(EntityRow.entity_id) == entity_id,
            )
        )
        return EntityRecord.model_validate(row.data) if row else None

    async def find_entity_by_external_id(
        self, tenant_id: str, entity_type: str, external_id: str
    ) -> EntityRecord | None:
        row = await self._scalar(
            select(EntityRow).where(
                col(EntityRow.tenant_id) == tenant_id,
                col(EntityRow.entity_type) == entity_type,
                col(EntityRow.external_id) == external_id,
            )
        )
        return EntityRecord.model_validate(row.data) if row else None

    async def save_entity(self, entity: EntityRecord) -> EntityRecord:
        stored = entity.model_copy(update={"updated_at": _now()})
        await self._upsert(
            EntityRow(
                tenant_id=stored.tenant_id,
                entity_type=stored.entity_type,
                entity_id=stored.entity_id,
                external_id=stored.external_id,
                data=_dump(stored),
            )
        )
        return stored
