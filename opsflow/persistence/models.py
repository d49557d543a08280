"""SQLModel tables backing the SQL repository.

Each aggregate is stored as a JSON snapshot in ``data`` next to the few
typed columns that queries, uniqueness constraints and compare-and-set writes
need. Times used for range scans are stored as epoch seconds.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkflowDefinitionRow(SQLModel, table=True):
    __tablename__ = "workflow_definitions"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class WorkflowExecutionRow(SQLModel, table=True):
    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True)
    definition_id: str = Field(index=True)
    tenant_id: str = Field(index=True)
    status: str = Field(index=True)
    resume_ts: Optional[float] = Field(default=None, index=True)
    version: int = 0
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class StepHistoryRow(SQLModel, table=True):
    __tablename__ = "step_history"
    __table_args__ = (UniqueConstraint("execution_id", "step_id", "run"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True)
    step_id: str
    run: int = 1
    status: Optional[str] = None
    attempts: int = 0
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CampaignRow(SQLModel, table=True):
    __tablename__ = "campaigns"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class CampaignExecutionRow(SQLModel, table=True):
    __tablename__ = "campaign_executions"

    id: str = Field(primary_key=True)
    campaign_id: str = Field(index=True)
    # campaign id while the run is live, NULL once terminal
    active_key: Optional[str] = Field(default=None, unique=True)
    status: str
    started_ts: float = Field(index=True)
    version: int = 0
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class IntegrationRow(SQLModel, table=True):
    __tablename__ = "integrations"

    tenant_id: str = Field(primary_key=True)
    provider_id: str = Field(primary_key=True)
    external_account_id: Optional[str] = Field(default=None, index=True)
    version: int = 0
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class CredentialRow(SQLModel, table=True):
    __tablename__ = "oauth_credentials"

    ref: str = Field(primary_key=True)
    version: int = 0
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class WebhookEventRow(SQLModel, table=True):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider_id", "external_event_id"),)

    id: str = Field(primary_key=True)
    provider_id: str
    external_event_id: str
    status: str = Field(index=True)
    version: int = 0
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class SyncRecordRow(SQLModel, table=True):
    __tablename__ = "sync_records"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    status: str = Field(index=True)
    next_retry_ts: Optional[float] = Field(default=None, index=True)
    version: int = 0
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class EntityRow(SQLModel, table=True):
    __tablename__ = "entities"

    tenant_id: str = Field(primary_key=True)
    entity_type: str = Field(primary_key=True)
    entity_id: str = Field(primary_key=True)
    external_id: Optional[str] = Field(default=None, index=True)
    data: dict = Field(sa_column=Column(JSON, nullable=False))
