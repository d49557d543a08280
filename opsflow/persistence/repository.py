"""Repository abstraction for engine state persistence.

Every mutable record carries a ``version``. ``update_*`` methods are single-row
compare-and-set writes: the caller passes the record as last read, the write
succeeds only if the stored version still matches, and the stored copy is
returned with ``version + 1``. A lost race raises
:class:`~opsflow.errors.ConcurrencyConflict`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

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


class Repository(Protocol):
    """Protocol for persistence backends."""

    # workflow definitions -------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a definition."""

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Return the definition or ``None``."""

    async def list_definitions(
        self, tenant_id: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        """Return definitions, optionally for one tenant."""

    # workflow executions --------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Insert a new execution; raises ``ConcurrencyConflict`` if the id exists."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Return the execution or ``None``."""

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Compare-and-set write of an execution."""

    async def list_executions(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowExecution]:
        """Return executions, optionally filtered by status."""

    async def list_due_waiting(
        self, now: datetime, limit: int = 100
    ) -> list[WorkflowExecution]:
        """Return waiting executions whose ``resume_at`` has passed."""

    # step history ---------------------------------------------------------
    async def mark_step_started(
        self, execution_id: str, step_id: str, run: int = 1
    ) -> None:
        """Record start of a step run; duplicate starts are ignored."""

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
        """Record completion of a step run."""

    async def list_steps(self, execution_id: str) -> list[StepRecord]:
        """Return the step history of an execution in order."""

    # campaigns ------------------------------------------------------------
    async def save_campaign(self, campaign: Campaign) -> None:
        """Insert or replace a campaign."""

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        """Return the campaign or ``None``."""

    async def create_campaign_execution(
        self, execution: CampaignExecution
    ) -> CampaignExecution:
        """Insert a live execution; raises ``ConcurrencyConflict`` if one is live."""

    async def get_campaign_execution(
        self, execution_id: str
    ) -> CampaignExecution | None:
        """Return the execution or ``None``."""

    async def get_latest_campaign_execution(
        self, campaign_id: str
    ) -> CampaignExecution | None:
        """Return the most recent execution of a campaign."""

    async def update_campaign_execution(
        self, execution: CampaignExecution
    ) -> CampaignExecution:
        """Compare-and-set write of a campaign execution."""

    async def list_campaign_executions(
        self, campaign_id: Optional[str] = None
    ) -> list[CampaignExecution]:
        """Return campaign executions, oldest first."""

    # integrations & credentials -------------------------------------------
    async def save_integration(self, integration: Integration) -> Integration:
        """Upsert an integration keyed by (tenant_id, provider_id)."""

    async def get_integration(
        self, tenant_id: str, provider_id: str
    ) -> Integration | None:
        """Return the tenant's integration with a provider."""

    async def find_integration_by_account(
        self, provider_id: str, external_account_id: str
    ) -> Integration | None:
        """Resolve an integration from the provider's account id."""

    async def save_credential(self, credential: OAuthCredential) -> OAuthCredential:
        """Upsert a credential keyed by ``ref``."""

    async def get_credential(self, ref: str) -> OAuthCredential | None:
        """Return the credential or ``None``."""

    # webhook events -------------------------------------------------------
    async def insert_webhook_event(
        self, event: WebhookEvent
    ) -> tuple[WebhookEvent, bool]:
        """Atomically insert, or return the existing row for the same key.

        Returns the stored event and ``True`` if this call created it.
        """

    async def update_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        """Compare-and-set write of a webhook event."""

    async def get_webhook_event(
        self, provider_id: str, external_event_id: str
    ) -> WebhookEvent | None:
        """Return the event for the idempotency key."""

    async def list_webhook_events(self) -> list[WebhookEvent]:
        """Return all recorded webhook events."""

    # sync records ---------------------------------------------------------
    async def create_sync_record(self, record: SyncRecord) -> SyncRecord:
        """Insert a sync record."""

    async def get_sync_record(self, record_id: str) -> SyncRecord | None:
        """Return the record or ``None``."""

    async def update_sync_record(self, record: SyncRecord) -> SyncRecord:
        """Compare-and-set write of a sync record."""

    async def list_sync_records(
        self, status: Optional[SyncStatus] = None, tenant_id: Optional[str] = None
    ) -> list[SyncRecord]:
        """Return sync records, optionally filtered."""

    async def list_due_sync_records(
        self, now: datetime, limit: int = 50
    ) -> list[SyncRecord]:
        """Return pending records whose ``next_retry_at`` has passed."""

    # local entities -------------------------------------------------------
    async def get_entity(
        self, tenant_id: str, entity_type: str, entity_id: str
    ) -> EntityRecord | None:
        """Return the local entity or ``None``."""

    async def find_entity_by_external_id(
        self, tenant_id: str, entity_type: str, external_id: str
    ) -> EntityRecord | None:
        """Resolve a local entity from its CRM id."""

    async def save_entity(self, entity: EntityRecord) -> EntityRecord:
        """Upsert a local entity."""
