"""Core data contracts for the opsflow engine."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import EDGE_DEFAULT, EDGE_FALSE, EDGE_NEXT, EDGE_TRUE

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ----------------------------------------------------------------------
# Status enums


class WorkflowStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


WORKFLOW_TERMINAL = {
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
}


class CampaignStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


CAMPAIGN_TERMINAL = {
    CampaignStatus.STOPPED,
    CampaignStatus.COMPLETED,
    CampaignStatus.FAILED,
}


class IntegrationStatus(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


class SyncDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


# ----------------------------------------------------------------------
# Workflow definitions


class StepKind(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"
    SYNC_TO_CRM = "sync_to_crm"
    NOTIFY = "notify"


Operator = Literal[
    "equals",
    "not_equals",
    "contains",
    "greater_than",
    "less_than",
    "exists",
    "not_exists",
]


class Rule(BaseModel):
    """Single predicate over a dotted path into the bindings."""

    model_config = ConfigDict(frozen=True)

    field: str
    operator: Operator = "equals"
    value: Any = None


class ActionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    params: Dict[str, Any] = Field(default_factory=dict)
    result_key: Optional[str] = Field(
        default=None, description="Bind the result under this name instead of merging"
    )


class ConditionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    logic: Literal["and", "or"] = "and"
    rules: List[Rule] = Field(default_factory=list)


_UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class DelayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration: float
    unit: Literal["seconds", "minutes", "hours", "days"] = "seconds"

    @property
    def delta(self) -> timedelta:
        return timedelta(seconds=self.duration * _UNIT_SECONDS[self.unit])


class SyncToCRMConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_type: str = "contact"
    entity_id: str = "{{entity_id}}"
    provider_id: Optional[str] = None


class NotifyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: str = "email"
    recipient: Optional[str] = None
    message: str = ""


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    next: Dict[str, str] = Field(
        default_factory=dict, description="Outcome label -> next step id"
    )

    def edge(self, outcome: str) -> Optional[str]:
        return self.next.get(outcome)


class ActionStep(_StepBase):
    kind: Literal["action"] = "action"
    config: ActionConfig


class ConditionStep(_StepBase):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig = ConditionConfig()


class DelayStep(_StepBase):
    kind: Literal["delay"] = "delay"
    config: DelayConfig


class SyncToCRMStep(_StepBase):
    kind: Literal["sync_to_crm"] = "sync_to_crm"
    config: SyncToCRMConfig = SyncToCRMConfig()


class NotifyStep(_StepBase):
    kind: Literal["notify"] = "notify"
    config: NotifyConfig = NotifyConfig()


Step = Annotated[
    Union[ActionStep, ConditionStep, DelayStep, SyncToCRMStep, NotifyStep],
    Field(discriminator="kind"),
]

_ALLOWED_EDGES = {
    "condition": {EDGE_TRUE, EDGE_FALSE, EDGE_DEFAULT},
}


class TriggerSpec(BaseModel):
    """Which domain events instantiate a definition."""

    model_config = ConfigDict(frozen=True)

    event_type: str
    required_fields: List[str] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"
    conditions: List[Rule] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """Immutable workflow template."""

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    name: str = ""
    enabled: bool = True
    trigger: TriggerSpec
    entry_step_id: str
    steps: List[Step]

    @model_validator(mode="after")
    def _check_graph(self) -> "WorkflowDefinition":
        ids = [step.id for step in self.steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate step ids in definition {self.id}")
        known = set(ids)
        if self.entry_step_id not in known:
            raise ValueError(f"entry step {self.entry_step_id} is not defined")
        for step in self.steps:
            allowed = _ALLOWED_EDGES.get(step.kind, {EDGE_NEXT})
            for outcome, target in step.next.items():
                if outcome not in allowed:
                    raise ValueError(
                        f"step {step.id} ({step.kind}) has unsupported edge '{outcome}'"
                    )
                if target not in known:
                    raise ValueError(f"step {step.id} points to unknown step {target}")
        return self

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


# ----------------------------------------------------------------------
# Workflow executions


class WorkflowExecution(BaseModel):
    """One instance of a definition run against a trigger payload."""

    id: str = Field(default_factory=_new_id)
    definition_id: str
    tenant_id: str
    status: WorkflowStatus = WorkflowStatus.QUEUED
    current_step_id: Optional[str] = None
    bindings: Dict[str, Any] = Field(default_factory=dict)
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    path: List[str] = Field(default_factory=list)
    resume_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in WORKFLOW_TERMINAL


class StepRecord(BaseModel):
    """Record of an individual step run."""

    id: Optional[int] = None
    execution_id: str
    step_id: str
    run: int = 1
    status: Optional[str] = None
    attempts: int = 0
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# Campaigns


class CallTarget(BaseModel):
    id: str
    phone: str
    name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Campaign(BaseModel):
    """Durable campaign configuration."""

    id: str
    tenant_id: str
    name: str = ""
    agent_id: Optional[str] = None
    workflow_definition_id: Optional[str] = None
    targets: List[CallTarget] = Field(default_factory=list)


class CampaignExecution(BaseModel):
    """The live run of a campaign."""

    id: str = Field(default_factory=_new_id)
    campaign_id: str
    tenant_id: str
    status: CampaignStatus = CampaignStatus.PENDING
    cursor: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    consecutive_failures: int = 0
    in_flight_target_id: Optional[str] = None
    in_flight_since: Optional[datetime] = None
    last_command: Optional[str] = None
    last_command_at: Optional[datetime] = None
    last_error: Optional[str] = None
    started_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in CAMPAIGN_TERMINAL

    def progress(self, total: int) -> Dict[str, Any]:
        completed = self.succeeded + self.failed
        return {
            "total": total,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "remaining": max(total - self.cursor, 0),
            "success_rate": round(100 * self.succeeded / completed) if completed else 0,
        }


class CallAttemptRequest(BaseModel):
    campaign_id: str
    execution_id: str
    target: CallTarget
    agent_id: Optional[str] = None
    attempt_number: int = 1


class CallAttemptResult(BaseModel):
    success: bool
    duration_seconds: float = 0
    outcome_code: str = ""
    provider_call_id: Optional[str] = None


# ----------------------------------------------------------------------
# Integrations and sync


class OAuthCredential(BaseModel):
    ref: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    version: int = 0

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or _now()
        return self.expires_at <= now + timedelta(seconds=seconds)


class Integration(BaseModel):
    """Per-tenant CRM connection."""

    tenant_id: str
    provider_id: str
    external_account_id: Optional[str] = None
    credential_ref: str
    sync_cursor: Optional[datetime] = None
    status: IntegrationStatus = IntegrationStatus.CONNECTED
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)
    version: int = 0


class WebhookEvent(BaseModel):
    """Inbound provider event, unique per (provider_id, external_event_id)."""

    id: str = Field(default_factory=_new_id)
    provider_id: str
    external_event_id: str
    event_type: str
    tenant_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_now)
    status: WebhookStatus = WebhookStatus.PENDING
    duplicate_deliveries: int = 0
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    version: int = 0

    @property
    def idempotency_key(self) -> str:
        return f"{self.provider_id}:{self.external_event_id}"


class SyncRecord(BaseModel):
    """Outcome of outbound (or inbound) synchronization of one entity."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str
    provider_id: str
    entity_type: str
    entity_id: str
    direction: SyncDirection = SyncDirection.OUTBOUND
    attempts: int = 0
    max_attempts: int = 5
    status: SyncStatus = SyncStatus.PENDING
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    source_event_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    version: int = 0


class EntityRecord(BaseModel):
    """Local mirror of an entity kept in sync with the CRM."""

    tenant_id: str
    entity_type: str
    entity_id: str
    provider_id: Optional[str] = None
    external_id: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    remote_modified_at: Optional[datetime] = None
    last_sync_ack_at: Optional[datetime] = None
    deleted: bool = False
    updated_at: datetime = Field(default_factory=_now)


# ----------------------------------------------------------------------
# Events and commands


class DomainEvent(BaseModel):
    """Business event entering the dispatcher."""

    event_id: str = Field(default_factory=_new_id)
    type: str
    tenant_id: str
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_now)


CommandType = Literal[
    "workflow.execute", "workflow.resume", "campaign.control", "sync.entity"
]


class OpsflowMessage(BaseModel):
    """Envelope exchanged over the command bus."""

    message_id: str = Field(default_factory=_new_id)
    command: CommandType
    correlation_id: str
    tenant_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)
    attempt: int = 1
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "OpsflowMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def bump_attempt(self) -> "OpsflowMessage":
        """Copy of this message for redelivery, with a fresh id."""
        return self.model_copy(
            update={"attempt": self.attempt + 1, "message_id": _new_id()}
        )
