"""opsflow: workflow and campaign orchestration with CRM sync."""

from .campaigns import CampaignService
from .contracts import (
    Campaign,
    CampaignExecution,
    DomainEvent,
    OpsflowMessage,
    WorkflowDefinition,
    WorkflowExecution,
)
from .dispatch import CommandWorker, TriggerDispatcher
from .execute import WorkflowEngine
from .persistence import get_repository
from .runtime import Services, build_services
from .scheduler import Scheduler
from .steps import ActionRegistry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionRegistry",
    "Campaign",
    "CampaignExecution",
    "CampaignService",
    "CommandWorker",
    "DomainEvent",
    "OpsflowMessage",
    "Scheduler",
    "Services",
    "TriggerDispatcher",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "build_services",
    "get_repository",
    "get_transport",
]
