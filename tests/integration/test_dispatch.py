"""Event dispatch onto the command bus and worker-side handling."""

import pytest

from opsflow.campaigns import CampaignService
from opsflow.constants import TOPIC_CAMPAIGN_CONTROL, TOPIC_WORKFLOW_EXECUTE
from opsflow.contracts import (
    CampaignStatus,
    DomainEvent,
    OpsflowMessage,
    Rule,
    TriggerSpec,
    WorkflowStatus,
)
from opsflow.dispatch import CommandWorker, TriggerDispatcher, execution_id_for
from opsflow.errors import NotFound, TransientCollaboratorFailure
from opsflow.execute import WorkflowEngine
from opsflow.steps import ActionRegistry
from opsflow.transports import InMemoryTransport


def _engine(repo, notifier) -> WorkflowEngine:
    actions = ActionRegistry()

    @actions.register("tagContact")
    def tag_contact(params, ctx):
        return {"tagged": True}

    return WorkflowEngine(repo, actions=actions, notifier=notifier)


class StubEngine:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    async def execute(self, definition_id, trigger_payload, execution_id=None):
        self.calls += 1
        raise self.error


def _message(execution_id="exec-1") -> OpsflowMessage:
    return OpsflowMessage(
        command="workflow.execute",
        correlation_id=execution_id,
        payload={"definition_id": "contact-onboarding", "execution_id": execution_id},
    )


def test_execution_ids_are_deterministic():
    assert execution_id_for("evt-1", "wf") == execution_id_for("evt-1", "wf")
    assert execution_id_for("evt-1", "wf") != execution_id_for("evt-2", "wf")
    assert execution_id_for("evt-1", "wf") != execution_id_for("evt-1", "other")


@pytest.mark.asyncio
async def test_publish_enqueues_only_matching_definitions(repo, contact_workflow):
    await repo.save_definition(contact_workflow)
    await repo.save_definition(
        contact_workflow.model_copy(update={"id": "disabled", "enabled": False})
    )
    await repo.save_definition(
        contact_workflow.model_copy(update={"id": "other-tenant", "tenant_id": "t2"})
    )
    vip_only = contact_workflow.model_copy(
        update={
            "id": "vip-only",
            "trigger": TriggerSpec(
                event_type="contact.created",
                conditions=[Rule(field="vip", operator="equals", value=True)],
            ),
        }
    )
    await repo.save_definition(vip_only)
    transport = InMemoryTransport()
    dispatcher = TriggerDispatcher(repo, transport)
    event = DomainEvent(
        event_id="evt-1", type="contact.created", tenant_id="t1", payload={"email": "a@b.com"}
    )

    ids = await dispatcher.publish(event)

    assert ids == [execution_id_for("evt-1", "contact-onboarding")]
    assert transport.pending(TOPIC_WORKFLOW_EXECUTE) == 1
    assert await dispatcher.publish(event) == ids
    deleted = event.model_copy(update={"type": "contact.deleted"})
    assert await dispatcher.publish(deleted) == []


@pytest.mark.asyncio
async def test_worker_runs_dispatched_workflow_once(repo, notifier, contact_workflow):
    await repo.save_definition(contact_workflow)
    transport = InMemoryTransport(poll_interval=0.01)
    dispatcher = TriggerDispatcher(repo, transport)
    worker = CommandWorker(transport, _engine(repo, notifier))
    event = DomainEvent(
        event_id="evt-1", type="contact.created", tenant_id="t1", payload={"email": "a@b.com"}
    )

    [execution_id] = await dispatcher.publish(event)
    # a redelivered event lands on the same execution
    await dispatcher.publish(event)
    await worker.start([TOPIC_WORKFLOW_EXECUTE], lifespan=0.2)

    execution = await repo.get_execution(execution_id)
    assert execution.status == WorkflowStatus.COMPLETED
    assert execution.trigger_payload["event_id"] == "evt-1"
    assert len(notifier.sent) == 1
    assert transport.pending(TOPIC_WORKFLOW_EXECUTE) == 0


@pytest.mark.asyncio
async def test_transient_failures_are_redelivered_then_dropped():
    transport = InMemoryTransport(poll_interval=0.01)
    engine = StubEngine(TransientCollaboratorFailure("CRM down"))
    worker = CommandWorker(transport, engine, max_deliveries=2)

    await transport.publish(TOPIC_WORKFLOW_EXECUTE, _message())
    await worker.start([TOPIC_WORKFLOW_EXECUTE], lifespan=0.2)

    assert engine.calls == 2
    assert transport.pending(TOPIC_WORKFLOW_EXECUTE) == 0


@pytest.mark.asyncio
async def test_caller_errors_are_acked_without_retry():
    transport = InMemoryTransport(poll_interval=0.01)
    engine = StubEngine(NotFound("no such definition"))
    worker = CommandWorker(transport, engine)

    await transport.publish(TOPIC_WORKFLOW_EXECUTE, _message())
    await worker.start([TOPIC_WORKFLOW_EXECUTE], lifespan=0.2)

    assert engine.calls == 1
    assert transport.pending(TOPIC_WORKFLOW_EXECUTE) == 0


@pytest.mark.asyncio
async def test_campaign_control_is_routed_to_campaigns(
    repo, notifier, make_campaign, make_telephony
):
    await repo.save_campaign(make_campaign())
    transport = InMemoryTransport(poll_interval=0.01)
    campaigns = CampaignService(repo, make_telephony(), autorun=False)
    worker = CommandWorker(transport, _engine(repo, notifier), campaigns=campaigns)

    dispatcher = TriggerDispatcher(repo, transport)
    await dispatcher.enqueue_campaign_control("camp-1", "start", "t1")
    await worker.start([TOPIC_CAMPAIGN_CONTROL], lifespan=0.2)

    [execution] = await repo.list_campaign_executions("camp-1")
    assert execution.status == CampaignStatus.RUNNING
