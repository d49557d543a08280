from datetime import timedelta

import pytest

from opsflow.config import RetryPolicy, SyncConfig
from opsflow.constants import TOPIC_WORKFLOW_RESUME
from opsflow.contracts import EntityRecord, SyncStatus, WorkflowStatus
from opsflow.dispatch import TriggerDispatcher
from opsflow.errors import TransientCollaboratorFailure
from opsflow.execute import WorkflowEngine
from opsflow.scheduler import Scheduler
from opsflow.steps import ActionRegistry
from opsflow.sync.service import SyncService
from opsflow.sync.tokens import TokenStore
from opsflow.transports import InMemoryTransport


def _engine(repo, notifier, clock) -> WorkflowEngine:
    actions = ActionRegistry()
    actions.add("tagContact", lambda params, ctx: {"tagged": True})
    return WorkflowEngine(repo, actions=actions, notifier=notifier, clock=clock)


@pytest.mark.asyncio
async def test_tick_resumes_due_executions_once(repo, notifier, clock, contact_workflow):
    await repo.save_definition(contact_workflow)
    engine = _engine(repo, notifier, clock)
    waiting = await engine.execute(contact_workflow.id, {"entity_id": "c-1"})
    scheduler = Scheduler(repo, engine, clock=clock)

    assert (await scheduler.tick()).resumed == 0

    clock.advance(hours=1)
    assert (await scheduler.tick()).resumed == 1
    assert (await repo.get_execution(waiting.id)).status == WorkflowStatus.COMPLETED
    assert (await scheduler.tick()).resumed == 0
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_tick_with_dispatcher_enqueues_resumes(
    repo, notifier, clock, contact_workflow
):
    await repo.save_definition(contact_workflow)
    engine = _engine(repo, notifier, clock)
    waiting = await engine.execute(contact_workflow.id, {"entity_id": "c-1"})
    transport = InMemoryTransport()
    scheduler = Scheduler(
        repo, engine, dispatcher=TriggerDispatcher(repo, transport), clock=clock
    )

    result = await scheduler.tick(now=clock.now + timedelta(hours=2))

    assert result.resumed == 1
    assert transport.pending(TOPIC_WORKFLOW_RESUME) == 1
    assert (await repo.get_execution(waiting.id)).status == WorkflowStatus.WAITING
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_tick_processes_due_sync_records(repo, notifier, clock, crm, connect):
    await connect(repo)
    await repo.save_entity(
        EntityRecord(tenant_id="t1", entity_type="contact", entity_id="c1")
    )
    crm.push_results = [TransientCollaboratorFailure("503")]
    config = SyncConfig(retry=RetryPolicy(max_attempts=3, base_delay=5, jitter=0))
    tokens = TokenStore(repo, {"hubspot": crm}, clock=clock)
    sync = SyncService(repo, tokens, {"hubspot": crm}, config, clock)
    record = await sync.sync_entity_to_crm("t1", "contact", "c1")
    scheduler = Scheduler(repo, _engine(repo, notifier, clock), sync=sync, clock=clock)

    assert (await scheduler.tick()).synced == 0
    clock.advance(seconds=5)
    assert (await scheduler.tick()).synced == 1
    assert (await repo.get_sync_record(record.id)).status == SyncStatus.SUCCESS


class FlakySync:
    """Fails its first pass over due records, then succeeds."""

    def __init__(self) -> None:
        self.calls = 0

    async def process_due(self, now):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("database went away")
        return []


@pytest.mark.asyncio
async def test_run_forever_survives_a_failed_tick(repo, notifier, clock):
    sync = FlakySync()
    scheduler = Scheduler(repo, _engine(repo, notifier, clock), sync=sync, clock=clock)

    await scheduler.run_forever(interval=0.01, lifespan=0.1)

    assert sync.calls > 1
