from datetime import datetime, timedelta, timezone

import pytest

from opsflow.contracts import (
    CampaignExecution,
    CampaignStatus,
    EntityRecord,
    SyncRecord,
    SyncStatus,
    WebhookEvent,
    WorkflowExecution,
    WorkflowStatus,
)
from opsflow.errors import ConcurrencyConflict
from opsflow.persistence import InMemoryRepository, SQLRepository

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryRepository()
    return SQLRepository(f"sqlite+aiosqlite:///{tmp_path / 'opsflow.db'}")


@pytest.mark.asyncio
async def test_definition_and_execution_roundtrip(repository, contact_workflow):
    await repository.save_definition(contact_workflow)
    stored = await repository.get_definition(contact_workflow.id)
    assert stored == contact_workflow
    assert [d.id for d in await repository.list_definitions("t1")] == [contact_workflow.id]
    assert await repository.list_definitions("other") == []

    execution = WorkflowExecution(
        id="exec-1",
        definition_id=contact_workflow.id,
        tenant_id="t1",
        current_step_id="tag",
        bindings={"email": "a@b.com"},
    )
    await repository.create_execution(execution)
    with pytest.raises(ConcurrencyConflict):
        await repository.create_execution(execution)

    loaded = await repository.get_execution("exec-1")
    assert loaded.bindings == {"email": "a@b.com"}
    assert loaded.status == WorkflowStatus.QUEUED
    assert await repository.get_execution("missing") is None


@pytest.mark.asyncio
async def test_update_execution_is_compare_and_set(repository, contact_workflow):
    await repository.save_definition(contact_workflow)
    created = await repository.create_execution(
        WorkflowExecution(id="exec-1", definition_id=contact_workflow.id, tenant_id="t1")
    )

    running = await repository.update_execution(
        created.model_copy(update={"status": WorkflowStatus.RUNNING})
    )
    assert running.version == created.version + 1

    # a writer holding the old version loses
    with pytest.raises(ConcurrencyConflict):
        await repository.update_execution(
            created.model_copy(update={"status": WorkflowStatus.CANCELLED})
        )
    stored = await repository.get_execution("exec-1")
    assert stored.status == WorkflowStatus.RUNNING

    assert [e.id for e in await repository.list_executions(WorkflowStatus.RUNNING)] == [
        "exec-1"
    ]


@pytest.mark.asyncio
async def test_list_due_waiting(repository):
    for ident, offset in (("late", -60), ("soon", 60), ("first", -120)):
        execution = await repository.create_execution(
            WorkflowExecution(id=ident, definition_id="d1", tenant_id="t1")
        )
        await repository.update_execution(
            execution.model_copy(
                update={
                    "status": WorkflowStatus.WAITING,
                    "resume_at": NOW + timedelta(seconds=offset),
                }
            )
        )

    due = await repository.list_due_waiting(NOW)
    assert [e.id for e in due] == ["first", "late"]
    assert [e.id for e in await repository.list_due_waiting(NOW, limit=1)] == ["first"]


@pytest.mark.asyncio
async def test_step_history_ignores_duplicate_starts(repository):
    await repository.create_execution(
        WorkflowExecution(id="exec-1", definition_id="d1", tenant_id="t1")
    )

    await repository.mark_step_started("exec-1", "tag")
    await repository.mark_step_started("exec-1", "tag")
    await repository.mark_step_completed("exec-1", "tag", "completed", output={"x": 1})
    await repository.mark_step_completed("exec-1", "tag", "completed")
    await repository.mark_step_started("exec-1", "tag", run=2)

    steps = await repository.list_steps("exec-1")
    assert [(s.step_id, s.run) for s in steps] == [("tag", 1), ("tag", 2)]
    assert steps[0].status == "completed"
    assert steps[0].output == {"x": 1}
    assert steps[0].completed_at is not None
    assert steps[1].status == "running"


@pytest.mark.asyncio
async def test_one_live_execution_per_campaign(repository):
    first = await repository.create_campaign_execution(
        CampaignExecution(campaign_id="camp-1", tenant_id="t1")
    )
    with pytest.raises(ConcurrencyConflict):
        await repository.create_campaign_execution(
            CampaignExecution(campaign_id="camp-1", tenant_id="t1")
        )

    # another campaign is unaffected
    await repository.create_campaign_execution(
        CampaignExecution(campaign_id="camp-2", tenant_id="t1")
    )

    await repository.update_campaign_execution(
        first.model_copy(update={"status": CampaignStatus.STOPPED})
    )
    second = await repository.create_campaign_execution(
        CampaignExecution(campaign_id="camp-1", tenant_id="t1")
    )

    latest = await repository.get_latest_campaign_execution("camp-1")
    assert latest.id == second.id
    runs = await repository.list_campaign_executions("camp-1")
    assert [r.id for r in runs] == [first.id, second.id]


@pytest.mark.asyncio
async def test_webhook_insert_or_get(repository):
    event = WebhookEvent(
        provider_id="hubspot", external_event_id="evt-1", event_type="contact.updated"
    )
    stored, created = await repository.insert_webhook_event(event)
    assert created
    again, created_again = await repository.insert_webhook_event(
        WebhookEvent(
            provider_id="hubspot", external_event_id="evt-1", event_type="contact.updated"
        )
    )
    assert not created_again
    assert again.id == stored.id

    # same event id from another provider is a different event
    _, other = await repository.insert_webhook_event(
        WebhookEvent(provider_id="acme", external_event_id="evt-1", event_type="x")
    )
    assert other
    assert len(await repository.list_webhook_events()) == 2

    updated = await repository.update_webhook_event(
        stored.model_copy(update={"duplicate_deliveries": 1})
    )
    assert updated.duplicate_deliveries == 1
    with pytest.raises(ConcurrencyConflict):
        await repository.update_webhook_event(
            stored.model_copy(update={"duplicate_deliveries": 5})
        )


@pytest.mark.asyncio
async def test_due_sync_records_and_filters(repository):
    due = await repository.create_sync_record(
        SyncRecord(
            tenant_id="t1",
            provider_id="hubspot",
            entity_type="contact",
            entity_id="c1",
            next_retry_at=NOW - timedelta(seconds=1),
        )
    )
    await repository.create_sync_record(
        SyncRecord(
            tenant_id="t2",
            provider_id="hubspot",
            entity_type="contact",
            entity_id="c2",
            next_retry_at=NOW + timedelta(minutes=5),
        )
    )
    assert [r.id for r in await repository.list_due_sync_records(NOW)] == [due.id]

    await repository.update_sync_record(
        due.model_copy(update={"status": SyncStatus.ABANDONED, "next_retry_at": None})
    )
    assert await repository.list_due_sync_records(NOW) == []
    abandoned = await repository.list_sync_records(SyncStatus.ABANDONED, tenant_id="t1")
    assert [r.id for r in abandoned] == [due.id]
    assert await repository.list_sync_records(SyncStatus.ABANDONED, tenant_id="t2") == []


@pytest.mark.asyncio
async def test_integrations_and_entities(repository, connect):
    integration = await connect(repository, account_id="portal-9")
    found = await repository.find_integration_by_account("hubspot", "portal-9")
    assert found.tenant_id == "t1"
    assert found.credential_ref == integration.credential_ref
    assert await repository.find_integration_by_account("hubspot", "nope") is None

    saved = await repository.save_integration(
        found.model_copy(update={"sync_cursor": NOW})
    )
    assert saved.version == found.version + 1
    assert (await repository.get_integration("t1", "hubspot")).sync_cursor == NOW

    await repository.save_entity(
        EntityRecord(
            tenant_id="t1",
            entity_type="contact",
            entity_id="c1",
            external_id="ext-1",
            fields={"email": "a@b.com"},
        )
    )
    entity = await repository.find_entity_by_external_id("t1", "contact", "ext-1")
    assert entity.entity_id == "c1"
    assert entity.fields == {"email": "a@b.com"}
    assert await repository.get_entity("t1", "contact", "c1") is not None
    assert await repository.get_entity("t2", "contact", "c1") is None
