"""Outbound sync retries, replay and inbound pulls."""

import asyncio
from datetime import timedelta

import pytest

from opsflow.config import RetryPolicy, SyncConfig
from opsflow.contracts import EntityRecord, SyncStatus
from opsflow.errors import (
    AuthExpired,
    CollaboratorRequestError,
    InvalidAction,
    NotFound,
    TransientCollaboratorFailure,
)
from opsflow.sync.crm import RemoteChange
from opsflow.sync.service import SyncService
from opsflow.sync.tokens import TokenStore

CONFIG = SyncConfig(
    retry=RetryPolicy(max_attempts=3, base_delay=10, multiplier=2, max_delay=100, jitter=0),
    claim_lease_seconds=60,
)


def _service(repo, crm, clock, config=CONFIG) -> SyncService:
    tokens = TokenStore(repo, {"hubspot": crm}, clock=clock)
    return SyncService(repo, tokens, {"hubspot": crm}, config, clock)


async def _seed(repo, connect, **credential) -> None:
    await connect(repo, **credential)
    await repo.save_entity(
        EntityRecord(
            tenant_id="t1",
            entity_type="contact",
            entity_id="c1",
            fields={"email": "a@b.com"},
        )
    )


@pytest.mark.asyncio
async def test_successful_sync_records_external_id(repo, crm, clock, connect):
    await _seed(repo, connect)

    record = await _service(repo, crm, clock).sync_entity_to_crm("t1", "contact", "c1")

    assert record.status == SyncStatus.SUCCESS
    assert record.attempts == 1
    assert record.next_retry_at is None
    entity = await repo.get_entity("t1", "contact", "c1")
    assert entity.external_id == "crm-c1"
    assert entity.provider_id == "hubspot"
    assert entity.last_sync_ack_at == clock.now
    assert crm.tokens_seen == ["access-0"]


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_abandon(repo, crm, clock, connect):
    await _seed(repo, connect)
    crm.push_results = [TransientCollaboratorFailure("503")] * 3
    service = _service(repo, crm, clock)

    record = await service.sync_entity_to_crm("t1", "contact", "c1")
    assert record.status == SyncStatus.PENDING
    assert record.attempts == 1
    assert record.next_retry_at == clock.now + timedelta(seconds=10)
    assert await service.process_due() == []

    clock.advance(seconds=10)
    [record] = await service.process_due()
    assert record.attempts == 2
    assert record.next_retry_at == clock.now + timedelta(seconds=20)

    clock.advance(seconds=20)
    [record] = await service.process_due()
    assert record.status == SyncStatus.ABANDONED
    assert record.attempts == 3
    assert record.last_error == "503"
    assert [r.id for r in await service.list_abandoned("t1")] == [record.id]
    assert await service.list_abandoned("t2") == []

    replayed = await service.replay(record.id)
    assert replayed.status == SyncStatus.SUCCESS
    assert replayed.attempts == 1
    assert await service.list_abandoned() == []


@pytest.mark.asyncio
async def test_retry_after_is_honoured(repo, crm, clock, connect):
    await _seed(repo, connect)
    crm.push_results = [TransientCollaboratorFailure("429", retry_after=90)]

    record = await _service(repo, crm, clock).sync_entity_to_crm("t1", "contact", "c1")

    assert record.next_retry_at == clock.now + timedelta(seconds=90)


@pytest.mark.asyncio
async def test_rejected_request_fails_without_retry(repo, crm, clock, connect):
    await _seed(repo, connect)
    crm.push_results = [CollaboratorRequestError("invalid email")]
    service = _service(repo, crm, clock)

    record = await service.sync_entity_to_crm("t1", "contact", "c1")

    assert record.status == SyncStatus.FAILED
    assert record.next_retry_at is None
    clock.advance(hours=1)
    assert await service.process_due() == []

    replayed = await service.replay(record.id)
    assert replayed.status == SyncStatus.SUCCESS
    with pytest.raises(InvalidAction):
        await service.replay(record.id)


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_retry(repo, crm, clock, connect):
    await _seed(repo, connect, expires_at=clock.now + timedelta(days=1))
    crm.push_results = [AuthExpired("401")]
    service = _service(repo, crm, clock)

    record = await service.sync_entity_to_crm("t1", "contact", "c1")
    assert record.status == SyncStatus.PENDING
    credential = await repo.get_credential("t1-hubspot")
    assert credential.expires_at == clock.now

    clock.advance(seconds=10)
    [record] = await service.process_due()
    assert record.status == SyncStatus.SUCCESS
    assert crm.refreshes == 1
    assert crm.tokens_seen == ["access-0", "access-1"]


@pytest.mark.asyncio
async def test_missing_entity_or_integration_fails(repo, crm, clock, connect):
    service = _service(repo, crm, clock)
    await repo.save_entity(EntityRecord(tenant_id="t1", entity_type="contact", entity_id="c1"))

    no_integration = await service.sync_entity_to_crm("t1", "contact", "c1")
    assert no_integration.status == SyncStatus.FAILED

    await connect(repo)
    no_entity = await service.sync_entity_to_crm("t1", "contact", "ghost")
    assert no_entity.status == SyncStatus.FAILED
    assert "does not exist" in no_entity.last_error

    with pytest.raises(NotFound):
        await service.replay("missing")


@pytest.mark.asyncio
async def test_claimed_record_is_hidden_from_other_workers(repo, crm, clock, connect):
    await _seed(repo, connect)
    crm.push_results = [TransientCollaboratorFailure("503")]
    service = _service(repo, crm, clock)
    await service.sync_entity_to_crm("t1", "contact", "c1")

    release = asyncio.Event()
    push = crm.push_entity

    async def slow_push(token, entity):
        await release.wait()
        return await push(token, entity)

    crm.push_entity = slow_push
    clock.advance(seconds=10)
    first_worker = asyncio.create_task(service.process_due())
    await asyncio.sleep(0.01)

    # the lease keeps the in-progress record out of a second scan
    assert await service.process_due() == []
    release.set()
    [record] = await first_worker
    assert record.status == SyncStatus.SUCCESS
    assert len(crm.pushed) == 2


@pytest.mark.asyncio
async def test_pull_applies_changes_and_advances_watermark(repo, crm, clock, connect):
    await connect(repo)
    first = clock.now + timedelta(minutes=1)
    second = clock.now + timedelta(minutes=2)
    crm.changes["contact"] = [
        RemoteChange(external_id="ext-1", fields={"email": "one@b.com"}, modified_at=first),
        RemoteChange(external_id="ext-2", fields={"email": "two@b.com"}, modified_at=second),
    ]
    service = _service(repo, crm, clock)

    assert await service.pull_from_crm("t1") == 2
    integration = await repo.get_integration("t1", "hubspot")
    assert integration.sync_cursor == second
    assert (await repo.find_entity_by_external_id("t1", "contact", "ext-2")).fields == {
        "email": "two@b.com"
    }

    assert await service.pull_from_crm("t1") == 0
    assert crm.since_seen == [None, second]

    with pytest.raises(NotFound):
        await service.pull_from_crm("t2")
