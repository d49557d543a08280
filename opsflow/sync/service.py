"""Outbound and inbound synchronization with the CRM.

Retry state lives on the persisted :class:`SyncRecord`, never in timers: a
failed attempt stores ``next_retry_at`` and the scheduler picks the record up
again through :meth:`SyncService.process_due`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Mapping, Optional

from ..config import SyncConfig
from ..contracts import (
    EntityRecord,
    SyncRecord,
    SyncStatus,
)
from ..errors import (
    AuthExpired,
    CollaboratorRequestError,
    ConcurrencyConflict,
    InvalidAction,
    NotFound,
    TransientCollaboratorFailure,
)
from ..persistence import Repository
from ..utils import next_retry_at, utcnow
from .crm import CRMClient, RemoteChange
from .tokens import TokenStore

logger = logging.getLogger(__name__)


class SyncService:
    def __init__(
        self,
        repository: Repository,
        tokens: TokenStore,
        clients: Mapping[str, CRMClient],
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._tokens = tokens
        self._clients = clients
        self._config = config or SyncConfig()
        self._clock = clock

    def _lease(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self._config.claim_lease_seconds)

    async def sync_entity_to_crm(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        provider_id: Optional[str] = None,
        source_event_id: Optional[str] = None,
    ) -> SyncRecord:
        """Record an outbound sync of one entity and attempt it immediately."""
        now = self._clock()
        record = await self._repository.create_sync_record(
            SyncRecord(
                tenant_id=tenant_id,
                provider_id=provider_id or self._config.default_provider,
                entity_type=entity_type,
                entity_id=entity_id,
                max_attempts=self._config.retry.max_attempts,
                source_event_id=source_event_id,
                next_retry_at=self._lease(now),
            )
        )
        return await self._attempt(record)

    async def process_due(self, now: Optional[datetime] = None) -> List[SyncRecord]:
        """Claim and attempt pending records whose retry time has passed."""
        now = now or self._clock()
        results: List[SyncRecord] = []
        due = await self._repository.list_due_sync_records(
            now, limit=self._config.batch_size
        )
        for record in due:
            try:
                claimed = await self._repository.update_sync_record(
                    record.model_copy(update={"next_retry_at": self._lease(now)})
                )
            except ConcurrencyConflict:
                logger.debug(f"Sync record {record.id} claimed elsewhere")
                continue
            results.append(await self._attempt(claimed))
        return results

    async def list_abandoned(self, tenant_id: Optional[str] = None) -> List[SyncRecord]:
        return await self._repository.list_sync_records(
            status=SyncStatus.ABANDONED, tenant_id=tenant_id
        )

    async def replay(self, record_id: str) -> SyncRecord:
        """Give an abandoned or failed record a fresh attempt budget and retry it."""
        record = await self._repository.get_sync_record(record_id)
        if record is None:
            raise NotFound(f"Sync record {record_id} not found", record_id=record_id)
        if record.status not in (SyncStatus.ABANDONED, SyncStatus.FAILED):
            raise InvalidAction(
                f"Sync record {record_id} is {record.status.value}, not replayable",
                record_id=record_id,
            )
        claimed = await self._repository.update_sync_record(
            record.model_copy(
                update={
                    "status": SyncStatus.PENDING,
                    "attempts": 0,
                    "next_retry_at": self._lease(self._clock()),
                }
            )
        )
        logger.info(f"Replaying sync record {record_id}")
        return await self._attempt(claimed)

    # ------------------------------------------------------------------
    async def _attempt(self, record: SyncRecord) -> SyncRecord:
        now = self._clock()
        entity = await self._repository.get_entity(
            record.tenant_id, record.entity_type, record.entity_id
        )
        try:
            if entity is None:
                raise CollaboratorRequestError(
                    f"Local {record.entity_type} {record.entity_id} does not exist"
                )
            client = self._clients.get(record.provider_id)
            if client is None:
                raise CollaboratorRequestError(
                    f"No CRM client configured for {record.provider_id}"
                )
            token = await self._tokens.get_valid_token(
                record.tenant_id, record.provider_id
            )
            external_id = await client.push_entity(token, entity)
        except AuthExpired as e:
            await self._tokens.invalidate(record.tenant_id, record.provider_id)
            return await self._retry_later(record, e, now)
        except TransientCollaboratorFailure as e:
            return await self._retry_later(record, e, now)
        except (CollaboratorRequestError, NotFound) as e:
            logger.error(
                f"Sync of {record.entity_type} {record.entity_id} rejected: {e}"
            )
            return await self._repository.update_sync_record(
                record.model_copy(
                    update={
                        "status": SyncStatus.FAILED,
                        "attempts": record.attempts + 1,
                        "next_retry_at": None,
                        "last_error": str(e),
                    }
                )
            )

        await self._repository.save_entity(
            entity.model_copy(
                update={
                    "external_id": external_id,
                    "provider_id": record.provider_id,
                    "last_sync_ack_at": now,
                }
            )
        )
        logger.info(
            f"Synced {record.entity_type} {record.entity_id} to "
            f"{record.provider_id} as {external_id}"
        )
        return await self._repository.update_sync_record(
            record.model_copy(
                update={
                    "status": SyncStatus.SUCCESS,
                    "attempts": record.attempts + 1,
                    "next_retry_at": None,
                    "last_error": None,
                }
            )
        )

    async def _retry_later(
        self, record: SyncRecord, error: TransientCollaboratorFailure, now: datetime
    ) -> SyncRecord:
        attempts = record.attempts + 1
        if attempts >= record.max_attempts:
            logger.error(
                f"Abandoning sync of {record.entity_type} {record.entity_id} "
                f"after {attempts} attempts: {error}"
            )
            return await self._repository.update_sync_record(
                record.model_copy(
                    update={
                        "status": SyncStatus.ABANDONED,
                        "attempts": attempts,
                        "next_retry_at": None,
                        "last_error": str(error),
                    }
                )
            )
        retry_at = next_retry_at(
            attempts, self._config.retry, now=now, retry_after=error.retry_after
        )
        logger.warning(
            f"Sync of {record.entity_type} {record.entity_id} failed "
            f"(attempt {attempts}/{record.max_attempts}), "
            f"retrying at {retry_at.isoformat()}: {error}"
        )
        return await self._repository.update_sync_record(
            record.model_copy(
                update={
                    "attempts": attempts,
                    "next_retry_at": retry_at,
                    "last_error": str(error),
                }
            )
        )

    # ------------------------------------------------------------------
    async def apply_remote_change(
        self,
        tenant_id: str,
        provider_id: str,
        entity_type: str,
        change: RemoteChange,
    ) -> Optional[EntityRecord]:
        """Apply one remote change under last-write-wins.

        Returns the stored entity, or ``None`` when the change is older than
        what the local copy already reflects.
        """
        entity = await self._repository.find_entity_by_external_id(
            tenant_id, entity_type, change.external_id
        )
        if entity is None:
            entity = EntityRecord(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=change.external_id,
                provider_id=provider_id,
                external_id=change.external_id,
            )
        elif change.modified_at is not None and _is_stale(entity, change.modified_at):
            logger.info(
                f"Ignoring stale {entity_type} {change.external_id} change from "
                f"{change.modified_at.isoformat()}"
            )
            return None

        return await self._repository.save_entity(
            entity.model_copy(
                update={
                    "fields": {**entity.fields, **change.fields},
                    "remote_modified_at": change.modified_at or entity.remote_modified_at,
                    "deleted": change.deleted,
                }
            )
        )

    async def pull_from_crm(
        self, tenant_id: str, provider_id: Optional[str] = None
    ) -> int:
        """Apply remote changes since the integration's watermark.

        Returns the number of changes applied.
        """
        provider_id = provider_id or self._config.default_provider
        integration = await self._repository.get_integration(tenant_id, provider_id)
        if integration is None:
            raise NotFound(
                f"No {provider_id} integration for tenant {tenant_id}",
                tenant_id=tenant_id,
                provider_id=provider_id,
            )
        client = self._clients.get(provider_id)
        if client is None:
            raise NotFound(f"No CRM client configured for {provider_id}")

        token = await self._tokens.get_valid_token(tenant_id, provider_id)
        watermark = integration.sync_cursor
        newest = watermark
        applied = 0
        for entity_type in self._config.pull_entity_types:
            try:
                changes = await client.list_changes(token, entity_type, watermark)
            except AuthExpired:
                await self._tokens.invalidate(tenant_id, provider_id)
                raise
            for change in changes:
                if await self.apply_remote_change(
                    tenant_id, provider_id, entity_type, change
                ):
                    applied += 1
                if change.modified_at and (newest is None or change.modified_at > newest):
                    newest = change.modified_at

        if newest != watermark:
            latest = await self._repository.get_integration(tenant_id, provider_id)
            await self._repository.save_integration(
                latest.model_copy(update={"sync_cursor": newest})
            )
        logger.info(
            f"Pulled {applied} change(s) from {provider_id} for tenant {tenant_id}"
        )
        return applied


def _is_stale(entity: EntityRecord, modified_at: datetime) -> bool:
    if entity.last_sync_ack_at is not None and modified_at < entity.last_sync_ack_at:
        return True
    if entity.remote_modified_at is not None and modified_at < entity.remote_modified_at:
        return True
    return False
