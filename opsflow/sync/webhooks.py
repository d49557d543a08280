"""Inbound CRM webhooks: verify, deduplicate, apply."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from ..config import SyncConfig, WebhookConfig, WebhookProviderConfig
from ..constants import EVENT_WEBHOOK_RECEIVED
from ..contracts import DomainEvent, WebhookEvent, WebhookStatus
from ..errors import ConcurrencyConflict, InvalidPayload, InvalidSignature, NotFound
from ..persistence import Repository
from ..utils import utcnow
from .crm import RemoteChange
from .service import SyncService

if TYPE_CHECKING:
    from ..dispatch import EventPublisher

logger = logging.getLogger(__name__)


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body``; what providers put in the signature header."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(sign_payload(secret, body), candidate.lower())


class ParsedEvent(BaseModel):
    """Provider-neutral view of one webhook event."""

    external_event_id: str
    event_type: str
    account_id: Optional[str] = None
    tenant_id: Optional[str] = None
    entity_type: Optional[str] = None
    external_entity_id: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    modified_at: Optional[datetime] = None
    deleted: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class IngestResult(BaseModel):
    accepted: bool
    status: str
    event_id: Optional[str] = None
    items: List["IngestResult"] = Field(default_factory=list)


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)):
            # providers send epoch milliseconds
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError) as e:
        raise InvalidPayload(f"Unparseable webhook timestamp {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ProviderAdapter(Protocol):
    def parse(self, body: bytes, payload: Any) -> List[ParsedEvent]: ...


class GenericAdapter:
    """Flat JSON object: ``{"id", "type", "account_id", "entity": {...}}``."""

    def parse(self, body: bytes, payload: Any) -> List[ParsedEvent]:
        if not isinstance(payload, dict):
            raise InvalidPayload("Webhook payload must be a JSON object")
        event_type = payload.get("type") or payload.get("event_type")
        if not event_type:
            raise InvalidPayload("Webhook payload has no event type")
        entity = payload.get("entity") or {}
        if not isinstance(entity, dict):
            raise InvalidPayload("Webhook entity must be a JSON object")
        # without a provider id, identical bodies are the same delivery
        event_id = (
            payload.get("id")
            or payload.get("event_id")
            or hashlib.sha256(body).hexdigest()
        )
        return [
            ParsedEvent(
                external_event_id=str(event_id),
                event_type=str(event_type),
                account_id=_opt_str(payload.get("account_id")),
                tenant_id=_opt_str(payload.get("tenant_id")),
                entity_type=entity.get("type"),
                external_entity_id=_opt_str(entity.get("id")),
                fields=entity.get("fields") or {},
                modified_at=_timestamp(
                    entity.get("modified_at") or payload.get("occurred_at")
                ),
                deleted=str(event_type).endswith(".deleted"),
                raw=payload,
            )
        ]


class HubSpotAdapter:
    """HubSpot subscription payloads: a JSON array of event objects."""

    def parse(self, body: bytes, payload: Any) -> List[ParsedEvent]:
        items = payload if isinstance(payload, list) else [payload]
        events = []
        for item in items:
            if not isinstance(item, dict) or "eventId" not in item:
                raise InvalidPayload("HubSpot event is missing eventId")
            subscription = str(item.get("subscriptionType", ""))
            entity_type, _, action = subscription.partition(".")
            fields = {}
            if item.get("propertyName"):
                fields[item["propertyName"]] = item.get("propertyValue")
            events.append(
                ParsedEvent(
                    external_event_id=str(item["eventId"]),
                    event_type=subscription,
                    account_id=_opt_str(item.get("portalId")),
                    entity_type=entity_type or None,
                    external_entity_id=_opt_str(item.get("objectId")),
                    fields=fields,
                    modified_at=_timestamp(item.get("occurredAt")),
                    deleted=action == "deletion",
                    raw=item,
                )
            )
        return events


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


ADAPTERS: Dict[str, ProviderAdapter] = {
    "generic": GenericAdapter(),
    "hubspot": HubSpotAdapter(),
}


class WebhookIngestor:
    """Turns signed provider deliveries into at-most-once applied events."""

    def __init__(
        self,
        repository: Repository,
        sync: SyncService,
        config: WebhookConfig | None = None,
        sync_config: SyncConfig | None = None,
        events: Optional["EventPublisher"] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._sync = sync
        self._config = config or WebhookConfig()
        self._sync_config = sync_config or SyncConfig()
        self._events = events
        self._clock = clock

    def provider(self, provider_id: str) -> WebhookProviderConfig:
        provider = self._config.providers.get(provider_id)
        if provider is None or not provider.secret:
            raise InvalidSignature(
                f"Webhook provider {provider_id} is not configured",
                provider_id=provider_id,
            )
        return provider

    async def ingest(
        self, provider_id: str, raw_payload: bytes, signature: Optional[str]
    ) -> IngestResult:
        provider = self.provider(provider_id)
        if not verify_signature(provider.secret, raw_payload, signature):
            logger.warning(f"Rejected {provider_id} webhook with bad signature")
            raise InvalidSignature(
                f"Signature mismatch for provider {provider_id}", provider_id=provider_id
            )
        try:
            payload = json.loads(raw_payload)
        except ValueError as e:
            raise InvalidPayload(f"Webhook body is not JSON: {e}") from e

        try:
            parsed = ADAPTERS[provider.adapter].parse(raw_payload, payload)
        except ValidationError as e:
            raise InvalidPayload(f"Malformed {provider_id} webhook: {e}") from e
        results = [await self._ingest_one(provider_id, event) for event in parsed]
        if len(results) == 1:
            return results[0]

        if any(not r.accepted for r in results):
            status = WebhookStatus.FAILED.value
        elif all(r.status == WebhookStatus.DUPLICATE.value for r in results):
            status = WebhookStatus.DUPLICATE.value
        else:
            status = WebhookStatus.PROCESSED.value
        return IngestResult(
            accepted=all(r.accepted for r in results), status=status, items=results
        )

    async def _ingest_one(self, provider_id: str, parsed: ParsedEvent) -> IngestResult:
        event, created = await self._repository.insert_webhook_event(
            WebhookEvent(
                provider_id=provider_id,
                external_event_id=parsed.external_event_id,
                event_type=parsed.event_type,
                tenant_id=parsed.tenant_id,
                payload=parsed.raw,
                received_at=self._clock(),
            )
        )
        if not created:
            claimed = await self._claim_failed(event)
            if claimed is None:
                return await self._record_duplicate(event)
            event = claimed
            logger.info(f"Reprocessing failed webhook {event.idempotency_key}")

        try:
            tenant_id = await self._apply(provider_id, parsed, event)
        except Exception as e:
            logger.exception(f"Failed to apply webhook {event.idempotency_key}")
            await self._set_status(
                event, {"status": WebhookStatus.FAILED, "last_error": str(e)}
            )
            return IngestResult(
                accepted=False, status=WebhookStatus.FAILED.value, event_id=event.id
            )

        event = await self._set_status(
            event,
            {
                "status": WebhookStatus.PROCESSED,
                "tenant_id": tenant_id,
                "processed_at": self._clock(),
            },
        )
        if self._events is not None:
            await self._events.publish(
                DomainEvent(
                    type=EVENT_WEBHOOK_RECEIVED,
                    tenant_id=tenant_id,
                    entity_id=parsed.external_entity_id,
                    payload={
                        "provider_id": provider_id,
                        "event_type": parsed.event_type,
                        "external_event_id": parsed.external_event_id,
                        "fields": parsed.fields,
                    },
                )
            )
        logger.info(f"Processed webhook {event.idempotency_key} for tenant {tenant_id}")
        return IngestResult(
            accepted=True, status=WebhookStatus.PROCESSED.value, event_id=event.id
        )

    async def _claim_failed(self, event: WebhookEvent) -> Optional[WebhookEvent]:
        """Move a failed event back to pending; ``None`` if it is not failed."""
        while event.status == WebhookStatus.FAILED:
            try:
                return await self._repository.update_webhook_event(
                    event.model_copy(
                        update={"status": WebhookStatus.PENDING, "last_error": None}
                    )
                )
            except ConcurrencyConflict:
                event = await self._repository.get_webhook_event(
                    event.provider_id, event.external_event_id
                )
        return None

    async def _set_status(
        self, event: WebhookEvent, changes: Dict[str, Any]
    ) -> WebhookEvent:
        """Write a status transition, re-reading past duplicate-counter bumps."""
        while True:
            try:
                return await self._repository.update_webhook_event(
                    event.model_copy(update=changes)
                )
            except ConcurrencyConflict:
                logger.debug(f"Webhook {event.idempotency_key} bumped; retrying write")
                event = await self._repository.get_webhook_event(
                    event.provider_id, event.external_event_id
                )

    async def _record_duplicate(self, event: WebhookEvent) -> IngestResult:
        while True:
            try:
                stored = await self._repository.update_webhook_event(
                    event.model_copy(
                        update={"duplicate_deliveries": event.duplicate_deliveries + 1}
                    )
                )
                break
            except ConcurrencyConflict:
                event = await self._repository.get_webhook_event(
                    event.provider_id, event.external_event_id
                )
        logger.info(
            f"Duplicate delivery of webhook {stored.idempotency_key} "
            f"({stored.duplicate_deliveries} so far)"
        )
        return IngestResult(
            accepted=True, status=WebhookStatus.DUPLICATE.value, event_id=stored.id
        )

    async def _resolve_tenant(self, provider_id: str, parsed: ParsedEvent) -> str:
        if parsed.account_id:
            integration = await self._repository.find_integration_by_account(
                provider_id, parsed.account_id
            )
            if integration is not None:
                return integration.tenant_id
        if parsed.tenant_id:
            return parsed.tenant_id
        raise NotFound(
            f"No {provider_id} integration for account {parsed.account_id}",
            provider_id=provider_id,
            account_id=parsed.account_id,
        )

    async def _apply(
        self, provider_id: str, parsed: ParsedEvent, event: WebhookEvent
    ) -> str:
        tenant_id = await self._resolve_tenant(provider_id, parsed)
        if not (parsed.entity_type and parsed.external_entity_id):
            logger.info(f"Webhook {event.idempotency_key} carries no entity; recorded only")
            return tenant_id

        if parsed.event_type in self._sync_config.ack_event_types:
            local = await self._repository.find_entity_by_external_id(
                tenant_id, parsed.entity_type, parsed.external_entity_id
            )
            await self._sync.sync_entity_to_crm(
                tenant_id,
                parsed.entity_type,
                local.entity_id if local else parsed.external_entity_id,
                provider_id=provider_id,
                source_event_id=event.id,
            )
            return tenant_id

        await self._sync.apply_remote_change(
            tenant_id,
            provider_id,
            parsed.entity_type,
            RemoteChange(
                external_id=parsed.external_entity_id,
                fields=parsed.fields,
                modified_at=parsed.modified_at,
                deleted=parsed.deleted,
            ),
        )
        return tenant_id
