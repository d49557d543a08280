"""Shared fakes and fixtures for the opsflow test suite."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from opsflow.contracts import (
    CallAttemptRequest,
    CallAttemptResult,
    CallTarget,
    Campaign,
    DomainEvent,
    Integration,
    OAuthCredential,
    WorkflowDefinition,
)
from opsflow.persistence import InMemoryRepository
from opsflow.sync.crm import RefreshedToken, RemoteChange


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTelephony:
    """Records call requests; ``outcomes`` are bools or exceptions, in order."""

    def __init__(self, outcomes: Optional[List[Any]] = None, on_call=None) -> None:
        self.requests: List[CallAttemptRequest] = []
        self._outcomes = list(outcomes or [])
        self.on_call = on_call

    @property
    def called_targets(self) -> List[str]:
        return [r.target.id for r in self.requests]

    async def place_call(self, request: CallAttemptRequest) -> CallAttemptResult:
        self.requests.append(request)
        if self.on_call is not None:
            await self.on_call(request)
        outcome = self._outcomes.pop(0) if self._outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        return CallAttemptResult(
            success=bool(outcome),
            outcome_code="ended" if outcome else "no-answer",
            provider_call_id=f"call-{len(self.requests)}",
        )


class FakeCRM:
    """In-process CRM client with scripted push results."""

    def __init__(self) -> None:
        self.pushed = []
        self.push_results: List[Any] = []
        self.tokens_seen: List[str] = []
        self.refreshes = 0
        self.refresh_error: Optional[Exception] = None
        self.changes: Dict[str, List[RemoteChange]] = {}
        self.since_seen: List[Optional[datetime]] = []

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        self.refreshes += 1
        await asyncio.sleep(0)
        if self.refresh_error is not None:
            raise self.refresh_error
        return RefreshedToken(
            access_token=f"access-{self.refreshes}",
            refresh_token="refresh-next",
            expires_in=3600,
        )

    async def push_entity(self, access_token: str, entity) -> str:
        self.tokens_seen.append(access_token)
        self.pushed.append(entity)
        if self.push_results:
            result = self.push_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return entity.external_id or f"crm-{entity.entity_id}"

    async def list_changes(
        self, access_token: str, entity_type: str, since: Optional[datetime]
    ) -> List[RemoteChange]:
        self.since_seen.append(since)
        return [
            change
            for change in self.changes.get(entity_type, [])
            if since is None or (change.modified_at and change.modified_at > since)
        ]


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, channel, recipient, message, context) -> None:
        self.sent.append(
            {
                "channel": channel,
                "recipient": recipient,
                "message": message,
                "context": context,
            }
        )


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: List[DomainEvent] = []

    def of_type(self, event_type: str) -> List[DomainEvent]:
        return [e for e in self.events if e.type == event_type]

    async def publish(self, event: DomainEvent) -> List[str]:
        self.events.append(event)
        return []


START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def crm():
    return FakeCRM()


@pytest.fixture
def make_telephony():
    return FakeTelephony


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def contact_workflow() -> WorkflowDefinition:
    """Tag the contact, then welcome it or wait an hour and remind."""
    return WorkflowDefinition.model_validate(
        {
            "id": "contact-onboarding",
            "tenant_id": "t1",
            "name": "Contact onboarding",
            "trigger": {"event_type": "contact.created"},
            "entry_step_id": "tag",
            "steps": [
                {
                    "id": "tag",
                    "kind": "action",
                    "config": {"action": "tagContact", "params": {"email": "{{email}}"}},
                    "next": {"next": "hasEmail"},
                },
                {
                    "id": "hasEmail",
                    "kind": "condition",
                    "config": {"rules": [{"field": "email", "operator": "exists"}]},
                    "next": {"true": "welcome", "false": "wait"},
                },
                {
                    "id": "wait",
                    "kind": "delay",
                    "config": {"duration": 1, "unit": "hours"},
                    "next": {"next": "remind"},
                },
                {
                    "id": "welcome",
                    "kind": "notify",
                    "config": {"recipient": "{{email}}", "message": "Welcome {{email}}"},
                },
                {
                    "id": "remind",
                    "kind": "notify",
                    "config": {"channel": "sms", "message": "Reminder for {{entity_id}}"},
                },
            ],
        }
    )


@pytest.fixture
def make_campaign():
    def _make(campaign_id: str = "camp-1", targets: int = 5) -> Campaign:
        return Campaign(
            id=campaign_id,
            tenant_id="t1",
            name="Spring outreach",
            agent_id="assistant-1",
            targets=[
                CallTarget(id=f"target-{i}", phone=f"+1555000{i:04d}", name=f"Lead {i}")
                for i in range(1, targets + 1)
            ],
        )

    return _make


@pytest.fixture
def connect():
    """Store a CRM credential and integration for a tenant."""

    async def _connect(
        repository,
        tenant_id: str = "t1",
        provider_id: str = "hubspot",
        account_id: Optional[str] = "portal-1",
        expires_at: Optional[datetime] = None,
        refresh_token: Optional[str] = "refresh-1",
    ) -> Integration:
        ref = f"{tenant_id}-{provider_id}"
        await repository.save_credential(
            OAuthCredential(
                ref=ref,
                access_token="access-0",
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
        )
        return await repository.save_integration(
            Integration(
                tenant_id=tenant_id,
                provider_id=provider_id,
                external_account_id=account_id,
                credential_ref=ref,
            )
        )

    return _connect
