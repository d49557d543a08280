"""Per-tenant OAuth credentials and their refresh lifecycle."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional

from ..config import TokenConfig
from ..contracts import Integration, IntegrationStatus, OAuthCredential
from ..errors import CollaboratorRequestError, NotFound, OpsflowError
from ..persistence import Repository
from ..utils import utcnow
from .crm import CRMClient

logger = logging.getLogger(__name__)


class TokenStore:
    """Hands out bearer tokens, refreshing them shortly before expiry.

    Refreshes are serialized per credential so concurrent callers trigger a
    single refresh and then read the stored result.
    """

    def __init__(
        self,
        repository: Repository,
        clients: Mapping[str, CRMClient],
        config: TokenConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clients = clients
        self._config = config or TokenConfig()
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, ref: str) -> asyncio.Lock:
        return self._locks.setdefault(ref, asyncio.Lock())

    async def _load(
        self, tenant_id: str, provider_id: str
    ) -> tuple[Integration, OAuthCredential]:
        integration = await self._repository.get_integration(tenant_id, provider_id)
        if integration is None or integration.status == IntegrationStatus.DISCONNECTED:
            raise NotFound(
                f"No {provider_id} integration for tenant {tenant_id}",
                tenant_id=tenant_id,
                provider_id=provider_id,
            )
        credential = await self._repository.get_credential(integration.credential_ref)
        if credential is None:
            raise NotFound(
                f"Credential {integration.credential_ref} is missing",
                tenant_id=tenant_id,
                provider_id=provider_id,
            )
        return integration, credential

    def _needs_refresh(self, credential: OAuthCredential) -> bool:
        return credential.expires_within(self._config.refresh_skew_seconds, self._clock())

    async def get_valid_token(self, tenant_id: str, provider_id: str) -> str:
        """Return a bearer token for the tenant's integration with ``provider_id``."""
        integration, credential = await self._load(tenant_id, provider_id)
        if not self._needs_refresh(credential):
            return credential.access_token

        async with self._lock_for(credential.ref):
            # another caller may have refreshed while we waited
            integration, credential = await self._load(tenant_id, provider_id)
            if not self._needs_refresh(credential):
                return credential.access_token
            return await self._refresh(integration, credential)

    async def _refresh(
        self, integration: Integration, credential: OAuthCredential
    ) -> str:
        client = self._clients.get(integration.provider_id)
        try:
            if client is None:
                raise CollaboratorRequestError(
                    f"No CRM client configured for {integration.provider_id}"
                )
            if not credential.refresh_token:
                raise CollaboratorRequestError(
                    f"Credential {credential.ref} has no refresh token"
                )
            refreshed = await client.refresh_token(credential.refresh_token)
        except OpsflowError as e:
            logger.error(
                f"Token refresh failed for tenant={integration.tenant_id} "
                f"provider={integration.provider_id}: {e}"
            )
            await self._repository.save_integration(
                integration.model_copy(
                    update={"status": IntegrationStatus.ERROR, "last_error": str(e)}
                )
            )
            raise

        expires_at: Optional[datetime] = None
        if refreshed.expires_in is not None:
            expires_at = self._clock() + timedelta(seconds=refreshed.expires_in)
        await self._repository.save_credential(
            credential.model_copy(
                update={
                    "access_token": refreshed.access_token,
                    "refresh_token": refreshed.refresh_token or credential.refresh_token,
                    "expires_at": expires_at,
                }
            )
        )
        if integration.status != IntegrationStatus.CONNECTED:
            await self._repository.save_integration(
                integration.model_copy(
                    update={"status": IntegrationStatus.CONNECTED, "last_error": None}
                )
            )
        logger.info(
            f"Refreshed token for tenant={integration.tenant_id} "
            f"provider={integration.provider_id}"
        )
        return refreshed.access_token

    async def invalidate(self, tenant_id: str, provider_id: str) -> None:
        """Force the next ``get_valid_token`` call to refresh."""
        _, credential = await self._load(tenant_id, provider_id)
        await self._repository.save_credential(
            credential.model_copy(update={"expires_at": self._clock()})
        )
        logger.info(f"Invalidated token for tenant={tenant_id} provider={provider_id}")
