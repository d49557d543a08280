"""HTTP client for the CRM provider.

Only the pieces the sync service needs are modelled: pushing a local entity,
listing remote changes since a watermark and refreshing an OAuth token. HTTP
failures are mapped onto the engine's error taxonomy here so callers never see
``httpx`` exceptions.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..config import CRMProviderConfig
from ..contracts import EntityRecord
from ..errors import AuthExpired, CollaboratorRequestError, TransientCollaboratorFailure

logger = logging.getLogger(__name__)


class RefreshedToken(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


class RemoteChange(BaseModel):
    """One entity as reported by the CRM."""

    external_id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    modified_at: Optional[datetime] = None
    deleted: bool = False


class CRMClient(Protocol):
    async def refresh_token(self, refresh_token: str) -> RefreshedToken: ...

    async def push_entity(self, access_token: str, entity: EntityRecord) -> str:
        """Create or update ``entity`` remotely and return its CRM id."""
        ...

    async def list_changes(
        self, access_token: str, entity_type: str, since: Optional[datetime]
    ) -> List[RemoteChange]: ...


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_crm_status(response: httpx.Response) -> None:
    """Translate a CRM error response into an opsflow error."""
    status = response.status_code
    if status < 400:
        return
    try:
        data = response.json()
    except ValueError:
        data = None
    detail = data.get("message", response.text) if isinstance(data, dict) else response.text
    context = {"status_code": status, "url": str(response.request.url)}
    if status == 401:
        raise AuthExpired(f"CRM rejected access token: {detail}", **context)
    if status == 429 or status >= 500:
        raise TransientCollaboratorFailure(
            f"CRM unavailable ({status}): {detail}",
            retry_after=_retry_after(response),
            **context,
        )
    raise CollaboratorRequestError(f"CRM rejected request ({status}): {detail}", **context)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _object_path(entity_type: str) -> str:
    if entity_type.endswith("s"):
        return entity_type
    if entity_type.endswith("y"):
        return f"{entity_type[:-1]}ies"
    return f"{entity_type}s"


class HubSpotClient:
    """CRM client speaking the HubSpot v3 objects API."""

    def __init__(
        self,
        config: CRMProviderConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or CRMProviderConfig()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout)
            )
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientCollaboratorFailure(f"CRM request failed: {e!s}", url=url) from e
        raise_for_crm_status(response)
        return response

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        response = await self._request(
            "POST",
            self._config.token_url,
            data={
                "grant_type": "refresh_token",
                "client_id": self._config.client_id or "",
                "client_secret": self._config.client_secret or "",
                "refresh_token": refresh_token,
            },
        )
        return RefreshedToken.model_validate(response.json())

    async def push_entity(self, access_token: str, entity: EntityRecord) -> str:
        base = f"{self._config.base_url}/crm/v3/objects/{_object_path(entity.entity_type)}"
        headers = {"Authorization": f"Bearer {access_token}"}
        body = {"properties": entity.fields}
        if entity.external_id:
            response = await self._request(
                "PATCH", f"{base}/{entity.external_id}", json=body, headers=headers
            )
        else:
            response = await self._request("POST", base, json=body, headers=headers)
        external_id = str(response.json()["id"])
        logger.debug(
            f"Pushed {entity.entity_type} {entity.entity_id} as {external_id}"
        )
        return external_id

    async def list_changes(
        self, access_token: str, entity_type: str, since: Optional[datetime]
    ) -> List[RemoteChange]:
        url = f"{self._config.base_url}/crm/v3/objects/{_object_path(entity_type)}/search"
        headers = {"Authorization": f"Bearer {access_token}"}
        body: Dict[str, Any] = {
            "sorts": [{"propertyName": "lastmodifieddate", "direction": "ASCENDING"}],
            "limit": 100,
        }
        if since is not None:
            body["filterGroups"] = [
                {
                    "filters": [
                        {
                            "propertyName": "lastmodifieddate",
                            "operator": "GT",
                            "value": str(int(since.timestamp() * 1000)),
                        }
                    ]
                }
            ]

        changes: List[RemoteChange] = []
        after: Optional[str] = None
        while True:
            if after:
                body["after"] = after
            data = (await self._request("POST", url, json=body, headers=headers)).json()
            for item in data.get("results", []):
                changes.append(
                    RemoteChange(
                        external_id=str(item["id"]),
                        fields=item.get("properties") or {},
                        modified_at=_parse_timestamp(item.get("updatedAt")),
                        deleted=bool(item.get("archived", False)),
                    )
                )
            after = (data.get("paging") or {}).get("next", {}).get("after")
            if not after:
                return changes
