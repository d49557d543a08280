"""CRM synchronization: tokens, outbound sync and inbound webhooks."""

from .crm import CRMClient, HubSpotClient, RemoteChange
from .service import SyncService
from .tokens import TokenStore
from .webhooks import IngestResult, WebhookIngestor, sign_payload, verify_signature

__all__ = [
    "CRMClient",
    "HubSpotClient",
    "IngestResult",
    "RemoteChange",
    "SyncService",
    "TokenStore",
    "WebhookIngestor",
    "sign_payload",
    "verify_signature",
]
