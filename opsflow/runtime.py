"""Wire the opsflow services together from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .campaigns import CampaignService
from .config import OpsflowConfig, load_config
from .dispatch import CommandWorker, TriggerDispatcher
from .execute import WorkflowEngine
from .persistence import Repository, get_repository
from .scheduler import Scheduler
from .steps import ActionRegistry, Notifier
from .sync.crm import CRMClient, HubSpotClient
from .sync.service import SyncService
from .sync.tokens import TokenStore
from .sync.webhooks import WebhookIngestor
from .telephony import TelephonyClient, VapiTelephonyClient
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: OpsflowConfig
    repository: Repository
    transport: BaseTransport
    dispatcher: TriggerDispatcher
    tokens: TokenStore
    sync: SyncService
    ingestor: WebhookIngestor
    engine: WorkflowEngine
    campaigns: CampaignService
    scheduler: Scheduler
    worker: CommandWorker

    async def close(self) -> None:
        await self.transport.disconnect()
        close = getattr(self.repository, "close", None)
        if close is not None:
            await close()


def build_services(
    config: Optional[OpsflowConfig] = None,
    repository: Optional[Repository] = None,
    transport: Optional[BaseTransport] = None,
    telephony: Optional[TelephonyClient] = None,
    crm_clients: Optional[Dict[str, CRMClient]] = None,
    actions: Optional[ActionRegistry] = None,
    notifier: Optional[Notifier] = None,
    autorun: bool = True,
) -> Services:
    """Build the full service graph; any collaborator can be passed in."""
    config = config or load_config()
    repository = repository or get_repository(config.database_url, config)
    transport = transport or get_transport(config=config)
    if crm_clients is None:
        crm_clients = {name: HubSpotClient(conf) for name, conf in config.crm.items()}

    dispatcher = TriggerDispatcher(repository, transport)
    tokens = TokenStore(repository, crm_clients, config.tokens)
    sync = SyncService(repository, tokens, crm_clients, config.sync)
    ingestor = WebhookIngestor(
        repository, sync, config.webhooks, config.sync, events=dispatcher
    )
    engine = WorkflowEngine(
        repository,
        actions=actions,
        notifier=notifier,
        sync=sync,
        config=config.workflow,
    )
    campaigns = CampaignService(
        repository,
        telephony or VapiTelephonyClient(config.telephony),
        config.campaign,
        events=dispatcher,
        autorun=autorun,
    )
    scheduler = Scheduler(repository, engine, sync=sync)
    worker = CommandWorker(
        transport,
        engine,
        campaigns=campaigns,
        sync=sync,
        max_deliveries=config.transport.max_deliveries,
    )
    logger.debug(
        f"Built services with {type(repository).__name__} and {type(transport).__name__}"
    )
    return Services(
        config=config,
        repository=repository,
        transport=transport,
        dispatcher=dispatcher,
        tokens=tokens,
        sync=sync,
        ingestor=ingestor,
        engine=engine,
        campaigns=campaigns,
        scheduler=scheduler,
        worker=worker,
    )
