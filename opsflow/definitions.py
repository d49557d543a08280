"""Load workflow definitions, campaigns and integrations from YAML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .contracts import Campaign, Integration, OAuthCredential, WorkflowDefinition
from .errors import InvalidDefinition
from .persistence import Repository

logger = logging.getLogger(__name__)


class DefinitionBundle(BaseModel):
    """Everything a definitions file may declare."""

    definitions: List[WorkflowDefinition] = Field(default_factory=list)
    campaigns: List[Campaign] = Field(default_factory=list)
    integrations: List[Integration] = Field(default_factory=list)
    credentials: List[OAuthCredential] = Field(default_factory=list)


def parse_bundle(data: dict) -> DefinitionBundle:
    try:
        return DefinitionBundle.model_validate(data or {})
    except ValidationError as e:
        raise InvalidDefinition(f"Invalid definitions: {e}") from e


def load_bundle(path: Union[str, Path]) -> DefinitionBundle:
    """Read and validate a YAML definitions file."""
    path = Path(path)
    if not path.exists():
        raise InvalidDefinition(f"Definitions file {path} does not exist", path=str(path))
    with path.open() as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidDefinition(f"{path} is not valid YAML: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise InvalidDefinition(f"{path} must contain a mapping", path=str(path))
    return parse_bundle(data)


async def install_bundle(repository: Repository, bundle: DefinitionBundle) -> None:
    for definition in bundle.definitions:
        await repository.save_definition(definition)
    for campaign in bundle.campaigns:
        await repository.save_campaign(campaign)
    for credential in bundle.credentials:
        await repository.save_credential(credential)
    for integration in bundle.integrations:
        await repository.save_integration(integration)
    logger.info(
        f"Installed {len(bundle.definitions)} definition(s), "
        f"{len(bundle.campaigns)} campaign(s), "
        f"{len(bundle.integrations)} integration(s)"
    )
