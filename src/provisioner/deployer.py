"""Provider-neutral deployer facade.

Callers pick a provider with a case-insensitive token and then talk to the
returned object through the Deployer protocol only.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from .aws_stack import StackDeployer
from .config import Provider, ProvisionerConfig
from .errors import UnsupportedProviderError
from .gcp_deployer import ProjectDeployer
from .models import DeployOptions, DeployResult, DestroyOptions, DestroyResult


class Deployer(Protocol):
    async def deploy(
        self, opts: DeployOptions, *, cancel_event: asyncio.Event | None = None
    ) -> DeployResult: ...

    async def destroy(
        self, opts: DestroyOptions, *, cancel_event: asyncio.Event | None = None
    ) -> DestroyResult: ...

    async def check_exists(
        self, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool: ...

    async def get_outputs(
        self, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, str]: ...

    def get_region(self) -> str: ...


def supported_providers() -> list[str]:
    return [p.value for p in Provider]


def parse_provider(token: str) -> Provider:
    """Map a provider token to a Provider, ignoring case and surrounding spaces.

    Raises:
        UnsupportedProviderError: The token names no known provider.
    """
    try:
        return Provider(token.strip().lower())
    except ValueError as e:
        raise UnsupportedProviderError(token, supported_providers()) from e


def new_deployer(
    provider: str | Provider,
    config: ProvisionerConfig | None = None,
    region: str = "",
) -> Deployer:
    """Build the concrete deployer for ``provider`` from ambient credentials."""
    if not isinstance(provider, Provider):
        provider = parse_provider(provider)
    config = config or ProvisionerConfig()
    region = region or config.region or ""

    match provider:
        case Provider.AWS:
            return StackDeployer.from_environment(region, config)
        case Provider.GCP:
            return ProjectDeployer.from_environment(config, region)
