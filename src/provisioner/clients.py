"""Per-domain client interfaces consumed by the convergence orchestrator.

Each resource domain gets one narrow interface. The orchestrator receives
them bundled in ServiceClients and never builds clients itself, so tests
inject in-memory fakes and production injects the REST implementations in
gcp_clients.

Shared conventions:
    - Every method is a coroutine and accepts ``cancel_event``.
    - ``*_exists`` returns False for not-found and raises for anything else.
    - ``create_*`` raises AlreadyExistsError when the resource already exists.
    - ``delete_*`` treats not-found as success.
    - Long-running operations are waited on before the method returns.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, fields
from typing import Any, Protocol

from .errors import ConfigurationError


@dataclass(frozen=True)
class ServiceSpec:
    """Desired shape of one managed compute service."""

    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    service_account: str = ""
    min_instances: int = 0
    max_instances: int = 0
    timeout_seconds: int = 0
    # Connector name for connector egress, or network/subnet for direct egress
    vpc_connector: str = ""
    vpc_network: str = ""
    vpc_subnetwork: str = ""
    labels: dict[str, str] = field(default_factory=dict)


class IdentityClient(Protocol):
    async def service_account_exists(
        self, project_id: str, email: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool: ...

    async def create_service_account(
        self,
        project_id: str,
        account_id: str,
        display_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Create the account and return its email."""
        ...

    async def delete_service_account(
        self, project_id: str, email: str, *, cancel_event: asyncio.Event | None = None
    ) -> None: ...

    async def add_iam_binding(
        self,
        project_id: str,
        member: str,
        role: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Add ``member`` to ``role`` on the project policy if not already bound."""
        ...


class ComputeClient(Protocol):
    async def vpc_exists(
        self, project_id: str, vpc_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool: ...

    async def create_vpc(
        self, project_id: str, vpc_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None: ...

    async def delete_vpc(
        self, project_id: str, vpc_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None: ...

    async def subnet_exists(
        self,
        project_id: str,
        region: str,
        subnet_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool: ...

    async def create_subnet(
        self,
        project_id: str,
        region: str,
        subnet_name: str,
        vpc_name: str,
        cidr_range: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_subnet(
        self,
        project_id: str,
        region: str,
        subnet_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def firewall_rule_exists(
        self, project_id: str, rule_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool: ...

    async def create_firewall_rule(
        self,
        project_id: str,
        rule_name: str,
        vpc_name: str,
        direction: str,
        allowed: list[str],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_firewall_rule(
        self, project_id: str, rule_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None: ...


class VPCAccessClient(Protocol):
    async def connector_exists(
        self,
        project_id: str,
        region: str,
        connector_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool: ...

    async def create_connector(
        self,
        project_id: str,
        region: str,
        connector_name: str,
        network: str,
        ip_range: str,
        min_instances: int,
        max_instances: int,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_connector(
        self,
        project_id: str,
        region: str,
        connector_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...


class FirestoreClient(Protocol):
    async def database_exists(
        self, project_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool: ...

    async def create_database(
        self, project_id: str, location_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> None: ...

    async def ensure_field_index(
        self,
        project_id: str,
        collection: str,
        field_path: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Upsert a single-field index; repeating the call is a no-op."""
        ...


class KMSClient(Protocol):
    async def key_ring_exists(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool: ...

    async def create_key_ring(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def crypto_key_exists(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        crypto_key_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool: ...

    async def create_crypto_key(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        crypto_key_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Create the key and return its full resource name."""
        ...

    async def get_crypto_key_id(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        crypto_key_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str: ...


class PubSubClient(Protocol):
    async def topic_exists(
        self, project_id: str, topic_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool: ...

    async def create_topic(
        self,
        project_id: str,
        topic_id: str,
        *,
        labels: dict[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_topic(
        self, project_id: str, topic_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> None: ...

    async def subscription_exists(
        self,
        project_id: str,
        subscription_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool: ...

    async def create_subscription(
        self,
        project_id: str,
        subscription_id: str,
        topic_id: str,
        push_endpoint: str,
        *,
        service_account: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_subscription(
        self,
        project_id: str,
        subscription_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...


class ArtifactRegistryClient(Protocol):
    async def repository_exists(
        self,
        project_id: str,
        location: str,
        repo_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool: ...

    async def create_repository(
        self,
        project_id: str,
        location: str,
        repo_id: str,
        *,
        labels: dict[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_repository(
        self,
        project_id: str,
        location: str,
        repo_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...


class CloudRunClient(Protocol):
    async def get_service_url(
        self,
        project_id: str,
        region: str,
        service_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str | None:
        """Return the service URL, or None when the service does not exist."""
        ...

    async def create_service(
        self,
        project_id: str,
        region: str,
        spec: ServiceSpec,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Create the service, wait for it, and return its URL."""
        ...

    async def update_service(
        self,
        project_id: str,
        region: str,
        spec: ServiceSpec,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_service(
        self,
        project_id: str,
        region: str,
        service_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def set_public_access(
        self,
        project_id: str,
        region: str,
        service_name: str,
        allow_unauthenticated: bool,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...


class SchedulerClient(Protocol):
    async def job_exists(
        self,
        project_id: str,
        region: str,
        job_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool: ...

    async def create_job(
        self,
        project_id: str,
        region: str,
        job_id: str,
        schedule: str,
        target_url: str,
        http_method: str,
        *,
        service_account: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_job(
        self,
        project_id: str,
        region: str,
        job_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...


class LoggingClient(Protocol):
    async def sink_exists(
        self, project_id: str, sink_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool: ...

    async def create_sink(
        self,
        project_id: str,
        sink_name: str,
        filter_expr: str,
        destination: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...

    async def delete_sink(
        self, project_id: str, sink_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None: ...


class ServiceUsageClient(Protocol):
    async def enable_services(
        self,
        project_id: str,
        services: list[str],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...


class DeploymentManagerClient(Protocol):
    """Deployment Manager v2 calls; bodies and results are API dicts."""

    async def get_deployment(
        self, project_id: str, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any]:
        """Raises NotFoundError when the deployment does not exist."""
        ...

    async def create_deployment(
        self,
        project_id: str,
        body: dict[str, Any],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]: ...

    async def update_deployment(
        self,
        project_id: str,
        name: str,
        body: dict[str, Any],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]: ...

    async def delete_deployment(
        self, project_id: str, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any]: ...

    async def get_operation(
        self,
        project_id: str,
        operation_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]: ...

    async def get_manifest(
        self,
        project_id: str,
        deployment_name: str,
        manifest_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]: ...


@dataclass
class ServiceClients:
    """Explicit collection of per-domain clients.

    Missing clients are allowed at construction; ``require`` reports them
    as a ConfigurationError when an operation actually needs them.
    """

    identity: IdentityClient | None = None
    compute: ComputeClient | None = None
    vpc_access: VPCAccessClient | None = None
    firestore: FirestoreClient | None = None
    kms: KMSClient | None = None
    pubsub: PubSubClient | None = None
    artifact_registry: ArtifactRegistryClient | None = None
    cloud_run: CloudRunClient | None = None
    scheduler: SchedulerClient | None = None
    logging: LoggingClient | None = None
    service_usage: ServiceUsageClient | None = None
    deployment_manager: DeploymentManagerClient | None = None

    def require(self, *names: str) -> None:
        missing = [name for name in names if getattr(self, name) is None]
        if missing:
            raise ConfigurationError(
                f"service clients not initialized: missing {', '.join(missing)}"
            )


# Clients the convergence orchestrator needs
CONVERGENCE_CLIENTS: tuple[str, ...] = tuple(
    f.name
    for f in fields(ServiceClients)
    if f.name not in ("service_usage", "deployment_manager")
)
