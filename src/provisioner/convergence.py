"""Resource convergence orchestrator.

Converge runs the ensure functions in a fixed dependency order and stops at
the first failing domain. Nothing is rolled back: every domain is
idempotent, so re-running after the cause is fixed resumes cleanly.

Teardown walks the domains in roughly reverse order and attempts every step
regardless of earlier failures. Failures are collected and raised together
as a TeardownError at the end. Key rings, crypto keys and Firestore
databases cannot be deleted and are skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from . import config as cfg
from .clients import CONVERGENCE_CLIENTS, ServiceClients
from .ensure import (
    SERVICE_ACCOUNTS,
    ensure_compute,
    ensure_datastore,
    ensure_encryption,
    ensure_event_wiring,
    ensure_identity,
    ensure_logging,
    ensure_messaging,
    ensure_network,
    ensure_registry,
    ensure_scheduling,
    service_account_email,
)
from .errors import (
    ConvergenceError,
    DomainFailure,
    OperationCancelledError,
    TeardownError,
    ValidationError,
)
from .models import BackendResources, ResourceConfig

logger = logging.getLogger(__name__)

EnsureFunc = Callable[..., Awaitable[None]]

DOMAIN_IDENTITY = "identity"
DOMAIN_NETWORK = "network"
DOMAIN_DATASTORE = "datastore"
DOMAIN_ENCRYPTION = "encryption"
DOMAIN_MESSAGING = "messaging"
DOMAIN_REGISTRY = "registry"
DOMAIN_COMPUTE = "compute"
DOMAIN_EVENT_WIRING = "event wiring"
DOMAIN_SCHEDULING = "scheduling"
DOMAIN_LOGGING = "logging"

# Later domains read identifiers recorded by earlier ones
CONVERGENCE_ORDER: tuple[tuple[str, EnsureFunc], ...] = (
    (DOMAIN_IDENTITY, ensure_identity),
    (DOMAIN_NETWORK, ensure_network),
    (DOMAIN_DATASTORE, ensure_datastore),
    (DOMAIN_ENCRYPTION, ensure_encryption),
    (DOMAIN_MESSAGING, ensure_messaging),
    (DOMAIN_REGISTRY, ensure_registry),
    (DOMAIN_COMPUTE, ensure_compute),
    (DOMAIN_EVENT_WIRING, ensure_event_wiring),
    (DOMAIN_SCHEDULING, ensure_scheduling),
    (DOMAIN_LOGGING, ensure_logging),
)


def validate_images(config: ResourceConfig) -> None:
    if not config.orchestrator_image or not config.event_processor_image:
        raise ValidationError("OrchestratorImage and EventProcessorImage parameters are required")


class Orchestrator:
    """Stands up, tears down and reads back the backend inside one project."""

    def __init__(self, clients: ServiceClients) -> None:
        self._clients = clients

    async def converge(
        self, config: ResourceConfig, *, cancel_event: asyncio.Event | None = None
    ) -> BackendResources:
        """Ensure every domain exists, in order.

        Raises:
            ConfigurationError: A required domain client is missing.
            ValidationError: A compute service image is not configured.
            ConvergenceError: A domain failed; ``.domain`` names it.
            OperationCancelledError: ``cancel_event`` fired.
        """
        self._clients.require(*CONVERGENCE_CLIENTS)
        validate_images(config)

        resources = BackendResources(project_id=config.project_id, region=config.region)
        for domain, ensure in CONVERGENCE_ORDER:
            logger.info("Converging domain", extra={"domain": domain, "project_id": config.project_id})
            try:
                await ensure(self._clients, config, resources, cancel_event=cancel_event)
            except OperationCancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Domain convergence failed",
                    extra={"domain": domain, "project_id": config.project_id, "error": str(e)},
                )
                raise ConvergenceError(domain, e) from e

        logger.info("Backend converged", extra={"project_id": config.project_id})
        return resources

    def _teardown_steps(
        self, config: ResourceConfig, cancel_event: asyncio.Event | None
    ) -> list[tuple[str, str, Callable[[], Awaitable[None]]]]:
        c = self._clients
        project, region = config.project_id, config.region

        steps: list[tuple[str, str, Callable[[], Awaitable[None]]]] = [
            (
                DOMAIN_LOGGING,
                cfg.LOG_SINK_RUNNER,
                lambda: c.logging.delete_sink(project, cfg.LOG_SINK_RUNNER, cancel_event=cancel_event),
            ),
            (
                DOMAIN_SCHEDULING,
                cfg.SCHEDULER_HEALTH_RECONCILE,
                lambda: c.scheduler.delete_job(
                    project, region, cfg.SCHEDULER_HEALTH_RECONCILE, cancel_event=cancel_event
                ),
            ),
            (
                DOMAIN_EVENT_WIRING,
                config.processor_subscription,
                lambda: c.pubsub.delete_subscription(
                    project, config.processor_subscription, cancel_event=cancel_event
                ),
            ),
        ]
        for service in (cfg.SERVICE_ORCHESTRATOR, cfg.SERVICE_EVENT_PROCESSOR):
            steps.append(
                (
                    DOMAIN_COMPUTE,
                    service,
                    lambda service=service: c.cloud_run.delete_service(
                        project, region, service, cancel_event=cancel_event
                    ),
                )
            )
        for topic in config.topics:
            steps.append(
                (
                    DOMAIN_MESSAGING,
                    topic,
                    lambda topic=topic: c.pubsub.delete_topic(project, topic, cancel_event=cancel_event),
                )
            )
        steps += [
            (
                DOMAIN_REGISTRY,
                cfg.ARTIFACT_REGISTRY_REPO,
                lambda: c.artifact_registry.delete_repository(
                    project, region, cfg.ARTIFACT_REGISTRY_REPO, cancel_event=cancel_event
                ),
            ),
            (
                DOMAIN_NETWORK,
                config.vpc_connector_name,
                lambda: c.vpc_access.delete_connector(
                    project, region, config.vpc_connector_name, cancel_event=cancel_event
                ),
            ),
            (
                DOMAIN_NETWORK,
                cfg.FIREWALL_RULE_EGRESS,
                lambda: c.compute.delete_firewall_rule(
                    project, cfg.FIREWALL_RULE_EGRESS, cancel_event=cancel_event
                ),
            ),
            (
                DOMAIN_NETWORK,
                config.subnet_name,
                lambda: c.compute.delete_subnet(
                    project, region, config.subnet_name, cancel_event=cancel_event
                ),
            ),
            (
                DOMAIN_NETWORK,
                config.vpc_name,
                lambda: c.compute.delete_vpc(project, config.vpc_name, cancel_event=cancel_event),
            ),
        ]
        for account_id, _, _, _ in SERVICE_ACCOUNTS:
            email = service_account_email(account_id, project)
            steps.append(
                (
                    DOMAIN_IDENTITY,
                    email,
                    lambda email=email: c.identity.delete_service_account(
                        project, email, cancel_event=cancel_event
                    ),
                )
            )
        return steps

    async def teardown(
        self, config: ResourceConfig, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        """Best-effort delete of everything converge creates.

        Raises:
            TeardownError: One or more steps failed; all steps were attempted.
            OperationCancelledError: ``cancel_event`` fired. Remaining steps
                are not attempted.
        """
        self._clients.require(*CONVERGENCE_CLIENTS)

        failures: list[DomainFailure] = []
        for domain, resource, delete in self._teardown_steps(config, cancel_event):
            try:
                await delete()
                logger.info("Deleted resource", extra={"domain": domain, "resource": resource})
            except OperationCancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Failed to delete resource",
                    extra={"domain": domain, "resource": resource, "error": str(e)},
                )
                failures.append(DomainFailure(domain, e))

        if failures:
            raise TeardownError(failures)

    async def describe(
        self, config: ResourceConfig, *, cancel_event: asyncio.Event | None = None
    ) -> BackendResources:
        """Read back identifiers of existing resources without creating anything.

        Absent resources leave their fields empty.
        """
        self._clients.require(*CONVERGENCE_CLIENTS)
        c = self._clients
        project, region = config.project_id, config.region
        resources = BackendResources(project_id=project, region=region)

        for account_id, _, _, attr in SERVICE_ACCOUNTS:
            email = service_account_email(account_id, project)
            if await c.identity.service_account_exists(project, email, cancel_event=cancel_event):
                setattr(resources, attr, email)

        if await c.compute.vpc_exists(project, config.vpc_name, cancel_event=cancel_event):
            resources.vpc_name = config.vpc_name
        if await c.compute.subnet_exists(project, region, config.subnet_name, cancel_event=cancel_event):
            resources.subnet_name = config.subnet_name
        if await c.vpc_access.connector_exists(
            project, region, config.vpc_connector_name, cancel_event=cancel_event
        ):
            resources.vpc_connector_name = config.vpc_connector_name

        if await c.firestore.database_exists(project, cancel_event=cancel_event):
            resources.firestore_database = config.firestore_location_id

        if await c.kms.key_ring_exists(project, region, config.key_ring_name, cancel_event=cancel_event):
            resources.key_ring_name = config.key_ring_name
            key_args = (project, region, config.key_ring_name, config.crypto_key_name)
            if await c.kms.crypto_key_exists(*key_args, cancel_event=cancel_event):
                resources.crypto_key_name = config.crypto_key_name
                resources.crypto_key_id = await c.kms.get_crypto_key_id(
                    *key_args, cancel_event=cancel_event
                )

        if await c.pubsub.topic_exists(project, config.task_events_topic, cancel_event=cancel_event):
            resources.task_events_topic_name = config.task_events_topic
        if await c.pubsub.topic_exists(project, config.log_events_topic, cancel_event=cancel_event):
            resources.log_events_topic_name = config.log_events_topic

        if await c.artifact_registry.repository_exists(
            project, region, cfg.ARTIFACT_REGISTRY_REPO, cancel_event=cancel_event
        ):
            resources.artifact_registry_repo = cfg.ARTIFACT_REGISTRY_REPO

        resources.orchestrator_url = (
            await c.cloud_run.get_service_url(
                project, region, cfg.SERVICE_ORCHESTRATOR, cancel_event=cancel_event
            )
            or ""
        )
        resources.event_processor_url = (
            await c.cloud_run.get_service_url(
                project, region, cfg.SERVICE_EVENT_PROCESSOR, cancel_event=cancel_event
            )
            or ""
        )
        resources.websocket_endpoint = resources.event_processor_url

        if await c.pubsub.subscription_exists(
            project, config.processor_subscription, cancel_event=cancel_event
        ):
            resources.subscription_name = config.processor_subscription
        if await c.scheduler.job_exists(
            project, region, cfg.SCHEDULER_HEALTH_RECONCILE, cancel_event=cancel_event
        ):
            resources.health_reconcile_job_name = cfg.SCHEDULER_HEALTH_RECONCILE

        return resources
