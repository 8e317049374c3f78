"""Idempotent create-if-absent operations, one per resource domain.

Every function follows the same pattern: check existence, create only when
absent, then record the identifiers on the BackendResources being
assembled. An AlreadyExistsError from a create means another actor won the
race and is treated as success. Any other error propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from . import config as cfg
from .clients import ServiceClients, ServiceSpec
from .errors import AlreadyExistsError
from .models import BackendResources, ResourceConfig

logger = logging.getLogger(__name__)

# (account id, display name, roles, BackendResources attribute)
SERVICE_ACCOUNTS: tuple[tuple[str, str, tuple[str, ...], str], ...] = (
    (
        cfg.SERVICE_ACCOUNT_ORCHESTRATOR,
        "Runvoy Orchestrator",
        cfg.ORCHESTRATOR_ROLES,
        "orchestrator_service_account",
    ),
    (
        cfg.SERVICE_ACCOUNT_EVENT_PROCESSOR,
        "Runvoy Event Processor",
        cfg.EVENT_PROCESSOR_ROLES,
        "event_processor_service_account",
    ),
    (
        cfg.SERVICE_ACCOUNT_RUNNER,
        "Runvoy Task Runner",
        cfg.RUNNER_ROLES,
        "runner_service_account",
    ),
)

FIREWALL_DIRECTION_EGRESS = "EGRESS"
FIREWALL_ALLOW_ALL: tuple[str, ...] = ("all",)

RUNNER_LOG_FILTER = (
    'resource.type="cloud_run_revision" AND '
    f'resource.labels.service_name="{cfg.SERVICE_RUNNER}"'
)


def service_account_email(account_id: str, project_id: str) -> str:
    return f"{account_id}@{project_id}.iam.gserviceaccount.com"


def log_sink_destination(project_id: str, topic: str) -> str:
    return f"pubsub.googleapis.com/projects/{project_id}/topics/{topic}"


def health_reconcile_url(event_processor_url: str) -> str:
    return event_processor_url.rstrip("/") + cfg.HEALTH_RECONCILE_PATH


async def create_if_absent(
    kind: str,
    name: str,
    exists: Callable[[], Awaitable[bool]],
    create: Callable[[], Awaitable[object]],
) -> bool:
    """Run ``create`` unless ``exists`` reports the resource present.

    Returns:
        True if this call created the resource.
    """
    if await exists():
        logger.debug(f"{kind} already exists", extra={"resource": name})
        return False
    try:
        await create()
    except AlreadyExistsError:
        logger.info(f"{kind} was created concurrently", extra={"resource": name})
        return False
    logger.info(f"Created {kind}", extra={"resource": name})
    return True


async def ensure_identity(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    """Ensure the three service accounts and their project role bindings."""
    identity = clients.identity
    project = config.project_id

    for account_id, display_name, roles, attr in SERVICE_ACCOUNTS:
        email = service_account_email(account_id, project)
        if not await identity.service_account_exists(project, email, cancel_event=cancel_event):
            try:
                email = await identity.create_service_account(
                    project, account_id, display_name, cancel_event=cancel_event
                )
                logger.info("Created service account", extra={"resource": email})
            except AlreadyExistsError:
                logger.info("Service account was created concurrently", extra={"resource": email})

        member = f"serviceAccount:{email}"
        for role in roles:
            await identity.add_iam_binding(project, member, role, cancel_event=cancel_event)
        setattr(resources, attr, email)


async def ensure_network(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    """VPC, then subnet, then egress firewall rule, then serverless connector."""
    compute = clients.compute
    vpc_access = clients.vpc_access
    project, region = config.project_id, config.region

    await create_if_absent(
        "VPC network",
        config.vpc_name,
        lambda: compute.vpc_exists(project, config.vpc_name, cancel_event=cancel_event),
        lambda: compute.create_vpc(project, config.vpc_name, cancel_event=cancel_event),
    )
    await create_if_absent(
        "subnet",
        config.subnet_name,
        lambda: compute.subnet_exists(
            project, region, config.subnet_name, cancel_event=cancel_event
        ),
        lambda: compute.create_subnet(
            project,
            region,
            config.subnet_name,
            config.vpc_name,
            config.vpc_cidr_range,
            cancel_event=cancel_event,
        ),
    )
    await create_if_absent(
        "firewall rule",
        cfg.FIREWALL_RULE_EGRESS,
        lambda: compute.firewall_rule_exists(
            project, cfg.FIREWALL_RULE_EGRESS, cancel_event=cancel_event
        ),
        lambda: compute.create_firewall_rule(
            project,
            cfg.FIREWALL_RULE_EGRESS,
            config.vpc_name,
            FIREWALL_DIRECTION_EGRESS,
            list(FIREWALL_ALLOW_ALL),
            cancel_event=cancel_event,
        ),
    )
    await create_if_absent(
        "VPC connector",
        config.vpc_connector_name,
        lambda: vpc_access.connector_exists(
            project, region, config.vpc_connector_name, cancel_event=cancel_event
        ),
        lambda: vpc_access.create_connector(
            project,
            region,
            config.vpc_connector_name,
            config.vpc_name,
            cfg.VPC_CONNECTOR_IP_RANGE,
            cfg.VPC_CONNECTOR_MIN_INSTANCES,
            cfg.VPC_CONNECTOR_MAX_INSTANCES,
            cancel_event=cancel_event,
        ),
    )

    resources.vpc_name = config.vpc_name
    resources.subnet_name = config.subnet_name
    resources.vpc_connector_name = config.vpc_connector_name


async def ensure_datastore(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    firestore = clients.firestore
    project = config.project_id

    await create_if_absent(
        "Firestore database",
        cfg.FIRESTORE_DATABASE_ID,
        lambda: firestore.database_exists(project, cancel_event=cancel_event),
        lambda: firestore.create_database(
            project, config.firestore_location_id, cancel_event=cancel_event
        ),
    )
    for collection, field_paths in cfg.COLLECTION_INDEXES:
        for field_path in field_paths:
            await firestore.ensure_field_index(
                project, collection, field_path, cancel_event=cancel_event
            )

    resources.firestore_database = config.firestore_location_id


async def ensure_encryption(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    """Key ring, then crypto key. An existing key is read back, never recreated."""
    kms = clients.kms
    project, region = config.project_id, config.region

    await create_if_absent(
        "KMS key ring",
        config.key_ring_name,
        lambda: kms.key_ring_exists(
            project, region, config.key_ring_name, cancel_event=cancel_event
        ),
        lambda: kms.create_key_ring(
            project, region, config.key_ring_name, cancel_event=cancel_event
        ),
    )

    key_args = (project, region, config.key_ring_name, config.crypto_key_name)
    if await kms.crypto_key_exists(*key_args, cancel_event=cancel_event):
        key_id = await kms.get_crypto_key_id(*key_args, cancel_event=cancel_event)
    else:
        try:
            key_id = await kms.create_crypto_key(*key_args, cancel_event=cancel_event)
            logger.info("Created KMS crypto key", extra={"resource": key_id})
        except AlreadyExistsError:
            key_id = await kms.get_crypto_key_id(*key_args, cancel_event=cancel_event)

    resources.key_ring_name = config.key_ring_name
    resources.crypto_key_name = config.crypto_key_name
    resources.crypto_key_id = key_id


async def ensure_messaging(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    pubsub = clients.pubsub
    project = config.project_id

    for topic in config.topics:
        await create_if_absent(
            "Pub/Sub topic",
            topic,
            lambda topic=topic: pubsub.topic_exists(project, topic, cancel_event=cancel_event),
            lambda topic=topic: pubsub.create_topic(
                project, topic, labels=config.labels, cancel_event=cancel_event
            ),
        )

    resources.task_events_topic_name = config.task_events_topic
    resources.log_events_topic_name = config.log_events_topic


async def ensure_registry(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    registry = clients.artifact_registry
    project, region = config.project_id, config.region

    await create_if_absent(
        "Artifact Registry repository",
        cfg.ARTIFACT_REGISTRY_REPO,
        lambda: registry.repository_exists(
            project, region, cfg.ARTIFACT_REGISTRY_REPO, cancel_event=cancel_event
        ),
        lambda: registry.create_repository(
            project,
            region,
            cfg.ARTIFACT_REGISTRY_REPO,
            labels=config.labels,
            cancel_event=cancel_event,
        ),
    )
    resources.artifact_registry_repo = cfg.ARTIFACT_REGISTRY_REPO


def build_service_env(
    config: ResourceConfig, resources: BackendResources, *, orchestrator: bool
) -> dict[str, str]:
    """Runtime environment for a compute service.

    The event processor does not get the pending API keys collection, the
    log events topic, the connector or the registry.
    """
    env = {
        "RUNVOY_GCP_PROJECT_ID": config.project_id,
        "RUNVOY_GCP_REGION": config.region,
        "RUNVOY_GCP_API_KEYS_COLLECTION": cfg.COLLECTION_API_KEYS,
        "RUNVOY_GCP_EXECUTIONS_COLLECTION": cfg.COLLECTION_EXECUTIONS,
        "RUNVOY_GCP_SECRETS_METADATA_COLLECTION": cfg.COLLECTION_SECRETS_METADATA,
        "RUNVOY_GCP_IMAGE_CONFIGS_COLLECTION": cfg.COLLECTION_IMAGE_CONFIGS,
        "RUNVOY_GCP_WEBSOCKET_TOKENS_COLLECTION": cfg.COLLECTION_WEBSOCKET_TOKENS,
        "RUNVOY_GCP_WEBSOCKET_CONNECTIONS_COLLECTION": cfg.COLLECTION_WEBSOCKET_CONNECTIONS,
        "RUNVOY_GCP_EXECUTION_LOGS_COLLECTION": cfg.COLLECTION_EXECUTION_LOGS,
        "RUNVOY_GCP_TASK_EVENTS_TOPIC": config.task_events_topic,
        "RUNVOY_GCP_KMS_KEY_ID": resources.crypto_key_id,
        "RUNVOY_GCP_RUNNER_SERVICE_ACCOUNT": resources.runner_service_account,
    }
    if orchestrator:
        env["RUNVOY_GCP_PENDING_API_KEYS_COLLECTION"] = cfg.COLLECTION_PENDING_API_KEYS
        env["RUNVOY_GCP_LOG_EVENTS_TOPIC"] = config.log_events_topic
        env["RUNVOY_GCP_VPC_CONNECTOR"] = config.vpc_connector_name
        env["RUNVOY_GCP_ARTIFACT_REGISTRY"] = cfg.ARTIFACT_REGISTRY_REPO
    return env


def build_service_spec(
    name: str,
    image: str,
    service_account: str,
    config: ResourceConfig,
    env: dict[str, str],
) -> ServiceSpec:
    if config.use_direct_vpc_egress:
        vpc = {"vpc_network": config.vpc_name, "vpc_subnetwork": config.subnet_name}
    else:
        vpc = {"vpc_connector": config.vpc_connector_name}
    return ServiceSpec(
        name=name,
        image=image,
        env=env,
        service_account=service_account,
        min_instances=config.min_instances,
        max_instances=config.max_instances,
        timeout_seconds=config.timeout_seconds,
        labels=dict(config.labels),
        **vpc,
    )


async def _ensure_service(
    clients: ServiceClients,
    config: ResourceConfig,
    spec: ServiceSpec,
    cancel_event: asyncio.Event | None,
) -> str:
    """Create the service if absent, otherwise update it in place. Returns the URL."""
    cloud_run = clients.cloud_run
    project, region = config.project_id, config.region

    url = await cloud_run.get_service_url(project, region, spec.name, cancel_event=cancel_event)
    if url is None:
        try:
            url = await cloud_run.create_service(project, region, spec, cancel_event=cancel_event)
            logger.info("Created Cloud Run service", extra={"resource": spec.name, "url": url})
            return url
        except AlreadyExistsError:
            url = await cloud_run.get_service_url(
                project, region, spec.name, cancel_event=cancel_event
            )

    await cloud_run.update_service(project, region, spec, cancel_event=cancel_event)
    logger.info("Updated Cloud Run service", extra={"resource": spec.name})
    return url or ""


async def ensure_compute(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    """Orchestrator and event processor services, then the public invoker policy."""
    orchestrator_spec = build_service_spec(
        cfg.SERVICE_ORCHESTRATOR,
        config.orchestrator_image,
        resources.orchestrator_service_account,
        config,
        build_service_env(config, resources, orchestrator=True),
    )
    resources.orchestrator_url = await _ensure_service(
        clients, config, orchestrator_spec, cancel_event
    )
    await clients.cloud_run.set_public_access(
        config.project_id,
        config.region,
        cfg.SERVICE_ORCHESTRATOR,
        True,
        cancel_event=cancel_event,
    )

    processor_spec = build_service_spec(
        cfg.SERVICE_EVENT_PROCESSOR,
        config.event_processor_image,
        resources.event_processor_service_account,
        config,
        build_service_env(config, resources, orchestrator=False),
    )
    resources.event_processor_url = await _ensure_service(
        clients, config, processor_spec, cancel_event
    )
    resources.websocket_endpoint = resources.event_processor_url


async def ensure_event_wiring(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    """Push subscription from the task events topic to the event processor."""
    pubsub = clients.pubsub
    project = config.project_id

    await create_if_absent(
        "Pub/Sub subscription",
        config.processor_subscription,
        lambda: pubsub.subscription_exists(
            project, config.processor_subscription, cancel_event=cancel_event
        ),
        lambda: pubsub.create_subscription(
            project,
            config.processor_subscription,
            config.task_events_topic,
            resources.event_processor_url,
            service_account=resources.event_processor_service_account,
            cancel_event=cancel_event,
        ),
    )
    resources.subscription_name = config.processor_subscription


async def ensure_scheduling(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    scheduler = clients.scheduler
    project, region = config.project_id, config.region

    await create_if_absent(
        "scheduler job",
        cfg.SCHEDULER_HEALTH_RECONCILE,
        lambda: scheduler.job_exists(
            project, region, cfg.SCHEDULER_HEALTH_RECONCILE, cancel_event=cancel_event
        ),
        lambda: scheduler.create_job(
            project,
            region,
            cfg.SCHEDULER_HEALTH_RECONCILE,
            config.health_schedule,
            health_reconcile_url(resources.event_processor_url),
            "POST",
            service_account=resources.event_processor_service_account,
            cancel_event=cancel_event,
        ),
    )
    resources.health_reconcile_job_name = cfg.SCHEDULER_HEALTH_RECONCILE


async def ensure_logging(
    clients: ServiceClients,
    config: ResourceConfig,
    resources: BackendResources,
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    """Route runner logs to the log events topic."""
    logging_client = clients.logging
    project = config.project_id

    await create_if_absent(
        "log sink",
        cfg.LOG_SINK_RUNNER,
        lambda: logging_client.sink_exists(project, cfg.LOG_SINK_RUNNER, cancel_event=cancel_event),
        lambda: logging_client.create_sink(
            project,
            cfg.LOG_SINK_RUNNER,
            RUNNER_LOG_FILTER,
            log_sink_destination(project, config.log_events_topic),
            cancel_event=cancel_event,
        ),
    )
