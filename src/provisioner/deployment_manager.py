"""Declarative backend path: one Deployment Manager deployment per project.

The deployment config is a YAML document with a single import (the
template) and a single resource whose properties translate ResourceConfig.
Outputs are read back from the deployment's latest manifest.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import yaml
from pydantic import BaseModel, Field

from . import config as cfg
from .clients import DeploymentManagerClient
from .errors import NotFoundError, OperationFailedError
from .models import ResourceConfig
from .poller import PollResult, PollSettings, poll_until_done

logger = logging.getLogger(__name__)

OPERATION_DONE = "DONE"


# =============================================================================
# Payload models
# =============================================================================


class DeploymentProperties(BaseModel):
    """Properties handed to the backend template."""

    model_config = {"populate_by_name": True}

    project_id: str = Field(alias="projectId")
    region: str
    vpc_name: str = Field(alias="vpcName")
    subnet_name: str = Field(alias="subnetName")
    vpc_connector_name: str = Field(alias="vpcConnectorName")
    use_direct_vpc_egress: bool = Field(alias="useDirectVPCEgress")
    vpc_cidr_range: str = Field(alias="vpcCidrRange")
    vpc_connector_ip_range: str = Field(cfg.VPC_CONNECTOR_IP_RANGE, alias="vpcConnectorIpRange")
    vpc_connector_min_instances: int = Field(
        cfg.VPC_CONNECTOR_MIN_INSTANCES, alias="vpcConnectorMinInstances"
    )
    vpc_connector_max_instances: int = Field(
        cfg.VPC_CONNECTOR_MAX_INSTANCES, alias="vpcConnectorMaxInstances"
    )
    firewall_rule_egress: str = Field(cfg.FIREWALL_RULE_EGRESS, alias="firewallRuleEgress")
    firestore_location_id: str = Field(alias="firestoreLocationId")
    orchestrator_image: str = Field(alias="orchestratorImage")
    event_processor_image: str = Field(alias="eventProcessorImage")
    min_instances: int = Field(alias="minInstances")
    max_instances: int = Field(alias="maxInstances")
    timeout_seconds: int = Field(alias="timeoutSeconds")
    task_events_topic: str = Field(alias="taskEventsTopic")
    log_events_topic: str = Field(alias="logEventsTopic")
    websocket_events_topic: str = Field(cfg.TOPIC_WEBSOCKET_EVENTS, alias="webSocketEventsTopic")
    processor_subscription: str = Field(alias="processorSubscription")
    key_ring_name: str = Field(alias="keyRingName")
    crypto_key_name: str = Field(alias="cryptoKeyName")
    scheduler_job_name: str = Field(cfg.SCHEDULER_HEALTH_RECONCILE, alias="schedulerJobName")
    health_schedule: str = Field(alias="healthSchedule")
    log_retention_days: int = Field(alias="logRetentionDays")
    artifact_registry_repo: str = Field(cfg.ARTIFACT_REGISTRY_REPO, alias="artifactRegistryRepo")
    service_account_orchestrator: str = Field(
        cfg.SERVICE_ACCOUNT_ORCHESTRATOR, alias="serviceAccountOrchestrator"
    )
    service_account_event_processor: str = Field(
        cfg.SERVICE_ACCOUNT_EVENT_PROCESSOR, alias="serviceAccountEventProcessor"
    )
    service_account_runner: str = Field(cfg.SERVICE_ACCOUNT_RUNNER, alias="serviceAccountRunner")
    service_orchestrator: str = Field(cfg.SERVICE_ORCHESTRATOR, alias="serviceOrchestrator")
    service_event_processor: str = Field(cfg.SERVICE_EVENT_PROCESSOR, alias="serviceEventProcessor")
    service_runner: str = Field(cfg.SERVICE_RUNNER, alias="serviceRunner")
    log_sink_runner: str = Field(cfg.LOG_SINK_RUNNER, alias="logSinkRunner")
    collection_api_keys: str = Field(cfg.COLLECTION_API_KEYS, alias="collectionApiKeys")
    collection_executions: str = Field(cfg.COLLECTION_EXECUTIONS, alias="collectionExecutions")
    collection_pending_api_keys: str = Field(
        cfg.COLLECTION_PENDING_API_KEYS, alias="collectionPendingApiKeys"
    )
    collection_secrets_metadata: str = Field(
        cfg.COLLECTION_SECRETS_METADATA, alias="collectionSecretsMetadata"
    )
    collection_image_configs: str = Field(cfg.COLLECTION_IMAGE_CONFIGS, alias="collectionImageConfigs")
    collection_execution_logs: str = Field(
        cfg.COLLECTION_EXECUTION_LOGS, alias="collectionExecutionLogs"
    )
    collection_websocket_tokens: str = Field(
        cfg.COLLECTION_WEBSOCKET_TOKENS, alias="collectionWebsocketTokens"
    )
    collection_websocket_connections: str = Field(
        cfg.COLLECTION_WEBSOCKET_CONNECTIONS, alias="collectionWebsocketConnections"
    )
    labels: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_resource_config(cls, config: ResourceConfig) -> DeploymentProperties:
        return cls(
            project_id=config.project_id,
            region=config.region,
            vpc_name=config.vpc_name,
            subnet_name=config.subnet_name,
            vpc_connector_name=config.vpc_connector_name,
            use_direct_vpc_egress=config.use_direct_vpc_egress,
            vpc_cidr_range=config.vpc_cidr_range,
            firestore_location_id=config.firestore_location_id,
            orchestrator_image=config.orchestrator_image,
            event_processor_image=config.event_processor_image,
            min_instances=config.min_instances,
            max_instances=config.max_instances,
            timeout_seconds=config.timeout_seconds,
            task_events_topic=config.task_events_topic,
            log_events_topic=config.log_events_topic,
            websocket_events_topic=config.websocket_events_topic or cfg.TOPIC_WEBSOCKET_EVENTS,
            processor_subscription=config.processor_subscription,
            key_ring_name=config.key_ring_name,
            crypto_key_name=config.crypto_key_name,
            health_schedule=config.health_schedule,
            log_retention_days=config.log_retention_days,
            labels=dict(config.labels),
        )


class DeploymentImport(BaseModel):
    path: str


class DeploymentResource(BaseModel):
    name: str
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class DeploymentConfig(BaseModel):
    imports: list[DeploymentImport]
    resources: list[DeploymentResource]


class ManifestOutput(BaseModel):
    model_config = {"extra": "ignore"}

    name: str = ""
    value: Any = None


class ManifestLayout(BaseModel):
    model_config = {"extra": "ignore"}

    outputs: list[ManifestOutput] = Field(default_factory=list)


# =============================================================================
# Builders and parsers
# =============================================================================


def build_deployment_config(config: ResourceConfig, template_name: str) -> str:
    """Serialize the deployment config document to YAML."""
    document = DeploymentConfig(
        imports=[DeploymentImport(path=template_name)],
        resources=[
            DeploymentResource(
                name=cfg.DEPLOYMENT_NAME,
                type=template_name,
                properties=DeploymentProperties.from_resource_config(config).model_dump(by_alias=True),
            )
        ],
    )
    return yaml.safe_dump(document.model_dump(), sort_keys=False)


def build_deployment_body(
    config: ResourceConfig,
    template_name: str,
    template_content: str,
    fingerprint: str = "",
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "name": cfg.DEPLOYMENT_NAME,
        "target": {
            "config": {"content": build_deployment_config(config, template_name)},
            "imports": [{"name": template_name, "content": template_content}],
        },
        "labels": [{"key": k, "value": v} for k, v in config.labels.items()],
    }
    if fingerprint:
        body["fingerprint"] = fingerprint
    return body


def deployment_operation_errors(operation: dict[str, Any]) -> list[str]:
    """Messages from a finished operation; an error without text becomes ``code X``."""
    errors = (operation.get("error") or {}).get("errors") or []
    messages = []
    for error in errors:
        if not error:
            continue
        messages.append(error.get("message") or f"code {error.get('code')}")
    return messages


def classify_deployment_operation(operation: dict[str, Any]) -> PollResult:
    status = str(operation.get("status", ""))
    if status.upper() != OPERATION_DONE:
        return PollResult.in_progress(status)
    messages = deployment_operation_errors(operation)
    if messages:
        return PollResult.failed(status, tuple(messages))
    return PollResult.succeeded(status)


def manifest_name_from_link(link: str) -> str:
    """Last path segment of a manifest self link."""
    name = link.rstrip("/").rsplit("/", 1)[-1] if link else ""
    if not name:
        raise OperationFailedError("read deployment manifest", [f"invalid manifest link: {link!r}"])
    return name


def stringify_output(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return yaml.safe_dump(value, default_flow_style=True).strip()
    return str(value)


def parse_manifest_outputs(manifest: dict[str, Any]) -> dict[str, str]:
    """Extract ``outputs`` from the manifest layout (else its expanded config)."""
    layout = manifest.get("layout") or manifest.get("expandedConfig") or ""
    if not layout:
        raise OperationFailedError("read deployment manifest", ["manifest layout is empty"])

    try:
        data = yaml.safe_load(layout) or {}
    except yaml.YAMLError as e:
        raise OperationFailedError("parse manifest layout", [str(e)]) from e

    parsed = ManifestLayout.model_validate(data)
    return {out.name: stringify_output(out.value) for out in parsed.outputs if out.name}


# =============================================================================
# Backend
# =============================================================================


class DeploymentManagerBackend:
    """Applies and reads back the ``runvoy-backend`` deployment."""

    def __init__(
        self,
        client: DeploymentManagerClient,
        *,
        poll_interval_seconds: float = cfg.RESOURCE_POLL_INTERVAL_SECONDS,
        timeout_seconds: float = cfg.DEFAULT_DEPLOYMENT_OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._poll_settings = PollSettings(poll_interval_seconds, timeout_seconds)

    async def apply(
        self,
        config: ResourceConfig,
        template_name: str,
        template_content: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, str]:
        """Create or update the deployment, wait for it, and return its outputs."""
        project_id = config.project_id
        try:
            existing = await self._client.get_deployment(
                project_id, cfg.DEPLOYMENT_NAME, cancel_event=cancel_event
            )
        except NotFoundError:
            existing = None

        if existing is None:
            logger.info("Creating deployment", extra={"project_id": project_id})
            body = build_deployment_body(config, template_name, template_content)
            operation = await self._client.create_deployment(project_id, body, cancel_event=cancel_event)
        else:
            logger.info("Updating deployment", extra={"project_id": project_id})
            body = build_deployment_body(
                config, template_name, template_content, existing.get("fingerprint", "")
            )
            operation = await self._client.update_deployment(
                project_id, cfg.DEPLOYMENT_NAME, body, cancel_event=cancel_event
            )

        if operation:
            await self._wait(project_id, operation, cancel_event)
        return await self.get_outputs(project_id, cancel_event=cancel_event)

    async def delete(self, project_id: str, *, cancel_event: asyncio.Event | None = None) -> None:
        """Delete the deployment; an absent deployment is not an error."""
        try:
            operation = await self._client.delete_deployment(
                project_id, cfg.DEPLOYMENT_NAME, cancel_event=cancel_event
            )
        except NotFoundError:
            return
        if operation:
            await self._wait(project_id, operation, cancel_event)

    async def get_outputs(
        self, project_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, str]:
        """Outputs of the latest manifest.

        Raises:
            NotFoundError: The deployment does not exist.
        """
        try:
            deployment = await self._client.get_deployment(
                project_id, cfg.DEPLOYMENT_NAME, cancel_event=cancel_event
            )
        except NotFoundError as e:
            raise NotFoundError(f"deployment {cfg.DEPLOYMENT_NAME} not found in {project_id}") from e

        link = deployment.get("manifest", "")
        if not link:
            raise OperationFailedError("read deployment manifest", ["deployment manifest is empty"])

        manifest = await self._client.get_manifest(
            project_id, cfg.DEPLOYMENT_NAME, manifest_name_from_link(link), cancel_event=cancel_event
        )
        return parse_manifest_outputs(manifest)

    async def _wait(
        self, project_id: str, operation: dict[str, Any], cancel_event: asyncio.Event | None
    ) -> None:
        name = operation["name"]

        async def fetch() -> dict[str, Any]:
            return await self._client.get_operation(project_id, name, cancel_event=cancel_event)

        await poll_until_done(
            fetch,
            classify_deployment_operation,
            settings=self._poll_settings,
            operation="deployment operation",
            cancel_event=cancel_event,
        )
