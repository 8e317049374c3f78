"""Request and result types shared by every provider.

All request/result objects are created fresh per call. Nothing here is
cached between calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum

from . import config as cfg
from .errors import DomainFailure, ValidationError


class OperationType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class DeployStatus(str, Enum):
    """Closed vocabulary of result statuses."""

    IN_PROGRESS = "IN_PROGRESS"
    NOT_FOUND = "NOT_FOUND"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    NO_CHANGES = "NO_CHANGES"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_REQUESTED = "DELETE_REQUESTED"


@dataclass(frozen=True)
class DeployOptions:
    """Options for one Deploy call.

    ``name`` is the stack name (AWS) or project id (GCP).
    """

    name: str
    template: str = ""
    version: str = ""
    parameters: tuple[str, ...] = ()
    wait: bool = True
    region: str = ""
    org_id: str = ""

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("name is required")


@dataclass(frozen=True)
class DeployResult:
    name: str
    operation_type: OperationType
    status: DeployStatus
    outputs: dict[str, str] = field(default_factory=dict)
    no_changes: bool = False


@dataclass(frozen=True)
class DestroyOptions:
    name: str
    wait: bool = True
    region: str = ""

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("name is required")


@dataclass(frozen=True)
class DestroyResult:
    name: str
    status: DeployStatus
    not_found: bool = False
    # Backend teardown failures that did not stop the project deletion
    backend_failures: tuple[DomainFailure, ...] = ()


@dataclass(frozen=True)
class TemplateSource:
    """A template reference (``url``) or literal content (``body``), never both."""

    url: str = ""
    body: str = ""

    def __post_init__(self) -> None:
        if bool(self.url) == bool(self.body):
            raise ValidationError("template source must have exactly one of url or body")


@dataclass(frozen=True)
class ResourceConfig:
    """Desired backend layout for one project."""

    project_id: str
    region: str
    vpc_name: str = cfg.VPC_NAME
    subnet_name: str = cfg.SUBNET_NAME
    vpc_connector_name: str = cfg.VPC_CONNECTOR_NAME
    vpc_cidr_range: str = cfg.VPC_CIDR_RANGE
    use_direct_vpc_egress: bool = True
    firestore_location_id: str = cfg.FIRESTORE_LOCATION_ID
    orchestrator_image: str = ""
    event_processor_image: str = ""
    max_instances: int = cfg.DEFAULT_MAX_INSTANCES
    min_instances: int = cfg.DEFAULT_MIN_INSTANCES
    timeout_seconds: int = cfg.DEFAULT_TIMEOUT_SECONDS
    task_events_topic: str = cfg.TOPIC_TASK_EVENTS
    log_events_topic: str = cfg.TOPIC_LOG_EVENTS
    websocket_events_topic: str | None = cfg.TOPIC_WEBSOCKET_EVENTS
    processor_subscription: str = cfg.SUBSCRIPTION_PROCESSOR
    key_ring_name: str = cfg.KEY_RING_NAME
    crypto_key_name: str = cfg.CRYPTO_KEY_NAME
    health_schedule: str = cfg.HEALTH_RECONCILE_SCHEDULE
    log_retention_days: int = cfg.DEFAULT_LOG_RETENTION_DAYS
    labels: dict[str, str] = field(default_factory=lambda: dict(cfg.DEFAULT_LABELS))

    @property
    def topics(self) -> tuple[str, ...]:
        """Topic names in creation order."""
        names = [self.task_events_topic, self.log_events_topic]
        if self.websocket_events_topic:
            names.append(self.websocket_events_topic)
        return tuple(names)


@dataclass
class BackendResources:
    """Identifiers read back from everything the orchestrator created.

    Mutable while a converge call assembles it; owned by that call only.
    ``project_number`` is never filled by converge or describe: the number
    belongs to the project metadata, which the deployer merges into the
    output map as ``ProjectNumber``.
    """

    project_id: str = ""
    project_number: str = ""
    region: str = ""
    vpc_name: str = ""
    subnet_name: str = ""
    vpc_connector_name: str = ""
    firestore_database: str = ""
    orchestrator_url: str = ""
    event_processor_url: str = ""
    task_events_topic_name: str = ""
    log_events_topic_name: str = ""
    subscription_name: str = ""
    key_ring_name: str = ""
    crypto_key_name: str = ""
    crypto_key_id: str = ""
    health_reconcile_job_name: str = ""
    orchestrator_service_account: str = ""
    event_processor_service_account: str = ""
    runner_service_account: str = ""
    artifact_registry_repo: str = ""
    websocket_endpoint: str = ""

    def to_outputs(self) -> dict[str, str]:
        """Flatten populated fields into the output-map key vocabulary."""
        return {
            OUTPUT_KEYS[f.name]: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name)
        }


OUTPUT_KEYS: dict[str, str] = {
    "project_id": "ProjectID",
    "project_number": "ProjectNumber",
    "region": "Region",
    "vpc_name": "VPCName",
    "subnet_name": "SubnetName",
    "vpc_connector_name": "VPCConnectorName",
    "firestore_database": "FirestoreDatabase",
    "orchestrator_url": "OrchestratorURL",
    "event_processor_url": "EventProcessorURL",
    "task_events_topic_name": "TaskEventsTopic",
    "log_events_topic_name": "LogEventsTopic",
    "subscription_name": "ProcessorSubscription",
    "key_ring_name": "KeyRingName",
    "crypto_key_name": "CryptoKeyName",
    "crypto_key_id": "CryptoKeyID",
    "health_reconcile_job_name": "HealthReconcileJobName",
    "orchestrator_service_account": "OrchestratorServiceAccount",
    "event_processor_service_account": "EventProcessorServiceAccount",
    "runner_service_account": "RunnerServiceAccount",
    "artifact_registry_repo": "ArtifactRegistryRepo",
    "websocket_endpoint": "WebSocketEndpoint",
}
