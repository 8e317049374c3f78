"""Configuration management with validation.

Invalid settings are rejected at load time so a misconfigured run fails
before the first cloud API call.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError


class Provider(str, Enum):
    """Supported infrastructure providers."""

    AWS = "aws"
    GCP = "gcp"


class BackendMode(str, Enum):
    """How the project path stands up backend resources."""

    CONVERGE = "converge"
    DEPLOYMENT_MANAGER = "deployment-manager"


# =============================================================================
# Polling and timeouts
# =============================================================================

DEFAULT_POLL_INTERVAL_SECONDS = 5
MAX_POLL_INTERVAL_SECONDS = 60

DEFAULT_STACK_TIMEOUT_MINUTES = 30
MAX_STACK_TIMEOUT_MINUTES = 180

DEFAULT_PROJECT_TIMEOUT_MINUTES = 5
MAX_PROJECT_TIMEOUT_MINUTES = 60

DEFAULT_DEPLOYMENT_OPERATION_TIMEOUT_SECONDS = 30 * 60

# Per-resource long-running operation bounds (seconds)
RESOURCE_POLL_INTERVAL_SECONDS = 5
CLOUD_RUN_OPERATION_TIMEOUT_SECONDS = 10 * 60
SERVICE_USAGE_OPERATION_TIMEOUT_SECONDS = 10 * 60
FIRESTORE_OPERATION_TIMEOUT_SECONDS = 5 * 60
VPC_OPERATION_TIMEOUT_SECONDS = 5 * 60
VPC_CONNECTOR_TIMEOUT_SECONDS = 5 * 60
PUBSUB_OPERATION_TIMEOUT_SECONDS = 2 * 60
KMS_OPERATION_TIMEOUT_SECONDS = 2 * 60
ARTIFACT_REGISTRY_TIMEOUT_SECONDS = 2 * 60
IAM_BINDING_TIMEOUT_SECONDS = 2 * 60
FIREWALL_OPERATION_TIMEOUT_SECONDS = 2 * 60
SCHEDULER_OPERATION_TIMEOUT_SECONDS = 60
SERVICE_ACCOUNT_TIMEOUT_SECONDS = 60
LOGGING_SINK_TIMEOUT_SECONDS = 60

# =============================================================================
# Templated-stack provider (AWS CloudFormation)
# =============================================================================

RELEASES_BUCKET_PREFIX = "runvoy-releases"
RELEASES_BUCKET_REGION = "us-east-1"
CLOUDFORMATION_TEMPLATE_FILE = "cloudformation-backend.yaml"
STACK_CAPABILITIES = ("CAPABILITY_NAMED_IAM",)
MANAGED_BY_TAG_KEY = "ManagedBy"
MANAGED_BY_TAG_VALUE = "runvoy-cli"

MAX_TEMPLATE_FILE_SIZE_BYTES = 1024 * 1024
MAX_STACK_NAME_LENGTH = 128

# =============================================================================
# Project provider (GCP)
# =============================================================================

DEFAULT_GCP_REGION = "us-central1"
RESOURCE_PREFIX = "runvoy"

REQUIRED_SERVICES: tuple[str, ...] = (
    "run.googleapis.com",
    "compute.googleapis.com",
    "vpcaccess.googleapis.com",
    "firestore.googleapis.com",
    "pubsub.googleapis.com",
    "cloudscheduler.googleapis.com",
    "secretmanager.googleapis.com",
    "cloudkms.googleapis.com",
    "artifactregistry.googleapis.com",
    "iam.googleapis.com",
    "logging.googleapis.com",
)

VPC_NAME = "runvoy-vpc"
SUBNET_NAME = "runvoy-subnet"
VPC_CONNECTOR_NAME = "runvoy-connector"
VPC_CIDR_RANGE = "10.8.0.0/28"
VPC_CONNECTOR_IP_RANGE = "10.8.0.0/28"
VPC_CONNECTOR_MIN_INSTANCES = 2
VPC_CONNECTOR_MAX_INSTANCES = 3
VPC_CONNECTOR_MACHINE_TYPE = "e2-micro"
FIREWALL_RULE_EGRESS = "runvoy-allow-egress"

FIRESTORE_LOCATION_ID = "nam5"
FIRESTORE_DATABASE_ID = "(default)"

SERVICE_ORCHESTRATOR = "runvoy-orchestrator"
SERVICE_EVENT_PROCESSOR = "runvoy-event-processor"
SERVICE_RUNNER = "runvoy-runner"

SERVICE_ACCOUNT_ORCHESTRATOR = "runvoy-orchestrator-sa"
SERVICE_ACCOUNT_EVENT_PROCESSOR = "runvoy-event-processor-sa"
SERVICE_ACCOUNT_RUNNER = "runvoy-runner-sa"

TOPIC_TASK_EVENTS = "runvoy-task-events"
TOPIC_LOG_EVENTS = "runvoy-log-events"
TOPIC_WEBSOCKET_EVENTS = "runvoy-websocket-events"
SUBSCRIPTION_PROCESSOR = "runvoy-processor-subscription"

KEY_RING_NAME = "runvoy-keyring"
CRYPTO_KEY_NAME = "runvoy-secrets-key"

ARTIFACT_REGISTRY_REPO = "runvoy-images"

SCHEDULER_HEALTH_RECONCILE = "runvoy-health-reconcile"
HEALTH_RECONCILE_SCHEDULE = "0 * * * *"
HEALTH_RECONCILE_PATH = "/health-reconcile"

LOG_SINK_RUNNER = "runvoy-runner-logs-sink"
DEFAULT_LOG_RETENTION_DAYS = 365

DEFAULT_MAX_INSTANCES = 100
DEFAULT_MIN_INSTANCES = 0
DEFAULT_TIMEOUT_SECONDS = 300

COLLECTION_API_KEYS = "runvoy-api-keys"
COLLECTION_EXECUTIONS = "runvoy-executions"
COLLECTION_PENDING_API_KEYS = "runvoy-pending-api-keys"
COLLECTION_SECRETS_METADATA = "runvoy-secrets-metadata"
COLLECTION_IMAGE_CONFIGS = "runvoy-image-configs"
COLLECTION_WEBSOCKET_TOKENS = "runvoy-websocket-tokens"
COLLECTION_WEBSOCKET_CONNECTIONS = "runvoy-websocket-connections"
COLLECTION_EXECUTION_LOGS = "runvoy-execution-logs"

# Indexed fields per collection, created in this order
COLLECTION_INDEXES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (COLLECTION_API_KEYS, ("api_key_hash", "user_email")),
    (COLLECTION_EXECUTIONS, ("execution_id", "started_at", "created_by_request_id")),
    (COLLECTION_PENDING_API_KEYS, ("secret_token", "expires_at")),
    (COLLECTION_SECRETS_METADATA, ("secret_name",)),
    (COLLECTION_IMAGE_CONFIGS, ("image_id", "is_default")),
    (COLLECTION_WEBSOCKET_TOKENS, ("token", "execution_id", "expires_at")),
    (COLLECTION_WEBSOCKET_CONNECTIONS, ("connection_id", "execution_id", "expires_at")),
    (COLLECTION_EXECUTION_LOGS, ("execution_id", "event_key", "expires_at")),
)

ORCHESTRATOR_ROLES: tuple[str, ...] = (
    "roles/datastore.user",
    "roles/run.invoker",
    "roles/run.developer",
    "roles/pubsub.publisher",
    "roles/cloudkms.cryptoKeyEncrypterDecrypter",
    "roles/secretmanager.secretAccessor",
    "roles/logging.logWriter",
    "roles/iam.serviceAccountUser",
    "roles/artifactregistry.reader",
)

EVENT_PROCESSOR_ROLES: tuple[str, ...] = (
    "roles/datastore.user",
    "roles/pubsub.subscriber",
    "roles/pubsub.publisher",
    "roles/cloudkms.cryptoKeyDecrypter",
    "roles/secretmanager.secretAccessor",
    "roles/logging.logWriter",
    "roles/run.invoker",
)

RUNNER_ROLES: tuple[str, ...] = ("roles/logging.logWriter",)

DEFAULT_LABELS: dict[str, str] = {
    "managed-by": RESOURCE_PREFIX,
    "application": RESOURCE_PREFIX,
}

DEPLOYMENT_NAME = "runvoy-backend"


@dataclass(frozen=True)
class ProvisionerConfig:
    """Provisioner configuration, usually loaded from the environment.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-deploy.
    """

    provider: Provider = Provider.AWS
    region: str | None = None
    gcp_org_id: str | None = None

    # Timing
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    stack_timeout_minutes: float = DEFAULT_STACK_TIMEOUT_MINUTES
    project_timeout_minutes: float = DEFAULT_PROJECT_TIMEOUT_MINUTES

    gcp_backend_mode: BackendMode = BackendMode.CONVERGE

    # Regions where the default release template is published; empty means any
    release_regions: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not 0 < self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS:
            errors.append(
                f"RUNVOY_POLL_INTERVAL must be greater than 0 and at most "
                f"{MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not 0 < self.stack_timeout_minutes <= MAX_STACK_TIMEOUT_MINUTES:
            errors.append(
                f"RUNVOY_STACK_TIMEOUT must be greater than 0 and at most "
                f"{MAX_STACK_TIMEOUT_MINUTES} minutes"
            )

        if not 0 < self.project_timeout_minutes <= MAX_PROJECT_TIMEOUT_MINUTES:
            errors.append(
                f"RUNVOY_PROJECT_TIMEOUT must be greater than 0 and at most "
                f"{MAX_PROJECT_TIMEOUT_MINUTES} minutes"
            )

        if self.gcp_org_id is not None and not self.gcp_org_id.isdigit():
            errors.append(f"RUNVOY_GCP_ORG_ID must be numeric: {self.gcp_org_id}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def stack_timeout_seconds(self) -> float:
        return self.stack_timeout_minutes * 60

    @property
    def project_timeout_seconds(self) -> float:
        return self.project_timeout_minutes * 60

    @classmethod
    def from_env(cls) -> ProvisionerConfig:
        """Load configuration from environment variables.

        Environment Variables:
            RUNVOY_PROVIDER: aws or gcp (default: aws)
            RUNVOY_REGION: Provider region (default: SDK default / us-central1)
            RUNVOY_GCP_ORG_ID: Parent organization for new projects
            RUNVOY_POLL_INTERVAL: Seconds between status checks (default: 5)
            RUNVOY_STACK_TIMEOUT: Minutes to wait for a stack (default: 30)
            RUNVOY_PROJECT_TIMEOUT: Minutes to wait for a project (default: 5)
            RUNVOY_GCP_BACKEND_MODE: converge or deployment-manager
            RUNVOY_RELEASE_REGIONS: Comma list of regions with published releases
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.strip().lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        return cls(
            provider=get_enum("RUNVOY_PROVIDER", Provider, Provider.AWS),
            region=os.environ.get("RUNVOY_REGION") or None,
            gcp_org_id=os.environ.get("RUNVOY_GCP_ORG_ID") or None,
            poll_interval_seconds=get_float("RUNVOY_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            stack_timeout_minutes=get_float("RUNVOY_STACK_TIMEOUT", DEFAULT_STACK_TIMEOUT_MINUTES),
            project_timeout_minutes=get_float(
                "RUNVOY_PROJECT_TIMEOUT", DEFAULT_PROJECT_TIMEOUT_MINUTES
            ),
            gcp_backend_mode=get_enum(
                "RUNVOY_GCP_BACKEND_MODE", BackendMode, BackendMode.CONVERGE
            ),
            release_regions=parse_region_list(os.environ.get("RUNVOY_RELEASE_REGIONS", "")),
        )


def parse_region_list(raw: str) -> tuple[str, ...]:
    """Split a comma-separated region list, dropping blanks."""
    return tuple(part.strip() for part in raw.split(",") if part.strip())
