"""Project provider: a GCP project plus the backend resources inside it.

Deploy:
    1. Ensure the project exists (returning early while it is still being
       created without ``wait``).
    2. Enable the required service APIs.
    3. Build the ResourceConfig from defaults and parameter overrides.
    4. Apply the backend, either by convergence or as a Deployment Manager
       deployment.
    5. Merge backend outputs with live project metadata. Project metadata
       wins on key collision.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path

from . import config as cfg
from .clients import ServiceClients
from .config import BackendMode, ProvisionerConfig
from .convergence import Orchestrator, validate_images
from .deployment_manager import DeploymentManagerBackend
from .errors import (
    DomainFailure,
    OperationCancelledError,
    ProvisionerError,
    TeardownError,
    ValidationError,
)
from .gcp_clients import build_service_clients
from .gcp_projects import ProjectLifecycleManager
from .models import (
    DeployOptions,
    DeployResult,
    DeployStatus,
    DestroyOptions,
    DestroyResult,
    OperationType,
    ResourceConfig,
)
from .templates import load_template_body, parse_parameters

logger = logging.getLogger(__name__)

PARAM_ORCHESTRATOR_IMAGE = "OrchestratorImage"
PARAM_EVENT_PROCESSOR_IMAGE = "EventProcessorImage"
PARAM_FIRESTORE_LOCATION = "FirestoreLocationID"
PARAM_MIN_INSTANCES = "MinInstances"
PARAM_MAX_INSTANCES = "MaxInstances"

DOMAIN_DEPLOYMENT = "deployment"


def parse_instance_count(key: str, value: str) -> int:
    """Parse a non-negative decimal integer override."""
    text = value.strip()
    if not text.isdigit():
        raise ValidationError(f"invalid integer for {key}: {value!r}")
    return int(text)


def build_resource_config(
    project_id: str, region: str, params: Mapping[str, str]
) -> ResourceConfig:
    """Defaults for ``project_id``/``region`` with recognized overrides applied.

    Unrecognized parameter keys are ignored.
    """
    overrides: dict[str, object] = {}
    if PARAM_ORCHESTRATOR_IMAGE in params:
        overrides["orchestrator_image"] = params[PARAM_ORCHESTRATOR_IMAGE]
    if PARAM_EVENT_PROCESSOR_IMAGE in params:
        overrides["event_processor_image"] = params[PARAM_EVENT_PROCESSOR_IMAGE]
    if PARAM_FIRESTORE_LOCATION in params:
        overrides["firestore_location_id"] = params[PARAM_FIRESTORE_LOCATION]
    if PARAM_MIN_INSTANCES in params:
        overrides["min_instances"] = parse_instance_count(
            PARAM_MIN_INSTANCES, params[PARAM_MIN_INSTANCES]
        )
    if PARAM_MAX_INSTANCES in params:
        overrides["max_instances"] = parse_instance_count(
            PARAM_MAX_INSTANCES, params[PARAM_MAX_INSTANCES]
        )
    return ResourceConfig(project_id=project_id, region=region, **overrides)


def load_deployment_template(locator: str) -> tuple[str, str]:
    """Read a local template file for the declarative path.

    Returns:
        (import name, content); the import name is the file's basename.
    """
    if not locator or locator.startswith(("http://", "https://", "s3://")):
        raise ValidationError("deployment-manager mode requires a local template file (--template)")
    path = Path(locator)
    return path.name, load_template_body(path)


def merge_outputs(backend: Mapping[str, str], project: Mapping[str, str]) -> dict[str, str]:
    """Backend outputs overlaid with project metadata; project keys win."""
    merged = dict(backend)
    merged.update(project)
    return merged


class ProjectDeployer:
    """Deployer for the project provider."""

    def __init__(
        self,
        projects: ProjectLifecycleManager,
        *,
        config: ProvisionerConfig | None = None,
        region: str = "",
        services: ServiceClients | None = None,
    ) -> None:
        self._projects = projects
        self._config = config or ProvisionerConfig()
        self._region = region or self._config.region or cfg.DEFAULT_GCP_REGION
        self._services = services

    @classmethod
    def from_environment(
        cls, config: ProvisionerConfig | None = None, region: str = ""
    ) -> ProjectDeployer:
        """Wire the resource-manager client and every REST domain client."""
        return cls(
            ProjectLifecycleManager.from_environment(config),
            config=config,
            region=region,
            services=build_service_clients(),
        )

    def get_region(self) -> str:
        return self._region

    def _require_services(self, *names: str) -> ServiceClients:
        services = self._services or ServiceClients()
        services.require(*names)
        return services

    def _deployment_backend(self) -> DeploymentManagerBackend:
        services = self._require_services("deployment_manager")
        return DeploymentManagerBackend(
            services.deployment_manager,
            poll_interval_seconds=self._config.poll_interval_seconds,
        )

    async def check_exists(self, name: str, *, cancel_event: asyncio.Event | None = None) -> bool:
        return await self._projects.check_exists(name, cancel_event=cancel_event)

    async def deploy(
        self, opts: DeployOptions, *, cancel_event: asyncio.Event | None = None
    ) -> DeployResult:
        """Ensure the project, enable APIs, apply the backend, merge outputs.

        An existing project is reported as an UPDATE with UPDATE_COMPLETE;
        convergence itself is a no-op for resources that already exist.
        """
        opts.validate()
        project_id = opts.name
        region = opts.region or self._region

        # Validate everything local before the first API call
        resource_config = build_resource_config(
            project_id, region, parse_parameters(opts.parameters)
        )
        template: tuple[str, str] | None = None
        match self._config.gcp_backend_mode:
            case BackendMode.CONVERGE:
                validate_images(resource_config)
            case BackendMode.DEPLOYMENT_MANAGER:
                template = load_deployment_template(opts.template)

        exists = await self._projects.check_exists(project_id, cancel_event=cancel_event)
        if exists:
            operation_type, status = OperationType.UPDATE, DeployStatus.UPDATE_COMPLETE
        else:
            operation_type = OperationType.CREATE
            status = await self._projects.create(
                project_id,
                org_id=opts.org_id or self._config.gcp_org_id or "",
                wait=opts.wait,
                cancel_event=cancel_event,
            )
            if status == DeployStatus.IN_PROGRESS:
                return DeployResult(name=project_id, operation_type=operation_type, status=status)

        services = self._require_services("service_usage")
        logger.info("Enabling required services", extra={"project_id": project_id})
        await services.service_usage.enable_services(
            project_id, list(cfg.REQUIRED_SERVICES), cancel_event=cancel_event
        )

        backend_outputs = await self._apply_backend(resource_config, template, cancel_event)
        project_outputs = await self._projects.get_outputs(project_id, cancel_event=cancel_event)

        return DeployResult(
            name=project_id,
            operation_type=operation_type,
            status=status,
            outputs=merge_outputs(backend_outputs, project_outputs),
        )

    async def _apply_backend(
        self,
        resource_config: ResourceConfig,
        template: tuple[str, str] | None,
        cancel_event: asyncio.Event | None,
    ) -> dict[str, str]:
        match self._config.gcp_backend_mode:
            case BackendMode.CONVERGE:
                orchestrator = Orchestrator(self._services or ServiceClients())
                resources = await orchestrator.converge(resource_config, cancel_event=cancel_event)
                return resources.to_outputs()
            case BackendMode.DEPLOYMENT_MANAGER:
                template_name, template_content = template
                return await self._deployment_backend().apply(
                    resource_config, template_name, template_content, cancel_event=cancel_event
                )

    async def destroy(
        self, opts: DestroyOptions, *, cancel_event: asyncio.Event | None = None
    ) -> DestroyResult:
        """Best-effort backend teardown, then project deletion.

        Backend failures are reported on ``backend_failures`` and never stop
        the project deletion.
        """
        opts.validate()
        project_id = opts.name

        if not await self._projects.check_exists(project_id, cancel_event=cancel_event):
            logger.info("Project not found, nothing to destroy", extra={"project_id": project_id})
            return DestroyResult(name=project_id, status=DeployStatus.NOT_FOUND, not_found=True)

        failures: tuple[DomainFailure, ...] = ()
        if self._services is not None:
            config = build_resource_config(project_id, opts.region or self._region, {})
            failures = await self._teardown_backend(config, cancel_event)

        status = await self._projects.delete(project_id, wait=opts.wait, cancel_event=cancel_event)
        return DestroyResult(name=project_id, status=status, backend_failures=failures)

    async def _teardown_backend(
        self, config: ResourceConfig, cancel_event: asyncio.Event | None
    ) -> tuple[DomainFailure, ...]:
        match self._config.gcp_backend_mode:
            case BackendMode.CONVERGE:
                try:
                    await Orchestrator(self._services).teardown(config, cancel_event=cancel_event)
                except TeardownError as e:
                    logger.warning(
                        "Backend teardown incomplete",
                        extra={"project_id": config.project_id, "failed_domains": e.domains},
                    )
                    return tuple(e.failures)
            case BackendMode.DEPLOYMENT_MANAGER:
                backend = self._deployment_backend()
                try:
                    await backend.delete(config.project_id, cancel_event=cancel_event)
                except OperationCancelledError:
                    raise
                except ProvisionerError as e:
                    logger.warning(
                        "Deployment deletion failed",
                        extra={"project_id": config.project_id, "error": str(e)},
                    )
                    return (DomainFailure(DOMAIN_DEPLOYMENT, e),)
        return ()

    async def get_outputs(
        self, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, str]:
        """Backend outputs re-derived from the live environment, merged with project metadata.

        Raises:
            NotFoundError: The project (or, in deployment-manager mode, the
                deployment) does not exist.
        """
        project_outputs = await self._projects.get_outputs(name, cancel_event=cancel_event)

        match self._config.gcp_backend_mode:
            case BackendMode.CONVERGE:
                config = build_resource_config(name, self._region, {})
                resources = await Orchestrator(self._services or ServiceClients()).describe(
                    config, cancel_event=cancel_event
                )
                backend_outputs = resources.to_outputs()
            case BackendMode.DEPLOYMENT_MANAGER:
                backend_outputs = await self._deployment_backend().get_outputs(
                    name, cancel_event=cancel_event
                )

        return merge_outputs(backend_outputs, project_outputs)
