"""Tests for the resource convergence orchestrator."""

from __future__ import annotations

import asyncio

import pytest

from cloud_mock import MockCloudState, create_mock_service_clients
from provisioner import config as cfg
from provisioner.clients import ServiceClients
from provisioner.convergence import CONVERGENCE_ORDER, Orchestrator, validate_images
from provisioner.errors import (
    ConfigurationError,
    ConvergenceError,
    OperationCancelledError,
    OperationFailedError,
    TeardownError,
    ValidationError,
)
from provisioner.models import BackendResources, ResourceConfig

PROJECT = "runvoy-prod"
REGION = "us-central1"

# First client call each domain makes, in convergence order
DOMAIN_FIRST_CALLS = {
    "identity": "identity.service_account_exists",
    "network": "compute.vpc_exists",
    "datastore": "firestore.database_exists",
    "encryption": "kms.key_ring_exists",
    "messaging": "pubsub.topic_exists",
    "registry": "artifact_registry.repository_exists",
    "compute": "cloud_run.get_service_url",
    "event wiring": "pubsub.subscription_exists",
    "scheduling": "scheduler.job_exists",
    "logging": "logging.sink_exists",
}


@pytest.fixture
def resource_config() -> ResourceConfig:
    return ResourceConfig(
        project_id=PROJECT,
        region=REGION,
        orchestrator_image="us-docker.pkg.dev/runvoy/orchestrator:2.0.1",
        event_processor_image="us-docker.pkg.dev/runvoy/event-processor:2.0.1",
    )


@pytest.fixture
def orchestrator(service_clients: ServiceClients) -> Orchestrator:
    return Orchestrator(service_clients)


class TestConverge:
    """Tests for Orchestrator.converge."""

    @pytest.mark.asyncio
    async def test_domains_run_in_documented_order(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        await orchestrator.converge(resource_config)

        names = cloud_state.call_names()
        first_seen = [names.index(DOMAIN_FIRST_CALLS[domain]) for domain, _ in CONVERGENCE_ORDER]
        assert first_seen == sorted(first_seen)
        assert [domain for domain, _ in CONVERGENCE_ORDER] == list(DOMAIN_FIRST_CALLS)

    @pytest.mark.asyncio
    async def test_services_created_after_dependencies(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        await orchestrator.converge(resource_config)

        created = cloud_state.created()
        service = created.index(cfg.SERVICE_ORCHESTRATOR)
        for dependency in (
            "runvoy-orchestrator-sa@runvoy-prod.iam.gserviceaccount.com",
            cfg.VPC_CONNECTOR_NAME,
            cfg.ARTIFACT_REGISTRY_REPO,
            cfg.CRYPTO_KEY_NAME,
        ):
            assert created.index(dependency) < service
        assert created.index(cfg.SUBSCRIPTION_PROCESSOR) > created.index(cfg.SERVICE_EVENT_PROCESSOR)

    @pytest.mark.asyncio
    async def test_all_absent_fills_every_field_from_creation(
        self,
        orchestrator: Orchestrator,
        resource_config: ResourceConfig,
    ) -> None:
        """Every BackendResources field comes from what the create calls returned."""
        resources = await orchestrator.converge(resource_config)

        assert resources == BackendResources(
            project_id=PROJECT,
            region=REGION,
            vpc_name=cfg.VPC_NAME,
            subnet_name=cfg.SUBNET_NAME,
            vpc_connector_name=cfg.VPC_CONNECTOR_NAME,
            firestore_database=cfg.FIRESTORE_LOCATION_ID,
            orchestrator_url="https://runvoy-orchestrator-x7kq2ab3cd-uc.a.run.app",
            event_processor_url="https://runvoy-event-processor-x7kq2ab3cd-uc.a.run.app",
            task_events_topic_name=cfg.TOPIC_TASK_EVENTS,
            log_events_topic_name=cfg.TOPIC_LOG_EVENTS,
            subscription_name=cfg.SUBSCRIPTION_PROCESSOR,
            key_ring_name=cfg.KEY_RING_NAME,
            crypto_key_name=cfg.CRYPTO_KEY_NAME,
            crypto_key_id=(
                "projects/runvoy-prod/locations/us-central1/keyRings/runvoy-keyring"
                "/cryptoKeys/runvoy-secrets-key"
            ),
            health_reconcile_job_name=cfg.SCHEDULER_HEALTH_RECONCILE,
            orchestrator_service_account="runvoy-orchestrator-sa@runvoy-prod.iam.gserviceaccount.com",
            event_processor_service_account=(
                "runvoy-event-processor-sa@runvoy-prod.iam.gserviceaccount.com"
            ),
            runner_service_account="runvoy-runner-sa@runvoy-prod.iam.gserviceaccount.com",
            artifact_registry_repo=cfg.ARTIFACT_REGISTRY_REPO,
            websocket_endpoint="https://runvoy-event-processor-x7kq2ab3cd-uc.a.run.app",
        )
        assert "ProjectNumber" not in resources.to_outputs()

    @pytest.mark.asyncio
    async def test_second_converge_creates_nothing(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        first = await orchestrator.converge(resource_config)
        cloud_state.calls.clear()

        second = await orchestrator.converge(resource_config)

        assert cloud_state.created() == []
        assert second == first

    @pytest.mark.asyncio
    async def test_first_failure_aborts_remaining_domains(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        cloud_state.inject_error(
            "kms.create_key_ring",
            OperationFailedError("create key ring", ["Cloud KMS API has not been used"]),
        )

        with pytest.raises(ConvergenceError) as exc_info:
            await orchestrator.converge(resource_config)

        assert exc_info.value.domain == "encryption"
        assert str(exc_info.value).startswith("failed to deploy encryption:")
        assert isinstance(exc_info.value.cause, OperationFailedError)
        assert not any(name.startswith("pubsub.") for name in cloud_state.call_names())

    @pytest.mark.asyncio
    async def test_rerun_after_failure_resumes(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        cloud_state.inject_error(
            "cloud_run.create_service", OperationFailedError("create service", ["image not found"])
        )
        with pytest.raises(ConvergenceError):
            await orchestrator.converge(resource_config)

        cloud_state.errors.clear()
        cloud_state.calls.clear()
        resources = await orchestrator.converge(resource_config)

        assert cfg.VPC_NAME not in cloud_state.created()
        assert cfg.SERVICE_ORCHESTRATOR in cloud_state.created()
        assert resources.orchestrator_url

    @pytest.mark.asyncio
    async def test_missing_clients(self, resource_config: ResourceConfig) -> None:
        clients = create_mock_service_clients()
        clients.kms = None
        clients.scheduler = None

        with pytest.raises(ConfigurationError) as exc_info:
            await Orchestrator(clients).converge(resource_config)

        assert "missing kms, scheduler" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_images_required_before_any_call(
        self, orchestrator: Orchestrator, cloud_state: MockCloudState
    ) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.converge(ResourceConfig(project_id=PROJECT, region=REGION))

        assert cloud_state.calls == []

    @pytest.mark.asyncio
    async def test_cancellation_is_not_wrapped(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        cloud_state.inject_error("firestore.create_database", OperationCancelledError("create database"))

        with pytest.raises(OperationCancelledError):
            await orchestrator.converge(resource_config, cancel_event=asyncio.Event())

    def test_validate_images(self, resource_config: ResourceConfig) -> None:
        validate_images(resource_config)
        with pytest.raises(ValidationError) as exc_info:
            validate_images(ResourceConfig(project_id=PROJECT, region=REGION, orchestrator_image="x"))

        assert "EventProcessorImage" in str(exc_info.value)


class TestTeardown:
    """Tests for best-effort teardown."""

    @pytest.mark.asyncio
    async def test_removes_everything_deletable(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        await orchestrator.converge(resource_config)

        await orchestrator.teardown(resource_config)

        for kind in ("service", "topic", "subscription", "job", "sink", "vpc", "subnet", "service_account"):
            assert cloud_state.resources[kind] == {}, kind
        # Key material and the database cannot be deleted
        assert cloud_state.has("key_ring", cfg.KEY_RING_NAME)
        assert cloud_state.has("database", PROJECT)

    @pytest.mark.asyncio
    async def test_reverse_dependency_order(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        await orchestrator.teardown(resource_config)

        names = cloud_state.call_names()
        assert names[0] == "logging.delete_sink"
        assert names.index("cloud_run.delete_service") < names.index("vpc_access.delete_connector")
        assert names.index("compute.delete_subnet") < names.index("compute.delete_vpc")
        assert names[-1] == "identity.delete_service_account"

    @pytest.mark.asyncio
    async def test_continues_after_failures(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        """A failing step never prevents the later steps from being attempted."""
        await orchestrator.converge(resource_config)
        cloud_state.inject_error(
            "pubsub.delete_subscription", OperationFailedError("delete subscription", ["denied"])
        )
        cloud_state.inject_error(
            "compute.delete_vpc",
            OperationFailedError("delete vpc", ["network is in use by runvoy-subnet"]),
        )

        with pytest.raises(TeardownError) as exc_info:
            await orchestrator.teardown(resource_config)

        assert exc_info.value.domains == ["event wiring", "network"]
        assert "network is in use" in str(exc_info.value)
        assert cloud_state.resources["service_account"] == {}
        assert cloud_state.resources["service"] == {}

    @pytest.mark.asyncio
    async def test_cancellation_stops_teardown(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        cloud_state.inject_error("cloud_run.delete_service", OperationCancelledError("delete service"))

        with pytest.raises(OperationCancelledError):
            await orchestrator.teardown(resource_config)

        assert "identity.delete_service_account" not in cloud_state.call_names()


class TestDescribe:
    """Tests for read-only describe."""

    @pytest.mark.asyncio
    async def test_matches_converge_result(
        self,
        orchestrator: Orchestrator,
        cloud_state: MockCloudState,
        resource_config: ResourceConfig,
    ) -> None:
        converged = await orchestrator.converge(resource_config)
        cloud_state.calls.clear()

        described = await orchestrator.describe(resource_config)

        assert described == converged
        assert cloud_state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_empty_project(
        self, orchestrator: Orchestrator, resource_config: ResourceConfig
    ) -> None:
        described = await orchestrator.describe(resource_config)

        assert described.to_outputs() == {"ProjectID": PROJECT, "Region": REGION}
