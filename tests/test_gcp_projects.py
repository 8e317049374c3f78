"""Tests for the GCP project lifecycle manager."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as google_exceptions

from cloud_mock import MockProjectsClient
from provisioner.config import ProvisionerConfig
from provisioner.errors import (
    NotFoundError,
    OperationCancelledError,
    OperationFailedError,
    OperationTimeoutError,
)
from provisioner.gcp_projects import (
    OperationState,
    ProjectLifecycleManager,
    classify_operation_state,
    project_outputs,
)
from provisioner.models import DeployStatus
from provisioner.poller import PollOutcome


@pytest.fixture
def manager(projects_client: MockProjectsClient, fast_config: ProvisionerConfig) -> ProjectLifecycleManager:
    return ProjectLifecycleManager(projects_client, fast_config)


class TestHelpers:
    def test_classify_operation_state(self) -> None:
        assert classify_operation_state(OperationState(done=False)).outcome == PollOutcome.IN_PROGRESS
        assert classify_operation_state(OperationState(done=True)).outcome == PollOutcome.SUCCEEDED
        failed = classify_operation_state(OperationState(done=True, error="billing disabled"))
        assert failed.outcome == PollOutcome.FAILED
        assert failed.messages == ("billing disabled",)

    def test_project_outputs(self) -> None:
        project = SimpleNamespace(
            project_id="runvoy-prod", display_name="Runvoy Prod", name="projects/884412345678"
        )

        assert project_outputs(project) == {
            "ProjectID": "runvoy-prod",
            "ProjectName": "Runvoy Prod",
            "ProjectNumber": "884412345678",
        }

    def test_project_outputs_falls_back_to_id(self) -> None:
        project = SimpleNamespace(project_id="runvoy-prod", display_name="", name="")

        assert project_outputs(project) == {"ProjectID": "runvoy-prod", "ProjectName": "runvoy-prod"}


class TestCheckExists:
    """Existence checks treat both not-found shapes as absent."""

    @pytest.mark.asyncio
    async def test_existing(self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient) -> None:
        projects_client.seed_project("runvoy-prod")
        assert await manager.check_exists("runvoy-prod") is True

    @pytest.mark.asyncio
    async def test_permission_denied_may_not_exist(self, manager: ProjectLifecycleManager) -> None:
        assert await manager.check_exists("runvoy-prod") is False

    @pytest.mark.asyncio
    async def test_not_found(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.get_error = google_exceptions.NotFound("projects/runvoy-prod")
        assert await manager.check_exists("runvoy-prod") is False

    @pytest.mark.asyncio
    async def test_other_permission_denied_propagates(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.get_error = google_exceptions.PermissionDenied(
            "Cloud Resource Manager API has not been used in project 1234"
        )

        with pytest.raises(OperationFailedError):
            await manager.check_exists("runvoy-prod")

    @pytest.mark.asyncio
    async def test_server_error_propagates(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.get_error = google_exceptions.ServiceUnavailable("backend unavailable")

        with pytest.raises(OperationFailedError):
            await manager.check_exists("runvoy-prod")


class TestCreate:
    """Tests for project creation."""

    @pytest.mark.asyncio
    async def test_create_and_wait(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.create_pending_polls = 2

        status = await manager.create("runvoy-prod", org_id="123456789012")

        assert status == DeployStatus.CREATE_COMPLETE
        created = projects_client.last_created
        assert created.parent == "organizations/123456789012"
        assert created.display_name == "runvoy-prod"
        assert dict(created.labels)["managed-by"] == "runvoy"
        assert "runvoy-prod" in projects_client.projects

    @pytest.mark.asyncio
    async def test_create_without_org_has_no_parent(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        await manager.create("runvoy-prod")

        assert projects_client.last_created.parent == ""

    @pytest.mark.asyncio
    async def test_waits_for_visibility_after_operation(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        """A finished create operation is followed by reads until the project is visible."""
        projects_client.visibility_delay = 2

        status = await manager.create("runvoy-prod")

        assert status == DeployStatus.CREATE_COMPLETE
        assert projects_client.call_names().count("get_project") == 3

    @pytest.mark.asyncio
    async def test_no_wait(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.create_pending_polls = 100

        status = await manager.create("runvoy-prod", wait=False)

        assert status == DeployStatus.IN_PROGRESS
        assert projects_client.call_names() == ["create_project"]

    @pytest.mark.asyncio
    async def test_operation_error(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.create_error = RuntimeError("billing account not found")

        with pytest.raises(OperationFailedError) as exc_info:
            await manager.create("runvoy-prod")

        assert "billing account not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rejected_submission(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.seed_project("runvoy-prod")

        with pytest.raises(OperationFailedError) as exc_info:
            await manager.create("runvoy-prod")

        assert str(exc_info.value).startswith("create project failed:")

    @pytest.mark.asyncio
    async def test_timeout(self, projects_client: MockProjectsClient) -> None:
        config = ProvisionerConfig(poll_interval_seconds=0.01, project_timeout_minutes=0.001)
        manager = ProjectLifecycleManager(projects_client, config)
        projects_client.create_pending_polls = 10_000

        with pytest.raises(OperationTimeoutError):
            await manager.create("runvoy-prod")

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.create_pending_polls = 10_000
        cancel_event = asyncio.Event()

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            cancel_event.set()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(OperationCancelledError):
            await manager.create("runvoy-prod", cancel_event=cancel_event)
        await canceller


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_and_wait(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.seed_project("runvoy-prod")
        projects_client.delete_pending_polls = 1

        status = await manager.delete("runvoy-prod")

        assert status == DeployStatus.DELETE_REQUESTED
        assert "runvoy-prod" not in projects_client.projects

    @pytest.mark.asyncio
    async def test_delete_no_wait(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.seed_project("runvoy-prod")

        assert await manager.delete("runvoy-prod", wait=False) == DeployStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_delete_failure_wrapped(self, manager: ProjectLifecycleManager) -> None:
        with pytest.raises(OperationFailedError) as exc_info:
            await manager.delete("runvoy-prod")

        assert str(exc_info.value).startswith("delete project failed:")


class TestOutputs:
    @pytest.mark.asyncio
    async def test_get_outputs(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.seed_project("runvoy-prod", display_name="Runvoy", number="884412345678")

        assert await manager.get_outputs("runvoy-prod") == {
            "ProjectID": "runvoy-prod",
            "ProjectName": "Runvoy",
            "ProjectNumber": "884412345678",
        }

    @pytest.mark.asyncio
    async def test_get_outputs_missing(
        self, manager: ProjectLifecycleManager, projects_client: MockProjectsClient
    ) -> None:
        projects_client.get_error = google_exceptions.NotFound("projects/runvoy-prod")

        with pytest.raises(NotFoundError):
            await manager.get_outputs("runvoy-prod")
