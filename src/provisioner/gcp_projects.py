"""Project lifecycle: the top-level container backend resources live in.

State machine:
    absent -> creating -> ready
    ready -> deleting -> absent

Creation completion is confirmed twice: the create operation must finish,
and then the project must become visible to reads. Deletion is confirmed by
the delete operation alone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud import resourcemanager_v3

from .config import DEFAULT_LABELS, ProvisionerConfig
from .errors import NotFoundError, OperationFailedError
from .models import DeployStatus
from .poller import PollResult, PollSettings, poll_until_done, run_blocking, run_with_deadline

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MAY_NOT_EXIST = "or it may not exist"


@dataclass(frozen=True)
class OperationState:
    """Snapshot of a long-running project operation."""

    done: bool
    error: str = ""


def classify_operation_state(state: OperationState) -> PollResult:
    if not state.done:
        return PollResult.in_progress("RUNNING")
    if state.error:
        return PollResult.failed("DONE", (state.error,))
    return PollResult.succeeded("DONE")


def project_resource_name(project_id: str) -> str:
    return f"projects/{project_id}"


def project_outputs(project: Any) -> dict[str, str]:
    """Flatten live project metadata into output keys."""
    outputs = {
        "ProjectID": project.project_id,
        "ProjectName": project.display_name or project.project_id,
    }
    parts = (project.name or "").split("/")
    if len(parts) == 2 and parts[1]:
        outputs["ProjectNumber"] = parts[1]
    return outputs


class ProjectLifecycleManager:
    """Existence, creation and deletion of one GCP project per call."""

    def __init__(self, client: Any, config: ProvisionerConfig | None = None) -> None:
        self._client = client
        self._config = config or ProvisionerConfig()

    @classmethod
    def from_environment(cls, config: ProvisionerConfig | None = None) -> ProjectLifecycleManager:
        """Build a manager using Application Default Credentials."""
        return cls(resourcemanager_v3.ProjectsClient(), config)

    @property
    def _poll_settings(self) -> PollSettings:
        return PollSettings(
            interval_seconds=self._config.poll_interval_seconds,
            timeout_seconds=self._config.project_timeout_seconds,
        )

    async def _get_project(self, project_id: str, cancel_event: asyncio.Event | None) -> Any:
        return await run_with_deadline(
            run_blocking(self._client.get_project, name=project_resource_name(project_id)),
            operation="get project",
            cancel_event=cancel_event,
        )

    async def check_exists(
        self, project_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        """Return whether the project exists.

        Not-found and the "permission denied ... or it may not exist"
        response both mean absent. Any other error propagates.
        """
        try:
            await self._get_project(project_id, cancel_event)
        except google_exceptions.NotFound:
            return False
        except google_exceptions.PermissionDenied as e:
            if PERMISSION_DENIED_MAY_NOT_EXIST in str(e):
                return False
            raise OperationFailedError("get project", [str(e)]) from e
        except google_exceptions.GoogleAPICallError as e:
            raise OperationFailedError("get project", [str(e)]) from e
        return True

    async def get_project(
        self, project_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> Any:
        try:
            return await self._get_project(project_id, cancel_event)
        except google_exceptions.NotFound as e:
            raise NotFoundError(f"project {project_id} does not exist") from e
        except google_exceptions.GoogleAPICallError as e:
            raise OperationFailedError("get project", [str(e)]) from e

    async def get_outputs(
        self, project_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, str]:
        project = await self.get_project(project_id, cancel_event=cancel_event)
        return project_outputs(project)

    async def create(
        self,
        project_id: str,
        *,
        org_id: str = "",
        wait: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> DeployStatus:
        """Submit project creation, optionally waiting until it is readable.

        Returns:
            IN_PROGRESS when not waiting, CREATE_COMPLETE otherwise.
        """
        project = resourcemanager_v3.Project(
            project_id=project_id,
            display_name=project_id,
            labels=dict(DEFAULT_LABELS),
        )
        if org_id:
            project.parent = f"organizations/{org_id}"

        logger.info(
            "Creating project",
            extra={"project_id": project_id, "org_id": org_id or None, "wait": wait},
        )
        try:
            operation = await run_with_deadline(
                run_blocking(self._client.create_project, project=project),
                operation="create project",
                cancel_event=cancel_event,
            )
        except google_exceptions.GoogleAPICallError as e:
            raise OperationFailedError("create project", [str(e)]) from e

        if not wait:
            return DeployStatus.IN_PROGRESS

        await self._wait_for_operation(operation, f"project creation of {project_id}", cancel_event)

        # Operation completion does not guarantee the project is readable yet
        async def visible() -> bool:
            return await self.check_exists(project_id, cancel_event=cancel_event)

        await poll_until_done(
            visible,
            lambda exists: PollResult.succeeded("ACTIVE") if exists else PollResult.in_progress(),
            settings=self._poll_settings,
            operation=f"project readiness of {project_id}",
            cancel_event=cancel_event,
        )
        logger.info("Project is ready", extra={"project_id": project_id})
        return DeployStatus.CREATE_COMPLETE

    async def delete(
        self,
        project_id: str,
        *,
        wait: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> DeployStatus:
        """Submit project deletion, optionally waiting on the delete operation.

        Returns:
            IN_PROGRESS when not waiting, DELETE_REQUESTED otherwise. The
            project stays recoverable for 30 days after deletion.
        """
        logger.info("Deleting project", extra={"project_id": project_id, "wait": wait})
        try:
            operation = await run_with_deadline(
                run_blocking(self._client.delete_project, name=project_resource_name(project_id)),
                operation="delete project",
                cancel_event=cancel_event,
            )
        except google_exceptions.GoogleAPICallError as e:
            raise OperationFailedError("delete project", [str(e)]) from e

        if not wait:
            return DeployStatus.IN_PROGRESS

        await self._wait_for_operation(operation, f"project deletion of {project_id}", cancel_event)
        return DeployStatus.DELETE_REQUESTED

    async def _wait_for_operation(
        self, operation: Any, name: str, cancel_event: asyncio.Event | None
    ) -> None:
        async def fetch() -> OperationState:
            done = await run_blocking(operation.done)
            if not done:
                return OperationState(done=False)
            error = await run_blocking(operation.exception)
            return OperationState(done=True, error=str(error) if error else "")

        await poll_until_done(
            fetch,
            classify_operation_state,
            settings=self._poll_settings,
            operation=name,
            cancel_event=cancel_event,
        )
