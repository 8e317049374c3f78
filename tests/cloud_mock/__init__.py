"""In-memory cloud fakes for provisioner tests.

Key Features:
- CloudFormation stack lifecycle with configurable in-progress statuses
- Resource-manager projects with long-running operation handles
- One fake per backend resource domain, sharing a call log
- Error injection per method for failure scenarios

Usage:
    from cloud_mock import MockCloudState, create_mock_service_clients

    state = MockCloudState()
    clients = create_mock_service_clients(state)
    resources = await Orchestrator(clients).converge(config)

    assert state.has("service", "runvoy-orchestrator")
"""

from .cloudformation import MockCloudFormationClient, MockStack, client_error
from .domains import (
    MockCloudState,
    MockDeploymentManagerClient,
    create_mock_service_clients,
)
from .projects import MockOperation, MockProject, MockProjectsClient

__all__ = [
    "MockCloudFormationClient",
    "MockCloudState",
    "MockDeploymentManagerClient",
    "MockOperation",
    "MockProject",
    "MockProjectsClient",
    "MockStack",
    "client_error",
    "create_mock_service_clients",
]
