"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import (  # noqa: E402
    MockCloudFormationClient,
    MockCloudState,
    MockProjectsClient,
    create_mock_service_clients,
)
from provisioner.config import ProvisionerConfig  # noqa: E402

FAST_POLL_SECONDS = 0.01


@pytest.fixture
def fast_config() -> ProvisionerConfig:
    """Configuration with a short poll interval so waits finish quickly."""
    return ProvisionerConfig(poll_interval_seconds=FAST_POLL_SECONDS)


@pytest.fixture
def cloud_state() -> MockCloudState:
    return MockCloudState()


@pytest.fixture
def service_clients(cloud_state: MockCloudState):
    return create_mock_service_clients(cloud_state)


@pytest.fixture
def cfn_client() -> MockCloudFormationClient:
    return MockCloudFormationClient()


@pytest.fixture
def projects_client() -> MockProjectsClient:
    return MockProjectsClient()


@pytest.fixture(autouse=True)
def clean_runvoy_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's RUNVOY_* environment out of every test."""
    for key in (
        "RUNVOY_PROVIDER",
        "RUNVOY_REGION",
        "RUNVOY_GCP_ORG_ID",
        "RUNVOY_POLL_INTERVAL",
        "RUNVOY_STACK_TIMEOUT",
        "RUNVOY_PROJECT_TIMEOUT",
        "RUNVOY_GCP_BACKEND_MODE",
        "RUNVOY_RELEASE_REGIONS",
    ):
        monkeypatch.delenv(key, raising=False)
