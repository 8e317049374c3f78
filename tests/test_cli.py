"""Tests for the runvoy-infra command line."""

from __future__ import annotations

import json
import logging

import pytest
import yaml
from click.testing import CliRunner

from cloud_mock import MockCloudFormationClient
from provisioner import cli as cli_module
from provisioner.aws_stack import StackDeployer
from provisioner.cli import cli
from provisioner.config import Provider, ProvisionerConfig
from provisioner.errors import DomainFailure, OperationFailedError
from provisioner.logging_setup import JsonFormatter
from provisioner.models import (
    DeployOptions,
    DeployResult,
    DeployStatus,
    DestroyOptions,
    DestroyResult,
    OperationType,
)


class FakeDeployer:
    """Records requests and returns canned results."""

    def __init__(self) -> None:
        self.deploy_requests: list[DeployOptions] = []
        self.destroy_requests: list[DestroyOptions] = []
        self.error: Exception | None = None

    async def deploy(self, opts, *, cancel_event=None):
        self.deploy_requests.append(opts)
        if self.error is not None:
            raise self.error
        return DeployResult(
            name=opts.name,
            operation_type=OperationType.CREATE,
            status=DeployStatus.CREATE_COMPLETE,
            outputs={"QueueURL": "https://sqs.example/q", "ApiEndpoint": "https://api.example"},
        )

    async def destroy(self, opts, *, cancel_event=None):
        self.destroy_requests.append(opts)
        return DestroyResult(
            name=opts.name,
            status=DeployStatus.DELETE_REQUESTED,
            backend_failures=(
                DomainFailure("network", OperationFailedError("delete vpc", ["in use"])),
            ),
        )

    async def check_exists(self, name, *, cancel_event=None):
        return True

    async def get_outputs(self, name, *, cancel_event=None):
        return {"VPCName": "runvoy-vpc", "ProjectID": name}

    def get_region(self) -> str:
        return "us-central1"


@pytest.fixture
def fake_deployer(monkeypatch: pytest.MonkeyPatch) -> FakeDeployer:
    deployer = FakeDeployer()
    requested: list = []

    def fake_new_deployer(provider, config=None, region=""):
        requested.append((provider, region))
        return deployer

    monkeypatch.setattr(cli_module, "new_deployer", fake_new_deployer)
    monkeypatch.setattr(cli_module, "setup_logging", lambda level, fmt: None)
    deployer.requested = requested
    return deployer


def invoke(args: list[str], config: ProvisionerConfig | None = None):
    return CliRunner().invoke(cli, args, obj={"config": config or ProvisionerConfig()})


class TestApply:
    def test_prints_result_document(self, fake_deployer: FakeDeployer) -> None:
        result = invoke(
            [
                "apply",
                "--provider",
                "aws",
                "--name",
                "runvoy-backend",
                "--version",
                "v1.2.0",
                "--parameter",
                "ProjectName=runvoy",
                "--no-wait",
            ]
        )

        assert result.exit_code == 0, result.output
        document = yaml.safe_load(result.output)
        assert document == {
            "name": "runvoy-backend",
            "operation": "CREATE",
            "status": "CREATE_COMPLETE",
            "no_changes": False,
            "outputs": {"ApiEndpoint": "https://api.example", "QueueURL": "https://sqs.example/q"},
        }
        opts = fake_deployer.deploy_requests[0]
        assert opts.version == "v1.2.0"
        assert opts.parameters == ("ProjectName=runvoy",)
        assert opts.wait is False

    def test_provider_defaults_to_config(self, fake_deployer: FakeDeployer) -> None:
        invoke(["apply", "--name", "runvoy-prod"], ProvisionerConfig(provider=Provider.GCP))

        assert fake_deployer.requested == [(Provider.GCP, "")]

    def test_provisioner_error_exits_nonzero(self, fake_deployer: FakeDeployer) -> None:
        fake_deployer.error = OperationFailedError("create stack", ["template format error"])

        result = invoke(["apply", "--name", "runvoy-backend"])

        assert result.exit_code == 1
        assert "Error: create stack failed: template format error" in result.output

    def test_unsupported_provider_rejected(self, fake_deployer: FakeDeployer) -> None:
        result = invoke(["apply", "--provider", "oracle", "--name", "x"])

        assert result.exit_code == 2
        assert fake_deployer.requested == []

    def test_name_required(self, fake_deployer: FakeDeployer) -> None:
        result = invoke(["apply", "--provider", "gcp"])

        assert result.exit_code == 2
        assert "--name" in result.output


class TestDestroy:
    def test_reports_backend_failures(self, fake_deployer: FakeDeployer) -> None:
        result = invoke(["destroy", "--provider", "GCP", "--name", "runvoy-prod"])

        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.output) == {
            "name": "runvoy-prod",
            "status": "DELETE_REQUESTED",
            "not_found": False,
            "backend_failures": [{"domain": "network", "error": "delete vpc failed: in use"}],
        }
        assert fake_deployer.destroy_requests[0].wait is True


class TestOutputs:
    def test_prints_sorted_outputs(self, fake_deployer: FakeDeployer) -> None:
        result = invoke(
            ["outputs", "--provider", "gcp", "--name", "runvoy-prod", "--region", "us-central1"]
        )

        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.output) == {
            "name": "runvoy-prod",
            "region": "us-central1",
            "outputs": {"ProjectID": "runvoy-prod", "VPCName": "runvoy-vpc"},
        }
        assert fake_deployer.requested == [("gcp", "us-central1")]


class TestJsonFormatter:
    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            "provisioner.aws_stack", logging.INFO, __file__, 1, "Stack created", None, None
        )
        record.stack_name = "runvoy-backend"

        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["message"] == "Stack created"
        assert payload["logger"] == "provisioner.aws_stack"
        assert payload["stack_name"] == "runvoy-backend"
        assert payload["timestamp"].endswith("Z")


@pytest.fixture
def restore_root_logging():
    """Put back the root handlers replaced by setup_logging."""
    root_logger = logging.getLogger()
    handlers, level = list(root_logger.handlers), root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


class TestLoggingStreams:
    """Log lines never mix with the result document on stdout."""

    def test_apply_stdout_is_pure_yaml(
        self,
        monkeypatch: pytest.MonkeyPatch,
        restore_root_logging,
        cfn_client: MockCloudFormationClient,
        fast_config: ProvisionerConfig,
        tmp_path,
    ) -> None:
        template = tmp_path / "backend.yaml"
        template.write_text("Resources:\n  Bucket:\n    Type: AWS::S3::Bucket\n")
        cfn_client.next_outputs = {"ApiEndpoint": "https://api.example"}
        monkeypatch.setattr(
            cli_module,
            "new_deployer",
            lambda provider, config=None, region="": StackDeployer(
                cfn_client, "us-east-1", fast_config
            ),
        )

        result = CliRunner().invoke(
            cli,
            ["apply", "--name", "runvoy-backend", "--template", str(template)],
            obj={"config": fast_config},
        )

        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.stdout) == {
            "name": "runvoy-backend",
            "operation": "CREATE",
            "status": "CREATE_COMPLETE",
            "no_changes": False,
            "outputs": {"ApiEndpoint": "https://api.example"},
        }
        log_lines = [json.loads(line) for line in result.stderr.splitlines()]
        assert any(line["message"] == "Loaded template" for line in log_lines)
