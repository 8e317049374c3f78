"""runvoy infrastructure CLI (runvoy-infra).

Usage:
    runvoy-infra apply --provider aws --name runvoy-backend --version v1.2.0
    runvoy-infra apply --provider gcp --name my-project --org-id 123456789012 \\
        --parameter OrchestratorImage=... --parameter EventProcessorImage=...
    runvoy-infra outputs --provider aws --name runvoy-backend
    runvoy-infra destroy --provider gcp --name my-project --no-wait
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import click
import yaml

from .config import ProvisionerConfig
from .deployer import Deployer, new_deployer, supported_providers
from .errors import ProvisionerError
from .logging_setup import setup_logging
from .models import DeployOptions, DeployResult, DestroyOptions, DestroyResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_FORMATS = ("json", "text")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def deploy_result_document(result: DeployResult) -> dict[str, Any]:
    return {
        "name": result.name,
        "operation": result.operation_type.value,
        "status": result.status.value,
        "no_changes": result.no_changes,
        "outputs": dict(sorted(result.outputs.items())),
    }


def destroy_result_document(result: DestroyResult) -> dict[str, Any]:
    document: dict[str, Any] = {
        "name": result.name,
        "status": result.status.value,
        "not_found": result.not_found,
    }
    if result.backend_failures:
        document["backend_failures"] = [
            {"domain": f.domain, "error": str(f.error)} for f in result.backend_failures
        ]
    return document


def echo_yaml(document: dict[str, Any]) -> None:
    click.echo(yaml.safe_dump(document, sort_keys=False, default_flow_style=False), nl=False)


def build_deployer(ctx: click.Context, provider: str | None, region: str | None) -> Deployer:
    config: ProvisionerConfig = ctx.obj["config"]
    try:
        return new_deployer(provider or config.provider, config, region or "")
    except ProvisionerError as e:
        raise click.ClickException(str(e)) from e


def run(awaitable: Awaitable[T]) -> T:
    """Run one deployer coroutine, mapping provisioner errors to CLI errors."""

    async def _main() -> T:
        return await awaitable

    try:
        return asyncio.run(_main())
    except ProvisionerError as e:
        logger.error("Operation failed", extra={"error": str(e)})
        raise click.ClickException(str(e)) from e


provider_option = click.option(
    "--provider",
    type=click.Choice(supported_providers(), case_sensitive=False),
    default=None,
    help="Infrastructure provider (default: RUNVOY_PROVIDER or aws).",
)
name_option = click.option(
    "--name", required=True, help="Stack name (aws) or project id (gcp)."
)
region_option = click.option("--region", default=None, help="Provider region.")


@click.group()
@click.version_option(version="0.1.0", prog_name="runvoy-infra")
@click.option("--log-format", type=click.Choice(LOG_FORMATS), default="json", show_default=True)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, log_format: str, log_level: str) -> None:
    """Provision and tear down the runvoy backend.

    \b
    Quick Start:
        runvoy-infra apply --name runvoy-backend    # Deploy the AWS stack
        runvoy-infra outputs --name runvoy-backend  # Show stack outputs
    """
    setup_logging(log_level.upper(), log_format)
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = ProvisionerConfig.from_env()
        except ProvisionerError as e:
            raise click.ClickException(str(e)) from e


@cli.command()
@provider_option
@name_option
@click.option("--template", default="", help="Template URL, s3:// URI or local file.")
@click.option("--version", "version", default="", help="Release version for the default template.")
@click.option(
    "--parameter",
    "parameters",
    multiple=True,
    metavar="KEY=VALUE",
    help="Template parameter override (repeatable).",
)
@click.option("--wait/--no-wait", default=True, show_default=True)
@region_option
@click.option("--org-id", default="", help="Parent organization for a new project (gcp).")
@click.pass_context
def apply(
    ctx: click.Context,
    provider: str | None,
    name: str,
    template: str,
    version: str,
    parameters: tuple[str, ...],
    wait: bool,
    region: str | None,
    org_id: str,
) -> None:
    """Create or update the backend."""
    deployer = build_deployer(ctx, provider, region)
    opts = DeployOptions(
        name=name,
        template=template,
        version=version,
        parameters=parameters,
        wait=wait,
        region=region or "",
        org_id=org_id,
    )
    result = run(deployer.deploy(opts))
    echo_yaml(deploy_result_document(result))


@cli.command()
@provider_option
@name_option
@click.option("--wait/--no-wait", default=True, show_default=True)
@region_option
@click.pass_context
def destroy(
    ctx: click.Context, provider: str | None, name: str, wait: bool, region: str | None
) -> None:
    """Tear down the backend."""
    deployer = build_deployer(ctx, provider, region)
    result = run(deployer.destroy(DestroyOptions(name=name, wait=wait, region=region or "")))
    echo_yaml(destroy_result_document(result))


@cli.command()
@provider_option
@name_option
@region_option
@click.pass_context
def outputs(ctx: click.Context, provider: str | None, name: str, region: str | None) -> None:
    """Print the deployed backend outputs."""
    deployer = build_deployer(ctx, provider, region)
    result = run(deployer.get_outputs(name))
    echo_yaml({"name": name, "region": deployer.get_region(), "outputs": dict(sorted(result.items()))})


if __name__ == "__main__":
    cli()
