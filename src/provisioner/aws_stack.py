"""Templated-stack deployer backed by AWS CloudFormation.

Deploy flow:
1. Resolve the template source and default parameters
2. Check whether the stack exists ("does not exist" means absent)
3. Create or update with the fixed IAM capability and managed-by tag
4. "No updates are to be performed" short-circuits to NO_CHANGES
5. Optionally poll to a terminal status and flatten the stack outputs

Failed operations are enriched with the failing stack events. Fetching
those events is best-effort and never masks the original failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import (
    MANAGED_BY_TAG_KEY,
    MANAGED_BY_TAG_VALUE,
    MAX_STACK_NAME_LENGTH,
    RELEASES_BUCKET_PREFIX,
    STACK_CAPABILITIES,
    ProvisionerConfig,
)
from .errors import NotFoundError, OperationFailedError, ValidationError
from .models import (
    DeployOptions,
    DeployResult,
    DeployStatus,
    DestroyOptions,
    DestroyResult,
    OperationType,
    TemplateSource,
)
from .poller import PollResult, PollSettings, poll_until_done, run_blocking, run_with_deadline
from .templates import normalize_version, parse_parameters, resolve_template, validate_release_region

logger = logging.getLogger(__name__)

STACK_SUCCESS_STATUSES: frozenset[str] = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE"})

STACK_FAILURE_STATUSES: frozenset[str] = frozenset({
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "UPDATE_ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_FAILED",
    "DELETE_COMPLETE",
    "DELETE_FAILED",
    "UPDATE_FAILED",
})

DOES_NOT_EXIST_PHRASE = "does not exist"
NO_UPDATES_PHRASE = "No updates are to be performed"


def error_message(error: Exception) -> str:
    """Extract the provider message from a botocore error."""
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Message", error))
    return str(error)


def classify_stack_status(stack: Mapping[str, Any]) -> PollResult:
    """Classify a create/update in progress against the fixed status sets."""
    status = stack.get("StackStatus", "")
    if status in STACK_SUCCESS_STATUSES:
        return PollResult.succeeded(status)
    if status in STACK_FAILURE_STATUSES:
        reason = stack.get("StackStatusReason", "")
        messages = (f"stack status {status}: {reason}",) if reason else (f"stack status {status}",)
        return PollResult.failed(status, messages)
    return PollResult.in_progress(status)


def classify_stack_deletion(stack: Mapping[str, Any] | None) -> PollResult:
    """Classify a delete in progress; ``None`` means the stack is gone."""
    if stack is None:
        return PollResult.succeeded("DELETE_COMPLETE")
    status = stack.get("StackStatus", "")
    if status == "DELETE_COMPLETE":
        return PollResult.succeeded(status)
    if status == "DELETE_IN_PROGRESS":
        return PollResult.in_progress(status)
    if status == "DELETE_FAILED":
        reason = stack.get("StackStatusReason", "")
        return PollResult.failed(status, (f"stack deletion failed: {reason or status}",))
    return PollResult.failed(status, (f"unexpected stack status during deletion: {status}",))


def format_failure_events(events: Sequence[Mapping[str, Any]]) -> list[str]:
    """Render failing stack events as ``<logical id> (<type>): <reason>``."""
    lines: list[str] = []
    for event in events:
        status = event.get("ResourceStatus", "")
        reason = event.get("ResourceStatusReason", "")
        if "FAILED" in status or ("ROLLBACK" in status and reason):
            lines.append(
                f"{event.get('LogicalResourceId', '')} "
                f"({event.get('ResourceType', '')}): {reason}"
            )
    return lines


def flatten_outputs(stack: Mapping[str, Any]) -> dict[str, str]:
    return {
        out["OutputKey"]: out.get("OutputValue", "")
        for out in stack.get("Outputs", []) or []
        if out.get("OutputKey")
    }


class StackDeployer:
    """Deploys one CloudFormation stack per call.

    The boto3 client is injected so tests can substitute an in-memory fake.
    """

    def __init__(
        self,
        client: Any,
        region: str,
        config: ProvisionerConfig | None = None,
    ) -> None:
        self._client = client
        self._region = region
        self._config = config or ProvisionerConfig()

    @classmethod
    def from_environment(
        cls, region: str | None = None, config: ProvisionerConfig | None = None
    ) -> StackDeployer:
        """Build a deployer from the default AWS credential chain."""
        session = boto3.session.Session(region_name=region or None)
        if not session.region_name:
            raise ValidationError("AWS region is not configured (set --region or AWS_REGION)")
        return cls(session.client("cloudformation"), session.region_name, config)

    @property
    def _poll_settings(self) -> PollSettings:
        return PollSettings(
            interval_seconds=self._config.poll_interval_seconds,
            timeout_seconds=self._config.stack_timeout_seconds,
        )

    def get_region(self) -> str:
        return self._region

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        cancel_event: asyncio.Event | None,
        **kwargs: Any,
    ) -> Any:
        return await run_with_deadline(
            run_blocking(func, **kwargs),
            operation=operation,
            cancel_event=cancel_event,
        )

    async def _describe_stack(
        self, name: str, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any] | None:
        """Return the stack description, or None when the stack does not exist."""
        try:
            response = await self._call(
                "describe stack", self._client.describe_stacks, cancel_event, StackName=name
            )
        except ClientError as e:
            if DOES_NOT_EXIST_PHRASE in error_message(e):
                return None
            raise OperationFailedError("describe stack", [error_message(e)]) from e
        except BotoCoreError as e:
            raise OperationFailedError("describe stack", [str(e)]) from e

        stacks = response.get("Stacks", [])
        return stacks[0] if stacks else None

    async def check_exists(self, name: str, *, cancel_event: asyncio.Event | None = None) -> bool:
        return await self._describe_stack(name, cancel_event) is not None

    def build_parameters(self, items: Sequence[str], version: str) -> list[dict[str, str]]:
        """Parse caller parameters and add release defaults the caller did not set."""
        params = parse_parameters(items)
        params.setdefault("LambdaCodeBucket", f"{RELEASES_BUCKET_PREFIX}-{self._region}")
        if version:
            params.setdefault("ReleaseVersion", normalize_version(version))
        return [{"ParameterKey": k, "ParameterValue": v} for k, v in params.items()]

    def _stack_request(
        self, name: str, source: TemplateSource, parameters: list[dict[str, str]]
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "StackName": name,
            "Parameters": parameters,
            "Capabilities": list(STACK_CAPABILITIES),
            "Tags": [{"Key": MANAGED_BY_TAG_KEY, "Value": MANAGED_BY_TAG_VALUE}],
        }
        if source.url:
            request["TemplateURL"] = source.url
        else:
            request["TemplateBody"] = source.body
        return request

    async def deploy(
        self, opts: DeployOptions, *, cancel_event: asyncio.Event | None = None
    ) -> DeployResult:
        """Create or update the stack named ``opts.name``."""
        opts.validate()
        if len(opts.name) > MAX_STACK_NAME_LENGTH:
            raise ValidationError(
                f"stack name exceeds maximum length of {MAX_STACK_NAME_LENGTH}: {opts.name}"
            )
        if not opts.template:
            validate_release_region(self._region, self._config.release_regions)

        source = resolve_template(opts.template, opts.version, self._region)
        parameters = self.build_parameters(opts.parameters, opts.version)
        request = self._stack_request(opts.name, source, parameters)

        exists = await self.check_exists(opts.name, cancel_event=cancel_event)
        operation_type = OperationType.UPDATE if exists else OperationType.CREATE

        logger.info(
            "Submitting stack operation",
            extra={
                "stack_name": opts.name,
                "operation_type": operation_type.value,
                "region": self._region,
                "template_url": source.url or None,
            },
        )

        try:
            if exists:
                await self._call("update stack", self._client.update_stack, cancel_event, **request)
            else:
                await self._call("create stack", self._client.create_stack, cancel_event, **request)
        except ClientError as e:
            message = error_message(e)
            if exists and NO_UPDATES_PHRASE in message:
                logger.info("Stack is already up to date", extra={"stack_name": opts.name})
                return DeployResult(
                    name=opts.name,
                    operation_type=OperationType.UPDATE,
                    status=DeployStatus.NO_CHANGES,
                    outputs=await self.get_outputs(opts.name, cancel_event=cancel_event),
                    no_changes=True,
                )
            action = "update stack" if exists else "create stack"
            raise OperationFailedError(action, [message]) from e
        except BotoCoreError as e:
            raise OperationFailedError("submit stack", [str(e)]) from e

        if not opts.wait:
            return DeployResult(
                name=opts.name,
                operation_type=operation_type,
                status=DeployStatus.IN_PROGRESS,
            )

        stack = await self._wait_for_stack(opts.name, operation_type, cancel_event)
        return DeployResult(
            name=opts.name,
            operation_type=operation_type,
            status=DeployStatus(stack["StackStatus"]),
            outputs=flatten_outputs(stack),
        )

    async def _wait_for_stack(
        self,
        name: str,
        operation_type: OperationType,
        cancel_event: asyncio.Event | None,
    ) -> dict[str, Any]:
        operation = f"stack {operation_type.value.lower()} of {name}"

        async def fetch() -> dict[str, Any]:
            stack = await self._describe_stack(name, cancel_event)
            if stack is None:
                # A failed create may be deleted before we observe it
                return {"StackStatus": "DELETE_COMPLETE"}
            return stack

        try:
            return await poll_until_done(
                fetch,
                classify_stack_status,
                settings=self._poll_settings,
                operation=operation,
                cancel_event=cancel_event,
            )
        except OperationFailedError as e:
            events = await self._failure_events(name, cancel_event)
            raise OperationFailedError(operation, [*e.messages, *events]) from e

    async def _failure_events(
        self, name: str, cancel_event: asyncio.Event | None
    ) -> list[str]:
        try:
            response = await self._call(
                "describe stack events",
                self._client.describe_stack_events,
                cancel_event,
                StackName=name,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                "Could not fetch stack events",
                extra={"stack_name": name, "error": error_message(e)},
            )
            return []
        return format_failure_events(response.get("StackEvents", []))

    async def destroy(
        self, opts: DestroyOptions, *, cancel_event: asyncio.Event | None = None
    ) -> DestroyResult:
        """Delete the stack; an absent stack is a NOT_FOUND result, not an error."""
        opts.validate()
        if not await self.check_exists(opts.name, cancel_event=cancel_event):
            return DestroyResult(name=opts.name, status=DeployStatus.NOT_FOUND, not_found=True)

        logger.info("Deleting stack", extra={"stack_name": opts.name, "region": self._region})
        try:
            await self._call(
                "delete stack", self._client.delete_stack, cancel_event, StackName=opts.name
            )
        except ClientError as e:
            raise OperationFailedError("delete stack", [error_message(e)]) from e
        except BotoCoreError as e:
            raise OperationFailedError("delete stack", [str(e)]) from e

        if not opts.wait:
            return DestroyResult(name=opts.name, status=DeployStatus.DELETE_IN_PROGRESS)

        await poll_until_done(
            lambda: self._describe_stack(opts.name, cancel_event),
            classify_stack_deletion,
            settings=self._poll_settings,
            operation=f"stack deletion of {opts.name}",
            cancel_event=cancel_event,
        )
        return DestroyResult(name=opts.name, status=DeployStatus.DELETE_COMPLETE)

    async def get_outputs(
        self, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, str]:
        stack = await self._describe_stack(name, cancel_event)
        if stack is None:
            raise NotFoundError(f"stack {name} does not exist")
        return flatten_outputs(stack)
