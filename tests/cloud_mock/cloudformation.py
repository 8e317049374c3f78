"""Mock CloudFormation client.

Mirrors the subset of the boto3 ``cloudformation`` client the stack deployer
uses. Errors are real botocore ClientErrors carrying the provider's message
text, so the deployer's phrase matching is exercised as in production.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError

NO_UPDATES_MESSAGE = "No updates are to be performed."


def client_error(operation: str, message: str, code: str = "ValidationError") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


@dataclass
class MockStack:
    name: str
    template: str
    parameters: list[dict[str, str]]
    capabilities: list[str]
    tags: list[dict[str, str]]
    status: str
    outputs: dict[str, str] = field(default_factory=dict)
    reason: str = ""
    # Statuses reported by successive describes before ``status``
    pending: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)

    def describe(self) -> dict[str, Any]:
        status = self.pending.pop(0) if self.pending else self.status
        stack: dict[str, Any] = {
            "StackName": self.name,
            "StackStatus": status,
            "Parameters": copy.deepcopy(self.parameters),
            "Outputs": [{"OutputKey": k, "OutputValue": v} for k, v in self.outputs.items()],
        }
        if self.reason:
            stack["StackStatusReason"] = self.reason
        return stack


class MockCloudFormationClient:
    """In-memory CloudFormation with create/update/delete lifecycle simulation.

    Configure the next submitted operation with ``next_pending`` (statuses seen
    while it runs), ``next_final_status`` and ``next_outputs``. Any method can
    be made to fail via ``inject_error``.
    """

    def __init__(self) -> None:
        self.stacks: dict[str, MockStack] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.next_pending: list[str] = []
        self.next_final_status: str | None = None
        self.next_outputs: dict[str, str] = {}
        self.next_events: list[dict[str, Any]] = []
        self.delete_pending: list[str] = []
        self._errors: dict[str, Exception] = {}

    def inject_error(self, method: str, error: Exception) -> None:
        self._errors[method] = error

    def _record(self, method: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((method, copy.deepcopy(kwargs)))
        error = self._errors.get(method)
        if error is not None:
            raise error

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def seed_stack(
        self,
        name: str,
        *,
        status: str = "CREATE_COMPLETE",
        outputs: dict[str, str] | None = None,
        template: str = "https://example.com/template.yaml",
        parameters: list[dict[str, str]] | None = None,
    ) -> MockStack:
        stack = MockStack(
            name=name,
            template=template,
            parameters=parameters or [],
            capabilities=[],
            tags=[],
            status=status,
            outputs=dict(outputs or {}),
        )
        self.stacks[name] = stack
        return stack

    def _template(self, kwargs: dict[str, Any]) -> str:
        return kwargs.get("TemplateURL") or kwargs.get("TemplateBody", "")

    def _consume_next(self, stack: MockStack, default_status: str) -> None:
        final = self.next_final_status or default_status
        stack.pending = list(self.next_pending)
        stack.status = final
        if final.endswith("ROLLBACK_COMPLETE") or final.endswith("FAILED"):
            stack.reason = "The following resource(s) failed to create: [Table]."
        if self.next_outputs:
            stack.outputs = dict(self.next_outputs)
        stack.events = list(self.next_events)
        self.next_pending = []
        self.next_final_status = None
        self.next_outputs = {}
        self.next_events = []

    # boto3 surface

    def describe_stacks(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_stacks", kwargs)
        name = kwargs["StackName"]
        stack = self.stacks.get(name)
        if stack is None:
            raise client_error("DescribeStacks", f"Stack with id {name} does not exist")
        return {"Stacks": [stack.describe()]}

    def create_stack(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_stack", kwargs)
        name = kwargs["StackName"]
        if name in self.stacks:
            raise client_error("CreateStack", f"Stack [{name}] already exists", "AlreadyExistsException")
        stack = MockStack(
            name=name,
            template=self._template(kwargs),
            parameters=list(kwargs.get("Parameters", [])),
            capabilities=list(kwargs.get("Capabilities", [])),
            tags=list(kwargs.get("Tags", [])),
            status="CREATE_COMPLETE",
        )
        self.stacks[name] = stack
        self._consume_next(stack, "CREATE_COMPLETE")
        return {"StackId": f"arn:aws:cloudformation:us-east-1:123456789012:stack/{name}/1"}

    def update_stack(self, **kwargs: Any) -> dict[str, Any]:
        self._record("update_stack", kwargs)
        name = kwargs["StackName"]
        stack = self.stacks.get(name)
        if stack is None:
            raise client_error("UpdateStack", f"Stack [{name}] does not exist")
        template = self._template(kwargs)
        parameters = list(kwargs.get("Parameters", []))
        if template == stack.template and parameters == stack.parameters:
            raise client_error("UpdateStack", NO_UPDATES_MESSAGE)
        stack.template = template
        stack.parameters = parameters
        self._consume_next(stack, "UPDATE_COMPLETE")
        return {"StackId": f"arn:aws:cloudformation:us-east-1:123456789012:stack/{name}/1"}

    def delete_stack(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_stack", kwargs)
        name = kwargs["StackName"]
        stack = self.stacks.get(name)
        if stack is None:
            return {}
        if self.delete_pending:
            stack.pending = list(self.delete_pending)
            stack.status = "DELETE_COMPLETE"
            self.delete_pending = []
        else:
            del self.stacks[name]
        return {}

    def describe_stack_events(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_stack_events", kwargs)
        stack = self.stacks.get(kwargs["StackName"])
        return {"StackEvents": list(stack.events) if stack else []}
