"""Domain clients backed by Google Cloud REST APIs (google-api-python-client).

Each discovery request runs in the default executor, bounded by its
per-resource timeout and the caller's cancellation event. HTTP errors are
mapped onto the shared taxonomy:

    404 -> NotFoundError
    409 -> AlreadyExistsError
    any other -> OperationFailedError(action, [reason])

Long-running operations are waited on with the shared poller. Compute
Engine operations finish at ``status == "DONE"``; every other API reports
``done: true``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import google.auth
from googleapiclient import discovery
from googleapiclient.errors import HttpError

from . import config as cfg
from .clients import ServiceClients, ServiceSpec
from .errors import AlreadyExistsError, NotFoundError, OperationFailedError
from .poller import PollResult, PollSettings, poll_until_done, run_blocking, run_with_deadline

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409

INVOKER_ROLE = "roles/run.invoker"
ALL_USERS = "allUsers"

FIELD_INDEX = {"queryScope": "COLLECTION", "order": "ASCENDING"}

COMPUTE_OPERATION_DONE = "DONE"


def http_status(error: HttpError) -> int:
    return int(getattr(error.resp, "status", 0) or 0)


def http_reason(error: HttpError) -> str:
    return getattr(error, "reason", "") or str(error)


def classify_done_operation(operation: dict[str, Any]) -> PollResult:
    """Operations that report ``done`` (Cloud Run, Artifact Registry, VPC Access, ...)."""
    if not operation.get("done"):
        return PollResult.in_progress("RUNNING")
    error = operation.get("error")
    if error:
        return PollResult.failed("DONE", (error.get("message") or f"code {error.get('code')}",))
    return PollResult.succeeded("DONE")


def classify_compute_operation(operation: dict[str, Any]) -> PollResult:
    status = operation.get("status", "")
    if status != COMPUTE_OPERATION_DONE:
        return PollResult.in_progress(status)
    errors = (operation.get("error") or {}).get("errors") or []
    if errors:
        return PollResult.failed(status, tuple(e.get("message", "") for e in errors))
    return PollResult.succeeded(status)


def binding_exists(bindings: list[dict[str, Any]], role: str, member: str) -> bool:
    return any(b.get("role") == role and member in b.get("members", []) for b in bindings)


def remove_binding(bindings: list[dict[str, Any]], role: str, member: str) -> list[dict[str, Any]]:
    """Drop ``member`` from ``role``; bindings left with no members are removed."""
    result = []
    for binding in bindings:
        if binding.get("role") != role:
            result.append(binding)
            continue
        members = [m for m in binding.get("members", []) if m != member]
        if members:
            result.append({**binding, "members": members})
    return result


def has_field_index(field: dict[str, Any]) -> bool:
    """True if the field already carries an ascending collection-scoped index."""
    for index in field.get("indexConfig", {}).get("indexes", []):
        if index.get("queryScope") != FIELD_INDEX["queryScope"]:
            continue
        orders = [index.get("order")] + [f.get("order") for f in index.get("fields", [])]
        if FIELD_INDEX["order"] in orders:
            return True
    return False


def add_binding(policy: dict[str, Any], role: str, member: str) -> bool:
    """Add member to the role's binding. Returns True if the policy changed."""
    bindings = policy.setdefault("bindings", [])
    if binding_exists(bindings, role, member):
        return False
    for binding in bindings:
        if binding.get("role") == role:
            binding.setdefault("members", []).append(member)
            return True
    bindings.append({"role": role, "members": [member]})
    return True


class RestClient:
    """Shared request execution and operation waiting for one discovery service."""

    def __init__(
        self,
        service: Any,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float = cfg.RESOURCE_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._service = service
        self._timeout_seconds = timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds

    async def _execute(
        self,
        request: Any,
        action: str,
        cancel_event: asyncio.Event | None,
    ) -> dict[str, Any]:
        try:
            return await run_with_deadline(
                run_blocking(request.execute),
                operation=action,
                timeout_seconds=self._timeout_seconds,
                cancel_event=cancel_event,
            )
        except HttpError as e:
            status = http_status(e)
            if status == HTTP_NOT_FOUND:
                raise NotFoundError(f"{action}: {http_reason(e)}") from e
            if status == HTTP_CONFLICT:
                raise AlreadyExistsError(f"{action}: {http_reason(e)}") from e
            raise OperationFailedError(action, [http_reason(e)]) from e

    async def _exists(
        self, request: Any, action: str, cancel_event: asyncio.Event | None
    ) -> bool:
        try:
            await self._execute(request, action, cancel_event)
        except NotFoundError:
            return False
        return True

    async def _delete(
        self, request: Any, action: str, cancel_event: asyncio.Event | None
    ) -> dict[str, Any] | None:
        """Execute a delete; not-found counts as already deleted and returns None."""
        try:
            return await self._execute(request, action, cancel_event)
        except NotFoundError:
            logger.debug("Resource already absent", extra={"action": action})
            return None

    async def _wait(
        self,
        get_request: Callable[[], Any],
        classify: Callable[[dict[str, Any]], PollResult],
        action: str,
        cancel_event: asyncio.Event | None,
    ) -> dict[str, Any]:
        async def fetch() -> dict[str, Any]:
            return await self._execute(get_request(), f"poll {action}", cancel_event)

        return await poll_until_done(
            fetch,
            classify,
            settings=PollSettings(self._poll_interval_seconds, self._timeout_seconds),
            operation=action,
            cancel_event=cancel_event,
        )


def _locations_parent(project_id: str, region: str) -> str:
    return f"projects/{project_id}/locations/{region}"


def _network_path(project_id: str, vpc_name: str) -> str:
    return f"projects/{project_id}/global/networks/{vpc_name}"


class RestIdentityClient(RestClient):
    """IAM service accounts plus project policy bindings (Resource Manager v3)."""

    def __init__(self, iam_service: Any, resource_manager: Any, **kwargs: Any) -> None:
        super().__init__(iam_service, timeout_seconds=cfg.SERVICE_ACCOUNT_TIMEOUT_SECONDS, **kwargs)
        self._policies = RestClient(
            resource_manager, timeout_seconds=cfg.IAM_BINDING_TIMEOUT_SECONDS, **kwargs
        )
        self._resource_manager = resource_manager

    def _accounts(self) -> Any:
        return self._service.projects().serviceAccounts()

    async def service_account_exists(
        self, project_id: str, email: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        request = self._accounts().get(name=f"projects/{project_id}/serviceAccounts/{email}")
        return await self._exists(request, "get service account", cancel_event)

    async def create_service_account(
        self,
        project_id: str,
        account_id: str,
        display_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        request = self._accounts().create(
            name=f"projects/{project_id}",
            body={"accountId": account_id, "serviceAccount": {"displayName": display_name}},
        )
        account = await self._execute(request, "create service account", cancel_event)
        return account["email"]

    async def delete_service_account(
        self, project_id: str, email: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._accounts().delete(name=f"projects/{project_id}/serviceAccounts/{email}")
        await self._delete(request, "delete service account", cancel_event)

    async def add_iam_binding(
        self, project_id: str, member: str, role: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        projects = self._resource_manager.projects()
        resource = f"projects/{project_id}"
        policy = await self._policies._execute(
            projects.getIamPolicy(resource=resource, body={}),
            "get project iam policy",
            cancel_event,
        )
        if not add_binding(policy, role, member):
            return
        await self._policies._execute(
            projects.setIamPolicy(resource=resource, body={"policy": policy}),
            "set project iam policy",
            cancel_event,
        )


class RestComputeClient(RestClient):
    """Compute Engine networks, subnetworks and firewall rules."""

    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.VPC_OPERATION_TIMEOUT_SECONDS, **kwargs)

    async def _wait_global(
        self,
        project_id: str,
        operation: dict[str, Any],
        action: str,
        cancel_event: asyncio.Event | None,
    ) -> None:
        await self._wait(
            lambda: self._service.globalOperations().get(
                project=project_id, operation=operation["name"]
            ),
            classify_compute_operation,
            action,
            cancel_event,
        )

    async def _wait_regional(
        self,
        project_id: str,
        region: str,
        operation: dict[str, Any],
        action: str,
        cancel_event: asyncio.Event | None,
    ) -> None:
        await self._wait(
            lambda: self._service.regionOperations().get(
                project=project_id, region=region, operation=operation["name"]
            ),
            classify_compute_operation,
            action,
            cancel_event,
        )

    async def vpc_exists(
        self, project_id: str, vpc_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        request = self._service.networks().get(project=project_id, network=vpc_name)
        return await self._exists(request, "get vpc network", cancel_event)

    async def create_vpc(
        self, project_id: str, vpc_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        # Custom subnet mode; autoCreateSubnetworks must be sent explicitly as false
        body = {
            "name": vpc_name,
            "autoCreateSubnetworks": False,
            "routingConfig": {"routingMode": "REGIONAL"},
        }
        request = self._service.networks().insert(project=project_id, body=body)
        operation = await self._execute(request, "create vpc network", cancel_event)
        await self._wait_global(project_id, operation, "vpc creation", cancel_event)

    async def delete_vpc(
        self, project_id: str, vpc_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._service.networks().delete(project=project_id, network=vpc_name)
        operation = await self._delete(request, "delete vpc network", cancel_event)
        if operation:
            await self._wait_global(project_id, operation, "vpc deletion", cancel_event)

    async def subnet_exists(
        self,
        project_id: str,
        region: str,
        subnet_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        request = self._service.subnetworks().get(
            project=project_id, region=region, subnetwork=subnet_name
        )
        return await self._exists(request, "get subnet", cancel_event)

    async def create_subnet(
        self,
        project_id: str,
        region: str,
        subnet_name: str,
        vpc_name: str,
        cidr_range: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        body = {
            "name": subnet_name,
            "ipCidrRange": cidr_range,
            "network": _network_path(project_id, vpc_name),
        }
        request = self._service.subnetworks().insert(project=project_id, region=region, body=body)
        operation = await self._execute(request, "create subnet", cancel_event)
        await self._wait_regional(project_id, region, operation, "subnet creation", cancel_event)

    async def delete_subnet(
        self,
        project_id: str,
        region: str,
        subnet_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        request = self._service.subnetworks().delete(
            project=project_id, region=region, subnetwork=subnet_name
        )
        operation = await self._delete(request, "delete subnet", cancel_event)
        if operation:
            await self._wait_regional(project_id, region, operation, "subnet deletion", cancel_event)

    async def firewall_rule_exists(
        self, project_id: str, rule_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        request = self._service.firewalls().get(project=project_id, firewall=rule_name)
        return await self._exists(request, "get firewall rule", cancel_event)

    async def create_firewall_rule(
        self,
        project_id: str,
        rule_name: str,
        vpc_name: str,
        direction: str,
        allowed: list[str],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        body: dict[str, Any] = {
            "name": rule_name,
            "network": _network_path(project_id, vpc_name),
            "direction": direction,
            "allowed": [{"IPProtocol": proto} for proto in allowed],
        }
        if direction == "EGRESS":
            body["destinationRanges"] = ["0.0.0.0/0"]
        else:
            body["sourceRanges"] = ["0.0.0.0/0"]
        request = self._service.firewalls().insert(project=project_id, body=body)
        operation = await self._execute(request, "create firewall rule", cancel_event)
        await self._wait_global(project_id, operation, "firewall creation", cancel_event)

    async def delete_firewall_rule(
        self, project_id: str, rule_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._service.firewalls().delete(project=project_id, firewall=rule_name)
        operation = await self._delete(request, "delete firewall rule", cancel_event)
        if operation:
            await self._wait_global(project_id, operation, "firewall deletion", cancel_event)


class RestVPCAccessClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.VPC_CONNECTOR_TIMEOUT_SECONDS, **kwargs)

    def _connectors(self) -> Any:
        return self._service.projects().locations().connectors()

    async def _wait_operation(
        self, operation: dict[str, Any], action: str, cancel_event: asyncio.Event | None
    ) -> None:
        await self._wait(
            lambda: self._service.projects().locations().operations().get(name=operation["name"]),
            classify_done_operation,
            action,
            cancel_event,
        )

    async def connector_exists(
        self,
        project_id: str,
        region: str,
        connector_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        name = f"{_locations_parent(project_id, region)}/connectors/{connector_name}"
        return await self._exists(self._connectors().get(name=name), "get vpc connector", cancel_event)

    async def create_connector(
        self,
        project_id: str,
        region: str,
        connector_name: str,
        network: str,
        ip_range: str,
        min_instances: int,
        max_instances: int,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        body = {
            "network": network,
            "ipCidrRange": ip_range,
            "minInstances": min_instances,
            "maxInstances": max_instances,
            "machineType": cfg.VPC_CONNECTOR_MACHINE_TYPE,
        }
        request = self._connectors().create(
            parent=_locations_parent(project_id, region), connectorId=connector_name, body=body
        )
        operation = await self._execute(request, "create vpc connector", cancel_event)
        await self._wait_operation(operation, "vpc connector creation", cancel_event)

    async def delete_connector(
        self,
        project_id: str,
        region: str,
        connector_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        name = f"{_locations_parent(project_id, region)}/connectors/{connector_name}"
        operation = await self._delete(self._connectors().delete(name=name), "delete vpc connector", cancel_event)
        if operation:
            await self._wait_operation(operation, "vpc connector deletion", cancel_event)


class RestFirestoreClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.FIRESTORE_OPERATION_TIMEOUT_SECONDS, **kwargs)

    def _databases(self) -> Any:
        return self._service.projects().databases()

    async def _wait_operation(
        self, operation: dict[str, Any], action: str, cancel_event: asyncio.Event | None
    ) -> None:
        if operation.get("done"):
            classify_result = classify_done_operation(operation)
            if classify_result.messages:
                raise OperationFailedError(action, classify_result.messages)
            return
        await self._wait(
            lambda: self._databases().operations().get(name=operation["name"]),
            classify_done_operation,
            action,
            cancel_event,
        )

    async def database_exists(
        self, project_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        name = f"projects/{project_id}/databases/{cfg.FIRESTORE_DATABASE_ID}"
        return await self._exists(self._databases().get(name=name), "get firestore database", cancel_event)

    async def create_database(
        self, project_id: str, location_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._databases().create(
            parent=f"projects/{project_id}",
            databaseId=cfg.FIRESTORE_DATABASE_ID,
            body={"type": "FIRESTORE_NATIVE", "locationId": location_id},
        )
        operation = await self._execute(request, "create firestore database", cancel_event)
        await self._wait_operation(operation, "firestore database creation", cancel_event)

    async def ensure_field_index(
        self,
        project_id: str,
        collection: str,
        field_path: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        name = (
            f"projects/{project_id}/databases/{cfg.FIRESTORE_DATABASE_ID}"
            f"/collectionGroups/{collection}/fields/{field_path}"
        )
        fields = self._databases().collectionGroups().fields()
        try:
            current = await self._execute(fields.get(name=name), "get firestore field", cancel_event)
        except NotFoundError:
            current = {}
        if has_field_index(current):
            logger.debug("Firestore index already configured", extra={"field": f"{collection}.{field_path}"})
            return

        body = {"indexConfig": {"indexes": [FIELD_INDEX]}}
        request = fields.patch(name=name, body=body, updateMask="indexConfig")
        operation = await self._execute(request, "create firestore index", cancel_event)
        await self._wait_operation(operation, f"firestore index {collection}.{field_path}", cancel_event)


class RestKMSClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.KMS_OPERATION_TIMEOUT_SECONDS, **kwargs)

    def _key_rings(self) -> Any:
        return self._service.projects().locations().keyRings()

    @staticmethod
    def _key_name(project_id: str, location_id: str, key_ring_id: str, crypto_key_id: str) -> str:
        return (
            f"{_locations_parent(project_id, location_id)}/keyRings/{key_ring_id}"
            f"/cryptoKeys/{crypto_key_id}"
        )

    async def key_ring_exists(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        name = f"{_locations_parent(project_id, location_id)}/keyRings/{key_ring_id}"
        return await self._exists(self._key_rings().get(name=name), "get kms key ring", cancel_event)

    async def create_key_ring(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        request = self._key_rings().create(
            parent=_locations_parent(project_id, location_id), keyRingId=key_ring_id, body={}
        )
        await self._execute(request, "create kms key ring", cancel_event)

    async def crypto_key_exists(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        crypto_key_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        name = self._key_name(project_id, location_id, key_ring_id, crypto_key_id)
        request = self._key_rings().cryptoKeys().get(name=name)
        return await self._exists(request, "get kms crypto key", cancel_event)

    async def create_crypto_key(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        crypto_key_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        parent = f"{_locations_parent(project_id, location_id)}/keyRings/{key_ring_id}"
        request = self._key_rings().cryptoKeys().create(
            parent=parent, cryptoKeyId=crypto_key_id, body={"purpose": "ENCRYPT_DECRYPT"}
        )
        key = await self._execute(request, "create kms crypto key", cancel_event)
        return key["name"]

    async def get_crypto_key_id(
        self,
        project_id: str,
        location_id: str,
        key_ring_id: str,
        crypto_key_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        name = self._key_name(project_id, location_id, key_ring_id, crypto_key_id)
        key = await self._execute(self._key_rings().cryptoKeys().get(name=name), "get kms crypto key id", cancel_event)
        return key["name"]


class RestPubSubClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.PUBSUB_OPERATION_TIMEOUT_SECONDS, **kwargs)

    @staticmethod
    def _topic_name(project_id: str, topic_id: str) -> str:
        return f"projects/{project_id}/topics/{topic_id}"

    @staticmethod
    def _subscription_name(project_id: str, subscription_id: str) -> str:
        return f"projects/{project_id}/subscriptions/{subscription_id}"

    async def topic_exists(
        self, project_id: str, topic_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        request = self._service.projects().topics().get(topic=self._topic_name(project_id, topic_id))
        return await self._exists(request, "get pubsub topic", cancel_event)

    async def create_topic(
        self,
        project_id: str,
        topic_id: str,
        *,
        labels: dict[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        request = self._service.projects().topics().create(
            name=self._topic_name(project_id, topic_id), body={"labels": dict(labels or {})}
        )
        await self._execute(request, "create pubsub topic", cancel_event)

    async def delete_topic(
        self, project_id: str, topic_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._service.projects().topics().delete(topic=self._topic_name(project_id, topic_id))
        await self._delete(request, "delete pubsub topic", cancel_event)

    async def subscription_exists(
        self, project_id: str, subscription_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        request = self._service.projects().subscriptions().get(
            subscription=self._subscription_name(project_id, subscription_id)
        )
        return await self._exists(request, "get pubsub subscription", cancel_event)

    async def create_subscription(
        self,
        project_id: str,
        subscription_id: str,
        topic_id: str,
        push_endpoint: str,
        *,
        service_account: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        push_config: dict[str, Any] = {"pushEndpoint": push_endpoint}
        if service_account:
            push_config["oidcToken"] = {"serviceAccountEmail": service_account}
        request = self._service.projects().subscriptions().create(
            name=self._subscription_name(project_id, subscription_id),
            body={"topic": self._topic_name(project_id, topic_id), "pushConfig": push_config},
        )
        await self._execute(request, "create pubsub subscription", cancel_event)

    async def delete_subscription(
        self, project_id: str, subscription_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._service.projects().subscriptions().delete(
            subscription=self._subscription_name(project_id, subscription_id)
        )
        await self._delete(request, "delete pubsub subscription", cancel_event)


class RestArtifactRegistryClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.ARTIFACT_REGISTRY_TIMEOUT_SECONDS, **kwargs)

    def _repositories(self) -> Any:
        return self._service.projects().locations().repositories()

    async def _wait_operation(
        self, operation: dict[str, Any], action: str, cancel_event: asyncio.Event | None
    ) -> None:
        await self._wait(
            lambda: self._service.projects().locations().operations().get(name=operation["name"]),
            classify_done_operation,
            action,
            cancel_event,
        )

    async def repository_exists(
        self,
        project_id: str,
        location: str,
        repo_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        name = f"{_locations_parent(project_id, location)}/repositories/{repo_id}"
        return await self._exists(self._repositories().get(name=name), "get artifact registry repository", cancel_event)

    async def create_repository(
        self,
        project_id: str,
        location: str,
        repo_id: str,
        *,
        labels: dict[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        request = self._repositories().create(
            parent=_locations_parent(project_id, location),
            repositoryId=repo_id,
            body={"format": "DOCKER", "labels": dict(labels or {})},
        )
        operation = await self._execute(request, "create artifact registry repository", cancel_event)
        await self._wait_operation(operation, "artifact registry repository creation", cancel_event)

    async def delete_repository(
        self,
        project_id: str,
        location: str,
        repo_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        name = f"{_locations_parent(project_id, location)}/repositories/{repo_id}"
        operation = await self._delete(
            self._repositories().delete(name=name), "delete artifact registry repository", cancel_event
        )
        if operation:
            await self._wait_operation(operation, "artifact registry repository deletion", cancel_event)


def build_run_template(project_id: str, region: str, spec: ServiceSpec) -> dict[str, Any]:
    """Cloud Run v2 revision template for ``spec``; zero values fall back to defaults."""
    template: dict[str, Any] = {
        "containers": [
            {
                "image": spec.image,
                "env": [{"name": k, "value": v} for k, v in sorted(spec.env.items())],
            }
        ],
        "scaling": {
            "minInstanceCount": spec.min_instances,
            "maxInstanceCount": spec.max_instances or cfg.DEFAULT_MAX_INSTANCES,
        },
        "timeout": f"{spec.timeout_seconds or cfg.DEFAULT_TIMEOUT_SECONDS}s",
    }
    if spec.service_account:
        template["serviceAccount"] = spec.service_account
    if spec.vpc_connector:
        template["vpcAccess"] = {
            "connector": f"{_locations_parent(project_id, region)}/connectors/{spec.vpc_connector}",
            "egress": "ALL_TRAFFIC",
        }
    elif spec.vpc_network or spec.vpc_subnetwork:
        template["vpcAccess"] = {
            "networkInterfaces": [
                {"network": spec.vpc_network, "subnetwork": spec.vpc_subnetwork}
            ],
            "egress": "ALL_TRAFFIC",
        }
    return template


class RestCloudRunClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.CLOUD_RUN_OPERATION_TIMEOUT_SECONDS, **kwargs)

    def _services(self) -> Any:
        return self._service.projects().locations().services()

    @staticmethod
    def _service_name(project_id: str, region: str, service_name: str) -> str:
        return f"{_locations_parent(project_id, region)}/services/{service_name}"

    async def _wait_operation(
        self, operation: dict[str, Any], action: str, cancel_event: asyncio.Event | None
    ) -> None:
        await self._wait(
            lambda: self._service.projects().locations().operations().get(name=operation["name"]),
            classify_done_operation,
            action,
            cancel_event,
        )

    async def get_service_url(
        self,
        project_id: str,
        region: str,
        service_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str | None:
        request = self._services().get(name=self._service_name(project_id, region, service_name))
        try:
            service = await self._execute(request, "get cloud run service", cancel_event)
        except NotFoundError:
            return None
        return service.get("uri", "")

    async def create_service(
        self,
        project_id: str,
        region: str,
        spec: ServiceSpec,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        body = {
            "template": build_run_template(project_id, region, spec),
            "labels": dict(spec.labels),
        }
        request = self._services().create(
            parent=_locations_parent(project_id, region), serviceId=spec.name, body=body
        )
        operation = await self._execute(request, "create cloud run service", cancel_event)
        await self._wait_operation(operation, f"cloud run creation of {spec.name}", cancel_event)

        created = await self._execute(
            self._services().get(name=self._service_name(project_id, region, spec.name)),
            "get cloud run service uri",
            cancel_event,
        )
        return created.get("uri", "")

    async def update_service(
        self,
        project_id: str,
        region: str,
        spec: ServiceSpec,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        name = self._service_name(project_id, region, spec.name)
        current = await self._execute(self._services().get(name=name), "get cloud run service", cancel_event)
        template = current.get("template") or {}
        template.update(build_run_template(project_id, region, spec))

        request = self._services().patch(name=name, body={"template": template}, updateMask="template")
        operation = await self._execute(request, "update cloud run service", cancel_event)
        await self._wait_operation(operation, f"cloud run update of {spec.name}", cancel_event)

    async def delete_service(
        self,
        project_id: str,
        region: str,
        service_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        request = self._services().delete(name=self._service_name(project_id, region, service_name))
        operation = await self._delete(request, "delete cloud run service", cancel_event)
        if operation:
            await self._wait_operation(operation, f"cloud run deletion of {service_name}", cancel_event)

    async def set_public_access(
        self,
        project_id: str,
        region: str,
        service_name: str,
        allow_unauthenticated: bool,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        resource = self._service_name(project_id, region, service_name)
        policy = await self._execute(
            self._services().getIamPolicy(resource=resource), "get cloud run iam policy", cancel_event
        )
        bindings = policy.get("bindings", [])
        if allow_unauthenticated:
            if binding_exists(bindings, INVOKER_ROLE, ALL_USERS):
                return
            policy["bindings"] = bindings + [{"role": INVOKER_ROLE, "members": [ALL_USERS]}]
        else:
            if not binding_exists(bindings, INVOKER_ROLE, ALL_USERS):
                return
            policy["bindings"] = remove_binding(bindings, INVOKER_ROLE, ALL_USERS)

        await self._execute(
            self._services().setIamPolicy(resource=resource, body={"policy": policy}),
            "set cloud run iam policy",
            cancel_event,
        )


class RestSchedulerClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.SCHEDULER_OPERATION_TIMEOUT_SECONDS, **kwargs)

    def _jobs(self) -> Any:
        return self._service.projects().locations().jobs()

    async def job_exists(
        self,
        project_id: str,
        region: str,
        job_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        name = f"{_locations_parent(project_id, region)}/jobs/{job_id}"
        return await self._exists(self._jobs().get(name=name), "get scheduler job", cancel_event)

    async def create_job(
        self,
        project_id: str,
        region: str,
        job_id: str,
        schedule: str,
        target_url: str,
        http_method: str,
        *,
        service_account: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        parent = _locations_parent(project_id, region)
        http_target: dict[str, Any] = {"uri": target_url, "httpMethod": http_method.upper()}
        if service_account:
            http_target["oidcToken"] = {"serviceAccountEmail": service_account}
        body = {"name": f"{parent}/jobs/{job_id}", "schedule": schedule, "httpTarget": http_target}
        await self._execute(self._jobs().create(parent=parent, body=body), "create scheduler job", cancel_event)

    async def delete_job(
        self,
        project_id: str,
        region: str,
        job_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        name = f"{_locations_parent(project_id, region)}/jobs/{job_id}"
        await self._delete(self._jobs().delete(name=name), "delete scheduler job", cancel_event)


class RestLoggingClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.LOGGING_SINK_TIMEOUT_SECONDS, **kwargs)

    async def sink_exists(
        self, project_id: str, sink_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> bool:
        request = self._service.projects().sinks().get(sinkName=f"projects/{project_id}/sinks/{sink_name}")
        return await self._exists(request, "get log sink", cancel_event)

    async def create_sink(
        self,
        project_id: str,
        sink_name: str,
        filter_expr: str,
        destination: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        request = self._service.projects().sinks().create(
            parent=f"projects/{project_id}",
            body={"name": sink_name, "filter": filter_expr, "destination": destination},
            uniqueWriterIdentity=True,
        )
        await self._execute(request, "create log sink", cancel_event)

    async def delete_sink(
        self, project_id: str, sink_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._service.projects().sinks().delete(sinkName=f"projects/{project_id}/sinks/{sink_name}")
        await self._delete(request, "delete log sink", cancel_event)


class RestServiceUsageClient(RestClient):
    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.SERVICE_USAGE_OPERATION_TIMEOUT_SECONDS, **kwargs)

    async def enable_services(
        self, project_id: str, services: list[str], *, cancel_event: asyncio.Event | None = None
    ) -> None:
        request = self._service.services().batchEnable(
            parent=f"projects/{project_id}", body={"serviceIds": list(services)}
        )
        operation = await self._execute(request, "batch enable services", cancel_event)
        if operation.get("done"):
            result = classify_done_operation(operation)
            if result.messages:
                raise OperationFailedError("batch enable services", result.messages)
            return
        await self._wait(
            lambda: self._service.operations().get(name=operation["name"]),
            classify_done_operation,
            "service enablement",
            cancel_event,
        )


class RestDeploymentManagerClient(RestClient):
    """Thin async wrapper; operation waiting lives in deployment_manager."""

    def __init__(self, service: Any, **kwargs: Any) -> None:
        super().__init__(service, timeout_seconds=cfg.DEFAULT_DEPLOYMENT_OPERATION_TIMEOUT_SECONDS, **kwargs)

    async def get_deployment(
        self, project_id: str, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any]:
        request = self._service.deployments().get(project=project_id, deployment=name)
        return await self._execute(request, "get deployment", cancel_event)

    async def create_deployment(
        self, project_id: str, body: dict[str, Any], *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any]:
        request = self._service.deployments().insert(project=project_id, body=body)
        return await self._execute(request, "create deployment", cancel_event)

    async def update_deployment(
        self,
        project_id: str,
        name: str,
        body: dict[str, Any],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        request = self._service.deployments().update(project=project_id, deployment=name, body=body)
        return await self._execute(request, "update deployment", cancel_event)

    async def delete_deployment(
        self, project_id: str, name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any]:
        request = self._service.deployments().delete(project=project_id, deployment=name)
        return await self._execute(request, "delete deployment", cancel_event)

    async def get_operation(
        self, project_id: str, operation_name: str, *, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any]:
        request = self._service.operations().get(project=project_id, operation=operation_name)
        return await self._execute(request, "get deployment operation", cancel_event)

    async def get_manifest(
        self,
        project_id: str,
        deployment_name: str,
        manifest_name: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        request = self._service.manifests().get(
            project=project_id, deployment=deployment_name, manifest=manifest_name
        )
        return await self._execute(request, "get deployment manifest", cancel_event)


def build_service_clients(
    credentials: Any = None,
    *,
    poll_interval_seconds: float = cfg.RESOURCE_POLL_INTERVAL_SECONDS,
) -> ServiceClients:
    """Build every domain client from Application Default Credentials."""
    if credentials is None:
        credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])

    def build(api: str, version: str) -> Any:
        return discovery.build(api, version, credentials=credentials, cache_discovery=False)

    opts = {"poll_interval_seconds": poll_interval_seconds}
    return ServiceClients(
        identity=RestIdentityClient(build("iam", "v1"), build("cloudresourcemanager", "v3"), **opts),
        compute=RestComputeClient(build("compute", "v1"), **opts),
        vpc_access=RestVPCAccessClient(build("vpcaccess", "v1"), **opts),
        firestore=RestFirestoreClient(build("firestore", "v1"), **opts),
        kms=RestKMSClient(build("cloudkms", "v1"), **opts),
        pubsub=RestPubSubClient(build("pubsub", "v1"), **opts),
        artifact_registry=RestArtifactRegistryClient(build("artifactregistry", "v1"), **opts),
        cloud_run=RestCloudRunClient(build("run", "v2"), **opts),
        scheduler=RestSchedulerClient(build("cloudscheduler", "v1"), **opts),
        logging=RestLoggingClient(build("logging", "v2"), **opts),
        service_usage=RestServiceUsageClient(build("serviceusage", "v1"), **opts),
        deployment_manager=RestDeploymentManagerClient(build("deploymentmanager", "v2"), **opts),
    )
