"""Collaborator primitives consumed by the orchestrator.

The orchestrator never builds requests itself. It depends on four
primitives, expressed as the ControlPlane protocol:

- invoke: run a create/update/delete, returning an immediate result or a job
- fetch: return the current remote state of one object
- fetch_job: return the current state of an asynchronous job
- fetch_configured: ask whether a change to a type with a "configured"
  endpoint (the firewall) has been applied

ControlPlaneApi implements them over HTTP, driven by ResourceType
descriptors. Tests substitute an in-memory implementation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .client import ApiResponse, ControlPlaneClient
from .errors import RemoteOperationFailed, UnsupportedOperation
from .identity import RemoteResourceRef
from .models import JobHandle, NodeState, decode, decode_list
from .resource_types import INSTANCE_PATH, ResourceType

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    """One requested change. Not persisted.

    Create operations carry no target; the parent of a parent-scoped create
    travels in params under the type's parent_param. Updates of types that
    cannot be read back are planned against `recorded`, the params last
    applied.
    """

    kind: OperationKind
    params: Mapping[str, Any] = field(default_factory=dict)
    target: RemoteResourceRef | None = None
    recorded: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class Submission:
    """Outcome of invoking an operation.

    job is set when the control plane accepted the operation asynchronously.
    """

    payload: Any = None
    job: JobHandle | None = None
    status_code: int | None = None

    @property
    def not_found(self) -> bool:
        return self.status_code in (404, 410)


class ControlPlane(Protocol):
    """Primitives the orchestrator depends on."""

    def invoke(self, resource_type: ResourceType, operation: Operation) -> Submission: ...

    def fetch(self, resource_type: ResourceType, ref: RemoteResourceRef) -> Any: ...

    def fetch_job(self, parent_id: int, job_id: str) -> JobHandle: ...

    def fetch_configured(self, resource_type: ResourceType, ref: RemoteResourceRef) -> bool: ...


def job_from_payload(payload: Any) -> JobHandle | None:
    """Job reference carried by an invoke response, if any."""
    if isinstance(payload, dict) and payload.get("job_id"):
        return JobHandle(id=str(payload["job_id"]))
    return None


class ControlPlaneApi:
    """HTTP implementation of the ControlPlane protocol."""

    def __init__(self, client: ControlPlaneClient) -> None:
        self._client = client

    @property
    def client(self) -> ControlPlaneClient:
        return self._client

    def invoke(self, resource_type: ResourceType, operation: Operation) -> Submission:
        """Run a create, update or delete against the control plane.

        A 404/410 on delete is returned (the object is already gone). On
        create and update it means the parent is gone, which is a failure.
        Types cleared on delete get a PUT of their empty body instead.
        """
        params = dict(operation.params)
        query = dict(resource_type.query) or None

        if operation.kind == OperationKind.CREATE:
            parent_id = resource_type.parent_of_params(params)
            method = "POST"
            path = resource_type.collection_path(parent_id)
            body: Any = resource_type.request_body(params)
        else:
            if operation.target is None:
                raise ValueError(f"{operation.kind.value} requires a target reference")
            if operation.kind == OperationKind.UPDATE:
                method = "PUT"
                path = resource_type.update_path(operation.target)
                body = resource_type.request_body(params, operation.target)
            elif resource_type.clear_on_delete:
                method = "PUT"
                path = resource_type.update_path(operation.target)
                body = resource_type.cleared_body()
            else:
                method = "DELETE"
                path = resource_type.item_path(operation.target)
                body = None

        logger.info(
            "Invoking remote operation",
            extra={
                "resource_type": resource_type.name,
                "operation": operation.kind.value,
                "method": method,
                "path": path,
            },
        )
        response = self._client.request(method, path, json=body, params=query)

        if response.is_not_found and operation.kind != OperationKind.DELETE:
            raise RemoteOperationFailed(
                f"{resource_type.name} {operation.kind.value} target not found",
                status_code=response.status_code,
                payload=response.body,
            )

        return Submission(
            payload=response.body,
            job=job_from_payload(response.body),
            status_code=response.status_code,
        )

    def fetch(self, resource_type: ResourceType, ref: RemoteResourceRef) -> ApiResponse:
        """Current remote state of one object, as an ApiResponse.

        Collection lookups are narrowed to the matching element, or a 404
        when nothing matches. Singletons reporting an empty marker field come
        back without a body, which reads as absent. Array bodies of list_body
        types are wrapped under that key.
        """
        if not resource_type.readable:
            raise UnsupportedOperation(resource_type.name, "read")
        response = self._client.get(resource_type.read_path(ref))
        if response.is_not_found or not response.has_body:
            return response

        body = response.body
        if resource_type.list_body is not None:
            if not isinstance(body, list):
                raise RemoteOperationFailed(
                    f"expected a list of {resource_type.name} entries",
                    status_code=response.status_code,
                    payload=body,
                )
            return ApiResponse(status_code=response.status_code, body={resource_type.list_body: body})

        if resource_type.lookup_field is not None:
            if not isinstance(body, list):
                raise RemoteOperationFailed(
                    f"expected a list of {resource_type.name} objects",
                    status_code=response.status_code,
                    payload=body,
                )
            for item in body:
                if isinstance(item, dict) and str(item.get(resource_type.lookup_field)) == ref.resource_id:
                    return ApiResponse(status_code=response.status_code, body=item)
            return ApiResponse(status_code=404)

        if resource_type.empty_marker is not None and isinstance(body, dict):
            if not body.get(resource_type.empty_marker):
                return ApiResponse(status_code=response.status_code)

        return response

    def fetch_job(self, parent_id: int, job_id: str) -> JobHandle:
        response = self._client.get(f"{INSTANCE_PATH}/{parent_id}/jobs/{job_id}")
        if response.is_not_found:
            raise RemoteOperationFailed(
                "job not found", status_code=response.status_code, job_id=job_id
            )
        return decode(JobHandle, response.body)

    def fetch_configured(self, resource_type: ResourceType, ref: RemoteResourceRef) -> bool:
        """True once the last change has been applied on every node.

        The configured endpoint answers 400 while the change is in progress.
        """
        try:
            response = self._client.get(resource_type.configured_path(ref))
        except RemoteOperationFailed as e:
            if e.status_code == 400:
                logger.debug(
                    "Not configured yet",
                    extra={"resource_type": resource_type.name, "ref": ref.format()},
                )
                return False
            raise
        if response.is_not_found:
            raise RemoteOperationFailed(
                f"{resource_type.name} configured status not found",
                status_code=response.status_code,
                payload=response.body,
            )
        return True

    # -------------------------------------------------------------------------
    # Instance actions
    # -------------------------------------------------------------------------

    def list_nodes(self, instance_id: int) -> list[NodeState]:
        """Nodes of an instance. An instance that is gone has no nodes."""
        response = self._client.get(f"{INSTANCE_PATH}/{instance_id}/nodes")
        if response.is_not_found or not response.has_body:
            return []
        return decode_list(NodeState, response.body)

    def upgrade_rabbitmq(self, instance_id: int, version: str | None = None) -> ApiResponse:
        """Request a broker upgrade, to `version` or the latest available one.

        200 from the latest-version endpoint means nothing to upgrade; 202
        means the upgrade started.
        """
        if version:
            return self._client.post(
                f"{INSTANCE_PATH}/{instance_id}/actions/upgrade-rabbitmq",
                json={"version": version},
            )
        return self._client.post(f"{INSTANCE_PATH}/{instance_id}/actions/upgrade-rabbitmq-erlang")
