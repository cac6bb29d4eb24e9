"""Pydantic result models for control plane payloads.

Every payload coming back from the control plane is decoded into an explicit
per-resource-type model before the core looks at it. Decoding fails loudly on
unexpected shapes (unknown keys included) instead of silently ignoring them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DecodeError

# Request fields masked before anything is logged
SENSITIVE_FIELDS: frozenset[str] = frozenset({
    "apikey",
    "url",
    "cacertfile",
    "certificates",
    "ca",
    "cert",
    "private_key",
    "password",
})

MASK = "***"


class RemoteModel(BaseModel):
    """Base for all decoded payloads."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# =============================================================================
# Jobs
# =============================================================================


class JobStatus(str, Enum):
    """Status reported for an asynchronous job.

    SUCCEEDED and FAILED are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class JobCreation(RemoteModel):
    """Reference returned when the control plane accepts an async operation."""

    job_id: str


class JobHandle(RemoteModel):
    """Remote-tracked asynchronous unit of work.

    Mutated only by re-polling the control plane.
    """

    job_id: str = Field(alias="id")
    status: JobStatus = JobStatus.PENDING
    failure_reason: str | None = Field(None, alias="error_message")
    account_id: str | None = None
    resource_id: str | None = None
    resource_type: str | None = None
    resource_action: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# =============================================================================
# Instances
# =============================================================================


class InstanceUrls(RemoteModel):
    external: str = Field("", repr=False)
    internal: str = Field("", repr=False)


class InstanceVpc(RemoteModel):
    id: int
    subnet: str = ""


class InstanceState(RemoteModel):
    """A hosted message broker instance."""

    id: int
    name: str
    plan: str
    region: str
    tags: list[str] = Field(default_factory=list)
    url: str = Field("", repr=False)
    ready: bool = False
    apikey: str = Field("", repr=False)
    backend: str = ""
    nodes: int = 0
    vpc: InstanceVpc | None = None
    urls: InstanceUrls | None = None
    rmq_version: str = ""
    hostname_external: str = ""
    hostname_internal: str = ""


class NodeState(RemoteModel):
    """One node of an instance."""

    name: str
    hostname: str = ""
    hostname_internal: str = ""
    running: bool = False
    configured: bool = False
    rabbitmq_version: str = ""
    erlang_version: str = ""
    disk_size: int = 0
    additional_disk_size: int = 0
    availability_zone: str = ""
    hipe: bool = False


# =============================================================================
# Network
# =============================================================================


class VpcState(RemoteModel):
    """A standalone VPC that instances can be placed in."""

    id: int
    name: str
    region: str
    subnet: str
    tags: list[str] = Field(default_factory=list)
    vpc_name: str = ""


class FirewallRule(RemoteModel):
    """One allow-list entry. Services are named ports (AMQPS, HTTPS, ...)."""

    ip: str
    services: list[str] = Field(default_factory=list)
    ports: list[int] = Field(default_factory=list)
    description: str | None = None


class FirewallState(RemoteModel):
    """Firewall of an instance. The API reads and writes it as a bare array."""

    rules: list[FirewallRule]


class CustomCertificateState(RemoteModel):
    """Custom TLS certificate of an instance.

    The control plane has no read endpoint for it, so this model only
    describes what a create sends.
    """

    ca: str = Field(repr=False)
    cert: str = Field(repr=False)
    private_key: str = Field(repr=False)
    sni_hosts: str


# =============================================================================
# Monitoring
# =============================================================================


class AlarmState(RemoteModel):
    """An alarm belonging to an instance."""

    id: int
    type: str
    enabled: bool
    reminder_interval: int | None = None
    value_threshold: int | None = None
    value_calculation: str | None = None
    time_threshold: int | None = None
    vhost_regex: str | None = None
    queue_regex: str | None = None
    message_type: str | None = None
    recipients: list[int] | None = None


class NotificationState(RemoteModel):
    """An alarm recipient belonging to an instance."""

    id: int
    type: str
    value: str
    name: str | None = None
    options: dict[str, str] | None = None


# =============================================================================
# Plugins
# =============================================================================


class PluginState(RemoteModel):
    """A RabbitMQ plugin (core or community) on an instance."""

    name: str
    version: str = ""
    description: str = ""
    enabled: bool = False
    required: bool = False


# =============================================================================
# Instance configuration
# =============================================================================


class TrustStoreState(RemoteModel):
    """Trust store configuration of an instance."""

    configuration_id: str = Field(alias="id")
    url: str | None = None
    refresh_interval: int = 30
    provider: str


class OAuth2ConfigurationState(RemoteModel):
    """OAuth2 configuration of an instance."""

    configuration_id: str = Field(alias="id")
    cluster_id: int | None = None
    resource_server_id: str
    issuer: str
    preferred_username_claims: list[str] | None = None
    additional_scopes_key: list[str] | None = None
    scope_prefix: str | None = None
    scope_aliases: dict[str, str] | None = None
    verify_aud: bool | None = None
    oauth_client_id: str | None = None
    oauth_scopes: list[str] | None = None
    audience: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =============================================================================
# Decoding
# =============================================================================

M = TypeVar("M", bound=BaseModel)


def decode(model: type[M], payload: Any) -> M:
    """Decode a payload into a result model.

    Raises:
        DecodeError: If the payload does not match the model.
    """
    if not isinstance(payload, dict):
        raise DecodeError(model.__name__, f"expected an object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(part) for part in error["loc"])
            errors.append(f"{loc}: {error['msg']}")
        raise DecodeError(model.__name__, "; ".join(errors)) from e


def decode_list(model: type[M], payload: Any) -> list[M]:
    """Decode a JSON array into a list of result models."""
    if not isinstance(payload, list):
        raise DecodeError(model.__name__, f"expected an array, got {type(payload).__name__}")
    return [decode(model, item) for item in payload]


def sanitized(params: dict[str, Any] | None) -> dict[str, Any]:
    """Copy of request params with secrets masked, for logging."""
    if not params:
        return {}
    return {key: (MASK if key in SENSITIVE_FIELDS and value else value) for key, value in params.items()}
