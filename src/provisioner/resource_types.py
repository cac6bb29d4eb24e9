"""Resource type descriptors.

One orchestrator implementation serves every managed resource type. What
differs between types is data, described here:

- where the type lives on the control plane (collection path, parent scope)
- where a new object's identifier comes from (create payload or params)
- how an object is looked up (item path, or listing the collection)
- what "settled" means after create/update (attribute condition, presence)
- what "gone" means after delete (absence, or an attribute condition)
- default poll interval/timeout and replacement rules
- the pydantic model a fetched payload decodes into

Singleton configuration types (trust store, OAuth2, firewall, custom
certificate) have exactly one object per instance. Their identifier is the
instance identifier itself.

A few types deviate from plain JSON objects with a read endpoint:

- the custom certificate cannot be read back; its key material is
  write-only and never recorded, changes are planned against the params
  last applied
- the firewall takes a bare JSON array of rules and settles through a
  separate "configured" endpoint; deleting it means writing an empty list
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import PollConfig
from .errors import DecodeError, MissingParentIdentifier
from .identity import RemoteResourceRef, parse_parent_id
from .models import (
    AlarmState,
    CustomCertificateState,
    FirewallState,
    InstanceState,
    JobHandle,
    NotificationState,
    OAuth2ConfigurationState,
    PluginState,
    RemoteModel,
    TrustStoreState,
    VpcState,
)
from .replacement import ALWAYS_IN_PLACE, ALWAYS_REPLACE, Rule, plan_category_changed
from .waiters import AttributeCondition

INSTANCE_PATH = "/api/instances"
DEFAULT_PARENT_PARAM = "instance_id"


@dataclass(frozen=True)
class ResourceType:
    """Static description of one managed resource type."""

    name: str
    collection: str
    state_model: type[RemoteModel]
    parent_scoped: bool = False
    singleton: bool = False
    parent_param: str = DEFAULT_PARENT_PARAM
    # Create payload field carrying the new identifier
    id_field: str | None = "id"
    # Param carrying the identifier when the create call returns none
    id_param: str | None = None
    # When set, objects are read by listing the collection and matching this field
    lookup_field: str | None = None
    # Request body key for a param, where the API names it differently
    body_aliases: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    update_on_collection: bool = False
    ready: AttributeCondition | None = None
    # Param overriding the expected value of `ready`
    ready_param: str | None = None
    deleted: AttributeCondition | None = None
    # Field whose empty value means "not configured" on singleton reads
    empty_marker: str | None = None
    poll: PollConfig = field(default_factory=PollConfig)
    replacement_rules: Mapping[str, Rule] = field(default_factory=dict)
    cascades_with_parent: bool = False
    # False when the control plane offers no read endpoint
    readable: bool = True
    # Params sent on create but never recorded or compared
    write_only: frozenset[str] = frozenset()
    # Params that only exist locally (replacement triggers), never sent
    local_params: frozenset[str] = frozenset()
    # Param holding the JSON array the API takes as the whole request body
    list_body: str | None = None
    # Sub-path answering 2xx once a change is applied, 400 while pending
    configured_suffix: str | None = None
    # Delete by writing an empty body instead of calling DELETE
    clear_on_delete: bool = False

    def __post_init__(self) -> None:
        if self.singleton and not self.parent_scoped:
            raise ValueError(f"{self.name}: singleton types must be parent scoped")
        if self.id_field is None and self.id_param is None and not self.singleton:
            raise ValueError(f"{self.name}: no identifier source")
        if self.clear_on_delete and not self.singleton:
            raise ValueError(f"{self.name}: only singleton types can be cleared on delete")

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def collection_path(self, parent_id: int | None = None) -> str:
        if self.parent_scoped:
            if parent_id is None:
                raise MissingParentIdentifier("", self.name)
            return self.collection.format(parent_id=parent_id)
        return self.collection

    def item_path(self, ref: RemoteResourceRef) -> str:
        base = self.collection_path(self.parent_of_ref(ref))
        if self.singleton:
            return base
        return f"{base}/{ref.resource_id}"

    def read_path(self, ref: RemoteResourceRef) -> str:
        if self.lookup_field is not None:
            return self.collection_path(self.parent_of_ref(ref))
        return self.item_path(ref)

    def update_path(self, ref: RemoteResourceRef) -> str:
        if self.update_on_collection:
            return self.collection_path(self.parent_of_ref(ref))
        return self.item_path(ref)

    def configured_path(self, ref: RemoteResourceRef) -> str:
        if self.configured_suffix is None:
            raise ValueError(f"{self.name}: no configured endpoint")
        return f"{self.item_path(ref)}/{self.configured_suffix}"

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def parent_of_ref(self, ref: RemoteResourceRef) -> int | None:
        if not self.parent_scoped:
            return None
        return ref.require_parent(self.name)

    def parent_of_params(self, params: Mapping[str, Any]) -> int | None:
        """Parent identifier of a create request, validated before any call."""
        if not self.parent_scoped:
            return None
        raw = params.get(self.parent_param)
        if raw is None or raw == "":
            raise MissingParentIdentifier(f"<new {self.name}>", self.name)
        if isinstance(raw, int):
            return raw
        return parse_parent_id(str(raw))

    def created_id(self, payload: Any, params: Mapping[str, Any]) -> str | None:
        """Identifier of a new object as known when the create returns.

        None when only the completed job will report it.
        """
        resource_id = None
        if self.id_field is not None and isinstance(payload, dict):
            resource_id = payload.get(self.id_field)
        if resource_id is None and self.id_param is not None:
            resource_id = params.get(self.id_param)
        if resource_id is None or resource_id == "":
            return None
        return str(resource_id)

    def make_ref(
        self,
        payload: Any,
        params: Mapping[str, Any],
        parent_id: int | None,
        job: JobHandle | None = None,
    ) -> RemoteResourceRef:
        """Build the reference of a freshly created object.

        The create payload and params are tried first, then the resource
        identifier reported by the completed job.
        """
        if self.singleton:
            return RemoteResourceRef(resource_id=str(parent_id), parent_id=parent_id)

        resource_id = self.created_id(payload, params)
        if resource_id is None and job is not None and job.resource_id:
            resource_id = job.resource_id
        if resource_id is None:
            raise DecodeError(
                self.state_model.__name__,
                f"create response carries no {self.id_field or self.id_param!r}",
            )
        return RemoteResourceRef(resource_id=resource_id, parent_id=parent_id)

    def parse_ref(self, raw: str) -> RemoteResourceRef:
        """Parse a steady-state or import identifier.

        Singleton types also accept the bare instance identifier.
        """
        if self.singleton and "," not in raw:
            parent_id = parse_parent_id(raw)
            return RemoteResourceRef(resource_id=str(parent_id), parent_id=parent_id)
        return RemoteResourceRef.parse(raw, parent_required=self.parent_scoped)

    # -------------------------------------------------------------------------
    # Requests and conditions
    # -------------------------------------------------------------------------

    def request_body(
        self, params: Mapping[str, Any], ref: RemoteResourceRef | None = None
    ) -> Any:
        if self.list_body is not None:
            return list(params.get(self.list_body) or [])
        body = {
            self.body_aliases.get(key, key): value
            for key, value in params.items()
            if (key != self.parent_param or not self.parent_scoped) and key not in self.local_params
        }
        if ref is not None and self.update_on_collection and self.id_param is not None:
            key = self.body_aliases.get(self.id_param, self.id_param)
            body.setdefault(key, ref.resource_id)
        return body

    def cleared_body(self) -> Any:
        """Body that resets a clear_on_delete type to its unconfigured state."""
        return [] if self.list_body is not None else {}

    def recorded_params(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Params safe to persist and compare, write-only secrets dropped."""
        return {key: value for key, value in params.items() if key not in self.write_only}

    def ready_condition(self, params: Mapping[str, Any]) -> AttributeCondition | None:
        if self.ready is None:
            return None
        if self.ready_param is not None and self.ready_param in params:
            return AttributeCondition(self.ready.field, params[self.ready_param])
        return self.ready


# =============================================================================
# Registry
# =============================================================================

_PARENT_REPLACE: dict[str, Rule] = {DEFAULT_PARENT_PARAM: ALWAYS_REPLACE}

INSTANCE = ResourceType(
    name="instance",
    collection=INSTANCE_PATH,
    state_model=InstanceState,
    ready=AttributeCondition("ready", True),
    replacement_rules={
        "plan": plan_category_changed,
        "region": ALWAYS_REPLACE,
        "vpc_id": ALWAYS_REPLACE,
        "vpc_subnet": ALWAYS_REPLACE,
        "name": ALWAYS_IN_PLACE,
        "tags": ALWAYS_IN_PLACE,
        "nodes": ALWAYS_IN_PLACE,
    },
)

VPC = ResourceType(
    name="vpc",
    collection="/api/vpcs",
    state_model=VpcState,
    replacement_rules={
        "region": ALWAYS_REPLACE,
        "subnet": ALWAYS_REPLACE,
    },
)

ALARM = ResourceType(
    name="alarm",
    collection=INSTANCE_PATH + "/{parent_id}/alarms",
    state_model=AlarmState,
    parent_scoped=True,
    poll=PollConfig(interval=5, timeout=300),
    replacement_rules={**_PARENT_REPLACE, "type": ALWAYS_REPLACE},
    cascades_with_parent=True,
)

NOTIFICATION = ResourceType(
    name="notification",
    collection=INSTANCE_PATH + "/{parent_id}/alarms/recipients",
    state_model=NotificationState,
    parent_scoped=True,
    poll=PollConfig(interval=5, timeout=300),
    replacement_rules={**_PARENT_REPLACE, "type": ALWAYS_REPLACE},
    cascades_with_parent=True,
)

PLUGIN = ResourceType(
    name="plugin",
    collection=INSTANCE_PATH + "/{parent_id}/plugins",
    state_model=PluginState,
    parent_scoped=True,
    id_field=None,
    id_param="name",
    lookup_field="name",
    body_aliases={"name": "plugin_name"},
    query={"async": "true"},
    update_on_collection=True,
    ready=AttributeCondition("enabled", True),
    ready_param="enabled",
    deleted=AttributeCondition("enabled", False),
    replacement_rules={**_PARENT_REPLACE, "name": ALWAYS_REPLACE},
    cascades_with_parent=True,
)

PLUGIN_COMMUNITY = ResourceType(
    name="plugin_community",
    collection=INSTANCE_PATH + "/{parent_id}/plugins/community",
    state_model=PluginState,
    parent_scoped=True,
    id_field=None,
    id_param="name",
    lookup_field="name",
    body_aliases={"name": "plugin_name"},
    query={"async": "true"},
    update_on_collection=True,
    ready=AttributeCondition("enabled", True),
    ready_param="enabled",
    deleted=AttributeCondition("enabled", False),
    replacement_rules={**_PARENT_REPLACE, "name": ALWAYS_REPLACE},
    cascades_with_parent=True,
)

TRUST_STORE = ResourceType(
    name="trust_store",
    collection=INSTANCE_PATH + "/{parent_id}/trust-store-configuration",
    state_model=TrustStoreState,
    parent_scoped=True,
    singleton=True,
    id_field=None,
    empty_marker="id",
    poll=PollConfig(interval=10, timeout=3600),
    replacement_rules=dict(_PARENT_REPLACE),
)

OAUTH2_CONFIGURATION = ResourceType(
    name="oauth2_configuration",
    collection=INSTANCE_PATH + "/{parent_id}/oauth2-configuration",
    state_model=OAuth2ConfigurationState,
    parent_scoped=True,
    singleton=True,
    id_field=None,
    empty_marker="id",
    poll=PollConfig(interval=10, timeout=3600),
    replacement_rules=dict(_PARENT_REPLACE),
)

SECURITY_FIREWALL = ResourceType(
    name="security_firewall",
    collection=INSTANCE_PATH + "/{parent_id}/security/firewall",
    state_model=FirewallState,
    parent_scoped=True,
    singleton=True,
    id_field=None,
    list_body="rules",
    configured_suffix="configured",
    clear_on_delete=True,
    poll=PollConfig(interval=30, timeout=1800),
    replacement_rules=dict(_PARENT_REPLACE),
    cascades_with_parent=True,
)

CUSTOM_CERTIFICATE = ResourceType(
    name="custom_certificate",
    collection=INSTANCE_PATH + "/{parent_id}/custom-cert",
    state_model=CustomCertificateState,
    parent_scoped=True,
    singleton=True,
    id_field=None,
    readable=False,
    write_only=frozenset({"ca", "cert", "private_key"}),
    local_params=frozenset({"version"}),
    poll=PollConfig(interval=10, timeout=600),
    replacement_rules={
        **_PARENT_REPLACE,
        "sni_hosts": ALWAYS_REPLACE,
        "version": ALWAYS_REPLACE,
    },
)

RESOURCE_TYPES: dict[str, ResourceType] = {
    rt.name: rt
    for rt in (
        INSTANCE,
        VPC,
        ALARM,
        NOTIFICATION,
        PLUGIN,
        PLUGIN_COMMUNITY,
        TRUST_STORE,
        OAUTH2_CONFIGURATION,
        SECURITY_FIREWALL,
        CUSTOM_CERTIFICATE,
    )
}


def get_resource_type(name: str) -> ResourceType:
    """Look up a resource type by name.

    Raises:
        KeyError: Unknown name. The message lists the valid names.
    """
    try:
        return RESOURCE_TYPES[name]
    except KeyError:
        valid = ", ".join(sorted(RESOURCE_TYPES))
        raise KeyError(f"Unknown resource type {name!r}, expected one of: {valid}") from None
