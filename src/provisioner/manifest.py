"""Manifest and state files.

The manifest declares the desired objects. The state file is the caller's
persisted record of what has been provisioned: one composite identifier per
manifest entry, plus the params last applied. It is the only place a
RemoteResourceRef outlives a single call.

Manifest format (YAML):

    resources:
      - name: broker
        type: instance
        params: {name: broker, plan: bunny-1, region: amazon-web-services::us-east-1}
      - name: top
        type: plugin
        parent: broker          # parent instance taken from the state of "broker"
        params: {name: rabbitmq_top}
        poll: {sleep: 10, timeout: 1800}

A Kubernetes-style wrapper (apiVersion/kind/spec) is accepted as well.

SECURITY: File size is checked before reading.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_STATE_FILE_SIZE_BYTES, PollConfig
from .identity import RemoteResourceRef
from .resource_types import ResourceType, get_resource_type

logger = logging.getLogger(__name__)

ENTRY_NAME_PATTERN = r"^[a-z0-9]([a-z0-9_-]*[a-z0-9])?$"


class ManifestError(Exception):
    """Raised when a manifest or state file cannot be loaded or validated."""

    pass


# =============================================================================
# Manifest
# =============================================================================


class PollSettings(BaseModel):
    """Per-entry override of the resource type's poll defaults."""

    model_config = ConfigDict(extra="forbid")

    sleep: Annotated[int, Field(ge=1)]
    timeout: Annotated[int, Field(ge=1)]

    @model_validator(mode="after")
    def validate_bounds(self) -> PollSettings:
        if self.timeout < self.sleep:
            raise ValueError("timeout must be greater than or equal to sleep")
        return self

    def to_config(self) -> PollConfig:
        return PollConfig.from_seconds(self.sleep, self.timeout)


class ManifestEntry(BaseModel):
    """One desired object."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Annotated[str, Field(min_length=1, max_length=63, pattern=ENTRY_NAME_PATTERN)]
    type: str
    params: dict[str, Any] = Field(default_factory=dict)
    # Name of the entry whose object is this entry's parent instance
    parent: str | None = None
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    poll: PollSettings | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        try:
            get_resource_type(v)
        except KeyError as e:
            raise ValueError(e.args[0]) from e
        return v

    @property
    def resource_type(self) -> ResourceType:
        return get_resource_type(self.type)

    @property
    def dependencies(self) -> list[str]:
        deps = list(self.depends_on)
        if self.parent and self.parent not in deps:
            deps.append(self.parent)
        return deps


class Manifest(BaseModel):
    """Validated set of desired objects."""

    model_config = ConfigDict(extra="forbid")

    resources: list[ManifestEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_references(self) -> Manifest:
        names = [entry.name for entry in self.resources]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate entry names: {duplicates}")

        known = set(names)
        for entry in self.resources:
            missing = [dep for dep in entry.dependencies if dep not in known]
            if missing:
                raise ValueError(f"entry {entry.name!r} references unknown entries: {missing}")
            if entry.resource_type.parent_scoped and entry.parent is None:
                if entry.resource_type.parent_param not in entry.params:
                    raise ValueError(
                        f"entry {entry.name!r} ({entry.type}) needs 'parent' or "
                        f"params.{entry.resource_type.parent_param}"
                    )

        self.waves()
        return self

    def entry(self, name: str) -> ManifestEntry:
        for entry in self.resources:
            if entry.name == name:
                return entry
        raise KeyError(name)

    def waves(self) -> list[list[ManifestEntry]]:
        """Entries grouped so each group only depends on earlier groups.

        Entries in the same group are independent and may run concurrently.

        Raises:
            ValueError: On a dependency cycle.
        """
        remaining = {entry.name: entry for entry in self.resources}
        done: set[str] = set()
        waves: list[list[ManifestEntry]] = []
        while remaining:
            ready = [
                entry
                for entry in remaining.values()
                if all(dep in done for dep in entry.dependencies)
            ]
            if not ready:
                raise ValueError(f"dependency cycle between entries: {sorted(remaining)}")
            waves.append(ready)
            for entry in ready:
                done.add(entry.name)
                del remaining[entry.name]
        return waves


# =============================================================================
# State
# =============================================================================


class StateEntry(BaseModel):
    """What the state file records for one provisioned object."""

    model_config = ConfigDict(extra="forbid")

    type: str
    id: str
    params: dict[str, Any] = Field(default_factory=dict)

    def ref(self) -> RemoteResourceRef:
        return get_resource_type(self.type).parse_ref(self.id)


class State(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resources: dict[str, StateEntry] = Field(default_factory=dict)

    def ref(self, name: str) -> RemoteResourceRef | None:
        entry = self.resources.get(name)
        return entry.ref() if entry else None

    def record(self, name: str, type_name: str, ref: RemoteResourceRef, params: dict[str, Any]) -> None:
        self.resources[name] = StateEntry(type=type_name, id=ref.format(), params=params)

    def forget(self, name: str) -> None:
        self.resources.pop(name, None)


# =============================================================================
# Loading
# =============================================================================


def _read_yaml(path: Path, max_size: int, what: str) -> Any:
    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestError(f"Failed to stat {what} {path}: {e}") from e

    if file_size > max_size:
        raise ManifestError(f"{what.capitalize()} exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"Failed to read {what} {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}") from e


def _format_validation_error(path: Path, e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def load_manifest(path: Path) -> Manifest:
    """Load and validate a manifest.

    Raises:
        ManifestError: Missing, oversized, invalid YAML, or invalid content.
    """
    if not path.exists():
        raise ManifestError(f"Manifest not found: {path}")

    raw_data = _read_yaml(path, MAX_MANIFEST_FILE_SIZE_BYTES, "manifest")
    if not isinstance(raw_data, dict):
        raise ManifestError(f"Manifest must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec") or {}
        if not isinstance(data, dict):
            raise ManifestError(f"Spec section must be a mapping: {path}")
    else:
        data = raw_data

    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(_format_validation_error(path, e)) from e

    logger.info(
        "Loaded manifest", extra={"path": str(path), "entries": len(manifest.resources)}
    )
    return manifest


def load_state(path: Path) -> State:
    """Load the state file. A missing file is an empty state."""
    if not path.exists():
        return State()

    raw_data = _read_yaml(path, MAX_STATE_FILE_SIZE_BYTES, "state file")
    if raw_data is None:
        return State()
    try:
        return State.model_validate(raw_data)
    except ValidationError as e:
        raise ManifestError(_format_validation_error(path, e)) from e


def save_state(path: Path, state: State) -> None:
    """Write the state file atomically."""
    content = yaml.safe_dump(state.model_dump(mode="json"), sort_keys=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except OSError as e:
        Path(tmp).unlink(missing_ok=True)
        raise ManifestError(f"Failed to write state file {path}: {e}") from e
