"""CloudAMQP provisioner CLI (cloudamqp-provisioner).

Usage:
    cloudamqp-provisioner apply manifest.yaml        # Create/update/recreate entries
    cloudamqp-provisioner read broker                # Read one entry, detect drift
    cloudamqp-provisioner delete manifest.yaml       # Delete entries, children first
    cloudamqp-provisioner import plugin top rabbitmq_top,1234
    cloudamqp-provisioner parse-id alarm 42,1234
    cloudamqp-provisioner upgrade broker             # Upgrade RabbitMQ, wait for every node

Credentials and defaults come from the environment (see Settings.from_env).
Independent manifest entries are applied concurrently; an entry only runs
once every entry it depends on has been provisioned.
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import click

from .actions import InstanceActions
from .api import ControlPlane, ControlPlaneApi, Operation, OperationKind
from .client import ControlPlaneClient
from .config import DEFAULT_MAX_WORKERS, ConfigurationError, OrchestratorConfig, Settings
from .errors import ProvisionerError, ReplacementRequired
from .identity import RemoteResourceRef
from .manifest import Manifest, ManifestEntry, ManifestError, State, load_manifest, load_state, save_state
from .orchestrator import ReconciliationResult, ResourceOrchestrator
from .poller import Cancellation
from .resource_types import INSTANCE, RESOURCE_TYPES, get_resource_type

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "cloudamqp-state.yaml"


@dataclass
class EntryOutcome:
    """What happened to one manifest entry during apply/delete."""

    name: str
    action: str
    ref: RemoteResourceRef | None = None
    params: dict[str, Any] | None = None
    timed_out: bool = False
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "action": self.action,
            "id": self.ref.format() if self.ref else None,
            "timed_out": self.timed_out,
        }
        if self.error is not None:
            data["error"] = str(self.error)
        return data


# =============================================================================
# Context
# =============================================================================


class Runtime:
    """Collaborators shared by every command.

    Tests pass api/clock/sleep through click's `obj`; otherwise everything is
    built from the environment on first use.
    """

    def __init__(self, obj: dict[str, Any], state_path: Path, max_workers: int) -> None:
        self._obj = obj
        self.state_path = state_path
        self.max_workers = max_workers
        self.cancellation: Cancellation = obj.get("cancellation") or Cancellation()
        self._settings: Settings | None = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            try:
                self._settings = self._obj.get("settings") or Settings.from_env()
            except ConfigurationError as e:
                raise click.ClickException(str(e)) from e
        return self._settings

    @property
    def orchestrator_config(self) -> OrchestratorConfig:
        config = self._obj.get("orchestrator_config")
        if config is not None:
            return config
        return self.settings.orchestrator

    @property
    def api(self) -> ControlPlane:
        api = self._obj.get("api")
        if api is None:
            api = ControlPlaneApi(ControlPlaneClient(self.settings.client))
            self._obj["api"] = api
        return api

    def orchestrator(
        self, type_name: str, entry: ManifestEntry | None = None, fast_destroy: bool | None = None
    ) -> ResourceOrchestrator:
        config = self.orchestrator_config
        if entry is not None and entry.poll is not None:
            config = replace(config, poll=entry.poll.to_config())
        if fast_destroy is not None:
            config = replace(config, fast_destroy=fast_destroy)
        return ResourceOrchestrator(
            get_resource_type(type_name),
            self.api,
            config,
            cancellation=self.cancellation,
            clock=self._obj.get("clock") or time.monotonic,
            sleep=self._obj.get("sleep"),
        )

    def instance_actions(self) -> InstanceActions:
        return InstanceActions(
            self.api,  # type: ignore[arg-type]
            self.orchestrator_config.poll,
            cancellation=self.cancellation,
            clock=self._obj.get("clock") or time.monotonic,
            sleep=self._obj.get("sleep"),
        )

    def load_state(self) -> State:
        try:
            return load_state(self.state_path)
        except ManifestError as e:
            raise click.ClickException(str(e)) from e

    def save_state(self, state: State) -> None:
        try:
            save_state(self.state_path, state)
        except ManifestError as e:
            raise click.ClickException(str(e)) from e


def _load_manifest(path: Path) -> Manifest:
    try:
        return load_manifest(path)
    except ManifestError as e:
        raise click.ClickException(str(e)) from e


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# =============================================================================
# Apply / delete
# =============================================================================


def _create_params(entry: ManifestEntry, state: State) -> dict[str, Any]:
    params = dict(entry.params)
    if entry.parent is not None:
        parent_ref = state.ref(entry.parent)
        if parent_ref is None:
            raise ProvisionerError(f"parent entry {entry.parent!r} is not provisioned")
        params[entry.resource_type.parent_param] = int(parent_ref.resource_id)
    return params


def _outcome(name: str, action: str, result: ReconciliationResult, params: dict[str, Any]) -> EntryOutcome:
    return EntryOutcome(
        name=name,
        action=action if result.success else "failed",
        ref=result.ref,
        params=params,
        timed_out=result.timed_out,
        error=result.error,
    )


def apply_entry(
    orchestrator: ResourceOrchestrator,
    entry: ManifestEntry,
    ref: RemoteResourceRef | None,
    params: dict[str, Any],
    allow_replace: bool = False,
    recorded: dict[str, Any] | None = None,
) -> EntryOutcome:
    """Drive one entry to its desired state.

    No ref: create. Ref but gone upstream: recreate. Otherwise update in
    place, or delete and recreate when allowed and required. `recorded`
    (the params last applied) plans updates of types that cannot be read.
    """
    if ref is not None:
        try:
            current = orchestrator.read(ref)
        except ProvisionerError as e:
            return EntryOutcome(name=entry.name, action="failed", ref=ref, error=e)
        if current.not_found:
            logger.warning(
                "Object missing upstream, recreating",
                extra={"entry": entry.name, "ref": ref.format()},
            )
            result = orchestrator.reconcile(Operation(OperationKind.CREATE, params))
            return _outcome(entry.name, "recreated", result, params)

        result = orchestrator.reconcile(
            Operation(OperationKind.UPDATE, params, target=ref, recorded=recorded)
        )
        if isinstance(result.error, ReplacementRequired) and allow_replace:
            deleted = orchestrator.reconcile(Operation(OperationKind.DELETE, target=ref))
            if not deleted.success:
                return _outcome(entry.name, "replaced", deleted, params)
            result = orchestrator.reconcile(Operation(OperationKind.CREATE, params))
            return _outcome(entry.name, "replaced", result, params)
        return _outcome(entry.name, "updated", result, params)

    result = orchestrator.reconcile(Operation(OperationKind.CREATE, params))
    return _outcome(entry.name, "created", result, params)


def apply_manifest(
    runtime: Runtime,
    manifest: Manifest,
    state: State,
    allow_replace: bool = False,
) -> list[EntryOutcome]:
    """Apply every entry, wave by wave. State is updated as entries succeed."""
    outcomes: list[EntryOutcome] = []
    failed: set[str] = set()

    with ThreadPoolExecutor(max_workers=runtime.max_workers) as executor:
        for wave in manifest.waves():
            futures = {}
            for entry in wave:
                blocked = [dep for dep in entry.dependencies if dep in failed]
                if blocked:
                    failed.add(entry.name)
                    outcomes.append(
                        EntryOutcome(
                            name=entry.name,
                            action="skipped",
                            error=ProvisionerError(f"dependencies failed: {blocked}"),
                        )
                    )
                    continue
                try:
                    params = _create_params(entry, state)
                except (ProvisionerError, ValueError) as e:
                    failed.add(entry.name)
                    outcomes.append(EntryOutcome(name=entry.name, action="failed", error=e))
                    continue
                previous = state.resources.get(entry.name)
                futures[entry.name] = executor.submit(
                    apply_entry,
                    runtime.orchestrator(entry.type, entry),
                    entry,
                    state.ref(entry.name),
                    params,
                    allow_replace,
                    previous.params if previous is not None else None,
                )

            for name, future in futures.items():
                outcome = future.result()
                outcomes.append(outcome)
                # A timed-out create may still complete upstream, so its ref is kept
                if outcome.ref is not None and (outcome.success or outcome.timed_out):
                    entry = manifest.entry(name)
                    params = entry.resource_type.recorded_params(outcome.params or {})
                    state.record(name, entry.type, outcome.ref, params)
                if not outcome.success:
                    failed.add(name)
            runtime.save_state(state)

    return outcomes


def delete_entries(
    runtime: Runtime,
    names: list[tuple[str, str]],
    state: State,
    fast_destroy: bool | None = None,
) -> list[EntryOutcome]:
    """Delete (name, type) pairs in order, dropping them from the state."""
    outcomes = []
    for name, type_name in names:
        ref = state.ref(name)
        if ref is None:
            outcomes.append(EntryOutcome(name=name, action="absent"))
            continue
        orchestrator = runtime.orchestrator(type_name, fast_destroy=fast_destroy)
        result = orchestrator.reconcile(Operation(OperationKind.DELETE, target=ref))
        outcome = _outcome(name, "deleted", result, {})
        outcomes.append(outcome)
        if outcome.success:
            state.forget(name)
        runtime.save_state(state)
    return outcomes


def _finish(outcomes: list[EntryOutcome]) -> None:
    _echo_json([outcome.to_dict() for outcome in outcomes])
    failures = [outcome for outcome in outcomes if not outcome.success]
    if failures:
        raise click.ClickException(f"{len(failures)} of {len(outcomes)} entries failed")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="State file recording provisioned identifiers",
)
@click.option(
    "--max-workers",
    type=click.IntRange(1, 32),
    default=DEFAULT_MAX_WORKERS,
    show_default=True,
    help="Entries applied concurrently",
)
@click.version_option(package_name="cloudamqp-provisioner")
@click.pass_context
def cli(ctx: click.Context, state_path: Path, max_workers: int) -> None:
    """Reconcile CloudAMQP resources against a declarative manifest."""
    ctx.ensure_object(dict)
    ctx.obj["runtime"] = Runtime(ctx.obj, state_path, max_workers)


@cli.command()
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--replace", "allow_replace", is_flag=True, help="Delete and recreate when a change cannot be applied in place")
@click.pass_context
def apply(ctx: click.Context, manifest_path: Path, allow_replace: bool) -> None:
    """Create, update or recreate every manifest entry."""
    runtime: Runtime = ctx.obj["runtime"]
    manifest = _load_manifest(manifest_path)
    state = runtime.load_state()
    _finish(apply_manifest(runtime, manifest, state, allow_replace=allow_replace))


@cli.command()
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--entry", "entries", multiple=True, help="Only delete these entries")
@click.option(
    "--fast-destroy/--no-fast-destroy",
    default=None,
    help="Skip deletes that cascade with the parent instance",
)
@click.pass_context
def delete(
    ctx: click.Context, manifest_path: Path, entries: tuple[str, ...], fast_destroy: bool | None
) -> None:
    """Delete manifest entries, dependents before their parents."""
    runtime: Runtime = ctx.obj["runtime"]
    manifest = _load_manifest(manifest_path)
    state = runtime.load_state()

    ordered = [entry for wave in reversed(manifest.waves()) for entry in wave]
    if entries:
        unknown = sorted(set(entries) - {entry.name for entry in ordered})
        if unknown:
            raise click.ClickException(f"Unknown entries: {unknown}")
        ordered = [entry for entry in ordered if entry.name in entries]

    names = [(entry.name, entry.type) for entry in ordered]
    _finish(delete_entries(runtime, names, state, fast_destroy=fast_destroy))


@cli.command()
@click.argument("name")
@click.pass_context
def read(ctx: click.Context, name: str) -> None:
    """Read the current state of a provisioned entry.

    An entry missing upstream is dropped from the state file so the next
    apply recreates it.
    """
    runtime: Runtime = ctx.obj["runtime"]
    state = runtime.load_state()
    recorded = state.resources.get(name)
    if recorded is None:
        raise click.ClickException(f"Entry {name!r} is not in the state file")

    try:
        result = runtime.orchestrator(recorded.type).read(recorded.ref())
    except ProvisionerError as e:
        raise click.ClickException(str(e)) from e

    if result.not_found:
        state.forget(name)
        runtime.save_state(state)
        _echo_json({"name": name, "id": recorded.id, "not_found": True})
        return
    # Types without a read endpoint report no state
    state_data = result.state.model_dump(mode="json") if result.state is not None else None
    _echo_json({"name": name, "id": recorded.id, "state": state_data})


@cli.command(name="import")
@click.argument("type_name", type=click.Choice(sorted(RESOURCE_TYPES)))
@click.argument("name")
@click.argument("raw_id")
@click.pass_context
def import_cmd(ctx: click.Context, type_name: str, name: str, raw_id: str) -> None:
    """Adopt an existing object under NAME, e.g. `import alarm cpu 42,1234`."""
    runtime: Runtime = ctx.obj["runtime"]
    state = runtime.load_state()
    if name in state.resources:
        raise click.ClickException(f"Entry {name!r} is already in the state file")

    try:
        ref = runtime.orchestrator(type_name).import_resource(raw_id)
    except ProvisionerError as e:
        raise click.ClickException(str(e)) from e

    state.record(name, type_name, ref, {})
    runtime.save_state(state)
    _echo_json({"name": name, "id": ref.format()})


@cli.command(name="parse-id")
@click.argument("type_name", type=click.Choice(sorted(RESOURCE_TYPES)))
@click.argument("raw_id")
def parse_id(type_name: str, raw_id: str) -> None:
    """Show how an identifier decodes for a resource type."""
    try:
        ref = get_resource_type(type_name).parse_ref(raw_id)
    except ProvisionerError as e:
        raise click.ClickException(str(e)) from e
    _echo_json({"resource_id": ref.resource_id, "parent_id": ref.parent_id, "id": ref.format()})


@cli.command()
@click.argument("name")
@click.option("--rabbitmq-version", default=None, help="Target version, the latest available when omitted")
@click.pass_context
def upgrade(ctx: click.Context, name: str, rabbitmq_version: str | None) -> None:
    """Upgrade RabbitMQ on a provisioned instance.

    Blocks until every node of the instance reports configured again.
    """
    runtime: Runtime = ctx.obj["runtime"]
    state = runtime.load_state()
    recorded = state.resources.get(name)
    if recorded is None:
        raise click.ClickException(f"Entry {name!r} is not in the state file")
    if recorded.type != INSTANCE.name:
        raise click.ClickException(f"Entry {name!r} is a {recorded.type}, not an instance")

    try:
        instance_id = int(recorded.ref().resource_id)
        upgraded = runtime.instance_actions().upgrade_rabbitmq(instance_id, rabbitmq_version)
    except ProvisionerError as e:
        raise click.ClickException(str(e)) from e
    _echo_json({"name": name, "id": recorded.id, "upgraded": upgraded})
