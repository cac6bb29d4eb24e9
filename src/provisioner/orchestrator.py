"""Uniform Create/Read/Update/Delete/Import for every resource type.

The orchestrator owns the control flow of one operation:

    create:  submit -> job?  -> JobTracker.await_job (new id from the job
                                if the create response carries none)
                    -> else  -> wait for the type's ready condition, the
                                configured endpoint, or presence
    read:    fetch -> DriftDetector -> decode, or "not found"
    update:  ReplacementPolicy -> ReplacementRequired (no call) or submit + wait
    delete:  fast destroy? skip -> submit -> job? await -> else wait for
             the configured endpoint or absence
    import:  parse composite id -> read -> ResourceNotFound if absent

It holds no mutable state between calls, so one orchestrator may be shared
by threads. A timed-out wait leaves the remote outcome UNKNOWN: the error
carries the last observed state, and a later read is authoritative.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .api import ControlPlane, Operation, OperationKind, Submission
from .config import OrchestratorConfig, PollConfig, TimeoutPolicy
from .drift import DriftDetector
from .errors import (
    DecodeError,
    PollTimeoutError,
    ProvisionerError,
    ReplacementRequired,
    ResourceNotFound,
    UnsupportedOperation,
)
from .identity import RemoteResourceRef
from .jobs import JobTracker
from .models import JobHandle, decode
from .poller import Cancellation, Poller
from .replacement import compute_delta, plan_update
from .resource_types import ResourceType
from .waiters import AttributeCondition, wait_for_absence, wait_for_attribute, wait_for_presence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadResult:
    """Outcome of a read. not_found means "recreate on the next pass"."""

    state: Any = None
    not_found: bool = False


@dataclass
class ReconciliationResult:
    """Result of a single reconcile call.

    final_state is the decoded model (or completed JobHandle) of a settled
    operation. After a timeout it is the last raw observation instead, since
    an unsettled payload need not match the model.
    """

    operation: Operation
    ref: RemoteResourceRef | None = None
    final_state: Any = None
    timed_out: bool = False
    error: Exception | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


class ResourceOrchestrator:
    """Drives create/read/update/delete/import of one resource type."""

    def __init__(
        self,
        resource_type: ResourceType,
        api: ControlPlane,
        config: OrchestratorConfig | None = None,
        *,
        cancellation: Cancellation | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self._type = resource_type
        self._api = api
        self._config = config or OrchestratorConfig()
        self._cancellation = cancellation
        self._clock = clock
        self._sleep = sleep

    @property
    def resource_type(self) -> ResourceType:
        return self._type

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def poll_config(self) -> PollConfig:
        """Caller override, else the resource type's documented defaults."""
        return self._config.poll or self._type.poll

    def _poller(self) -> Poller:
        return Poller(
            self.poll_config,
            cancellation=self._cancellation,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _jobs(self) -> JobTracker:
        return JobTracker(
            self._api,
            self.poll_config,
            cancellation=self._cancellation,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _subject(self, ref: RemoteResourceRef | None = None) -> str:
        if ref is None:
            return self._type.name
        return f"{self._type.name} {ref}"

    def _fetch(self, ref: RemoteResourceRef) -> Callable[[], Any]:
        return lambda: self._api.fetch(self._type, ref)

    def _job_scope(self, ref: RemoteResourceRef) -> int:
        """Instance the job endpoint of `ref` lives under."""
        if ref.parent_id is not None:
            return ref.parent_id
        return int(ref.resource_id)

    def _settle(
        self,
        ref: RemoteResourceRef,
        submission: Submission,
        condition: AttributeCondition | None,
    ) -> Any:
        """Wait for a submitted create/update to take effect.

        Returns the completed JobHandle for job-driven operations, otherwise
        the settled state decoded into the type's model (None for types
        that cannot be read back).
        """
        if submission.job is not None:
            return self._jobs().await_job(self._job_scope(ref), submission.job.job_id)
        if self._type.configured_suffix is not None:
            self._wait_configured(ref)
            return self.read(ref).state
        if not self._type.readable:
            return None
        if condition is not None:
            state = wait_for_attribute(
                self._fetch(ref), condition, self._poller(), subject=self._subject(ref)
            )
        else:
            state = wait_for_presence(self._fetch(ref), self._poller(), subject=self._subject(ref))
        return decode(self._type.state_model, state)

    def _wait_configured(self, ref: RemoteResourceRef) -> None:
        def configured() -> tuple[bool, None]:
            return self._api.fetch_configured(self._type, ref), None

        self._poller().wait(configured, description=f"{self._subject(ref)} to be configured")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create(self, params: Mapping[str, Any], parent_id: int | None = None) -> RemoteResourceRef:
        """Create an object and wait until it is ready.

        Raises:
            MissingParentIdentifier: Parent-scoped type without a parent. No
                remote call is made.
            RemoteOperationFailed: Rejected by the control plane, or the job
                failed.
            PollTimeoutError: Not ready within the timeout; outcome unknown.
        """
        ref, _ = self._create(params, parent_id)
        return ref

    def _create(
        self,
        params: Mapping[str, Any],
        parent_id: int | None = None,
        on_submitted: Callable[[RemoteResourceRef], None] | None = None,
    ) -> tuple[RemoteResourceRef, Any]:
        params = dict(params)
        if parent_id is not None:
            params[self._type.parent_param] = parent_id
        parent = self._type.parent_of_params(params)
        if not self._type.readable:
            # Nothing can be checked afterwards, so the request is checked up front
            decode(self._type.state_model, self._type.request_body(params))

        submission = self._jobs().submit(self._type, Operation(OperationKind.CREATE, params))
        job = submission.job
        id_pending = (
            not self._type.singleton
            and self._type.created_id(submission.payload, params) is None
        )
        if job is not None and id_pending:
            # Only the completed job reports the new identifier
            if parent is None:
                raise DecodeError(
                    self._type.state_model.__name__,
                    "create returned a job but no identifier to poll it under",
                )
            logger.info(
                "Create submitted, identifier pending",
                extra={"resource_type": self._type.name, "job_id": job.job_id},
            )
            state = self._jobs().await_job(parent, job.job_id)
            ref = self._type.make_ref(submission.payload, params, parent, job=state)
            if on_submitted is not None:
                on_submitted(ref)
        else:
            ref = self._type.make_ref(submission.payload, params, parent)
            if on_submitted is not None:
                on_submitted(ref)
            logger.info(
                "Create submitted",
                extra={
                    "resource_type": self._type.name,
                    "ref": ref.format(),
                    "job_id": job.job_id if job else None,
                },
            )
            state = self._settle(ref, submission, self._type.ready_condition(params))
        logger.info("Created", extra={"resource_type": self._type.name, "ref": ref.format()})
        return ref, state

    def read(self, ref: RemoteResourceRef) -> ReadResult:
        """Read the current remote state.

        Returns:
            ReadResult with the decoded state, or not_found=True when the
            object no longer exists upstream. Types without a read endpoint
            return neither: state is None and not_found is False.

        Raises:
            MissingParentIdentifier, RemoteOperationFailed, TransportError,
            DecodeError.
        """
        self._type.parent_of_ref(ref)
        if not self._type.readable:
            logger.debug("No read endpoint", extra={"resource_type": self._type.name})
            return ReadResult()
        outcome = DriftDetector(self._subject(ref)).observe(self._fetch(ref))
        if outcome.is_absent:
            return ReadResult(not_found=True)
        return ReadResult(state=decode(self._type.state_model, outcome.unwrap()))

    def update(self, ref: RemoteResourceRef, delta: Mapping[str, tuple[Any, Any]]) -> Any:
        """Apply attribute changes in place.

        Args:
            ref: Object to update.
            delta: Mapping of attribute name to (old, new).

        Returns:
            The settled state (or the completed JobHandle), None when the
            delta holds no change.

        Raises:
            ReplacementRequired: Some attribute cannot change in place. No
                remote call is made; the caller must delete and recreate.
        """
        self._type.parent_of_ref(ref)
        plan = plan_update(delta, self._type.replacement_rules)
        if plan.requires_replace:
            logger.warning(
                "Change requires replacement",
                extra={"resource_type": self._type.name, "ref": ref.format(), "attributes": plan.replace},
            )
            raise ReplacementRequired(self._type.name, plan.replace)
        if plan.is_empty:
            logger.debug("Nothing to update", extra={"ref": ref.format()})
            return None

        params = plan.desired()
        submission = self._jobs().submit(
            self._type, Operation(OperationKind.UPDATE, params, target=ref)
        )
        logger.info(
            "Update submitted",
            extra={
                "resource_type": self._type.name,
                "ref": ref.format(),
                "attributes": sorted(params),
            },
        )
        return self._settle(ref, submission, self._type.ready_condition(params))

    def delete(self, ref: RemoteResourceRef, fast_mode: bool | None = None) -> None:
        """Delete an object and wait until it is gone.

        fast_mode (default: config.fast_destroy) skips the remote call for
        types whose removal cascades with their parent's teardown. There is
        no confirmation the remote side removed anything in that case.
        """
        self._type.parent_of_ref(ref)
        fast = self._config.fast_destroy if fast_mode is None else fast_mode
        if fast and self._type.cascades_with_parent:
            logger.info(
                "Fast destroy, skipping remote delete",
                extra={"resource_type": self._type.name, "ref": ref.format()},
            )
            return

        submission = self._jobs().submit(
            self._type, Operation(OperationKind.DELETE, target=ref)
        )
        if submission.not_found:
            logger.info(
                "Already gone upstream",
                extra={"resource_type": self._type.name, "ref": ref.format()},
            )
            return
        if submission.job is not None:
            self._jobs().await_job(self._job_scope(ref), submission.job.job_id)
        elif self._type.configured_suffix is not None:
            self._wait_configured(ref)
        elif self._type.readable:
            wait_for_absence(
                self._fetch(ref),
                self._poller(),
                until=self._type.deleted,
                subject=self._subject(ref),
            )
        logger.info("Deleted", extra={"resource_type": self._type.name, "ref": ref.format()})

    def import_resource(self, raw: str) -> RemoteResourceRef:
        """Adopt an existing object by identifier.

        Raises:
            MissingParentIdentifier / InvalidIdentifier: Malformed identifier.
            ResourceNotFound: Nothing with that identifier exists upstream.
            UnsupportedOperation: The type cannot be read back, so its
                existence cannot be confirmed.
        """
        ref = self._type.parse_ref(raw)
        if not self._type.readable:
            raise UnsupportedOperation(self._type.name, "import", "it cannot be read back")
        if self.read(ref).not_found:
            raise ResourceNotFound(f"{self._type.name} {raw!r} does not exist")
        logger.info("Imported", extra={"resource_type": self._type.name, "ref": ref.format()})
        return ref

    def wait_for_job(self, ref: RemoteResourceRef, job_id: str) -> JobHandle:
        """Re-poll a job, typically after an earlier wait timed out."""
        return self._jobs().await_job(self._job_scope(ref), job_id)

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    def reconcile(self, operation: Operation) -> ReconciliationResult:
        """Run one operation and capture its outcome instead of raising.

        A timed-out wait sets timed_out. Under TimeoutPolicy.FAIL it is also
        recorded as the error; under WARN it is only logged.
        """
        result = ReconciliationResult(operation=operation, ref=operation.target)

        def submitted(ref: RemoteResourceRef) -> None:
            # Known as soon as the create is accepted, even if the wait times out
            result.ref = ref

        try:
            if operation.kind == OperationKind.CREATE:
                _, result.final_state = self._create(operation.params, on_submitted=submitted)
            elif operation.target is None:
                raise ValueError(f"{operation.kind.value} requires a target reference")
            elif operation.kind == OperationKind.UPDATE:
                delta = self._delta(operation.target, operation.params, operation.recorded)
                result.final_state = self.update(operation.target, delta)
            else:
                self.delete(operation.target)

        except PollTimeoutError as e:
            result.timed_out = True
            result.final_state = e.last_state
            if self._config.timeout_policy == TimeoutPolicy.FAIL:
                result.error = e
            else:
                logger.warning(
                    "Wait timed out, outcome unknown until the next read",
                    extra={"resource_type": self._type.name, "error": str(e)},
                )
        except ReplacementRequired as e:
            logger.warning(
                "Replacement required",
                extra={"resource_type": self._type.name, "attributes": e.attributes},
            )
            result.error = e
        except (ProvisionerError, ValueError) as e:
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _delta(
        self,
        ref: RemoteResourceRef,
        desired: Mapping[str, Any],
        recorded: Mapping[str, Any] | None = None,
    ) -> dict[str, tuple[Any, Any]]:
        """Delta between the current remote state and `desired`.

        Only attributes the read model exposes can be compared; write-only
        params (the parent, creation-time settings) are left out. Types that
        cannot be read back are compared against the recorded params.
        """
        if not self._type.readable:
            if recorded is None:
                raise UnsupportedOperation(
                    self._type.name, "update", "no recorded params to compare against"
                )
            return compute_delta(recorded, self._type.recorded_params(desired))

        current = self.read(ref)
        if current.not_found:
            raise ResourceNotFound(f"{self._type.name} {ref} no longer exists")
        prior = current.state.model_dump(mode="json")
        observable = {name: value for name, value in desired.items() if name in prior}
        return compute_delta(prior, observable)

    def _log_result(self, result: ReconciliationResult) -> None:
        extra: dict[str, Any] = {
            "resource_type": self._type.name,
            "operation": result.operation.kind.value,
            "ref": result.ref.format() if result.ref else None,
            "duration_seconds": result.duration_seconds,
            "timed_out": result.timed_out,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
