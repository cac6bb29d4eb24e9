"""Error taxonomy for the reconciliation core.

Every failure the core can surface derives from ProvisionerError so callers
can catch the whole family at their boundary. The classes fall into three
groups:

- Local failures (identifier codec, replacement policy, decoding) that are
  raised before or without any network traffic.
- Remote failures (transport, explicit remote rejection) that abort the
  current wait loop immediately.
- Wait outcomes (timeout, cancellation) where the remote end state is unknown
  and must be re-checked by a later read.
"""

from __future__ import annotations

from typing import Any


class ProvisionerError(Exception):
    """Base class for all reconciliation errors."""

    pass


# =============================================================================
# Identity
# =============================================================================


class IdentifierError(ProvisionerError, ValueError):
    """Raised when a resource identifier cannot be encoded or decoded."""

    pass


class MissingParentIdentifier(IdentifierError):
    """Raised when a parent-scoped resource has no parent identifier."""

    def __init__(self, raw: str, resource_type: str | None = None) -> None:
        self.raw = raw
        self.resource_type = resource_type
        what = f"{resource_type} " if resource_type else ""
        super().__init__(
            f"{what}identifier {raw!r} is missing the parent identifier, "
            f"expected format '{{resource_id}},{{parent_id}}'"
        )


class InvalidIdentifier(IdentifierError):
    """Raised when a composite identifier is malformed."""

    def __init__(self, raw: str, reason: str) -> None:
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid identifier {raw!r}: {reason}")


# =============================================================================
# Remote
# =============================================================================


class TransportError(ProvisionerError):
    """Network or HTTP-layer failure unrelated to the business outcome.

    Never retried by the core. Retry policy belongs to the transport.
    """

    def __init__(self, message: str, *, method: str | None = None, path: str | None = None) -> None:
        self.method = method
        self.path = path
        super().__init__(message)


class RemoteOperationFailed(ProvisionerError):
    """The control plane explicitly reported failure.

    Raised for non-success status codes carrying an error payload and for
    jobs that reach the failed status. The remote reason is kept verbatim.
    """

    def __init__(
        self,
        reason: str,
        *,
        status_code: int | None = None,
        payload: Any = None,
        job_id: str | None = None,
    ) -> None:
        self.reason = reason
        self.status_code = status_code
        self.payload = payload
        self.job_id = job_id
        parts = []
        if job_id is not None:
            parts.append(f"job {job_id} failed")
        if status_code is not None:
            parts.append(f"status={status_code}")
        prefix = " ".join(parts) or "remote operation failed"
        super().__init__(f"{prefix}: {reason}")

    @property
    def is_not_found(self) -> bool:
        """True when the failure is the control plane saying the object is gone."""
        return self.status_code in (404, 410)


class ResourceNotFound(ProvisionerError):
    """Raised when a resource expected to exist is not returned by the control plane."""

    pass


class UnsupportedOperation(ProvisionerError):
    """The resource type has no control plane endpoint for the operation."""

    def __init__(self, type_name: str, operation: str, details: str = "") -> None:
        self.type_name = type_name
        self.operation = operation
        message = f"{type_name} does not support {operation}"
        super().__init__(f"{message}: {details}" if details else message)


class DecodeError(ProvisionerError):
    """Raised when a remote payload does not match the expected result model."""

    def __init__(self, model_name: str, details: str) -> None:
        self.model_name = model_name
        self.details = details
        super().__init__(f"Unexpected {model_name} payload: {details}")


# =============================================================================
# Waiting
# =============================================================================


class PollTimeoutError(ProvisionerError, TimeoutError):
    """The wait exceeded its budget without reaching a terminal state.

    The outcome of the remote operation is UNKNOWN at this point: it may still
    complete after the local wait gives up. Callers should re-check with a
    read (or re-poll the job) rather than treat this as a failed change.

    last_state is kept as an attribute only. Payloads can hold credentials
    (an instance's apikey and url), so the message never renders it.
    """

    def __init__(
        self,
        description: str,
        *,
        timeout: float,
        elapsed: float,
        attempts: int,
        last_state: Any = None,
    ) -> None:
        self.description = description
        self.timeout = timeout
        self.elapsed = elapsed
        self.attempts = attempts
        self.last_state = last_state
        super().__init__(
            f"Timed out after {elapsed:.0f}s (timeout {timeout:.0f}s, {attempts} attempts) "
            f"waiting for {description or 'condition'}"
        )


class PollCancelled(ProvisionerError):
    """The wait was aborted by an external cancellation signal or deadline."""

    def __init__(self, description: str, *, attempts: int, last_state: Any = None) -> None:
        self.description = description
        self.attempts = attempts
        self.last_state = last_state
        super().__init__(
            f"Cancelled after {attempts} attempts waiting for {description or 'condition'}"
        )


# =============================================================================
# Planning
# =============================================================================


class ReplacementRequired(ProvisionerError):
    """The requested change cannot be applied in place.

    The caller must destroy the object and create it again.
    """

    def __init__(self, resource_type: str, attributes: list[str]) -> None:
        self.resource_type = resource_type
        self.attributes = list(attributes)
        super().__init__(
            f"Changing {', '.join(self.attributes)} on {resource_type} requires replacement"
        )
