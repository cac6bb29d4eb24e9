"""Drift detection on read.

A read has exactly three outcomes:
- PRESENT: the control plane returned the object; the state is passed through
  unchanged.
- ABSENT: the object no longer exists upstream (404/410, or the empty payload
  contract some endpoints use). This is NOT an error: the caller drops local
  tracking so the object is recreated on the next reconciliation pass.
- ERROR: anything else (transport failure, unexpected status). Propagated.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from .client import NOT_FOUND_STATUS_CODES, ApiResponse, error_reason
from .errors import RemoteOperationFailed, TransportError

logger = logging.getLogger(__name__)


class Presence(str, Enum):
    """Classification of a read outcome."""

    PRESENT = "present"
    ABSENT = "absent"
    ERROR = "error"


@dataclass(frozen=True)
class Classification:
    """Result of classifying a fetch."""

    presence: Presence
    state: Any = None
    error: BaseException | None = None

    @property
    def is_present(self) -> bool:
        return self.presence == Presence.PRESENT

    @property
    def is_absent(self) -> bool:
        return self.presence == Presence.ABSENT

    def unwrap(self) -> Any:
        """Return the state, raising the classified error for ERROR outcomes."""
        if self.presence == Presence.ERROR and self.error is not None:
            raise self.error
        return self.state


def _is_not_found_error(error: BaseException) -> bool:
    if isinstance(error, ResourceNotFoundError):
        return True
    if isinstance(error, RemoteOperationFailed):
        return error.is_not_found
    if isinstance(error, HttpResponseError):
        return error.status_code in NOT_FOUND_STATUS_CODES
    return False


def _is_empty(payload: Any) -> bool:
    return payload is None or payload == "" or payload == {} or payload == []


def classify(fetch_result: Any = None, error: BaseException | None = None) -> Classification:
    """Classify a fetch outcome as present, absent or error.

    Args:
        fetch_result: An ApiResponse, a decoded payload, or None.
        error: The exception raised by the fetch, if any.

    Returns:
        Classification. PRESENT carries the payload unchanged; ERROR carries
        the exception (a RemoteOperationFailed for unexpected status codes).
    """
    if error is not None:
        if _is_not_found_error(error):
            return Classification(Presence.ABSENT)
        return Classification(Presence.ERROR, error=error)

    if isinstance(fetch_result, ApiResponse):
        if fetch_result.is_not_found:
            return Classification(Presence.ABSENT)
        if not fetch_result.is_success:
            return Classification(
                Presence.ERROR,
                error=RemoteOperationFailed(
                    error_reason(fetch_result.body),
                    status_code=fetch_result.status_code,
                    payload=fetch_result.body,
                ),
            )
        if not fetch_result.has_body:
            return Classification(Presence.ABSENT)
        return Classification(Presence.PRESENT, state=fetch_result.body)

    if _is_empty(fetch_result):
        return Classification(Presence.ABSENT)
    return Classification(Presence.PRESENT, state=fetch_result)


class DriftDetector:
    """Runs a fetch and classifies its outcome."""

    def __init__(self, subject: str = "") -> None:
        self._subject = subject

    def observe(self, fetch: Callable[[], Any]) -> Classification:
        """Call `fetch` and classify whatever it returns or raises.

        Only exceptions of the core taxonomy and azure-core HTTP errors are
        classified; programming errors propagate unchanged.
        """
        try:
            result = fetch()
        except (RemoteOperationFailed, TransportError, HttpResponseError) as e:
            outcome = classify(error=e)
        else:
            outcome = classify(result)

        if outcome.is_absent:
            logger.info(
                "Object not found upstream, local tracking should be dropped",
                extra={"subject": self._subject},
            )
        return outcome
