"""Attribute, absence and presence waits.

Resources that complete synchronously on the control plane side still need
to be watched until they settle. These helpers re-fetch the object on every
evaluation, classify the fetch through the DriftDetector, and compare a named
field against the expected value.

Absence while waiting for an attribute is not a failure: a freshly created
object may not be visible yet, so the wait keeps polling until it appears.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .drift import DriftDetector
from .poller import Poller

logger = logging.getLogger(__name__)

Fetch = Callable[[], Any]


def field_value(state: Any, name: str) -> Any:
    """Read a field from a mapping or a decoded model."""
    if isinstance(state, dict):
        return state.get(name)
    return getattr(state, name, None)


@dataclass(frozen=True)
class AttributeCondition:
    """Expected value of one field.

    expected may be a plain value, a set/frozenset of acceptable values, or
    a callable taking the observed value and returning a bool.
    """

    field: str
    expected: Any = True

    def matches(self, value: Any) -> bool:
        if callable(self.expected):
            return bool(self.expected(value))
        if isinstance(self.expected, (set, frozenset)):
            return value in self.expected
        return value == self.expected

    def satisfied_by(self, state: Any) -> bool:
        return self.matches(field_value(state, self.field))

    def describe(self) -> str:
        if callable(self.expected):
            return f"{self.field} to satisfy condition"
        return f"{self.field} == {self.expected!r}"


def wait_for_attribute(
    fetch: Fetch,
    condition: AttributeCondition,
    poller: Poller,
    *,
    subject: str = "",
) -> Any:
    """Poll until the fetched state satisfies `condition`.

    Returns:
        The state from the satisfying fetch.

    Raises:
        PollTimeoutError: last_state is the last fetched state (None if the
            object never became visible).
        Exception: Errors classified as ERROR by the DriftDetector.
    """
    detector = DriftDetector(subject)

    def check() -> tuple[bool, Any]:
        outcome = detector.observe(fetch)
        if outcome.is_absent:
            logger.debug("Object not visible yet", extra={"subject": subject})
            return False, None
        state = outcome.unwrap()
        return condition.satisfied_by(state), state

    return poller.wait(check, description=f"{subject} {condition.describe()}".strip())


def wait_for_absence(
    fetch: Fetch,
    poller: Poller,
    *,
    until: AttributeCondition | None = None,
    subject: str = "",
) -> Any:
    """Poll until the fetch classifies as ABSENT.

    Objects that are disabled rather than removed (plugins) pass `until`:
    a present state satisfying it also ends the wait.

    Returns:
        None when the object is gone, otherwise the satisfying state.
    """
    detector = DriftDetector(subject)

    def check() -> tuple[bool, Any]:
        outcome = detector.observe(fetch)
        if outcome.is_absent:
            return True, None
        state = outcome.unwrap()
        return until is not None and until.satisfied_by(state), state

    return poller.wait(check, description=f"{subject} to be removed".strip())


def wait_for_presence(fetch: Fetch, poller: Poller, *, subject: str = "") -> Any:
    """Poll until the fetch classifies as PRESENT. Returns the present state."""
    detector = DriftDetector(subject)

    def check() -> tuple[bool, Any]:
        outcome = detector.observe(fetch)
        if outcome.is_absent:
            return False, None
        return True, outcome.unwrap()

    return poller.wait(check, description=f"{subject} to appear".strip())


def wait_for_all(
    fetch_list: Callable[[], Iterable[Any]],
    condition: AttributeCondition,
    poller: Poller,
    *,
    subject: str = "",
) -> list[Any]:
    """Poll until every element of a collection satisfies `condition`.

    An empty collection is not considered done. Used for node readiness,
    where every node of an instance has to report `configured`.
    """
    detector = DriftDetector(subject)

    def check() -> tuple[bool, list[Any]]:
        outcome = detector.observe(lambda: list(fetch_list()))
        if outcome.is_absent:
            return False, []
        items = list(outcome.unwrap())
        pending = [item for item in items if not condition.satisfied_by(item)]
        if pending:
            logger.debug(
                "Waiting on collection members",
                extra={"subject": subject, "pending": len(pending), "total": len(items)},
            )
        return not pending, items

    return poller.wait(check, description=f"all {subject} {condition.describe()}".strip())
