"""Replace-vs-update classification.

Some attribute changes can be applied to a live object, others cannot: the
object has to be destroyed and created again. This module decides which is
which. It is pure: no I/O, no clock, no logging of its own.

Rules map attribute names to one of:
- ALWAYS_IN_PLACE: never forces replacement
- ALWAYS_REPLACE: any change forces replacement
- a predicate (old, new) -> bool: True when the change forces replacement

Attributes without a rule are updated in place.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class ChangeAction(str, Enum):
    """How one attribute change is applied."""

    UPDATE_IN_PLACE = "update_in_place"
    REQUIRES_REPLACE = "requires_replace"


class _Constant(str, Enum):
    ALWAYS_IN_PLACE = "always_in_place"
    ALWAYS_REPLACE = "always_replace"


ALWAYS_IN_PLACE = _Constant.ALWAYS_IN_PLACE
ALWAYS_REPLACE = _Constant.ALWAYS_REPLACE

Rule = Union[_Constant, Callable[[Any, Any], bool]]
Rules = Mapping[str, Rule]


# Plans running on shared hardware. Moving between a shared and a dedicated
# plan is a different kind of deployment and cannot be done in place.
SHARED_PLANS: frozenset[str] = frozenset({"lemur", "tiger", "lemming", "ermine"})


def is_shared_plan(plan: str | None) -> bool:
    return (plan or "").lower() in SHARED_PLANS


def plan_category_changed(old: Any, new: Any) -> bool:
    """True when a plan change crosses the shared/dedicated boundary."""
    if old is None or new is None:
        return False
    return is_shared_plan(old) != is_shared_plan(new)


def classify(attribute: str, old: Any, new: Any, rules: Rules) -> ChangeAction:
    """Decide how a change of `attribute` from `old` to `new` is applied."""
    if old == new:
        return ChangeAction.UPDATE_IN_PLACE

    rule = rules.get(attribute, ALWAYS_IN_PLACE)
    if rule is ALWAYS_REPLACE:
        return ChangeAction.REQUIRES_REPLACE
    if rule is ALWAYS_IN_PLACE:
        return ChangeAction.UPDATE_IN_PLACE
    if rule(old, new):
        return ChangeAction.REQUIRES_REPLACE
    return ChangeAction.UPDATE_IN_PLACE


@dataclass(frozen=True)
class AttributeChange:
    name: str
    old: Any
    new: Any


@dataclass(frozen=True)
class UpdatePlan:
    """Outcome of classifying a delta.

    changes holds every changed attribute; replace the names of those that
    force replacement. An empty replace list means the whole delta can be
    applied in place.
    """

    changes: list[AttributeChange] = field(default_factory=list)
    replace: list[str] = field(default_factory=list)

    @property
    def requires_replace(self) -> bool:
        return bool(self.replace)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def desired(self) -> dict[str, Any]:
        """New values of every changed attribute."""
        return {change.name: change.new for change in self.changes}


def compute_delta(prior: Mapping[str, Any], desired: Mapping[str, Any]) -> dict[str, tuple[Any, Any]]:
    """Attributes whose desired value differs from the prior value.

    Only keys present in `desired` are compared; an attribute the caller does
    not manage is left alone.
    """
    delta: dict[str, tuple[Any, Any]] = {}
    for name, new in desired.items():
        old = prior.get(name)
        if old != new:
            delta[name] = (old, new)
    return delta


def plan_update(delta: Mapping[str, tuple[Any, Any]], rules: Rules) -> UpdatePlan:
    """Classify every attribute of a delta."""
    changes: list[AttributeChange] = []
    replace: list[str] = []
    for name, (old, new) in delta.items():
        if old == new:
            continue
        changes.append(AttributeChange(name=name, old=old, new=new))
        if classify(name, old, new, rules) == ChangeAction.REQUIRES_REPLACE:
            replace.append(name)
    return UpdatePlan(changes=changes, replace=sorted(replace))
