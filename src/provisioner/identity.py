"""Composite resource identifiers.

Objects scoped to a parent (an alarm on an instance, a plugin on an instance)
cannot be looked up without the parent's identifier, so their steady-state
and import identifier is the literal string "{resource_id},{parent_id}".
Parents are numeric instance identifiers in this domain.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidIdentifier, MissingParentIdentifier

SEPARATOR = ","


def format_identifier(resource_id: str, parent_id: int | None = None) -> str:
    """Encode an identifier, composite when a parent is given."""
    if parent_id is None:
        return str(resource_id)
    return f"{resource_id}{SEPARATOR}{parent_id}"


def parse_identifier(raw: str, parent_required: bool) -> tuple[str, int | None]:
    """Split an identifier on its first comma.

    Args:
        raw: Identifier as stored by the caller or given at import.
        parent_required: Whether the resource type is parent-scoped.

    Returns:
        Tuple of (resource_id, parent_id). parent_id is None when the raw
        value carries no parent segment and none is required.

    Raises:
        MissingParentIdentifier: parent_required and no comma present.
        InvalidIdentifier: empty resource segment or non-numeric parent.
    """
    raw = raw.strip()
    resource_id, sep, parent = raw.partition(SEPARATOR)

    if not resource_id:
        raise InvalidIdentifier(raw, "resource identifier is empty")

    if not sep:
        if parent_required:
            raise MissingParentIdentifier(raw)
        return resource_id, None

    return resource_id, parse_parent_id(parent, raw)


def parse_parent_id(segment: str, raw: str | None = None) -> int:
    """Parse the parent segment as a numeric identifier."""
    segment = segment.strip()
    if not (segment.isascii() and segment.isdigit()):
        raise InvalidIdentifier(
            raw if raw is not None else segment,
            f"parent identifier must be numeric, got {segment!r}",
        )
    return int(segment)


@dataclass(frozen=True)
class RemoteResourceRef:
    """Identity of one managed object on the control plane.

    Created when the object is provisioned or imported and immutable for
    its lifetime. Owned by the caller's persisted state; the core never
    caches it beyond a single call.
    """

    resource_id: str
    parent_id: int | None = None

    def __post_init__(self) -> None:
        if not str(self.resource_id):
            raise InvalidIdentifier(str(self.resource_id), "resource identifier is empty")
        if SEPARATOR in str(self.resource_id):
            raise InvalidIdentifier(
                str(self.resource_id), "resource identifier cannot contain a comma"
            )

    @classmethod
    def parse(cls, raw: str, parent_required: bool) -> RemoteResourceRef:
        resource_id, parent_id = parse_identifier(raw, parent_required)
        return cls(resource_id=resource_id, parent_id=parent_id)

    def format(self) -> str:
        return format_identifier(self.resource_id, self.parent_id)

    def require_parent(self, resource_type: str | None = None) -> int:
        """Return the parent identifier or fail before any remote call."""
        if self.parent_id is None:
            raise MissingParentIdentifier(self.format(), resource_type)
        return self.parent_id

    def __str__(self) -> str:
        return self.format()
