"""
Resource model: what operators declare, what providers observe, and the change
that moves one into the other.

All types here are immutable value objects. Changes are computed once by the
differ and never edited afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, FrozenSet, Mapping, Optional, Tuple

DEFAULT_TARGET = "local"


class ResourceKind(str, Enum):
    """Closed set of manageable entity kinds."""

    AD_OU = "ad_ou"
    AD_USER = "ad_user"
    AD_GROUP = "ad_group"
    GPO = "gpo"
    GPO_LINK = "gpo_link"
    SHARE = "share"
    REGISTRY_VALUE = "registry_value"
    SERVICE = "service"

    @classmethod
    def parse(cls, value: Any) -> "ResourceKind":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unknown resource kind: {value!r}")

    def __str__(self) -> str:
        return self.value


class Ensure(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Stable identity of a resource: unique per (target, kind, identity)."""

    kind: ResourceKind
    identity: str
    target: str = DEFAULT_TARGET

    @property
    def sort_key(self) -> Tuple[str, str, str]:
        return (self.kind.value, self.identity, self.target)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.identity}@{self.target}"


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Resource:
    """One declaration from the desired-state document."""

    ref: ResourceRef
    desired: Mapping[str, Any] = field(default_factory=dict)
    depends_on: FrozenSet[ResourceRef] = frozenset()
    ensure: Ensure = Ensure.PRESENT

    def __post_init__(self) -> None:
        object.__setattr__(self, "desired", _freeze(self.desired))
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))

    @property
    def kind(self) -> ResourceKind:
        return self.ref.kind

    @property
    def identity(self) -> str:
        return self.ref.identity

    @property
    def target(self) -> str:
        return self.ref.target

    @property
    def absent(self) -> bool:
        return self.ensure is Ensure.ABSENT


@dataclass(frozen=True)
class ObservedState:
    """Live state of one resource, queried during the current run."""

    ref: ResourceRef
    exists: bool
    attributes: Mapping[str, Any] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Provider-specific concurrency token (ETag, version counter...), if any.
    version: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", _freeze(self.attributes))

    @classmethod
    def missing(cls, ref: ResourceRef) -> "ObservedState":
        return cls(ref=ref, exists=False)


class ChangeKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"
    # Observed state could not be fetched; the change cannot be computed.
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AttributeDiff:
    attribute: str
    before: Any
    after: Any

    def to_dict(self) -> dict:
        return {"attribute": self.attribute, "from": self.before, "to": self.after}


@dataclass(frozen=True)
class Change:
    """The write needed to move one resource from observed to desired state."""

    ref: ResourceRef
    kind: ChangeKind
    attribute_diffs: Tuple[AttributeDiff, ...] = ()
    # Concurrency token seen at fetch time; providers use it to detect conflicts.
    version: Optional[str] = None
    reason: str = ""

    @property
    def is_noop(self) -> bool:
        return self.kind is ChangeKind.NOOP

    @property
    def desired_attributes(self) -> dict:
        return {d.attribute: d.after for d in self.attribute_diffs}

    def to_dict(self) -> dict:
        return {
            "target": self.ref.target,
            "kind": self.ref.kind.value,
            "identity": self.ref.identity,
            "change": self.kind.value,
            "diffs": [d.to_dict() for d in self.attribute_diffs],
            "reason": self.reason,
        }
