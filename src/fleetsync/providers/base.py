"""
StateProvider: the only place where FleetSync touches a live system.

One provider instance serves one ResourceKind. Concrete providers implement:
  - fetch(ref)    -> ObservedState   (exists=False when the object is missing)
  - apply(change) -> None            (must be idempotent: re-applying is a no-op)

and raise the typed errors from `fleetsync.core.errors`:
  ProviderUnavailable (retried), PermissionDenied, Conflict.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from ..core.executor import RetryPolicy
from ..core.resources import Change, ObservedState, Resource, ResourceKind, ResourceRef
from ..core.schema import AttributeSchema


@dataclass(frozen=True)
class ProviderPolicy:
    """Execution limits for one provider: concurrency cap, retries, per-call timeout."""

    concurrency: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    call_timeout_sec: float = 60.0

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "ProviderPolicy":
        if not overrides:
            return self
        retry = replace(
            self.retry,
            **{k: overrides[k] for k in ("max_attempts", "backoff_base_sec", "max_backoff_sec") if k in overrides},
        )
        return ProviderPolicy(
            concurrency=int(overrides.get("concurrency", self.concurrency)),
            retry=retry,
            call_timeout_sec=float(overrides.get("call_timeout_sec", self.call_timeout_sec)),
        )


class StateProvider(ABC):
    """Fetch/Apply capability for a single resource kind."""

    def __init__(
        self,
        kind: ResourceKind,
        *,
        policy: Optional[ProviderPolicy] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.kind = kind
        self.policy = policy or self.default_policy()
        self.log = logger or logging.getLogger(f"fs.provider.{kind.value}")
        # comparison rules for "already applied" checks; the reconciler binds its schema
        self.schema = AttributeSchema()

    @classmethod
    def default_policy(cls) -> ProviderPolicy:
        return ProviderPolicy()

    def check(self, resource: Resource) -> None:
        """Reject declarations this provider cannot converge. Runs before any fetch."""

    def holds(self, attributes: Mapping[str, Any], want: Mapping[str, Any]) -> bool:
        """True when live `attributes` already carry every wanted value (schema-normalized)."""
        return all(self.schema.matches(self.kind, k, attributes.get(k), v) for k, v in want.items())

    @abstractmethod
    def fetch(self, ref: ResourceRef) -> ObservedState:
        """Query the live object. Missing objects are `exists=False`, not an error."""

    @abstractmethod
    def apply(self, change: Change) -> None:
        """Perform the write implied by `change`."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value})"
