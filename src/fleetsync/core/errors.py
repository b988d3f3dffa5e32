"""
Error taxonomy for FleetSync.

Two families:
  - ValidationError: the desired-state document (or its schema/config) cannot be
    planned. Fatal, raised before any provider call.
  - ProviderError: a single Fetch/Apply failed. Recorded per change, never aborts
    sibling changes. `retryable` tells the Executor whether another attempt may help.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple


class FleetSyncError(Exception):
    """Base class for every error raised by FleetSync."""


class ConfigError(FleetSyncError):
    """Raised when runtime configuration cannot be resolved."""


class ReportError(FleetSyncError):
    """A stored reconciliation report is missing or unreadable."""


# =========================
# Validation (pre-execution)
# =========================

class ValidationError(FleetSyncError):
    """The desired state cannot be planned; nothing has been applied."""


class DocumentError(ValidationError):
    """The desired-state document is structurally invalid."""


class SchemaError(ValidationError):
    """An attribute schema is invalid or a value cannot be normalized."""


class DuplicateResource(ValidationError):
    """Two declarations share the same (target, kind, identity)."""

    def __init__(self, ref: Any) -> None:
        super().__init__(f"Duplicate resource: {ref}")
        self.ref = ref


class UnknownDependency(ValidationError):
    """A depends_on entry names a resource that is not declared."""

    def __init__(self, ref: Any, missing: Any) -> None:
        super().__init__(f"{ref} depends on undeclared resource {missing}")
        self.ref = ref
        self.missing = missing


class DependencyConflict(ValidationError):
    """A present resource depends on a resource marked for deletion."""

    def __init__(self, ref: Any, prerequisite: Any) -> None:
        super().__init__(f"{ref} must exist but depends on {prerequisite}, which is marked absent")
        self.ref = ref
        self.prerequisite = prerequisite


class CyclicDependency(ValidationError):
    """The dependency graph has a cycle; `edge` is one (prerequisite, dependant) pair on it."""

    def __init__(self, edge: Tuple[Any, Any]) -> None:
        super().__init__(f"Cyclic dependency: {edge[0]} -> {edge[1]}")
        self.edge = edge


class UnregisteredKind(ValidationError):
    """No state provider is registered for a resource kind."""

    def __init__(self, kind: Any) -> None:
        super().__init__(f"No provider registered for kind '{kind}'")
        self.kind = kind


class UnsupportedAttribute(ValidationError):
    """A provider cannot store some of the attributes a resource declares."""

    def __init__(self, ref: Any, attributes: Any) -> None:
        super().__init__(f"{ref}: attribute(s) not supported by this provider: {', '.join(attributes)}")
        self.ref = ref
        self.attributes = tuple(attributes)


# =========================
# Provider (per change)
# =========================

class ProviderError(FleetSyncError):
    """A Fetch or Apply call failed."""

    retryable = False

    def __init__(self, message: str, *, ref: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.ref = ref

    def __str__(self) -> str:
        if self.ref is not None:
            return f"{type(self).__name__}({self.ref}): {self.message}"
        return f"{type(self).__name__}: {self.message}"


class ProviderUnavailable(ProviderError):
    """The backing subsystem cannot be reached. Transient."""

    retryable = True


class CallTimeout(ProviderUnavailable):
    """A Fetch/Apply call exceeded its per-call timeout."""


class PermissionDenied(ProviderError):
    """The caller lacks rights for the write (or read)."""


class Conflict(ProviderError):
    """The live object changed since it was fetched; re-run to re-diff."""
