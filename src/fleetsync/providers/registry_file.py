"""
RegistryFileProvider: registry values kept in per-target YAML hive files.

    <root_dir>/<target>.yml
        HKLM:\\Software\\Contoso\\Agent\\Enabled:
          type: REG_DWORD
          data: 1

Local writes: no retries, one writer at a time. Each write re-reads the hive
under a per-file lock, checks the value still holds the `before` side of the
change, then replaces the file atomically.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from typing import TYPE_CHECKING, Any, Dict, Optional

import yaml

from ..core.errors import Conflict, PermissionDenied, ProviderError, ProviderUnavailable, UnsupportedAttribute
from ..core.executor import NO_RETRY
from ..core.resources import Change, ChangeKind, ObservedState, Resource, ResourceKind, ResourceRef
from .base import ProviderPolicy, StateProvider

if TYPE_CHECKING:  # pragma: no cover
    from ..core.config import AppConfig

ATTRIBUTES = ("type", "data")


class RegistryFileProvider(StateProvider):
    def __init__(
        self,
        kind: ResourceKind = ResourceKind.REGISTRY_VALUE,
        root_dir: str = "state/registry",
        *,
        policy: Optional[ProviderPolicy] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        super().__init__(kind, policy=policy, logger=logger)
        self.root_dir = root_dir
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def default_policy(cls) -> ProviderPolicy:
        return ProviderPolicy(concurrency=1, retry=NO_RETRY, call_timeout_sec=10.0)

    @classmethod
    def from_config(
        cls,
        kind: ResourceKind,
        cfg: "AppConfig",
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> "RegistryFileProvider":
        return cls(kind, cfg.registry.root_dir, logger=logger)

    # ---------------- StateProvider ----------------

    def fetch(self, ref: ResourceRef) -> ObservedState:
        hive = self._read_hive(self._hive_path(ref), ref)
        entry = hive.get(ref.identity)
        if entry is None:
            return ObservedState.missing(ref)
        return ObservedState(ref=ref, exists=True, attributes=entry)

    def check(self, resource: Resource) -> None:
        if resource.absent:
            return
        extra = sorted(
            a for a in resource.desired if a not in ATTRIBUTES and not self.schema.is_ignored(self.kind, a)
        )
        if extra:
            raise UnsupportedAttribute(resource.ref, extra)

    def apply(self, change: Change) -> None:
        ref = change.ref
        want = change.desired_attributes
        unsupported = sorted(k for k in want if k not in ATTRIBUTES)
        if unsupported:
            raise ProviderError(f"cannot store attribute(s): {', '.join(unsupported)}", ref=ref)

        path = self._hive_path(ref)
        with self._file_lock(path):
            hive = self._read_hive(path, ref)
            current = hive.get(ref.identity)

            if change.kind is ChangeKind.DELETE:
                if current is None:
                    return
                del hive[ref.identity]
            elif change.kind is ChangeKind.CREATE:
                if current is not None:
                    if self.holds(current, want):
                        return
                    raise Conflict("value was created externally with different data", ref=ref)
                hive[ref.identity] = dict(want)
            elif change.kind is ChangeKind.UPDATE:
                if current is None:
                    raise Conflict("value was removed since it was fetched", ref=ref)
                if self.holds(current, want):
                    return
                for d in change.attribute_diffs:
                    live = current.get(d.attribute)
                    if not (
                        self.schema.matches(self.kind, d.attribute, live, d.before)
                        or self.schema.matches(self.kind, d.attribute, live, d.after)
                    ):
                        raise Conflict(
                            f"'{d.attribute}' changed since fetch (expected {d.before!r}, found {live!r})",
                            ref=ref,
                        )
                current.update(want)
            else:
                raise ProviderError(f"cannot apply a '{change.kind.value}' change", ref=ref)

            self._write_hive(path, hive, ref)
        self.log.debug("%s %s written to %s", change.kind.value, ref, path)

    # ---------------- hive I/O ----------------

    def _file_lock(self, path: str) -> threading.Lock:
        key = os.path.abspath(path)
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _hive_path(self, ref: ResourceRef) -> str:
        if not ref.target or any(sep in ref.target for sep in ("/", "\\")) or ref.target.startswith("."):
            raise ProviderError(f"invalid target name for a hive file: {ref.target!r}", ref=ref)
        return os.path.join(self.root_dir, f"{ref.target}.yml")

    def _read_hive(self, path: str, ref: ResourceRef) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except PermissionError as exc:
            raise PermissionDenied(f"cannot read hive {path}: {exc}", ref=ref) from exc
        except (OSError, yaml.YAMLError) as exc:
            raise ProviderUnavailable(f"unreadable hive {path}: {exc}", ref=ref) from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"hive {path} must be a mapping", ref=ref)
        hive: Dict[str, Dict[str, Any]] = {}
        for key, entry in data.items():
            if not isinstance(entry, dict):
                raise ProviderUnavailable(f"hive {path}: entry {key!r} must be a mapping", ref=ref)
            hive[str(key)] = dict(entry)
        return hive

    def _write_hive(self, path: str, hive: Dict[str, Dict[str, Any]], ref: ResourceRef) -> None:
        if os.path.exists(path) and not os.access(path, os.W_OK):
            raise PermissionDenied(f"hive {path} is read-only", ref=ref)
        directory = os.path.dirname(path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".hive-", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    yaml.safe_dump(hive, f, sort_keys=True, allow_unicode=True)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except PermissionError as exc:
            raise PermissionDenied(f"cannot write hive {path}: {exc}", ref=ref) from exc
        except OSError as exc:
            raise ProviderUnavailable(f"cannot write hive {path}: {exc}", ref=ref) from exc
