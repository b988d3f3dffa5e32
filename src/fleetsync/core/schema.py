"""
Attribute schema: per-kind, per-attribute comparison rules for the differ.

Nothing is inferred. Unless a rule says otherwise, values compare as-is, so
`1 != "1"` and `"Finance" != "finance"`. Rules normalize BOTH sides before
comparison; the raw values are kept in the resulting diffs.

Schema files (YAML):

    extends: "_base"          # optional, resolved through search paths
    _defaults:                # rules applied to every kind
      description: { strip: true }
    ad_user:
      sAMAccountName: { case_insensitive: true }
      memberOf:       { type: list, list_as_set: true, case_insensitive: true }
      enabled:        { type: bool }
    share:
      path: { case_insensitive: true }
"""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml

from .errors import SchemaError
from .resources import ResourceKind

DEFAULTS_KEY = "_defaults"


# =========================
# Coercions (allow-list)
# =========================

def c_str(value: Any) -> str:
    return "" if value is None else str(value)


def c_int(value: Any) -> int:
    """Strict integer conversion; bools are rejected."""
    if isinstance(value, bool):
        raise ValueError(f"not an int: {value!r}")
    if isinstance(value, int):
        return value
    s = str(value).strip()
    if not s or not s.lstrip("-").isdigit():
        raise ValueError(f"not an int: {value!r}")
    return int(s)


def c_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off", ""}:
        return False
    raise ValueError(f"not a bool: {value!r}")


def c_list(value: Any) -> List[Any]:
    """Lists pass through; `;`-separated strings are split (spreadsheet cells)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        return [p.strip() for p in value.split(";") if p.strip()]
    return [value]


COERCIONS: Dict[str, Callable[[Any], Any]] = {
    "str": c_str,
    "int": c_int,
    "bool": c_bool,
    "list": c_list,
}


@dataclass(frozen=True)
class AttributeRule:
    type: str = "any"
    case_insensitive: bool = False
    list_as_set: bool = False
    strip: bool = False
    ignore: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, where: str = "") -> "AttributeRule":
        if not isinstance(data, Mapping):
            raise SchemaError(f"Rule for {where} must be a mapping")
        unknown = set(data) - {"type", "case_insensitive", "list_as_set", "strip", "ignore"}
        if unknown:
            raise SchemaError(f"Unknown rule option(s) for {where}: {', '.join(sorted(unknown))}")
        rtype = str(data.get("type", "any"))
        if rtype != "any" and rtype not in COERCIONS:
            raise SchemaError(f"Unknown type '{rtype}' for {where}")
        return cls(
            type=rtype,
            case_insensitive=bool(data.get("case_insensitive", False)),
            list_as_set=bool(data.get("list_as_set", False)),
            strip=bool(data.get("strip", False)),
            ignore=bool(data.get("ignore", False)),
        )

    def normalize(self, value: Any) -> Any:
        if self.type != "any":
            value = COERCIONS[self.type](value)
        return self._fold(value)

    def _fold(self, value: Any) -> Any:
        if isinstance(value, str):
            if self.strip:
                value = re.sub(r"\s+", " ", value).strip()
            if self.case_insensitive:
                value = value.casefold()
            return value
        if isinstance(value, (list, tuple)):
            items = [self._fold(v) for v in value]
            if self.list_as_set:
                # dedupe + order-insensitive; repr() keeps mixed types sortable
                return sorted({repr(i): i for i in items}.values(), key=repr)
            return items
        return value


EXACT = AttributeRule()


class AttributeSchema:
    """Resolved rules: kind -> attribute -> AttributeRule (with `_defaults` fallback)."""

    def __init__(self, rules: Optional[Mapping[str, Mapping[str, AttributeRule]]] = None) -> None:
        self._rules: Dict[str, Dict[str, AttributeRule]] = {
            k: dict(v) for k, v in (rules or {}).items()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttributeSchema":
        rules: Dict[str, Dict[str, AttributeRule]] = {}
        for kind_name, attrs in (data or {}).items():
            if kind_name == "extends":
                continue
            if kind_name != DEFAULTS_KEY:
                try:
                    ResourceKind.parse(kind_name)
                except ValueError as exc:
                    raise SchemaError(str(exc)) from exc
            if not isinstance(attrs, Mapping):
                raise SchemaError(f"Schema section '{kind_name}' must be a mapping")
            rules[kind_name] = {
                attr: AttributeRule.from_dict(spec or {}, where=f"{kind_name}.{attr}")
                for attr, spec in attrs.items()
            }
        return cls(rules)

    def rule(self, kind: ResourceKind, attribute: str) -> AttributeRule:
        own = self._rules.get(kind.value, {})
        if attribute in own:
            return own[attribute]
        return self._rules.get(DEFAULTS_KEY, {}).get(attribute, EXACT)

    def normalize(self, kind: ResourceKind, attribute: str, value: Any) -> Any:
        try:
            return self.rule(kind, attribute).normalize(value)
        except ValueError as exc:
            raise SchemaError(f"Cannot normalize {kind.value}.{attribute}={value!r}: {exc}") from exc

    def matches(self, kind: ResourceKind, attribute: str, live: Any, want: Any) -> bool:
        """Equality after normalization. A value the rule cannot coerce never matches."""
        try:
            return self.normalize(kind, attribute, live) == self.normalize(kind, attribute, want)
        except SchemaError:
            return False

    def is_ignored(self, kind: ResourceKind, attribute: str) -> bool:
        return self.rule(kind, attribute).ignore


# =========================
# Loader with inheritance
# =========================

def _deep_merge(base: Dict[str, Any], ext: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge: dicts merge recursively; lists/scalars override."""
    result = copy.deepcopy(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(result.get(k), dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


class SchemaLoader:
    """
    Load attribute schemas from disk, supporting `extends: "<parent>"` inheritance.

    `load()` accepts a path to a file, or a bare name looked up as `<name>.yml`
    in `search_paths` (checked in order).
    """

    def __init__(self, search_paths: Optional[List[str]] = None) -> None:
        self.search_paths = search_paths or ["resources/schemas"]

    def _find_path(self, name: str, near: Optional[str] = None) -> str:
        if os.path.isfile(name):
            return name
        # parents are looked up next to the child first
        dirs = ([os.path.dirname(near)] if near else []) + list(self.search_paths)
        for base in dirs:
            for ext in (".yml", ".yaml"):
                candidate = os.path.join(base, f"{name}{ext}")
                if os.path.exists(candidate):
                    return candidate
        raise SchemaError(f"Schema '{name}' not found in {self.search_paths}")

    def _read_yaml(self, path: str) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise SchemaError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SchemaError(f"Top-level YAML must be a mapping: {path}")
        return data

    def _load_recursive(self, name: str, stack: Optional[List[str]] = None) -> Dict[str, Any]:
        stack = stack or []
        path = os.path.abspath(self._find_path(name, near=stack[-1] if stack else None))
        if path in stack:
            cycle = " -> ".join(stack + [path])
            raise SchemaError(f"Inheritance cycle detected: {cycle}")
        data = self._read_yaml(path)
        parent = data.get("extends")
        if parent:
            merged_parent = self._load_recursive(str(parent), stack + [path])
            data = _deep_merge(merged_parent, data)
        return data

    def load(self, name: str) -> AttributeSchema:
        data = self._load_recursive(name)
        data.pop("extends", None)
        return AttributeSchema.from_dict(data)
