"""
Differ: desired resource + observed state -> Change.

Pure and synchronous. Only attributes named in `desired` are managed; anything
else the live object carries is left alone.
"""

from __future__ import annotations

from typing import List, Optional

from .resources import AttributeDiff, Change, ChangeKind, ObservedState, Resource
from .schema import AttributeSchema

_EXACT_SCHEMA = AttributeSchema()


def check_desired(desired: Resource, schema: Optional[AttributeSchema] = None) -> None:
    """Normalize every managed desired value once, so a bad declaration fails the run.

    Raises:
        SchemaError: a desired value cannot be coerced by its attribute rule.
    """
    schema = schema or _EXACT_SCHEMA
    if desired.absent:
        return
    for attr, value in desired.desired.items():
        if not schema.is_ignored(desired.kind, attr):
            schema.normalize(desired.kind, attr, value)


def diff(
    desired: Resource,
    observed: ObservedState,
    schema: Optional[AttributeSchema] = None,
) -> Change:
    """Compute the minimal change moving `observed` to `desired`.

    Decision order:
      1. absent desired, missing live    -> NOOP
      2. absent desired, existing live   -> DELETE
      3. present desired, missing live   -> CREATE with every managed attribute
      4. otherwise compare managed attributes after schema normalization
         -> UPDATE with the differing ones, or NOOP

    Raises:
        SchemaError: a value cannot be coerced by its attribute rule. Once
            `check_desired` has passed, only an observed value can cause it.
    """
    schema = schema or _EXACT_SCHEMA
    ref = desired.ref
    kind = desired.kind

    managed = sorted(a for a in desired.desired if not schema.is_ignored(kind, a))

    if desired.absent:
        if not observed.exists:
            return Change(ref=ref, kind=ChangeKind.NOOP, reason="Already absent")
        return Change(ref=ref, kind=ChangeKind.DELETE, version=observed.version, reason="Marked absent")

    if not observed.exists:
        diffs = tuple(AttributeDiff(a, None, desired.desired[a]) for a in managed)
        return Change(ref=ref, kind=ChangeKind.CREATE, attribute_diffs=diffs, reason="Not found")

    changed: List[AttributeDiff] = []
    for attr in managed:
        want = desired.desired[attr]
        have = observed.attributes.get(attr)
        if attr not in observed.attributes:
            if want is not None:
                changed.append(AttributeDiff(attr, None, want))
            continue
        if schema.normalize(kind, attr, want) != schema.normalize(kind, attr, have):
            changed.append(AttributeDiff(attr, have, want))

    if not changed:
        return Change(ref=ref, kind=ChangeKind.NOOP, version=observed.version, reason="Identical subset")

    fields = ", ".join(d.attribute for d in changed)
    return Change(
        ref=ref,
        kind=ChangeKind.UPDATE,
        attribute_diffs=tuple(changed),
        version=observed.version,
        reason=f"Field differs: {fields}",
    )
