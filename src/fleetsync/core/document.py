"""
Desired-state document loader.

Formats:
  - YAML / JSON:
        target: "corp.local"            # default target (optional)
        resources:
          - kind: ad_ou
            identity: "OU=Finance,DC=corp,DC=local"
          - kind: share
            identity: "Finance"
            target: "fs01"
            attributes: { path: "D:\\Fin" }
            depends_on: ["ad_group:GG-Finance", {kind: ad_ou, identity: "...", target: "corp.local"}]
          - kind: service
            identity: "Spooler"
            ensure: absent

  - XLSX (first worksheet, first row = headers):
        Kind | Identity | Target | Ensure | DependsOn | attr.path | attr.description ...
    `DependsOn` is `;`-separated `kind:identity[@target]`. Empty attr cells are unmanaged.

Only structure is checked here. Duplicates, dangling references and cycles are
the plan builder's business.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from .errors import DocumentError
from .resources import DEFAULT_TARGET, Ensure, Resource, ResourceKind, ResourceRef

ATTR_PREFIX = "attr."


@dataclass(frozen=True)
class DesiredStateDocument:
    resources: Tuple[Resource, ...]
    source: str = ""

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def kinds(self) -> List[ResourceKind]:
        return sorted({r.kind for r in self.resources}, key=lambda k: k.value)


def parse_ref(value: Any, *, default_target: str, where: str) -> ResourceRef:
    """
    Parse a dependency reference.
      - "kind:identity"           (target of the dependant)
      - "kind:identity@target"    (only for the XLSX column, see `_split_target`)
      - {kind, identity, target?}
    The string form splits on the FIRST colon so identities like `HKLM:\\X` survive.
    """
    if isinstance(value, dict):
        try:
            kind = ResourceKind.parse(value.get("kind"))
        except ValueError as exc:
            raise DocumentError(f"{where}: {exc}") from exc
        identity = str(value.get("identity") or "").strip()
        if not identity:
            raise DocumentError(f"{where}: dependency is missing 'identity'")
        target = str(value.get("target") or default_target)
        return ResourceRef(kind, identity, target)

    text = str(value or "").strip()
    kind_name, sep, identity = text.partition(":")
    if not sep or not identity.strip():
        raise DocumentError(f"{where}: dependency must look like 'kind:identity', got {value!r}")
    try:
        kind = ResourceKind.parse(kind_name)
    except ValueError as exc:
        raise DocumentError(f"{where}: {exc}") from exc
    return ResourceRef(kind, identity.strip(), default_target)


def _parse_ensure(value: Any, where: str) -> Ensure:
    text = str(value or "present").strip().lower()
    try:
        return Ensure(text)
    except ValueError:
        raise DocumentError(f"{where}: ensure must be 'present' or 'absent', got {value!r}") from None


def _build_resource(item: Any, *, default_target: str, where: str) -> Resource:
    if not isinstance(item, dict):
        raise DocumentError(f"{where}: resource must be a mapping")
    try:
        kind = ResourceKind.parse(item.get("kind"))
    except ValueError as exc:
        raise DocumentError(f"{where}: {exc}") from exc

    identity = str(item.get("identity") or "").strip()
    if not identity:
        raise DocumentError(f"{where}: missing 'identity'")
    target = str(item.get("target") or default_target).strip()

    attributes = item.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise DocumentError(f"{where}: 'attributes' must be a mapping")

    deps_raw = item.get("depends_on") or []
    if isinstance(deps_raw, (str, dict)):
        deps_raw = [deps_raw]
    if not isinstance(deps_raw, list):
        raise DocumentError(f"{where}: 'depends_on' must be a list")
    deps = frozenset(parse_ref(d, default_target=target, where=where) for d in deps_raw)

    return Resource(
        ref=ResourceRef(kind, identity, target),
        desired={str(k): v for k, v in attributes.items()},
        depends_on=deps,
        ensure=_parse_ensure(item.get("ensure"), where),
    )


def document_from_dict(data: Any, *, source: str = "") -> DesiredStateDocument:
    if not isinstance(data, dict):
        raise DocumentError(f"Top-level document must be a mapping: {source or '<memory>'}")
    default_target = str(data.get("target") or DEFAULT_TARGET)
    items = data.get("resources")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise DocumentError("'resources' must be a list")
    resources = tuple(
        _build_resource(item, default_target=default_target, where=f"resources[{i}]")
        for i, item in enumerate(items)
    )
    return DesiredStateDocument(resources=resources, source=source)


# =========================
# File readers
# =========================

def _split_target(text: str) -> Tuple[str, str]:
    """'kind:identity@target' -> ('kind:identity', 'target'); no suffix -> (text, '')."""
    ref, sep, target = text.rpartition("@")
    if sep and ref and ":" in ref:
        return ref, target.strip()
    return text, ""


def _cell(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _rows_to_dict(headers: List[str], rows: Iterable[Tuple[Any, ...]]) -> Dict[str, Any]:
    """Convert sheet rows to the YAML document shape (row numbers are 1-based, header = 1)."""
    lower = {h.lower(): i for i, h in enumerate(headers) if h}
    for required in ("kind", "identity"):
        if required not in lower:
            raise DocumentError(f"Missing required column: {required.capitalize()}")

    def get(row: Tuple[Any, ...], name: str) -> Any:
        idx = lower.get(name)
        return row[idx] if idx is not None and idx < len(row) else None

    resources: List[Dict[str, Any]] = []
    for n, row in enumerate(rows, start=2):
        if not any(_cell(v) for v in row):
            continue
        target = _cell(get(row, "target"))
        attributes: Dict[str, Any] = {}
        for i, h in enumerate(headers):
            if not h.lower().startswith(ATTR_PREFIX) or i >= len(row):
                continue
            val = row[i]
            if val is None or (isinstance(val, str) and not val.strip()):
                continue
            attributes[h[len(ATTR_PREFIX):]] = val
        deps: List[Any] = []
        for piece in _cell(get(row, "dependson")).split(";"):
            if not piece.strip():
                continue
            text, dep_target = _split_target(piece.strip())
            if dep_target:
                ref = parse_ref(text, default_target=dep_target, where=f"row {n}")
                deps.append({"kind": ref.kind.value, "identity": ref.identity, "target": ref.target})
            else:
                # resolved against the dependant's target later
                deps.append(text)
        item: Dict[str, Any] = {
            "kind": _cell(get(row, "kind")),
            "identity": _cell(get(row, "identity")),
            "ensure": _cell(get(row, "ensure")) or "present",
            "attributes": attributes,
            "depends_on": deps,
        }
        if target:
            item["target"] = target
        resources.append(item)
    return {"resources": resources}


def _read_xlsx(path: Path) -> Dict[str, Any]:
    try:
        from openpyxl import load_workbook  # heavy import, only for spreadsheet documents
    except ImportError as e:
        raise DocumentError(
            "XLSX support requires 'openpyxl'. Install it or use a YAML document instead."
        ) from e

    wb = load_workbook(filename=str(path), data_only=True, read_only=True)
    try:
        ws = wb.active
        rows = list(ws.iter_rows(values_only=True))
    finally:
        wb.close()
    if not rows:
        return {"resources": []}
    headers = [_cell(h) for h in rows[0]]
    return _rows_to_dict(headers, rows[1:])


def _read_yaml(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise DocumentError(f"Invalid YAML/JSON in {path}: {exc}") from exc


def load_document(path: str, *, default_target: Optional[str] = None) -> DesiredStateDocument:
    """Read a desired-state document from disk, picking the reader by extension."""
    p = Path(path)
    if not p.exists():
        raise DocumentError(f"Desired-state document not found: {path}")
    ext = p.suffix.lower()
    if ext in (".xlsx", ".xlsm"):
        data = _read_xlsx(p)
    elif ext in (".yml", ".yaml", ".json"):
        data = _read_yaml(p)
    else:
        raise DocumentError(f"Unsupported document format '{ext}': {path}")
    if default_target and isinstance(data, dict) and not data.get("target"):
        data["target"] = default_target
    return document_from_dict(data, source=str(p))
