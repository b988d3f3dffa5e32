"""
Reconciliation report: a read-only aggregation of one run's ExecutionResults.

Two renderings, as for plans:
  - machine: `to_dict()` / `to_json()` (also persisted under <state_dir>/reports)
  - human:   compact table with auto-selected columns and `—` placeholders

Exit codes (CI gating):
  0  every change applied or unchanged
  1  at least one change failed (or was skipped because of an upstream failure)
  3  the run was aborted by cancellation
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ReportError
from .executor import ExecutionResult, ExecutionRun, Outcome, RunStatus, SkipReason
from .planner import Plan

log = logging.getLogger("fs.report")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PENDING = 2
EXIT_ABORTED = 3

_ERROR_WIDTH = 160
LAST_REPORT = "last.json"


@dataclass(frozen=True)
class ReconciliationReport:
    run_id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    results: Tuple[ExecutionResult, ...] = ()
    plan_summary: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_run(cls, run_id: str, run: ExecutionRun, plan: Plan) -> "ReconciliationReport":
        return cls(
            run_id=run_id,
            status=run.status,
            started_at=run.started_at,
            finished_at=run.finished_at,
            results=tuple(run.results),
            plan_summary=plan.summary(),
        )

    # ---------- views ----------

    @property
    def duration_sec(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def failed(self) -> List[ExecutionResult]:
        return [r for r in self.results if r.outcome is Outcome.FAILED]

    @property
    def skipped(self) -> List[ExecutionResult]:
        return [r for r in self.results if r.outcome is Outcome.SKIPPED]

    @property
    def changed(self) -> List[ExecutionResult]:
        return [r for r in self.results if r.outcome is Outcome.APPLIED]

    def _skipped_for(self, reason: SkipReason) -> int:
        return sum(1 for r in self.skipped if r.skip_reason is reason)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "total": len(self.results),
            "applied": len(self.changed),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "unchanged": self._skipped_for(SkipReason.NO_CHANGE),
            "cancelled": self._skipped_for(SkipReason.CANCELLED),
            "upstream_failure": self._skipped_for(SkipReason.UPSTREAM_FAILURE),
        }

    def exit_code(self) -> int:
        if self.status is RunStatus.ABORTED:
            return EXIT_ABORTED
        c = self.counts
        if c["failed"] or c["upstream_failure"]:
            return EXIT_FAILED
        return EXIT_OK

    # ---------- serialization ----------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_sec": round(self.duration_sec, 3),
            "exit_code": self.exit_code(),
            "counts": self.counts,
            "plan_summary": dict(self.plan_summary),
            "results": [r.to_dict() for r in self.results],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False, default=str)

    def render_table(self) -> str:
        return format_report(self.to_dict())


# =========================
# Table rendering
# =========================

def _present(v: Any) -> bool:
    return not (v is None or v == "" or v == [])


def _fmt(v: Any, col: str) -> str:
    if isinstance(v, bool):
        return "✓" if v else "✗"
    s = "" if v is None else str(v)
    if s == "":
        return "—"
    if col == "error" and len(s) > _ERROR_WIDTH:
        return s[:_ERROR_WIDTH - 1] + "…"
    return s


def format_rows(rows: Sequence[Mapping[str, Any]], candidates: Sequence[str], mandatory: Iterable[str]) -> str:
    """Render rows as a pipe table, keeping mandatory columns and any candidate with data."""
    required = set(mandatory)
    cols = [c for c in candidates if c in required or any(_present(r.get(c)) for r in rows)]

    widths = {c: len(c) for c in cols}
    for r in rows:
        for c in cols:
            widths[c] = max(widths[c], len(_fmt(r.get(c), c)))

    lines = [
        "| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |",
        "| " + " | ".join("-" * widths[c] for c in cols) + " |",
    ]
    for r in rows:
        lines.append("| " + " | ".join(_fmt(r.get(c), c).ljust(widths[c]) for c in cols) + " |")
    return "\n".join(lines)


_REPORT_COLUMNS = [
    "target", "kind", "identity", "change", "outcome", "skip_reason",
    "attempts", "reason", "error_type", "error",
]
_REPORT_MANDATORY = {"target", "kind", "identity", "change", "outcome"}


def format_report(data: Mapping[str, Any]) -> str:
    """Human summary of a report dict (as produced by `to_dict` or read back from disk)."""
    c = data.get("counts", {})
    head = (
        f"Run {data.get('run_id', '?')} {data.get('status', '?')} in {data.get('duration_sec', 0)}s: "
        f"applied={c.get('applied', 0)} failed={c.get('failed', 0)} "
        f"unchanged={c.get('unchanged', 0)} upstream_failure={c.get('upstream_failure', 0)} "
        f"cancelled={c.get('cancelled', 0)}"
    )
    rows = data.get("results") or []
    if not rows:
        return head + "\n(no resources)"
    return head + "\n" + format_rows(rows, _REPORT_COLUMNS, _REPORT_MANDATORY)


_PLAN_COLUMNS = ["batch", "target", "kind", "identity", "change", "reason", "after"]
_PLAN_MANDATORY = {"batch", "target", "kind", "identity", "change"}


def render_plan(plan: Plan, fmt: str = "table") -> str:
    data = plan.to_dict()
    if fmt == "json":
        return json.dumps(data, indent=2, ensure_ascii=False, default=str)

    rows: List[Dict[str, Any]] = []
    for batch in data["batches"]:
        for ch in batch["changes"]:
            rows.append({**ch, "batch": batch["index"], "after": ", ".join(ch["after"])})
    s = data["summary"]
    head = (
        f"Plan: {s['batches']} batch(es), create={s['create']} update={s['update']} "
        f"delete={s['delete']} noop={s['noop']} unknown={s['unknown']}"
    )
    if not rows:
        return head + "\n(no resources)"
    return head + "\n" + format_rows(rows, _PLAN_COLUMNS, _PLAN_MANDATORY)


# =========================
# Persistence
# =========================

def _write_atomic(path: str, text: str) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(prefix=".report-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def save_report(report: ReconciliationReport, state_dir: str) -> str:
    """Write `<state_dir>/reports/<run_id>.json` and refresh `last.json`. Returns the run file path."""
    reports_dir = os.path.join(state_dir, "reports")
    os.makedirs(reports_dir, exist_ok=True)
    text = report.to_json()
    path = os.path.join(reports_dir, f"{report.run_id}.json")
    _write_atomic(path, text)
    _write_atomic(os.path.join(reports_dir, LAST_REPORT), text)
    log.debug("Report saved to %s", path)
    return path


def load_last_report(state_dir: str) -> Dict[str, Any]:
    path = os.path.join(state_dir, "reports", LAST_REPORT)
    if not os.path.exists(path):
        raise ReportError(f"No report found in {os.path.dirname(path)}; run 'fleetsync apply' first")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise ReportError(f"Unreadable report {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ReportError(f"Report {path} must be a JSON object")
    return data
