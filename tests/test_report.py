import json
from datetime import datetime, timedelta, timezone

import pytest

from fleetsync.core.errors import ReportError
from fleetsync.core.executor import ExecutionResult, Outcome, RunStatus, SkipReason
from fleetsync.core.planner import PlanBuilder
from fleetsync.core.report import ReconciliationReport, format_report, load_last_report, render_plan, save_report
from fleetsync.core.resources import AttributeDiff, Change, ChangeKind, Resource, ResourceKind, ResourceRef

T0 = datetime(2026, 10, 18, 8, 0, 0, tzinfo=timezone.utc)


def _ref(identity):
    return ResourceRef(ResourceKind.SHARE, identity, "fs01")


def _change(identity, kind=ChangeKind.CREATE):
    return Change(
        ref=_ref(identity),
        kind=kind,
        attribute_diffs=(AttributeDiff("path", None, f"D:\\{identity}"),) if kind is not ChangeKind.NOOP else (),
        reason="Not found" if kind is ChangeKind.CREATE else "",
    )


def _report(results, status=RunStatus.COMPLETED):
    return ReconciliationReport(
        run_id="run-1",
        status=status,
        started_at=T0,
        finished_at=T0 + timedelta(seconds=2.5),
        results=tuple(results),
        plan_summary={"create": len(results)},
    )


def test_counts_and_exit_codes():
    ok = ExecutionResult(_change("A"), Outcome.APPLIED, attempts=1)
    same = ExecutionResult(_change("B", ChangeKind.NOOP), Outcome.SKIPPED, skip_reason=SkipReason.NO_CHANGE)
    bad = ExecutionResult(_change("C"), Outcome.FAILED, attempts=3, error="boom", error_type="ProviderUnavailable")
    up = ExecutionResult(_change("D"), Outcome.SKIPPED, skip_reason=SkipReason.UPSTREAM_FAILURE)
    gone = ExecutionResult(_change("E"), Outcome.SKIPPED, skip_reason=SkipReason.CANCELLED)

    clean = _report([ok, same])
    assert clean.exit_code() == 0
    assert clean.duration_sec == 2.5

    failed = _report([ok, same, bad, up])
    assert failed.counts == {
        "total": 4, "applied": 1, "failed": 1, "skipped": 2,
        "unchanged": 1, "cancelled": 0, "upstream_failure": 1,
    }
    assert failed.exit_code() == 1
    assert [r.ref.identity for r in failed.failed] == ["C"]
    assert [r.ref.identity for r in failed.changed] == ["A"]

    assert _report([up]).exit_code() == 1
    assert _report([ok, gone], RunStatus.ABORTED).exit_code() == 3


def test_json_form_carries_identity_change_and_error():
    bad = ExecutionResult(_change("C"), Outcome.FAILED, attempts=3, error="boom", error_type="ProviderUnavailable")
    data = json.loads(_report([bad]).to_json())
    assert data["run_id"] == "run-1"
    assert data["status"] == "completed"
    assert data["exit_code"] == 1
    entry = data["results"][0]
    assert entry["target"] == "fs01" and entry["kind"] == "share" and entry["identity"] == "C"
    assert entry["change"] == "create"
    assert entry["diffs"] == [{"attribute": "path", "from": None, "to": "D:\\C"}]
    assert entry["outcome"] == "failed"
    assert entry["attempts"] == 3
    assert entry["error_type"] == "ProviderUnavailable"
    assert entry["error"] == "boom"


def test_table_form():
    long_error = "x" * 400
    rows = [
        ExecutionResult(_change("A"), Outcome.APPLIED, attempts=1),
        ExecutionResult(_change("B"), Outcome.FAILED, attempts=2, error=long_error, error_type="Conflict"),
    ]
    text = _report(rows).render_table()
    lines = text.splitlines()
    assert lines[0].startswith("Run run-1 completed in 2.5s: applied=1 failed=1")
    assert lines[1].startswith("| target") and "outcome" in lines[1] and "error" in lines[1]
    assert "—" in text  # placeholder for A's empty error
    assert long_error not in text and "…" in text


def test_table_hides_columns_without_data():
    text = _report([ExecutionResult(_change("A"), Outcome.APPLIED, attempts=1)]).render_table()
    header = text.splitlines()[1]
    assert "error" not in header and "skip_reason" not in header


def test_save_and_load_last_report(tmp_path):
    report = _report([ExecutionResult(_change("A"), Outcome.APPLIED, attempts=1)])
    path = save_report(report, str(tmp_path))

    assert path.endswith("run-1.json")
    assert (tmp_path / "reports" / "last.json").exists()
    data = load_last_report(str(tmp_path))
    assert data == json.loads(report.to_json())
    assert format_report(data) == report.render_table()


def test_load_last_report_errors(tmp_path):
    with pytest.raises(ReportError):
        load_last_report(str(tmp_path))
    (tmp_path / "reports").mkdir()
    (tmp_path / "reports" / "last.json").write_text("{broken", encoding="utf-8")
    with pytest.raises(ReportError):
        load_last_report(str(tmp_path))


def test_render_plan_table_and_json():
    a, b = _ref("A"), _ref("B")
    builder = PlanBuilder()
    graph = builder.validate([Resource(ref=a), Resource(ref=b, depends_on=frozenset({a}))])
    plan = builder.build(graph, {a: _change("A"), b: _change("B", ChangeKind.NOOP)})

    table = render_plan(plan)
    assert table.splitlines()[0] == "Plan: 2 batch(es), create=1 update=0 delete=0 noop=1 unknown=0"
    assert "share:A@fs01" in table  # prerequisite column for B

    data = json.loads(render_plan(plan, "json"))
    assert data["summary"]["batches"] == 2
    assert data["batches"][1]["changes"][0]["after"] == ["share:A@fs01"]
