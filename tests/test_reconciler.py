import pytest

from fleetsync.core.document import document_from_dict
from fleetsync.core.errors import (
    CyclicDependency,
    DuplicateResource,
    PermissionDenied,
    ProviderUnavailable,
    SchemaError,
    UnregisteredKind,
    UnsupportedAttribute,
)
from fleetsync.core.executor import Outcome, RunStatus, SkipReason
from fleetsync.core.reconciler import Reconciler
from fleetsync.core.resources import ChangeKind, ResourceKind, ResourceRef
from fleetsync.core.schema import AttributeSchema
from fleetsync.providers.base import ProviderPolicy
from fleetsync.providers.registry_file import RegistryFileProvider

from fakes import FAST_RETRY, FakeProvider, registry_of

K = ResourceKind

DOC = {
    "target": "corp.local",
    "resources": [
        {"kind": "ad_ou", "identity": "OU=Finance"},
        {"kind": "ad_group", "identity": "GG-Finance", "depends_on": ["ad_ou:OU=Finance"]},
        {
            "kind": "share",
            "identity": "Finance",
            "attributes": {"path": "D:\\Fin", "maxUsers": 25},
            "depends_on": ["ad_group:GG-Finance"],
        },
    ],
}


def _ref(kind, identity):
    return ResourceRef(kind, identity, "corp.local")


def _providers(**share_kwargs):
    return (
        FakeProvider(K.AD_OU),
        FakeProvider(K.AD_GROUP),
        FakeProvider(K.SHARE, **share_kwargs),
    )


def test_plan_then_apply_converges():
    providers = _providers()
    rec = Reconciler(registry_of(*providers), concurrency=2)
    doc = document_from_dict(DOC)

    plan = rec.plan(doc)
    assert [b.refs for b in plan.batches] == [
        [_ref(K.AD_OU, "OU=Finance")],
        [_ref(K.AD_GROUP, "GG-Finance")],
        [_ref(K.SHARE, "Finance")],
    ]
    assert plan.summary()["create"] == 3

    report = rec.apply(doc)
    assert report.status is RunStatus.COMPLETED
    assert report.counts["applied"] == 3
    assert report.exit_code() == 0

    # second run: nothing left to do
    again = rec.plan(doc)
    assert not again.has_changes
    report2 = rec.apply(doc)
    assert report2.counts["unchanged"] == 3 and report2.counts["applied"] == 0
    assert report2.exit_code() == 0


def test_plan_does_not_apply_anything():
    providers = _providers()
    Reconciler(registry_of(*providers)).plan(document_from_dict(DOC))
    assert all(p.applied() == [] for p in providers)


def test_schema_is_used_for_comparison():
    share_ref = _ref(K.SHARE, "Finance")
    providers = (
        FakeProvider(K.AD_OU, {_ref(K.AD_OU, "OU=Finance"): {}}),
        FakeProvider(K.AD_GROUP, {_ref(K.AD_GROUP, "GG-Finance"): {}}),
        FakeProvider(K.SHARE, {share_ref: {"path": "d:\\fin", "maxUsers": "25"}}),
    )
    schema = AttributeSchema.from_dict({"share": {"path": {"case_insensitive": True}, "maxUsers": {"type": "int"}}})

    plan = Reconciler(registry_of(*providers), schema).plan(document_from_dict(DOC))
    assert not plan.has_changes
    plan_exact = Reconciler(registry_of(*providers)).plan(document_from_dict(DOC))
    assert [c.ref for c in plan_exact.pending] == [share_ref]


def test_validation_errors_happen_before_any_fetch():
    providers = _providers()
    doc = document_from_dict({"resources": DOC["resources"] + [{"kind": "ad_ou", "identity": "OU=Finance"}]})
    with pytest.raises(DuplicateResource):
        Reconciler(registry_of(*providers)).apply(doc)
    assert all(p.calls == [] for p in providers)

    cyclic = document_from_dict({"resources": [
        {"kind": "ad_group", "identity": "a", "depends_on": ["ad_group:b"]},
        {"kind": "ad_group", "identity": "b", "depends_on": ["ad_group:a"]},
    ]})
    with pytest.raises(CyclicDependency):
        Reconciler(registry_of(*providers)).plan(cyclic)
    assert all(p.calls == [] for p in providers)


def test_unregistered_kind_is_rejected_before_fetch():
    ou = FakeProvider(K.AD_OU)
    doc = document_from_dict({"resources": [
        {"kind": "ad_ou", "identity": "OU=Finance"},
        {"kind": "service", "identity": "Spooler"},
    ]})
    with pytest.raises(UnregisteredKind):
        Reconciler(registry_of(ou)).plan(doc)
    assert ou.calls == []


def test_fetch_failure_becomes_failed_result_and_blocks_dependants():
    providers = (
        FakeProvider(
            K.AD_OU,
            policy=ProviderPolicy(concurrency=1, retry=FAST_RETRY, call_timeout_sec=5.0),
            fetch_errors={"OU=Finance": ProviderUnavailable("directory unreachable")},
        ),
        FakeProvider(K.AD_GROUP),
        FakeProvider(K.SHARE),
    )
    rec = Reconciler(registry_of(*providers))
    doc = document_from_dict(DOC)

    plan = rec.plan(doc)
    assert plan.has_unknown
    unknown = plan.changes[0]
    assert unknown.kind is ChangeKind.UNKNOWN and "directory unreachable" in unknown.reason

    report = rec.apply(doc)
    by_id = {r.ref.identity: r for r in report.results}
    assert by_id["OU=Finance"].outcome is Outcome.FAILED
    assert by_id["OU=Finance"].attempts == 3
    assert by_id["GG-Finance"].skip_reason is SkipReason.UPSTREAM_FAILURE
    assert by_id["Finance"].skip_reason is SkipReason.UPSTREAM_FAILURE
    assert report.exit_code() == 1
    assert all(p.applied() == [] for p in providers)


def test_apply_failure_is_reported_with_detail():
    providers = _providers(apply_errors={"Finance": PermissionDenied("share creation denied")})
    report = Reconciler(registry_of(*providers)).apply(document_from_dict(DOC))
    assert report.counts["applied"] == 2
    assert report.counts["failed"] == 1
    failed = report.failed[0]
    assert failed.ref.identity == "Finance"
    assert failed.change.kind is ChangeKind.CREATE
    assert "share creation denied" in failed.error
    assert report.exit_code() == 1


def test_deletion_is_planned_for_absent_resources():
    svc = ResourceRef(K.SERVICE, "Spooler", "pc01")
    provider = FakeProvider(K.SERVICE, {svc: {"startType": "auto"}})
    doc = document_from_dict({"target": "pc01", "resources": [{"kind": "service", "identity": "Spooler", "ensure": "absent"}]})
    rec = Reconciler(registry_of(provider))

    report = rec.apply(doc)
    assert report.results[0].change.kind is ChangeKind.DELETE
    assert report.results[0].outcome is Outcome.APPLIED
    assert svc not in provider.state
    assert not rec.plan(doc).has_changes


def test_attributes_a_provider_cannot_store_fail_before_any_fetch(tmp_path):
    svc = FakeProvider(K.SERVICE)
    hives = RegistryFileProvider(root_dir=str(tmp_path))
    value = {"kind": "registry_value", "identity": "HKLM:\\Software\\Contoso\\Agent\\Enabled"}
    doc = document_from_dict({"target": "pc01", "resources": [
        {"kind": "service", "identity": "Spooler"},
        dict(value, attributes={"type": "REG_DWORD", "data": 1, "description": "agent switch"}),
    ]})
    with pytest.raises(UnsupportedAttribute):
        Reconciler(registry_of(svc, hives)).apply(doc)
    assert svc.calls == []
    assert list(tmp_path.iterdir()) == []

    # what the provider can store converges in one run
    doc = document_from_dict({"target": "pc01", "resources": [dict(value, attributes={"type": "REG_DWORD", "data": 1})]})
    rec = Reconciler(registry_of(hives))
    assert rec.apply(doc).counts["applied"] == 1
    assert not rec.plan(doc).has_changes


def test_rejected_live_value_fails_only_its_own_resource():
    a, b = _ref(K.SHARE, "A"), _ref(K.SHARE, "B")
    shares = FakeProvider(K.SHARE, {a: {"maxUsers": "unlimited"}})
    groups = FakeProvider(K.AD_GROUP)
    schema = AttributeSchema.from_dict({"share": {"maxUsers": {"type": "int"}}})
    doc = document_from_dict({"target": "corp.local", "resources": [
        {"kind": "share", "identity": "A", "attributes": {"maxUsers": 10}},
        {"kind": "share", "identity": "B", "attributes": {"maxUsers": 10}},
        {"kind": "ad_group", "identity": "GG-A", "depends_on": ["share:A"]},
    ]})
    rec = Reconciler(registry_of(shares, groups), schema)

    plan = rec.plan(doc)
    unknown = [c for c in plan.changes if c.kind is ChangeKind.UNKNOWN]
    assert [c.ref for c in unknown] == [a]
    assert "unlimited" in unknown[0].reason

    report = rec.apply(doc)
    by_id = {r.ref.identity: r for r in report.results}
    assert (by_id["A"].outcome, by_id["A"].error_type) == (Outcome.FAILED, "SchemaError")
    assert by_id["B"].outcome is Outcome.APPLIED
    assert by_id["GG-A"].skip_reason is SkipReason.UPSTREAM_FAILURE
    assert report.exit_code() == 1
    assert shares.applied() == ["B"]
    assert shares.state[b] == {"maxUsers": 10}


def test_declared_value_the_schema_rejects_fails_before_any_fetch():
    shares = FakeProvider(K.SHARE)
    schema = AttributeSchema.from_dict({"share": {"maxUsers": {"type": "int"}}})
    doc = document_from_dict({"resources": [{"kind": "share", "identity": "A", "attributes": {"maxUsers": "abc"}}]})
    with pytest.raises(SchemaError):
        Reconciler(registry_of(shares), schema).plan(doc)
    assert shares.calls == []
