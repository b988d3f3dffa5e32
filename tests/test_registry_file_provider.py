import os
import threading

import pytest
import yaml

from fleetsync.core.config import load_config
from fleetsync.core.errors import (
    ConfigError,
    Conflict,
    ProviderError,
    ProviderUnavailable,
    UnregisteredKind,
    UnsupportedAttribute,
)
from fleetsync.core.resources import AttributeDiff, Change, ChangeKind, Ensure, Resource, ResourceKind, ResourceRef
from fleetsync.core.schema import AttributeSchema
from fleetsync.providers import registry_file
from fleetsync.providers.registry import ProviderRegistry, get_spec
from fleetsync.providers.registry_file import RegistryFileProvider

K = ResourceKind
ENABLED = ResourceRef(K.REGISTRY_VALUE, "HKLM:\\Software\\Contoso\\Agent\\Enabled", "pc01")


def _create(ref, data, type_="REG_DWORD"):
    return Change(
        ref=ref,
        kind=ChangeKind.CREATE,
        attribute_diffs=(AttributeDiff("data", None, data), AttributeDiff("type", None, type_)),
    )


def _set_data(ref, before, after):
    return Change(ref=ref, kind=ChangeKind.UPDATE, attribute_diffs=(AttributeDiff("data", before, after),))


def _hive(tmp_path, target="pc01"):
    return yaml.safe_load((tmp_path / f"{target}.yml").read_text(encoding="utf-8"))


def test_create_update_delete(tmp_path):
    p = RegistryFileProvider(root_dir=str(tmp_path))
    assert p.fetch(ENABLED).exists is False

    p.apply(_create(ENABLED, 1))
    assert _hive(tmp_path) == {ENABLED.identity: {"data": 1, "type": "REG_DWORD"}}
    observed = p.fetch(ENABLED)
    assert observed.exists and dict(observed.attributes) == {"data": 1, "type": "REG_DWORD"}

    p.apply(_set_data(ENABLED, 1, 0))
    assert _hive(tmp_path)[ENABLED.identity]["data"] == 0

    p.apply(Change(ref=ENABLED, kind=ChangeKind.DELETE))
    assert _hive(tmp_path) == {}
    assert p.fetch(ENABLED).exists is False


def test_reapplying_is_a_noop(tmp_path):
    p = RegistryFileProvider(root_dir=str(tmp_path))
    create = _create(ENABLED, 1)
    p.apply(create)
    p.apply(create)
    update = _set_data(ENABLED, 1, 2)
    p.apply(update)
    p.apply(update)
    delete = Change(ref=ENABLED, kind=ChangeKind.DELETE)
    p.apply(delete)
    p.apply(delete)
    assert _hive(tmp_path) == {}


def test_attributes_other_than_type_and_data_are_rejected(tmp_path):
    p = RegistryFileProvider(root_dir=str(tmp_path))
    declared = Resource(ref=ENABLED, desired={"type": "REG_DWORD", "data": 1, "description": "agent switch"})
    with pytest.raises(UnsupportedAttribute) as exc:
        p.check(declared)
    assert exc.value.attributes == ("description",)
    p.check(Resource(ref=ENABLED, desired={"type": "REG_DWORD", "data": 1}))
    p.check(Resource(ref=ENABLED, desired={"comment": "x"}, ensure=Ensure.ABSENT))

    p.schema = AttributeSchema.from_dict({"_defaults": {"description": {"ignore": True}}})
    p.check(declared)

    change = Change(
        ref=ENABLED,
        kind=ChangeKind.CREATE,
        attribute_diffs=(AttributeDiff("data", None, "on"), AttributeDiff("comment", None, "dropped")),
    )
    with pytest.raises(ProviderError) as err:
        p.apply(change)
    assert not isinstance(err.value, Conflict) and "comment" in str(err.value)
    assert not (tmp_path / "pc01.yml").exists()


def test_already_applied_checks_use_the_schema(tmp_path):
    (tmp_path / "pc01.yml").write_text(
        yaml.safe_dump({ENABLED.identity: {"type": "reg_dword", "data": 1}}), encoding="utf-8"
    )
    p = RegistryFileProvider(root_dir=str(tmp_path))
    with pytest.raises(Conflict):
        p.apply(_create(ENABLED, 1))

    p.schema = AttributeSchema.from_dict({"registry_value": {"type": {"case_insensitive": True}}})
    p.apply(_create(ENABLED, 1))  # holds after normalization: nothing to write
    p.apply(
        Change(
            ref=ENABLED,
            kind=ChangeKind.UPDATE,
            attribute_diffs=(AttributeDiff("type", "REG_DWORD", "REG_QWORD"), AttributeDiff("data", 1, 2)),
        )
    )
    assert _hive(tmp_path) == {ENABLED.identity: {"type": "REG_QWORD", "data": 2}}


def test_file_locks_belong_to_each_provider(tmp_path):
    first = RegistryFileProvider(root_dir=str(tmp_path))
    second = RegistryFileProvider(root_dir=str(tmp_path))
    first.apply(_create(ENABLED, 1))
    assert list(first._locks) == [os.path.abspath(str(tmp_path / "pc01.yml"))]
    assert second._locks == {}
    assert first._file_lock(str(tmp_path / "pc01.yml")) is first._file_lock(str(tmp_path / "pc01.yml"))
    assert not hasattr(registry_file, "_locks")


def test_external_changes_are_conflicts(tmp_path):
    p = RegistryFileProvider(root_dir=str(tmp_path))
    p.apply(_create(ENABLED, 5))

    with pytest.raises(Conflict):
        p.apply(_set_data(ENABLED, 1, 2))  # somebody set it to 5 since the fetch
    with pytest.raises(Conflict):
        p.apply(_create(ENABLED, 1))  # exists with other data

    missing = ResourceRef(K.REGISTRY_VALUE, "HKLM:\\Software\\Contoso\\Gone", "pc01")
    with pytest.raises(Conflict):
        p.apply(_set_data(missing, 1, 2))

    assert _hive(tmp_path)[ENABLED.identity]["data"] == 5


def test_unreadable_hive_is_unavailable(tmp_path):
    p = RegistryFileProvider(root_dir=str(tmp_path))
    (tmp_path / "pc01.yml").write_text("key: [unclosed", encoding="utf-8")
    with pytest.raises(ProviderUnavailable):
        p.fetch(ENABLED)

    (tmp_path / "pc01.yml").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ProviderUnavailable):
        p.fetch(ENABLED)


@pytest.mark.parametrize("target", ["../etc", "a\\b", ".hidden"])
def test_target_must_be_a_plain_file_name(tmp_path, target):
    p = RegistryFileProvider(root_dir=str(tmp_path))
    with pytest.raises(ProviderError):
        p.fetch(ResourceRef(K.REGISTRY_VALUE, "HKLM:\\X", target))


def test_writes_are_atomic_and_serialized(tmp_path):
    p = RegistryFileProvider(root_dir=str(tmp_path))
    refs = [ResourceRef(K.REGISTRY_VALUE, f"HKLM:\\Software\\Contoso\\V{i:02d}", "pc01") for i in range(20)]

    threads = [threading.Thread(target=p.apply, args=(_create(r, i),)) for i, r in enumerate(refs)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    hive = _hive(tmp_path)
    assert sorted(hive) == sorted(r.identity for r in refs)
    assert [f.name for f in tmp_path.iterdir()] == ["pc01.yml"]  # no temp files left behind


def test_each_target_gets_its_own_hive(tmp_path):
    p = RegistryFileProvider(root_dir=str(tmp_path / "hives"))
    other = ResourceRef(K.REGISTRY_VALUE, ENABLED.identity, "pc02")
    p.apply(_create(ENABLED, 1))
    p.apply(_create(other, 0))
    assert _hive(tmp_path / "hives", "pc01")[ENABLED.identity]["data"] == 1
    assert _hive(tmp_path / "hives", "pc02")[ENABLED.identity]["data"] == 0


def test_from_config_uses_registry_root(tmp_path):
    cfg = load_config({"registry": {"root_dir": str(tmp_path)}}, files=(), use_dotenv=False)
    p = RegistryFileProvider.from_config(K.REGISTRY_VALUE, cfg)
    assert p.root_dir == str(tmp_path)
    assert p.policy.concurrency == 1
    assert p.policy.retry.max_attempts == 1


# ---------- ProviderRegistry ----------

def test_registry_binds_one_provider_per_kind(tmp_path):
    reg = ProviderRegistry([RegistryFileProvider(root_dir=str(tmp_path))])
    assert isinstance(reg.for_kind(K.REGISTRY_VALUE), RegistryFileProvider)
    with pytest.raises(UnregisteredKind):
        reg.for_kind(K.SERVICE)
    with pytest.raises(UnregisteredKind):
        reg.ensure_registered([K.REGISTRY_VALUE, K.SERVICE])
    with pytest.raises(ConfigError):
        reg.register(RegistryFileProvider(root_dir=str(tmp_path)))


def test_registry_from_config_only_builds_requested_kinds(tmp_path):
    cfg = load_config(
        {
            "registry": {"root_dir": str(tmp_path)},
            "providers": {"overrides": {"registry_value": {"call_timeout_sec": 3}}},
        },
        files=(),
        use_dotenv=False,
    )
    reg = ProviderRegistry.from_config(cfg, kinds=[K.REGISTRY_VALUE])
    assert reg.kinds == [K.REGISTRY_VALUE]
    assert reg.for_kind(K.REGISTRY_VALUE).policy.call_timeout_sec == 3.0


def test_registry_from_config_rejects_bad_bindings():
    bad_provider = load_config({"providers": {"kinds": {"share": "smb"}}}, files=(), use_dotenv=False)
    with pytest.raises(ConfigError) as exc:
        ProviderRegistry.from_config(bad_provider, kinds=[K.SHARE])
    assert "smb" in str(exc.value)

    bad_kind = load_config({"providers": {"kinds": {"printer": "gateway"}}}, files=(), use_dotenv=False)
    with pytest.raises(ConfigError) as exc:
        ProviderRegistry.from_config(bad_kind, kinds=[K.REGISTRY_VALUE])
    assert "printer" in str(exc.value)

    with pytest.raises(ConfigError):
        get_spec("nope")
