import json
import threading

import pytest

from stagekit.env_store import EnvironmentStore, SecretRef
from stagekit.errors import MissingConfigKey


def test_set_same_value_is_a_noop_and_new_value_bumps_revision():
    store = EnvironmentStore()
    assert store.revision == 0

    assert store.set("CONTROLLER_IP", "192.168.2.9") is True
    assert store.revision == 1
    assert store.set("CONTROLLER_IP", "192.168.2.9") is False
    assert store.revision == 1
    assert store.set("CONTROLLER_IP", "192.168.2.10") is True
    assert store.revision == 2


def test_int_and_bool_values_are_not_conflated():
    store = EnvironmentStore({"FLAG": 1})

    assert store.set("FLAG", True) is True
    assert store.get("FLAG") is True


def test_update_bumps_revision_once_and_reports_changed_keys():
    store = EnvironmentStore({"A": "1", "B": "2"})

    changed = store.update({"A": "1", "B": "3", "C": "4"})

    assert changed == ("B", "C")
    assert store.revision == 1


def test_sync_replaces_the_mapping_and_removes_absent_keys():
    store = EnvironmentStore({"A": "1", "B": "2"})

    changed = store.sync({"A": "1", "C": "3"})

    assert changed == ("B", "C")
    assert store.snapshot().values == {"A": "1", "C": "3"}
    assert store.sync({"A": "1", "C": "3"}) == ()
    assert store.revision == 1


def test_snapshot_is_immutable_and_consistent():
    store = EnvironmentStore({"A": "1"})
    snap = store.snapshot()

    store.set("A", "2")

    assert snap.revision == 0
    assert snap.values["A"] == "1"
    with pytest.raises(TypeError):
        snap.values["A"] = "x"  # type: ignore[index]


def test_require_names_every_missing_key():
    store = EnvironmentStore({"A": "1"})

    with pytest.raises(MissingConfigKey) as excinfo:
        store.require(["A", "Z", "B"], stage_ids=["keystone-db"])

    assert excinfo.value.keys == ("B", "Z")
    assert "keystone-db" in str(excinfo.value)
    assert isinstance(excinfo.value, KeyError)


def test_rejects_non_scalar_values():
    store = EnvironmentStore()

    with pytest.raises(TypeError, match=r"must be str, number, bool or SecretRef"):
        store.set("A", ["not", "scalar"])


def test_save_and_load_round_trip_keeps_secrets_as_references(tmp_path):
    path = tmp_path / "state" / "environment.json"
    store = EnvironmentStore({"ADMIN_PASS": SecretRef("OS_ADMIN_PASS"), "PORT": 5000}, revision=4)

    store.save(str(path))

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["values"]["ADMIN_PASS"] == {"secret": "OS_ADMIN_PASS"}
    assert "hunter2" not in path.read_text(encoding="utf-8")

    loaded = EnvironmentStore.load(str(path))
    assert loaded.revision == 4
    assert loaded.get("ADMIN_PASS") == SecretRef("OS_ADMIN_PASS")
    assert loaded.get("PORT") == 5000


def test_load_of_missing_file_is_an_empty_store(tmp_path):
    store = EnvironmentStore.load(str(tmp_path / "nope.json"))

    assert store.revision == 0
    assert store.snapshot().values == {}


def test_secret_values_are_masked(monkeypatch):
    monkeypatch.setenv("OS_ADMIN_PASS", "hunter2")
    secret = SecretRef("OS_ADMIN_PASS")
    store = EnvironmentStore({"ADMIN_PASS": secret})

    assert str(secret) == "***"
    assert "hunter2" not in repr(store.snapshot().masked())
    assert secret.resolve() == "hunter2"

    monkeypatch.delenv("OS_ADMIN_PASS")
    with pytest.raises(MissingConfigKey):
        secret.resolve()


def test_concurrent_writers_each_bump_the_revision():
    store = EnvironmentStore()

    def writer(index: int) -> None:
        for step in range(50):
            store.set(f"K{index}", step)

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.revision == 4 * 50
