"""Test the versioned key-value store."""

import json

from blockflow.store import KeyValueStore


def test_in_memory_set_and_get():
    store = KeyValueStore()
    store.set("k", {"a": 1})
    assert store.get("k") == {"a": 1}
    assert store.keys() == ["k"]
    assert store.get("missing", "default") == "default"


def test_load_returns_saved_at():
    store = KeyValueStore()
    store.set("k", [1, 2])
    data, saved_at = store.load("k")
    assert data == [1, 2]
    assert saved_at > 0


def test_files_survive_a_new_instance(tmp_path):
    KeyValueStore(tmp_path).set("history", {"records": []})
    assert KeyValueStore(tmp_path).get("history") == {"records": []}
    assert (tmp_path / "history.json").exists()


def test_version_mismatch_is_discarded(tmp_path):
    KeyValueStore(tmp_path, version=1).set("k", "old")
    store = KeyValueStore(tmp_path, version=2)
    assert store.load("k") is None
    assert not (tmp_path / "k.json").exists()


def test_missing_version_is_discarded(tmp_path):
    (tmp_path / "k.json").write_text(json.dumps({"data": "no version"}))
    assert KeyValueStore(tmp_path).get("k") is None


def test_corrupt_file_is_discarded(tmp_path):
    (tmp_path / "k.json").write_text("{not json")
    store = KeyValueStore(tmp_path)
    assert store.get("k") is None
    assert store.keys() == []


def test_delete(tmp_path):
    store = KeyValueStore(tmp_path)
    store.set("k", 1)
    store.delete("k")
    store.delete("never-set")
    assert store.get("k") is None
