"""Tests for flotilla.store.collection."""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from flotilla.errors import DuplicateKeyError
from flotilla.store.collection import Collection


@pytest.fixture
def coll(tmp_path: Path) -> Collection:
    return Collection(tmp_path / "db" / "items.json")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_missing_file_reads_empty(coll: Collection) -> None:
    assert coll.read_all() == []
    assert coll.find({"a": 1}) == []
    assert coll.count() == 0


def test_corrupt_file_reads_empty(coll: Collection) -> None:
    coll.path.parent.mkdir(parents=True)
    coll.path.write_text("{not json")
    assert coll.read_all() == []


def test_non_array_file_reads_empty(coll: Collection) -> None:
    coll.path.parent.mkdir(parents=True)
    coll.path.write_text('{"a": 1}')
    assert coll.read_all() == []


# ---------------------------------------------------------------------------
# Insert
# ---------------------------------------------------------------------------


def test_insert_stamps_system_fields(coll: Collection) -> None:
    doc = coll.insert({"name": "x"})
    assert set(doc) >= {"_id", "_createdAt", "_updatedAt", "name"}
    assert coll.find_one({"name": "x"}) == doc
    assert not list(coll.path.parent.glob("*.tmp.*"))


def test_insert_many(coll: Collection) -> None:
    docs = coll.insert([{"n": 1}, {"n": 2}])
    assert isinstance(docs, list) and len(docs) == 2
    assert len({d["_id"] for d in docs}) == 2
    assert coll.count({"n": {"$gte": 1}}) == 2


def test_duplicate_id_rejected_without_write(coll: Collection) -> None:
    coll.insert({"_id": "fixed", "n": 1})
    before = coll.path.read_text()
    with pytest.raises(DuplicateKeyError):
        coll.insert({"_id": "fixed", "n": 2})
    assert coll.path.read_text() == before


def test_concurrent_inserts_keep_every_document(tmp_path: Path) -> None:
    path = tmp_path / "items.json"
    writers, per_writer = 8, 10

    def write(worker: int) -> None:
        coll = Collection(path, lock_timeout=30)
        for i in range(per_writer):
            coll.insert({"worker": worker, "i": i})

    with ThreadPoolExecutor(max_workers=writers) as pool:
        list(pool.map(write, range(writers)))

    data = json.loads(path.read_text())
    assert len(data) == writers * per_writer
    assert {(d["worker"], d["i"]) for d in data} == {(w, i) for w in range(writers) for i in range(per_writer)}
    assert not path.with_name("items.json.lock").exists()


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


def test_update_single_by_default(coll: Collection) -> None:
    coll.insert([{"kind": "a", "n": 1}, {"kind": "a", "n": 2}])
    result = coll.update({"kind": "a"}, {"$inc": {"n": 10}})
    assert (result.matched, result.modified) == (1, 1)
    assert sorted(d["n"] for d in coll.find()) == [2, 11]


def test_update_multi(coll: Collection) -> None:
    coll.insert([{"kind": "a", "n": 1}, {"kind": "a", "n": 2}, {"kind": "b", "n": 3}])
    result = coll.update({"kind": "a"}, {"$set": {"seen": True}}, multi=True)
    assert result.matched == 2
    assert coll.count({"seen": True}) == 2


def test_update_stamps_updated_at(coll: Collection) -> None:
    doc = coll.insert({"n": 1})
    coll.update_one({"_id": doc["_id"]}, {"$set": {"n": 1}})
    updated = coll.find_one({"_id": doc["_id"]})
    assert updated is not None
    assert updated["_updatedAt"] >= doc["_updatedAt"]
    assert updated["_createdAt"] == doc["_createdAt"]


def test_update_no_match_does_not_write(coll: Collection) -> None:
    result = coll.update({"n": 1}, {"$set": {"x": 1}})
    assert result.matched == 0 and result.upserted is None
    assert not coll.path.exists()


def test_upsert_creates_single_document_from_query_and_ops(coll: Collection) -> None:
    result = coll.update({"taskNum": 7, "status": {"$ne": "x"}}, {"$set": {"status": "spawned"}}, upsert=True)
    assert result.upserted is not None
    docs = coll.find()
    assert len(docs) == 1
    assert docs[0]["taskNum"] == 7
    assert docs[0]["status"] == "spawned"
    assert "_createdAt" in docs[0] and "_updatedAt" in docs[0]

    again = coll.update({"taskNum": 7}, {"$set": {"status": "running"}}, upsert=True)
    assert again.upserted is None and again.matched == 1
    assert coll.count() == 1


# ---------------------------------------------------------------------------
# Remove / clear / compact
# ---------------------------------------------------------------------------


def test_remove_multi_and_single(coll: Collection) -> None:
    coll.insert([{"k": 1}, {"k": 1}, {"k": 1}, {"k": 2}])
    assert coll.remove({"k": 1}, multi=False) == 1
    assert coll.count({"k": 1}) == 2
    assert coll.remove({"k": 1}) == 2
    assert coll.count() == 1


def test_clear_and_compact(coll: Collection) -> None:
    coll.insert([{"k": 1}, {"k": 2}])
    coll.path.write_text(json.dumps(coll.read_all() + ["junk", 3]))
    assert coll.compact() == 2
    assert all(isinstance(d, dict) for d in json.loads(coll.path.read_text()))
    coll.clear()
    assert json.loads(coll.path.read_text()) == []


# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------


def test_unique_index_enforced_on_insert_and_upsert(coll: Collection) -> None:
    coll.ensure_index("taskNum", unique=True)
    assert coll.indexes() == {"taskNum": {"unique": True}}
    assert coll.index_path.exists()

    coll.insert({"taskNum": 1})
    with pytest.raises(DuplicateKeyError):
        coll.insert({"taskNum": 1})
    coll.insert({"taskNum": 2})
    with pytest.raises(DuplicateKeyError):
        coll.update({"taskNum": 2}, {"$set": {"taskNum": 1}})
    assert coll.count() == 2


def test_unique_index_rejects_existing_duplicates(coll: Collection) -> None:
    coll.insert([{"taskNum": 1}, {"taskNum": 1}])
    with pytest.raises(DuplicateKeyError):
        coll.ensure_index("taskNum", unique=True)
    assert coll.indexes() == {}
