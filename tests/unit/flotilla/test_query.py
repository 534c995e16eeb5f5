"""Tests for flotilla.store.query."""

from __future__ import annotations

import pytest

from flotilla.store.query import apply_update, literal_fields, match_query

DOC = {"taskNum": 5, "status": "running", "tags": ["a"], "worktree": {"branch": "task/T005"}}


class TestMatchQuery:
    def test_empty_query_matches(self) -> None:
        assert match_query(DOC, {})
        assert match_query(DOC, None)

    def test_exact_match(self) -> None:
        assert match_query(DOC, {"status": "running"})
        assert not match_query(DOC, {"status": "failed"})
        assert not match_query(DOC, {"missing": None})

    def test_gte_is_inclusive(self) -> None:
        assert match_query(DOC, {"taskNum": {"$gte": 5}})
        assert not match_query(DOC, {"taskNum": {"$gt": 5}})
        assert match_query(DOC, {"taskNum": {"$lte": 5}})
        assert not match_query(DOC, {"taskNum": {"$lt": 5}})

    def test_comparison_on_missing_or_mismatched_type(self) -> None:
        assert not match_query(DOC, {"nope": {"$gt": 1}})
        assert not match_query(DOC, {"status": {"$gt": 1}})

    def test_in_and_nin(self) -> None:
        assert match_query(DOC, {"status": {"$in": ["running", "dispatched"]}})
        assert not match_query(DOC, {"status": {"$in": ["completed"]}})
        assert match_query(DOC, {"status": {"$nin": ["completed"]}})
        assert not match_query(DOC, {"status": {"$nin": ["running"]}})
        assert match_query(DOC, {"missing": {"$nin": ["x"]}})

    def test_ne_and_exists(self) -> None:
        assert match_query(DOC, {"status": {"$ne": "failed"}})
        assert not match_query(DOC, {"status": {"$ne": "running"}})
        assert match_query(DOC, {"pid": {"$exists": False}})
        assert match_query(DOC, {"status": {"$exists": True}})

    def test_unknown_key_compares_nested_field(self) -> None:
        assert match_query(DOC, {"worktree": {"branch": "task/T005"}})
        assert not match_query(DOC, {"worktree": {"branch": "task/T006"}})

    def test_combined_operators(self) -> None:
        assert match_query(DOC, {"taskNum": {"$gte": 1, "$lt": 10}})
        assert not match_query(DOC, {"taskNum": {"$gte": 1, "$lt": 5}})

    def test_booleans_never_equal_numbers(self) -> None:
        doc = {"flag": True, "count": 1, "nested": {"ok": False}, "pair": [1, True]}
        assert not match_query(doc, {"count": True})
        assert not match_query(doc, {"flag": 1})
        assert match_query(doc, {"flag": True})
        assert match_query(doc, {"flag": {"$ne": 1}})
        assert not match_query(doc, {"count": {"$in": [True]}})
        assert match_query(doc, {"count": {"$nin": [True, False]}})
        assert not match_query(doc, {"nested": {"ok": 0}})
        assert not match_query(doc, {"pair": [True, 1]})
        assert match_query(doc, {"pair": [1, True]})
        assert not match_query(doc, {"count": {"$gte": True}})

    def test_membership_needs_a_list(self) -> None:
        with pytest.raises(ValueError, match=r"\$in needs a list"):
            match_query(DOC, {"status": {"$in": "running"}})
        with pytest.raises(ValueError, match=r"\$nin needs a list"):
            match_query(DOC, {"missing": {"$nin": "x"}})


class TestApplyUpdate:
    def test_set_and_unset(self) -> None:
        doc = {"a": 1, "b": 2}
        apply_update(doc, {"$set": {"a": 10, "c": 3}, "$unset": ["b"]})
        assert doc == {"a": 10, "c": 3}

    def test_inc_missing_counts_from_zero(self) -> None:
        doc: dict = {"n": 2}
        apply_update(doc, {"$inc": {"n": 3, "m": 1}})
        assert doc == {"n": 5, "m": 1}

    def test_push_creates_array(self) -> None:
        doc: dict = {"log": ["x"]}
        apply_update(doc, {"$push": {"log": "y", "other": 1}})
        assert doc == {"log": ["x", "y"], "other": [1]}

    def test_direct_assignment(self) -> None:
        doc = {"a": 1}
        apply_update(doc, {"a": 2, "b": 3})
        assert doc == {"a": 2, "b": 3}

    def test_unknown_operator_rejected(self) -> None:
        with pytest.raises(ValueError):
            apply_update({}, {"$rename": {"a": "b"}})


def test_literal_fields_skip_operator_sets() -> None:
    assert literal_fields({"taskNum": 3, "status": {"$in": ["a"]}}) == {"taskNum": 3}
