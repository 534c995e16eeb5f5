"""Locked JSON-document collections.

One JSON file holds one collection: a list of flat documents carrying the
system fields ``_id``, ``_createdAt`` and ``_updatedAt``. Every mutation
takes the collection lock, re-reads the file, and replaces it atomically.
Reads are lock-free because the file is only ever swapped by rename.

Every operation scans the whole file, so this is meant for collections of
hundreds of documents, not an indexed store.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from flotilla.errors import DuplicateKeyError
from flotilla.protocol.io import read_json, unlink_quiet, utc_now_iso, write_json_atomic
from flotilla.store.lock import DEFAULT_TIMEOUT, STALE_AFTER, FileLock
from flotilla.store.query import apply_update, literal_fields, match_query

log = logging.getLogger(__name__)

Document = dict[str, Any]
Query = dict[str, Any]


def new_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass(slots=True)
class UpdateResult:
    matched: int = 0
    modified: int = 0
    upserted: Document | None = None


class Collection:
    def __init__(
        self,
        path: Path,
        *,
        lock_timeout: float = DEFAULT_TIMEOUT,
        lock_stale: float = STALE_AFTER,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self.lock_stale = lock_stale
        self._id_factory = id_factory

    @property
    def index_path(self) -> Path:
        return self.path.with_name(self.path.name + ".idx")

    def lock(self) -> FileLock:
        return FileLock(self.path, timeout=self.lock_timeout, stale_after=self.lock_stale)

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def read_all(self) -> list[Document]:
        """All documents; a missing or corrupt file reads as empty."""
        data = read_json(self.path, [])
        if not isinstance(data, list):
            log.warning("Collection %s is not a JSON array; treating as empty", self.path)
            return []
        return [doc for doc in data if isinstance(doc, dict)]

    def write_all(self, docs: list[Document]) -> None:
        with self.lock():
            self._write(docs)

    def _write(self, docs: list[Document]) -> None:
        self._check_unique(docs)
        tmp = self.path.with_name(f"{self.path.name}.tmp.{os.getpid()}")
        write_json_atomic(self.path, docs, tmp_path=tmp)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, query: Query | None = None) -> list[Document]:
        return [doc for doc in self.read_all() if match_query(doc, query)]

    def find_one(self, query: Query | None = None) -> Document | None:
        for doc in self.read_all():
            if match_query(doc, query):
                return doc
        return None

    def count(self, query: Query | None = None) -> int:
        return len(self.find(query))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, doc: Document | list[Document]) -> Document | list[Document]:
        """Insert one document or a list; returns the stamped copies."""
        many = isinstance(doc, list)
        incoming = doc if isinstance(doc, list) else [doc]
        now = utc_now_iso()
        stamped = []
        for item in incoming:
            new = dict(item)
            new.setdefault("_id", self._id_factory())
            new["_createdAt"] = now
            new["_updatedAt"] = now
            stamped.append(new)
        with self.lock():
            docs = self.read_all()
            docs.extend(stamped)
            self._write(docs)
        return stamped if many else stamped[0]

    def update(
        self,
        query: Query,
        ops: dict[str, Any],
        *,
        upsert: bool = False,
        multi: bool = False,
    ) -> UpdateResult:
        result = UpdateResult()
        now = utc_now_iso()
        with self.lock():
            docs = self.read_all()
            for doc in docs:
                if not match_query(doc, query):
                    continue
                result.matched += 1
                before = copy.deepcopy(doc)
                apply_update(doc, ops)
                if doc != before:
                    result.modified += 1
                doc["_updatedAt"] = now
                if not multi:
                    break
            if result.matched == 0 and upsert:
                new = {"_id": self._id_factory(), **literal_fields(query), "_createdAt": now}
                apply_update(new, ops)
                new["_updatedAt"] = now
                docs.append(new)
                result.upserted = new
            if result.matched or result.upserted is not None:
                self._write(docs)
        return result

    def update_one(self, query: Query, ops: dict[str, Any], *, upsert: bool = False) -> UpdateResult:
        return self.update(query, ops, upsert=upsert, multi=False)

    def remove(self, query: Query | None = None, *, multi: bool = True) -> int:
        with self.lock():
            docs = self.read_all()
            kept: list[Document] = []
            removed = 0
            for doc in docs:
                if (multi or removed == 0) and match_query(doc, query):
                    removed += 1
                    continue
                kept.append(doc)
            if removed:
                self._write(kept)
        return removed

    def clear(self) -> None:
        with self.lock():
            self._write([])

    def compact(self) -> int:
        """Rewrite the file from its parsed contents, dropping non-document entries."""
        with self.lock():
            docs = self.read_all()
            self._write(docs)
        return len(docs)

    def drop(self) -> None:
        with self.lock():
            unlink_quiet(self.path)
            unlink_quiet(self.index_path)

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    def indexes(self) -> dict[str, dict[str, Any]]:
        data = read_json(self.index_path, {})
        return data if isinstance(data, dict) else {}

    def ensure_index(self, field: str, *, unique: bool = False) -> None:
        """Declare an index on ``field``; unique indexes are enforced on every write."""
        with self.lock():
            current = self.indexes()
            if current.get(field, {}).get("unique") == unique:
                return
            current[field] = {"unique": unique}
            if unique:
                _check_unique_field(self.read_all(), field)
            write_json_atomic(self.index_path, current)

    def _unique_fields(self) -> Iterable[str]:
        yield "_id"
        for field, options in self.indexes().items():
            if isinstance(options, dict) and options.get("unique") and field != "_id":
                yield field

    def _check_unique(self, docs: list[Document]) -> None:
        for field in self._unique_fields():
            _check_unique_field(docs, field)


def _check_unique_field(docs: list[Document], field: str) -> None:
    seen: set[str] = set()
    for doc in docs:
        if field not in doc:
            continue
        key = json.dumps(doc[field], sort_keys=True, default=str)
        if key in seen:
            raise DuplicateKeyError(field, doc[field])
        seen.add(key)
