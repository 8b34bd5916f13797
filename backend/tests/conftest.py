"""
Shared fixtures: an in-memory stand-in for the Motor database

Only the query and update operators the workers use are supported:
equality, $in, $lt, $exists, $or / $set, $inc, $push, $addToSet with $each.
"""
import copy
import os
import sys
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError, WriteError

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_MISSING = object()


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, cond in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
            continue

        value = doc.get(key, _MISSING)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$in" and value not in arg:
                    return False
                if op == "$lt" and (value is _MISSING or value is None or not value < arg):
                    return False
                if op == "$exists" and (value is not _MISSING) != bool(arg):
                    return False
        elif cond is None:
            if value is not _MISSING and value is not None:
                return False
        elif value != cond:
            return False
    return True


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    if all(not v for v in projection.values()):
        return {k: v for k, v in doc.items() if k not in projection}
    keep = {k for k, v in projection.items() if v}
    if projection.get("_id", 1):
        keep.add("_id")
    return {k: v for k, v in doc.items() if k in keep}


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self.docs = docs

    async def to_list(self, length=None):
        return self.docs if length is None else self.docs[:length]


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.indexes: List[tuple] = []
        # method name -> exception raised on every call
        self.errors: Dict[str, Exception] = {}
        # doc -> error message when that record must be rejected
        self.reject: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None

    def _check(self, method: str, *args):
        self.calls.append((method, args))
        if method in self.errors:
            raise self.errors[method]

    def count_calls(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _store(self, doc: Dict[str, Any]):
        doc.setdefault("_id", ObjectId())
        if any(d["_id"] == doc["_id"] for d in self.docs):
            raise DuplicateKeyError(
                f"E11000 duplicate key error collection: {self.name} index: _id_",
                11000,
                {"keyPattern": {"_id": 1}}
            )
        reason = self.reject(doc) if self.reject else None
        if reason:
            raise WriteError(reason, 121, {"errmsg": reason})
        self.docs.append(copy.deepcopy(doc))

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return str(keys)

    async def insert_one(self, doc):
        self._check("insert_one", doc)
        self._store(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def insert_many(self, docs, ordered=True):
        for doc in docs:
            doc.setdefault("_id", ObjectId())
        self._check("insert_many", docs)

        write_errors = []
        inserted = 0
        for index, doc in enumerate(docs):
            try:
                self._store(doc)
                inserted += 1
            except WriteError as e:
                write_errors.append({"index": index, "code": e.code, "errmsg": str(e)})
                if ordered:
                    break
        if write_errors:
            raise BulkWriteError({"writeErrors": write_errors, "nInserted": inserted})
        return SimpleNamespace(inserted_ids=[doc["_id"] for doc in docs])

    async def find_one(self, query=None, projection=None):
        self._check("find_one", query)
        for doc in self.docs:
            if _matches(doc, query or {}):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        self._check("find", query)
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    def _apply(self, doc: Dict[str, Any], update: Dict[str, Any]):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value
        for key, value in update.get("$push", {}).items():
            doc.setdefault(key, []).append(copy.deepcopy(value))
        for key, value in update.get("$addToSet", {}).items():
            items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
            current = doc.setdefault(key, [])
            for item in items:
                if item not in current:
                    current.append(item)

    async def update_one(self, query, update, upsert=False):
        self._check("update_one", query, update)
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)

        if upsert:
            doc = {k: v for k, v in query.items() if not k.startswith("$")}
            self._apply(doc, update)
            self._store(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(self, query, update, sort=None, return_document=ReturnDocument.BEFORE):
        self._check("find_one_and_update", query, update)
        candidates = [d for d in self.docs if _matches(d, query)]
        for key, direction in reversed(sort or []):
            candidates.sort(key=lambda d: d.get(key), reverse=direction < 0)
        if not candidates:
            return None
        doc = candidates[0]
        before = copy.deepcopy(doc)
        self._apply(doc, update)
        return copy.deepcopy(doc if return_document == ReturnDocument.AFTER else before)

    async def delete_one(self, query):
        self._check("delete_one", query)
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


class FakeDatabase:
    def __init__(self):
        self._collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest.fixture
def fake_db():
    """Fresh in-memory database per test"""
    return FakeDatabase()


def make_leads(count: int, start: int = 0, **extra) -> List[Dict[str, Any]]:
    """Candidate lead rows as the upload handler builds them"""
    return [
        {"clinicId": "clinic-1", "name": f"Lead {i}", "phone": f"98765{i:05d}", **extra}
        for i in range(start, start + count)
    ]
