"""
Shared fixtures.

`FakeDatabase` is an in-memory stand-in for the slice of the motor API the
registration store, resolver and upgrade flow use: find/find_one,
find_one_and_update with $set/$setOnInsert upserts, insert_one, update_one,
and unique/sparse/partial indexes that raise pymongo's DuplicateKeyError.
"""
import copy
import os
import re
from typing import Any, Dict, List, Optional

os.environ["APP_ENV"] = "test"
os.environ.pop("SMTP_HOST", None)
os.environ.pop("ADMIN_API_KEY", None)

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from index_management import forget_ensured_indexes
from mailer import Mailer

_MISSING = object()


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    node: Any = doc
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _match_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and any(str(k).startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(arg):
                    return False
            elif op == "$type":
                if arg != "string" or not isinstance(value, str):
                    return False
            elif op == "$in":
                if (None if value is _MISSING else value) not in arg:
                    return False
            elif op == "$nin":
                if (None if value is _MISSING else value) in arg:
                    return False
            elif op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                if not isinstance(value, str) or not re.search(arg, value, flags):
                    return False
            elif op == "$options":
                continue
            else:
                raise NotImplementedError(op)
        return True
    if value is _MISSING:
        return condition is None
    if isinstance(value, bool) != isinstance(condition, bool):
        return False
    return value == condition


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif not _match_condition(_get_path(doc, key), condition):
            return False
    return True


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs
        self._limit = 0

    def sort(self, key, direction=1):
        present = [d for d in self._docs if key in d]
        absent = [d for d in self._docs if key not in d]
        present.sort(key=lambda d: d[key], reverse=direction == -1)
        self._docs = present + absent
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def _selected(self):
        docs = self._docs[: self._limit] if self._limit else self._docs
        return [copy.deepcopy(d) for d in docs]

    async def to_list(self, length=None):
        docs = self._selected()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._selected())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class _InsertResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class _UpdateResult:
    def __init__(self, matched_count, modified_count, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.full_name = f"test.{name}"
        self.docs: List[Dict[str, Any]] = []
        self.indexes: Dict[str, Dict[str, Any]] = {"_id_": {"name": "_id_", "key": {"_id": 1}}}
        self.calls: List[tuple] = []

    # -- indexes --------------------------------------------------------------

    async def create_index(self, keys, name=None, **options):
        if isinstance(keys, str):
            keys = [(keys, 1)]
        key_doc = {k: v for k, v in keys}
        name = name or "_".join(f"{k}_{v}" for k, v in keys)
        options.pop("background", None)
        self.indexes[name] = {"name": name, "key": key_doc, **options}
        return name

    async def drop_index(self, name):
        self.indexes.pop(name, None)

    def list_indexes(self):
        return FakeCursor([dict(index) for index in self.indexes.values()])

    def _check_unique(self, candidate: Dict[str, Any], ignore_id=None) -> None:
        for index in self.indexes.values():
            if not index.get("unique"):
                continue
            fields = list(index["key"])
            values = [_get_path(candidate, f) for f in fields]
            if index.get("sparse") and all(v is _MISSING for v in values):
                continue
            partial = index.get("partialFilterExpression")
            if partial and not matches(candidate, partial):
                continue
            for other in self.docs:
                if ignore_id is not None and other.get("_id") == ignore_id:
                    continue
                if partial and not matches(other, partial):
                    continue
                other_values = [_get_path(other, f) for f in fields]
                if index.get("sparse") and all(v is _MISSING for v in other_values):
                    continue
                if other_values == values:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {index['name']}",
                        11000,
                        {"keyPattern": dict(index["key"]), "keyValue": dict(zip(fields, values))},
                    )

    # -- reads ----------------------------------------------------------------

    async def find_one(self, query=None, *args, **kwargs):
        self.calls.append(("find_one", query))
        for doc in self.docs:
            if matches(doc, query or {}):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, *args, **kwargs):
        self.calls.append(("find", query))
        return FakeCursor([d for d in self.docs if matches(d, query or {})])

    async def count_documents(self, query=None):
        return sum(1 for d in self.docs if matches(d, query or {}))

    # -- writes ---------------------------------------------------------------

    async def insert_one(self, doc):
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc)
        self.docs.append(copy.deepcopy(doc))
        return _InsertResult(doc["_id"])

    @staticmethod
    def _apply(doc: Dict[str, Any], update: Dict[str, Any], inserting: bool) -> Dict[str, Any]:
        updated = copy.deepcopy(doc)
        if inserting:
            updated.update(copy.deepcopy(update.get("$setOnInsert", {})))
        updated.update(copy.deepcopy(update.get("$set", {})))
        return updated

    def _seed_from_query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}

    async def find_one_and_update(self, query, update, upsert=False, return_document=ReturnDocument.BEFORE, **kwargs):
        self.calls.append(("find_one_and_update", query))
        for position, doc in enumerate(self.docs):
            if matches(doc, query):
                updated = self._apply(doc, update, inserting=False)
                self._check_unique(updated, ignore_id=doc["_id"])
                self.docs[position] = updated
                return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else doc)
        if not upsert:
            return None
        new_doc = self._apply(self._seed_from_query(query), update, inserting=True)
        new_doc.setdefault("_id", ObjectId())
        self._check_unique(new_doc)
        self.docs.append(new_doc)
        return copy.deepcopy(new_doc) if return_document == ReturnDocument.AFTER else None

    async def update_one(self, query, update, upsert=False):
        for position, doc in enumerate(self.docs):
            if matches(doc, query):
                updated = self._apply(doc, update, inserting=False)
                self._check_unique(updated, ignore_id=doc["_id"])
                self.docs[position] = updated
                return _UpdateResult(1, 1)
        if upsert:
            new_doc = self._apply(self._seed_from_query(query), update, inserting=True)
            new_doc.setdefault("_id", ObjectId())
            self._check_unique(new_doc)
            self.docs.append(new_doc)
            return _UpdateResult(0, 0, new_doc["_id"])
        return _UpdateResult(0, 0)

    async def delete_one(self, query):
        for position, doc in enumerate(self.docs):
            if matches(doc, query):
                del self.docs[position]
                return _UpdateResult(1, 1)
        return _UpdateResult(0, 0)


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


class FakeConnection:
    """Stands in for MongoConnection on app.state."""

    def __init__(self, db: FakeDatabase):
        self._db = db
        self.is_connected = True

    def get_database(self):
        return self._db

    async def verify(self) -> bool:
        return True


class RecordingTaskManager:
    """Collects scheduled coroutines instead of running them."""

    def __init__(self):
        self.names: List[Optional[str]] = []

    async def create_task(self, coro, task_name=None):
        self.names.append(task_name)
        coro.close()
        return f"task_{len(self.names)}_{task_name}"

    def get_active_task_count(self) -> int:
        return 0


@pytest.fixture
def db() -> FakeDatabase:
    forget_ensured_indexes()
    return FakeDatabase()


@pytest.fixture
def mailer(db) -> Mailer:
    return Mailer(db=db, smtp_host=None, mail_from="Expo Team <team@example.com>", mail_from_name="")


@pytest.fixture
def task_manager() -> RecordingTaskManager:
    return RecordingTaskManager()
