"""
Entity Store backends.

The engines only rely on single-record atomicity:
- find_by_id / find_one / find_many / find read records
- create inserts a record and enforces the unique indexes
- save writes the given fields of one record (other fields are untouched)
- update_members adds/removes one value to/from list fields of ONE record
  atomically (set semantics: no duplicates, removing an absent value is a no-op)
- delete removes one record

No operation spans two records. Multi-record consistency is the job of
coordinator.ConsistencyCoordinator.

Records are plain dicts with a string "id" key. References to other
records are stored as id strings.
"""
from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout

from database import UNIQUE_INDEXES, create_document
from errors import (
    ConflictError,
    ConflictOnCreateError,
    InvalidOperationError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidOperationError("Invalid id", details={"id": str(id_str)})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EntityStore(ABC):
    """Minimal document store used by the engines."""

    @abstractmethod
    def find_by_id(self, collection: str, entity_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Document]:
        ...

    @abstractmethod
    def find(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None,
             limit: Optional[int] = None) -> List[Document]:
        ...

    @abstractmethod
    def find_many(self, collection: str, ids: List[str]) -> List[Document]:
        """Return records for `ids` in the given order, skipping missing ones."""

    @abstractmethod
    def create(self, collection: str, fields: Dict[str, Any]) -> Document:
        """Insert a record.

        Raises:
            ConflictOnCreateError: a unique index already holds the value
        """

    @abstractmethod
    def save(self, collection: str, entity: Document) -> Optional[Document]:
        """Set the fields present in `entity` on the record with entity["id"].

        Fields not present are left alone, so a concurrent update_members on the
        same record is never overwritten. Returns None if the record is gone.

        Raises:
            ConflictError: the new values collide with a unique index
        """

    @abstractmethod
    def update_members(self, collection: str, filter_dict: Dict[str, Any],
                       add: Optional[Dict[str, Any]] = None,
                       remove: Optional[Dict[str, Any]] = None,
                       return_before: bool = False) -> Optional[Document]:
        """Atomically add/remove single values on list fields of one record.

        Returns the record after the update (or as it was just before it when
        `return_before` is set), or None if no record matched.
        """

    @abstractmethod
    def delete(self, collection: str, entity_id: str) -> bool:
        """Remove a record. Returns False if it did not exist."""

    @abstractmethod
    def status(self) -> Dict[str, Any]:
        ...


# MongoDB

@contextmanager
def _translated(collection: str) -> Iterator[None]:
    try:
        yield
    except (ConnectionFailure, ExecutionTimeout) as e:
        logger.error("MongoDB unavailable while accessing %s: %s", collection, e)
        raise StoreUnavailableError("Database unavailable", details={"collection": collection}) from e


class MongoEntityStore(EntityStore):
    """EntityStore on top of a pymongo Database.

    Set-membership changes use $addToSet/$pull inside one find_one_and_update,
    so concurrent updates to the same document never lose writes.
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    @staticmethod
    def _out(doc: Optional[Document]) -> Optional[Document]:
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return doc

    @staticmethod
    def _query(filter_dict: Dict[str, Any]) -> Dict[str, Any]:
        q = dict(filter_dict)
        if "id" in q:
            q["_id"] = oid(q.pop("id"))
        return q

    def find_by_id(self, collection: str, entity_id: str) -> Optional[Document]:
        with _translated(collection):
            return self._out(self.db[collection].find_one({"_id": oid(entity_id)}))

    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Document]:
        with _translated(collection):
            return self._out(self.db[collection].find_one(self._query(filter_dict)))

    def find(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None,
             limit: Optional[int] = None) -> List[Document]:
        with _translated(collection):
            cursor = self.db[collection].find(self._query(filter_dict or {}))
            if limit:
                cursor = cursor.limit(limit)
            return [self._out(doc) for doc in cursor]

    def find_many(self, collection: str, ids: List[str]) -> List[Document]:
        if not ids:
            return []
        with _translated(collection):
            docs = {
                str(doc["_id"]): self._out(doc)
                for doc in self.db[collection].find({"_id": {"$in": [oid(i) for i in ids]}})
            }
        return [docs[i] for i in ids if i in docs]

    def create(self, collection: str, fields: Dict[str, Any]) -> Document:
        data = {k: v for k, v in fields.items() if k != "id"}
        with _translated(collection):
            try:
                inserted_id = create_document(collection, data, database=self.db)
            except DuplicateKeyError as e:
                key = (e.details or {}).get("keyValue")
                raise ConflictOnCreateError(f"Duplicate {collection}", collection, key) from e
            return self._out(self.db[collection].find_one({"_id": ObjectId(inserted_id)}))

    def save(self, collection: str, entity: Document) -> Optional[Document]:
        data = {k: v for k, v in entity.items() if k != "id"}
        data["updated_at"] = _now()
        with _translated(collection):
            try:
                doc = self.db[collection].find_one_and_update(
                    {"_id": oid(entity["id"])}, {"$set": data}, return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError as e:
                key = (e.details or {}).get("keyValue")
                raise ConflictError(f"Duplicate {collection}", collection, key) from e
        return self._out(doc)

    def update_members(self, collection: str, filter_dict: Dict[str, Any],
                       add: Optional[Dict[str, Any]] = None,
                       remove: Optional[Dict[str, Any]] = None,
                       return_before: bool = False) -> Optional[Document]:
        update: Dict[str, Any] = {"$set": {"updated_at": _now()}}
        if add:
            update["$addToSet"] = dict(add)
        if remove:
            update["$pull"] = dict(remove)
        with _translated(collection):
            doc = self.db[collection].find_one_and_update(
                self._query(filter_dict), update,
                return_document=ReturnDocument.BEFORE if return_before else ReturnDocument.AFTER,
            )
        return self._out(doc)

    def delete(self, collection: str, entity_id: str) -> bool:
        with _translated(collection):
            return self.db[collection].delete_one({"_id": oid(entity_id)}).deleted_count == 1

    def status(self) -> Dict[str, Any]:
        with _translated("*"):
            return {
                "backend": "mongo",
                "database_name": self.db.name,
                "collections": self.db.list_collection_names()[:10],
            }


# In-memory

@dataclass
class Fault:
    """A scheduled failure for MemoryEntityStore."""
    operation: str
    collection: Optional[str] = None
    match: Dict[str, Any] = field(default_factory=dict)
    times: int = 1
    error: Optional[Exception] = None


def _matches(doc: Document, filter_dict: Dict[str, Any]) -> bool:
    for key, expected in filter_dict.items():
        actual = doc.get(key)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class MemoryEntityStore(EntityStore):
    """Thread-safe in-process EntityStore.

    Used for tests and for running the API without MongoDB. Enforces the same
    unique indexes as the Mongo backend. `inject_fault` schedules failures so
    partial multi-record updates can be reproduced deterministically.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._faults: List[Fault] = []
        self._unique: Dict[str, List[tuple]] = {}
        for collection, fields in UNIQUE_INDEXES:
            self._unique.setdefault(collection, []).append(fields)

    def inject_fault(self, operation: str, collection: Optional[str] = None,
                     match: Optional[Dict[str, Any]] = None, times: int = 1,
                     error: Optional[Exception] = None) -> None:
        with self._lock:
            self._faults.append(Fault(operation, collection, match or {}, times, error))

    def _check_fault(self, operation: str, collection: str, filter_dict: Dict[str, Any]) -> None:
        for fault in self._faults:
            if fault.operation != operation or fault.times <= 0:
                continue
            if fault.collection and fault.collection != collection:
                continue
            if any(filter_dict.get(k) != v for k, v in fault.match.items()):
                continue
            fault.times -= 1
            logger.debug("Injected fault on %s %s %s", operation, collection, filter_dict)
            raise fault.error or StoreUnavailableError(
                "Database unavailable", details={"collection": collection}
            )

    def _table(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    def _check_unique(self, collection: str, doc: Document, error_cls=ConflictError) -> None:
        for fields in self._unique.get(collection, []):
            key = {f: doc.get(f) for f in fields}
            if any(v is None for v in key.values()):
                continue
            for other in self._table(collection).values():
                if other["id"] != doc.get("id") and all(other.get(f) == v for f, v in key.items()):
                    raise error_cls(f"Duplicate {collection}", collection, key)

    def _select(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Document]:
        if "id" in filter_dict:
            oid(filter_dict["id"])
        for doc in self._table(collection).values():
            if _matches(doc, filter_dict):
                return doc
        return None

    def find_by_id(self, collection: str, entity_id: str) -> Optional[Document]:
        oid(entity_id)
        with self._lock:
            self._check_fault("find", collection, {"id": entity_id})
            return copy.deepcopy(self._table(collection).get(entity_id))

    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Document]:
        with self._lock:
            self._check_fault("find", collection, filter_dict)
            return copy.deepcopy(self._select(collection, filter_dict))

    def find(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None,
             limit: Optional[int] = None) -> List[Document]:
        with self._lock:
            self._check_fault("find", collection, filter_dict or {})
            docs = [d for d in self._table(collection).values() if _matches(d, filter_dict or {})]
            if limit:
                docs = docs[:limit]
            return copy.deepcopy(docs)

    def find_many(self, collection: str, ids: List[str]) -> List[Document]:
        with self._lock:
            self._check_fault("find", collection, {"ids": ids})
            table = self._table(collection)
            return [copy.deepcopy(table[i]) for i in ids if i in table]

    def create(self, collection: str, fields: Dict[str, Any]) -> Document:
        now = _now()
        doc = copy.deepcopy({k: v for k, v in fields.items() if k != "id"})
        doc["id"] = str(ObjectId())
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        with self._lock:
            self._check_fault("create", collection, doc)
            self._check_unique(collection, doc, ConflictOnCreateError)
            self._table(collection)[doc["id"]] = doc
            return copy.deepcopy(doc)

    def save(self, collection: str, entity: Document) -> Optional[Document]:
        oid(entity["id"])
        with self._lock:
            self._check_fault("save", collection, {"id": entity["id"]})
            table = self._table(collection)
            if entity["id"] not in table:
                return None
            doc = {**table[entity["id"]], **copy.deepcopy(entity)}
            doc["updated_at"] = _now()
            self._check_unique(collection, doc)
            table[doc["id"]] = doc
            return copy.deepcopy(doc)

    def update_members(self, collection: str, filter_dict: Dict[str, Any],
                       add: Optional[Dict[str, Any]] = None,
                       remove: Optional[Dict[str, Any]] = None,
                       return_before: bool = False) -> Optional[Document]:
        with self._lock:
            self._check_fault("update", collection, filter_dict)
            doc = self._select(collection, filter_dict)
            if doc is None:
                return None
            before = copy.deepcopy(doc)
            for field_name, value in (add or {}).items():
                members = doc.setdefault(field_name, [])
                if value not in members:
                    members.append(value)
            for field_name, value in (remove or {}).items():
                doc[field_name] = [m for m in doc.get(field_name, []) if m != value]
            doc["updated_at"] = _now()
            return before if return_before else copy.deepcopy(doc)

    def delete(self, collection: str, entity_id: str) -> bool:
        oid(entity_id)
        with self._lock:
            self._check_fault("delete", collection, {"id": entity_id})
            return self._table(collection).pop(entity_id, None) is not None

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "backend": "memory",
                "database_name": None,
                "collections": sorted(self._collections)[:10],
            }
