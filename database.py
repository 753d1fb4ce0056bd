"""
MongoDB connection and small document helpers.

`db` is None when DATABASE_URL is not configured; callers must check before use.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import Settings, get_settings

logger = logging.getLogger(__name__)

# (collection, fields) combinations that must be unique
UNIQUE_INDEXES = [
    ("vote", ("resource",)),
    ("topic", ("name",)),
    ("topic", ("slug",)),
    ("user", ("username",)),
    ("user", ("email",)),
    ("resource", ("topic", "url")),
]


def connect(settings: Settings) -> Optional[Database]:
    if not settings.database_url or not settings.database_name:
        return None
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000)
    return client[settings.database_name]


def ensure_indexes(database: Database) -> None:
    for collection, fields in UNIQUE_INDEXES:
        database[collection].create_index([(f, ASCENDING) for f in fields], unique=True)
    logger.info("Ensured %d unique indexes", len(UNIQUE_INDEXES))


db: Optional[Database] = connect(get_settings())


def create_document(collection_name: str, data: Dict[str, Any], database: Optional[Database] = None) -> str:
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not initialized")
    now = datetime.now(timezone.utc)
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    inserted_id = database[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
                  database: Optional[Database] = None) -> List[Dict[str, Any]]:
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not initialized")
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
