"""
MongoDB access

One client per process; pymongo keeps its own connection pool.  Endpoints get
the database handle through ``get_db`` so tests can swap it out.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import settings

client: MongoClient = MongoClient(settings.database_url, tz_aware=False, connect=False)
db: Database = client[settings.database_name]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    """Naive UTC timestamp, the form pymongo hands back from the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def as_object_id(value: Optional[str]) -> Optional[ObjectId]:
    if not value or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def to_str_id(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc["id"] = str(doc.get("_id"))
    doc.pop("_id", None)
    return doc


def create_document(database: Database, collection_name: str, data: BaseModel) -> str:
    document = data.model_dump()
    result = database[collection_name].insert_one(document)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: int = 0,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [to_str_id(doc) for doc in cursor]
