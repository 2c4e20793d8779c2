"""
MongoDB access helpers.

A single MongoClient is created on first use and shared by the whole process.
Request handlers receive a ready Database handle through the `get_db`
dependency and never manage the connection themselves.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

import config
from errors import DatabaseUnavailable

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        if not config.DATABASE_URL:
            raise DatabaseUnavailable("DATABASE_URL is not set")
        logger.info("Connecting to MongoDB database %s", config.DATABASE_NAME)
        _client = MongoClient(config.DATABASE_URL)
    return _client


def close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


def get_db() -> Iterator[Database]:
    """FastAPI dependency yielding the shared database handle."""
    yield get_client()[config.DATABASE_NAME]


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document with created_at/updated_at stamps and return it, `_id` included."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_document(db: Database, collection_name: str, document_id: str) -> Optional[Dict[str, Any]]:
    # A string that is not an ObjectId cannot match any stored _id
    try:
        oid = ObjectId(document_id)
    except (InvalidId, TypeError):
        return None
    return db[collection_name].find_one({"_id": oid})


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a stored document with `_id` replaced by a string `id`."""
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out
