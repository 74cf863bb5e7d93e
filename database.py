"""
MongoDB access for the Digital Life Lessons API.

A single MongoClient is opened at startup and shared by every request.
Handlers reach collections through get_collection() so tests can swap
the module-level `db` for an in-memory database.
"""

from typing import Any, Dict, Optional, Union

import structlog
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient

logger = structlog.get_logger(__name__)

client: Optional[MongoClient] = None
db = None


def ensure_indexes(database):
    # one user document per email
    database["users"].create_index("email", unique=True)
    database["reports"].create_index("lessonId")


def init_db(database_url: str, database_name: str):
    global client, db
    client = MongoClient(database_url)
    db = client[database_name]
    ensure_indexes(db)
    logger.info("database_connected", database=database_name)
    return db


def close_db():
    global client, db
    if client is not None:
        client.close()
    client = None
    db = None


def get_collection(name: str):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a model or dict and return the new id as a string."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    result = get_collection(collection_name).insert_one(doc)
    return str(result.inserted_id)
