"""
Database connection for the roastery storefront.

Reads DATABASE_URL and DATABASE_NAME from the environment (or a local .env)
and exposes a module level `db` handle. `db` stays None when the variables
are missing so the API can still boot and report its state on /test.
"""

import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

load_dotenv()

_client = None
db: Optional[Database] = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def _handle(database: Optional[Database]) -> Database:
    handle = database if database is not None else db
    if handle is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return handle


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    """Insert a document with created/updated timestamps and return its id."""
    handle = _handle(database)
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = handle[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def as_object_id(value) -> Optional[ObjectId]:
    """ObjectId for a valid id string, None otherwise."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None
