"""
MongoDB access for the HaatBazar API.

Each collection is named after its schema class in lowercase
(`Buyer` -> "buyer"). Documents get `created_at` / `updated_at` stamps on
insert and references to other documents are stored as hex id strings.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import settings
from errors import StoreUnavailable

logger = logging.getLogger(__name__)

# Fields that never leave the server in a JSON response
PRIVATE_FIELDS = ("password_hash", "tin_doc")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(
        settings.DATABASE_URL,
        timeoutMS=settings.STORE_TIMEOUT_MS,
        serverSelectionTimeoutMS=settings.STORE_TIMEOUT_MS,
    )
    db = client[settings.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL is not set; store-backed routes will answer 503")


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise StoreUnavailable("Database not configured")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document, stamping it, and return the new id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict["created_at"] = now()
    data_dict["updated_at"] = data_dict["created_at"]
    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[List[tuple]] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_ids(database: Database, collection_name: str, ids: Iterable[Any]) -> List[dict]:
    object_ids = [oid for oid in (to_object_id(i) for i in ids) if oid is not None]
    if not object_ids:
        return []
    return list(database[collection_name].find({"_id": {"$in": object_ids}}))


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly.

    `_id` becomes `id`, ObjectIds become strings and private fields are
    dropped. Nested documents (joined records) are handled recursively.
    """
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if not isinstance(value, dict):
        return value
    out = {}
    for key, item in value.items():
        if key in PRIVATE_FIELDS:
            continue
        if key == "_id":
            out["id"] = str(item)
            continue
        out[key] = serialize(item)
    return out


def ensure_indexes(database: Database) -> None:
    for name in ("buyer", "seller", "admin"):
        database[name].create_index([("email", ASCENDING)], unique=True)
    database["review"].create_index(
        [("buyer_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
    database["product"].create_index([("seller_id", ASCENDING)])
    database["order"].create_index([("buyer_id", ASCENDING)])
    database["order"].create_index([("seller_id", ASCENDING)])
    database["transaction"].create_index([("order_id", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)
