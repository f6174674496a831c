"""
MongoDB access for the Social API.

The client is created once from ``Config.DATABASE_URL``. Everything else goes
through ``get_db()`` so tests (or scripts) can swap the database with
``set_db()``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import Config
from errors import DatabaseUnavailableError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db = None

if Config.DATABASE_URL:
    _client = MongoClient(Config.DATABASE_URL, tz_aware=True)
    db = _client[Config.DATABASE_NAME]


def get_db():
    if db is None:
        raise DatabaseUnavailableError()
    return db


def set_db(database, client: Optional[MongoClient] = None):
    """Point the module at another database (used by the test suite)."""
    global db, _client
    db = database
    _client = client


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    """Insert a document stamped with createdAt/updatedAt and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = get_db()[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def ensure_indexes(database=None):
    database = database if database is not None else get_db()

    database["user"].create_index("email", unique=True)
    database["user"].create_index("status")
    database["user"].create_index("role")
    database["user"].create_index([("createdAt", DESCENDING)])

    database["post"].create_index([("author", ASCENDING), ("createdAt", DESCENDING)])
    database["post"].create_index("status")
    database["post"].create_index("category")
    database["post"].create_index("tags")
    database["post"].create_index("community")

    database["comment"].create_index([("post", ASCENDING), ("createdAt", DESCENDING)])
    database["comment"].create_index("author")
    database["comment"].create_index("parentComment")

    database["community"].create_index("name", unique=True)
    database["community"].create_index("category")
    database["community"].create_index("privacy")
    database["community"].create_index("admin")
    database["community"].create_index("members")

    database["notification"].create_index(
        [("recipient", ASCENDING), ("read", ASCENDING), ("createdAt", DESCENDING)]
    )
    database["notification"].create_index("sender")
    logger.info("MongoDB indexes ensured on %s", getattr(database, "name", "database"))


def run_in_transaction(callback: Callable[[Any], Any]):
    """Run ``callback(session)`` atomically when the deployment supports it.

    With ``MONGO_TRANSACTIONS`` off the callback receives ``None`` and its
    writes are applied one by one in the order it issues them.
    """
    get_db()
    if Config.MONGO_TRANSACTIONS and _client is not None:
        with _client.start_session() as session:
            return session.with_transaction(callback)
    return callback(None)
