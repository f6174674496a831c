"""
Shared helpers: public serialization, id parsing, pagination, sorting,
population of references and the response envelope.
"""

import hashlib
import math
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from fastapi import Query
from pymongo import ASCENDING, DESCENDING

from config import Config
from database import get_db
from errors import InvalidIdError, ValidationFailedError
from schemas import REACTION_KINDS

# Fields resolved when a reference is populated
USER_SUMMARY = ("name", "email", "avatar")
USER_CARD = ("name", "avatar")
USER_PROFILE = ("name", "email", "avatar", "bio", "location")
POST_SUMMARY = ("title",)


# Utility to convert Mongo documents to JSON-serializable dicts
def to_public(doc: Any):
    if doc is None:
        return None
    if isinstance(doc, list):
        return [to_public(item) for item in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        # stored values are UTC; naive ones come from clients built without tz_aware
        if doc.tzinfo is None:
            doc = doc.replace(tzinfo=timezone.utc)
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    d = {}
    for key, value in doc.items():
        if key == "passwordHash":
            continue
        if key == "_id":
            d["id"] = str(value)
            continue
        d[key] = to_public(value)
    return d


def parse_object_id(value: Any, label: str = "") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
        return ObjectId(value)
    name = f"{label} ID" if label else "ID"
    raise InvalidIdError(f"Invalid {name} format")


def optional_object_id(value: Optional[str], label: str = "") -> Optional[ObjectId]:
    if value is None or value == "":
        return None
    return parse_object_id(value, label)


# ----------------- Passwords -----------------

def hash_password(password: str) -> str:
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, Config.PASSWORD_HASH_ITERATIONS)
    return f"pbkdf2_sha256${Config.PASSWORD_HASH_ITERATIONS}${salt.hex()}${digest.hex()}"


# ----------------- Pagination -----------------

class Pagination:
    def __init__(self, page: int, limit: int):
        self.page = max(page, 1)
        self.limit = min(max(limit, 1), Config.MAX_PAGE_SIZE)

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    def describe(self, total: int) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": total,
            "totalPages": math.ceil(total / self.limit),
            "hasMore": self.page * self.limit < total,
        }


def pagination_params(default_limit: int = Config.DEFAULT_PAGE_SIZE):
    """Build a dependency parsing ``page``/``limit`` with a per-route default."""

    def dep(
        page: int = Query(1, ge=1, description="1-based page number"),
        limit: int = Query(default_limit, ge=1, description=f"Page size, capped at {Config.MAX_PAGE_SIZE}"),
    ) -> Pagination:
        return Pagination(page, limit)

    return dep


# ----------------- Sorting & search -----------------

def parse_sort(
    allowed: Iterable[str],
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
    compact: Optional[str] = None,
    default: str = "createdAt",
) -> List[Tuple[str, int]]:
    """Resolve ``sortBy``/``sortOrder`` or the compact ``-field`` form.

    Descending is the default direction. Ties are broken by ``_id`` so pages
    never overlap.
    """
    allowed = set(allowed)
    if compact:
        key = compact.lstrip("-+")
        direction = DESCENDING if compact.startswith("-") else ASCENDING
    else:
        key = sort_by or default
        if sort_order not in (None, "", "asc", "desc"):
            raise ValidationFailedError("sortOrder must be 'asc' or 'desc'")
        direction = ASCENDING if sort_order == "asc" else DESCENDING
    if key not in allowed:
        raise ValidationFailedError(f"Cannot sort by '{key}'; allowed: {', '.join(sorted(allowed))}")
    return [(key, direction), ("_id", direction)]


def search_clause(text: Optional[str], fields: Iterable[str]) -> Dict[str, Any]:
    if not text:
        return {}
    pattern = re.escape(text.strip())
    return {"$or": [{field: {"$regex": pattern, "$options": "i"}} for field in fields]}


def find_page(collection_name: str, query: Dict[str, Any], pagination: Pagination, sort,
              projection: Optional[Dict[str, int]] = None) -> Tuple[List[dict], int]:
    collection = get_db()[collection_name]
    total = collection.count_documents(query)
    cursor = collection.find(query, projection).sort(sort).skip(pagination.skip).limit(pagination.limit)
    return list(cursor), total


# ----------------- Populate -----------------

def populate(docs: List[dict], field: str, collection_name: str, fields: Iterable[str]) -> List[dict]:
    """Replace ids in ``field`` with summary documents, in place.

    Works for single references and lists of references. Missing referents
    become ``None`` (single) or are dropped (lists).
    """
    ids = set()
    for doc in docs:
        value = doc.get(field)
        if isinstance(value, list):
            ids.update(v for v in value if isinstance(v, ObjectId))
        elif isinstance(value, ObjectId):
            ids.add(value)
    if not ids:
        return docs
    projection = {name: 1 for name in fields}
    found = {d["_id"]: d for d in get_db()[collection_name].find({"_id": {"$in": list(ids)}}, projection)}
    for doc in docs:
        value = doc.get(field)
        if isinstance(value, list):
            doc[field] = [found[v] for v in value if v in found]
        elif isinstance(value, ObjectId):
            doc[field] = found.get(value)
    return docs


def populate_one(doc: Optional[dict], field: str, collection_name: str, fields: Iterable[str]) -> Optional[dict]:
    if doc is None:
        return None
    populate([doc], field, collection_name, fields)
    return doc


# ----------------- Reactions -----------------

def with_reaction_summary(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    reactions = doc.get("reactions") or {}
    counts = {kind: 0 for kind in REACTION_KINDS}
    for kind in reactions.values():
        if kind in counts:
            counts[kind] += 1
    doc["reactionCounts"] = counts
    doc["reactionCount"] = sum(counts.values())
    return doc


# ----------------- Envelope -----------------

def success_response(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = to_public(data)
    body.update(extra)
    return body


def paginated_response(items: List[dict], total: int, pagination: Pagination, **extra) -> Dict[str, Any]:
    body = {
        "success": True,
        "data": to_public(items),
        "pagination": pagination.describe(total),
    }
    body.update(extra)
    return body


def error_body(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}
