"""
MongoDB access for the Blood Donor API.

A Database is constructed explicitly and handed to every registry; nothing
connects at import time. Tests pass a mongomock client in through ``client``.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, GEOSPHERE, MongoClient
from pymongo.errors import PyMongoError

from errors import NotFoundError

SECRET_FIELDS = ("password_hash",)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form pymongo hands back by default."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(value: Any, label: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: ObjectIds become strings, secrets are dropped."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items() if k not in SECRET_FIELDS}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def paginate(page: int, limit: int, max_limit: int = 100) -> Tuple[int, int]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), max_limit))
    return (page - 1) * limit, limit


def pagination_info(page: int, limit: int, total: int) -> Dict[str, int]:
    _, limit = paginate(page, limit)
    return {"current": max(1, int(page)), "pages": -(-total // limit), "total": total, "limit": limit}


def _to_storable(value: Any) -> Any:
    # bson has no encoder for bare dates
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_storable(v) for v in value]
    return value


def to_document(data: Any) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return _to_storable(dict(data))


class Database:
    """Owns the MongoClient lifecycle and hands out collections."""

    def __init__(
        self,
        uri: str = "mongodb://localhost:27017",
        name: str = "blood_donor",
        client: Optional[MongoClient] = None,
        logger: Optional[logging.Logger] = None,
        geo_index: bool = True,
        **client_options: Any,
    ):
        self.uri = uri
        self.name = name
        # off for mongomock, which has no geospatial queries
        self.geo_index = geo_index
        self.client_options = client_options
        self.logger = logger or logging.getLogger(__name__)
        self._client = client
        self._owns_client = client is None
        self._db = None

    @classmethod
    def from_settings(cls, settings, client: Optional[MongoClient] = None) -> "Database":
        return cls(
            uri=settings.mongodb_uri,
            name=settings.database_name,
            client=client,
            serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
            socketTimeoutMS=settings.socket_timeout_ms,
            maxPoolSize=settings.max_pool_size,
        )

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def open(self) -> "Database":
        if self._db is not None:
            return self
        if self._client is None:
            self.logger.info("connecting to mongodb database=%s", self.name)
            self._client = MongoClient(self.uri, **self.client_options)
        self._db = self._client[self.name]
        return self

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
            self.logger.info("mongodb connection closed database=%s", self.name)
        self._db = None

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def db(self):
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db

    def collection(self, name: str):
        return self.db[name]

    def ping(self) -> List[str]:
        """Round-trip to the server; returns the collection names."""
        return self.db.list_collection_names()

    def ensure_indexes(self) -> None:
        try:
            self.collection("users").create_index([("email", ASCENDING)], unique=True)
            self.collection("blood_banks").create_index([("email", ASCENDING)], unique=True)
            self.collection("blood_banks").create_index([("license_number", ASCENDING)], unique=True)
            if self.geo_index:
                self.collection("blood_banks").create_index([("location", GEOSPHERE)])
            self.collection("events").create_index([("status", ASCENDING), ("start_date", ASCENDING)])
            self.collection("events").create_index([("organizer_id", ASCENDING)])
            self.collection("blood_requests").create_index([("blood_bank_id", ASCENDING), ("status", ASCENDING)])
            self.collection("contact_messages").create_index([("status", ASCENDING), ("created_at", ASCENDING)])
            self.collection("contact_messages").create_index([("email", ASCENDING)])
        except PyMongoError:
            self.logger.exception("index creation failed database=%s", self.name)
            raise

    # Generic helpers

    def create_document(self, collection_name: str, data: Any) -> str:
        doc = to_document(data)
        now = utcnow()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.collection(collection_name).insert_one(doc)
        return str(result.inserted_id)

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self.collection(collection_name).find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)
