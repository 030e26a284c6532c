"""MongoDB job store backed by pymongo's async client."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from pymongo import AsyncMongoClient, ReturnDocument
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from jobstash.config.models import DEFAULT_COLLECTION, StoreConfig
from jobstash.errors import ConfigError, DuplicateJobIdError, StoreError
from jobstash.types import (
    DOCUMENT_KEYS,
    JobMetadata,
    JobRecord,
    UpdateResult,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# Never hand Mongo's internal _id back to callers
_PROJECTION = {"_id": 0}


def _to_document_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Translate record field names to stored document keys."""
    doc: dict[str, Any] = {}
    for name, value in fields.items():
        try:
            key = DOCUMENT_KEYS[name]
        except KeyError:
            raise ValueError(f"Unknown job field: {name}") from None
        if isinstance(value, datetime):
            value = ensure_utc(value)
        doc[key] = value
    return doc


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as e:
        raise StoreError(f"MongoDB {operation} failed: {e}") from e


class MongoJobStore:
    """Job store backed by a MongoDB collection.

    Either opens its own client from a StoreConfig address, or wraps a
    database handle the caller already owns (which is never closed here).
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        *,
        database: AsyncDatabase | None = None,
        collection: str | None = None,
    ):
        if config is None and database is None:
            raise ValueError("Either config or database must be provided")
        self._config = config
        self._database = database
        self._collection_name = collection or (
            config.collection if config else DEFAULT_COLLECTION
        )
        self._client: AsyncMongoClient | None = None
        self._collection: AsyncCollection | None = None

    @property
    def collection(self) -> AsyncCollection:
        if self._collection is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        return self._collection

    async def connect(self) -> None:
        if self._collection is not None:
            return
        if self._database is None:
            assert self._config is not None
            if not self._config.address:
                raise ConfigError("Mongo URI not provided")
            client: AsyncMongoClient = AsyncMongoClient(
                self._config.address, tz_aware=True, **self._config.client_options
            )
            with _translate_errors("connect"):
                await client.aconnect()
            self._client = client
            self._database = client[self._config.database_name]
            logger.info(
                "mongo_store_connected",
                extra={
                    "db.name": self._config.database_name,
                    "db.collection": self._collection_name,
                },
            )
        self._collection = self._database[self._collection_name]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._database = None
        self._collection = None

    async def ensure_unique_index(self) -> None:
        with _translate_errors("create_index"):
            await self.collection.create_index("id", unique=True)

    async def insert(self, record: JobRecord) -> None:
        try:
            await self.collection.insert_one(record.to_document())
        except DuplicateKeyError as e:
            raise DuplicateJobIdError(record.id) from e
        except PyMongoError as e:
            raise StoreError(f"MongoDB insert failed: {e}") from e

    async def find_all(self, **predicate: Any) -> list[JobRecord]:
        with _translate_errors("find"):
            cursor = self.collection.find(_to_document_fields(predicate), _PROJECTION)
            docs = await cursor.to_list(None)
        return [JobRecord.from_document(doc) for doc in docs]

    async def find_one(self, job_id: str) -> JobRecord | None:
        with _translate_errors("find_one"):
            doc = await self.collection.find_one({"id": job_id}, _PROJECTION)
        return JobRecord.from_document(doc) if doc else None

    async def conditional_update(
        self, match: Mapping[str, Any], values: Mapping[str, Any]
    ) -> UpdateResult:
        with _translate_errors("update_one"):
            result = await self.collection.update_one(
                _to_document_fields(match), {"$set": _to_document_fields(values)}
            )
        return UpdateResult(
            matched_count=result.matched_count, modified_count=result.modified_count
        )

    async def record_failure(
        self, job_id: str, error: str, retry_count: int
    ) -> JobRecord | None:
        # Two pipeline stages in one update: the second stage sees the
        # retriedCount written by the first.
        pipeline = [
            {
                "$set": {
                    "retriedCount": {"$ifNull": ["$errorCount", 0]},
                    "errorCount": {"$add": [{"$ifNull": ["$errorCount", 0]}, 1]},
                    "isLocked": False,
                    "errorMessages": {
                        "$cond": {
                            "if": {"$isArray": "$errorMessages"},
                            "then": {
                                "$concatArrays": [
                                    "$errorMessages",
                                    [{"$literal": error}],
                                ]
                            },
                            "else": [{"$literal": error}],
                        }
                    },
                    "updatedAt": utc_now(),
                }
            },
            {
                "$set": {
                    "isActive": {
                        "$cond": [
                            {"$gte": ["$retriedCount", retry_count]},
                            False,
                            "$isActive",
                        ]
                    }
                }
            },
        ]
        with _translate_errors("find_one_and_update"):
            doc = await self.collection.find_one_and_update(
                {"id": job_id},
                pipeline,
                projection=_PROJECTION,
                return_document=ReturnDocument.AFTER,
            )
        return JobRecord.from_document(doc) if doc else None

    async def upsert(
        self, job_id: str, due_at: datetime, metadata: JobMetadata | None
    ) -> None:
        now = utc_now()
        due = ensure_utc(due_at)
        # Pipeline updates cannot use $setOnInsert; $ifNull fills the
        # fields of a freshly upserted document instead.
        stage: dict[str, Any] = {
            "isLocked": {
                "$cond": [
                    {"$eq": ["$dueAt", due]},
                    {"$ifNull": ["$isLocked", False]},
                    False,
                ]
            },
            "isActive": {"$ifNull": ["$isActive", True]},
            "retriedCount": {"$ifNull": ["$retriedCount", 0]},
            "errorCount": {"$ifNull": ["$errorCount", 0]},
            "errorMessages": {"$ifNull": ["$errorMessages", []]},
            "createdAt": {"$ifNull": ["$createdAt", now]},
            "metadata": (
                {"$ifNull": ["$metadata", {"$literal": {}}]}
                if metadata is None
                else {"$literal": dict(metadata)}
            ),
        }
        # Second stage so the lock check above still sees the old dueAt
        pipeline = [{"$set": stage}, {"$set": {"dueAt": due, "updatedAt": now}}]
        with _translate_errors("upsert"):
            await self.collection.update_one({"id": job_id}, pipeline, upsert=True)

    async def delete_one(self, job_id: str, due_at: datetime | None = None) -> bool:
        match: dict[str, Any] = {"id": job_id}
        if due_at is not None:
            match["dueAt"] = ensure_utc(due_at)
        with _translate_errors("delete_one"):
            result = await self.collection.delete_one(match)
        return result.deleted_count == 1
