"""Job store backends.

Public API:
- JobStore: Protocol every backend implements
- MongoJobStore: MongoDB collection via pymongo's async client
- SQLJobStore: SQL table via SQLAlchemy's async engine
- connect_store: Resolve a config or open handle into a connected store
"""

from typing import Any

from pymongo.asynchronous.database import AsyncDatabase
from sqlalchemy.ext.asyncio import AsyncEngine

from jobstash.config.models import StoreConfig
from jobstash.store.mongo import MongoJobStore
from jobstash.store.protocols import JobStore
from jobstash.store.sql import SQLJobStore

StoreTarget = StoreConfig | JobStore | AsyncDatabase | AsyncEngine


def build_store(target: Any, collection: str | None = None) -> JobStore:
    """Build an unconnected store for a config, handle or existing store."""
    if isinstance(target, StoreConfig):
        if target.backend == "mongo":
            return MongoJobStore(target, collection=collection)
        return SQLJobStore(target, collection=collection)
    if isinstance(target, AsyncDatabase):
        return MongoJobStore(database=target, collection=collection)
    if isinstance(target, AsyncEngine):
        return SQLJobStore(engine=target, collection=collection)
    if isinstance(target, JobStore):
        return target
    raise TypeError(f"Unsupported store target: {type(target).__name__}")


async def connect_store(target: Any, collection: str | None = None) -> JobStore:
    """Connect to the store and make sure job ids are unique."""
    store = build_store(target, collection=collection)
    await store.connect()
    await store.ensure_unique_index()
    return store


__all__ = [
    "JobStore",
    "MongoJobStore",
    "SQLJobStore",
    "StoreTarget",
    "build_store",
    "connect_store",
]
