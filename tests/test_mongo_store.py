"""Tests for the MongoDB job store against a mocked collection."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from jobstash.config.models import StoreConfig
from jobstash.errors import ConfigError, DuplicateJobIdError, StoreError
from jobstash.store.mongo import MongoJobStore

DUE = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def collection() -> MagicMock:
    return MagicMock()


@pytest.fixture
async def mongo_store(collection: MagicMock) -> MongoJobStore:
    database = MagicMock()
    database.__getitem__.return_value = collection
    store = MongoJobStore(database=database, collection="jobs")
    await store.connect()
    database.__getitem__.assert_called_once_with("jobs")
    return store


class TestMongoJobStoreLifecycle:
    def test_requires_config_or_database(self):
        """Test a store needs a config or a database handle."""
        with pytest.raises(ValueError):
            MongoJobStore()

    @pytest.mark.asyncio
    async def test_connect_without_uri(self):
        """Test connecting without an address fails clearly."""
        with pytest.raises(ConfigError, match="Mongo URI not provided"):
            await MongoJobStore(StoreConfig()).connect()

    def test_collection_before_connect(self):
        """Test the collection is unavailable before connect()."""
        store = MongoJobStore(StoreConfig(address="mongodb://localhost"))
        with pytest.raises(RuntimeError):
            _ = store.collection

    @pytest.mark.asyncio
    async def test_unique_index_on_id(self, mongo_store, collection):
        """Test the unique index is created on id."""
        collection.create_index = AsyncMock()
        await mongo_store.ensure_unique_index()
        collection.create_index.assert_awaited_once_with("id", unique=True)


class TestMongoWrites:
    """Tests for the documents and updates sent to MongoDB."""

    @pytest.mark.asyncio
    async def test_insert_sends_camel_case_document(
        self, mongo_store, collection, make_record
    ):
        """Test inserted documents use stored key names."""
        collection.insert_one = AsyncMock()
        await mongo_store.insert(make_record(metadata={"op": "x"}))

        doc = collection.insert_one.await_args.args[0]
        assert doc["id"] == "job-1"
        assert doc["dueAt"] == DUE
        assert doc["isActive"] is True
        assert doc["errorMessages"] == []

    @pytest.mark.asyncio
    async def test_duplicate_key(self, mongo_store, collection, make_record):
        """Test duplicate keys surface as DuplicateJobIdError."""
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        with pytest.raises(DuplicateJobIdError, match="JobId must be unique"):
            await mongo_store.insert(make_record())

    @pytest.mark.asyncio
    async def test_driver_errors_become_store_errors(self, mongo_store, collection):
        """Test driver failures are wrapped in StoreError."""
        collection.find_one = AsyncMock(side_effect=ServerSelectionTimeoutError("down"))
        with pytest.raises(StoreError):
            await mongo_store.find_one("job-1")

    @pytest.mark.asyncio
    async def test_conditional_update_translates_fields(self, mongo_store, collection):
        """Test record field names are translated in match and values."""
        collection.update_one = AsyncMock(
            return_value=MagicMock(matched_count=1, modified_count=1)
        )

        result = await mongo_store.conditional_update(
            {"id": "job-1", "is_active": True, "due_at": DUE}, {"is_locked": True}
        )

        assert result.succeeded
        match, update = collection.update_one.await_args.args
        assert match == {"id": "job-1", "isActive": True, "dueAt": DUE}
        assert update == {"$set": {"isLocked": True}}

    @pytest.mark.asyncio
    async def test_conditional_update_rejects_unknown_field(self, mongo_store):
        """Test unknown fields are rejected before querying."""
        with pytest.raises(ValueError, match="Unknown job field"):
            await mongo_store.conditional_update({"colour": "red"}, {"is_locked": True})

    @pytest.mark.asyncio
    async def test_record_failure_is_one_pipeline_update(
        self, mongo_store, collection, make_record
    ):
        """Test the failure transition is a single two-stage update."""
        stored = make_record(retried_count=0, error_count=1, error_messages=["e1"])
        collection.find_one_and_update = AsyncMock(return_value=stored.to_document())

        record = await mongo_store.record_failure("job-1", "e1", 3)

        assert record == stored
        call = collection.find_one_and_update.await_args
        assert call.args[0] == {"id": "job-1"}
        pipeline = call.args[1]
        assert len(pipeline) == 2
        assert pipeline[0]["$set"]["isLocked"] is False
        assert pipeline[1]["$set"]["isActive"]["$cond"][0] == {
            "$gte": ["$retriedCount", 3]
        }
        assert call.kwargs["return_document"] is ReturnDocument.AFTER

    @pytest.mark.asyncio
    async def test_record_failure_missing(self, mongo_store, collection):
        """Test a missing job yields None."""
        collection.find_one_and_update = AsyncMock(return_value=None)
        assert await mongo_store.record_failure("ghost", "e1", 3) is None

    @pytest.mark.asyncio
    async def test_upsert_keeps_metadata_when_none(self, mongo_store, collection):
        """Test upsert is one pipeline update that keeps stored metadata."""
        collection.update_one = AsyncMock()

        await mongo_store.upsert("job-1", DUE, None)

        match, pipeline = collection.update_one.await_args.args
        assert match == {"id": "job-1"}
        assert pipeline[-1]["$set"]["dueAt"] == DUE
        assert pipeline[0]["$set"]["metadata"] == {
            "$ifNull": ["$metadata", {"$literal": {}}]
        }
        assert collection.update_one.await_args.kwargs["upsert"] is True

    @pytest.mark.asyncio
    async def test_upsert_sets_metadata_literally(self, mongo_store, collection):
        """Test metadata values starting with $ are not read as field paths."""
        collection.update_one = AsyncMock()

        await mongo_store.upsert("job-1", DUE, {"price": "$5"})

        pipeline = collection.update_one.await_args.args[1]
        assert pipeline[0]["$set"]["metadata"] == {"$literal": {"price": "$5"}}

    @pytest.mark.asyncio
    async def test_upsert_releases_lock_when_due_at_moves(
        self, mongo_store, collection
    ):
        """Test the lock survives only when the due time is unchanged."""
        collection.update_one = AsyncMock()

        await mongo_store.upsert("job-1", DUE, None)

        pipeline = collection.update_one.await_args.args[1]
        assert pipeline[0]["$set"]["isLocked"] == {
            "$cond": [
                {"$eq": ["$dueAt", DUE]},
                {"$ifNull": ["$isLocked", False]},
                False,
            ]
        }
        assert "dueAt" not in pipeline[0]["$set"]

    @pytest.mark.asyncio
    async def test_delete_one_with_due_at_guard(self, mongo_store, collection):
        """Test delete matches the due time when given."""
        collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))

        deleted = await mongo_store.delete_one("job-1", due_at=DUE + timedelta(hours=1))

        assert deleted is False
        assert collection.delete_one.await_args.args[0] == {
            "id": "job-1",
            "dueAt": DUE + timedelta(hours=1),
        }


class TestMongoReads:
    @pytest.mark.asyncio
    async def test_find_all_parses_documents(self, mongo_store, collection, make_record):
        """Test documents are parsed and _id is projected out."""
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=[make_record().to_document()])
        collection.find = MagicMock(return_value=cursor)

        records = await mongo_store.find_all(is_active=True)

        assert [r.id for r in records] == ["job-1"]
        query, projection = collection.find.call_args.args
        assert query == {"isActive": True}
        assert projection == {"_id": 0}

    @pytest.mark.asyncio
    async def test_find_one_missing(self, mongo_store, collection):
        collection.find_one = AsyncMock(return_value=None)
        assert await mongo_store.find_one("nope") is None
