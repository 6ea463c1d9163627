"""
Test MongoDB Store
==================

MongoCollection against a mocked motor collection.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from pymongo import DESCENDING
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure

from coach.core.errors import PersistenceError
from coach.memory.mongo_store import DatabaseManager, MongoCollection


def make_collection(name="fasting_sessions"):
    motor_collection = MagicMock()
    manager = MagicMock()
    manager.db = {name: motor_collection}
    return MongoCollection(manager, name), motor_collection


class TestMongoCollection:

    @pytest.mark.asyncio
    async def test_insert(self):
        store, motor = make_collection()
        motor.insert_one = AsyncMock()

        assert await store.insert({"_id": "s1"}) is True
        motor.insert_one.assert_awaited_once_with({"_id": "s1"})

    @pytest.mark.asyncio
    async def test_insert_duplicate_returns_false(self):
        store, motor = make_collection()
        motor.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))

        assert await store.insert({"_id": "s1"}) is False

    @pytest.mark.asyncio
    async def test_driver_errors_become_persistence_errors(self):
        store, motor = make_collection()
        motor.find_one = AsyncMock(side_effect=AutoReconnect("primary stepped down"))

        with pytest.raises(PersistenceError):
            await store.get("s1")

    @pytest.mark.asyncio
    async def test_compare_and_set_filters_on_version(self):
        store, motor = make_collection()
        motor.replace_one = AsyncMock(return_value=MagicMock(matched_count=1))

        assert await store.compare_and_set("s1", {"_id": "s1", "version": 3}, 2) is True
        motor.replace_one.assert_awaited_once_with(
            {"_id": "s1", "version": 2}, {"_id": "s1", "version": 3}
        )

    @pytest.mark.asyncio
    async def test_compare_and_set_stale_version(self):
        store, motor = make_collection()
        motor.replace_one = AsyncMock(return_value=MagicMock(matched_count=0))

        assert await store.compare_and_set("s1", {"_id": "s1"}, 2) is False

    @pytest.mark.asyncio
    async def test_find_applies_sort_and_limit(self):
        store, motor = make_collection()
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[{"_id": "a"}])
        motor.find.return_value = cursor

        docs = await store.find({"user_id": "u"}, sort=[("start_time", DESCENDING)], limit=5)

        assert docs == [{"_id": "a"}]
        cursor.sort.assert_called_once_with([("start_time", DESCENDING)])
        cursor.limit.assert_called_once_with(5)
        cursor.to_list.assert_awaited_once_with(length=5)

    @pytest.mark.asyncio
    async def test_merge_uses_set(self):
        store, motor = make_collection("health_profiles")
        motor.update_one = AsyncMock(return_value=MagicMock(matched_count=1, upserted_id=None))

        assert await store.merge("u1", {"advice_feedback.a1": 4}) is True
        motor.update_one.assert_awaited_once_with(
            {"_id": "u1"}, {"$set": {"advice_feedback.a1": 4}}, upsert=False
        )

    @pytest.mark.asyncio
    async def test_merge_missing_document(self):
        store, motor = make_collection("health_profiles")
        motor.update_one = AsyncMock(return_value=MagicMock(matched_count=0, upserted_id=None))

        assert await store.merge("ghost", {"x": 1}) is False

    @pytest.mark.asyncio
    async def test_merge_upsert_sets_insert_only_fields(self):
        store, motor = make_collection("health_profiles")
        motor.update_one = AsyncMock(return_value=MagicMock(matched_count=0, upserted_id="u1"))

        assert await store.merge(
            "u1", {"age": 30}, upsert=True, on_insert={"created_at": "t0"}
        ) is True
        motor.update_one.assert_awaited_once_with(
            {"_id": "u1"},
            {"$set": {"age": 30}, "$setOnInsert": {"created_at": "t0"}},
            upsert=True,
        )

    @pytest.mark.asyncio
    async def test_aggregate_collects_cursor(self):
        store, motor = make_collection("knowledge_snippets")
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=[{"_id": "kb-1", "score": 0.9}])
        motor.aggregate.return_value = cursor
        pipeline = [{"$vectorSearch": {"index": "kb", "path": "embedding"}}]

        assert await store.aggregate(pipeline) == [{"_id": "kb-1", "score": 0.9}]
        motor.aggregate.assert_called_once_with(pipeline)
        cursor.to_list.assert_awaited_once_with(length=None)

    @pytest.mark.asyncio
    async def test_aggregate_errors_become_persistence_errors(self):
        store, motor = make_collection("knowledge_snippets")
        motor.aggregate.side_effect = OperationFailure("index not found")

        with pytest.raises(PersistenceError):
            await store.aggregate([])


class TestDatabaseManager:

    def test_db_requires_connection(self):
        manager = DatabaseManager()
        assert manager.is_connected is False
        with pytest.raises(RuntimeError):
            manager.db

    @pytest.mark.asyncio
    async def test_ping_without_client(self):
        assert await DatabaseManager().ping() is False
