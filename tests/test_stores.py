"""Tests for the MongoDB adapters against mocked motor collections."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId

from luna.src.core.exceptions import NotFoundError
from luna.src.core.models import ConversationTurn, TurnRole
from luna.src.database.conversation_store import MongoConversationStore, turn_from_document, turn_to_document
from luna.src.database.profile_store import MongoUserProfileStore, project_history, window_start

NOW = datetime(2026, 5, 10, 8, 30, tzinfo=timezone.utc)


@pytest.fixture
def collection() -> MagicMock:
    coll = MagicMock()
    coll.insert_one = AsyncMock()
    coll.update_one = AsyncMock()
    coll.find_one = AsyncMock()
    coll.delete_one = AsyncMock()
    return coll


@pytest.fixture
def database(collection) -> MagicMock:
    db = MagicMock()
    db.__getitem__.return_value = collection
    return db


class TestMongoConversationStore:

    async def test_create_returns_string_id(self, database, collection):
        oid = ObjectId()
        collection.insert_one.return_value = MagicMock(inserted_id=oid)

        conversation_id = await MongoConversationStore(database).create_conversation("user-1", "Headache")

        assert conversation_id == str(oid)
        document = collection.insert_one.await_args.args[0]
        assert document["owner_key"] == "user-1"
        assert document["turns"] == []

    async def test_append_pushes_turn(self, database, collection):
        collection.update_one.return_value = MagicMock(matched_count=1)
        oid = ObjectId()
        turn = ConversationTurn(TurnRole.USER, "Cramps", NOW)

        await MongoConversationStore(database).append_turn(str(oid), turn)

        query, update = collection.update_one.await_args.args
        assert query == {"_id": oid}
        assert update["$push"] == {"turns": {"role": "user", "text": "Cramps", "created_at": NOW, "partial": False}}

    async def test_append_to_unknown_conversation(self, database, collection):
        collection.update_one.return_value = MagicMock(matched_count=0)
        with pytest.raises(NotFoundError):
            await MongoConversationStore(database).append_turn(str(ObjectId()), ConversationTurn(TurnRole.USER, "x", NOW))

    async def test_malformed_id_is_not_found(self, database):
        with pytest.raises(NotFoundError):
            await MongoConversationStore(database).get_conversation("not-an-object-id")

    async def test_get_maps_document(self, database, collection):
        oid = ObjectId()
        naive = datetime(2026, 5, 10, 8, 30)
        collection.find_one.return_value = {
            "_id": oid,
            "owner_key": "user-1",
            "title": "Headache",
            "created_at": naive,
            "turns": [
                {"role": "user", "text": "I have a headache", "created_at": naive},
                {"role": "retrieved-context", "text": "ctx", "created_at": naive, "partial": False},
            ],
        }

        conversation = await MongoConversationStore(database).get_conversation(str(oid))

        assert conversation.id == str(oid)
        assert [t.role for t in conversation.turns] == [TurnRole.USER, TurnRole.CONTEXT]
        assert conversation.turns[0].created_at.tzinfo is timezone.utc
        assert conversation.last_turn.text == "ctx"

    async def test_get_missing_conversation(self, database, collection):
        collection.find_one.return_value = None
        with pytest.raises(NotFoundError):
            await MongoConversationStore(database).get_conversation(str(ObjectId()))

    async def test_list_sorted_by_activity(self, database, collection):
        ids = [ObjectId(), ObjectId()]
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[{"_id": ids[0], "title": "Cramps"}, {"_id": ids[1], "title": "Headache"}])
        collection.find.return_value = cursor

        summaries = await MongoConversationStore(database).list_conversations("user-1")

        cursor.sort.assert_called_once_with("updated_at", -1)
        assert [(s.id, s.title) for s in summaries] == [(str(ids[0]), "Cramps"), (str(ids[1]), "Headache")]

    async def test_delete_missing_conversation(self, database, collection):
        collection.delete_one.return_value = MagicMock(deleted_count=0)
        with pytest.raises(NotFoundError):
            await MongoConversationStore(database).delete_conversation(str(ObjectId()))


def test_turn_document_round_trip():
    turn = ConversationTurn(TurnRole.ASSISTANT, "Rest", NOW, partial=True)
    assert turn_from_document(turn_to_document(turn)) == turn


class TestMongoUserProfileStore:

    async def test_record_upserts_event(self, database, collection):
        await MongoUserProfileStore(database).record_symptom_event("user-1", "headache", NOW)

        query, update = collection.update_one.await_args.args
        assert query == {"owner_key": "user-1"}
        assert update["$push"] == {"symptom_events": {"symptom": "headache", "at": NOW}}
        assert collection.update_one.await_args.kwargs["upsert"] is True

    async def test_history_projection(self, database, collection):
        collection.find_one.return_value = {
            "symptom_events": [
                {"symptom": "headache", "at": datetime(2026, 5, 1, 9, 0)},
                {"symptom": "cramps", "at": datetime(2026, 5, 8, 9, 0)},
                {"symptom": "headache", "at": datetime(2026, 5, 9, 9, 0)},
            ]
        }
        store = MongoUserProfileStore(database)

        everything = await store.get_symptom_history("user-1")
        assert list(everything) == ["headache", "cramps"]
        assert len(everything["headache"]) == 2

        recent = await store.get_symptom_history("user-1", since=window_start("week", NOW))
        assert recent == {
            "cramps": [datetime(2026, 5, 8, 9, 0, tzinfo=timezone.utc)],
            "headache": [datetime(2026, 5, 9, 9, 0, tzinfo=timezone.utc)],
        }

    async def test_unknown_user_has_no_history(self, database, collection):
        collection.find_one.return_value = None
        assert await MongoUserProfileStore(database).get_symptom_history("nobody") == {}


class TestWindows:

    def test_week_is_seven_days(self):
        assert window_start("week", NOW) == NOW - timedelta(days=7)

    def test_month_is_one_calendar_month(self):
        assert window_start("month", NOW) == datetime(2026, 4, 10, 8, 30, tzinfo=timezone.utc)

    def test_month_clamps_day(self):
        end_of_march = datetime(2026, 3, 31, tzinfo=timezone.utc)
        assert window_start("month", end_of_march) == datetime(2026, 2, 28, tzinfo=timezone.utc)

    def test_month_wraps_year(self):
        assert window_start("month", datetime(2026, 1, 15, tzinfo=timezone.utc)) == datetime(2025, 12, 15, tzinfo=timezone.utc)

    def test_unknown_window(self):
        with pytest.raises(ValueError):
            window_start("year", NOW)

    def test_boundary_event_is_excluded(self):
        since = NOW - timedelta(days=7)
        assert project_history([("headache", since)], since) == {}
