"""
Luna - Conversation Store
==========================
``ConversationStore`` protocol consumed by the orchestrator, plus the
MongoDB (``motor``) implementation.

Collection schema (``chats``)::

    {
        "_id": ObjectId,
        "owner_key": str,
        "title": str,
        "turns": [{"role": str, "text": str, "created_at": datetime, "partial": bool}, ...],
        "created_at": datetime,
        "updated_at": datetime
    }

Turns are appended with ``$push`` on a single document, so each append is
atomic and ordered by the server; callers await every append before
issuing the next.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from luna.src.core.exceptions import NotFoundError
from luna.src.core.models import Conversation, ConversationSummary, ConversationTurn, TurnRole
from luna.src.utils.logger import get_logger
from luna.src.utils.time_utils import as_utc, utc_now

logger = get_logger(__name__)

TurnDocument = dict[str, Any]


class ConversationStore(Protocol):
    """Persistence for conversations; every method raises ``NotFoundError`` for unknown ids."""

    async def create_conversation(self, owner_key: str, title: str) -> str: ...

    async def append_turn(self, conversation_id: str, turn: ConversationTurn) -> None: ...

    async def get_conversation(self, conversation_id: str) -> Conversation: ...

    async def list_conversations(self, owner_key: str) -> list[ConversationSummary]: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...


def turn_to_document(turn: ConversationTurn) -> TurnDocument:
    return {"role": turn.role.value, "text": turn.text, "created_at": turn.created_at, "partial": turn.partial}


def turn_from_document(doc: TurnDocument) -> ConversationTurn:
    return ConversationTurn(role=TurnRole(doc["role"]), text=doc["text"], created_at=as_utc(doc["created_at"]), partial=bool(doc.get("partial", False)))


class MongoConversationStore:
    """``ConversationStore`` backed by a MongoDB collection."""

    __slots__ = ("_collection",)

    def __init__(self, database: AsyncIOMotorDatabase, collection_name: str = "chats") -> None:
        self._collection = database[collection_name]


    async def create_conversation(self, owner_key: str, title: str) -> str:
        now = utc_now()
        result = await self._collection.insert_one({"owner_key": owner_key, "title": title, "turns": [], "created_at": now, "updated_at": now})
        conversation_id = str(result.inserted_id)
        logger.info("[STORE] Conversation created: %s (%s)", conversation_id, title)
        return conversation_id


    async def append_turn(self, conversation_id: str, turn: ConversationTurn) -> None:
        result = await self._collection.update_one({"_id": _object_id(conversation_id)}, {"$push": {"turns": turn_to_document(turn)}, "$set": {"updated_at": turn.created_at}})
        if result.matched_count == 0:
            raise NotFoundError("conversation", conversation_id)


    async def get_conversation(self, conversation_id: str) -> Conversation:
        doc = await self._collection.find_one({"_id": _object_id(conversation_id)})
        if doc is None:
            raise NotFoundError("conversation", conversation_id)
        return Conversation(
            id=str(doc["_id"]),
            owner_key=doc["owner_key"],
            title=doc.get("title", ""),
            turns=[turn_from_document(t) for t in doc.get("turns", [])],
            created_at=as_utc(doc["created_at"]) if doc.get("created_at") else None,
        )


    async def list_conversations(self, owner_key: str) -> list[ConversationSummary]:
        """Conversations of *owner_key*, most recently active first."""
        cursor = self._collection.find({"owner_key": owner_key}, {"title": 1}).sort("updated_at", -1)
        docs = await cursor.to_list(length=None)
        return [ConversationSummary(id=str(d["_id"]), title=d.get("title", "")) for d in docs]


    async def delete_conversation(self, conversation_id: str) -> None:
        result = await self._collection.delete_one({"_id": _object_id(conversation_id)})
        if result.deleted_count == 0:
            raise NotFoundError("conversation", conversation_id)
        logger.info("[STORE] Conversation deleted: %s", conversation_id)


def _object_id(conversation_id: str) -> ObjectId:
    try:
        return ObjectId(conversation_id)
    except (InvalidId, TypeError) as exc:
        raise NotFoundError("conversation", str(conversation_id)) from exc
