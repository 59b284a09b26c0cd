"""
Luna - User Profile Store
==========================
``UserProfileStore`` protocol (symptom history) plus the MongoDB
implementation.

Symptom history is an append-only list of ``{symptom, at}`` events per
user.  It is exposed as a mapping ``symptom key → [timestamps]``; time
windows are applied on read, never stored.  Recording the same symptom
twice on the same day keeps both events.

Collection schema (``users``)::

    {
        "owner_key": str,
        "symptom_events": [{"symptom": str, "at": datetime}, ...],
        "created_at": datetime
    }

Events are stored as an array rather than a map keyed by symptom text,
since free-text keys may contain ``.`` or start with ``$``.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Literal, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase

from luna.src.core.models import SymptomHistory
from luna.src.utils.time_utils import as_utc, utc_now

SymptomWindow = Literal["week", "month"]


class UserProfileStore(Protocol):

    async def record_symptom_event(self, owner_key: str, symptom_key: str, timestamp: datetime) -> None: ...

    async def get_symptom_history(self, owner_key: str, since: datetime | None = None) -> SymptomHistory: ...


def window_start(window: SymptomWindow, now: datetime) -> datetime:
    """Start of the trailing *window* ending at *now* (a week, or one calendar month)."""
    if window == "week":
        return now - timedelta(days=7)
    if window == "month":
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        day = min(now.day, calendar.monthrange(year, month)[1])
        return now.replace(year=year, month=month, day=day)
    raise ValueError(f"Unknown symptom window: {window!r}")


def project_history(events: Iterable[tuple[str, datetime]], since: datetime | None = None) -> SymptomHistory:
    """
    Fold ``(symptom, at)`` events into a mapping, keeping event order.

    With *since*, only events strictly after it are kept and symptoms
    left without events are dropped.
    """
    history: SymptomHistory = {}
    for symptom, at in events:
        if since is not None and at <= since:
            continue
        history.setdefault(symptom, []).append(at)
    return history


class MongoUserProfileStore:
    """``UserProfileStore`` backed by a MongoDB collection."""

    __slots__ = ("_collection",)

    def __init__(self, database: AsyncIOMotorDatabase, collection_name: str = "users") -> None:
        self._collection = database[collection_name]


    async def record_symptom_event(self, owner_key: str, symptom_key: str, timestamp: datetime) -> None:
        """Append one event (upsert on first write)."""
        await self._collection.update_one({"owner_key": owner_key}, {"$push": {"symptom_events": {"symptom": symptom_key, "at": timestamp}}, "$setOnInsert": {"created_at": utc_now()}}, upsert=True)


    async def get_symptom_history(self, owner_key: str, since: datetime | None = None) -> SymptomHistory:
        doc = await self._collection.find_one({"owner_key": owner_key}, {"symptom_events": 1})
        if doc is None:
            return {}
        events = ((e["symptom"], as_utc(e["at"])) for e in doc.get("symptom_events", []))
        return project_history(events, since)
