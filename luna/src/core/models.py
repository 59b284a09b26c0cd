"""
Luna - Domain Types
====================
Immutable value types shared by the ingestion and conversation pipelines.

``Document`` / ``Chunk`` belong to the offline path; ``ConversationTurn`` /
``Conversation`` / ``SideChannel`` to the per-turn path.
"""

from __future__ import annotations

import base64
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# ── Type Aliases ──────────────────────────────────────────────────────
Vector = list[float]
SymptomHistory = dict[str, list[datetime]]


@dataclass(frozen=True)
class Document:
    """Raw extracted text plus the identifier of the file it came from."""

    source_id: str
    text: str


@dataclass(frozen=True)
class Chunk:
    """Bounded slice of a document; the unit of embedding and retrieval."""

    text: str
    source_id: str


@dataclass(frozen=True)
class SearchHit:
    """One row returned by ``VectorIndex.search``."""

    text: str
    source_id: str
    distance: float
    seq: int


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    CONTEXT = "retrieved-context"


class TurnState(str, Enum):
    """Lifecycle of a single conversation turn (logged, not persisted)."""

    RESOLVING = "NEW_OR_EXISTING_CONVERSATION"
    USER_TURN_RECORDED = "USER_TURN_RECORDED"
    CONTEXT_RETRIEVED = "CONTEXT_RETRIEVED"
    CONTEXT_TURN_RECORDED = "CONTEXT_TURN_RECORDED"
    STREAMING = "STREAMING"
    ASSISTANT_TURN_RECORDED = "ASSISTANT_TURN_RECORDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class ConversationTurn:
    role: TurnRole
    text: str
    created_at: datetime
    partial: bool = False


@dataclass
class Conversation:
    id: str
    owner_key: str
    title: str
    turns: list[ConversationTurn] = field(default_factory=list)
    created_at: datetime | None = None

    @property
    def last_turn(self) -> ConversationTurn | None:
        return self.turns[-1] if self.turns else None


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    title: str


@dataclass(frozen=True)
class SideChannel:
    """
    Turn metadata delivered apart from the streamed body.

    ``encode()`` yields a base64 JSON string suitable for a response header
    (the HTTP layer exposes it next to the stream).
    """

    conversation_id: str
    retrieved_chunks: list[str]
    created: bool = False

    def encode(self) -> str:
        payload = {
            "conversation_id": self.conversation_id,
            "retrieved_chunks": self.retrieved_chunks,
            "created": self.created,
        }
        return base64.b64encode(json.dumps(payload, ensure_ascii=False).encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, encoded: str) -> SideChannel:
        payload = json.loads(base64.b64decode(encoded).decode("utf-8"))
        return cls(conversation_id=payload["conversation_id"], retrieved_chunks=list(payload["retrieved_chunks"]), created=bool(payload.get("created", False)))


@dataclass
class TurnResult:
    """What ``submit_turn`` hands back: the lazy stream and its side channel."""

    stream: AsyncIterator[str]
    side_channel: SideChannel
