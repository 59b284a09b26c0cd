"""
Shared test fixtures: required settings, a deterministic embedding model,
and in-memory fakes for the conversation/profile stores and the text
generator.
"""

import os

# Settings are instantiated at import time and require both secrets
os.environ.setdefault("GOOGLE_API_KEY", "test-google-key")
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017")

import asyncio
import hashlib
import threading
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from luna.src.core.embedder import SentenceEmbedder
from luna.src.core.exceptions import NotFoundError
from luna.src.core.models import Conversation, ConversationSummary, ConversationTurn, SymptomHistory
from luna.src.database.profile_store import project_history

FAKE_DIM = 8


class FakeSentenceModel:
    """Stands in for ``SentenceTransformer``: hash-derived, deterministic vectors."""

    def __init__(self, dim: int = FAKE_DIM, fail: bool = False) -> None:
        self.dim = dim
        self.fail = fail
        self.calls = 0
        self._lock = threading.Lock()

    def get_sentence_embedding_dimension(self) -> int:
        return self.dim

    def encode(self, texts, **kwargs):
        with self._lock:
            self.calls += 1
        if self.fail:
            raise RuntimeError("model exploded")
        rows = []
        for text in texts:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            rows.append([(b + 1) / 256.0 for b in digest[: self.dim]])
        return np.asarray(rows, dtype=np.float32)


class InMemoryConversationStore:
    def __init__(self) -> None:
        self.conversations: dict[str, Conversation] = {}
        self._activity: dict[str, int] = {}
        self._tick = 0

    def _touch(self, conversation_id: str) -> None:
        self._tick += 1
        self._activity[conversation_id] = self._tick

    async def create_conversation(self, owner_key: str, title: str) -> str:
        conversation_id = f"conv-{len(self.conversations) + 1}"
        self.conversations[conversation_id] = Conversation(id=conversation_id, owner_key=owner_key, title=title)
        self._touch(conversation_id)
        return conversation_id

    async def append_turn(self, conversation_id: str, turn: ConversationTurn) -> None:
        if conversation_id not in self.conversations:
            raise NotFoundError("conversation", conversation_id)
        self.conversations[conversation_id].turns.append(turn)
        self._touch(conversation_id)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        if conversation_id not in self.conversations:
            raise NotFoundError("conversation", conversation_id)
        stored = self.conversations[conversation_id]
        return Conversation(id=stored.id, owner_key=stored.owner_key, title=stored.title, turns=list(stored.turns), created_at=stored.created_at)

    async def list_conversations(self, owner_key: str) -> list[ConversationSummary]:
        owned = [c for c in self.conversations.values() if c.owner_key == owner_key]
        owned.sort(key=lambda c: self._activity[c.id], reverse=True)
        return [ConversationSummary(id=c.id, title=c.title) for c in owned]

    async def delete_conversation(self, conversation_id: str) -> None:
        if self.conversations.pop(conversation_id, None) is None:
            raise NotFoundError("conversation", conversation_id)
        self._activity.pop(conversation_id, None)

    def turns(self, conversation_id: str) -> list[ConversationTurn]:
        return self.conversations[conversation_id].turns


class InMemoryProfileStore:
    def __init__(self) -> None:
        self.events: dict[str, list[tuple[str, datetime]]] = {}

    async def record_symptom_event(self, owner_key: str, symptom_key: str, timestamp: datetime) -> None:
        self.events.setdefault(owner_key, []).append((symptom_key, timestamp))

    async def get_symptom_history(self, owner_key: str, since: datetime | None = None) -> SymptomHistory:
        return project_history(self.events.get(owner_key, []), since)


class FakeGenerator:
    """Scripted ``TextGenerator`` that records every call it receives."""

    def __init__(self, fragments: Sequence[str] = ("Rest ", "and ", "hydrate."), once_reply: str = "Headache", fail_after: int | None = None, once_error: Exception | None = None, delay: float = 0.0, once_delay: float = 0.0) -> None:
        self.fragments = list(fragments)
        self.once_reply = once_reply
        self.fail_after = fail_after
        self.once_error = once_error
        self.delay = delay
        self.once_delay = once_delay
        self.stream_calls: list[tuple[str, list[ConversationTurn], str]] = []
        self.once_prompts: list[str] = []
        self.closed = False

    async def generate_streaming(self, system_instruction, history, new_message):
        self.stream_calls.append((system_instruction, list(history), new_message))
        try:
            for position, fragment in enumerate(self.fragments):
                if self.fail_after is not None and position == self.fail_after:
                    raise RuntimeError("upstream connection reset")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
        finally:
            self.closed = True

    async def generate_once(self, prompt: str) -> str:
        self.once_prompts.append(prompt)
        if self.once_delay:
            await asyncio.sleep(self.once_delay)
        if self.once_error is not None:
            raise self.once_error
        return self.once_reply


class FakeRetrieval:
    def __init__(self, chunks: Sequence[str] = ()) -> None:
        self.chunks = list(chunks)
        self.queries: list[tuple[str, int | None]] = []

    def retrieve(self, prompt: str, k: int | None = None) -> list[str]:
        self.queries.append((prompt, k))
        return list(self.chunks[:k] if k else self.chunks)


class SteppingClock:
    """Returns a fixed instant, optionally advancing by *step* on each call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(0)) -> None:
        self.now = start or datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def fake_model() -> FakeSentenceModel:
    return FakeSentenceModel()


@pytest.fixture
def embedder(fake_model: FakeSentenceModel) -> SentenceEmbedder:
    return SentenceEmbedder(model_name="fake-model", model=fake_model)


@pytest.fixture
def conversation_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()
