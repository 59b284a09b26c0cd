"""
Luna - Conversation Orchestrator
=================================
Runs one conversation turn end to end:

    1. Resolve: validate, create (title + symptom event) or load.
    2. User turn: persisted before anything else happens.
    3. Retrieval: top-k chunks, persisted as a ``retrieved-context`` turn.
    4. Instruction: first-turn vs continuation system prompt + context.
    5. Streaming: fragments forwarded to the caller as they arrive.
    6. Assistant turn: persisted once the stream completes.

Steps 1-4 run eagerly inside ``submit_turn``; steps 5-6 run lazily while
the caller iterates ``TurnResult.stream``.  Each store call is awaited
before the next one is issued, so persisted order matches turn order.

Usage:
    result = await orchestrator.submit_turn("user-42", "I have a headache")
    async for fragment in result.stream:
        print(fragment, end="")
    header = result.side_channel.encode()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import datetime, timedelta
from typing import Literal

from luna.config.prompt_templates import HEALTH_SUMMARY_PROMPT, TITLE_PROMPT, build_system_instruction, format_context
from luna.config.settings import settings
from luna.src.core.exceptions import LunaError, NotFoundError, UpstreamGenerationError, ValidationError
from luna.src.core.generator import TextGenerator
from luna.src.core.models import Conversation, ConversationSummary, ConversationTurn, SideChannel, SymptomHistory, TurnResult, TurnRole, TurnState
from luna.src.core.retrieval import RetrievalService
from luna.src.database.conversation_store import ConversationStore
from luna.src.database.profile_store import SymptomWindow, UserProfileStore, window_start
from luna.src.utils.logger import get_logger
from luna.src.utils.text_utils import symptom_key
from luna.src.utils.time_utils import utc_now

logger = get_logger(__name__)

PartialReplyPolicy = Literal["discard", "persist_partial"]

_ONE_MICROSECOND = timedelta(microseconds=1)


class _TurnClock:
    """Hands out strictly increasing timestamps for one conversation."""

    __slots__ = ("_now", "_last")

    def __init__(self, now: Callable[[], datetime], last: datetime | None) -> None:
        self._now = now
        self._last = last

    def next(self) -> datetime:
        stamp = self._now()
        if self._last is not None and stamp <= self._last:
            stamp = self._last + _ONE_MICROSECOND
        self._last = stamp
        return stamp


class ConversationOrchestrator:
    """
    Parameters
    ----------
    retrieval
        Shared ``RetrievalService``; never raises, may return ``[]``.
    conversations / profiles
        Persistence collaborators (``ConversationStore`` / ``UserProfileStore``).
    generator
        ``TextGenerator`` used for replies, titles and summaries.
    retrieval_k
        Chunks retrieved per turn.
    generation_timeout_seconds
        Upper bound on the wait for each streamed fragment.
    partial_reply_policy
        ``"discard"`` drops a cancelled reply; ``"persist_partial"`` stores
        the text forwarded so far, flagged ``partial=True``.
    default_title
        Title used when title generation fails or returns nothing.
    clock
        UTC clock, injectable for tests.
    """

    __slots__ = ("_retrieval", "_conversations", "_profiles", "_generator", "_retrieval_k", "_timeout", "_partial_policy", "_default_title", "_clock")

    def __init__(
        self,
        retrieval: RetrievalService,
        conversations: ConversationStore,
        profiles: UserProfileStore,
        generator: TextGenerator,
        *,
        retrieval_k: int | None = None,
        generation_timeout_seconds: float | None = None,
        partial_reply_policy: PartialReplyPolicy | None = None,
        default_title: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._retrieval = retrieval
        self._conversations = conversations
        self._profiles = profiles
        self._generator = generator
        self._retrieval_k = retrieval_k or settings.RETRIEVAL_K
        self._timeout = generation_timeout_seconds or settings.GENERATION_TIMEOUT_SECONDS
        self._partial_policy = partial_reply_policy or settings.PARTIAL_REPLY_POLICY
        self._default_title = default_title or settings.DEFAULT_TITLE
        self._clock = clock or utc_now

    # ══════════════════════════════════════════════════════════════════
    #  TURN PIPELINE
    # ══════════════════════════════════════════════════════════════════

    async def submit_turn(self, owner_key: str, prompt: str, conversation_id: str | None = None) -> TurnResult:
        """
        Record the user turn, retrieve context and start generation.

        Returns once the user (and context) turns are persisted; the reply
        is produced while the caller iterates ``TurnResult.stream``.

        Raises
        ------
        ValidationError
            Blank *owner_key* or *prompt*.
        NotFoundError
            *conversation_id* given but unknown.
        """
        _require(owner_key, "owner_key")
        _require(prompt, "prompt")
        t_start = time.perf_counter()

        # ── 1. Resolve conversation ──
        self._log_state(TurnState.RESOLVING, conversation_id or "<new>")
        created = not conversation_id
        if created:
            title = await self._generate_title(prompt)
            conversation_id = await self._conversations.create_conversation(owner_key, title)
            await self._profiles.record_symptom_event(owner_key, symptom_key(prompt), self._clock())
            prior_turns: list[ConversationTurn] = []
            last_at = None
        else:
            conversation = await self._conversations.get_conversation(conversation_id)
            prior_turns = list(conversation.turns)
            last_at = conversation.last_turn.created_at if conversation.last_turn else None

        clock = _TurnClock(self._clock, last_at)

        # ── 2. User turn ──
        await self._conversations.append_turn(conversation_id, ConversationTurn(TurnRole.USER, prompt, clock.next()))
        self._log_state(TurnState.USER_TURN_RECORDED, conversation_id)

        # ── 3. Retrieval ──
        chunks = await asyncio.to_thread(self._retrieval.retrieve, prompt, self._retrieval_k)
        self._log_state(TurnState.CONTEXT_RETRIEVED, conversation_id, f"{len(chunks)} chunk(s)")
        context_block = format_context(chunks)
        if context_block:
            await self._conversations.append_turn(conversation_id, ConversationTurn(TurnRole.CONTEXT, context_block, clock.next()))
            self._log_state(TurnState.CONTEXT_TURN_RECORDED, conversation_id)

        # ── 4. System instruction ──
        first_turn = not any(t.role is TurnRole.USER for t in prior_turns)
        system_instruction = build_system_instruction(first_turn, context_block)
        history = [t for t in prior_turns if t.role is not TurnRole.CONTEXT]

        logger.info("[TURN] Prepared turn for %s in %.1fms (created=%s, first_turn=%s).", conversation_id, (time.perf_counter() - t_start) * 1000, created, first_turn)

        stream = self._stream_reply(conversation_id, system_instruction, history, prompt, clock)
        return TurnResult(stream=stream, side_channel=SideChannel(conversation_id=conversation_id, retrieved_chunks=chunks, created=created))

    async def _stream_reply(self, conversation_id: str, system_instruction: str, history: Sequence[ConversationTurn], prompt: str, clock: _TurnClock) -> AsyncIterator[str]:
        upstream = self._generator.generate_streaming(system_instruction, history, prompt)
        parts: list[str] = []
        t_stream = time.perf_counter()
        self._log_state(TurnState.STREAMING, conversation_id)

        try:
            while True:
                fragment = await self._next_fragment(upstream, conversation_id)
                if fragment is None:
                    break
                if not fragment:
                    continue
                parts.append(fragment)
                yield fragment

            await self._conversations.append_turn(conversation_id, ConversationTurn(TurnRole.ASSISTANT, "".join(parts), clock.next()))
            self._log_state(TurnState.ASSISTANT_TURN_RECORDED, conversation_id, f"{len(parts)} fragment(s) in {(time.perf_counter() - t_stream) * 1000:.1f}ms")

        except UpstreamGenerationError:
            self._log_state(TurnState.FAILED, conversation_id)
            raise

        except (GeneratorExit, asyncio.CancelledError):
            self._log_state(TurnState.CANCELLED, conversation_id, f"policy={self._partial_policy}")
            await _close(upstream)
            if self._partial_policy == "persist_partial" and parts:
                await self._persist_partial(conversation_id, "".join(parts), clock)
            raise

        finally:
            await _close(upstream)

    async def _next_fragment(self, upstream: AsyncIterator[str], conversation_id: str) -> str | None:
        """Next fragment, or ``None`` once the upstream is exhausted."""
        try:
            return await asyncio.wait_for(anext(upstream), timeout=self._timeout)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError as exc:
            raise UpstreamGenerationError(f"No fragment within {self._timeout:.1f}s.", {"conversation_id": conversation_id}) from exc
        except UpstreamGenerationError:
            raise
        except Exception as exc:
            raise UpstreamGenerationError(f"Generation failed: {exc}", {"conversation_id": conversation_id}) from exc

    async def _persist_partial(self, conversation_id: str, text: str, clock: _TurnClock) -> None:
        try:
            await self._conversations.append_turn(conversation_id, ConversationTurn(TurnRole.ASSISTANT, text, clock.next(), partial=True))
        except LunaError:
            logger.exception("[TURN] Could not persist partial reply for %s.", conversation_id)
            return
        logger.info("[TURN] Partial reply persisted for %s (%d chars).", conversation_id, len(text))

    async def _generate_title(self, prompt: str) -> str:
        try:
            title = await asyncio.wait_for(self._generator.generate_once(TITLE_PROMPT.format(prompt=prompt)), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("[TURN] Title generation timed out after %.1fs — using '%s'.", self._timeout, self._default_title)
            return self._default_title
        except Exception as exc:
            logger.warning("[TURN] Title generation failed — using '%s': %s", self._default_title, exc)
            return self._default_title
        title = title.strip().strip('"').strip()
        return title or self._default_title

    @staticmethod
    def _log_state(state: TurnState, conversation_id: str, detail: str = "") -> None:
        if detail:
            logger.info("[TURN] %s %s (%s)", state.value, conversation_id, detail)
        else:
            logger.info("[TURN] %s %s", state.value, conversation_id)

    # ══════════════════════════════════════════════════════════════════
    #  CONVERSATION MANAGEMENT
    # ══════════════════════════════════════════════════════════════════

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await self._conversations.get_conversation(conversation_id)

    async def list_conversations(self, owner_key: str) -> list[ConversationSummary]:
        _require(owner_key, "owner_key")
        return await self._conversations.list_conversations(owner_key)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._conversations.delete_conversation(conversation_id)

    # ══════════════════════════════════════════════════════════════════
    #  SYMPTOM HISTORY & SUMMARY
    # ══════════════════════════════════════════════════════════════════

    async def symptom_history(self, owner_key: str, window: SymptomWindow | None = None, now: datetime | None = None) -> SymptomHistory:
        """
        Symptom keys with their timestamps, optionally limited to the last
        ``"week"`` (7 days) or ``"month"`` (one calendar month) before *now*.
        """
        _require(owner_key, "owner_key")
        since = window_start(window, now or self._clock()) if window else None
        return await self._profiles.get_symptom_history(owner_key, since)

    async def health_summary(self, owner_key: str) -> str:
        """
        Short plain-language summary of all of the user's conversations.

        Raises
        ------
        NotFoundError
            The user has no conversations.
        UpstreamGenerationError
            The generator failed.
        """
        _require(owner_key, "owner_key")
        summaries = await self._conversations.list_conversations(owner_key)
        if not summaries:
            raise NotFoundError("conversations for user", owner_key)

        conversations = [await self._conversations.get_conversation(s.id) for s in summaries]
        prompt = HEALTH_SUMMARY_PROMPT.format(transcript=_format_transcripts(conversations))

        t_llm = time.perf_counter()
        try:
            summary = await self._generator.generate_once(prompt)
        except UpstreamGenerationError:
            raise
        except Exception as exc:
            raise UpstreamGenerationError(f"Summary generation failed: {exc}", {"owner_key": owner_key}) from exc
        logger.info("[SUMMARY] %d conversation(s) summarised in %.1fms.", len(conversations), (time.perf_counter() - t_llm) * 1000)
        return summary


def _require(value: str | None, field: str) -> None:
    if value is None or not value.strip():
        raise ValidationError(f"'{field}' must not be blank.", field=field)


def _format_transcripts(conversations: Sequence[Conversation]) -> str:
    blocks: list[str] = []
    for conversation in conversations:
        lines = [f"## {conversation.title}"]
        for turn in conversation.turns:
            if turn.role is TurnRole.USER:
                lines.append(f"User: {turn.text}")
            elif turn.role is TurnRole.ASSISTANT:
                lines.append(f"Assistant: {turn.text}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


async def _close(upstream: AsyncIterator[str]) -> None:
    aclose = getattr(upstream, "aclose", None)
    if aclose is not None:
        await aclose()
