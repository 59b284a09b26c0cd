"""Tests for the Gemini text generator adapter over a fake chat model."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from luna.src.core.exceptions import UpstreamGenerationError
from luna.src.core.generator import GeminiTextGenerator, TextGenerator, build_messages
from luna.src.core.models import ConversationTurn, TurnRole

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeChatModel:
    def __init__(self, chunks=("Hello", " there"), fail_at=None, reply="  Period Pain  ") -> None:
        self.chunks = list(chunks)
        self.fail_at = fail_at
        self.reply = reply
        self.streamed_messages = None
        self.closed = False

    async def astream(self, messages):
        self.streamed_messages = messages
        try:
            for position, text in enumerate(self.chunks):
                if position == self.fail_at:
                    raise ConnectionError("socket closed")
                yield SimpleNamespace(content=text)
        finally:
            self.closed = True

    async def ainvoke(self, messages):
        if self.reply is None:
            raise TimeoutError("deadline exceeded")
        return SimpleNamespace(content=self.reply)


def test_build_messages_skips_context_turns():
    history = [
        ConversationTurn(TurnRole.USER, "I have cramps", NOW),
        ConversationTurn(TurnRole.CONTEXT, "retrieved text", NOW),
        ConversationTurn(TurnRole.ASSISTANT, "How long?", NOW),
    ]
    messages = build_messages("system", history, "Two days")

    assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]
    assert [m.content for m in messages] == ["system", "I have cramps", "How long?", "Two days"]


def test_generator_satisfies_protocol():
    assert isinstance(GeminiTextGenerator(llm=FakeChatModel()), TextGenerator)


async def test_streaming_yields_text_fragments():
    llm = FakeChatModel(chunks=["Hello", "", [{"type": "text", "text": " there"}]])
    generator = GeminiTextGenerator(llm=llm)

    fragments = [f async for f in generator.generate_streaming("sys", [], "hi")]

    assert fragments == ["Hello", " there"]
    assert llm.closed is True
    assert llm.streamed_messages[-1].content == "hi"


async def test_streaming_failure_is_wrapped():
    generator = GeminiTextGenerator(llm=FakeChatModel(fail_at=1))
    stream = generator.generate_streaming("sys", [], "hi")

    assert await stream.__anext__() == "Hello"
    with pytest.raises(UpstreamGenerationError):
        await stream.__anext__()


async def test_generate_once_strips_reply():
    assert await GeminiTextGenerator(llm=FakeChatModel()).generate_once("title please") == "Period Pain"


async def test_generate_once_failure_is_wrapped():
    with pytest.raises(UpstreamGenerationError):
        await GeminiTextGenerator(llm=FakeChatModel(reply=None)).generate_once("title please")
