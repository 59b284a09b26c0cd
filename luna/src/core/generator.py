"""
Luna - Text Generator
======================
``TextGenerator`` protocol and its Gemini implementation
(``langchain-google-genai``).

``generate_streaming`` yields reply fragments as they arrive; closing the
returned iterator (``aclose``) abandons the upstream request.
``generate_once`` returns a single completion, used for titles and
summaries.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Protocol, runtime_checkable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from luna.config.settings import settings
from luna.src.core.exceptions import UpstreamGenerationError
from luna.src.core.models import ConversationTurn, TurnRole
from luna.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class TextGenerator(Protocol):

    def generate_streaming(self, system_instruction: str, history: Sequence[ConversationTurn], new_message: str) -> AsyncIterator[str]: ...

    async def generate_once(self, prompt: str) -> str: ...


def build_messages(system_instruction: str, history: Sequence[ConversationTurn], new_message: str) -> list[BaseMessage]:
    """
    Map a transcript onto chat messages.

    Only user and assistant turns are sent; retrieved-context turns reach
    the model through the system instruction instead.
    """
    messages: list[BaseMessage] = [SystemMessage(content=system_instruction)]
    for turn in history:
        if turn.role is TurnRole.USER:
            messages.append(HumanMessage(content=turn.text))
        elif turn.role is TurnRole.ASSISTANT:
            messages.append(AIMessage(content=turn.text))
    messages.append(HumanMessage(content=new_message))
    return messages


def _content_text(content: object) -> str:
    # Gemini may return content as a list of parts
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(p if isinstance(p, str) else str(p.get("text", "")) for p in content if isinstance(p, (str, dict)))
    return ""


class GeminiTextGenerator:
    """``TextGenerator`` over ``ChatGoogleGenerativeAI``."""

    __slots__ = ("_llm", "_model_name")

    def __init__(self, llm: object | None = None, model_name: str | None = None, temperature: float | None = None) -> None:
        self._model_name = model_name or settings.LLM_MODEL
        self._llm = llm if llm is not None else self._init_llm(self._model_name, settings.LLM_TEMPERATURE if temperature is None else temperature)

    @staticmethod
    def _init_llm(model_name: str, temperature: float) -> object:
        from langchain_google_genai import ChatGoogleGenerativeAI

        llm = ChatGoogleGenerativeAI(model=model_name, temperature=temperature, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())
        logger.info("LLM initialised: %s (temperature=%.1f)", model_name, temperature)
        return llm

    async def generate_streaming(self, system_instruction: str, history: Sequence[ConversationTurn], new_message: str) -> AsyncIterator[str]:
        messages = build_messages(system_instruction, history, new_message)
        stream = self._llm.astream(messages)  # type: ignore[union-attr]
        try:
            async for chunk in stream:
                text = _content_text(chunk.content)
                if text:
                    yield text
        except Exception as exc:
            logger.exception("[LLM] Streaming call failed.")
            raise UpstreamGenerationError(f"Streaming generation failed: {exc}", {"model": self._model_name}) from exc
        finally:
            await stream.aclose()

    async def generate_once(self, prompt: str) -> str:
        try:
            response = await self._llm.ainvoke([HumanMessage(content=prompt)])  # type: ignore[union-attr]
        except Exception as exc:
            logger.exception("[LLM] Completion call failed.")
            raise UpstreamGenerationError(f"Generation failed: {exc}", {"model": self._model_name}) from exc
        return _content_text(response.content).strip()
