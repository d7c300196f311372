"""Model streaming client over a LangChain chat model."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from planexec.core.config.models import ModelConfig
from planexec.core.contracts.agent import ChatMessage, StreamChunk
from planexec.core.exceptions import ConfigError

log = logging.getLogger("model")

OnChunk = Callable[[StreamChunk], None]


class ModelClient(Protocol):
    async def stream(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: OnChunk,
        abort: asyncio.Event | None = None,
    ) -> None: ...

    async def complete(self, messages: Sequence[ChatMessage], abort: asyncio.Event | None = None) -> str: ...


def build_chat_model(config: ModelConfig) -> BaseChatModel:
    if config.provider != "openai":
        raise ConfigError(f"Unsupported model provider: {config.provider}")
    kwargs: dict[str, Any] = {"model": config.name, "temperature": config.temperature}
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return ChatOpenAI(**kwargs)


def to_langchain_messages(messages: Sequence[ChatMessage]) -> list[BaseMessage]:
    out: list[BaseMessage] = []
    for m in messages:
        if m.role == "system":
            out.append(SystemMessage(content=m.content))
        elif m.role == "assistant":
            out.append(AIMessage(content=m.content))
        else:
            out.append(HumanMessage(content=m.content))
    return out


def chunk_text(chunk: Any) -> str:
    content = chunk.content if hasattr(chunk, "content") else chunk
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content or "")


class LangChainModelClient:
    def __init__(self, llm: BaseChatModel):
        self.llm = llm

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: OnChunk,
        abort: asyncio.Event | None = None,
    ) -> None:
        usage: dict[str, Any] | None = None
        async for chunk in self.llm.astream(to_langchain_messages(messages)):
            if abort is not None and abort.is_set():
                log.info("stream stopped: aborted")
                break
            meta = getattr(chunk, "usage_metadata", None)
            if meta:
                usage = dict(meta)
            text = chunk_text(chunk)
            if text:
                on_chunk(StreamChunk(delta=text))
        on_chunk(StreamChunk(is_complete=True, usage=usage))

    async def complete(self, messages: Sequence[ChatMessage], abort: asyncio.Event | None = None) -> str:
        parts: list[str] = []

        def collect(chunk: StreamChunk) -> None:
            if chunk.delta:
                parts.append(chunk.delta)

        await self.stream(messages, collect, abort)
        return "".join(parts)
