from typing import Any, Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class StreamChunk(BaseModel):
    delta: str = ""
    is_complete: bool = False
    usage: dict[str, Any] | None = None
