"""Wire shapes of the Ollama HTTP API."""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any


class ChatMessage(BaseModel):
    role: str = "assistant"
    content: str = ""


class ChatPayload(BaseModel):
    model: str
    messages: list[ChatMessage]
    stream: bool = True
    options: dict[str, Any] | None = None


class StreamChunk(BaseModel):
    """One NDJSON line of a streaming /api/chat response."""

    model: str = ""
    created_at: str | None = None
    message: ChatMessage = Field(default_factory=ChatMessage)
    done: bool = False
    total_duration: int | None = None
    prompt_eval_count: int | None = None
    eval_count: int | None = None
    # Ollama reports mid-stream failures as {"error": "..."}
    error: str | None = None

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def total_tokens(self) -> int:
        return (self.eval_count or 0) + (self.prompt_eval_count or 0)

    @property
    def duration_seconds(self) -> float:
        return (self.total_duration or 0) / 1e9


class ChatResult(StreamChunk):
    """Body of a non-streaming /api/chat response."""


class ModelDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    parent_model: str = ""
    format: str = ""
    family: str = ""
    families: list[str] | None = None
    parameter_size: str = ""
    quantization_level: str = ""


class ModelInfo(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    name: str
    model: str = ""
    modified_at: str | None = None
    size: int = 0
    digest: str = ""
    details: ModelDetails = Field(default_factory=ModelDetails)


class PullProgress(BaseModel):
    status: str = ""
    digest: str | None = None
    total: int | None = None
    completed: int | None = None
    error: str | None = None
