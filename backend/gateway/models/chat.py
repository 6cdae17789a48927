from pydantic import AliasChoices, BaseModel, Field
from typing import Any, Literal
from datetime import datetime

Role = Literal["user", "assistant", "system"]

DEFAULT_TITLE = "New Chat"


class GenerationOptions(BaseModel):
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = Field(
        default=None,
        validation_alias=AliasChoices("max_tokens", "num_predict"),
    )
    seed: int | None = None

    def to_upstream(self) -> dict[str, Any] | None:
        """Ollama option names; unset fields fall back to upstream defaults."""
        options = {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "num_predict": self.max_tokens,
            "seed": self.seed,
        }
        options = {k: v for k, v in options.items() if v is not None}
        return options or None


class ChatRequest(BaseModel):
    conversation_id: str | None = None
    model: str = ""
    message: str = ""
    options: GenerationOptions | None = None
    system_prompt: str | None = None


class Conversation(BaseModel):
    id: str
    title: str
    model: str
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    id: str
    conversation_id: str
    role: Role
    content: str
    model: str | None = None
    tokens_used: int | None = None
    duration: float | None = None
    created_at: datetime


class CreateConversationRequest(BaseModel):
    title: str = ""
    model: str = ""


class UpdateConversationRequest(BaseModel):
    title: str = ""


class ConversationDetail(BaseModel):
    conversation: Conversation
    messages: list[Message]
