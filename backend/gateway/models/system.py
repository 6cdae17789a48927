from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    ollama: bool
    database: bool
    version: str


class StatsResponse(BaseModel):
    total_conversations: int
    total_messages: int
    total_tokens: int
    ollama_connected: bool
    models_count: int | None = None


class PullRequest(BaseModel):
    name: str = ""
